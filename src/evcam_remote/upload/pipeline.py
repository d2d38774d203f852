"""
EVCam 远程控制 - 上传流水线

顺序、可重试、容忍部分失败的媒体回传：

1. 按顺序逐个上传，单个文件失败不会中断整个批次。
2. 每个文件的尝试次数受平台策略约束，重试间隔 1.5 秒。
3. 批次结束后归类为 全部成功 / 全部失败 / 部分失败，并且只发送一条汇总消息。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from ..devices import NullVideoProbe, VideoProbe
from ..exceptions import RemoteError, UploadError
from ..models import (
    BatchReport,
    BatchStatus,
    ChatIdentifier,
    Failed,
    MediaKind,
    Platform,
    Succeeded,
)
from ..utils import fire_callback

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_DURATION = 60
THUMBNAIL_SUFFIX = "_thumb.jpg"
MISSING_FILE_REASON = "文件不存在"


@dataclass(frozen=True)
class UploadPolicy:
    """单类媒体的上传策略。

    Attributes:
        max_attempts: 每个文件的最大尝试次数 (含首次)。
        retry_delay: 两次尝试之间的等待秒数。
        throttle: 相邻两个文件之间的等待秒数。
        settle_delay: 发送成功 / 部分成功汇总前的等待秒数 (全部失败时立即发送)。
    """

    max_attempts: int = 1
    retry_delay: float = 1.5
    throttle: float = 2.0
    settle_delay: float = 3.0


@dataclass(frozen=True)
class UploadProgress:
    """上传进度回调记录。三个回调均可选。"""

    on_progress: Callable[[str], Any] | None = None
    on_success: Callable[[str], Any] | None = None
    on_error: Callable[[str], Any] | None = None

    def progress(self, message: str) -> None:
        fire_callback(self.on_progress, message)

    def success(self, message: str) -> None:
        fire_callback(self.on_success, message)

    def error(self, message: str) -> None:
        fire_callback(self.on_error, message)


class MediaUploader(Protocol):
    """平台上传器。各方法失败时抛出 RemoteError。"""

    platform: Platform
    policies: dict[MediaKind, UploadPolicy]

    async def prepare(self, chat: ChatIdentifier, kind: MediaKind) -> None: ...

    async def upload_photo(
        self, chat: ChatIdentifier, photo: Path, index: int, total: int
    ) -> None: ...

    async def upload_video(
        self,
        chat: ChatIdentifier,
        video: Path,
        index: int,
        total: int,
        thumbnail: Path | None,
        duration: int,
    ) -> None: ...

    async def send_text(self, chat: ChatIdentifier, text: str) -> None: ...


def format_summary(report: BatchReport) -> str:
    """生成批次汇总文本。"""
    label = report.kind.label
    unit = report.kind.unit
    failed_lines = "\n".join(f.describe() for f in report.failed)

    match report.status:
        case BatchStatus.ALL_FAILED:
            return f"❌ 所有{label}上传失败\n失败列表:\n{failed_lines}"
        case BatchStatus.ALL_SUCCEEDED:
            count = len(report.succeeded)
            if report.kind is MediaKind.PHOTO:
                return f"✅ 图片上传完成！共上传 {count} 张照片"
            return f"✅ 视频上传完成！共上传 {count} 个文件"
        case BatchStatus.MIXED:
            return (
                "⚠️ 上传完成（部分失败）\n"
                f"成功: {len(report.succeeded)} {unit}\n"
                f"失败: {len(report.failed)} {unit}\n\n"
                f"失败列表:\n{failed_lines}"
            )


class UploadPipeline:
    """上传流水线。

    Args:
        uploader: 平台上传器。
        probe: 视频探测器 (封面 + 时长)。
        policies: 覆盖上传器自带的策略 (测试中用于置零延迟)。
        sleep: 异步等待函数。
    """

    def __init__(
        self,
        uploader: MediaUploader,
        probe: VideoProbe | None = None,
        policies: dict[MediaKind, UploadPolicy] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.uploader = uploader
        self.probe = probe or NullVideoProbe()
        self.policies = policies or uploader.policies
        self._sleep = sleep

    def policy_for(self, kind: MediaKind) -> UploadPolicy:
        return self.policies.get(kind, UploadPolicy())

    async def run(
        self,
        files: list[Path],
        chat: ChatIdentifier,
        kind: MediaKind,
        progress: UploadProgress | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BatchReport:
        """上传一批文件并发送汇总。

        Args:
            files: 待上传文件 (按顺序)。
            chat: 回传目标会话。
            kind: 媒体类型。
            progress: 进度回调记录。
            cancel: 置位后不再发起新的重试。

        Returns:
            BatchReport: 逐文件结果与汇总文本。
        """
        progress = progress or UploadProgress()
        policy = self.policy_for(kind)
        report = BatchReport(kind=kind)
        label = kind.label

        if not files:
            report.summary = f"没有{label}文件可上传"
            logger.warning(report.summary)
            progress.error(report.summary)
            return report

        total = len(files)
        progress.progress(f"开始上传 {total} 个{label}文件...")
        await self._prepare(chat, kind)

        for index, path in enumerate(files, start=1):
            if not path.exists():
                logger.warning(f"{label}文件不存在: {path}")
                report.outcomes.append(Failed(path.name, MISSING_FILE_REASON))
                continue

            progress.progress(f"正在上传{label} ({index}/{total}): {path.name}")
            outcome = await self._upload_with_retry(
                chat, path, kind, index, total, policy, progress, cancel
            )
            report.outcomes.append(outcome)

            if index < total:
                await self._sleep(policy.throttle)

        report.summary = format_summary(report)

        if report.status == BatchStatus.ALL_FAILED:
            progress.error(report.summary)
        else:
            progress.success(report.summary)
            await self._sleep(policy.settle_delay)

        try:
            await self.uploader.send_text(chat, report.summary)
        except RemoteError as e:
            logger.error(f"上传汇总发送失败: {e}")

        return report

    # =========================================================================
    # 内部
    # =========================================================================

    async def _prepare(self, chat: ChatIdentifier, kind: MediaKind) -> None:
        try:
            await self.uploader.prepare(chat, kind)
        except RemoteError as e:
            logger.warning(f"上传准备失败 (忽略): {e}")

    async def _upload_with_retry(
        self,
        chat: ChatIdentifier,
        path: Path,
        kind: MediaKind,
        index: int,
        total: int,
        policy: UploadPolicy,
        progress: UploadProgress,
        cancel: asyncio.Event | None,
    ) -> Succeeded | Failed:
        thumbnail, duration = (None, 0)
        if kind is MediaKind.VIDEO:
            thumbnail, duration = await self._probe_video(path)

        last_error: Exception | None = None
        try:
            for attempt in range(1, policy.max_attempts + 1):
                try:
                    await self._upload_once(chat, path, kind, index, total, thumbnail, duration)
                    logger.info(f"{kind.label}上传成功: {path.name}")
                    return Succeeded(path.name)
                except (RemoteError, OSError) as e:
                    last_error = e
                    logger.warning(
                        f"{kind.label}上传失败 ({attempt}/{policy.max_attempts}): "
                        f"{path.name}: {e}"
                    )

                if attempt >= policy.max_attempts:
                    break
                if cancel is not None and cancel.is_set():
                    logger.info("上传已取消，不再重试")
                    break
                progress.progress(f"上传失败，{policy.retry_delay:g} 秒后重试: {path.name}")
                await self._sleep(policy.retry_delay)
        finally:
            if thumbnail is not None:
                thumbnail.unlink(missing_ok=True)

        reason = str(last_error) if last_error else "未知错误"
        return Failed(path.name, reason)

    async def _upload_once(
        self,
        chat: ChatIdentifier,
        path: Path,
        kind: MediaKind,
        index: int,
        total: int,
        thumbnail: Path | None,
        duration: int,
    ) -> None:
        if kind is MediaKind.PHOTO:
            await self.uploader.upload_photo(chat, path, index, total)
        elif kind is MediaKind.VIDEO:
            await self.uploader.upload_video(chat, path, index, total, thumbnail, duration)
        else:
            raise UploadError(f"不支持的媒体类型: {kind}")

    async def _probe_video(self, video: Path) -> tuple[Path | None, int]:
        """提取封面与时长。封面失败不影响上传，时长为 0 时回落到 60 秒。"""
        target = video.with_name(video.stem + THUMBNAIL_SUFFIX)
        thumbnail: Path | None = None
        try:
            if await asyncio.to_thread(self.probe.extract_thumbnail, video, target):
                thumbnail = target
            else:
                logger.warning(f"无法提取视频缩略图，将不显示封面: {video.name}")
        except Exception as e:
            logger.warning(f"提取视频缩略图失败，将不显示封面: {e}")

        try:
            duration = int(await asyncio.to_thread(self.probe.duration_seconds, video))
        except Exception as e:
            logger.warning(f"获取视频时长失败: {e}")
            duration = 0
        if duration <= 0:
            duration = DEFAULT_VIDEO_DURATION
        return thumbnail, duration
