"""
EVCam 远程控制 - 远程任务分发 (Remote Dispatcher)

设备层调用远程功能的统一入口，负责一次远程录制 / 拍照任务的完整生命周期：

1. 校验相机可用，生成统一时间戳，必要时暂停正在进行的手动录制。
2. 首次数据写入后启动自动停止定时器。
3. 停止后按全部时间戳查找文件，只运行一次上传流水线。
4. 结束后恢复此前被暂停的手动录制。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .devices import CameraController, MediaLocator
from .exceptions import RemoteError
from .models import (
    BatchReport,
    ChatIdentifier,
    DingTalkChat,
    FeishuChat,
    MediaKind,
    Platform,
    RecordingContext,
    TelegramChat,
)
from .upload import MediaUploader, UploadPipeline, UploadProgress
from .utils import call_maybe_async, fire_callback, generate_timestamp

logger = logging.getLogger(__name__)

# =========================================================================
# 文案
# =========================================================================

BUSY_MESSAGE = "远程录制任务正在进行中，请等待完成后再试"
CAMERA_NOT_READY = "摄像头未初始化"
NO_CAMERA = "没有可用的相机"
START_FAILED = "录制启动失败"
NO_VIDEO_FOUND = "未找到录制的视频文件"
NO_PHOTO_FOUND = "未找到拍摄的照片"
VIDEO_DELIVERY_FAILED = "视频回传失败"
PHOTO_DELIVERY_FAILED = "照片回传失败"
RESUME_FAILED = "恢复手动录制失败"
DEFAULT_STATUS = "✅ Bot 正在运行中"

TELEGRAM_SIZE_HINT = "提示：Telegram Bot API 限制上传文件不能超过50MB，该文件大小已超出。"
_TOO_LARGE_MARKERS = ("413", "too large", "file is too big")

SEGMENT_MARGIN_SECONDS = 30


def upload_error_hint(platform: Platform, error: str) -> str | None:
    """根据上传错误返回平台相关的提示，无需提示时返回 None。"""
    if platform is not Platform.TELEGRAM or not error:
        return None
    lowered = error.lower()
    if any(marker in lowered for marker in _TOO_LARGE_MARKERS):
        return TELEGRAM_SIZE_HINT
    return None


@dataclass(frozen=True)
class RemoteDelays:
    """远程任务中的固定等待 (秒)。

    Attributes:
        manual_stop_settle: 暂停手动录制后的等待。
        post_stop_settle: 自动停止后、开始查找文件前的等待。
        resume_manual: 恢复手动录制前的等待。
        photo_capture: 拍照后等待文件落盘的时间。
    """

    manual_stop_settle: float = 0.5
    post_stop_settle: float = 1.0
    resume_manual: float = 0.5
    photo_capture: float = 5.0


@dataclass(frozen=True)
class RecordingEvents:
    """远程录制状态回调记录 (如界面指示灯)。回调接收平台参数。"""

    on_recording_start: Callable[[Platform], Any] | None = None
    on_recording_stop: Callable[[Platform], Any] | None = None

    def started(self, platform: Platform) -> None:
        fire_callback(self.on_recording_start, platform)

    def stopped(self, platform: Platform) -> None:
        fire_callback(self.on_recording_stop, platform)


# =========================================================================
# 单平台处理器
# =========================================================================


class PlatformRemoteHandler:
    """单个平台的远程任务处理器。

    持有该平台的录制状态、自动停止定时器和上传流水线。
    """

    def __init__(
        self,
        owner: "RemoteDispatcher",
        uploader: MediaUploader,
        pipeline: UploadPipeline | None = None,
    ) -> None:
        self.owner = owner
        self.platform = uploader.platform
        self.uploader = uploader
        self.pipeline = pipeline or UploadPipeline(uploader, owner.probe)

        self.is_remote_recording = False
        self.is_preparing_recording = False
        self.context: RecordingContext | None = None
        self._pending_duration = 0
        self._auto_stop_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.platform.display_name

    @property
    def camera(self) -> CameraController | None:
        return self.owner.camera

    def _sleep(self, seconds: float) -> Awaitable[Any]:
        return self.owner.sleep(seconds)

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # =========================================================================
    # 消息
    # =========================================================================

    async def send_message(self, chat: ChatIdentifier, text: str) -> None:
        try:
            await self.uploader.send_text(chat, text)
        except RemoteError as e:
            logger.error(f"[{self.name}] 消息发送失败: {e}")

    async def send_error(self, chat: ChatIdentifier, error: str) -> None:
        await self.send_message(chat, f"❌ {error}")

    async def _check_camera(self, chat: ChatIdentifier) -> CameraController | None:
        camera = self.camera
        if camera is None:
            logger.error(f"[{self.name}] 摄像头控制器未设置")
            await self.send_error(chat, CAMERA_NOT_READY)
            return None
        if not camera.has_connected_cameras():
            logger.error(f"[{self.name}] 没有可用的相机")
            await self.send_error(chat, NO_CAMERA)
            return None
        return camera

    # =========================================================================
    # 远程录制
    # =========================================================================

    async def start_recording(self, chat: ChatIdentifier, duration_seconds: int) -> bool:
        """启动一次远程录制。

        Returns:
            bool: 录制已开始时返回 True；被拒绝或启动失败返回 False。
        """
        logger.info(f"[{self.name}] 远程录制: {chat}, 时长 {duration_seconds}s")

        if self.owner.is_any_remote_recording:
            logger.warning(f"[{self.name}] 远程录制任务正在进行中，拒绝新的录制指令")
            await self.send_error(chat, BUSY_MESSAGE)
            return False

        camera = await self._check_camera(chat)
        if camera is None:
            return False

        timestamp = self.owner.timestamp_factory()
        ctx = RecordingContext(chat=chat, duration_seconds=duration_seconds, timestamp=timestamp)
        logger.debug(f"[{self.name}] 录制统一时间戳: {timestamp}")

        # 先占位，避免等待期间被并发的录制指令抢入
        self.is_remote_recording = True
        self.context = ctx

        if camera.is_recording():
            logger.info(f"[{self.name}] 检测到手动录制正在进行，暂停手动录制")
            ctx.was_manual_recording_before = True
            camera.stop_recording(False)
            await self._sleep(self.owner.delays.manual_stop_settle)

        # 分段时长 = 录制时长 + 余量，整个录制过程不会触发分段
        override_ms = (duration_seconds + SEGMENT_MARGIN_SECONDS) * 1000
        camera.set_segment_duration_override(override_ms)

        if not camera.start_recording(timestamp):
            await self._on_recording_failed(camera, ctx)
            return False

        logger.info(f"[{self.name}] 远程录制已开始，定时器将在首次数据写入后启动")
        self.is_preparing_recording = True
        self._pending_duration = duration_seconds
        self.owner.events.started(self.platform)
        return True

    async def _on_recording_failed(self, camera: CameraController, ctx: RecordingContext) -> None:
        logger.error(f"[{self.name}] 远程录制启动失败")
        self.is_remote_recording = False
        self.context = None
        ctx.cancel(START_FAILED)

        camera.clear_segment_duration_override()
        if ctx.was_manual_recording_before:
            logger.info(f"[{self.name}] 尝试恢复手动录制")
            camera.resume_manual_recording()

        await self.send_error(ctx.chat, START_FAILED)

    def on_first_data_written(self) -> None:
        if self._pending_duration <= 0 or self.context is None:
            return
        duration = self._pending_duration
        self._pending_duration = 0
        logger.info(f"[{self.name}] 首次数据写入，启动定时器: {duration} 秒")
        self._auto_stop_task = self._spawn(
            self._auto_stop_after(self.context, duration), f"{self.platform.code}AutoStop"
        )

    def on_timestamp_updated(self, new_timestamp: str) -> None:
        if not self.is_remote_recording or self.context is None:
            return
        old = self.context.timestamp
        self.context.update_timestamp(new_timestamp)
        logger.info(f"[{self.name}] 远程录制时间戳更新: {old} -> {new_timestamp}")

    async def _auto_stop_after(self, ctx: RecordingContext, duration: int) -> None:
        await self._sleep(duration)
        await self.finish_recording(ctx)

    async def finish_recording(self, ctx: RecordingContext) -> None:
        """停止录制并回传视频，随后恢复手动录制 (如有)。

        任何一步出错都会回复到发起会话，并保证状态与上下文被清理。
        """
        logger.info(f"[{self.name}] {ctx.duration_seconds} 秒录制完成，正在停止...")
        camera = self.camera
        try:
            if camera is not None:
                # 跳过自动转存，等上传结束后再处理文件
                camera.stop_recording(True)
                camera.clear_segment_duration_override()
        except Exception as e:
            logger.error(f"[{self.name}] 停止录制失败: {e}", exc_info=True)

        self.is_preparing_recording = False
        self.is_remote_recording = False
        self._auto_stop_task = None
        self.owner.events.stopped(self.platform)

        try:
            await self._sleep(self.owner.delays.post_stop_settle)
            ctx.complete()
            if ctx.claim_for_upload():
                await self.upload_videos(ctx)
        except Exception as e:
            logger.error(f"[{self.name}] 视频回传失败: {e}", exc_info=True)
            await self.send_error(ctx.chat, f"{VIDEO_DELIVERY_FAILED}: {e}")

        try:
            if ctx.was_manual_recording_before and camera is not None:
                await self._sleep(self.owner.delays.resume_manual)
                if not self.owner.is_any_remote_recording and not camera.is_recording():
                    logger.info(f"[{self.name}] 恢复之前的手动录制")
                    camera.resume_manual_recording()
        except Exception as e:
            logger.error(f"[{self.name}] 恢复手动录制失败: {e}", exc_info=True)
            await self.send_error(ctx.chat, f"{RESUME_FAILED}: {e}")
        finally:
            if self.context is ctx:
                self.context = None

    # =========================================================================
    # 远程拍照
    # =========================================================================

    async def start_photo(self, chat: ChatIdentifier) -> bool:
        """拍照，并在等待文件落盘后回传。"""
        logger.info(f"[{self.name}] 远程拍照: {chat}")
        camera = await self._check_camera(chat)
        if camera is None:
            return False

        timestamp = self.owner.timestamp_factory()
        camera.take_picture(timestamp)
        logger.debug(f"[{self.name}] 拍照时间戳: {timestamp}")

        self._spawn(self._upload_photos_later(chat, timestamp), f"{self.platform.code}Photo")
        return True

    async def _upload_photos_later(self, chat: ChatIdentifier, timestamp: str) -> None:
        await self._sleep(self.owner.delays.photo_capture)
        try:
            await self.upload_photos(chat, timestamp)
        except Exception as e:
            logger.error(f"[{self.name}] 照片回传失败: {e}", exc_info=True)
            await self.send_error(chat, f"{PHOTO_DELIVERY_FAILED}: {e}")

    # =========================================================================
    # 上传
    # =========================================================================

    def _progress(self, kind: MediaKind) -> UploadProgress:
        label = kind.label
        return UploadProgress(
            on_progress=lambda m: logger.debug(f"[{self.name}] {label}上传进度: {m}"),
            on_success=lambda m: logger.info(f"[{self.name}] {label}上传完成: {m}"),
            on_error=lambda m: logger.error(f"[{self.name}] {label}上传失败: {m}"),
        )

    async def upload_videos(self, ctx: RecordingContext) -> BatchReport | None:
        files = await asyncio.to_thread(self.owner.locator.find_videos, list(ctx.all_timestamps))
        if not files:
            logger.error(f"[{self.name}] 未找到录制的视频文件，时间戳: {ctx.all_timestamps}")
            await self.send_error(ctx.chat, NO_VIDEO_FOUND)
            return None

        logger.info(f"[{self.name}] 找到 {len(files)} 个视频文件，开始上传")
        report = await self.pipeline.run(files, ctx.chat, MediaKind.VIDEO, self._progress(MediaKind.VIDEO))
        await self._send_upload_hint(ctx.chat, report)
        return report

    async def upload_photos(self, chat: ChatIdentifier, timestamp: str) -> BatchReport | None:
        files = await asyncio.to_thread(self.owner.locator.find_photos, timestamp)
        if not files:
            logger.error(f"[{self.name}] 未找到拍摄的照片，时间戳: {timestamp}")
            await self.send_error(chat, NO_PHOTO_FOUND)
            return None

        logger.info(f"[{self.name}] 找到 {len(files)} 张照片，开始上传")
        report = await self.pipeline.run(files, chat, MediaKind.PHOTO, self._progress(MediaKind.PHOTO))
        await self._send_upload_hint(chat, report)
        return report

    async def _send_upload_hint(self, chat: ChatIdentifier, report: BatchReport) -> None:
        for failure in report.failed:
            hint = upload_error_hint(self.platform, failure.reason)
            if hint:
                await self.send_message(chat, hint)
                return

    # =========================================================================
    # 清理
    # =========================================================================

    def cleanup(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._auto_stop_task = None
        self._pending_duration = 0
        self.is_remote_recording = False
        self.is_preparing_recording = False
        self.context = None


# =========================================================================
# 统一入口
# =========================================================================


class RemoteDispatcher:
    """远程任务统一入口，按会话所属平台分发到各平台处理器。

    Args:
        camera: 相机控制器，未接入时为 None (指令会回复 "摄像头未初始化")。
        locator: 媒体文件查找器。
        probe: 视频探测器，传给各平台的上传流水线。
        events: 远程录制状态回调。
        delays: 固定等待参数。
        sleep: 异步等待函数。
        timestamp_factory: 时间戳生成函数。
    """

    def __init__(
        self,
        camera: CameraController | None,
        locator: MediaLocator,
        probe: Any = None,
        events: RecordingEvents | None = None,
        delays: RemoteDelays | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timestamp_factory: Callable[[], str] = generate_timestamp,
    ) -> None:
        self.camera = camera
        self.locator = locator
        self.probe = probe
        self.events = events or RecordingEvents()
        self.delays = delays or RemoteDelays()
        self.sleep = sleep
        self.timestamp_factory = timestamp_factory
        self.handlers: dict[Platform, PlatformRemoteHandler] = {}

    def register(
        self, uploader: MediaUploader, pipeline: UploadPipeline | None = None
    ) -> PlatformRemoteHandler:
        """为上传器所属平台注册处理器 (重复注册会替换旧的)。"""
        handler = PlatformRemoteHandler(self, uploader, pipeline)
        self.handlers[uploader.platform] = handler
        logger.debug(f"{uploader.platform.display_name} 远程处理器已注册")
        return handler

    def _handler(self, chat: ChatIdentifier) -> PlatformRemoteHandler | None:
        handler = self.handlers.get(chat.platform)
        if handler is None:
            logger.error(f"未找到 {chat.platform.display_name} 处理器")
        return handler

    # =========================================================================
    # 分发
    # =========================================================================

    async def start_remote_recording(self, chat: ChatIdentifier, duration_seconds: int) -> bool:
        handler = self._handler(chat)
        if handler is None:
            return False
        return await handler.start_recording(chat, duration_seconds)

    async def start_remote_photo(self, chat: ChatIdentifier) -> bool:
        handler = self._handler(chat)
        if handler is None:
            return False
        return await handler.start_photo(chat)

    async def send_message(self, chat: ChatIdentifier, text: str) -> None:
        handler = self._handler(chat)
        if handler is not None:
            await handler.send_message(chat, text)

    async def send_error(self, chat: ChatIdentifier, error: str) -> None:
        handler = self._handler(chat)
        if handler is not None:
            await handler.send_error(chat, error)

    # 便捷方法

    async def start_dingtalk_recording(
        self, conversation_id: str, conversation_type: str, user_id: str, duration_seconds: int
    ) -> bool:
        chat = DingTalkChat(conversation_id, conversation_type, user_id)
        return await self.start_remote_recording(chat, duration_seconds)

    async def start_dingtalk_photo(
        self, conversation_id: str, conversation_type: str, user_id: str
    ) -> bool:
        return await self.start_remote_photo(DingTalkChat(conversation_id, conversation_type, user_id))

    async def start_telegram_recording(self, chat_id: int, duration_seconds: int) -> bool:
        return await self.start_remote_recording(TelegramChat(chat_id), duration_seconds)

    async def start_telegram_photo(self, chat_id: int) -> bool:
        return await self.start_remote_photo(TelegramChat(chat_id))

    async def start_feishu_recording(self, chat_id: str, duration_seconds: int) -> bool:
        return await self.start_remote_recording(FeishuChat(chat_id), duration_seconds)

    async def start_feishu_photo(self, chat_id: str) -> bool:
        return await self.start_remote_photo(FeishuChat(chat_id))

    # =========================================================================
    # 状态与设备通知
    # =========================================================================

    @property
    def is_any_remote_recording(self) -> bool:
        return any(h.is_remote_recording for h in self.handlers.values())

    @property
    def is_any_preparing_recording(self) -> bool:
        return any(h.is_preparing_recording for h in self.handlers.values())

    @property
    def active_recording_platform(self) -> Platform | None:
        for platform, handler in self.handlers.items():
            if handler.is_remote_recording:
                return platform
        return None

    def on_first_data_written(self) -> None:
        """录制器首次写入数据时由设备层调用。"""
        for handler in self.handlers.values():
            if handler.is_remote_recording:
                handler.on_first_data_written()

    def on_timestamp_updated(self, new_timestamp: str) -> None:
        """录制器重建、时间戳变化时由设备层调用。"""
        for handler in self.handlers.values():
            if handler.is_remote_recording:
                handler.on_timestamp_updated(new_timestamp)

    def cleanup(self) -> None:
        for handler in self.handlers.values():
            handler.cleanup()
        logger.debug("远程任务资源已清理")


class CameraDeviceActions:
    """把相机控制器与远程任务入口组合为指令分发器所需的设备动作。"""

    def __init__(self, camera: CameraController | None, remote: RemoteDispatcher) -> None:
        self.camera = camera
        self.remote = remote

    async def start_recording(self, chat: ChatIdentifier, duration_seconds: int) -> bool:
        return await self.remote.start_remote_recording(chat, duration_seconds)

    async def start_photo(self, chat: ChatIdentifier) -> bool:
        return await self.remote.start_remote_photo(chat)

    async def get_status(self) -> str:
        if self.camera is None:
            return DEFAULT_STATUS
        return await call_maybe_async(self.camera.get_status)

    async def start_continuous_recording(self) -> str:
        return await self._camera_action("start_continuous_recording")

    async def stop_continuous_recording(self) -> str:
        return await self._camera_action("stop_continuous_recording")

    async def confirm_exit(self) -> str:
        return await self._camera_action("confirm_exit")

    async def _camera_action(self, name: str) -> str:
        if self.camera is None:
            raise RemoteError(CAMERA_NOT_READY)
        return await call_maybe_async(getattr(self.camera, name))
