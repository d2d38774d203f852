"""
EVCam 远程控制 - 平台上传器

把上传流水线的抽象动作翻译为各平台 API 调用，并声明各自的上传策略。
"""

import logging
from pathlib import Path

from ..api.dingtalk import DingTalkApiClient
from ..api.feishu import FeishuApiClient
from ..api.telegram import TelegramApiClient
from ..exceptions import TransportError, UploadError
from ..models import (
    ChatIdentifier,
    DingTalkChat,
    FeishuChat,
    MediaKind,
    Platform,
    TelegramChat,
)
from .pipeline import UploadPolicy

logger = logging.getLogger(__name__)

# 照片: 最多 2 次尝试，文件间隔 0.5 秒，汇总前等待 2 秒
# 视频: 不重试，文件间隔 2 秒，汇总前等待 3 秒
_PHOTO_RETRYING = UploadPolicy(max_attempts=2, retry_delay=1.5, throttle=0.5, settle_delay=2.0)
_VIDEO = UploadPolicy(max_attempts=1, retry_delay=1.5, throttle=2.0, settle_delay=3.0)
_DINGTALK_PHOTO = UploadPolicy(max_attempts=1, retry_delay=1.5, throttle=2.0, settle_delay=3.0)

POLICIES: dict[Platform, dict[MediaKind, UploadPolicy]] = {
    Platform.TELEGRAM: {MediaKind.PHOTO: _PHOTO_RETRYING, MediaKind.VIDEO: _VIDEO},
    Platform.FEISHU: {MediaKind.PHOTO: _PHOTO_RETRYING, MediaKind.VIDEO: _VIDEO},
    Platform.DINGTALK: {MediaKind.PHOTO: _DINGTALK_PHOTO, MediaKind.VIDEO: _VIDEO},
}


def _caption(kind: MediaKind, index: int, total: int) -> str:
    name = "照片" if kind is MediaKind.PHOTO else "视频"
    return f"{name} {index}/{total}"


class TelegramUploader:
    platform = Platform.TELEGRAM

    def __init__(self, api: TelegramApiClient) -> None:
        self.api = api
        self.policies = POLICIES[Platform.TELEGRAM]

    @staticmethod
    def _chat_id(chat: ChatIdentifier) -> int:
        match chat:
            case TelegramChat(chat_id=chat_id):
                return chat_id
        raise UploadError(f"Telegram 上传器不支持的会话: {chat}")

    async def prepare(self, chat: ChatIdentifier, kind: MediaKind) -> None:
        action = "upload_photo" if kind is MediaKind.PHOTO else "upload_video"
        await self.api.send_chat_action(self._chat_id(chat), action)

    async def upload_photo(self, chat: ChatIdentifier, photo: Path, index: int, total: int) -> None:
        await self.api.send_photo(
            self._chat_id(chat), photo, caption=_caption(MediaKind.PHOTO, index, total)
        )

    async def upload_video(
        self,
        chat: ChatIdentifier,
        video: Path,
        index: int,
        total: int,
        thumbnail: Path | None,
        duration: int,
    ) -> None:
        await self.api.send_video(
            self._chat_id(chat),
            video,
            caption=_caption(MediaKind.VIDEO, index, total),
            duration=duration,
            thumbnail=thumbnail,
        )

    async def send_text(self, chat: ChatIdentifier, text: str) -> None:
        await self.api.send_message(self._chat_id(chat), text)


class FeishuUploader:
    platform = Platform.FEISHU

    def __init__(self, api: FeishuApiClient) -> None:
        self.api = api
        self.policies = POLICIES[Platform.FEISHU]

    @staticmethod
    def _chat_id(chat: ChatIdentifier) -> str:
        match chat:
            case FeishuChat(chat_id=chat_id):
                return chat_id
        raise UploadError(f"飞书上传器不支持的会话: {chat}")

    async def prepare(self, chat: ChatIdentifier, kind: MediaKind) -> None:
        self._chat_id(chat)

    async def upload_photo(self, chat: ChatIdentifier, photo: Path, index: int, total: int) -> None:
        image_key = await self.api.upload_image(photo)
        await self.api.send_image(self._chat_id(chat), image_key)

    async def upload_video(
        self,
        chat: ChatIdentifier,
        video: Path,
        index: int,
        total: int,
        thumbnail: Path | None,
        duration: int,
    ) -> None:
        # 飞书要求毫秒时长
        file_key = await self.api.upload_file(video, "mp4", duration * 1000)

        image_key = None
        if thumbnail is not None and thumbnail.exists():
            try:
                image_key = await self.api.upload_image(thumbnail)
            except TransportError as e:
                logger.warning(f"封面上传失败，视频将没有封面: {e}")

        await self.api.send_video(self._chat_id(chat), file_key, image_key)

    async def send_text(self, chat: ChatIdentifier, text: str) -> None:
        await self.api.send_text(self._chat_id(chat), text)


class DingTalkUploader:
    platform = Platform.DINGTALK

    def __init__(self, api: DingTalkApiClient) -> None:
        self.api = api
        self.policies = POLICIES[Platform.DINGTALK]

    @staticmethod
    def _chat(chat: ChatIdentifier) -> DingTalkChat:
        match chat:
            case DingTalkChat():
                return chat
        raise UploadError(f"钉钉上传器不支持的会话: {chat}")

    async def prepare(self, chat: ChatIdentifier, kind: MediaKind) -> None:
        self._chat(chat)

    async def upload_photo(self, chat: ChatIdentifier, photo: Path, index: int, total: int) -> None:
        target = self._chat(chat)
        media_id = await self.api.upload_media(photo, "image")
        try:
            await self.api.send_image(target, media_id)
        except TransportError as e:
            logger.warning(f"图片消息发送失败，改为文件消息: {e}")
            await self.api.send_file(target, media_id, photo.name)

    async def upload_video(
        self,
        chat: ChatIdentifier,
        video: Path,
        index: int,
        total: int,
        thumbnail: Path | None,
        duration: int,
    ) -> None:
        target = self._chat(chat)

        pic_media_id = ""
        if thumbnail is not None and thumbnail.exists():
            try:
                pic_media_id = await self.api.upload_media(thumbnail, "image")
            except TransportError as e:
                logger.warning(f"封面上传失败，改为文件消息: {e}")

        if pic_media_id:
            video_media_id = await self.api.upload_media(video, "video")
            await self.api.send_video(target, video_media_id, pic_media_id, duration)
        else:
            media_id = await self.api.upload_media(video, "file")
            await self.api.send_file(target, media_id, video.name)

    async def send_text(self, chat: ChatIdentifier, text: str) -> None:
        await self.api.send_text(self._chat(chat), text)
