"""
EVCam 远程控制 - Telegram Bot API 客户端
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx

from ..exceptions import ConflictError, TransportError
from ..utils import mask_secret
from .base import DEFAULT_TIMEOUT, UPLOAD_TIMEOUT, BaseApiClient

logger = logging.getLogger(__name__)

# 长轮询读取超时 = 轮询等待 + 余量
POLL_READ_MARGIN = 10.0


class TelegramApiClient(BaseApiClient):
    """Telegram Bot API 的最小子集。

    所有方法在 `ok=false` 时抛出 TransportError (error_code 409 映射为 ConflictError)。
    """

    platform_name = "Telegram"

    def __init__(
        self,
        bot_token: str,
        api_host: str = "https://api.telegram.org",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=f"{api_host.rstrip('/')}/bot{bot_token}/",
            timeout=DEFAULT_TIMEOUT,
            transport=transport,
        )
        self._token_hint = mask_secret(bot_token)

    async def _call(self, method: str, **kwargs: Any) -> Any:
        # 4xx 时 Telegram 仍返回 JSON 描述，由下方统一转换并保留错误码 (如 413)
        data = await self.request_json("POST", method, check_status=False, **kwargs)

        if not data.get("ok"):
            code = data.get("error_code")
            desc = data.get("description", "未知错误")
            if code == 409:
                raise ConflictError(f"Telegram 409: {desc}")
            raise TransportError(f"Telegram API 错误 {code}: {desc}", status_code=code)
        return data.get("result")

    # =========================================================================
    # 轮询
    # =========================================================================

    async def get_me(self) -> dict:
        """校验令牌并返回 Bot 信息。"""
        result = await self._call("getMe")
        logger.debug(f"getMe 成功 (token={self._token_hint}): {result}")
        return result or {}

    async def get_updates(self, offset: int, timeout: int = 30, limit: int = 5) -> list:
        """长轮询拉取更新。

        Args:
            offset: 起始 update_id (-1 表示只取最新一条，用于抢占旧轮询)。
            timeout: 服务端等待秒数。
            limit: 单次最大条数。
        """
        read_timeout = httpx.Timeout(
            connect=15.0, read=timeout + POLL_READ_MARGIN, write=60.0, pool=15.0
        )
        result = await self._call(
            "getUpdates",
            json={"offset": offset, "timeout": timeout, "limit": limit},
            timeout=read_timeout,
        )
        return result or []

    # =========================================================================
    # 发送
    # =========================================================================

    async def send_message(self, chat_id: int, text: str) -> dict:
        return await self._call(
            "sendMessage",
            json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
        )

    async def send_chat_action(self, chat_id: int, action: str) -> None:
        """发送 "正在上传" 等状态提示。失败不影响后续流程，仅记录日志。"""
        try:
            await self._call(
                "sendChatAction", json={"chat_id": chat_id, "action": action}
            )
        except TransportError as e:
            logger.warning(f"sendChatAction 失败: {e}")

    async def send_photo(self, chat_id: int, photo: Path, caption: str = "") -> dict:
        content = await asyncio.to_thread(photo.read_bytes)
        data = {"chat_id": str(chat_id)}
        if caption:
            data["caption"] = caption
        return await self._call(
            "sendPhoto",
            data=data,
            files={"photo": (photo.name, content, "image/jpeg")},
            timeout=UPLOAD_TIMEOUT,
        )

    async def send_video(
        self,
        chat_id: int,
        video: Path,
        caption: str = "",
        duration: int = 0,
        thumbnail: Path | None = None,
    ) -> dict:
        content = await asyncio.to_thread(video.read_bytes)
        data = {
            "chat_id": str(chat_id),
            "duration": str(duration),
            "supports_streaming": "true",
        }
        if caption:
            data["caption"] = caption
        files: dict[str, tuple[str, bytes, str]] = {
            "video": (video.name, content, "video/mp4")
        }
        if thumbnail is not None and thumbnail.exists():
            thumb = await asyncio.to_thread(thumbnail.read_bytes)
            files["thumbnail"] = (thumbnail.name, thumb, "image/jpeg")
        return await self._call(
            "sendVideo", data=data, files=files, timeout=UPLOAD_TIMEOUT
        )
