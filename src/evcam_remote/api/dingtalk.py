"""
EVCam 远程控制 - 钉钉开放平台客户端

会话内回复走 sessionWebhook；主动推送 (上传结果) 走机器人 OpenAPI，
单聊使用 oToMessages/batchSend，群聊使用 groupMessages/send。
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from ..exceptions import TransportError
from ..models import DingTalkChat
from .base import DEFAULT_TIMEOUT, UPLOAD_TIMEOUT, BaseApiClient

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = 300.0


class DingTalkApiClient(BaseApiClient):
    """钉钉 API 客户端。

    Args:
        client_id: 应用 AppKey。
        client_secret: 应用 AppSecret。
        robot_code: 机器人编码。
        api_base: 新版 OpenAPI 域名 (api.dingtalk.com)。
        oapi_base: 旧版 OAPI 域名 (oapi.dingtalk.com)，用于媒体上传。
    """

    platform_name = "钉钉"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        robot_code: str = "",
        api_base: str = "https://api.dingtalk.com",
        oapi_base: str = "https://oapi.dingtalk.com",
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(timeout=DEFAULT_TIMEOUT, transport=transport)
        self.client_id = client_id
        self._client_secret = client_secret
        self.robot_code = robot_code or client_id
        self._api_base = api_base.rstrip("/")
        self._oapi_base = oapi_base.rstrip("/")
        self._clock = clock

        self._token = ""
        self._token_expire_at = 0.0
        self._token_lock = asyncio.Lock()

    async def get_access_token(self) -> str:
        async with self._token_lock:
            if self._token and self._clock() < self._token_expire_at:
                return self._token

            data = await self.request_json(
                "POST",
                f"{self._api_base}/v1.0/oauth2/accessToken",
                json={"appKey": self.client_id, "appSecret": self._client_secret},
            )
            token = data.get("accessToken")
            if not token:
                raise TransportError(f"钉钉 accessToken 获取失败: {data}")

            self._token = token
            expire = float(data.get("expireIn", 7200))
            self._token_expire_at = self._clock() + max(0.0, expire - TOKEN_REFRESH_MARGIN)
            return self._token

    # =========================================================================
    # 会话回复
    # =========================================================================

    async def reply_webhook(self, session_webhook: str, text: str) -> None:
        """通过 sessionWebhook 回复文本 (无需 accessToken)。"""
        data = await self.request_json(
            "POST",
            session_webhook,
            json={"msgtype": "text", "text": {"content": text}},
        )
        errcode = data.get("errcode", 0)
        if errcode != 0:
            raise TransportError(f"钉钉 Webhook 回复失败 ({errcode}): {data.get('errmsg')}")

    # =========================================================================
    # 机器人主动消息
    # =========================================================================

    async def send_robot_message(
        self, chat: DingTalkChat, msg_key: str, msg_param: dict[str, Any]
    ) -> dict:
        token = await self.get_access_token()
        headers = {"x-acs-dingtalk-access-token": token}
        body: dict[str, Any] = {
            "robotCode": self.robot_code,
            "msgKey": msg_key,
            "msgParam": json.dumps(msg_param, ensure_ascii=False),
        }
        if chat.is_group:
            url = f"{self._api_base}/v1.0/robot/groupMessages/send"
            body["openConversationId"] = chat.conversation_id
        else:
            url = f"{self._api_base}/v1.0/robot/oToMessages/batchSend"
            body["userIds"] = [chat.user_id]
        return await self.request_json("POST", url, json=body, headers=headers)

    async def send_text(self, chat: DingTalkChat, text: str) -> dict:
        return await self.send_robot_message(chat, "sampleText", {"content": text})

    async def send_image(self, chat: DingTalkChat, media_id: str) -> dict:
        return await self.send_robot_message(chat, "sampleImageMsg", {"photoURL": media_id})

    async def send_file(self, chat: DingTalkChat, media_id: str, file_name: str) -> dict:
        suffix = Path(file_name).suffix.lstrip(".") or "file"
        return await self.send_robot_message(
            chat,
            "sampleFile",
            {"mediaId": media_id, "fileName": file_name, "fileType": suffix},
        )

    async def send_video(
        self, chat: DingTalkChat, video_media_id: str, pic_media_id: str, duration: int
    ) -> dict:
        return await self.send_robot_message(
            chat,
            "sampleVideo",
            {
                "duration": str(duration),
                "videoMediaId": video_media_id,
                "videoType": "mp4",
                "picMediaId": pic_media_id,
            },
        )

    # =========================================================================
    # 媒体上传
    # =========================================================================

    async def upload_media(self, file: Path, media_type: str = "image") -> str:
        """上传媒体文件，返回 media_id。

        Args:
            media_type: image / video / file。
        """
        token = await self.get_access_token()
        content = await asyncio.to_thread(file.read_bytes)
        data = await self.request_json(
            "POST",
            f"{self._oapi_base}/media/upload",
            params={"access_token": token},
            data={"type": media_type},
            files={"media": (file.name, content, "application/octet-stream")},
            timeout=UPLOAD_TIMEOUT,
        )
        if data.get("errcode", 0) != 0 or not data.get("media_id"):
            raise TransportError(
                f"钉钉媒体上传失败 ({data.get('errcode')}): {data.get('errmsg')}"
            )
        logger.debug(f"媒体上传成功: {file.name} -> {data['media_id']}")
        return data["media_id"]
