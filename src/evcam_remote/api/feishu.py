"""
EVCam 远程控制 - 飞书开放平台客户端

负责长连接端点获取、tenant_access_token 缓存，以及文本 / 图片 / 视频消息发送。
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from ..exceptions import TransportError
from ..protocols.constants import SocketConst
from .base import DEFAULT_TIMEOUT, UPLOAD_TIMEOUT, BaseApiClient

logger = logging.getLogger(__name__)

# 令牌在过期前 5 分钟刷新
TOKEN_REFRESH_MARGIN = 300.0


@dataclass(frozen=True)
class WsEndpoint:
    """长连接端点信息。

    Attributes:
        url: WebSocket 地址 (包含 service_id 等查询参数)。
        ping_interval: 服务端建议的心跳间隔 (秒)，未下发时为 None。
    """

    url: str
    ping_interval: float | None = None


class FeishuApiClient(BaseApiClient):
    """飞书 API 客户端。

    Args:
        app_id: 应用 App ID。
        app_secret: 应用 App Secret。
        domain: 开放平台域名。
        clock: 单调时钟，用于令牌过期判断 (测试可注入)。
    """

    platform_name = "飞书"

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        domain: str = "https://open.feishu.cn",
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(base_url=domain, timeout=DEFAULT_TIMEOUT, transport=transport)
        self.app_id = app_id
        self._app_secret = app_secret
        self._clock = clock

        self._token = ""
        self._token_expire_at = 0.0
        self._token_lock = asyncio.Lock()

    # =========================================================================
    # 基础
    # =========================================================================

    def _check(self, data: dict, action: str) -> dict:
        code = data.get("code", -1)
        if code != 0:
            raise TransportError(f"飞书{action}失败 (code={code}): {data.get('msg', '')}")
        return data

    async def get_ws_endpoint(self) -> WsEndpoint:
        """获取长连接 WebSocket 地址。"""
        data = await self.request_json(
            "POST",
            SocketConst.ENDPOINT_URI,
            json={"AppID": self.app_id, "AppSecret": self._app_secret},
            headers={"locale": "zh"},
        )
        self._check(data, "获取长连接地址")

        body = data.get("data") or {}
        url = body.get("URL")
        if not url:
            raise TransportError("飞书长连接地址为空")

        ping_interval = None
        client_config = body.get("ClientConfig") or {}
        if client_config.get("PingInterval"):
            ping_interval = float(client_config["PingInterval"])

        logger.debug("飞书长连接地址获取成功")
        return WsEndpoint(url=url, ping_interval=ping_interval)

    async def get_tenant_access_token(self) -> str:
        """获取 (或复用缓存的) tenant_access_token。"""
        async with self._token_lock:
            if self._token and self._clock() < self._token_expire_at:
                return self._token

            data = await self.request_json(
                "POST",
                "/open-apis/auth/v3/tenant_access_token/internal",
                json={"app_id": self.app_id, "app_secret": self._app_secret},
            )
            self._check(data, "获取 tenant_access_token")

            self._token = data.get("tenant_access_token", "")
            expire = float(data.get("expire", 7200))
            self._token_expire_at = self._clock() + max(0.0, expire - TOKEN_REFRESH_MARGIN)
            return self._token

    async def _authed(self, method: str, url: str, **kwargs: Any) -> dict:
        token = await self.get_tenant_access_token()
        headers = {"Authorization": f"Bearer {token}"}
        data = await self.request_json(method, url, headers=headers, **kwargs)
        return self._check(data, url.rsplit("/", 1)[-1])

    # =========================================================================
    # 消息
    # =========================================================================

    async def send_message(
        self, receive_id: str, msg_type: str, content: dict, receive_id_type: str = "chat_id"
    ) -> dict:
        return await self._authed(
            "POST",
            "/open-apis/im/v1/messages",
            params={"receive_id_type": receive_id_type},
            json={
                "receive_id": receive_id,
                "msg_type": msg_type,
                "content": json.dumps(content, ensure_ascii=False),
            },
        )

    async def send_text(self, chat_id: str, text: str) -> dict:
        return await self.send_message(chat_id, "text", {"text": text})

    async def reply_text(self, message_id: str, text: str) -> dict:
        return await self._authed(
            "POST",
            f"/open-apis/im/v1/messages/{message_id}/reply",
            json={
                "msg_type": "text",
                "content": json.dumps({"text": text}, ensure_ascii=False),
            },
        )

    async def send_image(self, chat_id: str, image_key: str) -> dict:
        return await self.send_message(chat_id, "image", {"image_key": image_key})

    async def send_video(self, chat_id: str, file_key: str, image_key: str | None) -> dict:
        content = {"file_key": file_key}
        if image_key:
            content["image_key"] = image_key
        return await self.send_message(chat_id, "media", content)

    # =========================================================================
    # 上传
    # =========================================================================

    async def upload_image(self, image: Path) -> str:
        """上传图片，返回 image_key。"""
        content = await asyncio.to_thread(image.read_bytes)
        data = await self._authed(
            "POST",
            "/open-apis/im/v1/images",
            data={"image_type": "message"},
            files={"image": (image.name, content, "image/jpeg")},
            timeout=UPLOAD_TIMEOUT,
        )
        image_key = (data.get("data") or {}).get("image_key")
        if not image_key:
            raise TransportError(f"飞书图片上传未返回 image_key: {image.name}")
        logger.debug(f"图片上传成功: {image_key}")
        return image_key

    async def upload_file(self, file: Path, file_type: str = "mp4", duration_ms: int = 0) -> str:
        """上传文件，返回 file_key。视频需携带毫秒时长。"""
        content = await asyncio.to_thread(file.read_bytes)
        form = {"file_type": file_type, "file_name": file.name}
        if duration_ms > 0:
            form["duration"] = str(duration_ms)
        data = await self._authed(
            "POST",
            "/open-apis/im/v1/files",
            data=form,
            files={"file": (file.name, content, "application/octet-stream")},
            timeout=UPLOAD_TIMEOUT,
        )
        file_key = (data.get("data") or {}).get("file_key")
        if not file_key:
            raise TransportError(f"飞书文件上传未返回 file_key: {file.name}")
        logger.debug(f"文件上传成功: {file_key}")
        return file_key
