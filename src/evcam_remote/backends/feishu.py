"""
EVCam 远程控制 - 飞书长连接后端

通过 WebSocket 接收飞书事件推送：
1. 获取长连接地址 (含 service_id)，建立 WebSocket 连接。
2. 独立心跳任务定期发送 ping 帧。
3. 每条二进制消息交给帧协议层解码；DATA 帧重组后回 ACK，再解析为消息事件分发。
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs, urlparse

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from ..api.feishu import FeishuApiClient
from ..config import FeishuConfig
from ..exceptions import ProtocolError, TransportError
from ..models import FeishuChat, InboundMessage
from ..protocols import (
    Frame,
    Header,
    PartialMessageBuffer,
    copy_with_payload,
    decode_frame,
    encode_frame,
    ping_frame,
)
from ..protocols.constants import HeaderKey, MessageType, SocketConst
from ..state import ConnectionStatus
from .lifecycle import (
    ConnectionEvents,
    ConnectionSupervisor,
    HandlerTasks,
    ReconnectPolicy,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage, Callable[[str], Awaitable[None]]], Awaitable[Any]]

ACK_PAYLOAD = json.dumps({"code": SocketConst.ACK_CODE_OK}).encode("utf-8")


def service_id_from_url(url: str) -> int:
    """从长连接地址的查询参数中读取 service_id，缺失或非法时为 0。"""
    values = parse_qs(urlparse(url).query).get(SocketConst.SERVICE_ID_QUERY)
    if not values:
        return 0
    try:
        return int(values[0])
    except ValueError:
        return 0


def _object(value: Any, name: str) -> dict:
    """取 JSON 对象字段，缺省视为空对象，其它类型视为协议错误。"""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(f"字段 '{name}' 不是 JSON 对象: {type(value).__name__}")
    return value


def parse_message_event(payload: bytes) -> dict | None:
    """解析事件载荷，只保留文本消息。

    Returns:
        dict | None: 包含 text / open_id / chat_id / chat_type / message_id /
        create_time 的字典；非消息事件或非文本消息返回 None。

    Raises:
        ProtocolError: 载荷不是合法的事件 JSON。
    """
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"事件载荷不是合法 JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("事件载荷不是 JSON 对象")

    event_type = _object(data.get("header"), "header").get("event_type")
    if event_type != SocketConst.EVENT_MESSAGE_RECEIVE:
        logger.debug(f"[飞书] 忽略事件: {event_type}")
        return None

    event = _object(data.get("event"), "event")
    message = _object(event.get("message"), "message")
    if message.get("message_type") != "text":
        logger.debug(f"[飞书] 忽略非文本消息: {message.get('message_type')}")
        return None

    try:
        content = json.loads(message.get("content") or "{}")
    except ValueError as e:
        raise ProtocolError(f"消息内容不是合法 JSON: {e}") from e
    except TypeError as e:
        raise ProtocolError(f"消息内容类型非法: {e}") from e
    content = _object(content, "content")

    sender = _object(event.get("sender"), "sender")
    sender_id = _object(sender.get("sender_id"), "sender_id")
    return {
        "text": str(content.get("text", "")).strip(),
        "open_id": str(sender_id.get("open_id") or ""),
        "chat_id": str(message.get("chat_id") or ""),
        "chat_type": str(message.get("chat_type") or ""),
        "message_id": str(message.get("message_id") or ""),
        "create_time": message.get("create_time"),
    }


class FeishuSocketManager:
    """飞书长连接管理器。

    Args:
        config: 飞书配置。
        api: 飞书 API 客户端，默认按配置创建。
        events: 连接事件回调。
        policy: 重连策略。
        connect: WebSocket 连接函数 (测试可注入)。
    """

    name = "飞书"

    def __init__(
        self,
        config: FeishuConfig,
        api: FeishuApiClient | None = None,
        events: ConnectionEvents | None = None,
        policy: ReconnectPolicy | None = None,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ) -> None:
        self.config = config
        self.api = api or FeishuApiClient(config.app_id, config.app_secret, config.domain)
        self.events = events or ConnectionEvents()
        self._connect = connect

        self.ping_interval = SocketConst.PING_INTERVAL
        self.stop_timeout = 5.0

        self.supervisor = ConnectionSupervisor(self.name, self._session, policy, self.events)
        self._tasks = HandlerTasks(self.name)
        self._buffer = PartialMessageBuffer()
        self._handler: MessageHandler | None = None
        self._ws: Any = None

    # =========================================================================
    # 生命周期
    # =========================================================================

    @property
    def status(self) -> ConnectionStatus:
        return self.supervisor.state.status

    @property
    def is_connected(self) -> bool:
        return self.supervisor.state.is_connected

    def start(self, handler: MessageHandler) -> None:
        """建立长连接。凭据缺失时只触发 on_error，不发起连接。"""
        if not self.config.app_id or not self.config.app_secret:
            logger.error("[飞书] App ID / App Secret 未配置")
            self.events.error("飞书 App ID / App Secret 未配置")
            return

        self._handler = handler
        self.supervisor.start()

    def request_stop(self) -> None:
        self.supervisor.request_stop()

    async def stop(self) -> None:
        self.supervisor.request_stop()
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"[飞书] 关闭连接时出错: {e}")
        await self.supervisor.wait_stopped(self.stop_timeout)
        await self._tasks.drain()
        self._buffer.clear()

    # =========================================================================
    # 会话
    # =========================================================================

    async def _session(self) -> None:
        endpoint = await self.api.get_ws_endpoint()
        service_id = service_id_from_url(endpoint.url)

        try:
            ws = await self._connect(
                endpoint.url,
                open_timeout=SocketConst.CONNECT_TIMEOUT,
                ping_interval=None,
            )
        except (OSError, TimeoutError, WebSocketException) as e:
            raise TransportError(f"WebSocket 连接失败: {e}") from e

        self._ws = ws
        if self.supervisor.should_stop:
            await ws.close()
            self._ws = None
            return

        self.supervisor.mark_connected()
        interval = endpoint.ping_interval or self.ping_interval
        heartbeat = asyncio.create_task(
            self._heartbeat_loop(ws, service_id, interval), name="FeishuHeartbeat"
        )
        self.supervisor.state.heartbeat_task = heartbeat

        try:
            async for message in ws:
                await self._on_message(ws, message)
        except ConnectionClosedOK:
            logger.info("[飞书] 连接被正常关闭")
        except ConnectionClosed as e:
            raise TransportError(f"WebSocket 连接断开: {e}") from e
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            self.supervisor.state.heartbeat_task = None
            self._ws = None
            await ws.close()

    async def _heartbeat_loop(self, ws: Any, service_id: int, interval: float) -> None:
        while not await self.supervisor.sleep(interval):
            try:
                await ws.send(encode_frame(ping_frame(service_id)))
                logger.debug("[飞书] 已发送 ping")
            except ConnectionClosed:
                return

    # =========================================================================
    # 帧处理
    # =========================================================================

    async def _on_message(self, ws: Any, message: bytes | str) -> None:
        if isinstance(message, str):
            logger.debug("[飞书] 忽略文本帧")
            return

        try:
            frame = decode_frame(message)
        except ProtocolError as e:
            logger.warning(f"[飞书] 丢弃无法解析的帧: {e}")
            return

        if frame.is_control:
            if frame.message_type == MessageType.PING:
                logger.debug("[飞书] 收到 ping")
            elif frame.message_type == MessageType.PONG:
                logger.debug("[飞书] 收到 pong")
            return

        if frame.is_data:
            await self._on_data_frame(ws, frame)

    async def _on_data_frame(self, ws: Any, frame: Frame) -> None:
        try:
            payload = self._buffer.feed(frame)
        except ProtocolError as e:
            logger.warning(f"[飞书] 分片重组失败，丢弃: {e}")
            return
        if payload is None:
            return

        started = time.monotonic()
        if frame.message_type == MessageType.EVENT:
            try:
                self._handle_event(payload)
            except ProtocolError as e:
                logger.warning(f"[飞书] 丢弃无法解析的事件: {e}")
        else:
            logger.debug(f"[飞书] 忽略消息类型: {frame.message_type}")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        response = copy_with_payload(
            frame, ACK_PAYLOAD, (Header(HeaderKey.BIZ_RT, str(elapsed_ms)),)
        )
        try:
            await ws.send(encode_frame(response))
        except ConnectionClosed as e:
            logger.warning(f"[飞书] ACK 发送失败: {e}")

    def _handle_event(self, payload: bytes) -> None:
        fields = parse_message_event(payload)
        if fields is None or not fields["text"]:
            return

        chat_id = fields["chat_id"]
        message_id = fields["message_id"]
        chat_type = fields["chat_type"]

        timestamp = None
        if fields["create_time"]:
            try:
                timestamp = int(fields["create_time"]) / 1000
            except (TypeError, ValueError):
                timestamp = None

        inbound = InboundMessage(
            chat=FeishuChat(chat_id),
            principal=fields["open_id"],
            text=fields["text"],
            message_id=message_id,
            chat_type=chat_type,
            timestamp=timestamp,
        )

        # 单聊直接发到会话，群聊回复原消息
        async def reply(content: str) -> None:
            if chat_type == "p2p" or not message_id:
                await self.api.send_text(chat_id, content)
            else:
                await self.api.reply_text(message_id, content)

        if self._handler is not None:
            self._tasks.spawn(self._handler(inbound, reply))
