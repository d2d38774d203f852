"""
EVCam 远程控制 - 钉钉 Stream 后端

传输层委托给注入的 Stream SDK 客户端，本模块负责：
1. 按导入路径加载 SDK 客户端工厂 ('module:attr')。
2. 接收机器人消息回调 (topic /v1.0/im/bot/messages/get)，构造消息信封并分发。
3. 提供 SDK 缺少的重连策略。
"""

import importlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from ..api.dingtalk import DingTalkApiClient
from ..config import DingTalkConfig
from ..exceptions import ConfigError, TransportError
from ..models import DingTalkChat, InboundMessage
from ..state import ConnectionStatus
from .lifecycle import (
    ConnectionEvents,
    ConnectionSupervisor,
    HandlerTasks,
    ReconnectPolicy,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage, Callable[[str], Awaitable[None]]], Awaitable[Any]]

BOT_MESSAGE_TOPIC = "/v1.0/im/bot/messages/get"
ACK_SUCCESS = "SUCCESS"
ACK_LATER = "LATER"

StreamCallback = Callable[[str, dict], Awaitable[str]]


class StreamClient(Protocol):
    """Stream SDK 客户端的最小接口。"""

    async def connect(self) -> None: ...

    async def run_forever(self) -> None: ...

    async def close(self) -> None: ...


StreamClientFactory = Callable[[str, str, StreamCallback], StreamClient]


def load_stream_factory(path: str) -> StreamClientFactory:
    """按 'module:attr' 导入 SDK 客户端工厂。

    Raises:
        ConfigError: 路径格式错误、模块无法导入或对象不可调用。
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Stream 客户端工厂路径格式应为 'module:attr': {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"无法导入 Stream 客户端工厂模块 {module_name}: {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"Stream 客户端工厂不存在或不可调用: {path}")
    return factory


class DingTalkStreamManager:
    """钉钉 Stream 连接管理器。

    Args:
        config: 钉钉配置。
        api: 钉钉 API 客户端，默认按配置创建。
        client_factory: SDK 客户端工厂，缺省时按 config.stream_factory 加载。
        events: 连接事件回调。
        policy: 重连策略。
    """

    name = "钉钉"

    def __init__(
        self,
        config: DingTalkConfig,
        api: DingTalkApiClient | None = None,
        client_factory: StreamClientFactory | None = None,
        events: ConnectionEvents | None = None,
        policy: ReconnectPolicy | None = None,
    ) -> None:
        self.config = config
        self.api = api or DingTalkApiClient(
            config.client_id,
            config.client_secret,
            config.effective_robot_code,
            config.api_base,
            config.oapi_base,
        )
        self.events = events or ConnectionEvents()
        self._factory = client_factory
        self.stop_timeout = 5.0

        self.supervisor = ConnectionSupervisor(self.name, self._session, policy, self.events)
        self._tasks = HandlerTasks(self.name)
        self._handler: MessageHandler | None = None
        self._client: StreamClient | None = None

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
        """启动 Stream 连接。凭据或 SDK 工厂缺失时只触发 on_error。"""
        if not self.config.client_id or not self.config.client_secret:
            logger.error("[钉钉] Client ID / Client Secret 未配置")
            self.events.error("钉钉 Client ID / Client Secret 未配置")
            return

        if self._factory is None:
            if not self.config.stream_factory:
                logger.error("[钉钉] 未配置 Stream SDK 客户端工厂")
                self.events.error("未配置钉钉 Stream SDK 客户端工厂")
                return
            try:
                self._factory = load_stream_factory(self.config.stream_factory)
            except ConfigError as e:
                logger.error(f"[钉钉] {e}")
                self.events.error(str(e))
                return

        self._handler = handler
        self.supervisor.start()

    def request_stop(self) -> None:
        self.supervisor.request_stop()

    async def stop(self) -> None:
        self.supervisor.request_stop()
        client = self._client
        if client is not None:
            await self._close_client(client)
        await self.supervisor.wait_stopped(self.stop_timeout)
        await self._tasks.drain()

    # =========================================================================
    # 会话
    # =========================================================================

    async def _session(self) -> None:
        client = self._factory(
            self.config.client_id, self.config.client_secret, self.on_stream_message
        )
        self._client = client
        try:
            try:
                await client.connect()
            except (OSError, TimeoutError) as e:
                raise TransportError(f"Stream 连接失败: {e}") from e
            if self.supervisor.should_stop:
                return

            self.supervisor.mark_connected()
            try:
                await client.run_forever()
            except (OSError, TimeoutError) as e:
                raise TransportError(f"Stream 连接断开: {e}") from e
        finally:
            self._client = None
            await self._close_client(client)

    async def _close_client(self, client: StreamClient) -> None:
        try:
            await client.close()
        except (OSError, TimeoutError, TransportError) as e:
            logger.debug(f"[钉钉] 关闭 Stream 客户端时出错: {e}")

    # =========================================================================
    # 消息回调
    # =========================================================================

    async def on_stream_message(self, topic: str, data: dict) -> str:
        """SDK 回调：返回 ACK 状态 (SUCCESS / LATER)。"""
        if topic != BOT_MESSAGE_TOPIC:
            logger.debug(f"[钉钉] 忽略 topic: {topic}")
            return ACK_SUCCESS

        try:
            inbound = self._build_message(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"[钉钉] 处理消息失败: {e}")
            return ACK_LATER

        if inbound is None:
            return ACK_SUCCESS

        webhook = inbound.session_webhook

        async def reply(content: str) -> None:
            await self.api.reply_webhook(webhook, content)

        if self._handler is not None:
            self._tasks.spawn(self._handler(inbound, reply))
        return ACK_SUCCESS

    def _build_message(self, data: dict) -> InboundMessage | None:
        text = ((data.get("text") or {}).get("content") or "").strip()
        webhook = data.get("sessionWebhook") or ""
        if not text or not webhook:
            logger.debug("[钉钉] 消息缺少文本或 sessionWebhook，忽略")
            return None

        conversation_id = data.get("conversationId") or data.get("openConversationId") or ""
        conversation_type = str(data.get("conversationType") or "1")
        sender = data.get("senderStaffId") or data.get("senderId") or ""

        created = data.get("createAt")
        timestamp = int(created) / 1000 if created else None

        return InboundMessage(
            chat=DingTalkChat(conversation_id, conversation_type, sender),
            principal=sender,
            text=text,
            message_id=str(data.get("msgId") or ""),
            chat_type=conversation_type,
            session_webhook=webhook,
            timestamp=timestamp,
        )
