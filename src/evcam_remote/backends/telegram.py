"""
EVCam 远程控制 - Telegram 轮询后端

基于 getUpdates 长轮询：
1. getMe 校验令牌，随后以 offset=-1 抢占可能残留的旧轮询。
2. 循环拉取更新，按到达顺序处理；update_id 游标单调推进并在每条更新后持久化。
3. 超出新鲜度窗口的消息静默丢弃 (游标照常推进)。
4. 409 冲突单独计数重试，耗尽后只记录日志并停止轮询。
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ..api.telegram import TelegramApiClient
from ..config import TelegramConfig
from ..devices import CursorStore, JsonCursorStore
from ..exceptions import ConflictError, TransportError
from ..models import InboundMessage, TelegramChat
from ..state import ConnectionStatus
from .lifecycle import (
    ConnectionEvents,
    ConnectionSupervisor,
    HandlerTasks,
    ReconnectPolicy,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage, Callable[[str], Awaitable[None]]], Awaitable[Any]]

CONFLICT_RETRY_DELAY = 10.0
MAX_CONFLICT_RETRIES = 3
POLL_ERROR_DELAY = 1.0
PREEMPT_CONFLICT_DELAY = 3.0
PREEMPT_SETTLE_DELAY = 0.5


class TelegramPollManager:
    """Telegram 长轮询连接管理器。

    Args:
        config: Telegram 配置。
        api: Bot API 客户端，默认按配置创建。
        cursor: 游标存储，默认写入 config.cursor_path。
        events: 连接事件回调。
        policy: 启动阶段的重连策略。
        clock: 墙上时钟 (秒)，用于新鲜度判断。
    """

    name = "Telegram"

    def __init__(
        self,
        config: TelegramConfig,
        api: TelegramApiClient | None = None,
        cursor: CursorStore | None = None,
        events: ConnectionEvents | None = None,
        policy: ReconnectPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.api = api or TelegramApiClient(config.bot_token, config.api_host)
        self.cursor = cursor or JsonCursorStore(config.cursor_path)
        self.events = events or ConnectionEvents()
        self._clock = clock

        self.conflict_retry_delay = CONFLICT_RETRY_DELAY
        self.max_conflict_retries = MAX_CONFLICT_RETRIES
        self.poll_error_delay = POLL_ERROR_DELAY
        self.preempt_conflict_delay = PREEMPT_CONFLICT_DELAY
        self.preempt_settle_delay = PREEMPT_SETTLE_DELAY
        self.stop_timeout = 3.0

        self.supervisor = ConnectionSupervisor(self.name, self._session, policy, self.events)
        self._tasks = HandlerTasks(self.name)
        self._handler: MessageHandler | None = None
        self.last_update_id = 0

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
        """启动轮询。令牌缺失时只触发 on_error，不发起任何请求。"""
        if not self.config.bot_token:
            logger.error("[Telegram] Bot Token 未配置")
            self.events.error("Telegram Bot Token 未配置")
            return

        self._handler = handler
        self.last_update_id = self.cursor.load()
        logger.info(f"[Telegram] 启动轮询，游标 update_id={self.last_update_id}")
        self.supervisor.start()

    def request_stop(self) -> None:
        self.supervisor.request_stop()

    async def stop(self) -> None:
        self.supervisor.request_stop()
        await self.supervisor.wait_stopped(self.stop_timeout)
        await self._tasks.drain()

    # =========================================================================
    # 会话
    # =========================================================================

    async def _session(self) -> None:
        me = await self.api.get_me()
        logger.info(f"[Telegram] Bot 已验证: @{me.get('username', '?')}")

        await self._preempt()
        if self.supervisor.should_stop:
            return

        self.supervisor.mark_connected()
        await self._poll_loop()

    async def _preempt(self) -> None:
        """抢占旧的长轮询连接，避免启动即遭遇 409。"""
        try:
            await self.api.get_updates(offset=-1, timeout=0, limit=1)
            await self.supervisor.sleep(self.preempt_settle_delay)
        except ConflictError:
            logger.info(f"[Telegram] 旧轮询仍在进行，等待 {self.preempt_conflict_delay:g}s")
            await self.supervisor.sleep(self.preempt_conflict_delay)
        except TransportError as e:
            logger.warning(f"[Telegram] 抢占旧轮询失败 (忽略): {e}")

    async def _poll_loop(self) -> None:
        state = self.supervisor.state
        while not self.supervisor.should_stop:
            try:
                updates = await self.api.get_updates(
                    offset=self.last_update_id + 1,
                    timeout=self.config.poll_timeout,
                    limit=self.config.poll_limit,
                )
                state.conflict_retries = 0
            except ConflictError as e:
                state.conflict_retries += 1
                if state.conflict_retries > self.max_conflict_retries:
                    logger.error(
                        f"[Telegram] 轮询冲突重试 {self.max_conflict_retries} 次仍失败，"
                        f"停止轮询: {e}"
                    )
                    self.supervisor.request_stop()
                    return
                logger.warning(
                    f"[Telegram] 轮询冲突 ({state.conflict_retries}/"
                    f"{self.max_conflict_retries})，{self.conflict_retry_delay:g}s 后重试"
                )
                await self.supervisor.sleep(self.conflict_retry_delay)
                continue
            except TransportError as e:
                state.conflict_retries = 0
                logger.warning(f"[Telegram] 轮询失败: {e}")
                await self.supervisor.sleep(self.poll_error_delay)
                continue

            for update in updates or []:
                self._process_update(update)

    # =========================================================================
    # 更新处理
    # =========================================================================

    def _advance_cursor(self, update_id: int) -> None:
        self.last_update_id = update_id
        try:
            self.cursor.save(update_id)
        except OSError as e:
            logger.error(f"[Telegram] 游标保存失败: {e}")

    def _process_update(self, update: dict) -> None:
        update_id = update.get("update_id")
        if not isinstance(update_id, int) or update_id <= self.last_update_id:
            return
        self._advance_cursor(update_id)

        message = update.get("message")
        if not isinstance(message, dict):
            return
        text = message.get("text")
        if not text:
            return

        date = message.get("date")
        if isinstance(date, (int, float)):
            age = self._clock() - date
            if age > self.config.message_expire_seconds:
                logger.debug(f"[Telegram] 丢弃过期消息 (update_id={update_id}, {age:.0f}s 前)")
                return

        chat = message.get("chat")
        chat_id = chat.get("id") if isinstance(chat, dict) else None
        try:
            chat_id = int(chat_id)
        except (TypeError, ValueError):
            logger.debug(f"[Telegram] 跳过无效会话的更新 (update_id={update_id}): {chat!r}")
            return

        inbound = InboundMessage(
            chat=TelegramChat(chat_id),
            principal=str(chat_id),
            text=text,
            message_id=str(message.get("message_id", "")),
            chat_type=str(chat.get("type") or ""),
            timestamp=float(date) if isinstance(date, (int, float)) else None,
        )

        async def reply(content: str) -> None:
            await self.api.send_message(chat_id, content)

        if self._handler is not None:
            self._tasks.spawn(self._handler(inbound, reply))
