# tests/test_telegram_backend.py
import asyncio
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from evcam_remote.backends.lifecycle import ConnectionEvents, ReconnectPolicy
from evcam_remote.backends.telegram import TelegramPollManager
from evcam_remote.config import TelegramConfig
from evcam_remote.exceptions import ConflictError, TransportError
from evcam_remote.models import TelegramChat
from evcam_remote.state import ConnectionStatus

NOW = 1_700_000_000.0


class MemoryCursor:
    def __init__(self, start: int = 0) -> None:
        self.start = start
        self.saved: list[int] = []

    def load(self) -> int:
        return self.start

    def save(self, update_id: int) -> None:
        self.saved.append(update_id)


def _update(update_id: int, text: str = "状态", chat_id: int = 100, age: float = 5) -> dict:
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id * 10,
            "date": int(NOW - age),
            "chat": {"id": chat_id, "type": "private"},
            "text": text,
        },
    }


def _script(manager: TelegramPollManager, *steps):
    """按顺序返回 getUpdates 结果；脚本耗尽后请求停止。"""
    it = iter(steps)

    def side_effect(*args, **kwargs):
        try:
            step = next(it)
        except StopIteration:
            manager.request_stop()
            return []
        if isinstance(step, Exception):
            raise step
        return step

    return side_effect


@pytest.fixture
def api():
    mock = MagicMock()
    mock.get_me = AsyncMock(return_value={"username": "evcam_bot"})
    mock.get_updates = AsyncMock()
    mock.send_message = AsyncMock()
    return mock


@pytest.fixture
def events():
    return ConnectionEvents(on_connected=MagicMock(), on_disconnected=MagicMock(), on_error=MagicMock())


def _manager(config, api, events, cursor=None, max_attempts=1) -> TelegramPollManager:
    manager = TelegramPollManager(
        config,
        api,
        cursor=cursor or MemoryCursor(),
        events=events,
        policy=ReconnectPolicy(max_attempts=max_attempts, delay=0),
        clock=lambda: NOW,
    )
    manager.conflict_retry_delay = 0
    manager.poll_error_delay = 0
    manager.preempt_conflict_delay = 0
    manager.preempt_settle_delay = 0
    return manager


async def _run_to_end(manager: TelegramPollManager) -> None:
    await manager.supervisor.wait_stopped(timeout=2)
    await manager._tasks.drain(timeout=1)
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_poll_dispatches_and_advances_cursor(telegram_config, api, events):
    """新消息被分发，过期与重复更新被跳过，游标逐条持久化"""
    cursor = MemoryCursor(start=9)
    manager = _manager(telegram_config, api, events, cursor)
    api.get_updates.side_effect = _script(
        manager,
        [],  # 抢占旧轮询
        [_update(11, "状态"), _update(12, "拍照", age=700), _update(10, "录制")],
    )
    handler = AsyncMock()

    manager.start(handler)
    await _run_to_end(manager)

    handler.assert_awaited_once()
    message, reply = handler.await_args.args
    assert message.text == "状态"
    assert message.chat == TelegramChat(100)
    assert message.principal == "100"

    assert cursor.saved == [11, 12]
    assert manager.last_update_id == 12

    assert api.get_updates.await_args_list[0] == call(offset=-1, timeout=0, limit=1)
    assert api.get_updates.await_args_list[1] == call(offset=10, timeout=30, limit=5)
    assert api.get_updates.await_args_list[2] == call(offset=13, timeout=30, limit=5)

    await reply("好的")
    api.send_message.assert_awaited_once_with(100, "好的")
    events.on_connected.assert_called_once()


@pytest.mark.asyncio
async def test_updates_without_text_still_advance_cursor(telegram_config, api, events):
    cursor = MemoryCursor()
    manager = _manager(telegram_config, api, events, cursor)
    api.get_updates.side_effect = _script(
        manager, [], [{"update_id": 1, "message": {"chat": {"id": 1}, "photo": []}}, {"update_id": 2}]
    )
    handler = AsyncMock()

    manager.start(handler)
    await _run_to_end(manager)

    handler.assert_not_awaited()
    assert cursor.saved == [1, 2]


@pytest.mark.asyncio
async def test_updates_with_invalid_chat_are_skipped(telegram_config, api, events):
    """会话字段异常的更新被跳过，轮询继续处理后续消息"""
    cursor = MemoryCursor()
    manager = _manager(telegram_config, api, events, cursor)
    bad_id = _update(1)
    bad_id["message"]["chat"]["id"] = "not-a-number"
    bad_chat = _update(2)
    bad_chat["message"]["chat"] = ["private"]
    api.get_updates.side_effect = _script(manager, [], [bad_id, bad_chat, _update(3, "帮助", chat_id="-100")])
    handler = AsyncMock()

    manager.start(handler)
    await _run_to_end(manager)

    handler.assert_awaited_once()
    message, _ = handler.await_args.args
    assert message.text == "帮助"
    assert message.chat == TelegramChat(-100)
    assert cursor.saved == [1, 2, 3]
    events.on_error.assert_not_called()


@pytest.mark.asyncio
async def test_conflict_exhaustion_stops_silently(telegram_config, api, events):
    """409 冲突重试 3 次后停止轮询，只记录日志，不触发 on_error"""
    manager = _manager(telegram_config, api, events)
    api.get_updates.side_effect = _script(manager, [], *[ConflictError() for _ in range(10)])

    manager.start(AsyncMock())
    await _run_to_end(manager)

    # 1 次抢占 + 3 次重试 + 1 次耗尽
    assert api.get_updates.await_count == 5
    assert manager.status == ConnectionStatus.STOPPED
    events.on_error.assert_not_called()
    events.on_disconnected.assert_called_once()


@pytest.mark.asyncio
async def test_other_errors_reset_conflict_counter(telegram_config, api, events):
    manager = _manager(telegram_config, api, events)
    api.get_updates.side_effect = _script(
        manager,
        [],
        ConflictError(),
        ConflictError(),
        TransportError("超时"),
        ConflictError(),
        ConflictError(),
        ConflictError(),
    )

    manager.start(AsyncMock())
    await _run_to_end(manager)

    assert api.get_updates.await_count == 8
    events.on_error.assert_not_called()


@pytest.mark.asyncio
async def test_preempt_conflict_waits(telegram_config, api, events):
    manager = _manager(telegram_config, api, events)
    manager.preempt_conflict_delay = 3.0
    manager.supervisor.sleep = AsyncMock(return_value=False)
    api.get_updates.side_effect = _script(manager, ConflictError())

    manager.start(AsyncMock())
    await _run_to_end(manager)

    assert manager.supervisor.sleep.await_args_list[0] == call(3.0)


@pytest.mark.asyncio
async def test_startup_failure_uses_reconnect_policy(telegram_config, api, events):
    api.get_me.side_effect = TransportError("Telegram API 错误 401: Unauthorized", status_code=401)
    manager = _manager(telegram_config, api, events, max_attempts=2)

    manager.start(AsyncMock())
    await _run_to_end(manager)

    assert api.get_me.await_count == 2
    events.on_error.assert_called_once()
    assert "Unauthorized" in events.on_error.call_args.args[0]
    events.on_connected.assert_not_called()


@pytest.mark.asyncio
async def test_missing_token_reports_error(tmp_path, api, events):
    config = TelegramConfig(bot_token="", cursor_path=tmp_path / "c.json")
    manager = _manager(config, api, events)

    manager.start(AsyncMock())
    await asyncio.sleep(0)

    events.on_error.assert_called_once()
    api.get_me.assert_not_awaited()
    assert not manager.supervisor.is_running
    assert manager.status == ConnectionStatus.IDLE


@pytest.mark.asyncio
async def test_stop_during_long_poll(telegram_config, api, events):
    """stop() 在长轮询进行中也能按时返回"""
    manager = _manager(telegram_config, api, events)
    manager.stop_timeout = 0.1
    poll_started = asyncio.Event()

    async def slow_poll(**kwargs):
        if kwargs.get("offset") == -1:
            return []
        poll_started.set()
        await asyncio.sleep(30)
        return []

    api.get_updates.side_effect = slow_poll
    manager.start(AsyncMock())
    await asyncio.wait_for(poll_started.wait(), timeout=1)

    await asyncio.wait_for(manager.stop(), timeout=2)
    assert manager.status == ConnectionStatus.STOPPED
    assert not manager.is_connected
