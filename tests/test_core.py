# tests/test_core.py
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from evcam_remote import RemoteCore
from evcam_remote.api.feishu import FeishuApiClient
from evcam_remote.api.telegram import TelegramApiClient
from evcam_remote.backends import FeishuSocketManager, TelegramPollManager
from evcam_remote.config import AllowList, RemoteConfig, TelegramConfig
from evcam_remote.models import InboundMessage, Platform, TelegramChat
from evcam_remote.state import ConnectionStatus


@pytest.fixture
def config(telegram_config, feishu_config, tmp_path):
    return RemoteConfig(
        telegram=telegram_config,
        feishu=feishu_config,
        video_dirs=(tmp_path,),
        photo_dirs=(tmp_path,),
    )


def _mock_managers(core: RemoteCore) -> dict:
    """把各通道的连接管理器和 HTTP 客户端替换为 Mock。"""
    managers = {}
    for platform, channel in core.channels.items():
        manager = MagicMock()
        manager.stop = AsyncMock()
        manager.status = ConnectionStatus.CONNECTED
        manager.is_connected = platform is Platform.TELEGRAM
        manager.supervisor.is_running = True
        channel.manager = manager
        channel.api = MagicMock(aclose=AsyncMock())
        managers[platform] = manager
    return managers


@pytest.mark.asyncio
async def test_channels_built_for_enabled_platforms(config, camera):
    core = RemoteCore(config, camera=camera)

    assert list(core.channels) == [Platform.TELEGRAM, Platform.FEISHU]
    tg = core.channels[Platform.TELEGRAM]
    assert isinstance(tg.api, TelegramApiClient)
    assert isinstance(tg.manager, TelegramPollManager)
    assert isinstance(core.channels[Platform.FEISHU].api, FeishuApiClient)
    assert isinstance(core.channels[Platform.FEISHU].manager, FeishuSocketManager)
    # 每个平台注册一个远程处理器
    assert set(core.remote.handlers) == {Platform.TELEGRAM, Platform.FEISHU}

    for channel in core.channels.values():
        await channel.api.aclose()


@pytest.mark.asyncio
async def test_no_platforms_configured():
    core = RemoteCore(RemoteConfig())
    assert core.channels == {}
    assert not core.is_running
    await core.stop()


@pytest.mark.asyncio
async def test_start_and_stop_lifecycle(config, camera):
    listener = MagicMock()
    core = RemoteCore(config, camera=camera, status_callback=listener)
    managers = _mock_managers(core)

    core.start()
    for platform, manager in managers.items():
        manager.start.assert_called_once_with(core.channels[platform].dispatcher.dispatch)

    assert core.is_running
    assert core.is_any_connected
    assert core.connection_status() == {
        Platform.TELEGRAM: ConnectionStatus.CONNECTED,
        Platform.FEISHU: ConnectionStatus.CONNECTED,
    }

    await core.stop()
    await asyncio.sleep(0)

    for platform, manager in managers.items():
        manager.stop.assert_awaited_once()
        core.channels[platform].api.aclose.assert_awaited_once()

    statuses = [c.args[:2] for c in listener.call_args_list]
    assert statuses == [
        (Platform.TELEGRAM, ConnectionStatus.CONNECTING),
        (Platform.FEISHU, ConnectionStatus.CONNECTING),
        (Platform.TELEGRAM, ConnectionStatus.STOPPED),
        (Platform.FEISHU, ConnectionStatus.STOPPED),
    ]


@pytest.mark.asyncio
async def test_backend_events_reach_listeners(config):
    core = RemoteCore(config)
    sync_listener = MagicMock()
    async_listener = AsyncMock()
    core.add_listener(sync_listener)
    core.add_listener(async_listener)
    core.add_listener(sync_listener)

    events = core.channels[Platform.FEISHU].manager.events
    events.connected()
    events.error("重连失败 5 次，已停止: 网络不可达")
    for _ in range(3):
        await asyncio.sleep(0)

    assert sync_listener.call_count == 2
    sync_listener.assert_any_call(Platform.FEISHU, ConnectionStatus.CONNECTED, "已连接")
    sync_listener.assert_called_with(
        Platform.FEISHU, ConnectionStatus.STOPPED, "重连失败 5 次，已停止: 网络不可达"
    )
    assert async_listener.await_count == 2

    core.remove_listener(sync_listener)
    events.disconnected()
    for _ in range(3):
        await asyncio.sleep(0)
    assert sync_listener.call_count == 2

    for channel in core.channels.values():
        await channel.api.aclose()


@pytest.mark.asyncio
async def test_dispatcher_wired_to_device_and_allow_list(tmp_path, camera):
    config = RemoteConfig(
        telegram=TelegramConfig(
            bot_token="1:T",
            allowed_chat_ids=AllowList.parse("1001"),
            cursor_path=tmp_path / "cursor.json",
        )
    )
    core = RemoteCore(config, camera=camera)
    dispatcher = core.channels[Platform.TELEGRAM].dispatcher
    reply = AsyncMock()

    allowed = InboundMessage(chat=TelegramChat(1001), principal="1001", text="状态")
    await dispatcher.dispatch(allowed, reply)
    reply.assert_awaited_once_with("📷 相机正常")

    reply.reset_mock()
    stranger = InboundMessage(chat=TelegramChat(2002), principal="2002", text="状态")
    assert await dispatcher.dispatch(stranger, reply) is None
    reply.assert_not_awaited()

    await core.channels[Platform.TELEGRAM].api.aclose()


@pytest.mark.asyncio
async def test_dingtalk_factory_is_passed_through(dingtalk_config):
    factory = MagicMock()
    core = RemoteCore(RemoteConfig(dingtalk=dingtalk_config), dingtalk_client_factory=factory)

    manager = core.channels[Platform.DINGTALK].manager
    assert manager._factory is factory
    await core.channels[Platform.DINGTALK].api.aclose()


@pytest.mark.asyncio
async def test_start_if_enabled_respects_auto_start(telegram_config):
    core = RemoteCore(RemoteConfig(telegram=telegram_config, auto_start=False))
    managers = _mock_managers(core)

    assert core.start_if_enabled() is False
    managers[Platform.TELEGRAM].start.assert_not_called()

    core = RemoteCore(RemoteConfig(telegram=telegram_config))
    managers = _mock_managers(core)
    assert core.start_if_enabled() is True
    managers[Platform.TELEGRAM].start.assert_called_once()
