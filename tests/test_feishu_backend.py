# tests/test_feishu_backend.py
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from websockets.exceptions import ConnectionClosedError

from evcam_remote.api.feishu import WsEndpoint
from evcam_remote.backends.feishu import (
    FeishuSocketManager,
    parse_message_event,
    service_id_from_url,
)
from evcam_remote.backends.lifecycle import ConnectionEvents, ReconnectPolicy
from evcam_remote.config import FeishuConfig
from evcam_remote.exceptions import ProtocolError
from evcam_remote.models import FeishuChat
from evcam_remote.protocols import Frame, FrameMethod, Header, decode_frame, encode_frame
from evcam_remote.state import ConnectionStatus

WS_URL = "wss://msg-frontier.feishu.cn/ws/v2?device_id=1&service_id=77"


class FakeSocket:
    """内存 WebSocket：按队列投递消息，记录发送的帧。"""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[bytes] = []
        self.closed = False

    def push(self, item) -> None:
        self.incoming.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.push(None)


def _event_payload(text="拍照", chat_type="group", message_type="text", open_id="ou_admin"):
    return json.dumps(
        {
            "schema": "2.0",
            "header": {"event_type": "im.message.receive_v1"},
            "event": {
                "sender": {"sender_id": {"open_id": open_id}},
                "message": {
                    "message_id": "om_1",
                    "chat_id": "oc_1",
                    "chat_type": chat_type,
                    "message_type": message_type,
                    "content": json.dumps({"text": text}),
                    "create_time": "1700000000000",
                },
            },
        }
    ).encode("utf-8")


def _data_frame(payload: bytes, message_id="m1", total=1, seq=0, seq_id=5) -> bytes:
    return encode_frame(
        Frame(
            seq_id=seq_id,
            service=77,
            method=FrameMethod.DATA,
            headers=(
                Header("type", "event"),
                Header("message_id", message_id),
                Header("sum", str(total)),
                Header("seq", str(seq)),
            ),
            payload=payload,
        )
    )


@pytest.fixture
def api():
    mock = MagicMock()
    mock.get_ws_endpoint = AsyncMock(return_value=WsEndpoint(url=WS_URL))
    mock.send_text = AsyncMock()
    mock.reply_text = AsyncMock()
    return mock


@pytest.fixture
def events():
    return ConnectionEvents(on_connected=MagicMock(), on_disconnected=MagicMock(), on_error=MagicMock())


@pytest.fixture
def socket():
    return FakeSocket()


def _manager(config, api, events, socket, max_attempts=1):
    return FeishuSocketManager(
        config,
        api,
        events=events,
        policy=ReconnectPolicy(max_attempts=max_attempts, delay=0),
        connect=AsyncMock(return_value=socket),
    )


def _recording_handler():
    received = []
    arrived = asyncio.Event()

    async def handler(message, reply):
        received.append((message, reply))
        arrived.set()

    return handler, received, arrived


# --- 辅助函数 ---


def test_service_id_from_url():
    assert service_id_from_url(WS_URL) == 77
    assert service_id_from_url("wss://x/ws") == 0
    assert service_id_from_url("wss://x/ws?service_id=abc") == 0


def test_parse_message_event():
    fields = parse_message_event(_event_payload("@_user_1 状态"))
    assert fields["text"] == "@_user_1 状态"
    assert fields["open_id"] == "ou_admin"
    assert fields["chat_id"] == "oc_1"
    assert fields["chat_type"] == "group"


def test_parse_ignores_non_text_and_other_events():
    assert parse_message_event(_event_payload(message_type="image")) is None
    other = json.dumps({"header": {"event_type": "im.chat.updated_v1"}}).encode()
    assert parse_message_event(other) is None


def test_parse_invalid_json():
    with pytest.raises(ProtocolError):
        parse_message_event(b"{not json")


def _event_with(**overrides):
    data = json.loads(_event_payload("帮助"))
    for path, value in overrides.items():
        target = data
        *parents, leaf = path.split("__")
        for key in parents:
            target = target[key]
        target[leaf] = value
    return json.dumps(data).encode("utf-8")


@pytest.mark.parametrize(
    "overrides",
    [
        {"header": ["im.message.receive_v1"]},
        {"event": "oops"},
        {"event__message": 42},
        {"event__sender": ["ou_admin"]},
        {"event__sender__sender_id": "ou_admin"},
        {"event__message__content": '["x"]'},
        {"event__message__content": '"just a string"'},
        {"event__message__content": 123},
    ],
)
def test_parse_rejects_non_object_fields(overrides):
    with pytest.raises(ProtocolError):
        parse_message_event(_event_with(**overrides))


# --- 连接流程 ---


@pytest.mark.asyncio
async def test_event_is_acked_and_dispatched(feishu_config, api, events, socket):
    """DATA 帧：先回 ACK (code 200 + biz_rt)，消息交给处理器"""
    manager = _manager(feishu_config, api, events, socket)
    handler, received, arrived = _recording_handler()

    manager.start(handler)
    socket.push(_data_frame(_event_payload("拍照")))
    await asyncio.wait_for(arrived.wait(), timeout=1)

    message, reply = received[0]
    assert message.chat == FeishuChat("oc_1")
    assert message.principal == "ou_admin"
    assert message.text == "拍照"
    assert message.timestamp == 1_700_000_000

    assert len(socket.sent) == 1
    ack = decode_frame(socket.sent[0])
    assert ack.seq_id == 5
    assert json.loads(ack.payload) == {"code": 200}
    assert ack.header("biz_rt") is not None
    assert manager.is_connected

    # 群聊回复原消息
    await reply("收到")
    api.reply_text.assert_awaited_once_with("om_1", "收到")

    await manager.stop()
    assert manager.status == ConnectionStatus.STOPPED
    events.on_error.assert_not_called()


@pytest.mark.asyncio
async def test_p2p_reply_goes_to_chat(feishu_config, api, events, socket):
    manager = _manager(feishu_config, api, events, socket)
    handler, received, arrived = _recording_handler()

    manager.start(handler)
    socket.push(_data_frame(_event_payload("状态", chat_type="p2p")))
    await asyncio.wait_for(arrived.wait(), timeout=1)

    _, reply = received[0]
    await reply("运行中")
    api.send_text.assert_awaited_once_with("oc_1", "运行中")
    await manager.stop()


@pytest.mark.asyncio
async def test_fragmented_event_is_reassembled(feishu_config, api, events, socket):
    payload = _event_payload("录制30")
    half = len(payload) // 2
    manager = _manager(feishu_config, api, events, socket)
    handler, received, arrived = _recording_handler()

    manager.start(handler)
    socket.push(_data_frame(payload[half:], message_id="big", total=2, seq=1))
    socket.push(_data_frame(payload[:half], message_id="big", total=2, seq=0))
    await asyncio.wait_for(arrived.wait(), timeout=1)

    assert received[0][0].text == "录制30"
    # 只对完整消息回 ACK
    assert len(socket.sent) == 1
    await manager.stop()


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped(feishu_config, api, events, socket):
    """坏帧只丢弃自身，连接继续接收"""
    manager = _manager(feishu_config, api, events, socket)
    handler, received, arrived = _recording_handler()

    manager.start(handler)
    socket.push(b"\x08")  # 截断的 varint
    socket.push("text frame")
    socket.push(encode_frame(Frame(method=FrameMethod.CONTROL, headers=(Header("type", "pong"),))))
    socket.push(_data_frame(b"{broken json"))
    socket.push(_data_frame(_event_payload("帮助"), message_id="m2"))
    await asyncio.wait_for(arrived.wait(), timeout=1)

    assert [m.text for m, _ in received] == ["帮助"]
    assert manager.status == ConnectionStatus.CONNECTED
    await manager.stop()


@pytest.mark.asyncio
async def test_event_with_wrong_field_types_is_dropped(feishu_config, api, events, socket):
    """结构错误的事件被丢弃并 ACK，连接不受影响"""
    manager = _manager(feishu_config, api, events, socket)
    handler, received, arrived = _recording_handler()

    manager.start(handler)
    socket.push(_data_frame(_event_with(event__message__content='["x"]'), seq_id=1))
    socket.push(_data_frame(_event_with(event__sender="ou_admin"), message_id="m2", seq_id=2))
    socket.push(_data_frame(_event_payload("帮助"), message_id="m3", seq_id=3))
    await asyncio.wait_for(arrived.wait(), timeout=1)

    assert [m.text for m, _ in received] == ["帮助"]
    assert [decode_frame(raw).seq_id for raw in socket.sent] == [1, 2, 3]
    assert manager.status == ConnectionStatus.CONNECTED
    await manager.stop()
    events.on_error.assert_not_called()


@pytest.mark.asyncio
async def test_heartbeat_sends_ping(feishu_config, api, events, socket):
    manager = _manager(feishu_config, api, events, socket)
    manager.ping_interval = 0.01

    manager.start(AsyncMock())
    for _ in range(100):
        if socket.sent:
            break
        await asyncio.sleep(0.01)

    ping = decode_frame(socket.sent[0])
    assert ping.is_control
    assert ping.message_type == "ping"
    assert ping.service == 77
    assert manager.supervisor.state.heartbeat_task is not None

    await manager.stop()
    assert manager.supervisor.state.heartbeat_task is None


@pytest.mark.asyncio
async def test_unexpected_close_triggers_reconnect_policy(feishu_config, api, events, socket):
    manager = _manager(feishu_config, api, events, socket, max_attempts=1)

    manager.start(AsyncMock())
    socket.push(ConnectionClosedError(None, None))
    await manager.supervisor.wait_stopped(timeout=1)
    await asyncio.sleep(0)

    events.on_connected.assert_called_once()
    events.on_disconnected.assert_called_once()
    events.on_error.assert_called_once()
    assert manager.status == ConnectionStatus.STOPPED


@pytest.mark.asyncio
async def test_connect_failure_reports_error(feishu_config, api, events):
    manager = FeishuSocketManager(
        feishu_config,
        api,
        events=events,
        policy=ReconnectPolicy(max_attempts=2, delay=0),
        connect=AsyncMock(side_effect=OSError("网络不可达")),
    )

    manager.start(AsyncMock())
    await manager.supervisor.wait_stopped(timeout=1)
    await asyncio.sleep(0)

    assert api.get_ws_endpoint.await_count == 2
    events.on_disconnected.assert_not_called()
    events.on_error.assert_called_once()
    assert "网络不可达" in events.on_error.call_args.args[0]


@pytest.mark.asyncio
async def test_missing_credentials(api, events):
    config = FeishuConfig(app_id="", app_secret="")
    connect = AsyncMock()
    manager = FeishuSocketManager(config, api, events=events, connect=connect)

    manager.start(AsyncMock())
    await asyncio.sleep(0)

    events.on_error.assert_called_once()
    connect.assert_not_called()
    api.get_ws_endpoint.assert_not_awaited()
