# src/evcam_remote/protocols/frame.py
"""
EVCam 远程控制 - 帧编解码

飞书长连接上传输的二进制帧。CONTROL 帧仅携带头部 (ping / pong)，
DATA 帧携带事件载荷以及 message_id / trace_id / sum / seq 头部。

帧一经构建即不可变；响应路径通过 copy_with_payload 构造新帧。
"""

import logging
from dataclasses import dataclass, replace
from enum import IntEnum

from ..exceptions import CodecError
from .constants import FrameField, HeaderField, HeaderKey, MessageType, WireType
from .wire import WireReader, WireWriter, to_int32

logger = logging.getLogger(__name__)


class FrameMethod(IntEnum):
    CONTROL = 0
    DATA = 1


@dataclass(frozen=True)
class Header:
    key: str
    value: str


@dataclass(frozen=True)
class Frame:
    """二进制协议帧。

    Attributes:
        seq_id: 序列号 (uint64)。
        log_id: 日志 ID (uint64)。
        service: 服务 ID (int32)，取自连接 URL 的 service_id 参数。
        method: CONTROL(0) 或 DATA(1)。
        headers: 有序头部列表，允许重复键，查找时取第一个匹配项。
        payload_encoding: 载荷编码提示 (可选)。
        payload_type: 载荷类型提示 (可选)。
        payload: 载荷字节 (可选)。
        log_id_new: 新版字符串日志 ID (可选)。
    """

    seq_id: int = 0
    log_id: int = 0
    service: int = 0
    method: int = FrameMethod.CONTROL
    headers: tuple[Header, ...] = ()
    payload_encoding: str = ""
    payload_type: str = ""
    payload: bytes = b""
    log_id_new: str = ""

    def header(self, key: str, default: str | None = None) -> str | None:
        """返回第一个键为 key 的头部值。"""
        for h in self.headers:
            if h.key == key:
                return h.value
        return default

    @property
    def message_type(self) -> str:
        return self.header(HeaderKey.TYPE, "") or ""

    @property
    def is_control(self) -> bool:
        return self.method == FrameMethod.CONTROL

    @property
    def is_data(self) -> bool:
        return self.method == FrameMethod.DATA


# =========================================================================
# 编码
# =========================================================================


def _encode_header(header: Header) -> bytes:
    w = WireWriter()
    w.write_string(HeaderField.KEY, header.key)
    w.write_string(HeaderField.VALUE, header.value)
    return w.to_bytes()


def encode_frame(frame: Frame) -> bytes:
    """将帧编码为字节流。

    字段 1-4 总是写出；其余可选字段仅在非空时写出。
    """
    w = WireWriter()
    w.write_uint(FrameField.SEQ_ID, frame.seq_id)
    w.write_uint(FrameField.LOG_ID, frame.log_id)
    w.write_uint(FrameField.SERVICE, frame.service)
    w.write_uint(FrameField.METHOD, int(frame.method))

    for h in frame.headers:
        w.write_bytes(FrameField.HEADERS, _encode_header(h))

    if frame.payload_encoding:
        w.write_string(FrameField.PAYLOAD_ENCODING, frame.payload_encoding)
    if frame.payload_type:
        w.write_string(FrameField.PAYLOAD_TYPE, frame.payload_type)
    if frame.payload:
        w.write_bytes(FrameField.PAYLOAD, frame.payload)
    if frame.log_id_new:
        w.write_string(FrameField.LOG_ID_NEW, frame.log_id_new)

    return w.to_bytes()


# =========================================================================
# 解码
# =========================================================================


def _expect(field_number: int, wire_type: int, expected: int) -> None:
    if wire_type != expected:
        raise CodecError(
            f"字段 {field_number} 线型不匹配: 期望 {expected}，实际 {wire_type}"
        )


def _decode_header(data: bytes) -> Header:
    r = WireReader(data)
    key = ""
    value = ""
    while not r.at_end:
        field_number, wire_type = r.read_tag()
        if field_number == 0:
            break
        if field_number == HeaderField.KEY:
            _expect(field_number, wire_type, WireType.LENGTH_DELIMITED)
            key = r.read_string()
        elif field_number == HeaderField.VALUE:
            _expect(field_number, wire_type, WireType.LENGTH_DELIMITED)
            value = r.read_string()
        else:
            r.skip(wire_type)
    return Header(key, value)


def decode_frame(data: bytes) -> Frame:
    """将字节流解码为帧。

    未知字段按线型跳过；tag 为 0 视为消息结束。

    Args:
        data: 原始 WebSocket 二进制消息。

    Returns:
        Frame: 解码后的帧。

    Raises:
        CodecError: 字节流截断、长度越界、线型不支持或字符串非 UTF-8。
    """
    r = WireReader(data)
    fields: dict[str, object] = {}
    headers: list[Header] = []

    while not r.at_end:
        field_number, wire_type = r.read_tag()
        if field_number == 0:
            break

        if field_number == FrameField.SEQ_ID:
            _expect(field_number, wire_type, WireType.VARINT)
            fields["seq_id"] = r.read_varint()
        elif field_number == FrameField.LOG_ID:
            _expect(field_number, wire_type, WireType.VARINT)
            fields["log_id"] = r.read_varint()
        elif field_number == FrameField.SERVICE:
            _expect(field_number, wire_type, WireType.VARINT)
            fields["service"] = to_int32(r.read_varint())
        elif field_number == FrameField.METHOD:
            _expect(field_number, wire_type, WireType.VARINT)
            fields["method"] = to_int32(r.read_varint())
        elif field_number == FrameField.HEADERS:
            _expect(field_number, wire_type, WireType.LENGTH_DELIMITED)
            headers.append(_decode_header(r.read_bytes()))
        elif field_number == FrameField.PAYLOAD_ENCODING:
            _expect(field_number, wire_type, WireType.LENGTH_DELIMITED)
            fields["payload_encoding"] = r.read_string()
        elif field_number == FrameField.PAYLOAD_TYPE:
            _expect(field_number, wire_type, WireType.LENGTH_DELIMITED)
            fields["payload_type"] = r.read_string()
        elif field_number == FrameField.PAYLOAD:
            _expect(field_number, wire_type, WireType.LENGTH_DELIMITED)
            fields["payload"] = r.read_bytes()
        elif field_number == FrameField.LOG_ID_NEW:
            _expect(field_number, wire_type, WireType.LENGTH_DELIMITED)
            fields["log_id_new"] = r.read_string()
        else:
            logger.debug(f"跳过未知字段 {field_number} (wire_type={wire_type})")
            r.skip(wire_type)

    method = fields.get("method", FrameMethod.CONTROL)
    if method in (FrameMethod.CONTROL, FrameMethod.DATA):
        fields["method"] = FrameMethod(method)

    return Frame(headers=tuple(headers), **fields)  # type: ignore[arg-type]


# =========================================================================
# 构造辅助
# =========================================================================


def ping_frame(service_id: int) -> Frame:
    """构造心跳 ping 帧 (CONTROL, type=ping)。"""
    return Frame(
        seq_id=0,
        log_id=0,
        service=service_id,
        method=FrameMethod.CONTROL,
        headers=(Header(HeaderKey.TYPE, MessageType.PING),),
    )


def copy_with_payload(
    frame: Frame, payload: bytes, extra_headers: tuple[Header, ...] = ()
) -> Frame:
    """复制请求帧并替换载荷，用于构造响应帧。

    Args:
        frame: 原请求帧。
        payload: 新载荷。
        extra_headers: 追加到原头部之后的额外头部 (如 biz_rt)。
    """
    return replace(frame, payload=payload, headers=frame.headers + extra_headers)
