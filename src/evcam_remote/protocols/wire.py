# src/evcam_remote/protocols/wire.py
"""
EVCam 远程控制 - 线格式读写

实现帧协议所需的最小 protobuf 线格式子集：
varint、定长 32/64 位跳过、长度前缀字节串。
"""

from ..exceptions import CodecError
from .constants import MAX_VARINT_BYTES, UINT64_MASK, WireType


def to_int32(value: int) -> int:
    """将 varint 解出的无符号值按补码截断为有符号 int32。"""
    value &= 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


class WireReader:
    """顺序读取线格式字节流。所有越界读取均抛出 CodecError。"""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    @property
    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def read_varint(self) -> int:
        result = 0
        shift = 0
        for _ in range(MAX_VARINT_BYTES):
            if self._pos >= len(self._data):
                raise CodecError(f"varint 被截断 (offset={self._pos})")
            b = self._data[self._pos]
            self._pos += 1
            result |= (b & 0x7F) << shift
            if not b & 0x80:
                return result & UINT64_MASK
            shift += 7
        raise CodecError(f"varint 超过 {MAX_VARINT_BYTES} 字节")

    def read_tag(self) -> tuple[int, int]:
        """读取 tag，返回 (字段编号, 线型)。"""
        tag = self.read_varint()
        return tag >> 3, tag & 0x07

    def read_bytes(self) -> bytes:
        length = self.read_varint()
        end = self._pos + length
        if end > len(self._data):
            raise CodecError(
                f"长度前缀越界: 需要 {length} 字节，剩余 {len(self._data) - self._pos}"
            )
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def read_string(self) -> str:
        raw = self.read_bytes()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CodecError(f"字符串不是合法的 UTF-8: {e}") from e

    def _advance(self, count: int) -> None:
        if self._pos + count > len(self._data):
            raise CodecError(f"定长字段被截断 (需要 {count} 字节)")
        self._pos += count

    def skip(self, wire_type: int) -> None:
        """按线型跳过未知字段。"""
        if wire_type == WireType.VARINT:
            self.read_varint()
        elif wire_type == WireType.FIXED64:
            self._advance(8)
        elif wire_type == WireType.LENGTH_DELIMITED:
            self.read_bytes()
        elif wire_type == WireType.FIXED32:
            self._advance(4)
        else:
            raise CodecError(f"不支持的线型: {wire_type}")


class WireWriter:
    """线格式写入器。"""

    def __init__(self) -> None:
        self._buf = bytearray()

    def write_varint(self, value: int) -> None:
        # 负数按 64 位补码编码 (与 int32/int64 的 protobuf 语义一致)
        value &= UINT64_MASK
        while True:
            b = value & 0x7F
            value >>= 7
            if value:
                self._buf.append(b | 0x80)
            else:
                self._buf.append(b)
                return

    def write_tag(self, field_number: int, wire_type: int) -> None:
        self.write_varint((field_number << 3) | wire_type)

    def write_uint(self, field_number: int, value: int) -> None:
        self.write_tag(field_number, WireType.VARINT)
        self.write_varint(value)

    def write_bytes(self, field_number: int, value: bytes) -> None:
        self.write_tag(field_number, WireType.LENGTH_DELIMITED)
        self.write_varint(len(value))
        self._buf.extend(value)

    def write_string(self, field_number: int, value: str) -> None:
        self.write_bytes(field_number, value.encode("utf-8"))

    def to_bytes(self) -> bytes:
        return bytes(self._buf)
