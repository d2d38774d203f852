# src/evcam_remote/protocols/__init__.py
"""
EVCam 远程控制 - 帧协议层 (Protocol Layer)

本包负责飞书长连接二进制帧的纯粹编码 (Encode) 与解码 (Decode)，以及分片重组。

- 不包含任何 socket 操作或网络 I/O。
- 不依赖于 backends 或 api 层。
"""

from . import constants
from .frame import (
    Frame,
    FrameMethod,
    Header,
    copy_with_payload,
    decode_frame,
    encode_frame,
    ping_frame,
)
from .reassembly import PartialMessageBuffer

# 公共 API
__all__ = [
    "constants",
    "Frame",
    "FrameMethod",
    "Header",
    "encode_frame",
    "decode_frame",
    "ping_frame",
    "copy_with_payload",
    "PartialMessageBuffer",
]
