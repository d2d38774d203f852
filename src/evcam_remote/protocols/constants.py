# src/evcam_remote/protocols/constants.py
"""
EVCam 远程控制 - 帧协议常量定义

本模块定义了二进制帧的字段编号、线型、头部键名和长连接参数。
采用命名空间 (Class Namespace) 组织。
"""

# =========================================================================
# 1. 线型 (Wire Types)
# =========================================================================


class WireType:
    """tag = 字段编号 << 3 | 线型"""

    VARINT = 0
    FIXED64 = 1
    LENGTH_DELIMITED = 2
    FIXED32 = 5

    SUPPORTED = (VARINT, FIXED64, LENGTH_DELIMITED, FIXED32)


# varint 最多 10 字节 (64 位)
MAX_VARINT_BYTES = 10
UINT64_MASK = 0xFFFFFFFFFFFFFFFF


# =========================================================================
# 2. 字段编号 (Field Numbers)
# =========================================================================


class FrameField:
    """Frame 消息字段编号"""

    SEQ_ID = 1
    LOG_ID = 2
    SERVICE = 3
    METHOD = 4
    HEADERS = 5
    PAYLOAD_ENCODING = 6
    PAYLOAD_TYPE = 7
    PAYLOAD = 8
    LOG_ID_NEW = 9


class HeaderField:
    """Header 子消息字段编号"""

    KEY = 1
    VALUE = 2


# =========================================================================
# 3. 头部键与消息类型
# =========================================================================


class HeaderKey:
    TYPE = "type"
    MESSAGE_ID = "message_id"
    SUM = "sum"
    SEQ = "seq"
    TRACE_ID = "trace_id"
    BIZ_RT = "biz_rt"


class MessageType:
    EVENT = "event"
    CARD = "card"
    PING = "ping"
    PONG = "pong"


# =========================================================================
# 4. 长连接参数
# =========================================================================


class SocketConst:
    ENDPOINT_URI = "/callback/ws/endpoint"
    SERVICE_ID_QUERY = "service_id"

    PING_INTERVAL = 120.0  # 秒
    CONNECT_TIMEOUT = 30.0  # 秒

    EVENT_MESSAGE_RECEIVE = "im.message.receive_v1"
    ACK_CODE_OK = 200
