# src/evcam_remote/__init__.py
"""
EVCam Remote v1.0.0
行车记录仪远程控制通道层：钉钉 Stream / Telegram 轮询 / 飞书长连接。
"""

# 暴露配置
from .config import (
    AllowList,
    DingTalkConfig,
    FeishuConfig,
    RemoteConfig,
    TelegramConfig,
    create_config_from_dict,
    load_config_from_env,
    load_config_from_toml,
)

# 暴露核心与分发
from .core import RemoteCore
from .dispatcher import CommandDispatcher

# 暴露异常体系 (方便上层 try-except)
from .exceptions import (
    CodecError,
    CommandError,
    ConfigError,
    ConflictError,
    ProtocolError,
    RemoteError,
    TransportError,
    UploadError,
)
from .models import (
    DingTalkChat,
    FeishuChat,
    InboundMessage,
    Platform,
    RecordingContext,
    TelegramChat,
)
from .remote import CameraDeviceActions, RemoteDispatcher
from .state import ConnectionState, ConnectionStatus

__version__ = "1.0.0"

__all__ = [
    "RemoteCore",
    "RemoteDispatcher",
    "CameraDeviceActions",
    "CommandDispatcher",
    "RemoteConfig",
    "TelegramConfig",
    "FeishuConfig",
    "DingTalkConfig",
    "AllowList",
    "create_config_from_dict",
    "load_config_from_env",
    "load_config_from_toml",
    "ConnectionState",
    "ConnectionStatus",
    "Platform",
    "DingTalkChat",
    "TelegramChat",
    "FeishuChat",
    "InboundMessage",
    "RecordingContext",
    "RemoteError",
    "ConfigError",
    "TransportError",
    "ConflictError",
    "ProtocolError",
    "CodecError",
    "CommandError",
    "UploadError",
]
