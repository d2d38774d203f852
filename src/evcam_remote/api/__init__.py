"""
EVCam 远程控制 - 平台 API 客户端 (HTTP)
"""

from .base import BaseApiClient
from .dingtalk import DingTalkApiClient
from .feishu import FeishuApiClient, WsEndpoint
from .telegram import TelegramApiClient

__all__ = [
    "BaseApiClient",
    "DingTalkApiClient",
    "FeishuApiClient",
    "TelegramApiClient",
    "WsEndpoint",
]
