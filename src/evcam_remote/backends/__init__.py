"""
EVCam 远程控制 - 连接后端

三个平台各一个连接管理器，共用 lifecycle 中的状态机部件。
"""

from .dingtalk import DingTalkStreamManager, load_stream_factory
from .feishu import FeishuSocketManager
from .lifecycle import ConnectionEvents, ConnectionSupervisor, HandlerTasks, ReconnectPolicy
from .telegram import TelegramPollManager

__all__ = [
    "ConnectionEvents",
    "ConnectionSupervisor",
    "HandlerTasks",
    "ReconnectPolicy",
    "DingTalkStreamManager",
    "FeishuSocketManager",
    "TelegramPollManager",
    "load_stream_factory",
]
