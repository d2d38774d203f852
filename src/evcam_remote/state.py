# File: src/evcam_remote/state.py
"""
EVCam 远程控制 - 状态模块

负责定义和存储单个后端连接的易变状态。
本模块不包含业务逻辑，仅作为数据容器供连接管理器与重连监督器共享读写。
"""

import asyncio
from dataclasses import dataclass
from enum import Enum, auto


class ConnectionStatus(Enum):
    """后端连接的生命周期状态枚举。

    状态流转示意:
    IDLE -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTING ...
                |             |              |
                v             v              v
             STOPPED  <-  CLOSING         STOPPED (重连预算耗尽)
    """

    IDLE = auto()
    """初始状态，管理器已实例化但尚未 start()。"""

    CONNECTING = auto()
    """正在建立连接 (获取端点、握手、校验令牌)。"""

    CONNECTED = auto()
    """连接已建立，正在接收消息。"""

    RECONNECTING = auto()
    """连接断开，等待重连延迟结束。"""

    CLOSING = auto()
    """已请求停止，正在关闭底层传输。"""

    STOPPED = auto()
    """终态。主动停止、冲突重试耗尽或重连预算耗尽。"""


@dataclass
class ConnectionState:
    """存储单个后端连接的易变状态数据。

    每次 start() 都会重新实例化，避免上一轮会话的计数污染新会话。

    Attributes:
        status: 当前连接状态。
        reconnect_attempts: 连续失败的连接次数，任意一次成功连接即清零。
        conflict_retries: 轮询后端连续遇到 409 冲突的次数。
        should_stop: 停止标志，先于传输关闭置位。
        last_error: 最近一次错误描述，用于日志与状态查询。
        heartbeat_task: 推送后端的心跳任务句柄。
    """

    status: ConnectionStatus = ConnectionStatus.IDLE
    reconnect_attempts: int = 0
    conflict_retries: int = 0
    should_stop: bool = False
    last_error: str = ""
    heartbeat_task: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        """判断当前连接是否可用。

        Returns:
            bool: 处于 CONNECTED 且未请求停止时返回 True。
        """
        return self.status == ConnectionStatus.CONNECTED and not self.should_stop
