# File: src/evcam_remote/core.py
"""
EVCam 远程控制核心 (Core)

职责：
1. 资源组装：Config -> API 客户端 + 上传器 + 指令分发器 + 连接管理器。
2. 生命周期：按配置启动 / 停止所有已启用的平台。
3. 事件系统：把各后端的连接事件汇总为状态监听回调。
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .api.base import BaseApiClient
from .api.dingtalk import DingTalkApiClient
from .api.feishu import FeishuApiClient
from .api.telegram import TelegramApiClient
from .backends.dingtalk import DingTalkStreamManager, StreamClientFactory
from .backends.feishu import FeishuSocketManager
from .backends.lifecycle import ConnectionEvents, ReconnectPolicy
from .backends.telegram import TelegramPollManager
from .config import RemoteConfig
from .devices import CameraController, DirectoryMediaLocator, MediaLocator, VideoProbe
from .dispatcher import CommandDispatcher
from .exceptions import ConfigError
from .models import Platform
from .remote import CameraDeviceActions, RecordingEvents, RemoteDispatcher
from .state import ConnectionStatus
from .upload import DingTalkUploader, FeishuUploader, TelegramUploader
from .utils import fire_callback

logger = logging.getLogger(__name__)

# 状态回调：支持同步或异步函数
StatusCallback = Callable[[Platform, ConnectionStatus, str], Any | Awaitable[Any]]


@dataclass
class Channel:
    """单个平台的组装结果。"""

    platform: Platform
    api: BaseApiClient
    manager: TelegramPollManager | FeishuSocketManager | DingTalkStreamManager
    dispatcher: CommandDispatcher


class RemoteCore:
    """EVCam 远程控制核心。

    Args:
        config: 总配置。
        camera: 相机控制器，未接入时远程录制 / 拍照会回复 "摄像头未初始化"。
        locator: 媒体文件查找器，默认按配置目录查找。
        probe: 视频探测器。
        status_callback: 初始状态回调，也可以之后通过 add_listener 注册。
        dingtalk_client_factory: 钉钉 Stream SDK 客户端工厂，覆盖配置中的导入路径。
        policy: 各后端共用的重连策略。
    """

    def __init__(
        self,
        config: RemoteConfig,
        camera: CameraController | None = None,
        locator: MediaLocator | None = None,
        probe: VideoProbe | None = None,
        status_callback: StatusCallback | None = None,
        dingtalk_client_factory: StreamClientFactory | None = None,
        policy: ReconnectPolicy | None = None,
    ) -> None:
        self.config = config
        self._listeners: list[StatusCallback] = []
        if status_callback:
            self.add_listener(status_callback)

        self.remote = RemoteDispatcher(
            camera,
            locator or DirectoryMediaLocator(config.video_dirs, config.photo_dirs),
            probe,
            events=RecordingEvents(
                on_recording_start=lambda p: logger.info(f"[{p.display_name}] 远程录制开始"),
                on_recording_stop=lambda p: logger.info(f"[{p.display_name}] 远程录制结束"),
            ),
        )
        self.device = CameraDeviceActions(camera, self.remote)
        self._policy = policy
        self._dingtalk_factory = dingtalk_client_factory

        self.channels: dict[Platform, Channel] = {}
        for name in config.enabled_platforms:
            channel = self._build_channel(Platform.from_code(name))
            self.channels[channel.platform] = channel
            self.remote.register(self._build_uploader(channel))

        if not self.channels:
            logger.warning("没有启用任何远程控制平台")

    # =========================================================================
    # 组装
    # =========================================================================

    def _events(self, platform: Platform) -> ConnectionEvents:
        return ConnectionEvents(
            on_connected=lambda: self._update_status(
                platform, ConnectionStatus.CONNECTED, "已连接"
            ),
            on_disconnected=lambda: self._update_status(
                platform, ConnectionStatus.RECONNECTING, "连接已断开"
            ),
            on_error=lambda reason: self._on_error(platform, reason),
        )

    def _build_channel(self, platform: Platform) -> Channel:
        events = self._events(platform)
        match platform:
            case Platform.TELEGRAM:
                cfg = self.config.telegram
                api = TelegramApiClient(cfg.bot_token, cfg.api_host)
                manager = TelegramPollManager(cfg, api, events=events, policy=self._policy)
                allow = cfg.allowed_chat_ids
            case Platform.FEISHU:
                cfg = self.config.feishu
                api = FeishuApiClient(cfg.app_id, cfg.app_secret, cfg.domain)
                manager = FeishuSocketManager(cfg, api, events=events, policy=self._policy)
                allow = cfg.allowed_user_ids
            case Platform.DINGTALK:
                cfg = self.config.dingtalk
                api = DingTalkApiClient(
                    cfg.client_id,
                    cfg.client_secret,
                    cfg.effective_robot_code,
                    cfg.api_base,
                    cfg.oapi_base,
                )
                manager = DingTalkStreamManager(
                    cfg,
                    api,
                    client_factory=self._dingtalk_factory,
                    events=events,
                    policy=self._policy,
                )
                allow = cfg.allowed_user_ids
            case _:
                raise ConfigError(f"不支持的平台: {platform}")

        dispatcher = CommandDispatcher(platform, self.device, allow)
        return Channel(platform, api, manager, dispatcher)

    @staticmethod
    def _build_uploader(channel: Channel):
        match channel.platform:
            case Platform.TELEGRAM:
                return TelegramUploader(channel.api)
            case Platform.FEISHU:
                return FeishuUploader(channel.api)
            case Platform.DINGTALK:
                return DingTalkUploader(channel.api)

    # =========================================================================
    # 事件
    # =========================================================================

    def add_listener(self, callback: StatusCallback) -> None:
        """注册状态变更监听器。"""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: StatusCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _on_error(self, platform: Platform, reason: str) -> None:
        logger.error(f"[{platform.display_name}] 连接不可恢复: {reason}")
        self._update_status(platform, ConnectionStatus.STOPPED, reason)

    def _update_status(self, platform: Platform, status: ConnectionStatus, msg: str) -> None:
        """记录状态并异步触发所有回调。"""
        logger.info(f"[{platform.display_name}] [{status.name}] {msg}")
        for callback in self._listeners:
            fire_callback(callback, platform, status, msg)

    # =========================================================================
    # 生命周期
    # =========================================================================

    def start(self) -> None:
        """启动所有已启用平台的连接 (需在事件循环内调用)。"""
        for channel in self.channels.values():
            logger.info(f"启动 {channel.platform.display_name} 远程控制")
            self._update_status(channel.platform, ConnectionStatus.CONNECTING, "正在连接...")
            channel.manager.start(channel.dispatcher.dispatch)

    def start_if_enabled(self) -> bool:
        """按 auto_start 配置决定是否启动 (设备开机时调用)。"""
        if not self.config.auto_start:
            logger.info("自动启动已关闭，等待手动启动")
            return False
        self.start()
        return True

    def request_stop(self) -> None:
        """请求停止所有连接 (线程安全)。"""
        for channel in self.channels.values():
            channel.manager.request_stop()

    async def stop(self) -> None:
        """停止所有连接，清理远程任务并关闭 HTTP 客户端。"""
        for channel in self.channels.values():
            await channel.manager.stop()

        self.remote.cleanup()

        for channel in self.channels.values():
            await channel.api.aclose()
            self._update_status(channel.platform, ConnectionStatus.STOPPED, "已停止")

    def connection_status(self) -> dict[Platform, ConnectionStatus]:
        """查询各平台当前连接状态。"""
        return {p: c.manager.status for p, c in self.channels.items()}

    @property
    def is_any_connected(self) -> bool:
        return any(c.manager.is_connected for c in self.channels.values())

    @property
    def is_running(self) -> bool:
        return any(c.manager.supervisor.is_running for c in self.channels.values())
