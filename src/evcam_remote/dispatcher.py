"""
EVCam 远程控制 - 指令分发器

每个后端一个 CommandDispatcher：白名单校验 -> 解析指令 -> 调用设备动作 -> 回复。
录制 / 拍照先发送确认消息，确认消息发送完成 (无论成败) 后才执行设备动作。
"""

import logging
from collections.abc import Awaitable, Callable

from .commands import (
    Command,
    ExitConfirmed,
    ExitRequest,
    Help,
    Photo,
    Record,
    StartContinuous,
    Status,
    StopContinuous,
    Unrecognized,
    parse_command,
)
from .config import AllowList
from .devices import DeviceActions
from .exceptions import RemoteError
from .models import InboundMessage, Platform
from .utils import call_maybe_async

logger = logging.getLogger(__name__)

ReplyFn = Callable[[str], Awaitable[None]]

# =========================================================================
# 回复文案
# =========================================================================

RECORD_ACK = "收到录制指令，开始录制 {duration} 秒视频..."
PHOTO_ACK = "收到拍照指令，正在拍照..."
UNAVAILABLE = "❌ 功能不可用"

EXIT_PROMPT = (
    "⚠️ 确认要退出 EVCam 吗？\n\n"
    "退出后将停止所有录制和远程服务。\n"
    "发送「确认退出」执行退出操作。"
)
EXIT_PROMPT_TELEGRAM = (
    "⚠️ 确认要退出 EVCam 吗？\n\n"
    "退出后将停止所有录制和远程服务。\n"
    "发送「确认退出」或 /confirm_exit 执行退出操作。"
)

UNRECOGNIZED = "未识别的指令。发送「帮助」查看可用指令。"
UNRECOGNIZED_TELEGRAM = "未识别的指令。发送 /help 查看可用指令。"

HELP_TEXT = (
    "📋 EVCam 远程控制\n"
    "━━━━━━━━━━━━━━\n\n"
    "📹 远程录制\n"
    "• 录制 - 录制60秒视频\n"
    "• 录制30 - 录制30秒视频\n\n"
    "▶️ 持续录制\n"
    "• 启动录制 - 开始持续录制\n"
    "• 结束录制 - 停止录制\n\n"
    "📷 拍照\n"
    "• 拍照 - 拍摄照片\n\n"
    "ℹ️ 其他\n"
    "• 状态 - 查看应用状态\n"
    "• 退出 - 退出应用\n"
    "• 帮助 - 显示此帮助"
)

HELP_TEXT_TELEGRAM = (
    "📋 <b>EVCam 远程控制</b>\n"
    "━━━━━━━━━━━━━━\n\n"
    "📹 <b>远程录制</b>\n"
    "/record ─ 录制60秒视频\n"
    "/record 30 ─ 录制指定秒数\n"
    "录制 / 录制30 ─ 中文指令\n\n"
    "▶️ <b>持续录制</b>\n"
    "/start_rec ─ 开始持续录制\n"
    "/stop_rec ─ 停止录制\n"
    "启动录制 / 结束录制 ─ 中文\n\n"
    "📷 <b>拍照</b>\n"
    "/photo ─ 拍摄照片\n"
    "拍照 ─ 中文指令\n\n"
    "ℹ️ <b>其他</b>\n"
    "/status ─ 查看应用状态\n"
    "/exit ─ 退出应用\n"
    "/help ─ 显示此帮助\n\n"
    "━━━━━━━━━━━━━━\n"
    "💡 所有指令支持中英文"
)


def help_text(platform: Platform) -> str:
    return HELP_TEXT_TELEGRAM if platform is Platform.TELEGRAM else HELP_TEXT


def exit_prompt(platform: Platform) -> str:
    return EXIT_PROMPT_TELEGRAM if platform is Platform.TELEGRAM else EXIT_PROMPT


def unrecognized_text(platform: Platform) -> str:
    return UNRECOGNIZED_TELEGRAM if platform is Platform.TELEGRAM else UNRECOGNIZED


# =========================================================================
# 分发器
# =========================================================================


class CommandDispatcher:
    """单个后端的指令分发器。

    Args:
        platform: 所属平台，决定回复文案格式。
        device: 设备动作协作者。
        allow_list: 发送者白名单，为空时允许所有人。
    """

    def __init__(
        self,
        platform: Platform,
        device: DeviceActions,
        allow_list: AllowList | None = None,
    ) -> None:
        self.platform = platform
        self.device = device
        self.allow_list = allow_list or AllowList()

    async def dispatch(self, message: InboundMessage, reply: ReplyFn) -> Command | None:
        """处理一条入站消息。

        Args:
            message: 后端构造的消息信封。
            reply: 向该消息所在会话回复文本的协程函数。

        Returns:
            Command | None: 解析得到的指令；发送者被白名单拒绝时为 None。
        """
        if not self.allow_list.permits(message.principal):
            logger.warning(
                f"[{self.platform.display_name}] 拒绝未授权的发送者: {message.principal}"
            )
            return None

        command = parse_command(message.text)
        logger.info(f"[{self.platform.display_name}] {message.chat} 指令: {command}")

        match command:
            case Record(duration_seconds=duration):
                await self._ack_then_act(
                    reply,
                    RECORD_ACK.format(duration=duration),
                    self.device.start_recording,
                    message.chat,
                    duration,
                )
            case Photo():
                await self._ack_then_act(
                    reply, PHOTO_ACK, self.device.start_photo, message.chat
                )
            case Status():
                await self._act_then_reply(reply, self.device.get_status)
            case StartContinuous():
                await self._act_then_reply(reply, self.device.start_continuous_recording)
            case StopContinuous():
                await self._act_then_reply(reply, self.device.stop_continuous_recording)
            case ExitRequest():
                await self._send(reply, exit_prompt(self.platform))
            case ExitConfirmed():
                await self._act_then_reply(reply, self.device.confirm_exit)
            case Help():
                await self._send(reply, help_text(self.platform))
            case Unrecognized():
                await self._send(reply, unrecognized_text(self.platform))

        return command

    # =========================================================================
    # 内部
    # =========================================================================

    async def _send(self, reply: ReplyFn, text: str) -> bool:
        try:
            await reply(text)
            return True
        except RemoteError as e:
            logger.error(f"[{self.platform.display_name}] 回复发送失败: {e}")
            return False

    async def _ack_then_act(self, reply: ReplyFn, ack: str, action, *args) -> None:
        # 确认消息失败只记录日志，动作照常执行
        if not await self._send(reply, ack):
            logger.warning(f"[{self.platform.display_name}] 确认消息未送达，继续执行指令")
        try:
            await call_maybe_async(action, *args)
        except Exception as e:
            logger.exception(f"[{self.platform.display_name}] 设备动作执行失败")
            await self._send(reply, f"❌ {e}")

    async def _act_then_reply(self, reply: ReplyFn, action) -> None:
        try:
            result = await call_maybe_async(action)
        except Exception as e:
            logger.exception(f"[{self.platform.display_name}] 设备动作执行失败")
            await self._send(reply, f"❌ {e}")
            return
        await self._send(reply, str(result) if result else UNAVAILABLE)
