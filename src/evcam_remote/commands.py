"""
EVCam 远程控制 - 指令解析

将聊天文本解析为强类型指令。解析从不失败：无法识别的输入归为 Unrecognized，
录制时长无法解析时回落到默认值，越界时钳制到合法区间。
"""

import logging
import re
from dataclasses import dataclass

from .exceptions import CommandError
from .utils import clamp

logger = logging.getLogger(__name__)

DEFAULT_RECORD_SECONDS = 60
MIN_RECORD_SECONDS = 5
MAX_RECORD_SECONDS = 600

_MENTION_RE = re.compile(r"@\S+\s*")
_RECORD_KEYWORD_RE = re.compile(r"(/record|录制|record)", re.IGNORECASE)
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


# =========================================================================
# 指令类型
# =========================================================================


@dataclass(frozen=True)
class Record:
    """定时录制，录制结束后回传视频。"""

    duration_seconds: int = DEFAULT_RECORD_SECONDS


@dataclass(frozen=True)
class Photo:
    """拍照并回传。"""


@dataclass(frozen=True)
class Status:
    """查询设备状态。"""


@dataclass(frozen=True)
class StartContinuous:
    """开始持续录制 (不定时)。"""


@dataclass(frozen=True)
class StopContinuous:
    """停止持续录制。"""


@dataclass(frozen=True)
class ExitRequest:
    """请求退出，需要二次确认。"""


@dataclass(frozen=True)
class ExitConfirmed:
    """确认退出。"""


@dataclass(frozen=True)
class Help:
    """显示帮助。"""


@dataclass(frozen=True)
class Unrecognized:
    text: str


Command = (
    Record
    | Photo
    | Status
    | StartContinuous
    | StopContinuous
    | ExitRequest
    | ExitConfirmed
    | Help
    | Unrecognized
)

# 精确匹配表 (拉丁字母统一按小写比较)
_EXACT_COMMANDS: dict[str, Command] = {}
for _words, _cmd in (
    (("拍照", "photo", "/photo"), Photo()),
    (("状态", "status", "/status"), Status()),
    (("启动录制", "开始录制", "start", "/start_rec"), StartContinuous()),
    (("结束录制", "停止录制", "stop", "/stop_rec"), StopContinuous()),
    (("退出", "exit", "/exit"), ExitRequest()),
    (("确认退出", "/confirm_exit"), ExitConfirmed()),
    (("帮助", "help", "/help", "/start"), Help()),
):
    for _w in _words:
        _EXACT_COMMANDS[_w] = _cmd


# =========================================================================
# 解析
# =========================================================================


def strip_mentions(text: str) -> str:
    """去除 @提及 以及首尾空白。"""
    return _MENTION_RE.sub("", text).strip()


def is_record_command(command: str) -> bool:
    lowered = command.lower()
    return command.startswith("录制") or lowered.startswith(("record", "/record"))


def _parse_int(raw: str) -> int:
    if not _INTEGER_RE.fullmatch(raw):
        raise CommandError(f"不是十进制整数: {raw!r}")
    return int(raw)


def parse_record_duration(command: str) -> int:
    """从录制指令中提取时长 (秒)。

    去掉所有录制关键字后，剩余部分为空或不是整数时返回 60；
    否则钳制到 [5, 600]。

    Examples:
        录制 -> 60, 录制3 -> 5, 录制9999 -> 600, record 45 -> 45, recordxyz -> 60
    """
    remainder = _RECORD_KEYWORD_RE.sub("", command).strip()
    if not remainder:
        return DEFAULT_RECORD_SECONDS
    try:
        value = _parse_int(remainder)
    except CommandError as e:
        logger.debug(f"录制时长解析失败，使用默认值: {e}")
        return DEFAULT_RECORD_SECONDS
    return clamp(value, MIN_RECORD_SECONDS, MAX_RECORD_SECONDS)


def parse_command(text: str) -> Command:
    """将原始聊天文本解析为指令。

    Args:
        text: 原始消息文本 (可包含 @提及)。

    Returns:
        Command: 解析得到的指令；无法识别时为 Unrecognized(原文)。
    """
    command = strip_mentions(text)

    if is_record_command(command):
        return Record(parse_record_duration(command))

    return _EXACT_COMMANDS.get(command.lower(), Unrecognized(text))
