# File: src/evcam_remote/models.py
"""
EVCam 远程控制 - 数据模型

平台标识、会话标识 (ChatIdentifier 和类型)、入站消息信封、
远程录制上下文，以及上传结果的聚合报告。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar


class Platform(Enum):
    """远程控制平台。值为 (显示名, 代码)。"""

    DINGTALK = ("钉钉", "dingtalk")
    TELEGRAM = ("Telegram", "telegram")
    FEISHU = ("飞书", "feishu")

    def __init__(self, display_name: str, code: str) -> None:
        self.display_name = display_name
        self.code = code

    @classmethod
    def from_code(cls, code: str) -> "Platform":
        for member in cls:
            if member.code == code.lower():
                return member
        raise ValueError(f"未知平台代码: {code}")


# =========================================================================
# 会话标识 (ChatIdentifier)
# =========================================================================


@dataclass(frozen=True)
class DingTalkChat:
    """钉钉会话标识。

    Attributes:
        conversation_id: 会话 ID (conversationId)。
        conversation_type: "1" 单聊, "2" 群聊。
        user_id: 发送者 staffId，用于单聊时点对点发送。
    """

    conversation_id: str
    conversation_type: str
    user_id: str
    platform: ClassVar[Platform] = Platform.DINGTALK

    @property
    def is_group(self) -> bool:
        return self.conversation_type == "2"

    def __str__(self) -> str:
        return f"DingTalk[{self.conversation_id}]"


@dataclass(frozen=True)
class TelegramChat:
    """Telegram 会话标识。"""

    chat_id: int
    platform: ClassVar[Platform] = Platform.TELEGRAM

    def __str__(self) -> str:
        return f"Telegram[{self.chat_id}]"


@dataclass(frozen=True)
class FeishuChat:
    """飞书会话标识。"""

    chat_id: str
    platform: ClassVar[Platform] = Platform.FEISHU

    def __str__(self) -> str:
        return f"Feishu[{self.chat_id}]"


ChatIdentifier = DingTalkChat | TelegramChat | FeishuChat


@dataclass(frozen=True)
class InboundMessage:
    """后端交给分发器的平台无关消息信封。

    Attributes:
        chat: 回复目标会话。
        principal: 参与白名单匹配的 ID (Telegram 为 chat id，飞书为 open_id，
            钉钉为 senderStaffId)。
        text: 原始文本 (未剥离 @ 提及)。
        message_id: 平台消息 ID，飞书群聊回复时使用。
        chat_type: 平台会话类型 (p2p / group / private ...)。
        session_webhook: 钉钉会话级回复 Webhook。
        timestamp: 消息内嵌的发送时间 (Unix 秒)，无则为 None。
    """

    chat: ChatIdentifier
    principal: str
    text: str
    message_id: str = ""
    chat_type: str = ""
    session_webhook: str = ""
    timestamp: float | None = None


# =========================================================================
# 远程录制上下文
# =========================================================================


@dataclass
class RecordingContext:
    """一次远程录制 / 拍照任务的上下文。

    completed 或 cancelled 后即为终态；上传流水线只会消费一次
    (通过 claim_for_upload)。

    Attributes:
        chat: 发起任务的会话。
        duration_seconds: 请求的录制时长。
        timestamp: 当前录制会话时间戳。
        all_timestamps: 曾分配过的全部时间戳 (录制器重建后追加)，按顺序。
        was_manual_recording_before: 是否打断了一次手动录制 (结束后需恢复)。
    """

    chat: ChatIdentifier
    duration_seconds: int
    timestamp: str
    all_timestamps: list[str] = field(default_factory=list)
    was_manual_recording_before: bool = False
    completed: bool = False
    cancelled: bool = False
    error_message: str = ""
    _upload_claimed: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        if self.timestamp and self.timestamp not in self.all_timestamps:
            self.all_timestamps.append(self.timestamp)

    def update_timestamp(self, new_timestamp: str) -> None:
        """录制器重建后切换到新时间戳，旧时间戳保留用于查找文件。"""
        self.timestamp = new_timestamp
        if new_timestamp not in self.all_timestamps:
            self.all_timestamps.append(new_timestamp)

    def complete(self) -> None:
        self.completed = True

    def cancel(self, reason: str = "") -> None:
        self.cancelled = True
        self.error_message = reason

    def claim_for_upload(self) -> bool:
        """占用上传权。第一次调用返回 True，此后恒为 False。"""
        if self._upload_claimed:
            return False
        self._upload_claimed = True
        return True


# =========================================================================
# 上传结果
# =========================================================================


class MediaKind(Enum):
    """上传媒体类型。值为 (名称, 量词)。"""

    PHOTO = ("图片", "张")
    VIDEO = ("视频", "个")

    def __init__(self, label: str, unit: str) -> None:
        self.label = label
        self.unit = unit


@dataclass(frozen=True)
class Succeeded:
    name: str


@dataclass(frozen=True)
class Failed:
    name: str
    reason: str

    def describe(self) -> str:
        return f"{self.name} ({self.reason})"


UploadOutcome = Succeeded | Failed


class BatchStatus(Enum):
    ALL_SUCCEEDED = "all_succeeded"
    ALL_FAILED = "all_failed"
    MIXED = "mixed"


@dataclass
class BatchReport:
    """一批文件的上传结果汇总。

    Attributes:
        kind: 媒体类型。
        outcomes: 按文件顺序记录的逐个结果。
        summary: 已发送 (或应发送) 的汇总消息文本。
    """

    kind: MediaKind
    outcomes: list[UploadOutcome] = field(default_factory=list)
    summary: str = ""

    @property
    def succeeded(self) -> list[Succeeded]:
        return [o for o in self.outcomes if isinstance(o, Succeeded)]

    @property
    def failed(self) -> list[Failed]:
        return [o for o in self.outcomes if isinstance(o, Failed)]

    @property
    def status(self) -> BatchStatus:
        if not self.succeeded:
            return BatchStatus.ALL_FAILED
        if not self.failed:
            return BatchStatus.ALL_SUCCEEDED
        return BatchStatus.MIXED

    @property
    def is_success(self) -> bool:
        """部分失败也按成功上报。"""
        return self.status != BatchStatus.ALL_FAILED

