"""
EVCam 远程控制 - 外部协作者接口

通道层只通过这里定义的协议 (typing.Protocol) 与设备交互：
设备动作、相机控制、媒体文件查找、游标存储和视频探测。
同时提供可直接运行的默认实现。
"""

import json
import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

from .models import ChatIdentifier

logger = logging.getLogger(__name__)

VIDEO_SUFFIXES = (".mp4",)
PHOTO_SUFFIXES = (".jpg", ".jpeg", ".png")


# =========================================================================
# 协议
# =========================================================================


class DeviceActions(Protocol):
    """指令分发器调用的设备动作。方法可以是同步或异步的。"""

    def start_recording(self, chat: ChatIdentifier, duration_seconds: int) -> Any: ...

    def start_photo(self, chat: ChatIdentifier) -> Any: ...

    def get_status(self) -> Any: ...

    def start_continuous_recording(self) -> Any: ...

    def stop_continuous_recording(self) -> Any: ...

    def confirm_exit(self) -> Any: ...


class CameraController(Protocol):
    """相机子系统提供的原语 (由 UI / 设备层实现)。"""

    def is_recording(self) -> bool: ...

    def has_connected_cameras(self) -> bool: ...

    def start_recording(self, timestamp: str) -> bool: ...

    def stop_recording(self, skip_transfer: bool) -> None: ...

    def take_picture(self, timestamp: str) -> None: ...

    def resume_manual_recording(self) -> None: ...

    def set_segment_duration_override(self, duration_ms: int) -> None: ...

    def clear_segment_duration_override(self) -> None: ...

    def get_status(self) -> str: ...

    def start_continuous_recording(self) -> str: ...

    def stop_continuous_recording(self) -> str: ...

    def confirm_exit(self) -> str: ...


class MediaLocator(Protocol):
    def find_videos(self, timestamps: list[str]) -> list[Path]: ...

    def find_photos(self, timestamp: str) -> list[Path]: ...


class CursorStore(Protocol):
    def load(self) -> int: ...

    def save(self, update_id: int) -> None: ...


class VideoProbe(Protocol):
    def extract_thumbnail(self, video: Path, target: Path) -> bool: ...

    def duration_seconds(self, video: Path) -> int: ...


# =========================================================================
# 默认实现
# =========================================================================


class DirectoryMediaLocator:
    """按时间戳前缀在若干目录中查找媒体文件。

    目录按优先级排列；同名文件只取第一次出现的那个，空文件会被忽略。
    """

    def __init__(self, video_dirs: Iterable[Path] = (), photo_dirs: Iterable[Path] = ()) -> None:
        self.video_dirs = [Path(d) for d in video_dirs]
        self.photo_dirs = [Path(d) for d in photo_dirs]

    @staticmethod
    def _scan(dirs: list[Path], prefixes: list[str], suffixes: tuple[str, ...]) -> list[Path]:
        found: dict[str, Path] = {}
        for directory in dirs:
            if not directory.is_dir():
                logger.debug(f"媒体目录不存在: {directory}")
                continue
            for path in sorted(directory.iterdir()):
                name = path.name
                if name in found or not name.lower().endswith(suffixes):
                    continue
                if not any(name.startswith(p) for p in prefixes):
                    continue
                if not path.is_file() or path.stat().st_size == 0:
                    continue
                found[name] = path
        return sorted(found.values(), key=lambda p: p.name)

    def find_videos(self, timestamps: list[str]) -> list[Path]:
        prefixes = [ts for ts in timestamps if ts]
        if not prefixes:
            logger.error("时间戳列表为空，无法查找视频文件")
            return []
        files = self._scan(self.video_dirs, prefixes, VIDEO_SUFFIXES)
        logger.debug(f"找到 {len(files)} 个视频文件: {prefixes}")
        return files

    def find_photos(self, timestamp: str) -> list[Path]:
        if not timestamp:
            logger.error("时间戳为空，无法查找照片")
            return []
        files = self._scan(self.photo_dirs, [timestamp], PHOTO_SUFFIXES)
        logger.debug(f"找到 {len(files)} 张照片: {timestamp}")
        return files


class JsonCursorStore:
    """将轮询游标持久化到 JSON 文件。写入使用临时文件 + 原子替换。"""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> int:
        if not self.path.exists():
            return 0
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return int(data.get("last_update_id", 0))
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"游标文件损坏，从 0 开始: {self.path} ({e})")
            return 0

    def save(self, update_id: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".cursor-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"last_update_id": update_id}, f)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise


class NullVideoProbe:
    """不提取封面、时长未知 (由上传方回落到默认值)。"""

    def extract_thumbnail(self, video: Path, target: Path) -> bool:
        return False

    def duration_seconds(self, video: Path) -> int:
        return 0
