# tests/conftest.py
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# 确保 src 目录在 sys.path 中
src_path = Path(__file__).resolve().parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from evcam_remote.config import AllowList, DingTalkConfig, FeishuConfig, TelegramConfig
from evcam_remote.upload import UploadPolicy


@pytest.fixture
def telegram_config(tmp_path):
    """[Fixture] Telegram 配置，游标写入临时目录。"""
    return TelegramConfig(
        bot_token="123456:TEST-TOKEN",
        cursor_path=tmp_path / "cursor.json",
    )


@pytest.fixture
def feishu_config():
    return FeishuConfig(app_id="cli_test", app_secret="secret")


@pytest.fixture
def dingtalk_config():
    return DingTalkConfig(
        client_id="ding_client",
        client_secret="ding_secret",
        allowed_user_ids=AllowList(),
    )


@pytest.fixture
def fast_policies():
    """[Fixture] 所有等待均为 0 的上传策略 (照片最多 2 次尝试)。"""
    from evcam_remote.models import MediaKind

    return {
        MediaKind.PHOTO: UploadPolicy(max_attempts=2, retry_delay=0, throttle=0, settle_delay=0),
        MediaKind.VIDEO: UploadPolicy(max_attempts=1, retry_delay=0, throttle=0, settle_delay=0),
    }


@pytest.fixture
def camera():
    """[Fixture] 默认状态: 已连接相机、未在录制、启动录制成功。"""
    cam = MagicMock()
    cam.has_connected_cameras.return_value = True
    cam.is_recording.return_value = False
    cam.start_recording.return_value = True
    cam.get_status.return_value = "📷 相机正常"
    return cam


class SleepRecorder:
    """记录等待时长但不真正等待。"""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep():
    return SleepRecorder()
