# tests/test_config.py
from pathlib import Path

import pytest

from evcam_remote import ConfigError
from evcam_remote.config import (
    AllowList,
    create_config_from_dict,
    load_config_from_env,
    load_config_from_toml,
)


# --- 辅助函数：生成有效字典 ---
def _get_valid_raw_dict():
    return {
        "log_level": "debug",
        "video_dirs": ["/data/video", "/sdcard/EVCam"],
        "telegram": {
            "bot_token": "123456:ABCDEF",
            "allowed_chat_ids": "1001, 1002",
            "poll_timeout": "25",
        },
        "feishu": {
            "app_id": "cli_a",
            "app_secret": "secret",
            "allowed_user_ids": ["ou_1"],
        },
        "dingtalk": {
            "client_id": "ding_id",
            "client_secret": "ding_secret",
            "stream_factory": "my_sdk:make_client",
        },
    }


# --- 白名单 ---


def test_allow_list_parse_and_permits():
    allow = AllowList.parse(" 1001 ,, 1002 ")
    assert len(allow) == 2
    assert allow.permits("1001")
    assert not allow.permits("1003")
    # 区分大小写
    assert not AllowList.parse(["ou_ABC"]).permits("ou_abc")


def test_empty_allow_list_permits_everyone():
    assert AllowList.parse(None).permits("anyone")
    assert AllowList.parse("").permits("anyone")
    assert AllowList.parse([" "]).permits("anyone")


# --- Factory 测试 (核心逻辑) ---


def test_validate_valid_dict():
    """测试使用完全合法的字典创建配置"""
    config = create_config_from_dict(_get_valid_raw_dict())

    assert config.enabled_platforms == ["dingtalk", "telegram", "feishu"]
    assert config.auto_start is True
    assert config.log_level == "DEBUG"
    assert config.video_dirs == (Path("/data/video"), Path("/sdcard/EVCam"))

    assert config.telegram.bot_token == "123456:ABCDEF"
    assert config.telegram.allowed_chat_ids.permits("1002")
    assert config.telegram.poll_timeout == 25
    assert config.telegram.message_expire_seconds == 600

    assert config.feishu.allowed_user_ids.permits("ou_1")
    assert config.dingtalk.effective_robot_code == "ding_id"
    assert config.dingtalk.stream_factory == "my_sdk:make_client"


def test_missing_sections_are_not_configured():
    config = create_config_from_dict({"telegram": {"bot_token": "t"}})
    assert config.feishu is None
    assert config.dingtalk is None
    assert config.enabled_platforms == ["telegram"]


def test_missing_credentials_raise():
    raw = _get_valid_raw_dict()
    del raw["feishu"]["app_secret"]
    with pytest.raises(ConfigError, match="app_secret"):
        create_config_from_dict(raw)


def test_disabled_platform_skips_credential_check():
    config = create_config_from_dict({"dingtalk": {"enabled": "false"}})
    assert config.dingtalk is not None
    assert not config.dingtalk.enabled
    assert config.enabled_platforms == []


def test_invalid_types_wrapped_as_config_error():
    raw = _get_valid_raw_dict()
    raw["telegram"]["poll_limit"] = "many"
    with pytest.raises(ConfigError, match="配置生成失败"):
        create_config_from_dict(raw)

    with pytest.raises(ConfigError, match="必须是表"):
        create_config_from_dict({"feishu": "cli_a"})


def test_repr_hides_secrets():
    config = create_config_from_dict(_get_valid_raw_dict())
    assert "ABCDEF" not in repr(config.telegram)
    assert "secret" not in repr(config.feishu).replace("app_secret", "")
    assert "ding_secret" not in repr(config.dingtalk)


# --- TOML 加载测试 ---


def test_load_toml_profile(tmp_path):
    toml_content = """
[profile.car]
log_level = "warning"

[profile.car.telegram]
bot_token = "car-token"
allowed_chat_ids = [1001]

[profile.home.feishu]
app_id = "cli_home"
app_secret = "s"
"""
    path = tmp_path / "config.toml"
    path.write_text(toml_content, encoding="utf-8")

    config = load_config_from_toml(path, "car")
    assert config.telegram.bot_token == "car-token"
    assert config.telegram.allowed_chat_ids.permits("1001")
    assert config.feishu is None
    assert config.log_level == "WARNING"

    with pytest.raises(ConfigError, match="profile.office"):
        load_config_from_toml(path, "office")


def test_load_toml_remote_section(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[remote.feishu]\napp_id = "a"\napp_secret = "b"\n', encoding="utf-8")

    config = load_config_from_toml(path)
    assert config.enabled_platforms == ["feishu"]


def test_load_toml_errors(tmp_path):
    with pytest.raises(ConfigError, match="未找到"):
        load_config_from_toml(tmp_path / "missing.toml")

    broken = tmp_path / "broken.toml"
    broken.write_text("[telegram\nbot_token = ", encoding="utf-8")
    with pytest.raises(ConfigError, match="TOML"):
        load_config_from_toml(broken)


# --- 环境变量加载测试 ---


def test_load_from_env(monkeypatch):
    monkeypatch.setenv("EVCAM_TELEGRAM_BOT_TOKEN", "env-token")
    monkeypatch.setenv("EVCAM_TELEGRAM_ALLOWED_CHAT_IDS", "1,2,3")
    monkeypatch.setenv("EVCAM_DINGTALK_ENABLED", "0")
    monkeypatch.setenv("EVCAM_LOG_LEVEL", "debug")
    monkeypatch.setenv("EVCAM_AUTO_START", "no")

    config = load_config_from_env()
    assert config.telegram.bot_token == "env-token"
    assert len(config.telegram.allowed_chat_ids) == 3
    assert config.enabled_platforms == ["telegram"]
    assert config.auto_start is False
    assert config.log_level == "DEBUG"


def test_load_from_env_nothing_set(monkeypatch):
    with pytest.raises(ConfigError, match="环境变量"):
        load_config_from_env(prefix="EVCAM_TEST_UNUSED_")
