"""
EVCam 远程控制 - 配置模块

负责配置的加载、解析与强类型转换。
支持从 TOML 文件、环境变量或字典中加载配置，三个平台各自一个子配置块。
"""

import logging
import os
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .exceptions import ConfigError
from .utils import mask_secret

logger = logging.getLogger(__name__)

DEFAULT_TELEGRAM_API_HOST = "https://api.telegram.org"
DEFAULT_FEISHU_DOMAIN = "https://open.feishu.cn"
DEFAULT_DINGTALK_API = "https://api.dingtalk.com"
DEFAULT_DINGTALK_OAPI = "https://oapi.dingtalk.com"


@dataclass(frozen=True)
class AllowList:
    """发送者白名单。

    为空时允许所有人；非空时按字符串精确匹配 (区分大小写)。
    """

    ids: frozenset[str] = frozenset()

    @classmethod
    def parse(cls, raw: str | Iterable[Any] | None) -> "AllowList":
        """解析逗号分隔字符串或列表。空白项会被忽略。"""
        if raw is None:
            return cls()
        items = raw.split(",") if isinstance(raw, str) else raw
        return cls(frozenset(str(i).strip() for i in items if str(i).strip()))

    def permits(self, principal: str) -> bool:
        if not self.ids:
            return True
        return principal in self.ids

    def __len__(self) -> int:
        return len(self.ids)


@dataclass(frozen=True)
class TelegramConfig:
    """Telegram 轮询后端配置。

    Attributes:
        bot_token: BotFather 颁发的令牌。
        api_host: Bot API 地址，可替换为自建反代。
        allowed_chat_ids: 允许下发指令的 chat id 白名单。
        cursor_path: update_id 游标的持久化文件。
        poll_timeout: 长轮询等待秒数。
        poll_limit: 单次拉取的最大更新数。
        message_expire_seconds: 消息新鲜度窗口，超出则静默丢弃。
    """

    bot_token: str
    api_host: str = DEFAULT_TELEGRAM_API_HOST
    allowed_chat_ids: AllowList = field(default_factory=AllowList)
    cursor_path: Path = Path("telegram_cursor.json")
    poll_timeout: int = 30
    poll_limit: int = 5
    message_expire_seconds: int = 600
    enabled: bool = True

    def __repr__(self) -> str:
        """隐藏令牌，防止日志泄露敏感信息。"""
        return (
            f"<{self.__class__.__name__} "
            f"api_host='{self.api_host}', "
            f"bot_token='{mask_secret(self.bot_token)}', "
            f"allowed={len(self.allowed_chat_ids)}, "
            f"enabled={self.enabled}>"
        )


@dataclass(frozen=True)
class FeishuConfig:
    """飞书长连接后端配置。"""

    app_id: str
    app_secret: str
    domain: str = DEFAULT_FEISHU_DOMAIN
    allowed_user_ids: AllowList = field(default_factory=AllowList)
    enabled: bool = True

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"app_id='{self.app_id}', "
            f"app_secret='******', "
            f"allowed={len(self.allowed_user_ids)}, "
            f"enabled={self.enabled}>"
        )


@dataclass(frozen=True)
class DingTalkConfig:
    """钉钉 Stream 后端配置。

    Attributes:
        client_id: 应用 AppKey (同时作为 robotCode 的默认值)。
        client_secret: 应用 AppSecret。
        robot_code: 机器人编码，留空则使用 client_id。
        stream_factory: Stream SDK 客户端工厂的导入路径 ('module:attr')。
    """

    client_id: str
    client_secret: str
    robot_code: str = ""
    allowed_user_ids: AllowList = field(default_factory=AllowList)
    stream_factory: str = ""
    api_base: str = DEFAULT_DINGTALK_API
    oapi_base: str = DEFAULT_DINGTALK_OAPI
    enabled: bool = True

    @property
    def effective_robot_code(self) -> str:
        return self.robot_code or self.client_id

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"client_id='{self.client_id}', "
            f"client_secret='******', "
            f"allowed={len(self.allowed_user_ids)}, "
            f"enabled={self.enabled}>"
        )


@dataclass(frozen=True)
class RemoteConfig:
    """远程控制总配置。

    未配置的平台对应字段为 None。

    Attributes:
        video_dirs: 查找录制视频的目录 (按优先级)。
        photo_dirs: 查找照片的目录 (按优先级)。
        log_level: 日志级别名。
        auto_start: 设备启动时是否自动连接所有已启用的平台。
    """

    telegram: TelegramConfig | None = None
    feishu: FeishuConfig | None = None
    dingtalk: DingTalkConfig | None = None
    video_dirs: tuple[Path, ...] = ()
    photo_dirs: tuple[Path, ...] = ()
    log_level: str = "INFO"
    auto_start: bool = True

    @property
    def enabled_platforms(self) -> list[str]:
        names = []
        for name in ("dingtalk", "telegram", "feishu"):
            section = getattr(self, name)
            if section is not None and section.enabled:
                names.append(name)
        return names


def _to_bool(val: Any) -> bool:
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in ("1", "true", "yes", "on")


def _to_paths(val: Any) -> tuple[Path, ...]:
    if not val:
        return ()
    items = val.split(os.pathsep) if isinstance(val, str) else val
    return tuple(Path(str(i)).expanduser() for i in items if str(i).strip())


def create_config_from_dict(raw_data: dict[str, Any]) -> RemoteConfig:
    """通用工厂：将字典转换为强类型配置对象。

    平台配置位于 `telegram` / `feishu` / `dingtalk` 子字典中，缺省即视为未配置。
    已启用 (enabled 缺省为 True) 的平台必须提供凭据。

    Args:
        raw_data: 原始配置字典 (来自 TOML 或 Env)。

    Returns:
        RemoteConfig: 验证并转换后的配置对象。

    Raises:
        ConfigError: 当必要字段缺失或格式错误时抛出。
    """
    try:
        # --- 内部辅助函数 ---
        def _section(name: str) -> dict[str, Any] | None:
            sec = raw_data.get(name)
            if sec is None:
                return None
            if not isinstance(sec, dict):
                raise ConfigError(f"配置节 '{name}' 必须是表 (table)")
            return sec

        def _req(sec: dict[str, Any], name: str, key: str) -> str:
            """获取必要字段，缺失则报错"""
            val = str(sec.get(key, "")).strip()
            if not val:
                raise ConfigError(f"配置缺失: [{name}] 缺少必要字段 '{key}'")
            return val

        telegram = None
        if (sec := _section("telegram")) is not None:
            enabled = _to_bool(sec.get("enabled", True))
            telegram = TelegramConfig(
                bot_token=_req(sec, "telegram", "bot_token")
                if enabled
                else str(sec.get("bot_token", "")),
                api_host=str(sec.get("api_host") or DEFAULT_TELEGRAM_API_HOST).rstrip(
                    "/"
                ),
                allowed_chat_ids=AllowList.parse(sec.get("allowed_chat_ids")),
                cursor_path=Path(
                    str(sec.get("cursor_path", "telegram_cursor.json"))
                ).expanduser(),
                poll_timeout=int(sec.get("poll_timeout", 30)),
                poll_limit=int(sec.get("poll_limit", 5)),
                message_expire_seconds=int(sec.get("message_expire_seconds", 600)),
                enabled=enabled,
            )

        feishu = None
        if (sec := _section("feishu")) is not None:
            enabled = _to_bool(sec.get("enabled", True))
            feishu = FeishuConfig(
                app_id=_req(sec, "feishu", "app_id")
                if enabled
                else str(sec.get("app_id", "")),
                app_secret=_req(sec, "feishu", "app_secret")
                if enabled
                else str(sec.get("app_secret", "")),
                domain=str(sec.get("domain") or DEFAULT_FEISHU_DOMAIN).rstrip("/"),
                allowed_user_ids=AllowList.parse(sec.get("allowed_user_ids")),
                enabled=enabled,
            )

        dingtalk = None
        if (sec := _section("dingtalk")) is not None:
            enabled = _to_bool(sec.get("enabled", True))
            dingtalk = DingTalkConfig(
                client_id=_req(sec, "dingtalk", "client_id")
                if enabled
                else str(sec.get("client_id", "")),
                client_secret=_req(sec, "dingtalk", "client_secret")
                if enabled
                else str(sec.get("client_secret", "")),
                robot_code=str(sec.get("robot_code", "")),
                allowed_user_ids=AllowList.parse(sec.get("allowed_user_ids")),
                stream_factory=str(sec.get("stream_factory", "")),
                api_base=str(sec.get("api_base") or DEFAULT_DINGTALK_API).rstrip("/"),
                oapi_base=str(sec.get("oapi_base") or DEFAULT_DINGTALK_OAPI).rstrip(
                    "/"
                ),
                enabled=enabled,
            )

        # --- 构建对象 ---
        return RemoteConfig(
            telegram=telegram,
            feishu=feishu,
            dingtalk=dingtalk,
            video_dirs=_to_paths(raw_data.get("video_dirs")),
            photo_dirs=_to_paths(raw_data.get("photo_dirs")),
            log_level=str(raw_data.get("log_level", "INFO")).upper(),
            auto_start=_to_bool(raw_data.get("auto_start", True)),
        )

    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"配置生成失败: {e}") from e


def load_config_from_toml(file_path: Path, profile: str = "default") -> RemoteConfig:
    """从 TOML 文件加载配置。

    支持多层级查找策略:
    1. [profile.xxx]: 优先查找指定的 profile 块。
    2. [remote]: 单一配置块。
    3. Root: 兼容根目录直接配置。

    Args:
        file_path: TOML 文件路径。
        profile: 配置预设名。默认为 "default"。

    Returns:
        RemoteConfig: 配置对象。

    Raises:
        ConfigError: 文件读取失败或 Profile 不存在。
    """
    if not file_path.exists():
        raise ConfigError(f"配置文件未找到: {file_path}")

    try:
        with open(file_path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"读取 TOML 失败: {e}") from e

    raw_config: dict[str, Any] = {}

    if "profile" in data:
        if profile not in data["profile"]:
            if profile != "default":
                raise ConfigError(f"未找到预设: [profile.{profile}]")
        else:
            raw_config = data["profile"][profile]
    elif "remote" in data:
        if profile != "default":
            logger.warning(f"配置仅包含 [remote] 节，忽略 profile='{profile}'。")
        raw_config = data["remote"]
    else:
        raw_config = data

    return create_config_from_dict(raw_config)


# 字段映射表 (节, 字段) -> 环境变量后缀
_ENV_MAP: dict[tuple[str | None, str], str] = {
    (None, "log_level"): "LOG_LEVEL",
    (None, "auto_start"): "AUTO_START",
    (None, "video_dirs"): "VIDEO_DIRS",
    (None, "photo_dirs"): "PHOTO_DIRS",
    # Telegram
    ("telegram", "enabled"): "TELEGRAM_ENABLED",
    ("telegram", "bot_token"): "TELEGRAM_BOT_TOKEN",
    ("telegram", "api_host"): "TELEGRAM_API_HOST",
    ("telegram", "allowed_chat_ids"): "TELEGRAM_ALLOWED_CHAT_IDS",
    ("telegram", "cursor_path"): "TELEGRAM_CURSOR_PATH",
    # 飞书
    ("feishu", "enabled"): "FEISHU_ENABLED",
    ("feishu", "app_id"): "FEISHU_APP_ID",
    ("feishu", "app_secret"): "FEISHU_APP_SECRET",
    ("feishu", "allowed_user_ids"): "FEISHU_ALLOWED_USER_IDS",
    # 钉钉
    ("dingtalk", "enabled"): "DINGTALK_ENABLED",
    ("dingtalk", "client_id"): "DINGTALK_CLIENT_ID",
    ("dingtalk", "client_secret"): "DINGTALK_CLIENT_SECRET",
    ("dingtalk", "robot_code"): "DINGTALK_ROBOT_CODE",
    ("dingtalk", "allowed_user_ids"): "DINGTALK_ALLOWED_USER_IDS",
    ("dingtalk", "stream_factory"): "DINGTALK_STREAM_FACTORY",
}


def load_config_from_env(prefix: str = "EVCAM_") -> RemoteConfig:
    """从环境变量加载配置 (Docker/Cloud Friendly)。

    读取所有以 `EVCAM_` 开头的已知环境变量并映射到配置字段。
    例如: `EVCAM_TELEGRAM_BOT_TOKEN` -> telegram.bot_token。

    Returns:
        RemoteConfig: 配置对象。

    Raises:
        ConfigError: 未检测到任何相关环境变量。
    """
    raw_data: dict[str, Any] = {}

    for (section, key), env_suffix in _ENV_MAP.items():
        val = os.environ.get(f"{prefix}{env_suffix}")
        if val is None:
            continue
        target = raw_data if section is None else raw_data.setdefault(section, {})
        target[key] = val

    if not raw_data:
        raise ConfigError(f"未检测到 {prefix} 前缀的环境变量")

    return create_config_from_dict(raw_data)
