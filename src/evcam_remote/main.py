# File: src/evcam_remote/main.py
"""
EVCam 远程控制 - 命令行入口

加载配置 (TOML 优先，其次 .env / 环境变量)，启动所有已启用的平台，
直到收到中断信号或所有连接都已停止。
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from . import __version__
from .config import RemoteConfig, load_config_from_env, load_config_from_toml
from .core import RemoteCore
from .exceptions import ConfigError
from .models import Platform
from .state import ConnectionStatus

logger = logging.getLogger("EvcamRemoteCLI")

LOG_FORMAT = "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"

_STATUS_ICONS = {
    ConnectionStatus.CONNECTING: "⏳",
    ConnectionStatus.CONNECTED: "✅",
    ConnectionStatus.RECONNECTING: "🔄",
    ConnectionStatus.STOPPED: "🔌",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="evcam-remote", description="EVCam 远程控制通道 (钉钉 / Telegram / 飞书)"
    )
    parser.add_argument("-c", "--config", type=Path, help="TOML 配置文件路径")
    parser.add_argument("-p", "--profile", default="default", help="配置预设名")
    parser.add_argument("--env", type=Path, help=".env 文件路径 (默认查找当前目录)")
    parser.add_argument("--log-level", help="覆盖配置中的日志级别")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_cli_config(args: argparse.Namespace) -> RemoteConfig:
    """按命令行参数加载配置：指定 TOML 时只读 TOML，否则读 .env + 环境变量。"""
    if args.config:
        logger.info(f"加载配置文件: {args.config} (profile={args.profile})")
        return load_config_from_toml(args.config, args.profile)

    env_path = args.env or Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=True)
        logger.debug(f"已加载 .env: {env_path}")
    else:
        logger.warning(f"未找到 .env 文件: {env_path}，仅使用环境变量")
    return load_config_from_env()


def on_status_change(platform: Platform, status: ConnectionStatus, msg: str) -> None:
    icon = _STATUS_ICONS.get(status, "ℹ️")
    print(f">>> {icon} {platform.display_name}: {status.name} | {msg}")


async def run(config: RemoteConfig) -> int:
    core = RemoteCore(config, status_callback=on_status_change)
    if not core.channels:
        logger.error("没有可启动的平台，请检查配置")
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows 下由 KeyboardInterrupt 处理
            pass

    core.start()
    logger.info("远程控制运行中 (按 Ctrl+C 退出)...")
    try:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                if not core.is_running:
                    logger.warning("所有连接均已停止")
                    break
    finally:
        logger.info("正在停止...")
        await core.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt="%H:%M:%S")

    try:
        config = load_cli_config(args)
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    level = (args.log_level or config.log_level).upper()
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))

    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("收到中断信号，已退出")
        return 130


if __name__ == "__main__":
    sys.exit(main())
