# File: src/evcam_remote/utils.py
"""
EVCam 远程控制 - 通用工具箱

时间戳、敏感信息脱敏，以及同步 / 异步回调的统一调度。
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def generate_timestamp(now: datetime | None = None) -> str:
    """生成录制 / 拍照会话使用的统一时间戳 (yyyyMMdd_HHmmss)。"""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def clamp(value: int, lower: int, upper: int) -> int:
    """将整数限制在闭区间 [lower, upper] 内。"""
    return max(lower, min(upper, value))


def mask_secret(secret: str, visible: int = 4) -> str:
    """对令牌类敏感字符串脱敏，仅保留末尾若干位。

    Args:
        secret: 原始字符串。
        visible: 保留的末尾字符数。

    Returns:
        str: 形如 '******abcd' 的脱敏结果；空串返回 '<empty>'。
    """
    if not secret:
        return "<empty>"
    if len(secret) <= visible:
        return "*" * len(secret)
    return "*" * 6 + secret[-visible:]


async def call_maybe_async(func: Callable[..., Any], *args: Any) -> Any:
    """调用一个可能是同步、也可能是协程的函数，并返回其结果。"""
    result = func(*args)
    if inspect.isawaitable(result):
        return await result
    return result


def fire_callback(callback: Callable[..., Any] | None, *args: Any) -> None:
    """在事件循环上异步触发回调，不阻塞调用方。

    协程函数创建 Task 执行，同步函数使用 call_soon 调度。
    没有运行中的事件循环时直接同步调用。
    """
    if callback is None:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        if inspect.iscoroutinefunction(callback):
            logger.warning(f"事件循环未运行，丢弃异步回调: {callback!r}")
        else:
            callback(*args)
        return

    try:
        if inspect.iscoroutinefunction(callback):
            loop.create_task(callback(*args))
        else:
            loop.call_soon(callback, *args)
    except Exception as e:
        logger.error(f"回调调度异常: {e}")
