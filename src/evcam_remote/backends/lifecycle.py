"""
EVCam 远程控制 - 连接生命周期 (Lifecycle)

三个后端共用的连接状态机部件，以组合方式注入各连接管理器：

- ConnectionEvents: 连接事件回调记录 (on_connected / on_disconnected / on_error)。
- ReconnectPolicy: 连续失败计数与重连预算。
- ConnectionSupervisor: 在循环中运行后端会话协程，断开后按策略重连。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..exceptions import TransportError
from ..state import ConnectionState, ConnectionStatus
from ..utils import fire_callback

logger = logging.getLogger(__name__)

SessionFn = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class ConnectionEvents:
    """连接事件回调记录。三个回调均可选，支持同步或异步函数。"""

    on_connected: Callable[[], Any] | None = None
    on_disconnected: Callable[[], Any] | None = None
    on_error: Callable[[str], Any] | None = None

    def connected(self) -> None:
        fire_callback(self.on_connected)

    def disconnected(self) -> None:
        fire_callback(self.on_disconnected)

    def error(self, reason: str) -> None:
        fire_callback(self.on_error, reason)


@dataclass(frozen=True)
class ReconnectPolicy:
    """重连策略。

    Attributes:
        max_attempts: 连续失败的连接次数上限，达到后不再调度重连。
        delay: 两次连接尝试之间的等待秒数。
    """

    max_attempts: int = 5
    delay: float = 5.0

    def record_failure(self, state: ConnectionState) -> bool:
        """记录一次失败。

        Returns:
            bool: 仍在预算内、允许再次尝试时返回 True。
        """
        state.reconnect_attempts += 1
        return state.reconnect_attempts < self.max_attempts

    def record_success(self, state: ConnectionState) -> None:
        state.reconnect_attempts = 0


class ConnectionSupervisor:
    """后端会话监督器。

    session 协程负责一次完整的 "连接 -> 接收 -> 断开"。成功建立连接后，
    会话应调用 mark_connected()；会话返回或抛出 TransportError 即视为断开。
    连续失败 max_attempts 次 (中间没有成功连接) 后停止调度，
    状态置为 STOPPED，并且恰好触发一次 on_error。
    """

    def __init__(
        self,
        name: str,
        session: SessionFn,
        policy: ReconnectPolicy | None = None,
        events: ConnectionEvents | None = None,
    ) -> None:
        self.name = name
        self._session = session
        self.policy = policy or ReconnectPolicy()
        self.events = events or ConnectionEvents()

        self.state = ConnectionState()
        self._stop_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._was_connected = False

    # =========================================================================
    # 查询
    # =========================================================================

    @property
    def should_stop(self) -> bool:
        return self.state.should_stop

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # =========================================================================
    # 生命周期
    # =========================================================================

    def start(self) -> asyncio.Task:
        """启动监督任务。已在运行时直接返回现有任务。"""
        if self._task and not self._task.done():
            return self._task

        self.state = ConnectionState()
        self._stop_event = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self._was_connected = False
        self._task = asyncio.create_task(self._run(), name=f"{self.name}Connection")
        return self._task

    def mark_connected(self) -> None:
        """会话报告连接成功：重置失败计数并触发 on_connected。"""
        self.state.status = ConnectionStatus.CONNECTED
        self.policy.record_success(self.state)
        self._was_connected = True
        logger.info(f"[{self.name}] 连接已建立")
        self.events.connected()

    def request_stop(self) -> None:
        """请求停止 (线程安全，可重复调用)。

        先置位 should_stop，再唤醒可能正在等待的重连延迟。
        """
        self.state.should_stop = True
        if self.state.status not in (ConnectionStatus.STOPPED, ConnectionStatus.IDLE):
            self.state.status = ConnectionStatus.CLOSING

        loop = self._loop
        if loop is None or loop.is_closed():
            self._stop_event.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._stop_event.set()
        else:
            loop.call_soon_threadsafe(self._stop_event.set)

    async def wait_stopped(self, timeout: float = 10.0) -> None:
        """等待监督任务结束，超时则取消。"""
        task = self._task
        if task is None or task.done():
            self._task = None
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] 连接任务未在 {timeout}s 内退出，强制取消")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None

    async def sleep(self, seconds: float) -> bool:
        """可被停止请求打断的等待。

        Returns:
            bool: 等待期间收到停止请求时返回 True。
        """
        if self.state.should_stop:
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.state.should_stop
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return self.state.should_stop

    # =========================================================================
    # 内部循环
    # =========================================================================

    async def _run(self) -> None:
        try:
            while not self.state.should_stop:
                self.state.status = ConnectionStatus.CONNECTING
                self._was_connected = False
                reason = ""

                try:
                    await self._session()
                    reason = "连接已关闭"
                except TransportError as e:
                    reason = str(e)
                    logger.warning(f"[{self.name}] 连接异常: {e}")
                except Exception as e:
                    reason = f"{type(e).__name__}: {e}"
                    logger.exception(f"[{self.name}] 会话发生意外错误")

                if self._was_connected:
                    self.events.disconnected()

                if self.state.should_stop:
                    break

                self.state.last_error = reason
                if not self.policy.record_failure(self.state):
                    self.state.status = ConnectionStatus.STOPPED
                    message = (
                        f"重连失败 {self.state.reconnect_attempts} 次，已停止: {reason}"
                    )
                    logger.error(f"[{self.name}] {message}")
                    self.events.error(message)
                    return

                self.state.status = ConnectionStatus.RECONNECTING
                logger.info(
                    f"[{self.name}] {self.policy.delay:.1f}s 后重连 "
                    f"(第 {self.state.reconnect_attempts}/{self.policy.max_attempts} 次)"
                )
                if await self.sleep(self.policy.delay):
                    break
        except asyncio.CancelledError:
            logger.debug(f"[{self.name}] 连接任务被取消")
            raise
        finally:
            self.state.status = ConnectionStatus.STOPPED

        logger.info(f"[{self.name}] 连接已停止")


class HandlerTasks:
    """接收路径派生的短期任务 (指令处理、回复发送)。

    任务按到达顺序创建并持有强引用，结束后自动移除；异常只记录日志。
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] 指令处理任务异常: {exc!r}")

    async def drain(self, timeout: float = 5.0) -> None:
        """等待在途任务完成，超时的任务会被取消。"""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
