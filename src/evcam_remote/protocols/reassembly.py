# src/evcam_remote/protocols/reassembly.py
"""
EVCam 远程控制 - 分片重组

DATA 帧的 sum 头部大于 1 时，载荷被拆分到多帧，按 message_id 归组、
按 seq 定位。所有槽位都填满时返回拼接结果并丢弃该条目。
迟迟不能凑齐的条目按存活时间淘汰，缓存条目数也有上限。
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ..exceptions import ProtocolError
from .constants import HeaderKey
from .frame import Frame

logger = logging.getLogger(__name__)

# 未完成消息的最长保留时间 (秒) 与最大条目数
DEFAULT_MAX_AGE = 60.0
DEFAULT_MAX_PENDING = 64


def _int_header(frame: Frame, key: str) -> int | None:
    raw = frame.header(key)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ProtocolError(f"头部 '{key}' 不是整数: {raw!r}") from e


@dataclass
class _Partial:
    slots: list[bytes | None]
    created_at: float = field(default=0.0)


class PartialMessageBuffer:
    """按 message_id 缓存分片，并在完整时恰好组合一次。

    Args:
        max_age: 未完成消息的最长保留时间 (秒)，超时后整条丢弃。
        max_pending: 同时缓存的未完成消息上限，超出时淘汰最早的一条。
        clock: 单调时钟，测试时可注入。
    """

    def __init__(
        self,
        max_age: float = DEFAULT_MAX_AGE,
        max_pending: int = DEFAULT_MAX_PENDING,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_age = max_age
        self.max_pending = max(1, max_pending)
        self._clock = clock
        self._pending: dict[str, _Partial] = {}
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def feed(self, frame: Frame) -> bytes | None:
        """喂入一个 DATA 帧。

        Args:
            frame: 已解码的 DATA 帧。

        Returns:
            bytes | None: 完整载荷；仍有空槽位时返回 None (表示未完成，而非错误)。

        Raises:
            ProtocolError: sum / seq / message_id 头部缺失或取值非法。
        """
        total = _int_header(frame, HeaderKey.SUM)
        if total is None or total <= 1:
            return frame.payload

        seq = _int_header(frame, HeaderKey.SEQ)
        if seq is None or not 0 <= seq < total:
            raise ProtocolError(f"分片序号非法: seq={seq}, sum={total}")

        message_id = frame.header(HeaderKey.MESSAGE_ID)
        if not message_id:
            raise ProtocolError("分片帧缺少 message_id 头部")

        now = self._clock()
        with self._lock:
            self._evict(now, keep=message_id)

            entry = self._pending.get(message_id)
            if entry is None:
                entry = _Partial([None] * total, now)
                self._pending[message_id] = entry
            elif len(entry.slots) != total:
                del self._pending[message_id]
                raise ProtocolError(
                    f"分片总数不一致: message_id={message_id}, "
                    f"{len(entry.slots)} != {total}"
                )

            entry.slots[seq] = frame.payload
            if any(s is None for s in entry.slots):
                logger.debug(f"分片已缓存: {message_id} [{seq + 1}/{total}]")
                return None

            del self._pending[message_id]

        logger.debug(f"分片重组完成: {message_id} ({total} 片)")
        return b"".join(s for s in entry.slots if s is not None)

    def _evict(self, now: float, keep: str) -> None:
        # 调用方持有锁
        expired = [
            mid for mid, p in self._pending.items() if now - p.created_at > self.max_age
        ]
        for mid in expired:
            del self._pending[mid]
            logger.warning(f"分片等待超时，丢弃未完成消息: {mid}")

        if keep in self._pending:
            return
        while len(self._pending) >= self.max_pending:
            oldest = next(iter(self._pending))
            del self._pending[oldest]
            logger.warning(f"分片缓存已满，丢弃最早的未完成消息: {oldest}")

    def discard(self, message_id: str) -> None:
        with self._lock:
            self._pending.pop(message_id, None)

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()
