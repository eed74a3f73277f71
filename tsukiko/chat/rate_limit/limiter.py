"""
滑动窗口限流器

每个 key（platform:channel:user）维护一个时间戳队列，窗口外的时间戳在每次检查时清除。
被拒绝的请求同样计入窗口，持续刷屏的用户会一直处于限流中。
"""

import asyncio
import time
from collections import OrderedDict, deque

from tsukiko.common.logger import get_logger

logger = get_logger("rate_limiter")


def rate_key(platform: str, channel: str, user: str) -> str:
    return f"{platform}:{channel}:{user}"


def _now_ms() -> float:
    return time.monotonic() * 1000


class SlidingWindowLimiter:
    """滑动窗口限流器

    Args:
        window_ms: 窗口长度(毫秒)
        max_in_window: 窗口内允许的最大次数
        max_keys: 最多跟踪的 key 数，超出时淘汰最久未活跃的 key
        sweep_interval: 每多少次检查自动清理一次过期 key
    """

    def __init__(self, window_ms: int = 10_000, max_in_window: int = 3, max_keys: int | None = 10_000, sweep_interval: int = 500):
        if window_ms <= 0 or max_in_window <= 0:
            raise ValueError("window_ms 和 max_in_window 必须为正数")
        self.window_ms = window_ms
        self.max_in_window = max_in_window
        self.max_keys = max_keys
        self.sweep_interval = max(1, sweep_interval)

        self._windows: OrderedDict[str, deque[float]] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._checks_since_sweep = 0

    def __len__(self) -> int:
        return len(self._windows)

    def allow_nowait(self, key: str, now: float | None = None) -> bool:
        """同步版本的准入检查，调用期间不会让出事件循环"""
        now = _now_ms() if now is None else now
        window = self._windows.get(key)
        if window is None:
            window = deque()
            self._windows[key] = window
        else:
            self._windows.move_to_end(key)

        cutoff = now - self.window_ms
        while window and window[0] < cutoff:
            window.popleft()
        window.append(now)
        allowed = len(window) <= self.max_in_window

        self._checks_since_sweep += 1
        if self._checks_since_sweep >= self.sweep_interval:
            self.sweep(now)
        if self.max_keys is not None:
            self._evict_overflow()

        if not allowed:
            logger.debug(f"{key} 触发限流 ({len(window)}/{self.max_in_window})")
        return allowed

    async def allow(self, key: str, now: float | None = None) -> bool:
        """准入检查，同一个 key 的检查互斥执行"""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        async with lock:
            return self.allow_nowait(key, now)

    def sweep(self, now: float | None = None) -> int:
        """清除最新时间戳已经在窗口之外的 key，返回清除数量"""
        now = _now_ms() if now is None else now
        cutoff = now - self.window_ms
        stale = [key for key, window in self._windows.items() if not window or window[-1] < cutoff]
        for key in stale:
            del self._windows[key]
            self._drop_lock(key)
        self._checks_since_sweep = 0
        if stale:
            logger.debug(f"清理了 {len(stale)} 个过期限流 key")
        return len(stale)

    def _evict_overflow(self):
        while len(self._windows) > self.max_keys:
            key, _ = self._windows.popitem(last=False)
            self._drop_lock(key)

    def _drop_lock(self, key: str):
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def reset(self, key: str | None = None):
        if key is None:
            self._windows.clear()
            self._locks.clear()
        else:
            self._windows.pop(key, None)
            self._drop_lock(key)
