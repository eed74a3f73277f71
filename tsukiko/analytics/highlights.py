"""
聊天高峰（高光）检测

每秒统计一次聊天条数，窗口填满后若当前值超过窗口中位数的 threshold 倍，判定为高光时刻。
"""

import threading
import time
from collections import deque

from tsukiko.common.interfaces import SceneControl
from tsukiko.common.logger import get_logger
from tsukiko.common.memory_store import HighlightRecord, MemoryStore
from tsukiko.utils.best_effort import fire_and_forget

logger = get_logger("highlights")


class HighlightDetector:
    """滚动窗口中位数检测"""

    def __init__(self, window: int = 30, threshold: float = 2.5):
        if window < 1 or threshold <= 0:
            raise ValueError("window 必须 >= 1，threshold 必须 > 0")
        self.window = window
        self.threshold = threshold
        self._counts: deque[int] = deque(maxlen=window)
        self._lock = threading.Lock()

    def record_chat_count(self, count: int) -> bool:
        """记录一秒的聊天条数，返回这一秒是否为高峰"""
        with self._lock:
            self._counts.append(count)
            if len(self._counts) < self.window:
                return False
            ordered = sorted(self._counts)
            median = ordered[len(ordered) // 2] or 1
            return count > median * self.threshold

    def reset(self):
        with self._lock:
            self._counts.clear()


class ChatRateCounter:
    """把逐条消息转换成每秒条数

    消息到达时若距上次结算已超过 interval，返回之前累计的条数并重新计数（这条消息计入新的一秒）；
    否则返回 None。
    """

    def __init__(self, interval: float = 1.0):
        self.interval = interval
        self._count = 0
        self._last_tick = time.monotonic()

    def tick(self, now: float | None = None) -> int | None:
        now = time.monotonic() if now is None else now
        emitted = None
        if now - self._last_tick > self.interval:
            emitted, self._count = self._count, 0
            self._last_tick = now
        self._count += 1
        return emitted


class HighlightStore:
    """高光记录的读取接口"""

    def __init__(self, store: MemoryStore):
        self._store = store

    async def add(self, timestamp_ms: int, reason: str) -> HighlightRecord:
        return await self._store.add_highlight(timestamp_ms, reason)

    async def list(self, limit: int = 50) -> list[HighlightRecord]:
        return await self._store.list_highlights(limit)


class HighlightService:
    """把检测结果落库，并尽量在录制中打一个标记"""

    def __init__(
        self,
        detector: HighlightDetector,
        store: HighlightStore,
        scene: SceneControl | None = None,
        create_marker: bool = True,
    ):
        self.detector = detector
        self.store = store
        self.scene = scene
        self.create_marker = create_marker
        self.counter = ChatRateCounter()

    async def on_chat_message(self) -> HighlightRecord | None:
        """每收到一条聊天调用一次"""
        count = self.counter.tick()
        if count is None:
            return None
        return await self.on_chat_count(count)

    async def on_chat_count(self, count: int) -> HighlightRecord | None:
        if not self.detector.record_chat_count(count):
            return None

        timestamp_ms = int(time.time() * 1000)
        reason = f"chat spike: {count} msg/s"
        logger.info(f"✨ 检测到聊天高峰: {count} 条/秒")
        record = await self.store.add(timestamp_ms, reason)
        if self.create_marker and self.scene is not None:
            fire_and_forget(self.scene.create_marker(f"Highlight {count}/s"), name="高光录制标记")
        return record
