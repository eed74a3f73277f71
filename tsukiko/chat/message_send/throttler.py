"""
聊天发送节流

全进程共用一个 FIFO 队列，由单个后台任务逐条发送，两条之间至少间隔 delay 秒。
发送失败只记录日志，不重试，不影响后续消息。
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable

from tsukiko.common.logger import get_logger

logger = get_logger("throttler")

SendFunc = Callable[[str, str], Awaitable[None]]


class MessageThrottler:
    """出站消息节流器

    Args:
        send: 实际发送函数 send(channel, text)
        delay: 两条消息之间的间隔(秒)
    """

    def __init__(self, send: SendFunc, delay: float = 1.0):
        self._send = send
        self.delay = delay
        self._queue: deque[tuple[str, str]] = deque()
        self._draining = False
        self._drain_task: asyncio.Task | None = None
        self._closed = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_draining(self) -> bool:
        return self._draining

    def enqueue(self, channel: str, text: str) -> None:
        """加入发送队列，需要时启动发送任务"""
        if self._closed:
            logger.debug(f"发送队列已关闭，丢弃发往 {channel} 的消息")
            return
        self._queue.append((channel, text))
        if not self._draining:
            self._draining = True
            self._drain_task = asyncio.create_task(self._drain(), name="throttler-drain")

    async def _drain(self):
        try:
            while self._queue:
                channel, text = self._queue.popleft()
                try:
                    await self._send(channel, text)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"发送到 {channel} 失败(已丢弃): {e}")
                await asyncio.sleep(self.delay)
        finally:
            self._draining = False

    async def wait_idle(self) -> None:
        """等待当前队列发送完毕"""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def close(self, drain: bool = False) -> None:
        """停止接收新消息；drain 为真时先把已排队的消息发完"""
        self._closed = True
        if drain:
            await self.wait_idle()
        task, self._drain_task = self._drain_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        dropped = len(self._queue)
        self._queue.clear()
        if dropped:
            logger.info(f"发送队列关闭，丢弃 {dropped} 条未发送消息")
