"""尽力而为的副作用调度

表情复位、录制标记这类附带动作失败不影响主流程：
异常只在 debug 级别记录，任务引用保存在模块级集合里防止被回收。
"""

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

from tsukiko.common.logger import get_logger

logger = get_logger("best_effort")

T = TypeVar("T")

# 保存后台任务的强引用，任务结束后自动移除
_background_tasks: set[asyncio.Task] = set()


def _task_done_callback(task: asyncio.Task, name: str) -> None:
    if task.cancelled():
        logger.debug(f"后台任务 {name} 已取消")
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"后台任务 {name} 失败(已忽略): {exc!r}")


def fire_and_forget(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
    """在后台执行协程，不等待结果，失败只记录 debug 日志"""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(lambda t: _task_done_callback(t, name))
    return task


async def run_best_effort(coro: Coroutine[Any, Any, T], *, name: str) -> T | None:
    """等待协程执行完成，失败时返回 None"""
    try:
        return await coro
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.debug(f"{name} 失败(已忽略): {e!r}")
        return None


async def drain_background_tasks(timeout: float = 2.0) -> None:
    """关闭前等待尚未结束的后台任务，超时则取消"""
    if not _background_tasks:
        return
    tasks = list(_background_tasks)
    _, still_pending = await asyncio.wait(tasks, timeout=timeout)
    for task in still_pending:
        task.cancel()
    if still_pending:
        await asyncio.gather(*still_pending, return_exceptions=True)
