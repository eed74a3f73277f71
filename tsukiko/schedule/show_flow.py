"""
节目流程调度

每个步骤一个 asyncio 任务，按 cron 表达式休眠到下一次触发时间，然后按顺序执行该步骤的动作。
重新加载时先校验全部步骤，校验通过后才取消旧任务并安装新任务。
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import orjson
from croniter import croniter

from tsukiko.chat.reaction.actions import Action
from tsukiko.common.exceptions import InvalidShowStepError
from tsukiko.common.logger import get_logger

logger = get_logger("show_flow")

SHOWFLOW_SETTING_KEY = "showflow.steps"

ActionHandler = Callable[[Action], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class ShowStep:
    schedule: str
    actions: tuple[Action, ...] = ()


def validate_cron(expression: str) -> None:
    if not isinstance(expression, str) or not croniter.is_valid(expression):
        raise InvalidShowStepError(f"无效的 cron 表达式: {expression!r}")


def start_cron_task(
    schedule: str,
    job: Callable[[], Awaitable[Any]],
    *,
    name: str,
    now: Callable[[], datetime] = datetime.now,
) -> asyncio.Task:
    """启动一个按 cron 表达式循环执行 job 的任务，job 的异常只记录日志"""
    validate_cron(schedule)

    async def _loop():
        itr = croniter(schedule, now())
        while True:
            next_fire = itr.get_next(datetime)
            delay = (next_fire - now()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"定时任务 {name} 执行失败: {e}")

    return asyncio.create_task(_loop(), name=name)


class ShowFlowScheduler:
    """节目流程调度器"""

    def __init__(self, now: Callable[[], datetime] = datetime.now):
        self._now = now
        self._tasks: list[asyncio.Task] = []
        self._steps: list[ShowStep] = []
        self._lock = asyncio.Lock()

    @property
    def steps(self) -> list[ShowStep]:
        return list(self._steps)

    @property
    def job_count(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def load(self, steps: Iterable[ShowStep], execute: ActionHandler) -> None:
        """替换当前全部步骤

        Raises:
            InvalidShowStepError: 任一步骤的 cron 表达式无效，此时旧任务保持不变
        """
        steps = list(steps)
        for step in steps:
            validate_cron(step.schedule)

        async with self._lock:
            await self._cancel_all()
            for index, step in enumerate(steps):
                task = start_cron_task(
                    step.schedule,
                    lambda step=step: run_step(step, execute),
                    name=f"show-step-{index}",
                    now=self._now,
                )
                self._tasks.append(task)
            self._steps = steps
        logger.info(f"节目流程已加载 {len(steps)} 个步骤")

    async def stop(self) -> None:
        async with self._lock:
            await self._cancel_all()
            self._steps = []

    async def _cancel_all(self):
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def run_step(step: ShowStep, execute: ActionHandler) -> None:
    """按顺序执行一个步骤的动作，单个动作失败不影响后续动作"""
    for action in step.actions:
        try:
            await execute(action)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"节目动作 {action.kind.value}:{action.value} 执行失败: {e}")


# ==================== 步骤解析 ====================


def parse_step(raw: Mapping[str, Any]) -> ShowStep:
    """解析 {cron|schedule, actions:[{kind,value}]}，未知动作类型被跳过"""
    if not isinstance(raw, Mapping):
        raise InvalidShowStepError(f"步骤必须是对象: {raw!r}")
    schedule = raw.get("cron") or raw.get("schedule")
    if not schedule:
        raise InvalidShowStepError(f"步骤缺少 cron 表达式: {raw}")
    validate_cron(schedule)

    raw_actions = raw.get("actions") or []
    if not isinstance(raw_actions, list | tuple):
        raise InvalidShowStepError(f"步骤的 actions 必须是数组: {raw_actions!r}")

    actions = []
    for item in raw_actions:
        if not isinstance(item, Mapping):
            raise InvalidShowStepError(f"动作必须是 {{kind, value}} 对象: {item!r}")
        kind = item.get("kind") or item.get("type")
        if not kind:
            continue
        if not isinstance(kind, str):
            raise InvalidShowStepError(f"动作类型必须是字符串: {kind!r}")
        if action := Action.parse(kind, item.get("value", "")):
            actions.append(action)
    return ShowStep(schedule=schedule, actions=tuple(actions))


def parse_steps(raw_steps: Iterable[Mapping[str, Any]]) -> list[ShowStep]:
    return [parse_step(raw) for raw in raw_steps]


def steps_from_settings(settings: Mapping[str, str]) -> list[ShowStep] | None:
    """读取 settings 中的 showflow.steps（JSON 数组），不存在时返回 None"""
    raw = settings.get(SHOWFLOW_SETTING_KEY)
    if not raw:
        return None
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise InvalidShowStepError(f"{SHOWFLOW_SETTING_KEY} 不是合法 JSON: {e}") from e
    if not isinstance(data, list):
        raise InvalidShowStepError(f"{SHOWFLOW_SETTING_KEY} 必须是数组")
    return parse_steps(data)


def steps_from_config(config_steps: Iterable) -> list[ShowStep]:
    return parse_steps(step.model_dump() for step in config_steps)
