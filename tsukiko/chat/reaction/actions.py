"""
动作执行

节目流程、频道点数兑换和高光检测产生的动作都通过 ActionExecutor 执行。
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from typing_extensions import assert_never

from tsukiko.chat.express.emotion_mapper import DEFAULT_OVERRIDE_WEIGHT, DEFAULT_RESET_DELAY, pulse_parameter
from tsukiko.chat.message_send.throttler import MessageThrottler
from tsukiko.common.interfaces import AvatarControl, RewardSource, SceneControl, SettingsAccessor
from tsukiko.common.logger import get_logger
from tsukiko.individuality.persona import CURRENT_PERSONA_KEY

logger = get_logger("actions")


class ActionKind(Enum):
    SCENE = "scene"
    HOTKEY = "hotkey"
    EXPRESSION = "expression"
    PERSONA = "persona"
    SAY = "say"

    @classmethod
    def parse(cls, raw: str) -> "ActionKind | None":
        """解析动作类型，兼容 obs_scene / obs_hotkey / vts_expression 写法，未知类型返回 None"""
        if not isinstance(raw, str):
            return None
        key = raw.strip().lower()
        key = _KIND_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return None


_KIND_ALIASES = {
    "obs_scene": "scene",
    "obs_hotkey": "hotkey",
    "vts_expression": "expression",
}


@dataclass(frozen=True, slots=True)
class Action:
    kind: ActionKind
    value: str

    @classmethod
    def parse(cls, kind: str, value: str) -> "Action | None":
        parsed = ActionKind.parse(kind)
        if parsed is None:
            logger.debug(f"未知动作类型: {kind}")
            return None
        return cls(parsed, str(value))


class ActionExecutor:
    """按动作类型分发到场景控制、形象控制、设置和发送队列

    Args:
        scene: 场景控制，未启用时为 None
        avatar: 形象控制，未启用时为 None
        settings: 设置存储（persona 动作写入 persona.current）
        throttler: 发送队列（say 动作）
        default_channel: say 动作的目标频道，可以是字符串或返回字符串的函数
    """

    def __init__(
        self,
        *,
        scene: SceneControl | None = None,
        avatar: AvatarControl | None = None,
        settings: SettingsAccessor | None = None,
        throttler: MessageThrottler | None = None,
        default_channel: str | Callable[[], str | None] | None = None,
        expression_weight: float = DEFAULT_OVERRIDE_WEIGHT,
        expression_reset_delay: float = DEFAULT_RESET_DELAY,
    ):
        self.scene = scene
        self.avatar = avatar
        self.settings = settings
        self.throttler = throttler
        self._default_channel = default_channel
        self.expression_weight = expression_weight
        self.expression_reset_delay = expression_reset_delay

    @property
    def default_channel(self) -> str | None:
        if callable(self._default_channel):
            return self._default_channel()
        return self._default_channel

    async def execute(self, action: Action | None) -> None:
        if action is None:
            logger.debug("忽略空动作")
            return

        logger.debug(f"执行动作 {action.kind.value}: {action.value}")
        match action.kind:
            case ActionKind.SCENE:
                if self.scene is None:
                    logger.debug("场景控制未启用，忽略 scene 动作")
                    return
                await self.scene.set_scene(action.value)
            case ActionKind.HOTKEY:
                if self.scene is None:
                    logger.debug("场景控制未启用，忽略 hotkey 动作")
                    return
                await self.scene.trigger_hotkey(action.value)
            case ActionKind.EXPRESSION:
                if self.avatar is None:
                    logger.debug("形象控制未启用，忽略 expression 动作")
                    return
                await pulse_parameter(self.avatar, action.value, self.expression_weight, self.expression_reset_delay)
            case ActionKind.PERSONA:
                if self.settings is None:
                    logger.debug("没有设置存储，忽略 persona 动作")
                    return
                await self.settings.set_setting(CURRENT_PERSONA_KEY, action.value)
                logger.info(f"人格已切换为 {action.value}")
            case ActionKind.SAY:
                channel = self.default_channel
                if self.throttler is None or not channel:
                    logger.warning("没有可用的发送频道，忽略 say 动作")
                    return
                self.throttler.enqueue(channel, action.value)
            case _:
                assert_never(action.kind)


class RewardRouter:
    """频道点数兑换 -> 动作，标题不区分大小写"""

    def __init__(self, executor: ActionExecutor, table: Mapping[str, Action] | None = None):
        self.executor = executor
        self._table: dict[str, Action] = {title.lower(): action for title, action in (table or {}).items()}

    @classmethod
    def from_config(cls, executor: ActionExecutor, rewards: Iterable) -> "RewardRouter":
        table: dict[str, Action] = {}
        for reward in rewards:
            action = Action.parse(reward.kind, reward.value)
            if action is None:
                logger.warning(f"奖励 {reward.title} 的动作类型 {reward.kind} 无效，已忽略")
                continue
            table[reward.title] = action
        return cls(executor, table)

    def set_reward_action(self, title: str, action: Action) -> None:
        self._table[title.lower()] = action

    def action_for(self, title: str) -> Action | None:
        return self._table.get(title.lower())

    def attach(self, source: RewardSource) -> None:
        source.on_reward(self.on_reward)

    async def on_reward(self, title: str) -> bool:
        """处理一次兑换，返回是否有对应动作"""
        action = self.action_for(title)
        if action is None:
            logger.debug(f"奖励 {title} 没有配置动作")
            return False
        logger.info(f"兑换奖励 {title} -> {action.kind.value}: {action.value}")
        await self.executor.execute(action)
        return True
