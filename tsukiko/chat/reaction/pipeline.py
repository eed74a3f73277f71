"""
反应流水线

一条聊天消息的处理顺序:
    读取设置 -> 限流 -> 审核 -> 解析人格 -> 生成回复 -> 触发表情(后台) -> 放入发送队列

限流和审核都在任何外部调用之前完成；被拒绝的消息静默丢弃，只记录 debug 日志。
"""

import asyncio
from dataclasses import dataclass
from enum import Enum

from tsukiko.chat.express import emotion_mapper
from tsukiko.chat.message_send.throttler import MessageThrottler
from tsukiko.chat.moderation.engine import ModerationPolicy, evaluate, policy_from_settings
from tsukiko.chat.rate_limit.limiter import SlidingWindowLimiter, rate_key
from tsukiko.common.interfaces import AvatarControl, ChatEvent, GenerationService, SettingsAccessor
from tsukiko.common.logger import get_logger
from tsukiko.common.memory_store import MemoryStore
from tsukiko.individuality.persona import current_persona_id, resolve, safety_level_for
from tsukiko.utils.best_effort import fire_and_forget

logger = get_logger("reaction")


class ReactionOutcome(Enum):
    REPLIED = "replied"
    RATE_LIMITED = "rate_limited"
    MODERATED = "moderated"
    GENERATION_FAILED = "generation_failed"
    EMPTY_REPLY = "empty_reply"


@dataclass(slots=True)
class ReactionOptions:
    max_reply_length: int = 300
    safety_level: str | None = "medium"
    default_persona: str | None = None
    record_history: bool = True
    expression_reset_delay: float = emotion_mapper.DEFAULT_RESET_DELAY
    expression_override_weight: float = emotion_mapper.DEFAULT_OVERRIDE_WEIGHT

    @classmethod
    def from_config(cls, config) -> "ReactionOptions":
        return cls(
            max_reply_length=config.reaction.max_reply_length,
            safety_level=config.reaction.safety_level,
            default_persona=config.persona.default_persona,
            record_history=config.reaction.record_history,
            expression_reset_delay=config.expression.reset_delay,
            expression_override_weight=config.expression.override_weight,
        )


class ReactionPipeline:
    """聊天消息 -> 回复 / 表情"""

    def __init__(
        self,
        *,
        settings: SettingsAccessor,
        limiter: SlidingWindowLimiter,
        generator: GenerationService,
        throttler: MessageThrottler,
        avatar: AvatarControl | None = None,
        store: MemoryStore | None = None,
        base_policy: ModerationPolicy | None = None,
        options: ReactionOptions | None = None,
    ):
        self.settings = settings
        self.limiter = limiter
        self.generator = generator
        self.throttler = throttler
        self.avatar = avatar
        self.store = store
        self.base_policy = base_policy or ModerationPolicy()
        self.options = options or ReactionOptions()

    async def handle_chat(self, event: ChatEvent) -> ReactionOutcome:
        try:
            settings = await self.settings.get_all_settings()
        except Exception as e:
            logger.warning(f"读取设置失败，使用默认设置: {e}")
            settings = {}
        policy = policy_from_settings(settings, self.base_policy)

        if not await self.limiter.allow(rate_key(event.platform, event.channel, event.user)):
            logger.debug(f"{event.user} 的消息被限流")
            return ReactionOutcome.RATE_LIMITED

        verdict = evaluate(event.text, policy)
        if not verdict.allowed:
            logger.debug(f"{event.user} 的消息未通过审核: {verdict.reason.value if verdict.reason else '-'}")
            return ReactionOutcome.MODERATED
        sanitized = verdict.sanitized or ""

        persona = resolve(current_persona_id(settings, self.options.default_persona), settings)
        prompt = f"{event.user}: {sanitized}"

        user_id = await self._record_inbound(event, sanitized)

        safety_level = safety_level_for(persona, self.options.safety_level)
        try:
            reply = await self.generator.chat(prompt, persona.system_prompt, safety_level)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"为 {event.user} 生成回复失败: {e}")
            return ReactionOutcome.GENERATION_FAILED

        reply = (reply or "").strip()[: self.options.max_reply_length]
        if not reply:
            logger.debug(f"{event.user} 的回复为空，已丢弃")
            return ReactionOutcome.EMPTY_REPLY

        if self.avatar is not None:
            emotion = emotion_mapper.classify(reply)
            fire_and_forget(
                emotion_mapper.trigger(
                    emotion,
                    self.avatar,
                    settings,
                    reset_delay=self.options.expression_reset_delay,
                    override_weight=self.options.expression_override_weight,
                ),
                name=f"表情 {emotion.value}",
            )

        self.throttler.enqueue(event.channel, reply)
        logger.info(f"[{persona.name}] 回复 {event.user}: {reply}")

        await self._record_reply(reply, user_id)
        return ReactionOutcome.REPLIED

    # ==================== 记录 ====================

    async def _record_inbound(self, event: ChatEvent, sanitized: str) -> str | None:
        if self.store is None or not self.options.record_history:
            return None
        try:
            user_id = await self.store.upsert_user(event.platform, event.user_id or event.user, event.user)
            await self.store.save_message(sanitized, "user", user_id)
            return user_id
        except Exception as e:
            logger.error(f"记录 {event.user} 的消息失败: {e}")
            return None

    async def _record_reply(self, reply: str, user_id: str | None):
        if self.store is None or not self.options.record_history:
            return
        try:
            await self.store.save_message(reply, "assistant", user_id)
        except Exception as e:
            logger.error(f"记录回复失败: {e}")
