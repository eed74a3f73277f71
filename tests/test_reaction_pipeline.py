"""
反应流水线端到端测试
"""

import pytest

from tests.helpers import FakeAvatar, FakeGenerator, FakeSettings, wait_for
from tsukiko.chat.message_send.throttler import MessageThrottler
from tsukiko.chat.rate_limit.limiter import SlidingWindowLimiter
from tsukiko.chat.reaction.pipeline import ReactionOptions, ReactionOutcome, ReactionPipeline
from tsukiko.common.exceptions import GenerationError
from tsukiko.common.interfaces import ChatEvent
from tsukiko.individuality.persona import BUILTIN_PERSONAS


def chat(text: str, user: str = "alice") -> ChatEvent:
    return ChatEvent(platform="twitch", channel="#tsukiko", user=user, text=text, user_id=f"id-{user}")


class TestReactionPipeline:
    @pytest.fixture(autouse=True)
    def clear_env(self, monkeypatch):
        monkeypatch.delenv("PERSONALITY_PRESET", raising=False)

    @pytest.fixture
    def sent(self):
        return []

    @pytest.fixture
    def settings(self):
        return FakeSettings()

    @pytest.fixture
    def generator(self):
        return FakeGenerator()

    @pytest.fixture
    def avatar(self):
        return FakeAvatar()

    @pytest.fixture
    def throttler(self, sent):
        async def send(channel, text):
            sent.append((channel, text))

        return MessageThrottler(send, delay=0)

    @pytest.fixture
    def pipeline(self, settings, generator, avatar, throttler):
        return ReactionPipeline(
            settings=settings,
            limiter=SlidingWindowLimiter(window_ms=10_000, max_in_window=3),
            generator=generator,
            throttler=throttler,
            avatar=avatar,
            options=ReactionOptions(expression_reset_delay=0.01),
        )

    @pytest.mark.asyncio
    async def test_reply_flow(self, pipeline, generator, throttler, sent, avatar):
        outcome = await pipeline.handle_chat(chat("  hi tsukiko  "))

        assert outcome is ReactionOutcome.REPLIED
        assert generator.calls == [("alice: hi tsukiko", BUILTIN_PERSONAS["default"].system_prompt, "medium")]
        await throttler.wait_idle()
        assert sent == [("#tsukiko", "hello there")]
        assert await wait_for(lambda: avatar.calls == [("Neutral", 0.5), ("Neutral", 0.0)])

    @pytest.mark.asyncio
    async def test_moderated_message_never_reaches_generation(self, pipeline, generator, throttler, sent, avatar):
        outcome = await pipeline.handle_chat(chat("HELLO WORLD!!!"))

        assert outcome is ReactionOutcome.MODERATED
        assert generator.calls == []
        await throttler.wait_idle()
        assert sent == []
        assert avatar.calls == []

    @pytest.mark.asyncio
    async def test_moderation_settings_apply_to_next_message(self, pipeline, settings):
        assert await pipeline.handle_chat(chat("HELLO WORLD!!!")) is ReactionOutcome.MODERATED
        settings.values["moderation.enabled"] = "false"
        assert await pipeline.handle_chat(chat("HELLO WORLD!!!")) is ReactionOutcome.REPLIED

    @pytest.mark.asyncio
    async def test_rate_limited_per_user(self, pipeline, generator):
        outcomes = [await pipeline.handle_chat(chat(f"message {i}")) for i in range(4)]

        assert outcomes[:3] == [ReactionOutcome.REPLIED] * 3
        assert outcomes[3] is ReactionOutcome.RATE_LIMITED
        assert len(generator.calls) == 3
        assert await pipeline.handle_chat(chat("hello", user="bob")) is ReactionOutcome.REPLIED

    @pytest.mark.asyncio
    async def test_persona_from_settings(self, pipeline, settings, generator):
        settings.values["persona.current"] = "evil"
        await pipeline.handle_chat(chat("hi"))
        assert generator.calls[0][1] == BUILTIN_PERSONAS["evil"].system_prompt
        # evil 人格几乎不允许粗口，安全级别随之收紧
        assert generator.calls[0][2] == "high"

    @pytest.mark.asyncio
    async def test_generation_failure(self, pipeline, generator, throttler, sent):
        generator.error = GenerationError("upstream down")

        assert await pipeline.handle_chat(chat("hi")) is ReactionOutcome.GENERATION_FAILED
        await throttler.wait_idle()
        assert sent == []

    @pytest.mark.asyncio
    async def test_empty_reply(self, pipeline, generator):
        generator.reply = "   "
        assert await pipeline.handle_chat(chat("hi")) is ReactionOutcome.EMPTY_REPLY

    @pytest.mark.asyncio
    async def test_reply_is_truncated(self, pipeline, generator, throttler, sent):
        generator.reply = "x" * 500
        await pipeline.handle_chat(chat("hi"))
        await throttler.wait_idle()
        assert sent == [("#tsukiko", "x" * 300)]

    @pytest.mark.asyncio
    async def test_settings_failure_uses_defaults(self, generator, throttler):
        class BrokenSettings(FakeSettings):
            async def get_all_settings(self):
                raise RuntimeError("database locked")

        pipeline = ReactionPipeline(
            settings=BrokenSettings(),
            limiter=SlidingWindowLimiter(),
            generator=generator,
            throttler=throttler,
        )
        assert await pipeline.handle_chat(chat("hi")) is ReactionOutcome.REPLIED
        assert await pipeline.handle_chat(chat("HELLO WORLD!!!", user="bob")) is ReactionOutcome.MODERATED

    @pytest.mark.asyncio
    async def test_history_is_recorded(self, memory_store, generator, throttler):
        pipeline = ReactionPipeline(
            settings=memory_store,
            limiter=SlidingWindowLimiter(),
            generator=generator,
            throttler=throttler,
            store=memory_store,
        )
        await pipeline.handle_chat(chat("hi there"))

        messages = await memory_store.get_recent_messages()
        assert sorted((m.role, m.content) for m in messages) == [("assistant", "hello there"), ("user", "hi there")]
        user_ids = {m.user_id for m in messages}
        assert len(user_ids) == 1 and None not in user_ids
