"""
情绪映射测试
"""

import pytest

from tests.helpers import FakeAvatar, wait_for
from tsukiko.chat.express.emotion_mapper import Emotion, classify, expression_for, trigger


class TestClassify:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("lol that was great", Emotion.HAPPY),
            ("this is so unfair", Emotion.SAD),
            ("wtf was that", Emotion.ANGRY),
            ("OMG no way", Emotion.SURPRISED),
            ("the weather is fine", Emotion.NEUTRAL),
            # 多个命中时按优先级
            ("haha that's sad", Emotion.HAPPY),
            # 只匹配完整单词
            ("whatever", Emotion.NEUTRAL),
        ],
    )
    def test_keywords(self, text, expected):
        assert classify(text) is expected


class TestExpressionFor:
    def test_defaults(self):
        assert expression_for(Emotion.HAPPY) == ("Smile", 0.9)
        assert expression_for(Emotion.NEUTRAL) == ("Neutral", 0.5)

    def test_settings_override(self):
        assert expression_for(Emotion.SAD, {"emotion.sad": "Tears"}) == ("Tears", 0.9)
        assert expression_for(Emotion.SAD, {"emotion.sad": "Tears"}, override_weight=0.7) == ("Tears", 0.7)


class TestTrigger:
    @pytest.mark.asyncio
    async def test_sets_then_resets(self):
        avatar = FakeAvatar()
        result = await trigger(Emotion.HAPPY, avatar, reset_delay=0.01)

        assert result == ("Smile", 0.9)
        assert avatar.calls[0] == ("Smile", 0.9)
        assert await wait_for(lambda: len(avatar.calls) == 2)
        assert avatar.calls[1] == ("Smile", 0.0)

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        avatar = FakeAvatar(fail=True)
        result = await trigger(Emotion.ANGRY, avatar, reset_delay=0.01)

        assert result == ("Angry", 0.8)
        # 复位同样会失败，但不应抛出
        assert await wait_for(lambda: len(avatar.calls) == 2)
