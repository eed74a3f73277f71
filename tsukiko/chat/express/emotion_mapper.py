"""
情绪 -> 形象表情映射

根据回复文本的关键词粗略判断情绪，再把情绪映射成形象控制的参数，
设置参数后经过一小段时间自动复位到 0。
"""

import asyncio
import re
from collections.abc import Mapping
from enum import Enum

from tsukiko.common.interfaces import AvatarControl
from tsukiko.common.logger import get_logger
from tsukiko.utils.best_effort import fire_and_forget, run_best_effort

logger = get_logger("emotion_mapper")

EMOTION_SETTING_PREFIX = "emotion."
DEFAULT_RESET_DELAY = 1.2
DEFAULT_OVERRIDE_WEIGHT = 0.9


class Emotion(Enum):
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    SURPRISED = "surprised"
    NEUTRAL = "neutral"


# 按优先级排列，命中第一个即返回
_KEYWORD_PATTERNS: tuple[tuple[Emotion, re.Pattern[str]], ...] = (
    (Emotion.HAPPY, re.compile(r"\b(gg|lol|haha|awesome|nice|great|love)\b")),
    (Emotion.SAD, re.compile(r"\b(sad|unfair|bad|cry)\b")),
    (Emotion.ANGRY, re.compile(r"\b(angry|mad|wtf|rage)\b")),
    (Emotion.SURPRISED, re.compile(r"\b(what|omg|wow)\b")),
)

DEFAULT_EXPRESSIONS: Mapping[Emotion, tuple[str, float]] = {
    Emotion.HAPPY: ("Smile", 0.9),
    Emotion.SAD: ("Sad", 0.8),
    Emotion.ANGRY: ("Angry", 0.8),
    Emotion.SURPRISED: ("Surprised", 0.9),
    Emotion.NEUTRAL: ("Neutral", 0.5),
}


def classify(text: str) -> Emotion:
    lowered = text.lower()
    for emotion, pattern in _KEYWORD_PATTERNS:
        if pattern.search(lowered):
            return emotion
    return Emotion.NEUTRAL


def expression_for(
    emotion: Emotion, settings: Mapping[str, str] | None = None, override_weight: float = DEFAULT_OVERRIDE_WEIGHT
) -> tuple[str, float]:
    """情绪对应的 (参数名, 权重)，settings 中的 emotion.<name> 可以替换参数名"""
    if settings:
        custom = settings.get(f"{EMOTION_SETTING_PREFIX}{emotion.value}")
        if custom:
            return str(custom), override_weight
    return DEFAULT_EXPRESSIONS.get(emotion, DEFAULT_EXPRESSIONS[Emotion.NEUTRAL])


async def _reset_later(avatar: AvatarControl, parameter: str, delay: float):
    await asyncio.sleep(delay)
    await avatar.set_parameter(parameter, 0.0)


async def pulse_parameter(avatar: AvatarControl, parameter: str, weight: float, reset_delay: float = DEFAULT_RESET_DELAY):
    """设置参数，reset_delay 秒后在后台复位为 0"""
    await run_best_effort(avatar.set_parameter(parameter, weight), name=f"表情 {parameter}")
    fire_and_forget(_reset_later(avatar, parameter, reset_delay), name=f"表情复位 {parameter}")


async def trigger(
    emotion: Emotion,
    avatar: AvatarControl,
    settings: Mapping[str, str] | None = None,
    *,
    reset_delay: float = DEFAULT_RESET_DELAY,
    override_weight: float = DEFAULT_OVERRIDE_WEIGHT,
) -> tuple[str, float]:
    """触发情绪表情，返回实际使用的 (参数名, 权重)"""
    parameter, weight = expression_for(emotion, settings, override_weight)
    logger.debug(f"情绪 {emotion.value} -> {parameter}={weight}")
    await pulse_parameter(avatar, parameter, weight, reset_delay)
    return parameter, weight
