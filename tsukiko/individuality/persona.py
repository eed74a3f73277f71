"""
人格解析

内置人格表只读；自定义人格来自 settings 中的 persona.custom.<id>（JSON 对象），
格式错误的条目直接跳过，也不能覆盖内置人格。
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal

import orjson

from tsukiko.common.logger import get_logger

logger = get_logger("persona")

ProfanityLevel = Literal["low", "medium", "high"]

CURRENT_PERSONA_KEY = "persona.current"
CUSTOM_PERSONA_PREFIX = "persona.custom."
DEFAULT_PERSONA_ID = "default"


@dataclass(frozen=True, slots=True)
class Persona:
    id: str
    name: str
    system_prompt: str
    voice_id: str | None = None
    profanity_level: ProfanityLevel = "medium"


BUILTIN_PERSONAS: Mapping[str, Persona] = MappingProxyType(
    {
        "default": Persona(
            id="default",
            name="Tsukiko",
            system_prompt=(
                "You are Tsukiko, a witty, kind, slightly playful AI VTuber who engages respectfully, "
                "avoids harmful topics, and keeps things fun."
            ),
            voice_id="en-US-Neural2-F",
            profanity_level="medium",
        ),
        "evil": Persona(
            id="evil",
            name="Evil Tsukiko",
            system_prompt=(
                "You are Evil Tsukiko, cheeky and mischievous yet safe-for-stream. "
                "Be dry, sarcastic, and playful without being offensive."
            ),
            voice_id="en-US-Neural2-E",
            profanity_level="low",
        ),
    }
)


def _parse_custom(persona_id: str, raw: str) -> Persona | None:
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        logger.debug(f"自定义人格 {persona_id} 不是合法 JSON，已跳过: {e}")
        return None
    if not isinstance(data, dict):
        logger.debug(f"自定义人格 {persona_id} 不是 JSON 对象，已跳过")
        return None

    system_prompt = data.get("systemPrompt") or data.get("system_prompt")
    if not isinstance(system_prompt, str) or not system_prompt.strip():
        logger.debug(f"自定义人格 {persona_id} 缺少 system prompt，已跳过")
        return None

    profanity = data.get("profanityLevel") or data.get("profanity_level") or "medium"
    if profanity not in ("low", "medium", "high"):
        profanity = "medium"
    voice_id = data.get("voiceId") or data.get("voice_id")

    return Persona(
        id=persona_id,
        name=str(data.get("name") or persona_id),
        system_prompt=system_prompt,
        voice_id=str(voice_id) if voice_id else None,
        profanity_level=profanity,
    )


# 允许的粗口越少，安全级别越高
PROFANITY_TO_SAFETY: Mapping[ProfanityLevel, str] = MappingProxyType({"low": "high", "medium": "medium", "high": "low"})
SAFETY_ORDER = ("low", "medium", "high")


def safety_level_for(persona: Persona, configured: str | None = None) -> str:
    """人格对应的生成安全级别，与配置的级别取更严格的一个"""
    level = PROFANITY_TO_SAFETY[persona.profanity_level]
    if configured in SAFETY_ORDER:
        return max(configured, level, key=SAFETY_ORDER.index)
    return level


def custom_personas(settings: Mapping[str, str]) -> dict[str, Persona]:
    """从 settings 中解析所有自定义人格"""
    personas: dict[str, Persona] = {}
    for key, raw in settings.items():
        if not key.startswith(CUSTOM_PERSONA_PREFIX):
            continue
        persona_id = key[len(CUSTOM_PERSONA_PREFIX) :]
        if not persona_id or persona_id in BUILTIN_PERSONAS:
            continue
        if persona := _parse_custom(persona_id, raw):
            personas[persona_id] = persona
    return personas


def resolve(persona_id: str | None, settings: Mapping[str, str] | None = None) -> Persona:
    """按 id 解析人格，缺省或未知 id 回退到 default"""
    if not persona_id:
        return BUILTIN_PERSONAS[DEFAULT_PERSONA_ID]
    if persona_id in BUILTIN_PERSONAS:
        return BUILTIN_PERSONAS[persona_id]
    if settings:
        raw = settings.get(CUSTOM_PERSONA_PREFIX + persona_id)
        if raw is not None and (persona := _parse_custom(persona_id, raw)):
            return persona
    logger.debug(f"未知人格 {persona_id}，使用默认人格")
    return BUILTIN_PERSONAS[DEFAULT_PERSONA_ID]


def current_persona_id(settings: Mapping[str, str], fallback: str | None = None) -> str:
    """当前人格：settings 中的 persona.current > 环境变量 PERSONALITY_PRESET > fallback > default"""
    return settings.get(CURRENT_PERSONA_KEY) or os.getenv("PERSONALITY_PRESET") or fallback or DEFAULT_PERSONA_ID


def list_personas(settings: Mapping[str, str] | None = None) -> list[Persona]:
    personas = list(BUILTIN_PERSONAS.values())
    if settings:
        personas.extend(custom_personas(settings).values())
    return personas
