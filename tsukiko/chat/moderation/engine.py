"""
文本审核引擎

对一条聊天消息按固定顺序做检查，命中第一条规则即返回：
关闭 -> 空消息 -> 超长 -> 大写占比 -> 屏蔽词 -> 链接 -> 侮辱词 -> 放行。
策略每条消息都从 settings 重新构建，修改后下一条消息立即生效。
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

import orjson

from tsukiko.common.logger import get_logger

logger = get_logger("moderation")

_UPPER_RE = re.compile(r"[A-Z]")
_ALPHA_RE = re.compile(r"[A-Za-z]")
_URL_RE = re.compile(r"https?://", re.IGNORECASE)

SETTINGS_PREFIX = "moderation."


class ModerationReason(Enum):
    """拒绝原因"""

    EMPTY = "empty"
    TOO_LONG = "too_long"
    TOO_MANY_CAPS = "too_many_caps"
    BLOCKLIST = "blocklist"
    SLUR_BLOCKED = "slur_blocked"
    URL_BLOCKED = "url_blocked"


@dataclass(frozen=True, slots=True)
class ModerationPolicy:
    enabled: bool = True
    blocklist: frozenset[str] = field(default_factory=frozenset)
    slur_list: frozenset[str] = field(default_factory=frozenset)
    max_caps_percent: int = 70
    max_length: int = 400
    block_urls: bool = False

    def __post_init__(self):
        if not 0 <= self.max_caps_percent <= 100:
            raise ValueError(f"max_caps_percent 必须在 0..100 之间: {self.max_caps_percent}")
        if self.max_length < 1:
            raise ValueError(f"max_length 必须为正数: {self.max_length}")


@dataclass(frozen=True, slots=True)
class ModerationVerdict:
    """审核结果，allowed 为真时 sanitized 一定不为 None"""

    allowed: bool
    reason: ModerationReason | None = None
    sanitized: str | None = None

    @classmethod
    def allow(cls, sanitized: str) -> "ModerationVerdict":
        return cls(True, None, sanitized)

    @classmethod
    def deny(cls, reason: ModerationReason) -> "ModerationVerdict":
        return cls(False, reason, None)


def _contains_any(haystack: str, needles: Iterable[str]) -> bool:
    return any(needle and needle.lower() in haystack for needle in needles)


def caps_ratio(text: str) -> float:
    """大写字母占字母总数的比例，无字母时为 0"""
    upper = len(_UPPER_RE.findall(text))
    alpha = len(_ALPHA_RE.findall(text))
    return upper / max(1, alpha)


def evaluate(text: str, policy: ModerationPolicy) -> ModerationVerdict:
    """审核一条消息

    Args:
        text: 原始消息
        policy: 审核策略

    Returns:
        ModerationVerdict: 命中的第一条规则，或放行结果（sanitized 为去除首尾空白后的文本）
    """
    trimmed = text.strip()
    if not policy.enabled:
        return ModerationVerdict.allow(trimmed)

    if not trimmed:
        return ModerationVerdict.deny(ModerationReason.EMPTY)

    if len(trimmed) > policy.max_length:
        return ModerationVerdict.deny(ModerationReason.TOO_LONG)

    if caps_ratio(trimmed) * 100 > policy.max_caps_percent:
        return ModerationVerdict.deny(ModerationReason.TOO_MANY_CAPS)

    lowered = trimmed.lower()
    if _contains_any(lowered, policy.blocklist):
        return ModerationVerdict.deny(ModerationReason.BLOCKLIST)

    if policy.block_urls and _URL_RE.search(trimmed):
        return ModerationVerdict.deny(ModerationReason.URL_BLOCKED)

    if _contains_any(lowered, policy.slur_list):
        return ModerationVerdict.deny(ModerationReason.SLUR_BLOCKED)

    return ModerationVerdict.allow(trimmed)


# ==================== 从 settings 构建策略 ====================


def _parse_bool(raw: str, default: bool) -> bool:
    value = raw.strip().lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _parse_int(raw: str, default: int, low: int, high: int | None = None) -> int:
    try:
        value = int(float(raw.strip()))
    except (ValueError, OverflowError):
        return default
    if value < low or (high is not None and value > high):
        return default
    return value


def _parse_list(raw: str) -> frozenset[str]:
    """支持 JSON 数组和逗号分隔两种写法"""
    raw = raw.strip()
    if raw.startswith("["):
        try:
            items = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.debug(f"词表不是合法 JSON，按逗号分隔解析: {raw[:50]}")
        else:
            if isinstance(items, list):
                return frozenset(str(item).strip() for item in items if str(item).strip())
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


def policy_from_settings(settings: Mapping[str, str], base: ModerationPolicy | None = None) -> ModerationPolicy:
    """用 settings 中的 moderation.* 覆盖 base 策略，格式错误的值保留 base 的值"""
    base = base or ModerationPolicy()

    def get(name: str) -> str | None:
        return settings.get(SETTINGS_PREFIX + name)

    enabled = base.enabled if (raw := get("enabled")) is None else _parse_bool(raw, base.enabled)
    blocklist = base.blocklist if (raw := get("blocklist")) is None else _parse_list(raw)
    slur_list = base.slur_list if (raw := get("slur_list")) is None else _parse_list(raw)
    max_caps = (
        base.max_caps_percent
        if (raw := get("max_caps_percent")) is None
        else _parse_int(raw, base.max_caps_percent, 0, 100)
    )
    max_length = base.max_length if (raw := get("max_length")) is None else _parse_int(raw, base.max_length, 1)
    block_urls = base.block_urls if (raw := get("block_urls")) is None else _parse_bool(raw, base.block_urls)

    return ModerationPolicy(
        enabled=enabled,
        blocklist=blocklist,
        slur_list=slur_list,
        max_caps_percent=max_caps,
        max_length=max_length,
        block_urls=block_urls,
    )


def policy_from_config(config) -> ModerationPolicy:
    """从 [moderation] 配置段构建启动默认策略"""
    return ModerationPolicy(
        enabled=config.enabled,
        blocklist=frozenset(item for item in config.blocklist if item),
        slur_list=frozenset(item for item in config.slur_list if item),
        max_caps_percent=config.max_caps_percent,
        max_length=config.max_length,
        block_urls=config.block_urls,
    )
