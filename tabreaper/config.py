from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping

from .rules.patterns import PatternSet


DEFAULT_DELAY_SECONDS = 30.0

# 持久化字段名 / persisted field names
FIELD_PATTERNS = "patterns"
FIELD_MODE = "mode"
FIELD_DELAY = "delay_seconds"
FIELD_CLOSE_ON_ACTIVATE = "close_on_activate"

SETTINGS_FIELDS = (FIELD_PATTERNS, FIELD_MODE, FIELD_DELAY, FIELD_CLOSE_ON_ACTIVATE)


class CloseMode(str, Enum):
    IMMEDIATE = "immediate"
    IDLE = "idle"


def default_settings() -> Dict[str, Any]:
    return {
        FIELD_PATTERNS: [],
        FIELD_MODE: CloseMode.IMMEDIATE.value,
        FIELD_DELAY: DEFAULT_DELAY_SECONDS,
        FIELD_CLOSE_ON_ACTIVATE: False,
    }


_RADIX_PREFIXES = {"0x": 16, "0o": 8, "0b": 2}


def _parse_number(value: Any) -> float:
    """
    中文：按扩展设置页 Number(x) 的规则把任意值转成数字，无法转换时返回 NaN
    English: coerce like the settings page's Number(x); NaN when not a number

    - bool -> 0/1, "" -> 0, "0x10" -> 16
    - one-element list -> its element, [] -> 0
    - anything unrepresentable (huge ints, "1_0", dicts) -> NaN
    """
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except (OverflowError, ValueError):
            return math.nan
    if isinstance(value, (list, tuple)):
        if not value:
            return 0.0
        if len(value) == 1 and not isinstance(value[0], (list, tuple, dict)):
            return _parse_number("" if value[0] is None else value[0])
        return math.nan
    if isinstance(value, str):
        return _parse_number_text(value.strip())
    return math.nan


def _parse_number_text(text: str) -> float:
    if not text:
        return 0.0
    if "_" in text:
        return math.nan
    radix = _RADIX_PREFIXES.get(text[:2].lower())
    try:
        if radix is not None:
            return float(int(text[2:], radix))
        return float(text)
    except (OverflowError, ValueError):
        return math.nan


@dataclass(frozen=True)
class CloserConfig:
    """
    中文：
      不可变配置快照。每次配置变化都整体重建并按引用替换，
      读者永远只会看到旧的或完整的新配置。

    English:
      Immutable config snapshot, rebuilt wholesale and swapped by reference.
    """
    patterns: PatternSet = field(default_factory=PatternSet.empty)
    mode: CloseMode = CloseMode.IMMEDIATE
    delay_seconds: float = DEFAULT_DELAY_SECONDS
    close_on_activate: bool = False

    @property
    def idle(self) -> bool:
        return self.mode == CloseMode.IDLE

    @staticmethod
    def default() -> "CloserConfig":
        return CloserConfig()

    @staticmethod
    def _parse_mode(value: Any) -> CloseMode:
        if value == CloseMode.IDLE.value:
            return CloseMode.IDLE
        return CloseMode.IMMEDIATE

    @staticmethod
    def _parse_delay(value: Any) -> float:
        parsed = _parse_number(value)
        if math.isfinite(parsed) and parsed > 0:
            return parsed
        return DEFAULT_DELAY_SECONDS

    @classmethod
    def from_raw(
        cls,
        raw_patterns: Any = None,
        raw_mode: Any = None,
        raw_delay: Any = None,
        raw_close_on_activate: Any = False,
    ) -> "CloserConfig":
        """Build a config from untrusted values. Never raises; bad fields fall back to defaults."""
        if isinstance(raw_patterns, (list, tuple)):
            patterns = PatternSet.compile(raw_patterns)
        else:
            patterns = PatternSet.empty()

        return cls(
            patterns=patterns,
            mode=cls._parse_mode(raw_mode),
            delay_seconds=cls._parse_delay(raw_delay),
            close_on_activate=bool(raw_close_on_activate),
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "CloserConfig":
        if not isinstance(raw, Mapping):
            raw = {}
        defaults = default_settings()
        return cls.from_raw(
            raw.get(FIELD_PATTERNS, defaults[FIELD_PATTERNS]),
            raw.get(FIELD_MODE, defaults[FIELD_MODE]),
            raw.get(FIELD_DELAY, defaults[FIELD_DELAY]),
            raw.get(FIELD_CLOSE_ON_ACTIVATE, defaults[FIELD_CLOSE_ON_ACTIVATE]),
        )
