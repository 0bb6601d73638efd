# tabreaper/rules/patterns.py
# =========================
# URL 匹配规则集
# URL matching rules
# =========================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Pattern, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rule:
    """用户填写的原始 pattern + 编译后的正则 / user pattern + compiled regex"""
    pattern: str
    regex: Pattern[str]

    def matches(self, url: str) -> bool:
        return self.regex.search(url) is not None


@dataclass(frozen=True)
class InvalidPattern:
    """编译失败被丢弃的 pattern（只做诊断）/ dropped pattern, diagnostics only"""
    pattern: Any
    error: str


@dataclass(frozen=True)
class PatternSet:
    """
    中文：
      有序的规则集合。匹配语义是 OR：任意一条规则命中即命中，顺序不影响结果。
      编译失败的 pattern 不会进入 rules，只记录在 rejected 里。

    English:
      Ordered collection of compiled rules. Matching is logical OR, order is
      irrelevant. Patterns that fail to compile only show up in `rejected`.
    """
    rules: Tuple[Rule, ...] = ()
    rejected: Tuple[InvalidPattern, ...] = ()

    @classmethod
    def compile(cls, raw_patterns: Iterable[Any]) -> "PatternSet":
        rules = []
        rejected = []
        for raw in raw_patterns:
            if not isinstance(raw, str):
                logger.warning(f"Invalid pattern ignored (not a string): {raw!r}")
                rejected.append(InvalidPattern(pattern=raw, error="not a string"))
                continue
            try:
                rules.append(Rule(pattern=raw, regex=re.compile(raw)))
            except (re.error, OverflowError, RecursionError) as e:
                logger.warning(f"Invalid regex ignored: {raw!r} ({e})")
                rejected.append(InvalidPattern(pattern=raw, error=str(e)))
        return cls(rules=tuple(rules), rejected=tuple(rejected))

    @classmethod
    def empty(cls) -> "PatternSet":
        return cls()

    @property
    def patterns(self) -> Tuple[str, ...]:
        return tuple(rule.pattern for rule in self.rules)

    def matches(self, url: str) -> bool:
        return any(rule.matches(url) for rule in self.rules)

    def __len__(self) -> int:
        return len(self.rules)

