from __future__ import annotations

from enum import Enum
from typing import Optional

from .config import CloseMode, CloserConfig
from .schemas.tab import TabSnapshot


class Decision(str, Enum):
    SKIP = "skip"
    CLOSE_NOW = "close_now"
    SCHEDULE_IDLE = "schedule_idle"


def should_close(tab: Optional[TabSnapshot], config: CloserConfig) -> bool:
    """Close eligibility regardless of mode: present, unpinned, http(s), matching."""
    if tab is None or tab.pinned:
        return False
    if not tab.is_web:
        return False
    return config.patterns.matches(tab.url)


def decide(tab: Optional[TabSnapshot], config: CloserConfig) -> Decision:
    if not should_close(tab, config):
        return Decision.SKIP
    if config.mode == CloseMode.IMMEDIATE:
        return Decision.CLOSE_NOW
    return Decision.SCHEDULE_IDLE
