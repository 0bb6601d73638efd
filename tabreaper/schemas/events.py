# tabreaper/schemas/events.py
# =========================
# 入站事件模型（Scheduler 唯一入口消费）
# Inbound events (consumed by the single Scheduler entry point)
# =========================

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from .tab import TabChange, TabSnapshot

if TYPE_CHECKING:
    from ..config import CloserConfig


class EventType(str, Enum):
    TAB_CREATED = "tab_created"
    TAB_UPDATED = "tab_updated"
    TAB_ACTIVATED = "tab_activated"
    TAB_REMOVED = "tab_removed"
    CONFIG_CHANGED = "config_changed"
    SCAN_REQUESTED = "scan_requested"


@dataclass(frozen=True)
class TabCreated:
    tab: TabSnapshot
    type: EventType = field(default=EventType.TAB_CREATED, init=False)

    @property
    def tab_id(self) -> int:
        return self.tab.id


@dataclass(frozen=True)
class TabUpdated:
    tab_id: int
    change: TabChange = field(default_factory=TabChange)
    tab: Optional[TabSnapshot] = None
    type: EventType = field(default=EventType.TAB_UPDATED, init=False)


@dataclass(frozen=True)
class TabActivated:
    tab_id: int
    type: EventType = field(default=EventType.TAB_ACTIVATED, init=False)


@dataclass(frozen=True)
class TabRemoved:
    tab_id: int
    type: EventType = field(default=EventType.TAB_REMOVED, init=False)


@dataclass(frozen=True)
class ConfigChanged:
    config: "CloserConfig"
    type: EventType = field(default=EventType.CONFIG_CHANGED, init=False)


@dataclass(frozen=True)
class ScanRequested:
    """
    中文：手动扫描请求；reply 不为空时把 ScanResult 写回去（popup 的请求/响应）
    English: manual scan request; the ScanResult is delivered on `reply` if given
    """
    reply: Optional[asyncio.Future] = field(default=None, compare=False)
    type: EventType = field(default=EventType.SCAN_REQUESTED, init=False)


Event = Union[TabCreated, TabUpdated, TabActivated, TabRemoved, ConfigChanged, ScanRequested]
