# tabreaper/timers.py
# =========================
# 空闲关闭定时器登记表 + 时钟
# Idle-close timer registry + clocks
# =========================

from __future__ import annotations

import asyncio
import heapq
import itertools
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from loguru import logger


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """
    中文：定时原语的抽象，生产用事件循环，测试用虚拟时钟
    English: timer primitive; event loop in production, virtual clock in tests
    """

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopClock:
    """Clock backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self._get_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._get_loop().call_later(delay, callback)


class ManualHandle:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """
    中文：
      确定性的虚拟时钟。只有 advance() 会推动时间，
      到期回调按 (到期时间, 注册顺序) 依次同步执行。

    English:
      Deterministic virtual clock. Time only moves on advance(); due callbacks
      run synchronously in (due time, registration order).
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._seq = itertools.count()
        self._heap: List[Tuple[float, int, ManualHandle]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(self._now + max(0.0, delay), callback)
        heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
        return handle

    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)

    def next_due(self) -> Optional[float]:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def advance(self, seconds: float) -> int:
        """Move time forward, firing everything that falls due. Returns the number fired."""
        target = self._now + seconds
        fired = 0
        while self._heap and self._heap[0][0] <= target:
            due, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = due
            fired += 1
            handle.callback()
        self._now = target
        return fired


@dataclass(eq=False)
class TimerEntry:
    tab_id: int
    delay: float
    due_at: float
    handle: Optional[TimerHandle] = None
    cancelled: bool = False
    fired: bool = False


@dataclass
class TimerStats:
    armed: int = 0
    rearmed: int = 0
    cancelled: int = 0
    fired: int = 0
    stale_fires: int = 0


class TimerRegistry:
    """
    中文：
      tab_id -> 待触发的空闲关闭定时器，每个 tab 最多一个。
      取消是强保证：先从表里删掉条目再取消底层 handle，
      回调触发时还会再核对一次条目是否仍是当前登记的那一个。

    English:
      At most one pending timer per tab id. Cancellation is effective: the
      entry leaves the map before its handle is cancelled, and the fire
      trampoline drops callbacks whose entry is no longer registered.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or LoopClock()
        self._entries: Dict[int, TimerEntry] = {}
        self.stats = TimerStats()

    @property
    def clock(self) -> Clock:
        return self._clock

    def __contains__(self, tab_id: int) -> bool:
        return tab_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def armed_ids(self) -> List[int]:
        return sorted(self._entries)

    def get(self, tab_id: int) -> Optional[TimerEntry]:
        return self._entries.get(tab_id)

    def holds(self, tab_id: int, entry: Optional[TimerEntry]) -> bool:
        return entry is not None and self._entries.get(tab_id) is entry

    def arm(self, tab_id: int, delay: float, on_fire: Callable[[], None]) -> bool:
        """Schedule `on_fire` after `delay` seconds. No-op if the tab already has a timer."""
        if tab_id in self._entries:
            return False
        self._install(tab_id, delay, on_fire)
        self.stats.armed += 1
        logger.debug(f"timer armed: tab={tab_id} delay={delay}s")
        return True

    def rearm(self, tab_id: int, delay: float, on_fire: Callable[[], None]) -> TimerEntry:
        """Replace whatever is registered for the tab with a fresh timer."""
        self._discard(tab_id)
        entry = self._install(tab_id, delay, on_fire)
        self.stats.rearmed += 1
        logger.debug(f"timer re-armed: tab={tab_id} delay={delay}s")
        return entry

    def cancel(self, tab_id: int) -> bool:
        if not self._discard(tab_id):
            return False
        self.stats.cancelled += 1
        logger.debug(f"timer cancelled: tab={tab_id}")
        return True

    def cancel_all(self) -> int:
        count = 0
        for tab_id in list(self._entries):
            if self._discard(tab_id):
                count += 1
        self.stats.cancelled += count
        if count:
            logger.debug(f"timers cancelled: {count}")
        return count

    # -------------------------
    # 内部 / internals
    # -------------------------

    def _install(self, tab_id: int, delay: float, on_fire: Callable[[], None]) -> TimerEntry:
        entry = TimerEntry(tab_id=tab_id, delay=delay, due_at=self._clock.now() + delay)
        self._entries[tab_id] = entry
        entry.handle = self._clock.call_later(delay, lambda: self._fire(entry, on_fire))
        return entry

    def _discard(self, tab_id: int) -> bool:
        entry = self._entries.pop(tab_id, None)
        if entry is None:
            return False
        entry.cancelled = True
        if entry.handle is not None:
            entry.handle.cancel()
        return True

    def _fire(self, entry: TimerEntry, on_fire: Callable[[], None]) -> None:
        if entry.cancelled or self._entries.get(entry.tab_id) is not entry:
            self.stats.stale_fires += 1
            return
        entry.fired = True
        self.stats.fired += 1
        on_fire()
