# tabreaper/event_bus.py
# =========================
# 异步事件总线（Scheduler 侧 async 消费 + Adapter 侧同步投递）
# Async event bus (async consume for the Scheduler + sync publish for adapters)
# =========================

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import FrozenSet, Optional

from .schemas.events import Event, EventType


# 丢了会让状态永久错位的事件，队列满时也照收
# losing one of these leaves the Scheduler out of sync for good
CONTROL_EVENTS: FrozenSet[EventType] = frozenset(
    {
        EventType.CONFIG_CHANGED,
        EventType.TAB_REMOVED,
        EventType.SCAN_REQUESTED,
    }
)


@dataclass(frozen=True)
class PublishResult:
    ok: bool
    dropped: bool = False
    reason: Optional[str] = None


class AsyncEventBus:
    """
    中文：
      - Adapter 侧（同步）：publish_nowait(event) -> PublishResult
      - Scheduler 侧（异步）：async for event in bus / await bus.get()
      单队列 FIFO，同一个 tab 的事件按到达顺序处理。
      maxsize 只限制普通的标签页事件：超过上限且 drop_when_full 时丢弃并计数。
      CONTROL_EVENTS（配置变更 / 关闭 / 扫描请求）永不因为队列满而丢弃，
      所以底层队列本身不设上限。
      关闭后不再接收，迭代在队列排空时结束。

    English:
      One FIFO queue, so events for a tab are consumed in arrival order.
      `maxsize` only bounds ordinary tab traffic; over the limit those events
      are dropped (when drop_when_full) and counted. Control events are always
      accepted. After close() nothing is accepted and iteration ends once drained.
    """

    def __init__(self, *, maxsize: int = 1000, drop_when_full: bool = True) -> None:
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self._closed: bool = False
        self.maxsize = maxsize
        self.drop_when_full = drop_when_full

        self.published_total: int = 0
        self.dropped_total: int = 0
        self.consumed_total: int = 0

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def size(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self.maxsize > 0 and self._queue.qsize() >= self.maxsize

    def publish_nowait(self, event: Event) -> PublishResult:
        if self._closed:
            return PublishResult(ok=False, dropped=True, reason="closed")

        self.published_total += 1

        if self.drop_when_full and event.type not in CONTROL_EVENTS and self.full():
            self.dropped_total += 1
            return PublishResult(ok=False, dropped=True, reason="queue_full")

        self._queue.put_nowait(event)
        return PublishResult(ok=True)

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        中文：超时或（关闭且队列空）返回 None
        English: returns None on timeout, or when closed and drained
        """
        if self._closed and self._queue.empty():
            return None

        try:
            if timeout is None:
                event = await self._queue.get()
            else:
                event = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        self.consumed_total += 1
        return event

    def get_nowait(self) -> Optional[Event]:
        try:
            event = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        self.consumed_total += 1
        return event

    def __aiter__(self) -> "AsyncEventBus":
        return self

    async def __anext__(self) -> Event:
        while True:
            event = await self.get(timeout=0.5)
            if event is not None:
                return event
            if self._closed and self._queue.empty():
                raise StopAsyncIteration
