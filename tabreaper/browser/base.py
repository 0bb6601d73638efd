# tabreaper/browser/base.py
# =========================
# 浏览器适配器基类（标签页事件源 + 标签页操作 API）
# Browser adapter base (tab event source + tab mutation API)
# =========================

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from loguru import logger

from ..event_bus import AsyncEventBus
from ..schemas.events import Event
from ..schemas.tab import TabSnapshot


class TabSource(Protocol):
    """
    中文：Scheduler 依赖的外部标签页 API，所有调用都可能失败
    English: external tab API used by the Scheduler; every call may fail
    """

    async def query(self) -> List[TabSnapshot]: ...

    async def get(self, tab_id: int) -> TabSnapshot: ...

    async def remove(self, tab_id: int) -> None: ...


@dataclass
class AdapterHealth:
    name: str
    running: bool
    last_seen_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    consecutive_failures: int = 0


class BrowserAdapter(ABC):
    """
    中文：
      BrowserAdapter 只负责两件事：
        1) 生命周期 start/stop，把浏览器事件同步投递到总线
        2) 提供 query/get/remove 三个标签页操作
      决策不在这里（那是 Scheduler）。
      投递失败只记录日志和计数，不抛出。

    English:
      Owns the start/stop lifecycle and event emission onto the bus, and
      implements the tab API. No decisions here. Emit failures are logged and
      counted, never raised.
    """

    def __init__(self, *, name: str) -> None:
        self.name = name

        self._bus: Optional[AsyncEventBus] = None
        self._running: bool = False

        self._last_seen_at: Optional[datetime] = None
        self._last_error_at: Optional[datetime] = None
        self._consecutive_failures: int = 0

    # -------------------------
    # 生命周期 / Lifecycle
    # -------------------------

    def start(self, bus: AsyncEventBus) -> None:
        """启动（幂等）/ start (idempotent)"""
        if self._running:
            return
        self._bus = bus
        self._running = True
        try:
            self._on_start()
        except Exception as e:
            self._report_error(e, "start failed")
            self._running = False
            self._bus = None

    def stop(self) -> None:
        """停止（幂等）/ stop (idempotent)"""
        if not self._running:
            return
        try:
            self._on_stop()
        except Exception as e:
            self._report_error(e, "stop failed")
        finally:
            self._running = False
            self._bus = None

    @property
    def running(self) -> bool:
        return self._running

    def health(self) -> AdapterHealth:
        return AdapterHealth(
            name=self.name,
            running=self._running,
            last_seen_at=self._last_seen_at,
            last_error_at=self._last_error_at,
            consecutive_failures=self._consecutive_failures,
        )

    # -------------------------
    # 投递 / Emit (sync)
    # -------------------------

    def emit(self, event: Event) -> None:
        if not self._running or self._bus is None:
            return

        try:
            result = self._bus.publish_nowait(event)
        except Exception as e:
            self._report_error(e, f"emit failed for {event.type.value}")
            return

        if result.ok:
            self._last_seen_at = datetime.now(timezone.utc)
            self._consecutive_failures = 0
            return

        self._report_error(
            RuntimeError(f"publish_nowait dropped: {result.reason}"),
            f"event bus dropped {event.type.value}",
        )

    # -------------------------
    # 标签页 API / Tab API
    # -------------------------

    @abstractmethod
    async def query(self) -> List[TabSnapshot]:
        raise NotImplementedError

    @abstractmethod
    async def get(self, tab_id: int) -> TabSnapshot:
        """Return the tab or raise TabVanished."""
        raise NotImplementedError

    @abstractmethod
    async def remove(self, tab_id: int) -> None:
        """Close the tab or raise TabVanished."""
        raise NotImplementedError

    # -------------------------
    # 子类 hook / subclass hooks
    # -------------------------

    def _on_start(self) -> None:
        return

    def _on_stop(self) -> None:
        return

    def _report_error(self, error: Exception, message: str) -> None:
        self._last_error_at = datetime.now(timezone.utc)
        self._consecutive_failures += 1
        logger.warning(
            f"[{self.name}] {message}: {type(error).__name__}: {error} "
            f"(consecutive_failures={self._consecutive_failures})"
        )
