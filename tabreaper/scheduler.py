# tabreaper/scheduler.py
# =========================
# Scheduler：标签页生命周期状态机（顶层控制器）
# Scheduler: the per-tab lifecycle state machine (top-level controller)
# =========================

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, Optional, Set

from loguru import logger

from .browser.base import TabSource
from .config import CloserConfig
from .errors import TabVanished
from .evaluator import Decision, decide, should_close
from .event_bus import AsyncEventBus
from .schemas.events import (
    ConfigChanged,
    Event,
    ScanRequested,
    TabActivated,
    TabCreated,
    TabRemoved,
    TabUpdated,
)
from .schemas.tab import TabSnapshot
from .timers import Clock, TimerEntry, TimerRegistry


@dataclass
class ScanResult:
    """手动扫描结果（回给 popup）/ manual scan result (reported back to the popup)"""
    ok: bool = True
    error: Optional[str] = None
    scanned: int = 0
    closed: int = 0
    scheduled: int = 0
    failed: int = 0

    def to_response(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True}
        return {"ok": False, "error": self.error}


@dataclass
class SchedulerMetrics:
    events_total: int = 0
    events_by_type: Dict[str, int] = field(default_factory=dict)
    closes_requested: int = 0
    close_failures: int = 0
    lookup_failures: int = 0
    scans_total: int = 0
    scans_failed: int = 0

    def inc_event(self, event_type: str) -> None:
        self.events_total += 1
        self.events_by_type[event_type] = self.events_by_type.get(event_type, 0) + 1


def _answer(event: ScanRequested, result: ScanResult) -> None:
    if event.reply is not None and not event.reply.done():
        event.reply.set_result(result)


class Scheduler:
    """
    中文：
      每个 tab 两个状态：Unwatched / IdleArmed（= TimerRegistry 里有条目）。
      所有外部事件都从 handle() 进来；run() 按到达顺序消费总线，
      所以同一个 tab 的事件严格有序。
      空闲定时器到期后重新取 tab、重新判定：
        - 不再匹配 -> 取消
        - 仍是当前激活的 tab -> 再等一个完整的 delay
        - 否则 -> 关闭
      配置变更：cancel_all() 后换上新配置，不主动重扫。

    English:
      Two states per tab: Unwatched / IdleArmed (an entry in the registry).
      Every external event enters through handle(); run() consumes the bus
      in arrival order. An idle fire re-fetches and re-decides: unschedule if
      no longer matching, wait another full delay while the tab is active,
      otherwise close. Reconfiguration cancels every timer and swaps the
      config; tabs are re-evaluated lazily on their next event.
    """

    def __init__(
        self,
        tabs: TabSource,
        *,
        config: Optional[CloserConfig] = None,
        clock: Optional[Clock] = None,
        bus: Optional[AsyncEventBus] = None,
        timers: Optional[TimerRegistry] = None,
    ) -> None:
        self.tabs = tabs
        self.bus = bus
        self.timers = timers or TimerRegistry(clock)
        self.metrics = SchedulerMetrics()

        self._config: CloserConfig = config or CloserConfig.default()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def config(self) -> CloserConfig:
        return self._config

    # -------------------------
    # 唯一入口 / single entry point
    # -------------------------

    async def handle(self, event: Event) -> Optional[ScanResult]:
        self.metrics.inc_event(event.type.value)

        if isinstance(event, TabCreated):
            await self._process_tab(event.tab.id, event.tab)
        elif isinstance(event, TabUpdated):
            if event.change.relevant:
                await self._process_tab(event.tab_id, event.tab)
        elif isinstance(event, TabActivated):
            await self._on_activated(event.tab_id)
        elif isinstance(event, TabRemoved):
            self.timers.cancel(event.tab_id)
        elif isinstance(event, ConfigChanged):
            self.install_config(event.config)
        elif isinstance(event, ScanRequested):
            try:
                result = await self.scan_all()
            except asyncio.CancelledError:
                _answer(event, ScanResult(ok=False, error="scheduler stopped"))
                raise
            except Exception as e:
                logger.exception(f"Scan crashed: {e}")
                result = ScanResult(ok=False, error=str(e) or type(e).__name__)
            _answer(event, result)
            return result
        else:
            logger.warning(f"Unknown event ignored: {event!r}")
        return None

    async def run(self) -> None:
        """Consume the bus until it is closed and drained."""
        if self.bus is None:
            raise RuntimeError("Scheduler.run() needs a bus")
        async for event in self.bus:
            await self._handle_safely(event)

    async def process_pending(self) -> int:
        """Handle every event already queued on the bus, without waiting for more."""
        if self.bus is None:
            return 0
        count = 0
        while True:
            event = self.bus.get_nowait()
            if event is None:
                return count
            await self._handle_safely(event)
            count += 1

    async def request_scan(self) -> ScanResult:
        """
        中文：popup 的 "立即扫描"：经总线排队，等 Scheduler 回结果
        English: the popup's "run now" request; queued on the bus, answered by run()
        """
        if self.bus is None:
            return await self.scan_all()
        reply: asyncio.Future = asyncio.get_running_loop().create_future()
        published = self.bus.publish_nowait(ScanRequested(reply=reply))
        if not published.ok:
            return ScanResult(ok=False, error=f"scan request dropped: {published.reason}")
        return await reply

    # -------------------------
    # 配置 / configuration
    # -------------------------

    def install_config(self, config: CloserConfig) -> None:
        cancelled = self.timers.cancel_all()
        self._config = config
        logger.info(
            f"Config installed: mode={config.mode.value} delay={config.delay_seconds}s "
            f"patterns={len(config.patterns)} close_on_activate={config.close_on_activate} "
            f"(cancelled {cancelled} timer(s))"
        )

    # -------------------------
    # 手动扫描 / manual scan
    # -------------------------

    async def scan_all(self) -> ScanResult:
        self.metrics.scans_total += 1
        try:
            tabs = list(await self.tabs.query())
        except Exception as e:
            self.metrics.scans_failed += 1
            logger.error(f"Scan failed: could not list tabs: {e}")
            return ScanResult(ok=False, error=str(e) or type(e).__name__)

        result = ScanResult()
        for tab in tabs:
            result.scanned += 1
            failures_before = self.metrics.close_failures
            try:
                decision = await self._process_tab(tab.id, tab)
            except Exception as e:
                result.failed += 1
                logger.warning(f"Scan: tab {getattr(tab, 'id', '?')} failed: {e}")
                continue
            if self.metrics.close_failures > failures_before:
                result.failed += 1
            elif decision == Decision.CLOSE_NOW:
                result.closed += 1
            elif decision == Decision.SCHEDULE_IDLE:
                result.scheduled += 1

        logger.info(
            f"Scan done: scanned={result.scanned} closed={result.closed} "
            f"scheduled={result.scheduled} failed={result.failed}"
        )
        return result

    # -------------------------
    # 生命周期 / lifecycle
    # -------------------------

    async def drain(self) -> None:
        """Wait for in-flight idle-fire checks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self.timers.cancel_all()
        # 排队中的扫描请求也要有回复 / queued scan requests still get an answer
        if self.bus is not None:
            while True:
                event = self.bus.get_nowait()
                if event is None:
                    break
                if isinstance(event, ScanRequested):
                    _answer(event, ScanResult(ok=False, error="scheduler stopped"))
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------
    # 状态迁移 / transitions
    # -------------------------

    async def _process_tab(self, tab_id: int, tab: Optional[TabSnapshot]) -> Decision:
        current = tab if tab is not None else await self._fetch(tab_id)
        config = self._config
        decision = decide(current, config)

        if decision == Decision.SKIP:
            self.timers.cancel(tab_id)
        elif decision == Decision.CLOSE_NOW:
            self.timers.cancel(tab_id)
            await self._close(tab_id)
        else:
            self._arm_idle(tab_id, config.delay_seconds)
        return decision

    async def _on_activated(self, tab_id: int) -> None:
        if not self._config.close_on_activate:
            return
        tab = await self._fetch(tab_id)
        if should_close(tab, self._config):
            self.timers.cancel(tab_id)
            await self._close(tab_id)

    def _arm_idle(self, tab_id: int, delay: float) -> None:
        self.timers.arm(tab_id, delay, lambda: self._on_timer(tab_id))

    def _on_timer(self, tab_id: int) -> None:
        entry = self.timers.get(tab_id)
        self._spawn(self._idle_expired(tab_id, entry))

    async def _idle_expired(self, tab_id: int, entry: Optional[TimerEntry]) -> None:
        latest = await self._fetch(tab_id)

        # 查询期间被 remove / 配置变更 / SKIP 取消了
        if not self.timers.holds(tab_id, entry):
            logger.debug(f"idle check dropped, timer no longer registered: tab={tab_id}")
            return

        config = self._config
        if decide(latest, config) == Decision.SKIP:
            self.timers.cancel(tab_id)
            return

        if latest is not None and latest.active:
            self.timers.rearm(tab_id, config.delay_seconds, lambda: self._on_timer(tab_id))
            return

        self.timers.cancel(tab_id)
        await self._close(tab_id)

    # -------------------------
    # 外部 API（都可能失败）/ external API calls (all fallible)
    # -------------------------

    async def _fetch(self, tab_id: int) -> Optional[TabSnapshot]:
        try:
            return await self.tabs.get(tab_id)
        except TabVanished:
            logger.debug(f"tab {tab_id} vanished before lookup")
            return None
        except Exception as e:
            self.metrics.lookup_failures += 1
            logger.warning(f"Failed to look up tab {tab_id}: {e}")
            return None

    async def _close(self, tab_id: int) -> bool:
        self.metrics.closes_requested += 1
        try:
            await self.tabs.remove(tab_id)
        except Exception as e:
            self.metrics.close_failures += 1
            logger.warning(f"Failed to close tab {tab_id}: {e}")
            return False
        logger.info(f"Closed tab {tab_id}")
        return True

    async def _handle_safely(self, event: Event) -> None:
        try:
            await self.handle(event)
        except Exception as e:
            logger.exception(f"Error handling {event.type.value}: {e}")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Idle check failed: {exc}")
