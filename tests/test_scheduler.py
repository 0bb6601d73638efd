from __future__ import annotations

import asyncio
from typing import List

import pytest

from tabreaper.browser.memory import InMemoryBrowser
from tabreaper.config import CloserConfig
from tabreaper.config_provider import ConfigProvider
from tabreaper.errors import TabVanished
from tabreaper.event_bus import AsyncEventBus
from tabreaper.replay import advance_clock
from tabreaper.scheduler import Scheduler
from tabreaper.schemas.events import (
    ConfigChanged,
    ScanRequested,
    TabActivated,
    TabCreated,
    TabRemoved,
    TabUpdated,
)
from tabreaper.schemas.tab import TabChange, TabSnapshot
from tabreaper.settings import SettingsStore
from tabreaper.timers import ManualClock

pytestmark = pytest.mark.asyncio

MATCH = "https://example.com/page"
OTHER = "https://python.org/"


def idle_config(delay: float = 5, **kwargs) -> CloserConfig:
    return CloserConfig.from_raw(["example\\.com"], "idle", delay, kwargs.get("close_on_activate", False))


def immediate_config(**kwargs) -> CloserConfig:
    return CloserConfig.from_raw(["example\\.com"], "immediate", 30, kwargs.get("close_on_activate", False))


def make(tabs: List[TabSnapshot], config: CloserConfig, browser_cls=InMemoryBrowser):
    clock = ManualClock()
    browser = browser_cls(tabs=tabs)
    scheduler = Scheduler(browser, config=config, clock=clock)
    return clock, browser, scheduler


async def created(scheduler: Scheduler, browser: InMemoryBrowser, tab_id: int) -> None:
    await scheduler.handle(TabCreated(tab=await browser.get(tab_id)))


# -------------------------
# 立即模式 / immediate mode
# -------------------------

async def test_immediate_mode_closes_matching_tab():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH), TabSnapshot(2, OTHER)], immediate_config())

    await created(scheduler, browser, 1)
    await created(scheduler, browser, 2)

    assert browser.removed == [1]
    assert browser.has_tab(2)
    assert len(scheduler.timers) == 0


async def test_pinned_tab_left_alone():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH, pinned=True)], immediate_config())
    await created(scheduler, browser, 1)
    assert browser.removed == []


async def test_update_without_url_or_complete_is_ignored():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], immediate_config())

    await scheduler.handle(TabUpdated(tab_id=1, change=TabChange(status="loading"), tab=await browser.get(1)))
    assert browser.removed == []

    await scheduler.handle(TabUpdated(tab_id=1, change=TabChange(status="complete")))
    assert browser.removed == [1]


async def test_update_prefers_event_snapshot_over_lookup():
    clock, browser, scheduler = make([TabSnapshot(1, OTHER)], immediate_config())

    # 浏览器里的状态还是旧的，事件自带的快照是新的
    snapshot = TabSnapshot(1, MATCH)
    await scheduler.handle(TabUpdated(tab_id=1, change=TabChange(url=MATCH), tab=snapshot))
    assert browser.removed == [1]


async def test_close_failure_is_swallowed():
    clock, browser, scheduler = make([], immediate_config())

    # 快照来自事件，但标签页已经不在了
    await scheduler.handle(TabCreated(tab=TabSnapshot(9, MATCH)))

    assert scheduler.metrics.closes_requested == 1
    assert scheduler.metrics.close_failures == 1


async def test_lookup_of_vanished_tab_is_skip():
    clock, browser, scheduler = make([], idle_config())
    await scheduler.handle(TabUpdated(tab_id=42, change=TabChange(status="complete")))
    assert 42 not in scheduler.timers


# -------------------------
# 空闲模式 / idle mode
# -------------------------

async def test_idle_closes_inactive_tab_after_delay():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH), TabSnapshot(2, OTHER, active=True)], idle_config(5))

    await created(scheduler, browser, 1)
    assert 1 in scheduler.timers

    await advance_clock(scheduler, clock, 4.9)
    assert browser.has_tab(1)

    await advance_clock(scheduler, clock, 0.1)
    assert not browser.has_tab(1)
    assert 1 not in scheduler.timers


async def test_idle_rearms_while_tab_is_active():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH, active=True), TabSnapshot(2, OTHER)], idle_config(5))

    await created(scheduler, browser, 1)
    await advance_clock(scheduler, clock, 5)

    assert browser.has_tab(1)
    entry = scheduler.timers.get(1)
    assert entry is not None and not entry.fired
    assert entry.due_at == 10
    assert scheduler.timers.stats.rearmed == 1

    # 仍然激活：再等一个完整的 delay
    await advance_clock(scheduler, clock, 5)
    assert browser.has_tab(1)
    assert scheduler.timers.get(1).due_at == 15

    browser.activate(2)
    await advance_clock(scheduler, clock, 4)
    assert browser.has_tab(1)
    await advance_clock(scheduler, clock, 1)
    assert not browser.has_tab(1)


async def test_idle_unschedules_when_url_no_longer_matches():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(5))

    await created(scheduler, browser, 1)
    browser.navigate(1, OTHER)  # 浏览器未启动：事件不会送达，只能靠触发时重新判定

    await advance_clock(scheduler, clock, 5)
    assert browser.has_tab(1)
    assert 1 not in scheduler.timers
    assert clock.next_due() is None


async def test_idle_unschedules_when_tab_vanished_before_fire():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(5))

    await created(scheduler, browser, 1)
    browser.close_tab(1)  # TabRemoved 未送达

    await advance_clock(scheduler, clock, 5)
    assert 1 not in scheduler.timers
    assert browser.removed == []


async def test_repeated_events_do_not_duplicate_timers():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(5))

    for _ in range(3):
        await created(scheduler, browser, 1)
        await scheduler.handle(TabUpdated(tab_id=1, change=TabChange(status="complete")))

    assert scheduler.timers.stats.armed == 1
    assert clock.pending() == 1

    await advance_clock(scheduler, clock, 5)
    assert browser.removed == [1]


async def test_event_that_stops_matching_cancels_timer():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(5))

    await created(scheduler, browser, 1)
    browser.navigate(1, OTHER)
    await scheduler.handle(TabUpdated(tab_id=1, change=TabChange(url=OTHER), tab=await browser.get(1)))
    assert 1 not in scheduler.timers

    await advance_clock(scheduler, clock, 10)
    assert browser.has_tab(1)


async def test_pinning_cancels_timer():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(5))

    await created(scheduler, browser, 1)
    pinned = browser.set_pinned(1, True)
    await scheduler.handle(TabUpdated(tab_id=1, change=TabChange(status="complete"), tab=pinned))

    assert 1 not in scheduler.timers


async def test_removal_cancels_timer():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(5))

    await created(scheduler, browser, 1)
    await scheduler.handle(TabRemoved(tab_id=1))
    assert 1 not in scheduler.timers

    await advance_clock(scheduler, clock, 10)
    assert browser.removed == []


# -------------------------
# 竞态 / races
# -------------------------

class GatedBrowser(InMemoryBrowser):
    """get() 卡住直到 gate 打开，模拟慢速查询"""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.gated = False

    async def get(self, tab_id: int) -> TabSnapshot:
        if self.gated:
            await self.gate.wait()
        return await super().get(tab_id)


async def test_removal_during_idle_check_prevents_close():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(5), GatedBrowser)

    await created(scheduler, browser, 1)
    browser.gated = True
    clock.advance(5)
    await asyncio.sleep(0)

    await scheduler.handle(TabRemoved(tab_id=1))
    browser.gate.set()
    await scheduler.drain()

    assert browser.removed == []
    assert 1 not in scheduler.timers


async def test_reconfiguration_during_idle_check_prevents_close():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(5), GatedBrowser)

    await created(scheduler, browser, 1)
    browser.gated = True
    clock.advance(5)
    await asyncio.sleep(0)

    await scheduler.handle(ConfigChanged(config=idle_config(60)))
    browser.gate.set()
    await scheduler.drain()

    assert browser.removed == []
    assert len(scheduler.timers) == 0


# -------------------------
# 激活即关闭 / close on activate
# -------------------------

async def test_activation_closes_immediately_when_enabled():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(60, close_on_activate=True))

    await created(scheduler, browser, 1)
    assert 1 in scheduler.timers

    browser.activate(1)
    await scheduler.handle(TabActivated(tab_id=1))

    assert browser.removed == [1]
    assert 1 not in scheduler.timers


async def test_activation_ignored_when_disabled():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH)], idle_config(60))

    await created(scheduler, browser, 1)
    await scheduler.handle(TabActivated(tab_id=1))

    assert browser.removed == []
    assert 1 in scheduler.timers


async def test_activation_of_non_matching_tab_does_nothing():
    clock, browser, scheduler = make([TabSnapshot(1, OTHER)], immediate_config(close_on_activate=True))
    await scheduler.handle(TabActivated(tab_id=1))
    await scheduler.handle(TabActivated(tab_id=404))
    assert browser.removed == []


# -------------------------
# 配置变更 / reconfiguration
# -------------------------

async def test_reconfiguration_cancels_all_timers_and_new_config_applies_lazily():
    clock, browser, scheduler = make([TabSnapshot(1, MATCH), TabSnapshot(2, "https://example.com/other")], idle_config(5))

    await created(scheduler, browser, 1)
    await created(scheduler, browser, 2)
    assert scheduler.timers.armed_ids() == [1, 2]

    new_config = immediate_config()
    await scheduler.handle(ConfigChanged(config=new_config))
    assert scheduler.config is new_config
    assert len(scheduler.timers) == 0

    await advance_clock(scheduler, clock, 10)
    assert browser.removed == []

    # 下一次事件才按新配置判定
    await scheduler.handle(TabUpdated(tab_id=1, change=TabChange(status="complete")))
    assert browser.removed == [1]
    assert browser.has_tab(2)


# -------------------------
# 手动扫描 / manual scan
# -------------------------

class FlakyRemoveBrowser(InMemoryBrowser):
    async def remove(self, tab_id: int) -> None:
        if tab_id == 2:
            raise RuntimeError("remove failed")
        await super().remove(tab_id)


class BrokenEntryBrowser(InMemoryBrowser):
    async def query(self):
        tabs = await super().query()
        return [tabs[0], None, tabs[2]]


class BrokenQueryBrowser(InMemoryBrowser):
    async def query(self):
        raise RuntimeError("tabs API unavailable")


def three_matching_tabs() -> List[TabSnapshot]:
    return [TabSnapshot(i, f"https://example.com/{i}") for i in (1, 2, 3)]


async def test_scan_continues_past_failed_close():
    clock, browser, scheduler = make(three_matching_tabs(), immediate_config(), FlakyRemoveBrowser)

    result = await scheduler.scan_all()

    assert result.ok
    assert result.to_response() == {"ok": True}
    assert (result.scanned, result.closed, result.failed) == (3, 2, 1)
    assert browser.removed == [1, 3]


async def test_scan_continues_past_failed_tab_lookup():
    clock, browser, scheduler = make(three_matching_tabs(), immediate_config(), BrokenEntryBrowser)

    result = await scheduler.scan_all()

    assert result.ok
    assert result.failed == 1
    assert browser.removed == [1, 3]


async def test_scan_schedules_in_idle_mode():
    tabs = three_matching_tabs() + [TabSnapshot(4, OTHER), TabSnapshot(5, MATCH, pinned=True)]
    clock, browser, scheduler = make(tabs, idle_config(5))

    result = await scheduler.scan_all()

    assert (result.scanned, result.scheduled, result.closed) == (5, 3, 0)
    assert scheduler.timers.armed_ids() == [1, 2, 3]


async def test_scan_reports_top_level_failure():
    clock, browser, scheduler = make([], immediate_config(), BrokenQueryBrowser)

    result = await scheduler.scan_all()

    assert not result.ok
    assert result.to_response() == {"ok": False, "error": "tabs API unavailable"}
    assert scheduler.metrics.scans_failed == 1


async def test_vanished_error_from_tab_source():
    clock, browser, scheduler = make([], idle_config(close_on_activate=True))
    with pytest.raises(TabVanished):
        await browser.get(1)
    # Scheduler 内部同样的失败只会变成 "不存在"
    await scheduler.handle(TabActivated(tab_id=1))
    assert scheduler.metrics.lookup_failures == 0


class NoneQueryBrowser(InMemoryBrowser):
    async def query(self):
        return None


async def test_scan_with_unusable_tab_list_reports_error():
    clock, browser, scheduler = make([], immediate_config(), NoneQueryBrowser)

    result = await scheduler.scan_all()

    assert not result.ok
    assert result.error
    assert scheduler.metrics.scans_failed == 1


async def test_scan_request_is_answered_even_if_scan_crashes(monkeypatch):
    clock, browser, scheduler = make([], immediate_config())

    async def boom():
        raise RuntimeError("scan exploded")

    monkeypatch.setattr(scheduler, "scan_all", boom)
    reply = asyncio.get_running_loop().create_future()

    result = await scheduler.handle(ScanRequested(reply=reply))

    assert reply.done()
    assert reply.result() is result
    assert result.to_response() == {"ok": False, "error": "scan exploded"}


async def test_close_answers_queued_scan_requests():
    bus = AsyncEventBus()
    scheduler = Scheduler(InMemoryBrowser(), config=immediate_config(), clock=ManualClock(), bus=bus)
    reply = asyncio.get_running_loop().create_future()
    bus.publish_nowait(ScanRequested(reply=reply))

    await scheduler.close()

    assert reply.result().to_response() == {"ok": False, "error": "scheduler stopped"}


async def test_config_change_is_delivered_when_bus_is_full():
    clock = ManualClock()
    bus = AsyncEventBus(maxsize=2, drop_when_full=True)
    browser = InMemoryBrowser(tabs=[TabSnapshot(1, MATCH)])
    store = SettingsStore({"patterns": ["example\\.com"], "mode": "idle", "delay_seconds": 5})
    provider = ConfigProvider(store, publish=bus.publish_nowait)
    scheduler = Scheduler(browser, config=provider.snapshot(), clock=clock, bus=bus)

    await created(scheduler, browser, 1)
    assert 1 in scheduler.timers

    browser.start(bus)
    for _ in range(3):
        browser.open_tab(OTHER)
    assert bus.dropped_total == 1

    store.set(patterns=[])
    assert bus.size() == 3

    await scheduler.process_pending()

    assert scheduler.config is provider.snapshot()
    assert len(scheduler.config.patterns) == 0
    assert 1 not in scheduler.timers

    await advance_clock(scheduler, clock, 10)
    assert browser.has_tab(1)
