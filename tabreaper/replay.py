# tabreaper/replay.py
# =========================
# 确定性回放：脚本化事件 + 虚拟时钟
# Deterministic replay: scripted events on a virtual clock
# =========================
"""
Replay a scripted browsing session against the Scheduler on a ManualClock.

Script (YAML or JSON)::

    settings:
      patterns: ["example\\.com"]
      mode: idle
      delay_seconds: 5
    tabs:                       # present before the replay starts, no events
      - {id: 1, url: "https://example.com/a", active: true}
    steps:
      - open: {url: "https://example.com/b"}
      - navigate: {tab: 1, url: "https://other.org"}
      - activate: 2
      - close: 2
      - settings: {mode: immediate}
      - scan: {}
      - advance: 5

Each step is a single-key mapping. After every step the bus is drained and
in-flight idle checks settle before the next one runs.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml

from .browser.memory import InMemoryBrowser
from .config_provider import ConfigProvider
from .event_bus import AsyncEventBus
from .logging_config import setup_logging
from .scheduler import Scheduler
from .schemas.tab import TabSnapshot
from .settings import SettingsStore
from .errors import TabReaperError
from .timers import ManualClock


@dataclass
class ReplayReport:
    closed: List[Tuple[float, int]] = field(default_factory=list)
    scans: List[Dict[str, Any]] = field(default_factory=list)
    remaining: List[int] = field(default_factory=list)
    armed: List[int] = field(default_factory=list)


async def settle(scheduler: Scheduler) -> None:
    """Run queued events and idle checks until nothing is left to do."""
    while True:
        handled = await scheduler.process_pending()
        await scheduler.drain()
        if not handled and (scheduler.bus is None or scheduler.bus.size() == 0):
            return


async def advance_clock(
    scheduler: Scheduler,
    clock: ManualClock,
    seconds: float,
    on_settled: Optional[Callable[[], None]] = None,
) -> None:
    """
    中文：逐个触发到期定时器，每次触发后都 settle，保证重新挂上的定时器从触发时刻算起
    English: fire due timers one at a time and settle in between, so re-armed
    timers count from their own fire time
    """
    target = clock.now() + seconds
    while True:
        due = clock.next_due()
        if due is None or due > target:
            break
        clock.advance(due - clock.now())
        await settle(scheduler)
        if on_settled is not None:
            on_settled()
    clock.advance(target - clock.now())
    await settle(scheduler)
    if on_settled is not None:
        on_settled()


class Replayer:
    def __init__(self, script: Mapping[str, Any]) -> None:
        if not isinstance(script, Mapping):
            raise ValueError("replay script must be a mapping")

        self.clock = ManualClock()
        self.bus = AsyncEventBus()
        tabs = [TabSnapshot.from_dict(t) for t in (script.get("tabs") or [])]
        self.browser = InMemoryBrowser(tabs=tabs)
        self.store = SettingsStore(script.get("settings") or {})
        self.provider = ConfigProvider(self.store, publish=self.bus.publish_nowait)
        self.scheduler = Scheduler(
            self.browser,
            config=self.provider.snapshot(),
            clock=self.clock,
            bus=self.bus,
        )
        self.steps: List[Mapping[str, Any]] = list(script.get("steps") or [])
        self.report = ReplayReport()

    async def run(self) -> ReplayReport:
        self.browser.start(self.bus)
        try:
            for index, step in enumerate(self.steps):
                if not isinstance(step, Mapping) or len(step) != 1:
                    raise ValueError(f"step {index}: expected a single-key mapping, got {step!r}")
                (action, arg), = step.items()
                await self._run_step(index, str(action), arg)
                self._collect_closed()
        finally:
            self.browser.stop()
            self.provider.close()
            await self.scheduler.close()

        self.report.remaining = sorted(self.browser.tabs)
        self.report.armed = self.scheduler.timers.armed_ids()
        return self.report

    async def _run_step(self, index: int, action: str, arg: Any) -> None:
        if action == "open":
            arg = arg or {}
            self.browser.open_tab(
                str(arg.get("url", "")),
                pinned=bool(arg.get("pinned", False)),
                active=bool(arg.get("active", False)),
            )
        elif action == "navigate":
            self.browser.navigate(int(arg["tab"]), str(arg["url"]))
        elif action == "activate":
            self.browser.activate(int(arg))
        elif action == "close":
            self.browser.close_tab(int(arg))
        elif action == "settings":
            self.store.set(**dict(arg or {}))
        elif action == "scan":
            result = await self.scheduler.scan_all()
            self.report.scans.append(result.to_response())
        elif action == "advance":
            await advance_clock(self.scheduler, self.clock, float(arg), self._collect_closed)
            return
        else:
            raise ValueError(f"step {index}: unknown action {action!r}")
        await settle(self.scheduler)

    def _collect_closed(self) -> None:
        seen = len(self.report.closed)
        for tab_id in self.browser.removed[seen:]:
            self.report.closed.append((self.clock.now(), tab_id))


async def replay(script: Mapping[str, Any]) -> ReplayReport:
    return await Replayer(script).run()


def load_script(path: str | Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: replay script must be a mapping")
    return data


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a scripted tab session on a virtual clock")
    parser.add_argument("script", help="YAML/JSON replay script")
    parser.add_argument("--log-level", default=None, help="loguru level (default: $TABREAPER_LOG_LEVEL or INFO)")
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level)

    try:
        report = asyncio.run(replay(load_script(args.script)))
    except (OSError, ValueError, KeyError, TabReaperError, yaml.YAMLError) as e:
        print(f"replay failed: {e}", file=sys.stderr)
        return 1

    for at, tab_id in report.closed:
        print(f"t={at:g}s closed tab {tab_id}")
    for response in report.scans:
        print(f"scan: {response}")
    print(f"remaining tabs: {report.remaining}")
    print(f"armed timers: {report.armed}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
