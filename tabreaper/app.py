# tabreaper/app.py
# =========================
# TabReaper：串联 BrowserAdapter → Bus → Scheduler，外加设置热加载
# TabReaper: BrowserAdapter → Bus → Scheduler, plus settings hot reload
# =========================

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .browser.base import BrowserAdapter
from .config_provider import ConfigProvider
from .event_bus import AsyncEventBus
from .scheduler import Scheduler
from .settings import SettingsStore, YamlSettingsStore
from .timers import Clock

logger = logging.getLogger(__name__)


class TabReaper:
    """
    职责 / Responsibilities:
    - 创建 AsyncEventBus、ConfigProvider、Scheduler
    - 管理 BrowserAdapter 生命周期（start/stop）
    - YAML 设置文件的热加载轮询
    - 对 UI 暴露唯一的命令：run_scan()
    - 支持优雅 shutdown
    """

    def __init__(
        self,
        browser: BrowserAdapter,
        store: SettingsStore,
        *,
        bus_maxsize: int = 1000,
        clock: Optional[Clock] = None,
        reload_interval_seconds: float = 2.0,
    ) -> None:
        self.bus = AsyncEventBus(maxsize=bus_maxsize, drop_when_full=True)
        self.browser = browser
        self.store = store
        self.reload_interval_seconds = reload_interval_seconds

        self.config_provider = ConfigProvider(store, publish=self.bus.publish_nowait)
        self.scheduler = Scheduler(
            browser,
            config=self.config_provider.snapshot(),
            clock=clock,
            bus=self.bus,
        )

        self._closing = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._reload_task: Optional[asyncio.Task] = None

    # -------------------------
    # 主运行循环 / main loop
    # -------------------------

    async def run_forever(self) -> None:
        try:
            await self.start()
            if self._scheduler_task:
                await self._scheduler_task
        except asyncio.CancelledError:
            logger.info("TabReaper received cancellation, shutting down gracefully...")
            raise
        finally:
            await self.shutdown()

    async def start(self) -> None:
        if self._scheduler_task is not None:
            return
        logger.info("TabReaper starting up...")

        self.browser.start(self.bus)
        logger.info(f"Started browser adapter: {self.browser.name}")

        self._scheduler_task = asyncio.create_task(self.scheduler.run(), name="scheduler_task")

        if isinstance(self.store, YamlSettingsStore) and self.reload_interval_seconds > 0:
            self._reload_task = asyncio.create_task(
                self._settings_reload_loop(self.store),
                name="settings_reload_loop",
            )
            logger.info(f"Watching settings file: {self.store.path}")

        logger.info("TabReaper startup complete")

    async def shutdown(self) -> None:
        if self._closing:
            return
        self._closing = True

        logger.info("TabReaper shutting down...")

        try:
            self.browser.stop()
        except Exception as e:
            logger.error(f"Error stopping browser adapter {self.browser.name}: {e}")

        self.config_provider.close()
        self.bus.close()

        tasks = [t for t in (self._scheduler_task, self._reload_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.scheduler.close()
        logger.info("TabReaper shutdown complete")

    # -------------------------
    # UI 命令 / UI command
    # -------------------------

    async def run_scan(self) -> Dict[str, Any]:
        """The popup's "run now" button: {"ok": true} or {"ok": false, "error": "..."}."""
        if self._scheduler_task is None or self._scheduler_task.done():
            return {"ok": False, "error": "scheduler is not running"}
        try:
            result = await self.scheduler.request_scan()
        except Exception as e:
            logger.error(f"Scan request failed: {e}")
            return {"ok": False, "error": str(e) or type(e).__name__}
        return result.to_response()

    # -------------------------
    # 设置热加载 / settings hot reload
    # -------------------------

    async def _settings_reload_loop(self, store: YamlSettingsStore) -> None:
        while not self._closing:
            await asyncio.sleep(self.reload_interval_seconds)
            try:
                store.reload_if_changed()
            except Exception as e:
                logger.error(f"Error reloading settings: {e}")
