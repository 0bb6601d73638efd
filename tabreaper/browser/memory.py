# tabreaper/browser/memory.py
# =========================
# 内存模拟浏览器（演示 / 测试 / 回放）
# In-memory simulated browser (demo / tests / replay)
# =========================

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .base import BrowserAdapter
from ..errors import TabVanished
from ..schemas.events import TabActivated, TabCreated, TabRemoved, TabUpdated
from ..schemas.tab import TabChange, TabSnapshot


class InMemoryBrowser(BrowserAdapter):
    """
    中文：
      用一个 dict 模拟浏览器里的标签页。用户动作（open/navigate/activate/close）
      会像真浏览器那样产生事件；remove() 是给 Scheduler 用的关闭 API。
      同一时刻最多一个 active 标签页。

    English:
      Simulated browser. User actions emit events the way a real browser
      would; remove() is the close API used by the Scheduler. At most one tab
      is active at a time.
    """

    def __init__(self, *, name: str = "memory_browser", tabs: Iterable[TabSnapshot] = ()) -> None:
        super().__init__(name=name)
        self._tabs: Dict[int, TabSnapshot] = {}
        self._next_id = 1
        self.removed: List[int] = []
        for tab in tabs:
            self._tabs[tab.id] = tab
            self._next_id = max(self._next_id, tab.id + 1)

    # -------------------------
    # 查询 / inspection
    # -------------------------

    @property
    def tabs(self) -> Dict[int, TabSnapshot]:
        return dict(self._tabs)

    def has_tab(self, tab_id: int) -> bool:
        return tab_id in self._tabs

    def active_tab(self) -> Optional[TabSnapshot]:
        for tab in self._tabs.values():
            if tab.active:
                return tab
        return None

    # -------------------------
    # 用户动作 / user actions
    # -------------------------

    def open_tab(self, url: str, *, pinned: bool = False, active: bool = False) -> TabSnapshot:
        tab_id = self._next_id
        self._next_id += 1
        if active:
            self._deactivate_all()
        tab = TabSnapshot(id=tab_id, url=url, pinned=pinned, active=active)
        self._tabs[tab_id] = tab
        self.emit(TabCreated(tab=tab))
        if active:
            self.emit(TabActivated(tab_id=tab_id))
        return tab

    def navigate(self, tab_id: int, url: str) -> TabSnapshot:
        tab = self._require(tab_id)
        tab = replace(tab, url=url)
        self._tabs[tab_id] = tab
        self.emit(TabUpdated(tab_id=tab_id, change=TabChange(url=url, status="loading"), tab=tab))
        self.emit(TabUpdated(tab_id=tab_id, change=TabChange(status="complete"), tab=tab))
        return tab

    def set_pinned(self, tab_id: int, pinned: bool) -> TabSnapshot:
        tab = replace(self._require(tab_id), pinned=pinned)
        self._tabs[tab_id] = tab
        self.emit(TabUpdated(tab_id=tab_id, change=TabChange(), tab=tab))
        return tab

    def activate(self, tab_id: int) -> TabSnapshot:
        self._require(tab_id)
        self._deactivate_all()
        tab = replace(self._tabs[tab_id], active=True)
        self._tabs[tab_id] = tab
        self.emit(TabActivated(tab_id=tab_id))
        return tab

    def close_tab(self, tab_id: int) -> None:
        self._require(tab_id)
        del self._tabs[tab_id]
        self.emit(TabRemoved(tab_id=tab_id))

    # -------------------------
    # 标签页 API / Tab API
    # -------------------------

    async def query(self) -> List[TabSnapshot]:
        return list(self._tabs.values())

    async def get(self, tab_id: int) -> TabSnapshot:
        return self._require(tab_id)

    async def remove(self, tab_id: int) -> None:
        self._require(tab_id)
        del self._tabs[tab_id]
        self.removed.append(tab_id)
        self.emit(TabRemoved(tab_id=tab_id))

    def _require(self, tab_id: int) -> TabSnapshot:
        tab = self._tabs.get(tab_id)
        if tab is None:
            raise TabVanished(tab_id)
        return tab

    def _deactivate_all(self) -> None:
        for tab_id, tab in self._tabs.items():
            if tab.active:
                self._tabs[tab_id] = replace(tab, active=False)
