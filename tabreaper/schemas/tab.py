# tabreaper/schemas/tab.py
# =========================
# 标签页快照（只在一次判定内有效）
# Tab snapshot (valid for a single evaluation only)
# =========================

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class TabSnapshot:
    """
    中文：从浏览器拿到的最新标签页状态，不缓存
    English: freshest tab state from the browser, never cached
    """
    id: int
    url: str = ""
    pinned: bool = False
    active: bool = False

    @property
    def is_web(self) -> bool:
        return self.url.startswith("http://") or self.url.startswith("https://")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TabSnapshot":
        return cls(
            id=int(data["id"]),
            url=str(data.get("url") or ""),
            pinned=bool(data.get("pinned", False)),
            active=bool(data.get("active", False)),
        )


@dataclass(frozen=True)
class TabChange:
    """
    中文：tab-updated 事件里的部分变更
    English: partial change info carried by a tab-updated event
    """
    url: Optional[str] = None
    status: Optional[str] = None  # "loading" | "complete"

    @property
    def relevant(self) -> bool:
        """Only URL changes and load completion are worth re-evaluating."""
        return bool(self.url) or self.status == "complete"
