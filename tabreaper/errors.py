from __future__ import annotations


class TabReaperError(Exception):
    """Base error for the tab reaper."""


class TabVanished(TabReaperError):
    """
    中文：目标标签页已不存在（查询或关闭时）
    English: the target tab no longer exists (lookup or close)
    """

    def __init__(self, tab_id: int, reason: str = "not found") -> None:
        super().__init__(f"tab {tab_id} vanished: {reason}")
        self.tab_id = tab_id
        self.reason = reason


class SettingsError(TabReaperError):
    """Settings file could not be read or written."""
