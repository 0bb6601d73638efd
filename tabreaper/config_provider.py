from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from .config import SETTINGS_FIELDS, CloserConfig
from .event_bus import PublishResult
from .schemas.events import ConfigChanged, Event
from .settings import SettingChange, SettingsStore

logger = logging.getLogger(__name__)


class ConfigProvider:
    """
    CloserConfig 快照提供者：订阅设置存储，把变更字段合并进上次的原始值，
    整体重建配置后按引用替换，并向总线发布 ConfigChanged。
    """

    def __init__(
        self,
        store: SettingsStore,
        *,
        publish: Optional[Callable[[Event], PublishResult]] = None,
    ) -> None:
        self._store = store
        self._publish = publish
        self._raw: Dict[str, Any] = store.get()
        self._ref: CloserConfig = CloserConfig.from_mapping(self._raw)
        self._unsubscribe = store.subscribe(self._on_changes)

    def snapshot(self) -> CloserConfig:
        return self._ref

    def raw(self) -> Dict[str, Any]:
        return dict(self._raw)

    def close(self) -> None:
        self._unsubscribe()

    def apply(self, raw: Mapping[str, Any]) -> CloserConfig:
        self._raw = dict(raw)
        cfg = CloserConfig.from_mapping(self._raw)
        self._ref = cfg
        logger.info(
            f"Config rebuilt: {len(cfg.patterns)} pattern(s), "
            f"{len(cfg.patterns.rejected)} rejected, mode={cfg.mode.value}"
        )

        if self._publish is not None:
            result = self._publish(ConfigChanged(config=cfg))
            if result is not None and not result.ok:
                logger.warning(f"ConfigChanged not delivered: {result.reason}")
        return cfg

    def _on_changes(self, changes: Dict[str, SettingChange]) -> None:
        merged = dict(self._raw)
        for name, change in changes.items():
            if name in SETTINGS_FIELDS:
                merged[name] = change.new
        self.apply(merged)
