# tabreaper/settings.py
# =========================
# 设置存储（默认值 + 按字段变更通知）
# Settings store (defaults + per-field change feed)
# =========================

from __future__ import annotations

import copy
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml

from .config import SETTINGS_FIELDS, default_settings
from .errors import SettingsError

logger = logging.getLogger(__name__)


# 兼容扩展版的字段名 / field names used by the browser-extension settings page
_ALIASES = {
    "delaySeconds": "delay_seconds",
    "closeOnActivate": "close_on_activate",
    "closeOnClick": "close_on_activate",
}

SETTINGS_VERSION = 1


@dataclass(frozen=True)
class SettingChange:
    old: Any
    new: Any


SettingsListener = Callable[[Dict[str, SettingChange]], None]


def normalize_keys(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Map alias keys onto the persisted field names and drop unknown keys."""
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        name = _ALIASES.get(key, key)
        if name in SETTINGS_FIELDS:
            values[name] = value
    return values


class SettingsStore:
    """
    中文：
      内存版设置存储。get() 返回合并了默认值的四个字段；
      每次修改只通知真正变了的字段（old/new），和浏览器的 storage.onChanged 一样。
      这里不做任何校验，规范化在 CloserConfig.from_raw 里完成。

    English:
      In-memory settings store. get() returns the four fields merged over
      defaults; listeners receive only the fields that actually changed.
      No validation here; normalization is CloserConfig.from_raw's job.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._values: Dict[str, Any] = default_settings()
        if initial:
            self._values.update(normalize_keys(initial))
        self._listeners: List[SettingsListener] = []

    def get(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set(self, **fields: Any) -> Dict[str, SettingChange]:
        unknown = [k for k in fields if _ALIASES.get(k, k) not in SETTINGS_FIELDS]
        if unknown:
            raise SettingsError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        previous = copy.deepcopy(self._values)
        changes = self._apply(normalize_keys(fields))
        if changes:
            try:
                self._persist()
            except SettingsError:
                # 写盘失败：内存和文件、订阅者保持一致的旧值
                self._values = previous
                raise
            self._notify(changes)
        return changes

    def _apply(self, values: Mapping[str, Any]) -> Dict[str, SettingChange]:
        changes: Dict[str, SettingChange] = {}
        for name, new in values.items():
            old = self._values.get(name)
            if old == new:
                continue
            changes[name] = SettingChange(old=copy.deepcopy(old), new=copy.deepcopy(new))
            self._values[name] = copy.deepcopy(new)
        return changes

    def _persist(self) -> None:
        return

    def _notify(self, changes: Dict[str, SettingChange]) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception as e:
                logger.warning(f"Settings listener failed: {e}")


class YamlSettingsStore(SettingsStore):
    """
    中文：
      YAML 文件持久化的设置存储。
      reload_if_changed() 通过 (mtime, size) + 内容 hash 判断文件是否被外部修改，
      变化的字段照常通知。文件损坏时保留旧值并告警。

    English:
      YAML-backed store. reload_if_changed() detects external edits via the
      (mtime, size) stamp plus a content hash and notifies changed fields.
      A broken file keeps the previous values.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._last_stamp: Optional[Tuple[int, int]] = None
        self._last_hash: Optional[str] = None

        if self._path.exists():
            try:
                self._values.update(self._read_file())
            except SettingsError as e:
                logger.warning(f"Settings load failed, using defaults: {e}")
            self._remember_file()

    @property
    def path(self) -> Path:
        return self._path

    def reload_if_changed(self) -> bool:
        stamp = self._safe_file_stamp()
        if stamp is None:
            return False

        if self._last_stamp is not None and stamp == self._last_stamp:
            # mtime 精度不稳定，补充 hash 判定内容变化
            current_hash = self._safe_file_hash()
            if current_hash is None or current_hash == self._last_hash:
                return False

        return self.force_reload()

    def force_reload(self) -> bool:
        try:
            values = default_settings()
            values.update(self._read_file())
        except SettingsError as e:
            logger.warning(f"Settings reload failed: {e}")
            return False

        self._remember_file()
        changes = self._apply(values)
        if changes:
            logger.info(f"Settings reloaded: {', '.join(sorted(changes))} changed")
            self._notify(changes)
        return bool(changes)

    def save(self) -> None:
        data = {"version": SETTINGS_VERSION, **self._values}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                yaml.safe_dump(data, allow_unicode=True, sort_keys=False),
                encoding="utf-8",
            )
        except OSError as e:
            raise SettingsError(f"Cannot write settings to {self._path}: {e}") from e
        self._remember_file()

    def _persist(self) -> None:
        self.save()

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise SettingsError(f"Cannot read settings {self._path}: {e}") from e

        if not isinstance(raw, dict):
            logger.warning(f"Settings file {self._path} is not a mapping, using defaults")
            return {}

        version = raw.get("version", SETTINGS_VERSION)
        if version != SETTINGS_VERSION:
            raise SettingsError(f"Unsupported settings version: {version}")
        return normalize_keys(raw)

    def _remember_file(self) -> None:
        self._last_stamp = self._safe_file_stamp()
        self._last_hash = self._safe_file_hash()

    def _safe_file_stamp(self) -> Optional[Tuple[int, int]]:
        try:
            stat = self._path.stat()
            return stat.st_mtime_ns, stat.st_size
        except OSError:
            return None

    def _safe_file_hash(self) -> Optional[str]:
        try:
            return hashlib.sha256(self._path.read_bytes()).hexdigest()
        except OSError as e:
            logger.warning(f"Settings hash failed: {e}")
            return None
