from __future__ import annotations

import math

import pytest

from tabreaper.config import DEFAULT_DELAY_SECONDS, CloseMode, CloserConfig


def test_defaults():
    cfg = CloserConfig.from_raw()
    assert cfg.mode == CloseMode.IMMEDIATE
    assert cfg.delay_seconds == DEFAULT_DELAY_SECONDS == 30
    assert cfg.close_on_activate is False
    assert len(cfg.patterns) == 0


def test_well_formed_input():
    cfg = CloserConfig.from_raw(["a", "b"], "idle", 5, True)
    assert cfg.patterns.patterns == ("a", "b")
    assert cfg.mode == CloseMode.IDLE
    assert cfg.idle
    assert cfg.delay_seconds == 5.0
    assert cfg.close_on_activate is True


@pytest.mark.parametrize("mode", ["immediate", "IDLE", " idle", "Idle", None, 1, ["idle"], "whatever"])
def test_mode_other_than_literal_idle_is_immediate(mode):
    assert CloserConfig.from_raw([], mode, 5).mode == CloseMode.IMMEDIATE


@pytest.mark.parametrize(
    "raw, expected",
    [
        (10, 10.0),
        (0.5, 0.5),
        ("12", 12.0),
        (" 7.5 ", 7.5),
        (True, 1.0),
        (0, 30.0),
        (-3, 30.0),
        ("", 30.0),
        ("abc", 30.0),
        (None, 30.0),
        (False, 30.0),
        (math.inf, 30.0),
        ("Infinity", 30.0),
        (math.nan, 30.0),
        ([5], 5.0),
        (["8"], 8.0),
        ([], 30.0),
        ([1, 2], 30.0),
        ({"v": 5}, 30.0),
        ("0x10", 16.0),
        ("0b101", 5.0),
        ("0xzz", 30.0),
        ("1_0", 30.0),
        (10**400, 30.0),
        ("1e400", 30.0),
    ],
)
def test_delay_normalization(raw, expected):
    assert CloserConfig.from_raw([], "idle", raw).delay_seconds == expected


@pytest.mark.parametrize("raw", [None, "example\\.com", 42, {"a": "b"}, object()])
def test_non_sequence_patterns_become_empty(raw):
    assert len(CloserConfig.from_raw(raw, "idle", 5).patterns) == 0


def test_tuple_patterns_accepted():
    assert CloserConfig.from_raw(("x",)).patterns.patterns == ("x",)


@pytest.mark.parametrize("raw, expected", [(None, False), (0, False), ("", False), (1, True), ("yes", True)])
def test_close_on_activate_coerced(raw, expected):
    assert CloserConfig.from_raw([], None, None, raw).close_on_activate is expected


def test_each_field_falls_back_independently():
    cfg = CloserConfig.from_raw("not-a-list", "idle", -1, 1)
    assert len(cfg.patterns) == 0
    assert cfg.mode == CloseMode.IDLE
    assert cfg.delay_seconds == 30.0
    assert cfg.close_on_activate is True


def test_from_mapping_handles_garbage():
    assert CloserConfig.from_mapping(None) == CloserConfig.from_raw()
    cfg = CloserConfig.from_mapping({"patterns": ["a"], "mode": "idle", "delay_seconds": "3"})
    assert cfg.patterns.patterns == ("a",)
    assert cfg.delay_seconds == 3.0
    assert cfg.close_on_activate is False


def test_config_is_immutable():
    cfg = CloserConfig.default()
    with pytest.raises(Exception):
        cfg.delay_seconds = 1  # type: ignore[misc]
