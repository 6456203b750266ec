from __future__ import annotations

import itertools
from datetime import timedelta

import pytest

from src.aggregation.errors import InvalidGranularity
from src.aggregation.schemas.candles import Granularity, candle_duration, parse_granularity
from src.aggregation.services.resolution import resolve

ALL_LEVELS = [g.value for g in Granularity]


def test_parse_granularity_accepts_the_six_tags():
    assert [parse_granularity(v) for v in ALL_LEVELS] == list(Granularity)
    assert parse_granularity(Granularity.h4) is Granularity.h4


@pytest.mark.parametrize("value", ["5min", "1h", "", "RAW", None, 15])
def test_parse_granularity_rejects_unknown_values(value):
    with pytest.raises(InvalidGranularity):
        parse_granularity(value)


def test_candle_durations():
    assert candle_duration("15min") == timedelta(minutes=15)
    assert candle_duration("30min") == timedelta(minutes=30)
    assert candle_duration("1hour") == timedelta(hours=1)
    assert candle_duration("4hour") == timedelta(hours=4)
    assert candle_duration("1day") == timedelta(days=1)


def test_raw_has_no_candle_duration():
    with pytest.raises(InvalidGranularity):
        candle_duration("raw")


def test_resolve_defaults_to_raw_when_nothing_is_set():
    assert resolve() is Granularity.raw
    assert resolve(None, None, None) is Granularity.raw
    assert resolve("", "", "") is Granularity.raw


@pytest.mark.parametrize(
    "alert,device,user",
    list(itertools.product([None] + ALL_LEVELS, repeat=3)),
)
def test_resolve_precedence_over_all_combinations(alert, device, user):
    expected = next((v for v in (alert, device, user) if v is not None), "raw")
    assert resolve(alert, device, user).value == expected


def test_user_default_applies_without_overrides():
    assert resolve(None, None, "1hour") is Granularity.h1


def test_device_raw_override_beats_user_default():
    assert resolve(None, "raw", "1hour") is Granularity.raw


def test_alert_override_beats_device_and_user():
    assert resolve("4hour", "raw", "1hour") is Granularity.h4


def test_unrecognized_config_values_are_skipped():
    assert resolve("weekly", None, "30min") is Granularity.m30
