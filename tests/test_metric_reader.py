from __future__ import annotations

from datetime import timedelta

import pytest

from src.aggregation.errors import InvalidGranularity, StorageFailure
from src.aggregation.schemas.candles import OHLC, Candle, Granularity
from src.aggregation.services.candle_store import CandleStore
from src.aggregation.services.metric_reader import MetricReader
from src.aggregation.services.raw_source import RawMetricSource
from tests.utils import BrokenCollection, utc

BASE = utc(2025, 10, 19, 8, 0)


@pytest.fixture
def reader(raw_source, candle_store) -> MetricReader:
    return MetricReader(raw_source, candle_store)


def test_raw_reads_latest_samples_newest_first(reader: MetricReader, add_sample):
    for i in range(6):
        add_sample("dev-1", BASE + timedelta(minutes=5 * i), cpu=float(i), memory=50.0)

    points = reader.read("dev-1", "raw", "cpu", 3)

    assert [p.value for p in points] == [5.0, 4.0, 3.0]
    assert points[0].timestamp == BASE + timedelta(minutes=25)


def test_raw_returns_fewer_points_when_history_is_short(reader: MetricReader, add_sample):
    add_sample("dev-1", BASE, cpu=1.0)
    add_sample("dev-1", BASE + timedelta(minutes=5), cpu=2.0)

    assert len(reader.read("dev-1", Granularity.raw, "cpu", 50)) == 2
    assert reader.read("unknown-device", "raw", "cpu", 50) == []


def test_raw_uncollected_metric_reads_as_null(reader: MetricReader, add_sample):
    add_sample("dev-1", BASE, cpu=1.0)

    assert reader.read("dev-1", "raw", "disk", 5)[0].value is None


def test_candle_levels_read_candle_closes(reader: MetricReader, candle_store):
    for i in range(4):
        ws = BASE + timedelta(hours=i)
        candle_store.upsert(
            Candle(
                device_id="dev-1",
                granularity=Granularity.h1,
                window_start=ws,
                window_end=ws + timedelta(hours=1),
                memory=OHLC(open=10, high=90, low=5, close=20.0 + i),
                sample_count=12,
            )
        )

    points = reader.read("dev-1", "1hour", "memory", 2)

    assert [(p.value, p.timestamp) for p in points] == [
        (23.0, BASE + timedelta(hours=3)),
        (22.0, BASE + timedelta(hours=2)),
    ]
    assert reader.read("dev-1", "15min", "memory", 2) == []


def test_non_positive_lookback_reads_nothing(reader: MetricReader, add_sample):
    add_sample("dev-1", BASE, cpu=1.0)

    assert reader.read("dev-1", "raw", "cpu", 0) == []


def test_rejects_unknown_metric_and_level(reader: MetricReader):
    with pytest.raises(ValueError):
        reader.read("dev-1", "raw", "network", 5)
    with pytest.raises(InvalidGranularity):
        reader.read("dev-1", "weekly", "cpu", 5)


@pytest.mark.parametrize("granularity", ["raw", "15min", "1hour", "1day"])
def test_storage_errors_surface_as_storage_failure_for_every_level(granularity):
    reader = MetricReader(RawMetricSource(BrokenCollection()), CandleStore(BrokenCollection()))

    with pytest.raises(StorageFailure) as exc:
        reader.read("dev-1", granularity, "cpu", 5)
    assert "db down" in str(exc.value)
