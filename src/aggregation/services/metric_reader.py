from __future__ import annotations

from typing import Any, List

from src.aggregation.schemas.candles import METRICS, Granularity, SeriesPoint, parse_granularity
from src.aggregation.services.candle_store import CandleStore
from src.aggregation.services.raw_source import RawMetricSource


class MetricReader:
    """
    Uniform read facade for the alert evaluator.

    Raw granularity reads the latest raw samples; any candle granularity reads candle closes.
    Both return SeriesPoint lists ordered most recent first, so callers never branch on the source.
    """

    def __init__(self, raw: RawMetricSource, store: CandleStore):
        self._raw = raw
        self._store = store

    # PUBLIC_INTERFACE
    def read(self, device_id: str, granularity: Any, metric: str, lookback: int) -> List[SeriesPoint]:
        """Return at most `lookback` (value, timestamp) points for the metric, newest first."""
        g = parse_granularity(granularity)
        if metric not in METRICS:
            raise ValueError(f"Unknown metric: {metric!r} (expected one of {', '.join(METRICS)})")
        if lookback <= 0:
            return []
        if g is Granularity.raw:
            return self._raw.latest_values(device_id, metric, lookback)
        return self._store.query_latest(device_id, g, metric, lookback)
