from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from src.aggregation.errors import InvalidGranularity, InvalidRange, StorageFailure
from src.aggregation.schemas.candles import (
    METRICS,
    OHLC,
    Candle,
    CandleRunResult,
    Granularity,
    RawSample,
    candle_duration,
    parse_granularity,
)
from src.aggregation.schemas.common import as_utc
from src.aggregation.services.candle_store import CandleStore
from src.aggregation.services.raw_source import RawMetricSource

logger = logging.getLogger(__name__)


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


def _window_anchor(range_start: datetime, granularity: Granularity, daily_anchor: str = "hour") -> datetime:
    """Start of the first window: the hour containing range_start (UTC midnight for 1day when configured)."""
    ts = as_utc(range_start)
    if granularity is Granularity.d1 and daily_anchor == "midnight":
        return ts.replace(hour=0, minute=0, second=0, microsecond=0)
    return ts.replace(minute=0, second=0, microsecond=0)


# PUBLIC_INTERFACE
def iter_windows(
    range_start: datetime,
    range_end: datetime,
    granularity: Granularity,
    daily_anchor: str = "hour",
) -> List[Tuple[datetime, datetime]]:
    """
    Consecutive [start, end) windows covering [range_start, range_end).

    The last window may extend past range_end; it is still aggregated over its full length.
    """
    step = candle_duration(granularity)
    end = as_utc(range_end)
    out: List[Tuple[datetime, datetime]] = []
    ws = _window_anchor(range_start, granularity, daily_anchor)
    while ws < end:
        out.append((ws, ws + step))
        ws = ws + step
    return out


def _ohlc(samples: Sequence[RawSample], metric: str) -> OHLC:
    # NaN/inf readings count as not collected.
    vals = [v for v in (s.value(metric) for s in samples) if v is not None and math.isfinite(v)]
    if not vals:
        return OHLC()
    return OHLC(open=vals[0], high=max(vals), low=min(vals), close=vals[-1])


# PUBLIC_INTERFACE
def build_candle(
    device_id: str,
    granularity: Granularity,
    window_start: datetime,
    samples: Sequence[RawSample],
) -> Optional[Candle]:
    """
    Reduce one window's samples to a candle; None for an empty window.

    open/close come from the earliest/latest sample carrying the metric, high/low are the
    extremes, each metric independently. The sort is stable, so samples sharing a timestamp
    keep the order they were read in.
    """
    if not samples:
        return None
    ordered = sorted(samples, key=lambda s: as_utc(s.collected_at))
    ws = as_utc(window_start)
    return Candle(
        device_id=device_id,
        granularity=granularity,
        window_start=ws,
        window_end=ws + candle_duration(granularity),
        sample_count=len(ordered),
        **{metric: _ohlc(ordered, metric) for metric in METRICS},
    )


def _candle_granularity(value: Any) -> Granularity:
    g = parse_granularity(value)
    if g is Granularity.raw:
        raise InvalidGranularity(g.value)
    return g


# PUBLIC_INTERFACE
async def generate_candles(
    raw: RawMetricSource,
    store: CandleStore,
    device_id: str,
    granularity: Any,
    range_start: datetime,
    range_end: datetime,
    *,
    max_concurrency: int = 4,
    daily_anchor: str = "hour",
) -> CandleRunResult:
    """
    Materialize OHLC candles for one device and granularity over [range_start, range_end).

    Each window is read and upserted independently, at most max_concurrency at a time.
    Windows without raw samples produce nothing. After a storage failure no further windows
    are started; the result carries the first failed window so the run can be resumed from
    there (rerunning already written windows rewrites identical values).
    """
    g = _candle_granularity(granularity)
    start = as_utc(range_start)
    end = as_utc(range_end)
    if start >= end:
        raise InvalidRange(start, end)

    windows = iter_windows(start, end, g, daily_anchor)
    sem = asyncio.Semaphore(max(1, int(max_concurrency)))
    stop = asyncio.Event()

    async def _process(ws: datetime, we: datetime) -> Tuple[str, Optional[StorageFailure]]:
        async with sem:
            if stop.is_set():
                return "not_started", None
            try:
                samples = await _run_in_thread(raw.fetch_window, device_id, ws, we)
            except StorageFailure as e:
                stop.set()
                return "read_failed", e
            candle = build_candle(device_id, g, ws, samples)
            if candle is None:
                return "empty", None
            try:
                outcome = await _run_in_thread(store.upsert, candle)
            except StorageFailure as e:
                stop.set()
                return "write_failed", e
            return outcome, None

    outcomes = await asyncio.gather(*(_process(ws, we) for ws, we in windows))

    result = CandleRunResult(device_id=device_id, granularity=g, range_start=start, range_end=end)
    for (ws, _), (outcome, err) in zip(windows, outcomes):
        if outcome in ("created", "updated", "empty", "write_failed"):
            result.windows_scanned += 1
        if outcome == "created":
            result.created += 1
        elif outcome == "updated":
            result.updated += 1
        if err is not None and result.first_error is None:
            result.first_error = str(err)
        if outcome in ("read_failed", "write_failed", "not_started") and result.failed_window_start is None:
            # Earliest window not committed; with concurrent workers it can precede the failing one.
            result.failed_window_start = ws
    result.candles_written = result.created + result.updated

    if result.ok:
        logger.info(
            "Generated %s %s candles for deviceId=%s (windows=%s created=%s updated=%s)",
            result.candles_written,
            g.value,
            device_id,
            len(windows),
            result.created,
            result.updated,
        )
    else:
        logger.warning(
            "Candle generation for deviceId=%s level=%s stopped at window %s after %s candles: %s",
            device_id,
            g.value,
            result.failed_window_start.isoformat() if result.failed_window_start else None,
            result.candles_written,
            result.first_error,
        )
    return result
