from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from src.aggregation.errors import StorageFailure
from src.aggregation.schemas.candles import (
    CANDLE_GRANULARITIES,
    CandleRunResult,
    Granularity,
    RunErrorItem,
    RunSummary,
)
from src.aggregation.schemas.common import utc_now
from src.aggregation.services.candle_aggregator import generate_candles
from src.aggregation.state import AppState

logger = logging.getLogger(__name__)


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


async def _fetch_active_device_ids(state: AppState) -> List[str]:
    cols = state.mongo.collections()
    docs = await _run_in_thread(
        lambda: list(cols.devices.find({"isActive": True}, projection={"_id": 0, "id": 1}).sort("id", 1))
    )
    out: List[str] = []
    for d in docs:
        did = d.get("id")
        if did:
            out.append(str(did))
    return out


# PUBLIC_INTERFACE
async def generate_for_device(
    state: AppState,
    device_id: str,
    granularity: object,
    start: datetime,
    end: datetime,
) -> CandleRunResult:
    """generate_candles wired to the app's stores and concurrency/anchoring settings."""
    cfg = state.config
    return await generate_candles(
        state.raw_source(),
        state.candle_store(),
        device_id,
        granularity,
        start,
        end,
        max_concurrency=cfg.candles_max_concurrency,
        daily_anchor=cfg.candles_daily_anchor,
    )


async def _generate_device_levels(
    state: AppState,
    device_id: str,
    levels: Iterable[Granularity],
    start: datetime,
    end: datetime,
    summary: RunSummary,
) -> None:
    for level in levels:
        summary.by_granularity.setdefault(level.value, 0)
        try:
            res = await generate_for_device(state, device_id, level, start, end)
        except StorageFailure as e:
            summary.errors.append(RunErrorItem(device_id=device_id, granularity=level, error=str(e)))
            continue
        summary.by_granularity[level.value] += res.candles_written
        summary.total_candles_written += res.candles_written
        if not res.ok:
            summary.errors.append(RunErrorItem(device_id=device_id, granularity=level, error=res.first_error or ""))


# PUBLIC_INTERFACE
async def generate_for_all_devices(
    state: AppState,
    start: datetime,
    end: datetime,
    levels: Optional[Iterable[Granularity]] = None,
) -> RunSummary:
    """
    Generate candles for every active device and every candle granularity.

    A failing device/level is recorded in the summary and the remaining ones still run.
    """
    levels = tuple(levels or CANDLE_GRANULARITIES)
    device_ids = await _fetch_active_device_ids(state)
    logger.info("Generating candles for %s active devices (%s -> %s)", len(device_ids), start.isoformat(), end.isoformat())

    summary = RunSummary(by_granularity={g.value: 0 for g in levels})
    for device_id in device_ids:
        await _generate_device_levels(state, device_id, levels, start, end, summary)
        summary.devices_processed += 1

    logger.info(
        "Candle generation complete devices=%s total=%s errors=%s",
        summary.devices_processed,
        summary.total_candles_written,
        len(summary.errors),
    )
    return summary


# PUBLIC_INTERFACE
async def generate_recent_candles(state: AppState) -> RunSummary:
    """Refresh candles over the configured lookback (default: last 24 hours) for all active devices."""
    end = utc_now()
    start = end - timedelta(hours=state.config.candles_refresh_lookback_hours)
    return await generate_for_all_devices(state, start, end)


# PUBLIC_INTERFACE
async def backfill_device(state: AppState, device_id: str, days_back: Optional[int] = None) -> RunSummary:
    """Backfill `days_back` days of candles at every granularity for one device."""
    days = int(days_back or state.config.candles_backfill_days)
    end = utc_now()
    start = end - timedelta(days=days)
    logger.info("Backfilling %s days of candles for deviceId=%s", days, device_id)

    summary = RunSummary(by_granularity={g.value: 0 for g in CANDLE_GRANULARITIES})
    await _generate_device_levels(state, device_id, CANDLE_GRANULARITIES, start, end, summary)
    summary.devices_processed = 1
    return summary


# PUBLIC_INTERFACE
async def backfill_all_devices(state: AppState, days_back: Optional[int] = None) -> RunSummary:
    """Backfill every active device; per-device summaries are merged."""
    device_ids = await _fetch_active_device_ids(state)
    total = RunSummary(by_granularity={g.value: 0 for g in CANDLE_GRANULARITIES})
    for device_id in device_ids:
        one = await backfill_device(state, device_id, days_back)
        total.devices_processed += 1
        total.total_candles_written += one.total_candles_written
        for level, n in one.by_granularity.items():
            total.by_granularity[level] = total.by_granularity.get(level, 0) + n
        total.errors.extend(one.errors)

    logger.info("Backfill complete devices=%s total=%s", total.devices_processed, total.total_candles_written)
    return total


# PUBLIC_INTERFACE
async def cleanup_old_candles(state: AppState, days_to_keep: Optional[int] = None) -> int:
    """Delete candles whose window started more than `days_to_keep` days ago."""
    days = int(days_to_keep if days_to_keep is not None else state.config.candles_retention_days)
    cutoff = utc_now() - timedelta(days=max(0, days))
    deleted = await _run_in_thread(state.candle_store().delete_older_than, cutoff)
    logger.info("Cleaned up %s candles older than %s days", deleted, days)
    return deleted
