from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Path, Query, Request

from src.aggregation.errors import InvalidGranularity, InvalidRange, StorageFailure
from src.aggregation.schemas.candles import (
    CandleListResponse,
    CandleRunResult,
    CandleStatsResponse,
    CleanupResponse,
    GenerateCandlesRequest,
    Granularity,
    MetricName,
    RunSummary,
    SeriesResponse,
    parse_granularity,
)
from src.aggregation.schemas.common import ErrorResponse
from src.aggregation.services import aggregation_settings_service, candles_service
from src.aggregation.state import get_state

router = APIRouter(prefix="/api/candles", tags=["Candles"])


def _level_or_400(value: str) -> Granularity:
    try:
        return parse_granularity(value)
    except InvalidGranularity as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.post(
    "/refresh",
    response_model=RunSummary,
    summary="Refresh recent candles",
    description="Regenerate candles over the configured lookback for all active devices and all granularities.",
    operation_id="refresh_recent_candles",
)
async def refresh_recent(request: Request) -> RunSummary:
    """Regenerate recent candles for all active devices."""
    return await candles_service.generate_recent_candles(get_state(request.app))


@router.post(
    "/backfill",
    response_model=RunSummary,
    summary="Backfill candles",
    description="Backfill historical candles for one device (deviceId) or every active device.",
    operation_id="backfill_candles",
)
async def backfill(
    request: Request,
    days: Optional[int] = Query(default=None, ge=1, le=366, description="Days to backfill (default from config)."),
    device_id: Optional[str] = Query(default=None, alias="deviceId", description="Optional single device."),
) -> RunSummary:
    """Backfill candles."""
    state = get_state(request.app)
    if device_id:
        return await candles_service.backfill_device(state, device_id, days)
    return await candles_service.backfill_all_devices(state, days)


@router.get(
    "/stats",
    response_model=CandleStatsResponse,
    summary="Candle storage statistics",
    description="Per-granularity candle counts, device counts, time span and average samples per candle.",
    operation_id="candle_stats",
)
def candle_stats(request: Request) -> CandleStatsResponse:
    """Return candle storage statistics."""
    try:
        items = get_state(request.app).candle_store().stats()
    except StorageFailure as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return CandleStatsResponse(items=items, total=len(items))


@router.delete(
    "",
    response_model=CleanupResponse,
    summary="Delete old candles",
    description="Delete candles whose window started more than daysToKeep days ago.",
    operation_id="cleanup_old_candles",
)
async def cleanup(
    request: Request,
    days_to_keep: Optional[int] = Query(default=None, alias="daysToKeep", ge=0, le=3650),
) -> CleanupResponse:
    """Delete candles beyond the retention period."""
    state = get_state(request.app)
    days = days_to_keep if days_to_keep is not None else state.config.candles_retention_days
    deleted = await candles_service.cleanup_old_candles(state, days)
    return CleanupResponse(deleted=deleted, days_to_keep=days)


@router.post(
    "/{device_id}/generate",
    response_model=CandleRunResult,
    responses={400: {"model": ErrorResponse}},
    summary="Generate candles",
    description=(
        "Materialize OHLC candles for a device, granularity and [start, end) range. Idempotent; "
        "a partial run reports the window to resume from."
    ),
    operation_id="generate_candles",
)
async def generate(
    request: Request,
    payload: GenerateCandlesRequest,
    device_id: str = Path(..., description="Device identifier"),
) -> CandleRunResult:
    """Run candle generation for one device."""
    try:
        return await candles_service.generate_for_device(
            get_state(request.app), device_id, payload.granularity, payload.start, payload.end
        )
    except (InvalidGranularity, InvalidRange) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.get(
    "/{device_id}",
    response_model=CandleListResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="List candles",
    description="Most recent candles for a device and granularity; granularity=raw returns raw samples instead.",
    operation_id="list_candles",
)
def list_candles(
    request: Request,
    device_id: str = Path(..., description="Device identifier"),
    granularity: str = Query(..., description="raw|15min|30min|1hour|4hour|1day"),
    limit: int = Query(50, ge=1, le=1000),
) -> CandleListResponse:
    """List candles (or raw samples) for a device."""
    level = _level_or_400(granularity)
    state = get_state(request.app)
    try:
        if level is Granularity.raw:
            samples = state.raw_source().latest(device_id, limit)
            return CandleListResponse(device_id=device_id, granularity=level, samples=samples)
        candles = state.candle_store().list_latest(device_id, level, limit)
    except StorageFailure as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return CandleListResponse(device_id=device_id, granularity=level, candles=candles)


@router.get(
    "/{device_id}/series",
    response_model=SeriesResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Read metric series",
    description=(
        "Series of (value, timestamp) pairs, most recent first, for the alert evaluator. "
        "Without an explicit granularity the effective level is resolved from alert rule, device and user settings."
    ),
    operation_id="read_metric_series",
)
def read_series(
    request: Request,
    device_id: str = Path(..., description="Device identifier"),
    metric: MetricName = Query(..., description="cpu|memory|disk"),
    granularity: Optional[str] = Query(default=None, description="Explicit level; resolved when omitted."),
    alert_rule_id: Optional[str] = Query(default=None, alias="alertRuleId"),
    lookback: Optional[int] = Query(default=None, ge=1, le=1000),
) -> SeriesResponse:
    """Read a metric series at the requested or resolved granularity."""
    state = get_state(request.app)
    if granularity:
        level = _level_or_400(granularity)
    else:
        level = aggregation_settings_service.get_effective_granularity(request, device_id, alert_rule_id).effective

    count = lookback or state.config.candles_default_lookback
    try:
        points = state.metric_reader().read(device_id, level, metric, count)
    except StorageFailure as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return SeriesResponse(device_id=device_id, granularity=level, metric=metric, points=points)
