from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from src.aggregation.services.candles_service import cleanup_old_candles, generate_recent_candles
from src.aggregation.state import AppState

logger = logging.getLogger(__name__)


async def _refresh_tick(state: AppState) -> None:
    cfg = state.config
    if not cfg.candles_refresh_enabled:
        return

    await generate_recent_candles(state)

    if cfg.candles_retention_days > 0:
        await cleanup_old_candles(state, cfg.candles_retention_days)


# PUBLIC_INTERFACE
async def candle_refresh_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """
    Scheduled job that keeps candles current.

    Each tick regenerates the last CANDLES_REFRESH_LOOKBACK_HOURS at every granularity for all
    active devices, then drops candles beyond CANDLES_RETENTION_DAYS. Controlled by:
      - CANDLES_REFRESH_ENABLED
      - CANDLES_REFRESH_INTERVAL_SEC

    Regeneration is idempotent, so overlapping lookbacks only rewrite identical values.
    """
    interval = max(5, int(state.config.candles_refresh_interval_sec))

    logger.info(
        "Candle refresh loop started (enabled=%s, interval=%ss, lookback=%sh)",
        state.config.candles_refresh_enabled,
        interval,
        state.config.candles_refresh_lookback_hours,
    )

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            await _refresh_tick(state)
        except Exception:
            logger.exception("Candle refresh tick failed")

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.5, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Candle refresh loop stopped")
