from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.aggregation.config import sanitize_mongo_uri
from src.aggregation.schemas.common import HealthResponse, utc_now
from src.aggregation.state import get_state

router = APIRouter(tags=["Health"])


class MongoConnectivityResponse(BaseModel):
    """Response model for backend-to-Mongo connectivity diagnostics."""

    ok: bool = Field(..., description="Whether the backend can successfully ping MongoDB.")
    mongo_db_name: str = Field(..., description="Database holding samples, candles and settings.")
    mongo_uri_sanitized: str = Field(..., description="MongoDB URI with credentials masked.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional debug metadata.")


class CandlesStorageDiagnosticsResponse(BaseModel):
    """Diagnostics model describing raw TTL and candle job configuration."""

    raw_ttl_seconds: int = Field(..., description="TTL (seconds) applied to raw metrics_samples (0 means disabled).")
    refresh_enabled: bool = Field(..., description="Whether the scheduled candle refresh job is enabled.")
    refresh_interval_sec: int = Field(..., description="How often the refresh job runs (seconds).")
    refresh_lookback_hours: int = Field(..., description="How far back each refresh regenerates candles.")
    retention_days: int = Field(..., description="Candle retention in days (0 means disabled).")
    max_concurrency: int = Field(..., description="Windows processed concurrently per generation run.")
    daily_anchor: str = Field(..., description="Anchoring of 1day windows: hour or midnight.")
    timestamp: str = Field(..., description="UTC timestamp when the diagnostics were produced (ISO string).")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/mongo",
    response_model=MongoConnectivityResponse,
    summary="Mongo connectivity check",
    description="Pings the backend's configured MongoDB. Credentials are masked.",
    operation_id="mongo_connectivity_check",
)
def mongo_connectivity_check(request: Request) -> MongoConnectivityResponse:
    """Connectivity check endpoint to validate backend-to-Mongo connectivity."""
    state = get_state(request.app)
    ok = state.mongo.ping()

    return MongoConnectivityResponse(
        ok=ok,
        mongo_db_name=state.config.mongo_db_name,
        mongo_uri_sanitized=sanitize_mongo_uri(state.config.mongo_uri),
        timestamp=utc_now().isoformat(),
        meta={},
    )


@router.get(
    "/api/health/candles-storage",
    response_model=CandlesStorageDiagnosticsResponse,
    summary="Candle storage diagnostics",
    description="Reports raw TTL and candle job configuration (no secrets).",
    operation_id="candles_storage_diagnostics",
)
def candles_storage_diagnostics(request: Request) -> CandlesStorageDiagnosticsResponse:
    """Return candle storage configuration diagnostics."""
    cfg = get_state(request.app).config
    return CandlesStorageDiagnosticsResponse(
        raw_ttl_seconds=int(cfg.metrics_raw_ttl_seconds),
        refresh_enabled=bool(cfg.candles_refresh_enabled),
        refresh_interval_sec=int(cfg.candles_refresh_interval_sec),
        refresh_lookback_hours=int(cfg.candles_refresh_lookback_hours),
        retention_days=int(cfg.candles_retention_days),
        max_concurrency=int(cfg.candles_max_concurrency),
        daily_anchor=cfg.candles_daily_anchor,
        timestamp=utc_now().isoformat(),
    )
