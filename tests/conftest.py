from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

# src.aggregation.main builds a module-level app from env on import.
os.environ.setdefault("BACKEND_MONGO_URI", "mongodb://localhost:27017")

import httpx
import mongomock
import pytest

from src.aggregation.config import BackendConfig
from src.aggregation.db.mongo import MongoCollections, MongoManager
from src.aggregation.services.candle_store import CandleStore
from src.aggregation.services.raw_source import RawMetricSource


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def config() -> BackendConfig:
    """Deterministic config; one window at a time keeps the in-process Mongo single-threaded per run."""
    return BackendConfig(
        mongo_uri="mongodb://localhost:27017",
        mongo_db_name="devicemetrics_test",
        metrics_raw_ttl_seconds=0,
        candles_refresh_enabled=True,
        candles_refresh_interval_sec=5,
        candles_refresh_lookback_hours=24,
        candles_backfill_days=2,
        candles_retention_days=365,
        candles_max_concurrency=1,
        candles_daily_anchor="hour",
        candles_default_lookback=50,
    )


@pytest.fixture
def mongo() -> Iterator[MongoManager]:
    """
    MongoManager backed by mongomock.

    mongomock clients share one store per host, so every test gets its own database name.
    """
    db_name = f"devicemetrics_{uuid4().hex}"
    manager = MongoManager("mongodb://localhost:27017", db_name, client_factory=mongomock.MongoClient)
    manager.init_indexes()
    try:
        yield manager
    finally:
        manager.app_db().client.drop_database(db_name)
        manager.close()


@pytest.fixture
def cols(mongo: MongoManager) -> MongoCollections:
    return mongo.collections()


@pytest.fixture
def raw_source(cols: MongoCollections) -> RawMetricSource:
    return RawMetricSource(cols.metrics_samples)


@pytest.fixture
def candle_store(cols: MongoCollections) -> CandleStore:
    return CandleStore(cols.metrics_candles)


@pytest.fixture
def add_sample(cols: MongoCollections) -> Callable[..., None]:
    """Insert a raw sample the way the ingestion path stores it (naive UTC collectedAt)."""

    def fn(
        device_id: str,
        ts: datetime,
        cpu: Optional[float] = None,
        memory: Optional[float] = None,
        disk: Optional[float] = None,
    ) -> None:
        cols.metrics_samples.insert_one(
            {
                "deviceId": device_id,
                "collectedAt": ts.astimezone(timezone.utc).replace(tzinfo=None),
                "cpuPercent": cpu,
                "memoryPercent": memory,
                "diskPercent": disk,
            }
        )

    return fn


@pytest.fixture
def app(config: BackendConfig, mongo: MongoManager):
    """
    FastAPI app bound to the mongomock-backed manager.

    httpx's ASGITransport does not run lifespan events, so no startup ping or refresh loop runs.
    """
    from src.aggregation.main import create_app

    return create_app(config, mongo)


@pytest.fixture
def state(app):
    from src.aggregation.state import get_state

    return get_state(app)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
