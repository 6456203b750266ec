from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import FastAPI

from src.aggregation.config import BackendConfig, load_config
from src.aggregation.db.mongo import MongoManager
from src.aggregation.routers import aggregation_settings, candles, health
from src.aggregation.services.candle_scheduler import candle_refresh_loop
from src.aggregation.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health and liveness."},
    {"name": "Candles", "description": "OHLC candle generation, storage and metric series reads."},
    {"name": "Aggregation settings", "description": "Alert aggregation levels per device and user."},
]

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
def create_app(config: Optional[BackendConfig] = None, mongo: Optional[MongoManager] = None) -> FastAPI:
    """Build the API app; config defaults to env, mongo to a client for config.mongo_uri."""
    app = FastAPI(
        title="Device Metrics Aggregation API",
        description=(
            "Aggregates raw device cpu/memory/disk samples into multi-resolution OHLC candles "
            "and serves the metric series alert evaluation reads from."
        ),
        version="0.1.0",
        openapi_tags=openapi_tags,
    )

    init_state(app, config or load_config(), mongo)

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: connect to Mongo, validate connectivity, ensure indexes, and start the refresh job."""
        state = get_state(app)

        state.mongo.connect_app()
        if not state.mongo.ping():
            raise RuntimeError("Mongo connectivity check failed during startup. Verify BACKEND_MONGO_URI.")

        state.mongo.init_indexes(raw_ttl_seconds=int(state.config.metrics_raw_ttl_seconds))

        app.state._refresh_shutdown = asyncio.Event()
        state.refresh_task = asyncio.create_task(candle_refresh_loop(state, app.state._refresh_shutdown))

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop the refresh job and close Mongo connections."""
        state = get_state(app)

        refresh_shutdown = getattr(app.state, "_refresh_shutdown", None)
        if refresh_shutdown is not None:
            refresh_shutdown.set()
        refresh_task = state.refresh_task
        if refresh_task is not None:
            try:
                await asyncio.wait_for(refresh_task, timeout=5.0)
            except Exception:
                logger.exception("Error stopping candle refresh task")

        state.mongo.close()

    app.include_router(health.router)
    app.include_router(candles.router)
    app.include_router(aggregation_settings.router)
    return app


app = create_app()
