from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from src.aggregation.config import BackendConfig
from src.aggregation.db.mongo import MongoManager
from src.aggregation.services.candle_store import CandleStore
from src.aggregation.services.metric_reader import MetricReader
from src.aggregation.services.raw_source import RawMetricSource


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    mongo: MongoManager
    refresh_task: Optional[object] = None  # asyncio.Task for the candle refresh loop

    def raw_source(self) -> RawMetricSource:
        return RawMetricSource(self.mongo.collections().metrics_samples)

    def candle_store(self) -> CandleStore:
        return CandleStore(self.mongo.collections().metrics_candles)

    def metric_reader(self) -> MetricReader:
        return MetricReader(self.raw_source(), self.candle_store())


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: BackendConfig, mongo: Optional[MongoManager] = None) -> None:
    """Initialize app.state with Mongo manager and config."""
    if mongo is None:
        mongo = MongoManager(config.mongo_uri, config.mongo_db_name)
    app.state.state = AppState(config=config, mongo=mongo)


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
