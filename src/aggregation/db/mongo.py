from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


DEFAULT_DB_NAME = "devicemetrics"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    # Configuration owned by the rest of the backend; read here (and written only by the settings service).
    devices: Collection
    users: Collection
    alert_rules: Collection

    # Raw samples written by the ingestion path; read-only to aggregation.
    metrics_samples: Collection

    metrics_candles: Collection


class MongoManager:
    """
    MongoDB connection manager.

    Maintains one lazily created client for the app's storage DB. The client factory
    is injectable so the same manager can be backed by an in-process server in tests.
    """

    def __init__(
        self,
        app_mongo_uri: str,
        db_name: str = DEFAULT_DB_NAME,
        client_factory: Callable[..., Any] = MongoClient,
    ):
        self._app_mongo_uri = app_mongo_uri
        self._db_name = db_name
        self._client_factory = client_factory
        self._app_client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect_app(self) -> None:
        """Initialize app Mongo client if needed."""
        with self._lock:
            if self._app_client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling.
            self._app_client = self._client_factory(self._app_mongo_uri, connect=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._app_client is None:
                self.connect_app()
            assert self._app_client is not None
            self._app_client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the app Mongo client."""
        with self._lock:
            if self._app_client is not None:
                try:
                    self._app_client.close()
                except Exception:
                    logger.exception("Error closing app MongoClient")
                self._app_client = None

    def app_db(self) -> Database:
        """Return the app database handle."""
        if self._app_client is None:
            self.connect_app()
        assert self._app_client is not None
        return self._app_client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.app_db()
        return MongoCollections(
            devices=db["devices"],
            users=db["users"],
            alert_rules=db["alert_rules"],
            metrics_samples=db["metrics_samples"],
            metrics_candles=db["metrics_candles"],
        )

    def init_indexes(self, *, raw_ttl_seconds: int = 0) -> None:
        """
        Create required indexes (idempotent).

        The unique (deviceId, granularity, windowStart) index is what makes candle upserts
        replace-or-insert: concurrent writers of the same window converge on one document.
        raw_ttl_seconds == 0 disables TTL index creation on metrics_samples.collectedAt.
        """
        cols = self.collections()

        # ---- Raw samples ----
        cols.metrics_samples.create_index(
            [("deviceId", ASCENDING), ("collectedAt", DESCENDING)], name="idx_samples_device_collectedAt"
        )
        if int(raw_ttl_seconds) > 0:
            cols.metrics_samples.create_index(
                [("collectedAt", ASCENDING)],
                name="ttl_metrics_samples_collectedAt",
                expireAfterSeconds=int(raw_ttl_seconds),
            )

        # ---- Candles ----
        cols.metrics_candles.create_index(
            [("deviceId", ASCENDING), ("granularity", ASCENDING), ("windowStart", ASCENDING)],
            unique=True,
            name="uniq_candle_device_granularity_windowStart",
        )
        cols.metrics_candles.create_index(
            [("deviceId", ASCENDING), ("granularity", ASCENDING), ("windowStart", DESCENDING)],
            name="idx_candles_device_granularity_time",
        )
        cols.metrics_candles.create_index([("windowStart", DESCENDING)], name="idx_candles_time")
        cols.metrics_candles.create_index([("granularity", ASCENDING)], name="idx_candles_granularity")

        # ---- Config ----
        cols.devices.create_index([("id", ASCENDING)], unique=True, name="idx_devices_id")
        cols.devices.create_index([("isActive", ASCENDING)], name="idx_devices_isActive")
        cols.users.create_index([("id", ASCENDING)], unique=True, name="idx_users_id")
