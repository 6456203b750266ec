from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pymongo import DESCENDING
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from src.aggregation.errors import InvalidGranularity, StorageFailure
from src.aggregation.schemas.candles import (
    CANDLE_GRANULARITIES,
    METRICS,
    OHLC,
    Candle,
    CandleStatsItem,
    Granularity,
    SeriesPoint,
    parse_granularity,
)
from src.aggregation.schemas.common import as_utc, to_storage_dt, utc_now

logger = logging.getLogger(__name__)

UpsertOutcome = Literal["created", "updated"]

_OHLC_PARTS = ("open", "high", "low", "close")


def _field(metric: str, part: str) -> str:
    # cpu + open -> cpuOpen
    return f"{metric}{part.capitalize()}"


def _candle_granularity(value: Any) -> Granularity:
    g = parse_granularity(value)
    if g not in CANDLE_GRANULARITIES:
        raise InvalidGranularity(g.value)
    return g


def _check_metric(metric: str) -> None:
    if metric not in METRICS:
        raise ValueError(f"Unknown metric: {metric!r} (expected one of {', '.join(METRICS)})")


def _candle_to_doc(candle: Candle) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "deviceId": candle.device_id,
        "granularity": candle.granularity.value,
        "windowStart": to_storage_dt(candle.window_start),
        "windowEnd": to_storage_dt(candle.window_end),
        "sampleCount": int(candle.sample_count),
    }
    for metric in METRICS:
        ohlc = candle.metric(metric)
        for part in _OHLC_PARTS:
            doc[_field(metric, part)] = getattr(ohlc, part)
    return doc


def _doc_to_candle(doc: dict) -> Candle:
    metrics = {
        metric: OHLC(**{part: doc.get(_field(metric, part)) for part in _OHLC_PARTS}) for metric in METRICS
    }
    return Candle(
        device_id=str(doc["deviceId"]),
        granularity=doc["granularity"],
        window_start=as_utc(doc["windowStart"]),
        window_end=as_utc(doc["windowEnd"]),
        sample_count=int(doc["sampleCount"]),
        **metrics,
    )


class CandleStore:
    """Candle persistence in metrics_candles, keyed by (deviceId, granularity, windowStart)."""

    def __init__(self, collection: Collection):
        self._col = collection

    # PUBLIC_INTERFACE
    def upsert(self, candle: Candle) -> UpsertOutcome:
        """
        Insert the candle or fully overwrite the one stored under the same key.

        A single update_one(upsert=True) against the unique key index is atomic per document;
        concurrent writers of the same window end with the last writer's values.
        """
        doc = _candle_to_doc(candle)
        key = {k: doc[k] for k in ("deviceId", "granularity", "windowStart")}
        update = {"$set": doc, "$setOnInsert": {"createdAt": utc_now()}}
        try:
            try:
                res = self._col.update_one(key, update, upsert=True)
            except DuplicateKeyError:
                # Lost an insert race on the unique index; the document exists now, so this overwrites it.
                res = self._col.update_one(key, update, upsert=True)
        except PyMongoError as e:
            raise StorageFailure(
                f"writing {candle.granularity.value} candle deviceId={candle.device_id} "
                f"windowStart={candle.window_start.isoformat()} failed: {e}",
                e,
            ) from e
        return "created" if res.upserted_id is not None else "updated"

    # PUBLIC_INTERFACE
    def get(self, device_id: str, granularity: Any, window_start: datetime) -> Optional[Candle]:
        """Fetch one candle by key, or None."""
        g = _candle_granularity(granularity)
        try:
            doc = self._col.find_one(
                {"deviceId": device_id, "granularity": g.value, "windowStart": to_storage_dt(window_start)},
                projection={"_id": 0},
            )
        except PyMongoError as e:
            raise StorageFailure(f"reading {g.value} candle for deviceId={device_id} failed: {e}", e) from e
        return _doc_to_candle(doc) if doc else None

    def _find_latest(self, device_id: str, g: Granularity, projection: Dict[str, int], limit: int) -> List[dict]:
        try:
            return list(
                self._col.find(
                    {"deviceId": device_id, "granularity": g.value},
                    projection=projection,
                    sort=[("windowStart", DESCENDING)],
                    limit=int(limit),
                )
            )
        except PyMongoError as e:
            raise StorageFailure(f"reading {g.value} candles for deviceId={device_id} failed: {e}", e) from e

    # PUBLIC_INTERFACE
    def list_latest(self, device_id: str, granularity: Any, limit: int) -> List[Candle]:
        """Full candle records for a device and granularity, most recent first."""
        g = _candle_granularity(granularity)
        if limit <= 0:
            return []
        return [_doc_to_candle(d) for d in self._find_latest(device_id, g, {"_id": 0}, limit)]

    # PUBLIC_INTERFACE
    def query_latest(self, device_id: str, granularity: Any, metric: str, limit: int) -> List[SeriesPoint]:
        """
        Close values of one metric, most recent first, at most `limit` long.

        timestamp is the candle's window start. No candles yields an empty list.
        """
        g = _candle_granularity(granularity)
        _check_metric(metric)
        if limit <= 0:
            return []
        close_field = _field(metric, "close")
        docs = self._find_latest(device_id, g, {"_id": 0, "windowStart": 1, close_field: 1}, limit)
        return [SeriesPoint(value=d.get(close_field), timestamp=as_utc(d["windowStart"])) for d in docs]

    # PUBLIC_INTERFACE
    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete candles whose window started before cutoff. Returns the number removed."""
        try:
            res = self._col.delete_many({"windowStart": {"$lt": to_storage_dt(cutoff)}})
        except PyMongoError as e:
            raise StorageFailure(f"deleting candles older than {cutoff.isoformat()} failed: {e}", e) from e
        return int(res.deleted_count)

    # PUBLIC_INTERFACE
    def stats(self) -> List[CandleStatsItem]:
        """Per-granularity candle counts, device counts, time span and average sample count."""
        pipeline = [
            {
                "$group": {
                    "_id": "$granularity",
                    "candles": {"$sum": 1},
                    "devices": {"$addToSet": "$deviceId"},
                    "oldest": {"$min": "$windowStart"},
                    "newest": {"$max": "$windowStart"},
                    "avgSamples": {"$avg": "$sampleCount"},
                }
            }
        ]
        try:
            rows = list(self._col.aggregate(pipeline))
        except PyMongoError as e:
            raise StorageFailure(f"reading candle stats failed: {e}", e) from e
        order = {g.value: i for i, g in enumerate(CANDLE_GRANULARITIES)}
        rows.sort(key=lambda r: order.get(r["_id"], len(order)))
        return [
            CandleStatsItem(
                granularity=r["_id"],
                candles=int(r["candles"]),
                devices=len(r.get("devices") or []),
                oldest=as_utc(r["oldest"]) if r.get("oldest") else None,
                newest=as_utc(r["newest"]) if r.get("newest") else None,
                avg_samples=round(float(r.get("avgSamples") or 0.0), 1),
            )
            for r in rows
        ]
