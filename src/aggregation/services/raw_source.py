from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from src.aggregation.errors import StorageFailure
from src.aggregation.schemas.candles import RawSample, SeriesPoint
from src.aggregation.schemas.common import as_utc, to_storage_dt

logger = logging.getLogger(__name__)

# Raw sample document field per metric.
SAMPLE_FIELDS = {
    "cpu": "cpuPercent",
    "memory": "memoryPercent",
    "disk": "diskPercent",
}


def _opt_float(v: Any) -> Optional[float]:
    if v is None:
        return None
    return float(v)


def _doc_to_sample(doc: dict) -> RawSample:
    return RawSample(
        device_id=str(doc["deviceId"]),
        collected_at=as_utc(doc["collectedAt"]),
        cpu_percent=_opt_float(doc.get("cpuPercent")),
        memory_percent=_opt_float(doc.get("memoryPercent")),
        disk_percent=_opt_float(doc.get("diskPercent")),
    )


class RawMetricSource:
    """
    Read-only view over metrics_samples.

    Samples are ordered by collectedAt and then by _id, so samples sharing a timestamp
    keep their insertion order and open/close selection stays deterministic.
    """

    def __init__(self, collection: Collection):
        self._col = collection

    # PUBLIC_INTERFACE
    def fetch_window(self, device_id: str, start: datetime, end: datetime) -> List[RawSample]:
        """Return the device's samples with collectedAt in [start, end), oldest first."""
        try:
            docs = list(
                self._col.find(
                    {
                        "deviceId": device_id,
                        "collectedAt": {"$gte": to_storage_dt(start), "$lt": to_storage_dt(end)},
                    },
                    sort=[("collectedAt", ASCENDING), ("_id", ASCENDING)],
                )
            )
        except PyMongoError as e:
            raise StorageFailure(f"reading raw samples for deviceId={device_id} failed: {e}", e) from e
        return [_doc_to_sample(d) for d in docs]

    # PUBLIC_INTERFACE
    def latest(self, device_id: str, limit: int) -> List[RawSample]:
        """Return up to `limit` most recent samples for the device, newest first."""
        if limit <= 0:
            return []
        try:
            docs = list(
                self._col.find(
                    {"deviceId": device_id},
                    sort=[("collectedAt", DESCENDING), ("_id", DESCENDING)],
                    limit=int(limit),
                )
            )
        except PyMongoError as e:
            raise StorageFailure(f"reading latest raw samples for deviceId={device_id} failed: {e}", e) from e
        return [_doc_to_sample(d) for d in docs]

    # PUBLIC_INTERFACE
    def latest_values(self, device_id: str, metric: str, limit: int) -> List[SeriesPoint]:
        """Most recent `limit` values of one metric, newest first, timestamped with collected_at."""
        return [SeriesPoint(value=s.value(metric), timestamp=s.collected_at) for s in self.latest(device_id, limit)]
