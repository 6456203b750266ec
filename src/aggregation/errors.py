from __future__ import annotations

from typing import Any, Optional


class AggregationError(Exception):
    """Base class for candle aggregation errors."""


class InvalidGranularity(AggregationError, ValueError):
    """Unrecognized aggregation level, or `raw` where a candle granularity is required."""

    def __init__(self, value: Any):
        self.value = value
        super().__init__(f"Invalid aggregation level: {value!r}")


class InvalidRange(AggregationError, ValueError):
    """Range start is not strictly before range end."""

    def __init__(self, start: Any, end: Any):
        self.start = start
        self.end = end
        super().__init__(f"Invalid range: start={start} must be before end={end}")


class StorageFailure(AggregationError):
    """
    Transient I/O failure while reading raw samples or writing candles.

    Retryable at the run level; windows committed before the failure stay valid.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)
