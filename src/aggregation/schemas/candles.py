from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from src.aggregation.errors import InvalidGranularity


class Granularity(str, Enum):
    """Alert aggregation levels. `raw` means read raw samples directly; it is never a candle granularity."""

    raw = "raw"
    m15 = "15min"
    m30 = "30min"
    h1 = "1hour"
    h4 = "4hour"
    d1 = "1day"


GRANULARITY_MINUTES: Dict[Granularity, int] = {
    Granularity.m15: 15,
    Granularity.m30: 30,
    Granularity.h1: 60,
    Granularity.h4: 240,
    Granularity.d1: 1440,
}

CANDLE_GRANULARITIES: Tuple[Granularity, ...] = tuple(GRANULARITY_MINUTES.keys())

MetricName = Literal["cpu", "memory", "disk"]
METRICS: Tuple[str, ...] = ("cpu", "memory", "disk")


# PUBLIC_INTERFACE
def parse_granularity(value: Any) -> Granularity:
    """Parse one of the six aggregation level tags; raises InvalidGranularity otherwise."""
    if isinstance(value, Granularity):
        return value
    try:
        return Granularity(str(value).strip())
    except ValueError:
        raise InvalidGranularity(value) from None


# PUBLIC_INTERFACE
def candle_duration(granularity: Any) -> timedelta:
    """Window length of a candle granularity. `raw` has no duration and is rejected."""
    g = parse_granularity(granularity)
    minutes = GRANULARITY_MINUTES.get(g)
    if minutes is None:
        raise InvalidGranularity(g.value)
    return timedelta(minutes=minutes)


class RawSample(BaseModel):
    """One raw utilization sample collected from a device agent."""

    device_id: str = Field(..., description="Device the sample was collected from.")
    collected_at: datetime = Field(..., description="UTC collection time.")
    cpu_percent: Optional[float] = Field(default=None, description="CPU utilization percent.")
    memory_percent: Optional[float] = Field(default=None, description="Memory utilization percent.")
    disk_percent: Optional[float] = Field(default=None, description="Disk utilization percent.")

    def value(self, metric: str) -> Optional[float]:
        return getattr(self, f"{metric}_percent")


class OHLC(BaseModel):
    """Open/high/low/close of one metric over a candle window. All four are null if the metric was never collected."""

    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "OHLC":
        values = (self.open, self.high, self.low, self.close)
        if all(v is None for v in values):
            return self
        if any(v is None for v in values):
            raise ValueError("open/high/low/close must be all set or all null")
        if not (self.low <= self.open <= self.high and self.low <= self.close <= self.high):
            raise ValueError("open and close must lie within [low, high]")
        return self


class Candle(BaseModel):
    """OHLC summary of a device's cpu/memory/disk samples over one fixed window."""

    device_id: str = Field(..., description="Device identifier.")
    granularity: Granularity = Field(..., description="Candle granularity (never raw).")
    window_start: datetime = Field(..., description="UTC window start (inclusive).")
    window_end: datetime = Field(..., description="UTC window end (exclusive).")
    cpu: OHLC = Field(default_factory=OHLC)
    memory: OHLC = Field(default_factory=OHLC)
    disk: OHLC = Field(default_factory=OHLC)
    sample_count: int = Field(..., ge=1, description="Number of raw samples aggregated into this candle.")

    @model_validator(mode="after")
    def _check_window(self) -> "Candle":
        if self.window_end - self.window_start != candle_duration(self.granularity):
            raise ValueError("window_end must equal window_start + granularity duration")
        return self

    def metric(self, name: str) -> OHLC:
        return getattr(self, name)


class SeriesPoint(BaseModel):
    """A single (value, timestamp) pair handed to the alert evaluator."""

    value: Optional[float] = Field(default=None, description="Raw value or candle close; null if not collected.")
    timestamp: datetime = Field(..., description="collected_at for raw samples, window_start for candles.")


class CandleRunResult(BaseModel):
    """Outcome of one generate_candles run for a device and granularity."""

    device_id: str
    granularity: Granularity
    range_start: datetime
    range_end: datetime
    windows_scanned: int = Field(0, ge=0, description="Windows whose raw samples were read successfully.")
    candles_written: int = Field(0, ge=0, description="Candles created or overwritten.")
    created: int = Field(0, ge=0)
    updated: int = Field(0, ge=0)
    first_error: Optional[str] = Field(default=None, description="First storage error encountered, if any.")
    failed_window_start: Optional[datetime] = Field(
        default=None, description="Window at which to resume a partial run."
    )

    @property
    def ok(self) -> bool:
        return self.first_error is None


class GenerateCandlesRequest(BaseModel):
    """Request body for an on-demand generation run."""

    granularity: str = Field(..., description="15min|30min|1hour|4hour|1day")
    start: datetime = Field(..., description="UTC range start (inclusive).")
    end: datetime = Field(..., description="UTC range end (exclusive).")


class RunErrorItem(BaseModel):
    device_id: str
    granularity: Optional[Granularity] = None
    error: str


class RunSummary(BaseModel):
    """Summary of a multi-device generation, refresh or backfill."""

    devices_processed: int = Field(0, ge=0)
    total_candles_written: int = Field(0, ge=0)
    by_granularity: Dict[str, int] = Field(default_factory=dict)
    errors: List[RunErrorItem] = Field(default_factory=list)


class CandleListResponse(BaseModel):
    device_id: str
    granularity: Granularity
    candles: List[Candle] = Field(default_factory=list, description="Most recent first.")
    samples: List[RawSample] = Field(default_factory=list, description="Filled instead of candles for raw.")


class SeriesResponse(BaseModel):
    device_id: str
    granularity: Granularity
    metric: MetricName
    points: List[SeriesPoint] = Field(..., description="Most recent first.")
    unit: str = "%"


class CandleStatsItem(BaseModel):
    granularity: Granularity
    candles: int
    devices: int
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None
    avg_samples: float = 0.0


class CandleStatsResponse(BaseModel):
    items: List[CandleStatsItem]
    total: int = Field(..., ge=0)


class GranularityInfo(BaseModel):
    level: Granularity
    minutes: int
    description: str


class EffectiveGranularityResponse(BaseModel):
    device_id: str
    alert_rule_id: Optional[str] = None
    alert_override: Optional[Granularity] = None
    device_override: Optional[Granularity] = None
    user_default: Optional[Granularity] = None
    effective: Granularity


class GranularityUpdate(BaseModel):
    """Request body for setting an aggregation level; null clears a device override."""

    granularity: Optional[str] = Field(default=None, description="raw|15min|30min|1hour|4hour|1day or null")


class CleanupResponse(BaseModel):
    deleted: int = Field(..., ge=0, description="Number of candles removed.")
    days_to_keep: int = Field(..., ge=0)
