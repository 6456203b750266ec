from __future__ import annotations

from typing import Any, Optional

from src.aggregation.errors import InvalidGranularity
from src.aggregation.schemas.candles import Granularity, parse_granularity


def _coerce(value: Any) -> Optional[Granularity]:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        return parse_granularity(value)
    except InvalidGranularity:
        # Unrecognized config values count as unset.
        return None


# PUBLIC_INTERFACE
def resolve(
    alert_override: Any = None,
    device_override: Any = None,
    user_default: Any = None,
) -> Granularity:
    """
    Effective aggregation level for an alert evaluation.

    Precedence: alert rule override, then device override, then the user's default, then raw.
    Pure and total: unset or unrecognized values are skipped.
    """
    for candidate in (alert_override, device_override, user_default):
        g = _coerce(candidate)
        if g is not None:
            return g
    return Granularity.raw
