from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Request
from pymongo.collection import Collection

from src.aggregation.errors import InvalidGranularity
from src.aggregation.schemas.candles import (
    GRANULARITY_MINUTES,
    EffectiveGranularityResponse,
    Granularity,
    GranularityInfo,
    parse_granularity,
)
from src.aggregation.services.resolution import resolve
from src.aggregation.state import get_state

logger = logging.getLogger(__name__)

RAW_SAMPLING_MINUTES = 5

_DESCRIPTIONS = {
    Granularity.raw: "Raw data points - most sensitive, most false alarms",
    Granularity.m15: "Very sensitive - fewer false alarms than raw, but still responsive",
    Granularity.m30: "Balanced - good compromise between responsiveness and reliability",
    Granularity.h1: "Conservative - fewer alerts, higher confidence",
    Granularity.h4: "Very conservative - minimal false alarms, delayed notifications",
    Granularity.d1: "Daily trends - best for long-term monitoring",
}


def _opt_level(v: Any) -> Optional[Granularity]:
    if v in (None, ""):
        return None
    try:
        return parse_granularity(v)
    except InvalidGranularity:
        logger.warning("Ignoring unrecognized stored aggregation level %r", v)
        return None


def _find_rule(alert_rules: Collection, rule_id: str) -> Optional[Dict[str, Any]]:
    """Look a rule up by ObjectId _id, then by its string id."""
    projection = {"aggregationLevel": 1}
    if ObjectId.is_valid(rule_id):
        rule = alert_rules.find_one({"_id": ObjectId(rule_id)}, projection=projection)
        if rule is not None:
            return rule
    return alert_rules.find_one({"id": rule_id}, projection=projection)


# PUBLIC_INTERFACE
def granularity_info() -> List[GranularityInfo]:
    """Interval and trade-off description for every aggregation level, raw included."""
    out = [GranularityInfo(level=Granularity.raw, minutes=RAW_SAMPLING_MINUTES, description=_DESCRIPTIONS[Granularity.raw])]
    for level, minutes in GRANULARITY_MINUTES.items():
        out.append(GranularityInfo(level=level, minutes=minutes, description=_DESCRIPTIONS[level]))
    return out


# PUBLIC_INTERFACE
def get_effective_granularity(
    request: Request, device_id: str, alert_rule_id: Optional[str] = None
) -> EffectiveGranularityResponse:
    """
    Load the alert rule, device and owning user settings and resolve the effective level.

    An unknown device or rule contributes nothing (its settings count as unset).
    """
    cols = get_state(request.app).mongo.collections()

    alert_override: Optional[Granularity] = None
    if alert_rule_id:
        rule = _find_rule(cols.alert_rules, alert_rule_id)
        if rule is None:
            logger.warning("Alert rule %s not found; ignoring its aggregation override", alert_rule_id)
        else:
            alert_override = _opt_level(rule.get("aggregationLevel"))

    device_override: Optional[Granularity] = None
    user_default: Optional[Granularity] = None
    device = cols.devices.find_one({"id": device_id}, projection={"_id": 0})
    if device is None:
        logger.warning("Device %s not found in aggregation settings; using defaults", device_id)
    else:
        device_override = _opt_level(device.get("alertAggregationLevel"))
        owner_id = device.get("ownerUserId")
        if owner_id:
            user = cols.users.find_one({"id": owner_id}, projection={"_id": 0, "defaultAlertAggregationLevel": 1})
            if user is not None:
                user_default = _opt_level(user.get("defaultAlertAggregationLevel"))

    return EffectiveGranularityResponse(
        device_id=device_id,
        alert_rule_id=alert_rule_id,
        alert_override=alert_override,
        device_override=device_override,
        user_default=user_default,
        effective=resolve(alert_override, device_override, user_default),
    )


# PUBLIC_INTERFACE
def set_device_granularity(
    request: Request, device_id: str, value: Optional[str]
) -> Optional[EffectiveGranularityResponse]:
    """
    Set (or clear with None) a device's aggregation override.

    Returns the new effective settings, or None if the device does not exist.
    Raises InvalidGranularity for unrecognized values.
    """
    level = parse_granularity(value) if value not in (None, "") else None
    cols = get_state(request.app).mongo.collections()
    res = cols.devices.update_one(
        {"id": device_id}, {"$set": {"alertAggregationLevel": level.value if level else None}}
    )
    if res.matched_count == 0:
        return None
    logger.info(
        "Updated aggregation level for deviceId=%s to %s", device_id, level.value if level else "null (use user default)"
    )
    return get_effective_granularity(request, device_id)


# PUBLIC_INTERFACE
def set_user_default_granularity(request: Request, user_id: str, value: Optional[str]) -> Optional[Granularity]:
    """
    Set a user's account-wide default level. A default is always required, so None is rejected.

    Returns the stored level, or None if the user does not exist.
    """
    if value in (None, ""):
        raise InvalidGranularity(value)
    level = parse_granularity(value)
    cols = get_state(request.app).mongo.collections()
    res = cols.users.update_one({"id": user_id}, {"$set": {"defaultAlertAggregationLevel": level.value}})
    if res.matched_count == 0:
        return None
    logger.info("Updated default aggregation level for userId=%s to %s", user_id, level.value)
    return level
