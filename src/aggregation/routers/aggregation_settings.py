from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Path, Query, Request

from src.aggregation.errors import InvalidGranularity
from src.aggregation.schemas.candles import EffectiveGranularityResponse, GranularityInfo, GranularityUpdate
from src.aggregation.schemas.common import ErrorResponse
from src.aggregation.services import aggregation_settings_service

router = APIRouter(prefix="/api/aggregation", tags=["Aggregation settings"])


@router.get(
    "/levels",
    response_model=List[GranularityInfo],
    summary="List aggregation levels",
    description="Interval and sensitivity trade-off for every aggregation level.",
    operation_id="list_aggregation_levels",
)
def list_levels() -> List[GranularityInfo]:
    """List aggregation levels."""
    return aggregation_settings_service.granularity_info()


@router.get(
    "/devices/{device_id}",
    response_model=EffectiveGranularityResponse,
    summary="Get effective aggregation level",
    description="Resolve alert rule override, device override and user default into the effective level.",
    operation_id="get_effective_aggregation_level",
)
def get_effective(
    request: Request,
    device_id: str = Path(..., description="Device identifier"),
    alert_rule_id: Optional[str] = Query(default=None, alias="alertRuleId"),
) -> EffectiveGranularityResponse:
    """Get the effective aggregation level for a device."""
    return aggregation_settings_service.get_effective_granularity(request, device_id, alert_rule_id)


@router.put(
    "/devices/{device_id}",
    response_model=EffectiveGranularityResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Set device aggregation level",
    description="Set a device's aggregation override; null clears it so the user default applies.",
    operation_id="set_device_aggregation_level",
)
def set_device_level(
    request: Request,
    payload: GranularityUpdate,
    device_id: str = Path(..., description="Device identifier"),
) -> EffectiveGranularityResponse:
    """Set a device aggregation override."""
    try:
        updated = aggregation_settings_service.set_device_granularity(request, device_id, payload.granularity)
    except InvalidGranularity as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if not updated:
        raise HTTPException(status_code=404, detail="device not found")
    return updated


@router.put(
    "/users/{user_id}",
    response_model=GranularityUpdate,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Set user default aggregation level",
    description="Set the account-wide default aggregation level used by devices without an override.",
    operation_id="set_user_default_aggregation_level",
)
def set_user_default(
    request: Request,
    payload: GranularityUpdate,
    user_id: str = Path(..., description="User identifier"),
) -> GranularityUpdate:
    """Set a user's default aggregation level."""
    try:
        level = aggregation_settings_service.set_user_default_granularity(request, user_id, payload.granularity)
    except InvalidGranularity as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if level is None:
        raise HTTPException(status_code=404, detail="user not found")
    return GranularityUpdate(granularity=level.value)
