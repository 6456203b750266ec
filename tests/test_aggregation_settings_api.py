from __future__ import annotations

import httpx
import pytest
from bson import ObjectId


@pytest.fixture
def owned_device(cols) -> str:
    cols.users.insert_one({"id": "user-1", "email": "ops@example.com", "defaultAlertAggregationLevel": "30min"})
    cols.devices.insert_one({"id": "dev-1", "ownerUserId": "user-1", "isActive": True})
    return "dev-1"


@pytest.mark.anyio
async def test_levels_lists_all_six(async_client: httpx.AsyncClient):
    res = await async_client.get("/api/aggregation/levels")
    assert res.status_code == 200
    body = res.json()

    assert [x["level"] for x in body] == ["raw", "15min", "30min", "1hour", "4hour", "1day"]
    assert [x["minutes"] for x in body] == [5, 15, 30, 60, 240, 1440]
    assert all(x["description"] for x in body)


@pytest.mark.anyio
async def test_effective_level_falls_back_to_user_default(async_client: httpx.AsyncClient, owned_device: str):
    res = await async_client.get(f"/api/aggregation/devices/{owned_device}")
    assert res.status_code == 200
    body = res.json()

    assert body["device_override"] is None
    assert body["user_default"] == "30min"
    assert body["effective"] == "30min"


@pytest.mark.anyio
async def test_unknown_device_resolves_to_raw(async_client: httpx.AsyncClient):
    res = await async_client.get("/api/aggregation/devices/nope")
    assert res.status_code == 200
    assert res.json()["effective"] == "raw"


@pytest.mark.anyio
async def test_alert_rule_override_by_object_id(async_client: httpx.AsyncClient, cols, owned_device: str):
    rule_id = cols.alert_rules.insert_one({"aggregationLevel": "4hour"}).inserted_id
    assert isinstance(rule_id, ObjectId)

    res = await async_client.get(f"/api/aggregation/devices/{owned_device}", params={"alertRuleId": str(rule_id)})
    assert res.status_code == 200
    body = res.json()
    assert body["alert_override"] == "4hour"
    assert body["effective"] == "4hour"


@pytest.mark.anyio
async def test_set_device_override_and_clear(async_client: httpx.AsyncClient, cols, owned_device: str):
    res = await async_client.put(f"/api/aggregation/devices/{owned_device}", json={"granularity": "raw"})
    assert res.status_code == 200
    assert res.json()["effective"] == "raw"
    assert cols.devices.find_one({"id": owned_device})["alertAggregationLevel"] == "raw"

    res = await async_client.put(f"/api/aggregation/devices/{owned_device}", json={"granularity": None})
    assert res.status_code == 200
    assert res.json()["effective"] == "30min"


@pytest.mark.anyio
async def test_set_device_override_errors(async_client: httpx.AsyncClient, owned_device: str):
    res = await async_client.put(f"/api/aggregation/devices/{owned_device}", json={"granularity": "5min"})
    assert res.status_code == 400

    res = await async_client.put("/api/aggregation/devices/missing", json={"granularity": "1hour"})
    assert res.status_code == 404


@pytest.mark.anyio
async def test_set_user_default(async_client: httpx.AsyncClient, owned_device: str):
    res = await async_client.put("/api/aggregation/users/user-1", json={"granularity": "1day"})
    assert res.status_code == 200
    assert res.json() == {"granularity": "1day"}

    res = await async_client.get(f"/api/aggregation/devices/{owned_device}")
    assert res.json()["effective"] == "1day"


@pytest.mark.anyio
async def test_set_user_default_errors(async_client: httpx.AsyncClient, owned_device: str):
    res = await async_client.put("/api/aggregation/users/user-1", json={"granularity": None})
    assert res.status_code == 400

    res = await async_client.put("/api/aggregation/users/user-1", json={"granularity": "hourly"})
    assert res.status_code == 400

    res = await async_client.put("/api/aggregation/users/missing", json={"granularity": "1hour"})
    assert res.status_code == 404


@pytest.mark.anyio
async def test_alert_rule_string_id_shaped_like_object_id(async_client: httpx.AsyncClient, cols, owned_device: str):
    hex_id = "65a1b2c3d4e5f60718293a4b"
    cols.alert_rules.insert_one({"id": hex_id, "aggregationLevel": "1day"})

    res = await async_client.get(f"/api/aggregation/devices/{owned_device}", params={"alertRuleId": hex_id})
    assert res.status_code == 200
    body = res.json()
    assert body["alert_override"] == "1day"
    assert body["effective"] == "1day"


@pytest.mark.anyio
async def test_unknown_alert_rule_contributes_nothing(async_client: httpx.AsyncClient, owned_device: str):
    res = await async_client.get(
        f"/api/aggregation/devices/{owned_device}", params={"alertRuleId": "65a1b2c3d4e5f60718293a4c"}
    )
    assert res.status_code == 200
    body = res.json()
    assert body["alert_override"] is None
    assert body["effective"] == "30min"
