import pytest
from sqlalchemy import select

from app.core.security import create_access_token
from app.models.api_key import ApiKey
from app.models.third_party_order import ORDER_STATUS_CANCELLED
from tests.factories import TEST_API_KEY, create_order_with_transaction


@pytest.fixture
def admin_headers() -> dict:
    token = create_access_token({"sub": "ops", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.asyncio
async def test_admin_requires_token(client):
    response = await client.get("/api/v1/admin/api-keys")
    assert response.status_code in (401, 403)

    response = await client.get("/api/v1/admin/api-keys", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_requires_admin_role(client):
    token = create_access_token({"sub": "client", "role": "viewer"})

    response = await client.get("/api/v1/admin/api-keys", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_create_key_shows_secret_once(client, admin_headers, session_factory):
    response = await client.post(
        "/api/v1/admin/api-keys",
        json={"key_name": "pos", "client_system": "pos", "rate_limit": 30, "allowed_ips": ["10.0.0.0/8"]},
        headers=admin_headers,
    )

    assert response.status_code == 201
    created = response.json()
    assert created["api_key"].startswith("cvs_")
    assert created["allowed_ips"] == ["10.0.0.0/8"]

    listed = (await client.get("/api/v1/admin/api-keys", headers=admin_headers)).json()
    assert len(listed) == 1
    assert "api_key" not in listed[0]
    assert listed[0]["masked_key"] != created["api_key"]

    async with session_factory() as session:
        stored = (await session.execute(select(ApiKey))).scalar_one()
    assert stored.api_key == created["api_key"]


@pytest.mark.asyncio
async def test_update_and_deactivate_key(client, admin_headers, api_key):
    response = await client.patch(
        f"/api/v1/admin/api-keys/{api_key.id}",
        json={"rate_limit": 5, "allowed_ips": []},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["rate_limit"] == 5
    assert response.json()["allowed_ips"] == []

    response = await client.post(f"/api/v1/admin/api-keys/{api_key.id}/deactivate", headers=admin_headers)
    assert response.json()["is_active"] is False

    # Отключенный ключ больше не проходит gateway
    response = await client.get("/api/v1/third-party/orders", headers={"X-API-Key": TEST_API_KEY})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_delete_key_without_orders(client, admin_headers, api_key):
    response = await client.delete(f"/api/v1/admin/api-keys/{api_key.id}", headers=admin_headers)
    assert response.status_code == 204

    response = await client.get(f"/api/v1/admin/api-keys/{api_key.id}", headers=admin_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_key_with_orders_conflicts(client, admin_headers, api_key, db, ecpay_config):
    await create_order_with_transaction(db, ecpay_config, api_key_id=api_key.id)

    response = await client.delete(f"/api/v1/admin/api-keys/{api_key.id}", headers=admin_headers)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CONFLICT"


@pytest.mark.asyncio
async def test_cancel_order(client, admin_headers, api_key, db, ecpay_config):
    order, _ = await create_order_with_transaction(db, ecpay_config, api_key_id=api_key.id)

    response = await client.post(f"/api/v1/admin/third-party-orders/{order.id}/cancel", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["status"] == ORDER_STATUS_CANCELLED

    response = await client.post(f"/api/v1/admin/third-party-orders/{order.id}/cancel", headers=admin_headers)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_call_logs_are_listed(client, admin_headers, api_key):
    await client.get("/api/v1/third-party/orders", headers={"X-API-Key": TEST_API_KEY})
    await client.get("/api/v1/third-party/orders", headers={"X-API-Key": TEST_API_KEY})

    response = await client.get(f"/api/v1/admin/api-call-logs?api_key_id={api_key.id}", headers=admin_headers)

    data = response.json()
    assert data["total"] == 2
    assert data["items"][0]["endpoint"] == "/api/v1/third-party/orders"


@pytest.mark.asyncio
async def test_deleted_key_keeps_call_logs(client, admin_headers, api_key):
    await client.get("/api/v1/third-party/orders", headers={"X-API-Key": TEST_API_KEY})
    await client.get("/api/v1/third-party/orders", headers={"X-API-Key": TEST_API_KEY})

    response = await client.delete(f"/api/v1/admin/api-keys/{api_key.id}", headers=admin_headers)
    assert response.status_code == 204

    data = (await client.get("/api/v1/admin/api-call-logs", headers=admin_headers)).json()
    assert data["total"] == 2
    assert all(item["api_key_id"] is None for item in data["items"])
    assert all(item["client_system"] == "shop" for item in data["items"])
