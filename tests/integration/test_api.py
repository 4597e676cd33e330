"""
HTTP tests for the purchase order API.

The app runs in-process over httpx's ASGI transport with get_db pointed at
a per-test sqlite file; callers authenticate with locally signed JWTs.
"""

import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from procurement.database import get_db
from procurement.main import app
from procurement.services.auth_service import create_access_token

BASE = "/api/v1/purchase-orders"


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def _auth(role: str, **kwargs) -> dict:
    token = create_access_token(f"{role}-1", role, email=f"{role}@example.com", **kwargs)
    return {"Authorization": f"Bearer {token}"}


def _order_payload(**overrides) -> dict:
    payload = {
        "supplier_id": "SUP-1",
        "items": [
            {"product_id": "SKU-A", "quantity": 10, "unit_cost_cents": 500},
            {"product_id": "SKU-B", "quantity": 2, "unit_cost_cents": 1_250},
        ],
        "tax_cents": 300,
    }
    payload.update(overrides)
    return payload


async def _create(client) -> dict:
    response = await client.post(BASE, json=_order_payload(), headers=_auth("purchaser"))
    assert response.status_code == 201, response.text
    return response.json()["data"]


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["checks"]["db"] == "ok"
    assert response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_token_is_401(client):
    response = await client.post(BASE, json=_order_payload())
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTHENTICATION_REQUIRED"


@pytest.mark.asyncio
async def test_garbage_token_is_rejected(client):
    response = await client.post(
        BASE, json=_order_payload(), headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_TOKEN_INVALID"
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_expired_token_is_rejected(client):
    response = await client.post(
        BASE, json=_order_payload(), headers=_auth("purchaser", expires_minutes=-1)
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_TOKEN_INVALID"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_role_without_create_is_forbidden(client):
    response = await client.post(BASE, json=_order_payload(), headers=_auth("warehouse"))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_PERMISSIONS"


@pytest.mark.asyncio
async def test_invalid_order_is_422(client):
    response = await client.post(BASE, json=_order_payload(items=[]), headers=_auth("purchaser"))
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"]
    assert error["details"]


@pytest.mark.asyncio
async def test_malformed_body_is_validation_error(client):
    created = await _create(client)
    response = await client.post(
        f"{BASE}/{created['id']}/reject", json={}, headers=_auth("manager")
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_unknown_order_is_404(client):
    response = await client.get(f"{BASE}/{uuid.uuid4()}", headers=_auth("purchaser"))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "ORDER_NOT_FOUND"


@pytest.mark.asyncio
async def test_over_receipt_is_422(client):
    created = await _create(client)
    await client.post(f"{BASE}/{created['id']}/approve", headers=_auth("manager"))

    response = await client.post(
        f"{BASE}/{created['id']}/receive",
        json={"items": [{"product_id": "SKU-B", "quantity": 3}]},
        headers=_auth("warehouse"),
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "QUANTITY_EXCEEDS_ORDERED"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_purchase_order_lifecycle(client):
    created = await _create(client)
    po_id = created["id"]
    assert created["status"] == "draft"
    assert created["total_cents"] == 7_800

    submitted = await client.post(f"{BASE}/{po_id}/submit", headers=_auth("purchaser"))
    assert submitted.status_code == 200, submitted.text
    assert submitted.json()["data"]["status"] == "pending_approval"

    approved = await client.post(
        f"{BASE}/{po_id}/approve", json={"notes": "ok"}, headers=_auth("manager")
    )
    assert approved.status_code == 200, approved.text
    assert approved.json()["data"]["approved_by"] == "manager-1"

    sent = await client.post(f"{BASE}/{po_id}/send", headers=_auth("purchaser"))
    assert sent.json()["data"]["status"] == "sent_to_supplier"

    partial = await client.post(
        f"{BASE}/{po_id}/receive",
        json={"items": [{"product_id": "SKU-A", "quantity": 4}], "notes": "dock 2"},
        headers=_auth("warehouse"),
    )
    assert partial.status_code == 200, partial.text
    body = partial.json()
    assert body["data"]["status"] == "partially_received"
    assert body["receiving_record"]["total_quantity"] == 4
    assert [a["product_id"] for a in body["stock_adjustments"]] == ["SKU-A"]

    rest = await client.post(f"{BASE}/{po_id}/receive", headers=_auth("warehouse"))
    assert rest.json()["data"]["status"] == "fully_received"

    closed = await client.post(f"{BASE}/{po_id}/close", headers=_auth("manager"))
    assert closed.status_code == 200, closed.text
    assert closed.json()["data"]["status"] == "closed"

    history = await client.get(f"{BASE}/{po_id}/history", headers=_auth("admin"))
    assert history.status_code == 200
    statuses = [t["to_status"] for t in history.json()["history"]["transitions"]]
    assert statuses[0] == "pending_approval"
    assert statuses[-1] == "closed"
    assert history.json()["history"]["audit_events"]


@pytest.mark.asyncio
async def test_denied_approval_returns_403(client):
    created = await _create(client)
    response = await client.post(f"{BASE}/{created['id']}/approve", headers=_auth("warehouse"))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "APPROVAL_NOT_ALLOWED"

    # The refused attempt is still on record once the audit trail is visible
    # (drafts do not expose it).
    approved = await client.post(f"{BASE}/{created['id']}/approve", headers=_auth("manager"))
    assert approved.status_code == 200, approved.text

    history = await client.get(f"{BASE}/{created['id']}/history", headers=_auth("admin"))
    events = history.json()["history"]["audit_events"]
    assert any(
        e["action"] == "permission_check:approve" and e["decision"] == "denied" for e in events
    )


@pytest.mark.asyncio
async def test_cancel_with_reason(client):
    created = await _create(client)
    response = await client.post(
        f"{BASE}/{created['id']}/cancel",
        json={"reason": "supplier withdrew"},
        headers=_auth("purchaser"),
    )
    assert response.status_code == 200, response.text
    assert response.json()["data"]["status"] == "cancelled"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_valid_transitions_endpoint(client):
    response = await client.get(f"{BASE}/transitions/draft")
    assert response.status_code == 200
    assert response.json()["valid_transitions"] == ["cancelled", "pending_approval"]

    unknown = await client.get(f"{BASE}/transitions/shipped")
    assert unknown.status_code == 422
    assert unknown.json()["error"]["code"] == "INVALID_STATUS"


@pytest.mark.asyncio
async def test_user_actions_depend_on_role(client):
    created = await _create(client)
    await client.post(f"{BASE}/{created['id']}/approve", headers=_auth("manager"))

    warehouse = await client.get(f"{BASE}/{created['id']}/actions", headers=_auth("warehouse"))
    assert "receive" in warehouse.json()["actions"]
    assert "approve" not in warehouse.json()["actions"]

    cashier = await client.get(f"{BASE}/{created['id']}/actions", headers=_auth("cashier"))
    assert cashier.json()["actions"] == ["view"]
