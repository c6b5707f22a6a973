import httpx
import pytest

from main import app
from models.enums import UserRole
from services.midtrans import MidtransClient, get_midtrans_client, signature_for


ADMIN_ID = "admin-api"
USER_ID = "user-api"


@pytest.mark.asyncio
async def test_plans_are_public_and_enveloped(client, plans):
    response = await client.get("/billing/plans")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert [plan["name"] for plan in body["data"]] == ["FREE", "BASIC", "PRO", "ENTERPRISE"]


@pytest.mark.asyncio
async def test_protected_routes_require_a_session_token(client):
    response = await client.get("/wallet")

    assert response.status_code == 401
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_admin_routes_reject_regular_users(client, auth_headers):
    response = await client.get("/promo", headers=auth_headers(USER_ID))

    assert response.status_code == 403
    assert response.json() == {"success": False, "message": "Admin access required.", "error": "http_error"}


@pytest.mark.asyncio
async def test_upgrade_flow_through_the_api(client, plans, make_user, auth_headers):
    await make_user(USER_ID)
    admin = auth_headers(ADMIN_ID, UserRole.ADMIN)
    user = auth_headers(USER_ID)

    broke = await client.post("/billing/upgrade", json={"plan_id": plans["BASIC"].id}, headers=user)
    assert broke.status_code == 402
    assert broke.json()["error"] == "insufficient_funds"

    funded = await client.post(f"/wallet/admin/add-funds/{USER_ID}", json={"amount": 120000}, headers=admin)
    assert funded.status_code == 200
    assert funded.json()["data"]["wallet"]["balance"] == 120_000

    upgraded = await client.post(
        "/billing/upgrade",
        json={"plan_id": plans["BASIC"].id, "billing_cycle": "MONTHLY"},
        headers=user,
    )
    assert upgraded.status_code == 200
    assert upgraded.json()["data"]["remaining_balance"] == 21_000

    current = await client.get("/billing/subscription", headers=user)
    assert current.json()["data"]["plan"]["name"] == "BASIC"

    again = await client.post("/billing/validate-upgrade", json={"plan_id": plans["BASIC"].id}, headers=user)
    assert again.status_code == 200
    assert again.json()["data"]["is_valid"] is False
    assert again.json()["data"]["error_message"] == "You are already subscribed to this plan"


@pytest.mark.asyncio
async def test_subscription_endpoint_without_subscription(client, auth_headers):
    response = await client.get("/billing/subscription", headers=auth_headers("newcomer"))

    assert response.status_code == 200
    assert response.json() == {"success": True, "data": None, "message": "No active subscription"}


@pytest.mark.asyncio
async def test_validation_errors_use_the_envelope(client, auth_headers):
    response = await client.post("/topup/manual/request", json={"amount": "lots"}, headers=auth_headers(USER_ID))

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "validation_error"


@pytest.mark.asyncio
@pytest.mark.parametrize("literal", ["Infinity", "-Infinity", "NaN"])
async def test_non_finite_amounts_are_rejected(client, auth_headers, literal):
    response = await client.post(
        "/topup/manual/request",
        content=f'{{"amount": {literal}}}',
        headers={**auth_headers(USER_ID), "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_unknown_routes_use_the_envelope(client):
    missing = await client.get("/billing/does-not-exist")
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "message": "Not Found", "error": "http_error"}

    wrong_method = await client.delete("/billing/plans")
    assert wrong_method.status_code == 405
    assert wrong_method.json()["success"] is False


@pytest.mark.asyncio
async def test_webhook_is_public_and_idempotent(client, auth_headers, make_user):
    await make_user(USER_ID)

    def handler(request: httpx.Request):
        return httpx.Response(201, json={"token": "snap", "redirect_url": "https://pay.example/snap"})

    gateway = MidtransClient("api-server-key", transport=httpx.MockTransport(handler))
    app.dependency_overrides[get_midtrans_client] = lambda: gateway
    try:
        created = await client.post("/topup/automatic/process", json={"amount": 20000}, headers=auth_headers(USER_ID))
        assert created.status_code == 200
        order_id = created.json()["data"]["order_id"]

        payload = {
            "order_id": order_id,
            "status_code": "200",
            "gross_amount": "20000.00",
            "transaction_status": "settlement",
            "signature_key": signature_for(order_id, "200", "20000.00", "api-server-key"),
        }
        first = await client.post("/topup/webhook/midtrans", json=payload)
        second = await client.post("/topup/webhook/midtrans", json=payload)
    finally:
        app.dependency_overrides.pop(get_midtrans_client, None)

    assert first.json()["message"] == "Payment completed successfully"
    assert second.json()["message"] == "Payment already processed"
    wallet = await client.get("/wallet", headers=auth_headers(USER_ID))
    assert wallet.json()["data"]["balance"] == 20_000


@pytest.mark.asyncio
async def test_admin_can_trigger_sweeps(client, auth_headers):
    admin = auth_headers(ADMIN_ID, UserRole.ADMIN)

    renewal = await client.post("/admin/billing/sweeps/renewal", headers=admin)
    expiry = await client.post("/admin/billing/sweeps/expiry", headers=admin)

    assert renewal.status_code == 200
    assert renewal.json()["data"]["sweep"] == "renewal"
    assert expiry.json()["data"] == {"sweep": "expiry", "scanned": 0, "successful": 0, "failed": 0, "errors": []}


@pytest.mark.asyncio
async def test_manual_topup_review_through_the_api(client, make_user, auth_headers):
    await make_user(USER_ID)
    user = auth_headers(USER_ID)
    admin = auth_headers(ADMIN_ID, UserRole.ADMIN)

    created = await client.post("/topup/manual/request", json={"amount": 15000}, headers=user)
    request_id = created.json()["data"]["id"]
    early = await client.post(f"/topup/admin/requests/{request_id}/approve", headers=admin)
    assert early.status_code == 409

    proof = await client.post(
        "/topup/manual/proof",
        json={"topup_request_id": request_id, "proof_url": "https://files.example/proof.jpg"},
        headers=user,
    )
    assert proof.json()["data"]["status"] == "UNDER_REVIEW"

    approved = await client.post(
        f"/topup/admin/requests/{request_id}/approve", json={"notes": "ok"}, headers=admin
    )
    assert approved.status_code == 200
    assert approved.json()["data"]["status"] == "APPROVED"
