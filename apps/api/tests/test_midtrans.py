import base64
import json

import httpx
import pytest

from config import settings
from services import midtrans
from services.errors import BillingValidationError, ConfigurationError, GatewayError
from services.midtrans import MidtransClient, classify_transaction, signature_for


@pytest.mark.parametrize(
    "transaction_status,fraud_status,expected",
    [
        ("settlement", None, midtrans.SUCCESS),
        ("capture", "accept", midtrans.SUCCESS),
        ("capture", "challenge", midtrans.PENDING),
        ("capture", "deny", midtrans.FAILED),
        ("pending", None, midtrans.PENDING),
        ("cancel", None, midtrans.FAILED),
        ("deny", None, midtrans.FAILED),
        ("expire", None, midtrans.FAILED),
        ("failure", None, midtrans.FAILED),
        ("refund", None, midtrans.PENDING),
    ],
)
def test_transaction_classification(transaction_status, fraud_status, expected):
    assert classify_transaction(transaction_status, fraud_status) == expected


def test_signature_verification():
    client = MidtransClient("server-key")
    signature = signature_for("TOPUP-u-1", "200", "10000.00", "server-key")

    assert len(signature) == 128
    assert client.verify_signature("TOPUP-u-1", "200", "10000.00", signature) is True
    assert client.verify_signature("TOPUP-u-1", "200", "10001.00", signature) is False
    assert client.verify_signature("TOPUP-u-1", "200", "10000.00", "") is False


def test_notification_requires_order_and_status():
    client = MidtransClient("server-key")
    with pytest.raises(BillingValidationError):
        client.parse_notification({"transaction_status": "settlement"})

    notification = client.parse_notification(
        {"order_id": "TOPUP-u-2", "transaction_status": "capture", "fraud_status": "accept"},
        verify=False,
    )
    assert notification.is_success is True
    assert notification.is_failed is False


def test_missing_server_key_is_a_configuration_error(monkeypatch):
    monkeypatch.setattr(settings, "MIDTRANS_SERVER_KEY", "")
    client = MidtransClient()

    with pytest.raises(ConfigurationError):
        _ = client.server_key


@pytest.mark.asyncio
async def test_topup_snap_token_request_shape():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(201, json={"token": "tok-123", "redirect_url": "https://pay.example/tok-123"})

    client = MidtransClient("server-key", transport=httpx.MockTransport(handler))
    snap = await client.create_topup_snap_token("user-9", 25_000, full_name="Siti Rahma Dewi", email="siti@example.com")

    assert snap["snap_token"] == "tok-123"
    assert snap["order_id"].startswith("TOPUP-user-9-")
    request = seen[0]
    assert str(request.url) == midtrans.SNAP_URLS[False]
    expected_auth = base64.b64encode(b"server-key:").decode()
    assert request.headers["Authorization"] == f"Basic {expected_auth}"
    body = json.loads(request.content)
    assert body["transaction_details"]["gross_amount"] == 25_000
    assert body["customer_details"]["first_name"] == "Siti"
    assert body["customer_details"]["last_name"] == "Rahma Dewi"
    assert body["item_details"][0]["name"] == "Wallet Top Up - Rp 25.000"


@pytest.mark.asyncio
async def test_status_errors_become_gateway_errors():
    client = MidtransClient(
        "server-key",
        transport=httpx.MockTransport(lambda request: httpx.Response(404, json={"status_message": "not found"})),
    )

    with pytest.raises(GatewayError):
        await client.get_transaction_status("TOPUP-missing-1")


@pytest.mark.asyncio
async def test_empty_token_response_is_a_gateway_error():
    client = MidtransClient(
        "server-key",
        transport=httpx.MockTransport(lambda request: httpx.Response(201, json={})),
    )

    with pytest.raises(GatewayError):
        await client.create_snap_token("TOPUP-u-3", 10_000, {"email": "u@example.com"}, [])
