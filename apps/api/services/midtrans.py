"""Midtrans Snap/Core API client."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from config import require_midtrans_server_key, settings
from services.errors import BillingValidationError, ConfigurationError, GatewayError
from services.formatting import format_idr, to_idr

logger = logging.getLogger(__name__)

SNAP_URLS = {
    False: "https://app.sandbox.midtrans.com/snap/v1/transactions",
    True: "https://app.midtrans.com/snap/v1/transactions",
}
CORE_URLS = {
    False: "https://api.sandbox.midtrans.com/v2",
    True: "https://api.midtrans.com/v2",
}

SUCCESS = "success"
PENDING = "pending"
FAILED = "failed"

FAILED_TRANSACTION_STATUSES = {"cancel", "deny", "expire", "failure"}


def classify_transaction(transaction_status: str, fraud_status: Optional[str] = None) -> str:
    """Map a Midtrans transaction/fraud status pair to success, pending or failed."""
    status = (transaction_status or "").lower()
    fraud = (fraud_status or "").lower()
    if status == "settlement":
        return SUCCESS
    if status == "capture":
        if fraud == "accept":
            return SUCCESS
        return FAILED if fraud == "deny" else PENDING
    if status in FAILED_TRANSACTION_STATUSES:
        return FAILED
    return PENDING


def signature_for(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    payload = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(payload.encode("utf-8")).hexdigest()


@dataclass
class GatewayNotification:
    order_id: str
    transaction_status: str
    fraud_status: Optional[str]
    status_code: Optional[str]
    gross_amount: Optional[str]
    signature_key: Optional[str]
    outcome: str
    raw: Dict[str, Any]

    @property
    def is_success(self) -> bool:
        return self.outcome == SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.outcome == FAILED


def _split_name(full_name: Optional[str]) -> Dict[str, str]:
    parts = (full_name or "").split()
    return {
        "first_name": parts[0] if parts else "User",
        "last_name": " ".join(parts[1:]) or "Customer",
    }


class MidtransClient:
    def __init__(
        self,
        server_key: Optional[str] = None,
        *,
        is_production: Optional[bool] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._server_key = server_key
        self.is_production = settings.MIDTRANS_IS_PRODUCTION if is_production is None else is_production
        self.timeout_seconds = settings.MIDTRANS_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._transport = transport

    @property
    def server_key(self) -> str:
        if self._server_key:
            return self._server_key
        try:
            return require_midtrans_server_key()
        except ValueError as exc:
            raise ConfigurationError("Payment gateway is not configured") from exc

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=(self.server_key, ""),
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    async def create_snap_token(
        self,
        order_id: str,
        gross_amount: int,
        customer: Dict[str, Any],
        items: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        payload = {
            "transaction_details": {"order_id": order_id, "gross_amount": int(gross_amount)},
            "item_details": items,
            "customer_details": customer,
            "credit_card": {"secure": True},
            "callbacks": {"finish": f"{settings.FRONTEND_URL}/dashboard/wallet?payment=success"},
        }
        try:
            async with self._client() as client:
                response = await client.post(SNAP_URLS[self.is_production], json=payload)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as exc:
            logger.error("Midtrans Snap token request failed for order %s: %s", order_id, exc)
            raise GatewayError(f"Failed to create payment token: {exc}") from exc

        token = body.get("token")
        if not token:
            raise GatewayError("Failed to create payment token: empty response")
        return {"token": token, "redirect_url": body.get("redirect_url")}

    async def create_topup_snap_token(
        self,
        user_id: str,
        amount: Any,
        *,
        full_name: Optional[str],
        email: str,
        phone: Optional[str] = None,
    ) -> Dict[str, Any]:
        value = to_idr(amount)
        order_id = f"TOPUP-{user_id}-{int(time.time() * 1000)}"
        customer = {**_split_name(full_name), "email": email, "phone": phone or ""}
        items = [
            {
                "id": "WALLET_TOPUP",
                "price": value,
                "quantity": 1,
                "name": f"Wallet Top Up - {format_idr(value)}",
            }
        ]
        snap = await self.create_snap_token(order_id, value, customer, items)
        return {"snap_token": snap["token"], "redirect_url": snap["redirect_url"], "order_id": order_id}

    async def get_transaction_status(self, order_id: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(f"{CORE_URLS[self.is_production]}/{order_id}/status")
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as exc:
            logger.error("Midtrans status request failed for order %s: %s", order_id, exc)
            raise GatewayError(f"Failed to get transaction status: {exc}") from exc

    def verify_signature(self, order_id: str, status_code: str, gross_amount: str, signature_key: str) -> bool:
        expected = signature_for(order_id, status_code, gross_amount, self.server_key)
        return hmac.compare_digest(expected, signature_key or "")

    def parse_notification(self, payload: Dict[str, Any], *, verify: Optional[bool] = None) -> GatewayNotification:
        order_id = payload.get("order_id")
        transaction_status = payload.get("transaction_status")
        if not order_id or not transaction_status:
            raise BillingValidationError("Invalid notification payload")

        notification = GatewayNotification(
            order_id=str(order_id),
            transaction_status=str(transaction_status),
            fraud_status=payload.get("fraud_status"),
            status_code=payload.get("status_code"),
            gross_amount=payload.get("gross_amount"),
            signature_key=payload.get("signature_key"),
            outcome=classify_transaction(transaction_status, payload.get("fraud_status")),
            raw=payload,
        )

        should_verify = settings.MIDTRANS_VERIFY_SIGNATURE if verify is None else verify
        if should_verify and not self.verify_signature(
            notification.order_id,
            str(notification.status_code or ""),
            str(notification.gross_amount or ""),
            str(notification.signature_key or ""),
        ):
            logger.warning("Rejected Midtrans notification with bad signature for order %s", order_id)
            raise BillingValidationError("Invalid notification signature", status_code=403)

        logger.info(
            "Midtrans notification order=%s status=%s fraud=%s outcome=%s",
            notification.order_id,
            notification.transaction_status,
            notification.fraud_status,
            notification.outcome,
        )
        return notification


def get_midtrans_client() -> MidtransClient:
    """FastAPI dependency; tests override it with a MockTransport-backed client."""
    return MidtransClient()
