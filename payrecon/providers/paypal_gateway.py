from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import httpx

from payrecon.config import Settings
from payrecon.domain.enums import Gateway
from payrecon.domain.statuses import CanonicalStatus
from payrecon.utils.money import to_minor_units

from .base import (
    MALFORMED_REPLY_ERRORS,
    GatewayPaymentSnapshot,
    GatewayQueryClient,
    GatewayQueryError,
    GatewaySession,
    GatewayTimeoutError,
)

logger = logging.getLogger(__name__)


class PayPalOrderStatus(str, Enum):
    CREATED = "CREATED"
    SAVED = "SAVED"
    APPROVED = "APPROVED"
    PAYER_ACTION_REQUIRED = "PAYER_ACTION_REQUIRED"
    VOIDED = "VOIDED"
    COMPLETED = "COMPLETED"


PAYPAL_STATUS_TABLE = {
    PayPalOrderStatus.CREATED: CanonicalStatus.PENDING,
    PayPalOrderStatus.SAVED: CanonicalStatus.PENDING,
    PayPalOrderStatus.APPROVED: CanonicalStatus.PENDING,
    PayPalOrderStatus.PAYER_ACTION_REQUIRED: CanonicalStatus.PENDING,
    PayPalOrderStatus.VOIDED: CanonicalStatus.FAILED,
    PayPalOrderStatus.COMPLETED: CanonicalStatus.COMPLETED,
}


class PayPalQueryClient(GatewayQueryClient):
    """Orders v2 lookups with an OAuth2 client-credentials session."""

    gateway = Gateway.PAYPAL
    native_statuses = PayPalOrderStatus
    status_table = PAYPAL_STATUS_TABLE

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_url = settings.paypal_base_url.rstrip("/")
        self.timeout = settings.gateway_timeout_seconds
        if not settings.paypal_client_id or not settings.paypal_client_secret:
            raise ValueError("PayPal credentials not configured")

    async def _get_access_token(self, client: httpx.AsyncClient) -> GatewaySession:
        resp = await client.post(
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
        )
        if resp.status_code >= 400:
            raise GatewayQueryError(f"PayPal token request failed ({resp.status_code})")
        try:
            payload = resp.json()
            access_token = str(payload["access_token"])
            expires_in = int(payload.get("expires_in") or 300)
        except MALFORMED_REPLY_ERRORS as exc:
            raise GatewayQueryError("PayPal token request returned an unreadable reply") from exc
        return GatewaySession(
            access_token=access_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    async def retrieve(
        self, payment_id: str, session: GatewaySession | None = None
    ) -> tuple[GatewayPaymentSnapshot, GatewaySession | None]:
        order_url = f"{self.base_url}/v2/checkout/orders/{payment_id}"
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if session is None or session.is_expired():
                    session = await self._get_access_token(client)
                resp = await client.get(
                    order_url,
                    headers={"Authorization": f"Bearer {session.access_token}", "Content-Type": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError("PayPal did not respond in time") from exc
        except httpx.HTTPError as exc:
            raise GatewayQueryError(f"PayPal request failed: {exc.__class__.__name__}") from exc
        logger.info(
            "paypal order retrieved",
            extra={
                "gateway": self.gateway,
                "response_code": resp.status_code,
                "latency_ms": int((time.monotonic() - started) * 1000),
            },
        )
        if resp.status_code == 404:
            raise GatewayQueryError(f"PayPal order {payment_id} not found")
        if resp.status_code >= 400:
            raise GatewayQueryError(f"PayPal status query failed ({resp.status_code})")
        try:
            snapshot = _order_snapshot(resp.json())
        except MALFORMED_REPLY_ERRORS as exc:
            logger.warning(
                "paypal order unreadable",
                extra={"gateway": self.gateway, "response_code": resp.status_code, "error": str(exc)},
            )
            raise GatewayQueryError(f"PayPal returned an unreadable order {payment_id}") from exc
        return snapshot, session


def _order_snapshot(data: dict[str, Any]) -> GatewayPaymentSnapshot:
    unit = (data.get("purchase_units") or [{}])[0]
    amount_info = unit.get("amount") or {}
    currency = str(amount_info.get("currency_code") or "").upper() or None
    value = amount_info.get("value")
    captures = (unit.get("payments") or {}).get("captures") or []
    declined = [c for c in captures if str(c.get("status", "")).upper() == "DECLINED"]
    error_message = None
    if declined:
        details = declined[-1].get("status_details") or {}
        error_message = f"Capture declined: {details.get('reason') or 'no reason given'}"
    return GatewayPaymentSnapshot(
        native_status=str(data.get("status") or ""),
        amount_minor=to_minor_units(value, currency) if value is not None else None,
        currency=currency,
        error_code="CAPTURE_DECLINED" if declined else None,
        error_message=error_message,
        raw=data,
    )
