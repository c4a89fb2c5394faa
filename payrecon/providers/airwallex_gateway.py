from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import httpx

from payrecon.config import Settings
from payrecon.domain.dtos import WebhookEvent
from payrecon.domain.enums import EventCategory, Gateway
from payrecon.domain.statuses import CanonicalStatus
from payrecon.utils.money import to_minor_units

from .base import (
    MALFORMED_REPLY_ERRORS,
    GatewayPaymentSnapshot,
    GatewayQueryClient,
    GatewayQueryError,
    GatewaySession,
    GatewayTimeoutError,
    WebhookAdapter,
)

logger = logging.getLogger(__name__)


class AirwallexIntentStatus(str, Enum):
    REQUIRES_PAYMENT_METHOD = "REQUIRES_PAYMENT_METHOD"
    REQUIRES_CUSTOMER_ACTION = "REQUIRES_CUSTOMER_ACTION"
    REQUIRES_CAPTURE = "REQUIRES_CAPTURE"
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    CANCELLED = "CANCELLED"


AIRWALLEX_STATUS_TABLE = {
    AirwallexIntentStatus.REQUIRES_PAYMENT_METHOD: CanonicalStatus.PENDING,
    AirwallexIntentStatus.REQUIRES_CUSTOMER_ACTION: CanonicalStatus.PENDING,
    AirwallexIntentStatus.REQUIRES_CAPTURE: CanonicalStatus.PENDING,
    AirwallexIntentStatus.PENDING: CanonicalStatus.PENDING,
    AirwallexIntentStatus.SUCCEEDED: CanonicalStatus.COMPLETED,
    AirwallexIntentStatus.CANCELLED: CanonicalStatus.FAILED,
}


class AirwallexWebhookAdapter(WebhookAdapter):
    """Airwallex events: ``{"id", "name", "account_id", "data": {"object": ...}}``."""

    gateway = Gateway.AIRWALLEX
    signature_header = "x-airwallex-signature"
    event_categories = {
        "payment_intent.succeeded": EventCategory.PAYMENT_SUCCEEDED,
        "payment_attempt.settled": EventCategory.PAYMENT_SUCCEEDED,
        "payment_intent.failed": EventCategory.PAYMENT_FAILED,
        "payment_intent.cancelled": EventCategory.PAYMENT_CANCELLED,
        "refund.succeeded": EventCategory.REFUND_SUCCEEDED,
        "refund.failed": EventCategory.REFUND_FAILED,
        "dispute.created": EventCategory.DISPUTE_CREATED,
        "dispute.updated": EventCategory.DISPUTE_UPDATED,
    }

    def parse(self, payload: Any) -> WebhookEvent:
        event_id, event_type, obj = self._event_object(payload, "name")
        if event_type == "payment_attempt.settled" and obj.get("payment_intent_id"):
            # A settled attempt completes its intent; reconcile it under the intent id.
            obj = {**obj, "id": obj["payment_intent_id"], "status": "succeeded"}
        return WebhookEvent(
            gateway=self.gateway,
            event_id=event_id,
            event_type=event_type,
            category=self.event_categories.get(event_type),
            data=obj,
            created_at=str(payload.get("created_at") or "") or None,
            account_id=str(payload.get("account_id") or "") or None,
        )


class AirwallexQueryClient(GatewayQueryClient):
    """Payment intent lookups against the Airwallex API."""

    gateway = Gateway.AIRWALLEX
    native_statuses = AirwallexIntentStatus
    status_table = AIRWALLEX_STATUS_TABLE

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_url = settings.airwallex_base_url.rstrip("/")
        self.timeout = settings.gateway_timeout_seconds
        if not settings.airwallex_client_id or not settings.airwallex_api_key:
            raise ValueError("Airwallex credentials not configured")

    async def _login(self, client: httpx.AsyncClient) -> GatewaySession:
        resp = await client.post(
            f"{self.base_url}/api/v1/authentication/login",
            headers={
                "x-client-id": self.settings.airwallex_client_id,
                "x-api-key": self.settings.airwallex_api_key,
            },
        )
        if resp.status_code >= 400:
            raise GatewayQueryError(f"Airwallex login failed ({resp.status_code})")
        try:
            data = resp.json()
            token = str(data["token"])
        except MALFORMED_REPLY_ERRORS as exc:
            raise GatewayQueryError("Airwallex login returned an unreadable reply") from exc
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=30)
        raw_expiry = data.get("expires_at")
        if isinstance(raw_expiry, str):
            try:
                parsed = datetime.fromisoformat(raw_expiry.replace("Z", "+00:00"))
                expires_at = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
            except ValueError:
                pass
        return GatewaySession(access_token=token, expires_at=expires_at)

    async def retrieve(
        self, payment_id: str, session: GatewaySession | None = None
    ) -> tuple[GatewayPaymentSnapshot, GatewaySession | None]:
        url = f"{self.base_url}/api/v1/pa/payment_intents/{payment_id}"
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if session is None or session.is_expired():
                    session = await self._login(client)
                resp = await client.get(url, headers={"Authorization": f"Bearer {session.access_token}"})
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError("Airwallex did not respond in time") from exc
        except httpx.HTTPError as exc:
            raise GatewayQueryError(f"Airwallex request failed: {exc.__class__.__name__}") from exc
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "airwallex intent retrieved",
            extra={"gateway": self.gateway, "response_code": resp.status_code, "latency_ms": latency_ms},
        )
        if resp.status_code == 404:
            raise GatewayQueryError(f"Airwallex payment intent {payment_id} not found")
        if resp.status_code >= 400:
            raise GatewayQueryError(f"Airwallex status query failed ({resp.status_code})")
        try:
            snapshot = _intent_snapshot(resp.json())
        except MALFORMED_REPLY_ERRORS as exc:
            logger.warning(
                "airwallex intent unreadable",
                extra={"gateway": self.gateway, "response_code": resp.status_code, "error": str(exc)},
            )
            raise GatewayQueryError(f"Airwallex returned an unreadable payment intent {payment_id}") from exc
        return snapshot, session


def _intent_snapshot(data: dict[str, Any]) -> GatewayPaymentSnapshot:
    currency = str(data.get("currency") or "").upper() or None
    amount = data.get("amount")
    attempt = data.get("latest_payment_attempt") or {}
    return GatewayPaymentSnapshot(
        native_status=str(data.get("status") or ""),
        amount_minor=to_minor_units(amount, currency) if amount is not None else None,
        currency=currency,
        error_code=attempt.get("failure_code"),
        error_message=attempt.get("failure_reason"),
        raw=data,
    )
