from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any

import stripe  # type: ignore[import-untyped]

from payrecon.config import Settings
from payrecon.domain.dtos import WebhookEvent
from payrecon.domain.enums import EventCategory, Gateway
from payrecon.domain.statuses import CanonicalStatus

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


class StripeIntentStatus(str, Enum):
    REQUIRES_PAYMENT_METHOD = "REQUIRES_PAYMENT_METHOD"
    REQUIRES_CONFIRMATION = "REQUIRES_CONFIRMATION"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    PROCESSING = "PROCESSING"
    REQUIRES_CAPTURE = "REQUIRES_CAPTURE"
    CANCELED = "CANCELED"
    SUCCEEDED = "SUCCEEDED"


STRIPE_STATUS_TABLE = {
    StripeIntentStatus.REQUIRES_PAYMENT_METHOD: CanonicalStatus.PENDING,
    StripeIntentStatus.REQUIRES_CONFIRMATION: CanonicalStatus.PENDING,
    StripeIntentStatus.REQUIRES_ACTION: CanonicalStatus.PENDING,
    StripeIntentStatus.PROCESSING: CanonicalStatus.PENDING,
    StripeIntentStatus.REQUIRES_CAPTURE: CanonicalStatus.PENDING,
    StripeIntentStatus.CANCELED: CanonicalStatus.FAILED,
    StripeIntentStatus.SUCCEEDED: CanonicalStatus.COMPLETED,
}

# Refund events whose meaning depends on the refund object's own status.
_REFUND_STATUS_EVENTS = {"refund.created", "refund.updated", "charge.refund.updated"}


class StripeWebhookAdapter(WebhookAdapter):
    """Stripe events: ``{"id", "type", "created", "data": {"object": ...}}``."""

    gateway = Gateway.STRIPE
    signature_header = "stripe-signature"
    event_categories = {
        "payment_intent.succeeded": EventCategory.PAYMENT_SUCCEEDED,
        "payment_intent.payment_failed": EventCategory.PAYMENT_FAILED,
        "payment_intent.canceled": EventCategory.PAYMENT_CANCELLED,
        "refund.failed": EventCategory.REFUND_FAILED,
        "charge.dispute.created": EventCategory.DISPUTE_CREATED,
        "charge.dispute.updated": EventCategory.DISPUTE_UPDATED,
        "charge.dispute.closed": EventCategory.DISPUTE_UPDATED,
    }

    def parse(self, payload: Any) -> WebhookEvent:
        event_id, event_type, obj = self._event_object(payload, "type")
        category = self.event_categories.get(event_type)
        if event_type in _REFUND_STATUS_EVENTS:
            refund_status = str(obj.get("status") or "").lower()
            if refund_status == "succeeded":
                category = EventCategory.REFUND_SUCCEEDED
            elif refund_status == "failed":
                category = EventCategory.REFUND_FAILED
        created = payload.get("created")
        return WebhookEvent(
            gateway=self.gateway,
            event_id=event_id,
            event_type=event_type,
            category=category,
            data=obj,
            created_at=str(created) if created is not None else None,
            account_id=str(payload.get("account") or "") or None,
        )


class StripeQueryClient(GatewayQueryClient):
    """PaymentIntent lookups through the Stripe SDK.

    The API key is passed per request instead of being set on the module.
    """

    gateway = Gateway.STRIPE
    native_statuses = StripeIntentStatus
    status_table = STRIPE_STATUS_TABLE

    def __init__(self, settings: Settings):
        self.settings = settings
        self.timeout = settings.gateway_timeout_seconds
        if not settings.stripe_secret_key:
            raise ValueError("Stripe secret key not configured")

    async def retrieve(
        self, payment_id: str, session: GatewaySession | None = None
    ) -> tuple[GatewayPaymentSnapshot, GatewaySession | None]:
        def _retrieve() -> dict[str, Any]:
            intent = stripe.PaymentIntent.retrieve(payment_id, api_key=self.settings.stripe_secret_key)
            to_dict = getattr(intent, "to_dict", None)
            return to_dict() if callable(to_dict) else dict(intent)

        started = time.monotonic()
        try:
            data = await asyncio.wait_for(asyncio.to_thread(_retrieve), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise GatewayTimeoutError("Stripe did not respond in time") from exc
        except Exception as exc:  # noqa: BLE001
            raise GatewayQueryError(f"Stripe status query failed: {exc.__class__.__name__}") from exc
        logger.info(
            "stripe intent retrieved",
            extra={"gateway": self.gateway, "latency_ms": int((time.monotonic() - started) * 1000)},
        )
        try:
            error = data.get("last_payment_error") or {}
            amount = data.get("amount_received") or data.get("amount")
            snapshot = GatewayPaymentSnapshot(
                native_status=str(data.get("status") or ""),
                amount_minor=int(amount) if amount is not None else None,
                currency=str(data.get("currency") or "").upper() or None,
                error_code=error.get("decline_code") or error.get("code"),
                error_message=error.get("message"),
                raw=data,
            )
        except MALFORMED_REPLY_ERRORS as exc:
            raise GatewayQueryError(f"Stripe returned an unreadable payment intent {payment_id}") from exc
        # Stripe authenticates every call with the secret key; no session to carry.
        return snapshot, session
