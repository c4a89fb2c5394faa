from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import EventCategory, Gateway
from .statuses import CanonicalStatus


class _GatewayObject(BaseModel):
    """Base for the ``data.object`` part of a webhook event."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @field_validator("currency", mode="before", check_fields=False)
    @classmethod
    def _upper_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class PaymentObject(_GatewayObject):
    """Payment intent as delivered by Airwallex or Stripe."""

    id: str
    amount: int | None = None
    currency: str | None = None
    status: str | None = None
    merchant_order_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    latest_payment_attempt: dict[str, Any] | None = None
    last_payment_error: dict[str, Any] | None = None
    cancellation_reason: str | None = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value: Any) -> Any:
        return value or {}

    def order_ids(self) -> list[str]:
        """Order/quote ids linked to this payment, in delivery order."""

        raw = self.metadata.get("quote_ids") or self.metadata.get("order_ids")
        if isinstance(raw, str):
            candidates = raw.split(",")
        elif isinstance(raw, (list, tuple)):
            candidates = [str(item) for item in raw]
        else:
            candidates = []
        ids: list[str] = []
        for candidate in candidates:
            cleaned = candidate.strip()
            if cleaned and cleaned not in ids:
                ids.append(cleaned)
        if not ids and self.merchant_order_id:
            ids.append(self.merchant_order_id)
        return ids

    def failure_reason(self, default: str) -> str:
        attempt = self.latest_payment_attempt or {}
        error = self.last_payment_error or {}
        reason = (
            attempt.get("failure_reason")
            or error.get("message")
            or error.get("code")
            or self.cancellation_reason
        )
        return str(reason).strip() if reason else default


class RefundObject(_GatewayObject):
    id: str
    payment_intent_id: str | None = Field(
        default=None, validation_alias=AliasChoices("payment_intent_id", "payment_intent")
    )
    amount: int
    currency: str | None = None
    status: str | None = None
    reason: str | None = None
    failure_reason: str | None = None


class DisputeObject(_GatewayObject):
    id: str
    payment_intent_id: str | None = Field(
        default=None, validation_alias=AliasChoices("payment_intent_id", "payment_intent")
    )
    amount: int = 0
    currency: str | None = None
    status: str | None = None
    reason: str | None = None
    evidence_due_by: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _stripe_evidence_due_by(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("evidence_due_by"):
            details = data.get("evidence_details")
            if isinstance(details, dict) and details.get("due_by"):
                data = {**data, "evidence_due_by": details["due_by"]}
        return data


class WebhookEvent(BaseModel):
    """Gateway webhook normalized to the fields the engine needs."""

    gateway: Gateway
    event_id: str
    event_type: str
    category: EventCategory | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None
    account_id: str | None = None


class WebhookAck(BaseModel):
    """Body returned to the gateway after the signature was accepted."""

    received: bool = True
    processed: bool
    event_id: str = Field(serialization_alias="eventId")
    event_type: str = Field(serialization_alias="eventType")
    request_id: str = Field(serialization_alias="requestId")
    error: str | None = None


class VerificationRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1, description="Gateway-qualified transaction id")
    gateway: Gateway
    expected_amount: Decimal | None = Field(default=None, description="Major units")
    expected_currency: str | None = None
    force_refresh: bool = False


class VerificationResult(BaseModel):
    transaction_id: str
    gateway: Gateway
    status: CanonicalStatus
    success: bool = True
    amount: Decimal | None = None
    currency: str | None = None
    gateway_status: str | None = None
    amount_matches: bool | None = None
    currency_matches: bool | None = None
    recommendations: list[str] = Field(default_factory=list)
    error: str | None = None
    cached: bool = False
    verified_at: datetime | None = None


class BatchVerificationRequest(BaseModel):
    items: list[VerificationRequest] = Field(..., min_length=1, max_length=50)


class BatchVerificationResult(BaseModel):
    results: list[VerificationResult]
