from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from .enums import Gateway, GatewayMode
from .statuses import (
    CanonicalStatus,
    DisputeStatus,
    RefundStatus,
    TransactionStatus,
    WebhookLogStatus,
)


def qualify_id(gateway: Gateway | str, native_id: str) -> str:
    """Return the gateway-qualified identifier used for local records."""

    prefix = gateway.value if isinstance(gateway, Gateway) else str(gateway)
    return f"{prefix}_{native_id}"


def native_id(gateway: Gateway | str, qualified_id: str) -> str:
    """Strip the gateway prefix added by ``qualify_id`` when present."""

    prefix = f"{gateway.value if isinstance(gateway, Gateway) else gateway}_"
    if qualified_id.startswith(prefix):
        return qualified_id[len(prefix):]
    return qualified_id


def derive_status(
    outcome: TransactionStatus, amount: Decimal, refunded_amount: Decimal
) -> TransactionStatus:
    """Project the transaction status from the refund total and last outcome."""

    if refunded_amount > 0:
        if refunded_amount >= amount:
            return TransactionStatus.REFUNDED
        return TransactionStatus.PARTIALLY_REFUNDED
    return outcome


@dataclass
class PaymentTransaction:
    """One payment attempt at a gateway."""

    transaction_id: str
    gateway: Gateway
    amount: Decimal
    currency: str
    status: TransactionStatus = TransactionStatus.PENDING
    refunded_amount: Decimal = Decimal("0")
    has_dispute: bool = False
    associated_order_ids: list[str] = field(default_factory=list)
    gateway_response: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Refund:
    refund_id: str
    transaction_id: str
    amount: Decimal
    currency: str
    status: RefundStatus
    reason: str | None = None
    failure_reason: str | None = None
    gateway_response: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Dispute:
    dispute_id: str
    transaction_id: str
    amount: Decimal
    currency: str
    status: DisputeStatus
    reason: str | None = None
    evidence_due_by: datetime | None = None
    gateway: Gateway | None = None
    gateway_response: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class WebhookLogEntry:
    """One webhook delivery attempt."""

    request_id: str
    webhook_type: str
    event_type: str
    event_id: str
    status: WebhookLogStatus = WebhookLogStatus.PROCESSING
    error_message: str | None = None
    user_agent: str = "Unknown"
    payload_size: int = 0
    test_mode: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class RefundAccumulation:
    """Outcome of adding a refund to a transaction's running total."""

    transaction_id: str
    amount: Decimal
    refunded_amount: Decimal
    status: TransactionStatus
    duplicate: bool = False


@dataclass
class VerificationRecord:
    """Last verification outcome kept for the freshness cache."""

    transaction_id: str
    gateway: Gateway
    status: CanonicalStatus
    verified_at: datetime
    gateway_status: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    recommendations: list[str] = field(default_factory=list)


@dataclass
class GatewayConfig:
    """Webhook credentials for one gateway."""

    gateway: Gateway
    mode: GatewayMode
    test_webhook_secret: str | None = None
    live_webhook_secret: str | None = None
    webhook_secret: str | None = None

    @property
    def test_mode(self) -> bool:
        return self.mode == GatewayMode.TEST

    @property
    def active_secret(self) -> str | None:
        if self.test_mode:
            return self.test_webhook_secret or None
        return self.live_webhook_secret or self.webhook_secret or None
