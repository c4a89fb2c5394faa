from __future__ import annotations

from enum import Enum


class Gateway(str, Enum):
    """Supported payment processors."""

    AIRWALLEX = "airwallex"
    STRIPE = "stripe"
    PAYPAL = "paypal"
    WEBPAY = "webpay"
    BANK_TRANSFER = "bank_transfer"


class GatewayMode(str, Enum):
    """Which set of credentials a gateway is operating with."""

    TEST = "test"
    LIVE = "live"


class EventCategory(str, Enum):
    """Canonical webhook event kinds the reconciliation engine understands."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    REFUND_SUCCEEDED = "refund_succeeded"
    REFUND_FAILED = "refund_failed"
    DISPUTE_CREATED = "dispute_created"
    DISPUTE_UPDATED = "dispute_updated"
