from __future__ import annotations

from enum import Enum


class TransactionStatus(str, Enum):
    """Status of a payment transaction."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    @property
    def canonical(self) -> "CanonicalStatus":
        """Collapse onto the tri-state exposed by verification."""

        mapping = {
            self.PENDING: CanonicalStatus.PENDING,
            self.COMPLETED: CanonicalStatus.COMPLETED,
            self.REFUNDED: CanonicalStatus.COMPLETED,
            self.PARTIALLY_REFUNDED: CanonicalStatus.COMPLETED,
            self.FAILED: CanonicalStatus.FAILED,
            self.CANCELLED: CanonicalStatus.FAILED,
        }
        return mapping[self]


class CanonicalStatus(str, Enum):
    """Gateway-independent payment outcome."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DisputeStatus(str, Enum):
    """Status of a chargeback/dispute."""

    NEEDS_RESPONSE = "needs_response"
    UNDER_REVIEW = "under_review"
    WON = "won"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self in {DisputeStatus.WON, DisputeStatus.LOST}

    @classmethod
    def parse(cls, raw: str | None) -> "DisputeStatus | None":
        """Normalize a gateway dispute status; None when unrecognized."""

        if not raw:
            return None
        return _DISPUTE_ALIASES.get(raw.strip().lower())


_DISPUTE_ALIASES = {
    "needs_response": DisputeStatus.NEEDS_RESPONSE,
    "warning_needs_response": DisputeStatus.NEEDS_RESPONSE,
    "under_review": DisputeStatus.UNDER_REVIEW,
    "warning_under_review": DisputeStatus.UNDER_REVIEW,
    "won": DisputeStatus.WON,
    "warning_closed": DisputeStatus.WON,
    "lost": DisputeStatus.LOST,
    "charge_refunded": DisputeStatus.LOST,
}


class WebhookLogStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
