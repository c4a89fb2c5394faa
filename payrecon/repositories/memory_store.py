from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from payrecon.domain.enums import Gateway
from payrecon.domain.models import (
    Dispute,
    PaymentTransaction,
    Refund,
    RefundAccumulation,
    VerificationRecord,
    WebhookLogEntry,
    derive_status,
)
from payrecon.domain.statuses import RefundStatus, TransactionStatus, WebhookLogStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRefundLedger:
    def __init__(self, store: "InMemoryLedgerStore") -> None:
        self._store = store

    def upsert(self, refund: Refund) -> Refund:
        with self._store._lock:
            return self._store._upsert_refund(refund)

    def get(self, refund_id: str) -> Optional[Refund]:
        refund = self._store.refunds.get(refund_id)
        return replace(refund) if refund else None


class InMemoryDisputeLedger:
    def __init__(self, store: "InMemoryLedgerStore") -> None:
        self._store = store

    def upsert(self, dispute: Dispute) -> Dispute:
        with self._store._lock:
            existing = self._store.disputes.get(dispute.dispute_id)
            now = _now()
            if existing is None:
                stored = replace(dispute, created_at=dispute.created_at or now, updated_at=now)
            else:
                stored = replace(
                    existing,
                    status=dispute.status,
                    amount=dispute.amount or existing.amount,
                    reason=dispute.reason or existing.reason,
                    evidence_due_by=dispute.evidence_due_by or existing.evidence_due_by,
                    gateway_response=dispute.gateway_response or existing.gateway_response,
                    updated_at=now,
                )
            self._store.disputes[dispute.dispute_id] = stored
            return replace(stored)

    def get(self, dispute_id: str) -> Optional[Dispute]:
        dispute = self._store.disputes.get(dispute_id)
        return replace(dispute) if dispute else None


class InMemoryLedgerStore:
    """In-memory payment ledger used when no database is configured.

    Every mutation runs under one lock so read-modify-write cycles on a
    transaction are atomic, matching the single-statement updates of the
    PostgreSQL store.
    """

    def __init__(self, *, refund_ledger: bool = True, dispute_ledger: bool = True) -> None:
        self._lock = threading.Lock()
        self.transactions: Dict[str, PaymentTransaction] = {}
        self.refunds: Dict[str, Refund] = {}
        self.disputes: Dict[str, Dispute] = {}
        self.webhook_logs: Dict[str, WebhookLogEntry] = {}
        self.verifications: Dict[tuple[str, str], VerificationRecord] = {}
        self._refund_ledger = InMemoryRefundLedger(self) if refund_ledger else None
        self._dispute_ledger = InMemoryDisputeLedger(self) if dispute_ledger else None

    # Ledger capabilities

    def refund_ledger(self) -> Optional[InMemoryRefundLedger]:
        return self._refund_ledger

    def dispute_ledger(self) -> Optional[InMemoryDisputeLedger]:
        return self._dispute_ledger

    # Transactions

    def save_transaction(self, transaction: PaymentTransaction) -> None:
        with self._lock:
            now = _now()
            self.transactions[transaction.transaction_id] = replace(
                transaction,
                associated_order_ids=list(transaction.associated_order_ids),
                created_at=transaction.created_at or now,
                updated_at=now,
            )

    def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        transaction = self.transactions.get(transaction_id)
        return replace(transaction) if transaction else None

    def mark_transaction(
        self,
        transaction_id: str,
        outcome: TransactionStatus,
        *,
        gateway_response: dict[str, Any] | None = None,
        error_message: str | None = None,
        order_ids: Iterable[str] = (),
    ) -> Optional[PaymentTransaction]:
        with self._lock:
            current = self.transactions.get(transaction_id)
            if current is None:
                return None
            linked = list(current.associated_order_ids)
            for order_id in order_ids:
                if order_id not in linked:
                    linked.append(order_id)
            updated = replace(
                current,
                status=derive_status(outcome, current.amount, current.refunded_amount),
                gateway_response=gateway_response if gateway_response is not None else current.gateway_response,
                error_message=error_message,
                associated_order_ids=linked,
                updated_at=_now(),
            )
            self.transactions[transaction_id] = updated
            return replace(updated)

    def accumulate_refund(
        self, transaction_id: str, amount: Decimal, refund: Refund | None = None
    ) -> Optional[RefundAccumulation]:
        with self._lock:
            current = self.transactions.get(transaction_id)
            if current is None:
                return None
            if refund is not None:
                previous = self.refunds.get(refund.refund_id)
                if previous is not None and previous.status == RefundStatus.SUCCEEDED:
                    return RefundAccumulation(
                        transaction_id=transaction_id,
                        amount=current.amount,
                        refunded_amount=current.refunded_amount,
                        status=current.status,
                        duplicate=True,
                    )
                self._upsert_refund(refund)
            refunded = min(current.refunded_amount + amount, current.amount)
            status = (
                TransactionStatus.REFUNDED
                if refunded >= current.amount
                else TransactionStatus.PARTIALLY_REFUNDED
            )
            self.transactions[transaction_id] = replace(
                current, refunded_amount=refunded, status=status, updated_at=_now()
            )
            return RefundAccumulation(
                transaction_id=transaction_id,
                amount=current.amount,
                refunded_amount=refunded,
                status=status,
            )

    def set_dispute_flag(self, transaction_id: str, flag: bool) -> bool:
        with self._lock:
            current = self.transactions.get(transaction_id)
            if current is None:
                return False
            self.transactions[transaction_id] = replace(current, has_dispute=flag, updated_at=_now())
            return True

    def _upsert_refund(self, refund: Refund) -> Refund:
        existing = self.refunds.get(refund.refund_id)
        now = _now()
        created_at = existing.created_at if existing else (refund.created_at or now)
        stored = replace(refund, created_at=created_at, updated_at=now)
        self.refunds[refund.refund_id] = stored
        return replace(stored)

    # Webhook log

    def insert_webhook_log(self, entry: WebhookLogEntry) -> None:
        with self._lock:
            if entry.request_id in self.webhook_logs:
                raise ValueError(f"Duplicate webhook request id {entry.request_id}")
            self.webhook_logs[entry.request_id] = replace(entry, created_at=entry.created_at or _now())

    def update_webhook_log(
        self, request_id: str, status: WebhookLogStatus, error_message: str | None = None
    ) -> None:
        with self._lock:
            entry = self.webhook_logs.get(request_id)
            if entry is None:
                raise KeyError(request_id)
            self.webhook_logs[request_id] = replace(
                entry, status=status, error_message=error_message, updated_at=_now()
            )

    # Verification cache

    def get_verification(self, gateway: Gateway, transaction_id: str) -> Optional[VerificationRecord]:
        record = self.verifications.get((gateway.value, transaction_id))
        return replace(record) if record else None

    def save_verification(self, record: VerificationRecord) -> None:
        with self._lock:
            self.verifications[(record.gateway.value, record.transaction_id)] = replace(record)

    # Metrics

    def transaction_status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for transaction in list(self.transactions.values()):
            counts[transaction.status.value] = counts.get(transaction.status.value, 0) + 1
        return counts

    def webhook_log_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in list(self.webhook_logs.values()):
            counts[entry.status.value] = counts.get(entry.status.value, 0) + 1
        return counts


class InMemoryOrderStore:
    """Order/quote status transitions kept in memory."""

    PAYABLE_STATUSES = frozenset({"approved", "sent"})

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.orders: Dict[str, dict[str, Any]] = {}

    def add(self, order_id: str, status: str = "approved", payment_transaction_id: str | None = None) -> None:
        self.orders[order_id] = {"status": status, "payment_transaction_id": payment_transaction_id}

    def mark_paid(self, transaction_id: str, order_ids: Iterable[str]) -> int:
        updated = 0
        with self._lock:
            for order_id in order_ids:
                order = self.orders.get(order_id)
                if order is None or order["status"] not in self.PAYABLE_STATUSES:
                    continue
                order.update(status="paid", payment_transaction_id=transaction_id, paid_at=_now())
                updated += 1
        return updated

    def revert_to_unpaid(self, transaction_id: str, order_ids: Iterable[str]) -> int:
        wanted = set(order_ids)
        updated = 0
        with self._lock:
            for order_id, order in self.orders.items():
                if order.get("payment_transaction_id") != transaction_id:
                    continue
                if wanted and order_id not in wanted:
                    continue
                order.update(status="approved", payment_transaction_id=None)
                updated += 1
        return updated
