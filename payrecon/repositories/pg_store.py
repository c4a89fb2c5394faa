from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Optional

from psycopg2.extras import Json

from payrecon.db.client import get_conn
from payrecon.domain.enums import Gateway
from payrecon.domain.models import (
    Dispute,
    PaymentTransaction,
    Refund,
    RefundAccumulation,
    VerificationRecord,
    WebhookLogEntry,
)
from payrecon.domain.statuses import (
    CanonicalStatus,
    RefundStatus,
    TransactionStatus,
    WebhookLogStatus,
)

_TRANSACTION_COLUMNS = """
    transaction_id, gateway, amount, currency, status, refunded_amount,
    has_dispute, associated_order_ids, gateway_response, error_message,
    created_at, updated_at
"""

# Recomputes the status projection from the row's own refund total.
_STATUS_PROJECTION = """
    CASE WHEN refunded_amount > 0 AND refunded_amount >= amount THEN 'refunded'
         WHEN refunded_amount > 0 THEN 'partially_refunded'
         ELSE %s END
"""


def _hydrate_transaction(row: tuple[Any, ...]) -> PaymentTransaction:
    (
        transaction_id,
        gateway,
        amount,
        currency,
        status,
        refunded_amount,
        has_dispute,
        associated_order_ids,
        gateway_response,
        error_message,
        created_at,
        updated_at,
    ) = row
    return PaymentTransaction(
        transaction_id=str(transaction_id),
        gateway=Gateway(str(gateway)),
        amount=Decimal(amount),
        currency=str(currency),
        status=TransactionStatus(str(status)),
        refunded_amount=Decimal(refunded_amount or 0),
        has_dispute=bool(has_dispute),
        associated_order_ids=list(associated_order_ids or []),
        gateway_response=dict(gateway_response or {}),
        error_message=error_message,
        created_at=created_at,
        updated_at=updated_at,
    )


def _table_exists(table: str) -> bool:
    with get_conn() as conn:
        if conn is None:
            return False
        with conn.cursor() as cur:
            cur.execute("SELECT to_regclass(%s)", (table,))
            row = cur.fetchone()
            return bool(row and row[0])


class PgRefundLedger:
    """Rows in the optional ``refunds`` table."""

    def upsert(self, refund: Refund) -> Refund:
        with get_conn() as conn:
            with conn.cursor() as cur:
                _upsert_refund(cur, refund, only_if_not_succeeded=False)
        return refund

    def get(self, refund_id: str) -> Optional[Refund]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT refund_id, transaction_id, amount, currency, status,
                           reason, failure_reason, gateway_response, created_at, updated_at
                      FROM refunds
                     WHERE refund_id = %s
                    """,
                    (refund_id,),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return Refund(
                    refund_id=str(row[0]),
                    transaction_id=str(row[1]),
                    amount=Decimal(row[2]),
                    currency=str(row[3]),
                    status=RefundStatus(str(row[4])),
                    reason=row[5],
                    failure_reason=row[6],
                    gateway_response=dict(row[7] or {}),
                    created_at=row[8],
                    updated_at=row[9],
                )


def _upsert_refund(cur: Any, refund: Refund, *, only_if_not_succeeded: bool) -> bool:
    """Insert or update a refund row; False when the guard skipped the write."""

    guard = "WHERE refunds.status <> 'succeeded'" if only_if_not_succeeded else ""
    cur.execute(
        f"""
        INSERT INTO refunds (
            refund_id, transaction_id, amount, currency, status,
            reason, failure_reason, gateway_response, created_at, updated_at
        ) VALUES (
            %s, %s, %s, %s, %s,
            %s, %s, %s, COALESCE(%s, NOW()), NOW()
        )
        ON CONFLICT (refund_id) DO UPDATE
            SET status = EXCLUDED.status,
                amount = EXCLUDED.amount,
                reason = COALESCE(EXCLUDED.reason, refunds.reason),
                failure_reason = EXCLUDED.failure_reason,
                gateway_response = EXCLUDED.gateway_response,
                updated_at = NOW()
            {guard}
        RETURNING refund_id
        """,
        (
            refund.refund_id,
            refund.transaction_id,
            refund.amount,
            refund.currency,
            refund.status.value,
            refund.reason,
            refund.failure_reason,
            Json(refund.gateway_response or {}),
            refund.created_at,
        ),
    )
    return cur.fetchone() is not None


class PgDisputeLedger:
    """Rows in the optional ``disputes`` table."""

    def upsert(self, dispute: Dispute) -> Dispute:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO disputes (
                        dispute_id, transaction_id, gateway, amount, currency, status,
                        reason, evidence_due_by, gateway_response, created_at, updated_at
                    ) VALUES (
                        %s, %s, %s, %s, %s, %s,
                        %s, %s, %s, COALESCE(%s, NOW()), NOW()
                    )
                    ON CONFLICT (dispute_id) DO UPDATE
                        SET status = EXCLUDED.status,
                            amount = COALESCE(NULLIF(EXCLUDED.amount, 0), disputes.amount),
                            reason = COALESCE(EXCLUDED.reason, disputes.reason),
                            evidence_due_by = COALESCE(EXCLUDED.evidence_due_by, disputes.evidence_due_by),
                            gateway_response = EXCLUDED.gateway_response,
                            updated_at = NOW()
                    """,
                    (
                        dispute.dispute_id,
                        dispute.transaction_id,
                        dispute.gateway.value if dispute.gateway else None,
                        dispute.amount,
                        dispute.currency,
                        dispute.status.value,
                        dispute.reason,
                        dispute.evidence_due_by,
                        Json(dispute.gateway_response or {}),
                        dispute.created_at,
                    ),
                )
        return dispute


class PgLedgerStore:
    """PostgreSQL-backed payment ledger using raw psycopg2."""

    def refund_ledger(self) -> Optional[PgRefundLedger]:
        return PgRefundLedger() if _table_exists("refunds") else None

    def dispute_ledger(self) -> Optional[PgDisputeLedger]:
        return PgDisputeLedger() if _table_exists("disputes") else None

    def save_transaction(self, transaction: PaymentTransaction) -> None:
        with get_conn() as conn:
            if conn is None:
                return
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO payment_transactions (
                        transaction_id, gateway, amount, currency, status, refunded_amount,
                        has_dispute, associated_order_ids, gateway_response, error_message,
                        created_at, updated_at
                    ) VALUES (
                        %s, %s, %s, %s, %s, %s,
                        %s, %s, %s, %s,
                        NOW(), NOW()
                    )
                    ON CONFLICT (transaction_id) DO NOTHING
                    """,
                    (
                        transaction.transaction_id,
                        transaction.gateway.value,
                        transaction.amount,
                        transaction.currency,
                        transaction.status.value,
                        transaction.refunded_amount,
                        transaction.has_dispute,
                        list(transaction.associated_order_ids),
                        Json(transaction.gateway_response or {}),
                        transaction.error_message,
                    ),
                )

    def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_TRANSACTION_COLUMNS} FROM payment_transactions WHERE transaction_id = %s",
                    (transaction_id,),
                )
                row = cur.fetchone()
                return _hydrate_transaction(row) if row else None

    def mark_transaction(
        self,
        transaction_id: str,
        outcome: TransactionStatus,
        *,
        gateway_response: dict[str, Any] | None = None,
        error_message: str | None = None,
        order_ids: Iterable[str] = (),
    ) -> Optional[PaymentTransaction]:
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE payment_transactions
                       SET status = {_STATUS_PROJECTION},
                           gateway_response = COALESCE(%s, gateway_response),
                           error_message = %s,
                           associated_order_ids = associated_order_ids || ARRAY(
                               SELECT x FROM unnest(%s::text[]) WITH ORDINALITY AS t(x, n)
                                WHERE x <> ALL(associated_order_ids)
                                ORDER BY n
                           ),
                           updated_at = NOW()
                     WHERE transaction_id = %s
                 RETURNING {_TRANSACTION_COLUMNS}
                    """,
                    (
                        outcome.value,
                        Json(gateway_response) if gateway_response is not None else None,
                        error_message,
                        list(order_ids),
                        transaction_id,
                    ),
                )
                row = cur.fetchone()
                return _hydrate_transaction(row) if row else None

    def accumulate_refund(
        self, transaction_id: str, amount: Decimal, refund: Refund | None = None
    ) -> Optional[RefundAccumulation]:
        """Add ``amount`` to the refund total in one statement, capped at the payment amount.

        When ``refund`` is given it is recorded in the same database
        transaction; a refund already stored as succeeded is not counted twice.
        """
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT amount, refunded_amount, status FROM payment_transactions WHERE transaction_id = %s",
                    (transaction_id,),
                )
                current = cur.fetchone()
                if not current:
                    return None
                if refund is not None and not _upsert_refund(cur, refund, only_if_not_succeeded=True):
                    return RefundAccumulation(
                        transaction_id=transaction_id,
                        amount=Decimal(current[0]),
                        refunded_amount=Decimal(current[1]),
                        status=TransactionStatus(str(current[2])),
                        duplicate=True,
                    )
                cur.execute(
                    """
                    UPDATE payment_transactions
                       SET refunded_amount = LEAST(refunded_amount + %s, amount),
                           status = CASE WHEN refunded_amount + %s >= amount
                                         THEN 'refunded' ELSE 'partially_refunded' END,
                           updated_at = NOW()
                     WHERE transaction_id = %s
                 RETURNING amount, refunded_amount, status
                    """,
                    (amount, amount, transaction_id),
                )
                row = cur.fetchone()
                return RefundAccumulation(
                    transaction_id=transaction_id,
                    amount=Decimal(row[0]),
                    refunded_amount=Decimal(row[1]),
                    status=TransactionStatus(str(row[2])),
                )

    def set_dispute_flag(self, transaction_id: str, flag: bool) -> bool:
        with get_conn() as conn:
            if conn is None:
                return False
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE payment_transactions
                       SET has_dispute = %s, updated_at = NOW()
                     WHERE transaction_id = %s
                    """,
                    (flag, transaction_id),
                )
                return cur.rowcount > 0

    def insert_webhook_log(self, entry: WebhookLogEntry) -> None:
        with get_conn() as conn:
            if conn is None:
                raise RuntimeError("Database not configured")
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO webhook_logs (
                        request_id, webhook_type, event_type, event_id, status,
                        user_agent, payload_size, test_mode, created_at
                    ) VALUES (
                        %s, %s, %s, %s, %s,
                        %s, %s, %s, NOW()
                    )
                    """,
                    (
                        entry.request_id,
                        entry.webhook_type,
                        entry.event_type,
                        entry.event_id,
                        entry.status.value,
                        entry.user_agent,
                        entry.payload_size,
                        entry.test_mode,
                    ),
                )

    def update_webhook_log(
        self, request_id: str, status: WebhookLogStatus, error_message: str | None = None
    ) -> None:
        with get_conn() as conn:
            if conn is None:
                raise RuntimeError("Database not configured")
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE webhook_logs
                       SET status = %s, error_message = %s, updated_at = NOW()
                     WHERE request_id = %s
                    """,
                    (status.value, error_message, request_id),
                )

    def get_verification(self, gateway: Gateway, transaction_id: str) -> Optional[VerificationRecord]:
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT status, verified_at, gateway_status, amount, currency, recommendations
                      FROM payment_verifications
                     WHERE gateway = %s AND transaction_id = %s
                    """,
                    (gateway.value, transaction_id),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return VerificationRecord(
                    transaction_id=transaction_id,
                    gateway=gateway,
                    status=CanonicalStatus(str(row[0])),
                    verified_at=row[1],
                    gateway_status=row[2],
                    amount=Decimal(row[3]) if row[3] is not None else None,
                    currency=row[4],
                    recommendations=list(row[5] or []),
                )

    def save_verification(self, record: VerificationRecord) -> None:
        with get_conn() as conn:
            if conn is None:
                return
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO payment_verifications (
                        gateway, transaction_id, status, verified_at,
                        gateway_status, amount, currency, recommendations
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (gateway, transaction_id) DO UPDATE
                        SET status = EXCLUDED.status,
                            verified_at = EXCLUDED.verified_at,
                            gateway_status = EXCLUDED.gateway_status,
                            amount = EXCLUDED.amount,
                            currency = EXCLUDED.currency,
                            recommendations = EXCLUDED.recommendations
                    """,
                    (
                        record.gateway.value,
                        record.transaction_id,
                        record.status.value,
                        record.verified_at,
                        record.gateway_status,
                        record.amount,
                        record.currency,
                        Json(record.recommendations),
                    ),
                )

    def transaction_status_counts(self) -> dict[str, int]:
        return self._group_counts("SELECT status, COUNT(*) FROM payment_transactions GROUP BY status")

    def webhook_log_counts(self) -> dict[str, int]:
        return self._group_counts(
            "SELECT status, COUNT(*) FROM webhook_logs WHERE created_at >= NOW() - INTERVAL '1 day' GROUP BY status"
        )

    def _group_counts(self, query: str) -> dict[str, int]:
        with get_conn() as conn:
            if conn is None:
                return {}
            with conn.cursor() as cur:
                cur.execute(query)
                return {str(key): int(count) for key, count in (cur.fetchall() or [])}


class PgOrderStore:
    """Status transitions on the external ``quotes`` table."""

    def mark_paid(self, transaction_id: str, order_ids: Iterable[str]) -> int:
        ids = list(order_ids)
        if not ids:
            return 0
        with get_conn() as conn:
            if conn is None:
                return 0
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE quotes
                       SET status = 'paid',
                           payment_transaction_id = %s,
                           paid_at = NOW(),
                           updated_at = NOW()
                     WHERE id::text = ANY(%s)
                       AND status IN ('approved', 'sent')
                    """,
                    (transaction_id, ids),
                )
                return cur.rowcount

    def revert_to_unpaid(self, transaction_id: str, order_ids: Iterable[str]) -> int:
        ids = list(order_ids)
        with get_conn() as conn:
            if conn is None:
                return 0
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE quotes
                       SET status = 'approved',
                           payment_transaction_id = NULL,
                           updated_at = NOW()
                     WHERE payment_transaction_id = %s
                       AND (cardinality(%s::text[]) = 0 OR id::text = ANY(%s))
                    """,
                    (transaction_id, ids, ids),
                )
                return cur.rowcount
