from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from payrecon.domain.dtos import DisputeObject, PaymentObject, RefundObject, WebhookEvent
from payrecon.domain.enums import EventCategory
from payrecon.domain.models import Dispute, Refund, qualify_id
from payrecon.domain.statuses import CanonicalStatus, DisputeStatus, RefundStatus, TransactionStatus
from payrecon.utils.money import to_major_units

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    success: bool
    error: str | None = None
    transaction_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class ReconciliationEngine:
    """Applies verified gateway events to transactions, refunds and disputes.

    ``apply`` never raises. Any problem inside a handler, including storage
    errors and malformed event objects, comes back as a failed
    ``ReconciliationResult`` so the webhook can still be acknowledged.
    """

    def __init__(self, store: Any, orders: Any):
        self.store = store
        self.orders = orders
        self._handlers: dict[EventCategory, Callable[[WebhookEvent], ReconciliationResult]] = {
            EventCategory.PAYMENT_SUCCEEDED: self._payment_succeeded,
            EventCategory.PAYMENT_FAILED: self._payment_failed,
            EventCategory.PAYMENT_CANCELLED: self._payment_failed,
            EventCategory.REFUND_SUCCEEDED: self._refund_succeeded,
            EventCategory.REFUND_FAILED: self._refund_failed,
            EventCategory.DISPUTE_CREATED: self._dispute_created,
            EventCategory.DISPUTE_UPDATED: self._dispute_updated,
        }

    def apply(self, event: WebhookEvent) -> ReconciliationResult:
        handler = self._handlers.get(event.category) if event.category else None
        if handler is None:
            logger.info(
                "unhandled webhook event",
                extra={"gateway": event.gateway, "event_type": event.event_type, "event_id": event.event_id},
            )
            return ReconciliationResult(success=True, details={"handled": False})
        try:
            result = handler(event)
        except ValidationError as exc:
            result = ReconciliationResult(
                success=False,
                error=f"Invalid {event.event_type} object: {exc.error_count()} validation error(s)",
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "reconciliation handler error",
                extra={"gateway": event.gateway, "event_type": event.event_type, "event_id": event.event_id},
            )
            result = ReconciliationResult(success=False, error=str(exc) or exc.__class__.__name__)
        if not result.success:
            logger.warning(
                "reconciliation failed",
                extra={
                    "gateway": event.gateway,
                    "event_type": event.event_type,
                    "event_id": event.event_id,
                    "transaction_id": result.transaction_id,
                    "error": result.error,
                },
            )
        return result

    def _unknown_transaction(self, transaction_id: str) -> ReconciliationResult:
        return ReconciliationResult(
            success=False,
            error=f"Transaction {transaction_id} not found",
            transaction_id=transaction_id,
        )

    def _payment_succeeded(self, event: WebhookEvent) -> ReconciliationResult:
        payment = PaymentObject.model_validate(event.data)
        transaction_id = qualify_id(event.gateway, payment.id)
        order_ids = payment.order_ids()
        transaction = self.store.mark_transaction(
            transaction_id,
            TransactionStatus.COMPLETED,
            gateway_response=event.data,
            error_message=None,
            order_ids=order_ids,
        )
        if transaction is None:
            return self._unknown_transaction(transaction_id)
        details: dict[str, Any] = {"status": transaction.status.value, "orders_updated": 0}
        if payment.amount is not None and payment.currency:
            reported = to_major_units(payment.amount, payment.currency)
            if reported != transaction.amount or payment.currency != transaction.currency.upper():
                details["amount_mismatch"] = True
                logger.warning(
                    "payment amount differs from transaction",
                    extra={
                        "transaction_id": transaction_id,
                        "amount": reported,
                        "currency": payment.currency,
                    },
                )
        if order_ids:
            details["orders_updated"] = self.orders.mark_paid(transaction_id, order_ids)
        logger.info(
            "payment succeeded applied",
            extra={"transaction_id": transaction_id, "status": transaction.status, "order_ids": order_ids},
        )
        return ReconciliationResult(success=True, transaction_id=transaction_id, details=details)

    def _payment_failed(self, event: WebhookEvent) -> ReconciliationResult:
        payment = PaymentObject.model_validate(event.data)
        transaction_id = qualify_id(event.gateway, payment.id)
        if event.category == EventCategory.PAYMENT_CANCELLED:
            outcome = TransactionStatus.CANCELLED
        else:
            outcome = TransactionStatus.FAILED
        current = self.store.get_transaction(transaction_id)
        if current is None:
            return self._unknown_transaction(transaction_id)
        if current.status.canonical == CanonicalStatus.COMPLETED:
            # A failed attempt delivered after the payment settled; the paid state stands.
            logger.warning(
                "payment failure ignored for settled transaction",
                extra={"transaction_id": transaction_id, "status": current.status, "event_id": event.event_id},
            )
            return ReconciliationResult(
                success=True,
                transaction_id=transaction_id,
                details={"status": current.status.value, "ignored": True, "orders_reverted": 0},
            )
        reason = payment.failure_reason(default=f"Payment {outcome.value}")
        transaction = self.store.mark_transaction(
            transaction_id,
            outcome,
            gateway_response=event.data,
            error_message=reason,
        )
        if transaction is None:
            return self._unknown_transaction(transaction_id)
        reverted = self.orders.revert_to_unpaid(transaction_id, payment.order_ids())
        logger.info(
            "payment failure applied",
            extra={"transaction_id": transaction_id, "status": transaction.status, "error": reason},
        )
        return ReconciliationResult(
            success=True,
            transaction_id=transaction_id,
            details={"status": transaction.status.value, "orders_reverted": reverted},
        )

    def _refund_succeeded(self, event: WebhookEvent) -> ReconciliationResult:
        refund = RefundObject.model_validate(event.data)
        if not refund.payment_intent_id:
            return ReconciliationResult(success=False, error=f"Refund {refund.id} has no payment reference")
        transaction_id = qualify_id(event.gateway, refund.payment_intent_id)
        transaction = self.store.get_transaction(transaction_id)
        if transaction is None:
            return self._unknown_transaction(transaction_id)
        currency = refund.currency or transaction.currency.upper()
        if currency != transaction.currency.upper():
            return ReconciliationResult(
                success=False,
                error=f"Refund currency {currency} does not match transaction currency {transaction.currency}",
                transaction_id=transaction_id,
            )
        amount = to_major_units(refund.amount, currency)
        if amount <= 0:
            return ReconciliationResult(
                success=False, error=f"Refund {refund.id} has no positive amount", transaction_id=transaction_id
            )

        record: Refund | None = None
        if self.store.refund_ledger() is not None:
            record = Refund(
                refund_id=qualify_id(event.gateway, f"refund_{refund.id}"),
                transaction_id=transaction_id,
                amount=amount,
                currency=currency,
                status=RefundStatus.SUCCEEDED,
                reason=refund.reason,
                gateway_response=event.data,
            )
        outcome = self.store.accumulate_refund(transaction_id, amount, record)
        if outcome is None:
            return self._unknown_transaction(transaction_id)
        logger.info(
            "refund applied",
            extra={
                "transaction_id": transaction_id,
                "refund_id": refund.id,
                "amount": amount,
                "refunded_amount": outcome.refunded_amount,
                "status": outcome.status,
            },
        )
        return ReconciliationResult(
            success=True,
            transaction_id=transaction_id,
            details={
                "status": outcome.status.value,
                "refunded_amount": str(outcome.refunded_amount),
                "duplicate": outcome.duplicate,
                "ledger": record is not None,
            },
        )

    def _refund_failed(self, event: WebhookEvent) -> ReconciliationResult:
        refund = RefundObject.model_validate(event.data)
        if not refund.payment_intent_id:
            return ReconciliationResult(success=False, error=f"Refund {refund.id} has no payment reference")
        transaction_id = qualify_id(event.gateway, refund.payment_intent_id)
        transaction = self.store.get_transaction(transaction_id)
        if transaction is None:
            return self._unknown_transaction(transaction_id)
        ledger = self.store.refund_ledger()
        if ledger is None:
            logger.info(
                "refund ledger unavailable, failed refund not recorded",
                extra={"transaction_id": transaction_id, "refund_id": refund.id},
            )
            return ReconciliationResult(success=True, transaction_id=transaction_id, details={"ledger": False})
        currency = refund.currency or transaction.currency.upper()
        ledger.upsert(
            Refund(
                refund_id=qualify_id(event.gateway, f"refund_{refund.id}"),
                transaction_id=transaction_id,
                amount=to_major_units(refund.amount, currency),
                currency=currency,
                status=RefundStatus.FAILED,
                reason=refund.reason,
                failure_reason=refund.failure_reason or "Refund failed",
                gateway_response=event.data,
            )
        )
        logger.warning(
            "refund failed at gateway",
            extra={"transaction_id": transaction_id, "refund_id": refund.id, "error": refund.failure_reason},
        )
        return ReconciliationResult(success=True, transaction_id=transaction_id, details={"ledger": True})

    def _dispute_record(self, event: WebhookEvent, dispute: DisputeObject, status: DisputeStatus,
                        transaction_id: str, currency: str) -> Dispute:
        return Dispute(
            dispute_id=qualify_id(event.gateway, f"dispute_{dispute.id}"),
            transaction_id=transaction_id,
            amount=to_major_units(dispute.amount, currency),
            currency=currency,
            status=status,
            reason=dispute.reason,
            evidence_due_by=dispute.evidence_due_by,
            gateway=event.gateway,
            gateway_response=event.data,
        )

    def _dispute_created(self, event: WebhookEvent) -> ReconciliationResult:
        dispute = DisputeObject.model_validate(event.data)
        if not dispute.payment_intent_id:
            return ReconciliationResult(success=False, error=f"Dispute {dispute.id} has no payment reference")
        status = DisputeStatus.parse(dispute.status) or DisputeStatus.NEEDS_RESPONSE
        transaction_id = qualify_id(event.gateway, dispute.payment_intent_id)
        transaction = self.store.get_transaction(transaction_id)
        if transaction is None:
            return self._unknown_transaction(transaction_id)
        ledger = self.store.dispute_ledger()
        if ledger is not None:
            currency = dispute.currency or transaction.currency.upper()
            ledger.upsert(self._dispute_record(event, dispute, status, transaction_id, currency))
        else:
            logger.warning(
                "dispute ledger unavailable, dispute needs manual tracking",
                extra={"transaction_id": transaction_id, "dispute_id": dispute.id},
            )
        self.store.set_dispute_flag(transaction_id, True)
        logger.warning(
            "dispute opened",
            extra={
                "transaction_id": transaction_id,
                "dispute_id": dispute.id,
                "status": status,
                "amount": dispute.amount,
            },
        )
        return ReconciliationResult(
            success=True,
            transaction_id=transaction_id,
            details={"dispute_status": status.value, "ledger": ledger is not None},
        )

    def _dispute_updated(self, event: WebhookEvent) -> ReconciliationResult:
        dispute = DisputeObject.model_validate(event.data)
        if not dispute.payment_intent_id:
            return ReconciliationResult(success=False, error=f"Dispute {dispute.id} has no payment reference")
        transaction_id = qualify_id(event.gateway, dispute.payment_intent_id)
        status = DisputeStatus.parse(dispute.status)
        if status is None:
            return ReconciliationResult(
                success=False,
                error=f"Unrecognized dispute status {dispute.status!r}",
                transaction_id=transaction_id,
            )
        transaction = self.store.get_transaction(transaction_id)
        if transaction is None:
            return self._unknown_transaction(transaction_id)
        ledger = self.store.dispute_ledger()
        if ledger is not None:
            currency = dispute.currency or transaction.currency.upper()
            ledger.upsert(self._dispute_record(event, dispute, status, transaction_id, currency))
        if status.is_terminal:
            self.store.set_dispute_flag(transaction_id, False)
        logger.info(
            "dispute updated",
            extra={"transaction_id": transaction_id, "dispute_id": dispute.id, "status": status},
        )
        return ReconciliationResult(
            success=True,
            transaction_id=transaction_id,
            details={"dispute_status": status.value, "ledger": ledger is not None},
        )
