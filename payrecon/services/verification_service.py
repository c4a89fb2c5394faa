from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from payrecon.config import Settings
from payrecon.domain.dtos import VerificationRequest, VerificationResult
from payrecon.domain.enums import Gateway
from payrecon.domain.models import VerificationRecord, native_id
from payrecon.domain.statuses import CanonicalStatus
from payrecon.providers.base import (
    GatewayPaymentSnapshot,
    GatewayQueryClient,
    GatewayQueryError,
    GatewaySession,
    GatewayTimeoutError,
)
from payrecon.providers.factory import get_query_client
from payrecon.utils.money import to_major_units

logger = logging.getLogger(__name__)

VERIFICATION_FRESHNESS = timedelta(minutes=2)

ClientFactory = Callable[[Gateway], Optional[GatewayQueryClient]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class VerificationService:
    """Pull-based payment status check against the gateway itself.

    Gateways without a query API (bank transfers) fall back to the stored
    transaction. Results for query-capable gateways are persisted and reused
    for ``VERIFICATION_FRESHNESS`` unless the caller forces a refresh.
    """

    def __init__(
        self,
        store: Any,
        settings: Settings,
        client_factory: ClientFactory | None = None,
    ):
        self.store = store
        self.settings = settings
        self._client_factory = client_factory or (lambda gateway: get_query_client(gateway, settings))
        self._clients: dict[Gateway, Optional[GatewayQueryClient]] = {}

    def _client(self, gateway: Gateway) -> Optional[GatewayQueryClient]:
        if gateway not in self._clients:
            self._clients[gateway] = self._client_factory(gateway)
        return self._clients[gateway]

    async def verify(
        self, request: VerificationRequest, session: GatewaySession | None = None
    ) -> tuple[VerificationResult, GatewaySession | None]:
        gateway = request.gateway
        try:
            client = self._client(gateway)
        except ValueError as exc:
            logger.info(
                "verification client unavailable",
                extra={"gateway": gateway, "transaction_id": request.transaction_id, "error": str(exc)},
            )
            return self._failure(request, "Gateway not configured for verification"), session
        if client is None:
            return self._from_stored_transaction(request), session

        if not request.force_refresh:
            cached = self._fresh_record(gateway, request.transaction_id)
            if cached is not None:
                logger.info(
                    "verification cache hit",
                    extra={"gateway": gateway, "transaction_id": request.transaction_id, "status": cached.status},
                )
                return self._from_record(request, cached), session

        payment_id = native_id(gateway, request.transaction_id)
        try:
            snapshot, session = await client.retrieve(payment_id, session)
        except GatewayTimeoutError as exc:
            logger.warning(
                "verification timed out",
                extra={"gateway": gateway, "transaction_id": request.transaction_id, "error": str(exc)},
            )
            return self._failure(
                request, str(exc), ["Gateway did not respond in time; retry the verification later."]
            ), session
        except GatewayQueryError as exc:
            logger.warning(
                "verification query failed",
                extra={"gateway": gateway, "transaction_id": request.transaction_id, "error": str(exc)},
            )
            return self._failure(request, str(exc)), session

        result, status_hints = self._from_snapshot(request, client, snapshot)
        record = VerificationRecord(
            transaction_id=request.transaction_id,
            gateway=gateway,
            status=result.status,
            verified_at=result.verified_at or _now(),
            gateway_status=result.gateway_status,
            amount=result.amount,
            currency=result.currency,
            recommendations=status_hints,
        )
        try:
            self.store.save_verification(record)
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "verification record save failed",
                extra={"gateway": gateway, "transaction_id": request.transaction_id, "error": str(exc)},
            )
        logger.info(
            "verification completed",
            extra={
                "gateway": gateway,
                "transaction_id": request.transaction_id,
                "status": result.status,
                "currency": result.currency,
                "amount": result.amount,
            },
        )
        return result, session

    async def verify_batch(self, requests: Iterable[VerificationRequest]) -> list[VerificationResult]:
        """Verify sequentially, reusing one gateway session per gateway."""

        sessions: dict[Gateway, GatewaySession | None] = {}
        results: list[VerificationResult] = []
        for request in requests:
            result, session = await self.verify(request, sessions.get(request.gateway))
            sessions[request.gateway] = session
            results.append(result)
        return results

    def _fresh_record(self, gateway: Gateway, transaction_id: str) -> VerificationRecord | None:
        try:
            record = self.store.get_verification(gateway, transaction_id)
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "verification cache lookup failed",
                extra={"gateway": gateway, "transaction_id": transaction_id, "error": str(exc)},
            )
            return None
        if record is None or _now() - record.verified_at >= VERIFICATION_FRESHNESS:
            return None
        return record

    def _from_snapshot(
        self, request: VerificationRequest, client: GatewayQueryClient, snapshot: GatewayPaymentSnapshot
    ) -> tuple[VerificationResult, list[str]]:
        """Build the result plus the status hints that are safe to cache.

        Expectation hints depend on the caller and are never stored.
        """
        mapped = client.map_status(snapshot.native_status)
        amount: Decimal | None = None
        if snapshot.amount_minor is not None:
            amount = to_major_units(snapshot.amount_minor, snapshot.currency or request.expected_currency or "")
        amount_matches, currency_matches = _compare(request, amount, snapshot.currency)

        status_hints: list[str] = []
        if mapped is None:
            status = CanonicalStatus.PENDING
            status_hints.append(
                f"Gateway reported unrecognized status '{snapshot.native_status}'; review the payment manually."
            )
        else:
            status = mapped
            status_hints.extend(_status_recommendations(status, snapshot))
        recommendations = status_hints + _expectation_hints(
            request, amount, snapshot.currency, amount_matches, currency_matches
        )
        result = VerificationResult(
            transaction_id=request.transaction_id,
            gateway=request.gateway,
            status=status,
            success=True,
            amount=amount,
            currency=snapshot.currency,
            gateway_status=snapshot.native_status or None,
            amount_matches=amount_matches,
            currency_matches=currency_matches,
            recommendations=recommendations,
            error=snapshot.error_message,
            verified_at=_now(),
        )
        return result, list(status_hints)

    def _from_record(self, request: VerificationRequest, record: VerificationRecord) -> VerificationResult:
        amount_matches, currency_matches = _compare(request, record.amount, record.currency)
        return VerificationResult(
            transaction_id=record.transaction_id,
            gateway=record.gateway,
            status=record.status,
            amount=record.amount,
            currency=record.currency,
            gateway_status=record.gateway_status,
            amount_matches=amount_matches,
            currency_matches=currency_matches,
            recommendations=list(record.recommendations)
            + _expectation_hints(request, record.amount, record.currency, amount_matches, currency_matches),
            cached=True,
            verified_at=record.verified_at,
        )

    def _from_stored_transaction(self, request: VerificationRequest) -> VerificationResult:
        transaction = self.store.get_transaction(request.transaction_id)
        if transaction is None:
            logger.info(
                "verification without stored record",
                extra={"gateway": request.gateway, "transaction_id": request.transaction_id},
            )
            return VerificationResult(
                transaction_id=request.transaction_id,
                gateway=request.gateway,
                status=CanonicalStatus.PENDING,
                recommendations=[
                    "No payment record found; ask the customer to supply proof of payment for manual review."
                ],
                verified_at=_now(),
            )
        status = transaction.status.canonical
        amount_matches, currency_matches = _compare(request, transaction.amount, transaction.currency)
        recommendations: list[str] = []
        if status == CanonicalStatus.PENDING:
            recommendations.append("Transfer not yet confirmed; check the bank statement or request proof of payment.")
        elif status == CanonicalStatus.FAILED:
            recommendations.append(
                f"Payment recorded as {transaction.status.value}"
                + (f": {transaction.error_message}" if transaction.error_message else "")
                + "."
            )
        if amount_matches is False:
            recommendations.append(
                f"Amount mismatch: expected {request.expected_amount}, record shows {transaction.amount}."
            )
        return VerificationResult(
            transaction_id=request.transaction_id,
            gateway=request.gateway,
            status=status,
            amount=transaction.amount,
            currency=transaction.currency,
            gateway_status=transaction.status.value,
            amount_matches=amount_matches,
            currency_matches=currency_matches,
            recommendations=recommendations,
            error=transaction.error_message,
            verified_at=_now(),
        )

    @staticmethod
    def _failure(
        request: VerificationRequest, error: str, recommendations: list[str] | None = None
    ) -> VerificationResult:
        return VerificationResult(
            transaction_id=request.transaction_id,
            gateway=request.gateway,
            status=CanonicalStatus.PENDING,
            success=False,
            recommendations=recommendations or ["Status could not be confirmed; retry the verification later."],
            error=error,
            verified_at=_now(),
        )


def _compare(
    request: VerificationRequest, amount: Decimal | None, currency: str | None
) -> tuple[bool | None, bool | None]:
    amount_matches = None
    if request.expected_amount is not None and amount is not None:
        amount_matches = Decimal(request.expected_amount) == amount
    currency_matches = None
    if request.expected_currency and currency:
        currency_matches = request.expected_currency.strip().upper() == currency.upper()
    return amount_matches, currency_matches


def _expectation_hints(
    request: VerificationRequest,
    amount: Decimal | None,
    currency: str | None,
    amount_matches: bool | None,
    currency_matches: bool | None,
) -> list[str]:
    hints: list[str] = []
    if amount_matches is False:
        hints.append(
            f"Amount mismatch: expected {request.expected_amount}, gateway reports {amount}. "
            "Do not fulfil before reviewing."
        )
    if currency_matches is False:
        hints.append(f"Currency mismatch: expected {request.expected_currency}, gateway reports {currency}.")
    return hints


def _status_recommendations(status: CanonicalStatus, snapshot: GatewayPaymentSnapshot) -> list[str]:
    if status == CanonicalStatus.COMPLETED:
        return ["Payment confirmed by the gateway."]
    if status == CanonicalStatus.PENDING:
        return ["Payment not final yet; verify again later or wait for the webhook."]
    detail = snapshot.error_message or snapshot.error_code
    if detail:
        return [f"Payment failed ({detail}); ask the customer to retry with another payment method."]
    return ["Payment failed; ask the customer to retry with another payment method."]
