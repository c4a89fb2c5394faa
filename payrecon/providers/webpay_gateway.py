from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

from transbank.common.integration_type import IntegrationType  # type: ignore[import-untyped]
from transbank.common.options import WebpayOptions  # type: ignore[import-untyped]
from transbank.webpay.webpay_plus.transaction import Transaction  # type: ignore[import-untyped]

from payrecon.config import Settings
from payrecon.domain.enums import Gateway
from payrecon.domain.statuses import CanonicalStatus

from .base import (
    MALFORMED_REPLY_ERRORS,
    GatewayPaymentSnapshot,
    GatewayQueryClient,
    GatewayQueryError,
    GatewaySession,
    GatewayTimeoutError,
)

logger = logging.getLogger(__name__)


class WebpayTransactionStatus(str, Enum):
    INITIALIZED = "INITIALIZED"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    REVERSED = "REVERSED"
    FAILED = "FAILED"
    NULLIFIED = "NULLIFIED"
    PARTIALLY_NULLIFIED = "PARTIALLY_NULLIFIED"


WEBPAY_STATUS_TABLE = {
    WebpayTransactionStatus.INITIALIZED: CanonicalStatus.PENDING,
    WebpayTransactionStatus.AUTHORIZED: CanonicalStatus.COMPLETED,
    WebpayTransactionStatus.CAPTURED: CanonicalStatus.COMPLETED,
    WebpayTransactionStatus.PARTIALLY_NULLIFIED: CanonicalStatus.COMPLETED,
    WebpayTransactionStatus.REVERSED: CanonicalStatus.FAILED,
    WebpayTransactionStatus.FAILED: CanonicalStatus.FAILED,
    WebpayTransactionStatus.NULLIFIED: CanonicalStatus.FAILED,
}


class WebpayQueryClient(GatewayQueryClient):
    """Transaction status through the Transbank SDK (read-only ``status`` call)."""

    gateway = Gateway.WEBPAY
    native_statuses = WebpayTransactionStatus
    status_table = WEBPAY_STATUS_TABLE

    def __init__(self, settings: Settings):
        self.settings = settings
        self.timeout = settings.gateway_timeout_seconds
        integration = IntegrationType.TEST if settings.tbk_test_mode else IntegrationType.LIVE
        self.transaction = Transaction(
            WebpayOptions(settings.tbk_api_key_id, settings.tbk_api_key_secret, integration)
        )

    async def retrieve(
        self, payment_id: str, session: GatewaySession | None = None
    ) -> tuple[GatewayPaymentSnapshot, GatewaySession | None]:
        try:
            data: dict[str, Any] = await asyncio.wait_for(
                asyncio.to_thread(self.transaction.status, payment_id), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise GatewayTimeoutError("Transbank did not respond in time") from exc
        except Exception as exc:  # noqa: BLE001
            raise GatewayQueryError(f"Transbank status query failed: {exc.__class__.__name__}") from exc
        response_code = data.get("response_code")
        logger.info(
            "webpay status retrieved",
            extra={"gateway": self.gateway, "response_code": response_code, "status": data.get("status")},
        )
        amount = data.get("amount")
        error_code = None
        if response_code not in (None, 0):
            error_code = str(response_code)
        try:
            amount_minor = int(amount) if amount is not None else None
        except MALFORMED_REPLY_ERRORS as exc:
            raise GatewayQueryError(f"Transbank returned an unreadable amount for {payment_id}") from exc
        snapshot = GatewayPaymentSnapshot(
            native_status=str(data.get("status") or ""),
            amount_minor=amount_minor,
            # Webpay Plus only settles in CLP
            currency="CLP",
            error_code=error_code,
            error_message=f"Transbank response code {response_code}" if error_code else None,
            raw=data,
        )
        return snapshot, session
