from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from payrecon.dependencies import get_verification_service
from payrecon.domain.dtos import (
    BatchVerificationRequest,
    BatchVerificationResult,
    VerificationRequest,
    VerificationResult,
)
from payrecon.services.verification_service import VerificationService
from payrecon.utils.security import require_operator_token

router = APIRouter(prefix="/api/payments", dependencies=[Depends(require_operator_token)])
logger = logging.getLogger(__name__)


@router.post("/verify", response_model=VerificationResult)
async def verify_payment(
    payload: VerificationRequest,
    service: VerificationService = Depends(get_verification_service),
) -> VerificationResult:
    """Ask the gateway (or the stored record) for the current payment status."""

    logger.info(
        "verification requested",
        extra={
            "endpoint": "/api/payments/verify",
            "gateway": payload.gateway,
            "transaction_id": payload.transaction_id,
        },
    )
    result, _ = await service.verify(payload)
    return result


@router.post("/verify/batch", response_model=BatchVerificationResult)
async def verify_payments(
    payload: BatchVerificationRequest,
    service: VerificationService = Depends(get_verification_service),
) -> BatchVerificationResult:
    logger.info(
        "batch verification requested",
        extra={
            "endpoint": "/api/payments/verify/batch",
            "transaction_id": ",".join(item.transaction_id for item in payload.items),
        },
    )
    return BatchVerificationResult(results=await service.verify_batch(payload.items))
