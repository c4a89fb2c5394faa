from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from payrecon.dependencies import get_event_log, get_gateway_config_store, get_reconciliation_engine
from payrecon.domain.dtos import WebhookAck
from payrecon.domain.enums import Gateway
from payrecon.providers.factory import get_webhook_adapter
from payrecon.repositories.config_store import GatewayConfigError
from payrecon.services.event_log import WebhookEventLog
from payrecon.services.reconciliation import ReconciliationEngine
from payrecon.utils.signature import verify_signature

router = APIRouter(prefix="/api/webhooks")
logger = logging.getLogger(__name__)

# Once the signature is accepted the gateway always gets a 2xx: redelivering
# an event the engine rejected would fail the same way again.
RECONCILIATION_FAILURE_STATUS = status.HTTP_200_OK


@router.post("/{gateway}")
async def receive_webhook(
    gateway: str,
    request: Request,
    config_store: Any = Depends(get_gateway_config_store),
    event_log: WebhookEventLog = Depends(get_event_log),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> JSONResponse:
    """Authenticate a gateway webhook, log it and apply it to the ledger."""

    endpoint = f"/api/webhooks/{gateway}"
    try:
        gateway_enum = Gateway(gateway.lower())
    except ValueError:
        gateway_enum = None
    adapter = get_webhook_adapter(gateway_enum) if gateway_enum else None
    if adapter is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown gateway")

    signature = request.headers.get(adapter.signature_header)
    if not signature:
        logger.info("webhook signature missing", extra={"endpoint": endpoint, "gateway": gateway_enum})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature")

    try:
        config = config_store.get(gateway_enum)
    except GatewayConfigError as exc:
        logger.error("webhook configuration error", extra={"endpoint": endpoint, "gateway": gateway_enum, "error": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook configuration error"
        ) from exc
    secret = config.active_secret
    if not secret:
        logger.error(
            "webhook secret missing",
            extra={"endpoint": endpoint, "gateway": gateway_enum, "status": config.mode},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook configuration incomplete"
        )

    raw_body = await request.body()
    if not verify_signature(signature, secret, raw_body):
        logger.info("webhook signature invalid", extra={"endpoint": endpoint, "gateway": gateway_enum})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        event = adapter.parse(json.loads(raw_body))
    except ValueError as exc:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors too
        logger.info(
            "webhook payload invalid",
            extra={"endpoint": endpoint, "gateway": gateway_enum, "error": str(exc)},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc

    request_id = f"{gateway_enum.value}-{event.event_id}-{int(time.time() * 1000)}"
    logger.info(
        "webhook received",
        extra={
            "endpoint": endpoint,
            "gateway": gateway_enum,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "request_id": request_id,
        },
    )
    handle = event_log.begin(
        request_id,
        gateway_enum.value,
        event.event_type,
        event.event_id,
        request.headers.get("user-agent"),
        payload_size=len(raw_body),
        test_mode=config.test_mode,
    )
    started = time.monotonic()
    result = engine.apply(event)
    event_log.complete(handle, result.success, result.error)

    logger.info(
        "webhook processed",
        extra={
            "endpoint": endpoint,
            "gateway": gateway_enum,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "request_id": request_id,
            "transaction_id": result.transaction_id,
            "status": "processed" if result.success else "failed",
            "latency_ms": int((time.monotonic() - started) * 1000),
        },
    )
    ack = WebhookAck(
        processed=result.success,
        event_id=event.event_id,
        event_type=event.event_type,
        request_id=request_id,
        error=result.error,
    )
    status_code = status.HTTP_200_OK if result.success else RECONCILIATION_FAILURE_STATUS
    return JSONResponse(status_code=status_code, content=ack.model_dump(by_alias=True, exclude_none=True))
