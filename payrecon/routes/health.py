from __future__ import annotations

import os
import platform
from datetime import datetime, timezone
from typing import Any

import logging

from fastapi import APIRouter, Depends

from payrecon.config import settings
from payrecon.dependencies import get_ledger_store

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


def _collect_ledger_metrics(store: Any) -> dict[str, Any]:
    metrics: dict[str, Any] = {
        "available": False,
        "transaction_status_counts": {},
        "webhook_log_counts": {},
        "ledger": {"refund_ledger": None, "dispute_ledger": None},
    }
    try:
        metrics["transaction_status_counts"] = store.transaction_status_counts()
        metrics["webhook_log_counts"] = store.webhook_log_counts()
        metrics["ledger"] = {
            "refund_ledger": store.refund_ledger() is not None,
            "dispute_ledger": store.dispute_ledger() is not None,
        }
        metrics["available"] = True
    except Exception as exc:  # noqa: BLE001
        logger.info("health metrics collection failed", extra={"error": str(exc)})
    return metrics


@router.get("/health/metrics")
async def health_metrics(store: Any = Depends(get_ledger_store)) -> dict[str, Any]:
    """Detailed service health endpoint with ledger and webhook counters."""

    captured_at = datetime.now(timezone.utc)
    raw_metrics = _collect_ledger_metrics(store)
    available = bool(raw_metrics.pop("available", False))
    uptime_seconds = int((captured_at - SERVICE_STARTED_AT).total_seconds())
    status = "ok" if available else "degraded"

    return {
        "status": status,
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": uptime_seconds,
        "service": {
            "environment": settings.app_env,
            "version": settings.app_version,
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "database": {
            "enabled": settings.db_enabled,
            "schema": settings.db_schema or None,
        },
        "ledger": raw_metrics["ledger"],
        "transactions": raw_metrics["transaction_status_counts"],
        "webhooks": raw_metrics["webhook_log_counts"],
    }
