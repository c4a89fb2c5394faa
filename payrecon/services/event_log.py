from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from payrecon.domain.models import WebhookLogEntry
from payrecon.domain.statuses import WebhookLogStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogHandle:
    request_id: str


class WebhookEventLog:
    """Best-effort audit trail of webhook deliveries.

    Neither method raises: a storage failure is logged and the caller carries
    on. Double application of events is prevented by the reconciliation
    engine, not by this log.
    """

    def __init__(self, store: Any):
        self.store = store

    def begin(
        self,
        request_id: str,
        gateway: str,
        event_type: str,
        event_id: str,
        user_agent: str | None,
        *,
        payload_size: int = 0,
        test_mode: bool = False,
    ) -> LogHandle | None:
        entry = WebhookLogEntry(
            request_id=request_id,
            webhook_type=gateway,
            event_type=event_type,
            event_id=event_id,
            status=WebhookLogStatus.PROCESSING,
            user_agent=user_agent or "Unknown",
            payload_size=payload_size,
            test_mode=test_mode,
        )
        try:
            self.store.insert_webhook_log(entry)
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "webhook log insert failed",
                extra={"request_id": request_id, "gateway": gateway, "error": str(exc)},
            )
            return None
        return LogHandle(request_id=request_id)

    def complete(self, handle: LogHandle | None, success: bool, error_message: str | None = None) -> None:
        if handle is None:
            return
        status = WebhookLogStatus.COMPLETED if success else WebhookLogStatus.FAILED
        try:
            self.store.update_webhook_log(handle.request_id, status, error_message)
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "webhook log update failed",
                extra={"request_id": handle.request_id, "status": status, "error": str(exc)},
            )
