from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping

from payrecon.domain.dtos import WebhookEvent
from payrecon.domain.enums import EventCategory, Gateway
from payrecon.domain.statuses import CanonicalStatus


class GatewayQueryError(Exception):
    """A gateway status query could not produce an answer."""


class GatewayTimeoutError(GatewayQueryError):
    """The gateway did not answer within the configured timeout."""


# Raised while decoding a gateway reply that is not the documented shape.
MALFORMED_REPLY_ERRORS = (ValueError, TypeError, KeyError, AttributeError, IndexError, ArithmeticError)


@dataclass(frozen=True)
class GatewaySession:
    """Short-lived gateway credential threaded through query calls."""

    access_token: str
    expires_at: datetime

    def is_expired(self, now: datetime | None = None, leeway: timedelta = timedelta(seconds=60)) -> bool:
        current = now or datetime.now(timezone.utc)
        return current + leeway >= self.expires_at


@dataclass
class GatewayPaymentSnapshot:
    """Payment state as reported by a gateway query API."""

    native_status: str
    amount_minor: int | None = None
    currency: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class GatewayQueryClient(ABC):
    """Retrieves payment status straight from a gateway."""

    gateway: Gateway
    native_statuses: type[Enum]
    status_table: Mapping[Enum, CanonicalStatus]

    def map_status(self, native_status: str | None) -> CanonicalStatus | None:
        """Map a native status through the gateway table; None when unrecognized."""

        if not native_status:
            return None
        try:
            member = self.native_statuses(native_status.strip().upper())
        except ValueError:
            return None
        return self.status_table[member]

    @abstractmethod
    async def retrieve(
        self, payment_id: str, session: GatewaySession | None = None
    ) -> tuple[GatewayPaymentSnapshot, GatewaySession | None]:
        """Fetch the payment and return it with the (possibly refreshed) session.

        Raises GatewayTimeoutError or GatewayQueryError. Never retries.
        """


class WebhookAdapter(ABC):
    """Turns a gateway's webhook JSON into a ``WebhookEvent``."""

    gateway: Gateway
    signature_header: str
    event_categories: Mapping[str, EventCategory]

    @abstractmethod
    def parse(self, payload: Any) -> WebhookEvent:
        """Raise ValueError when the payload does not have the gateway's event shape."""

    @staticmethod
    def _event_object(payload: Any, type_key: str) -> tuple[str, str, dict[str, Any]]:
        if not isinstance(payload, dict):
            raise ValueError("Webhook payload must be a JSON object")
        event_id = payload.get("id")
        event_type = payload.get(type_key)
        if not isinstance(event_id, str) or not event_id:
            raise ValueError("Webhook payload has no event id")
        if not isinstance(event_type, str) or not event_type:
            raise ValueError("Webhook payload has no event type")
        data = payload.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise ValueError("Webhook payload has no data object")
        return event_id, event_type, obj
