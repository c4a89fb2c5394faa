from __future__ import annotations

from typing import Any, Mapping

from payrecon.config import Settings
from payrecon.db.client import get_conn
from payrecon.domain.enums import Gateway, GatewayMode
from payrecon.domain.models import GatewayConfig


class GatewayConfigError(Exception):
    """Gateway configuration is missing or unusable. Never carries secret values."""


def _optional_str(config: Mapping[str, Any], key: str) -> str | None:
    value = config.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise GatewayConfigError(f"Gateway config field {key} has an invalid type")
    return value


class SettingsGatewayConfigStore:
    """Webhook secrets taken from environment settings."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def get(self, gateway: Gateway) -> GatewayConfig:
        prefix = gateway.value
        if not hasattr(self.settings, f"{prefix}_test_webhook_secret"):
            raise GatewayConfigError(f"No webhook configuration for gateway {prefix}")
        test_mode = bool(getattr(self.settings, f"{prefix}_test_mode", True))
        return GatewayConfig(
            gateway=gateway,
            mode=GatewayMode.TEST if test_mode else GatewayMode.LIVE,
            test_webhook_secret=getattr(self.settings, f"{prefix}_test_webhook_secret") or None,
            live_webhook_secret=getattr(self.settings, f"{prefix}_live_webhook_secret", "") or None,
        )


class PgGatewayConfigStore:
    """Webhook secrets stored in the ``payment_gateways`` table (``config`` JSON + ``test_mode``)."""

    def get(self, gateway: Gateway) -> GatewayConfig:
        with get_conn() as conn:
            if conn is None:
                raise GatewayConfigError("Database not configured")
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT config, test_mode FROM payment_gateways WHERE code = %s LIMIT 1",
                    (gateway.value,),
                )
                row = cur.fetchone()
        if not row:
            raise GatewayConfigError(f"No configuration row for gateway {gateway.value}")
        config, test_mode = row
        if not isinstance(config, Mapping):
            raise GatewayConfigError(f"Malformed configuration for gateway {gateway.value}")
        return GatewayConfig(
            gateway=gateway,
            mode=GatewayMode.TEST if test_mode else GatewayMode.LIVE,
            test_webhook_secret=_optional_str(config, "test_webhook_secret"),
            live_webhook_secret=_optional_str(config, "live_webhook_secret"),
            webhook_secret=_optional_str(config, "webhook_secret"),
        )
