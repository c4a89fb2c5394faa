from __future__ import annotations

from functools import lru_cache
from typing import Any

from payrecon.config import settings
from payrecon.repositories.config_store import PgGatewayConfigStore, SettingsGatewayConfigStore
from payrecon.repositories.memory_store import InMemoryLedgerStore, InMemoryOrderStore
from payrecon.repositories.pg_store import PgLedgerStore, PgOrderStore
from payrecon.services.event_log import WebhookEventLog
from payrecon.services.reconciliation import ReconciliationEngine
from payrecon.services.verification_service import VerificationService

# Providers are cached so every request shares one store; tests swap them via
# ``app.dependency_overrides``.


@lru_cache
def get_ledger_store() -> Any:
    if settings.db_enabled:
        return PgLedgerStore()
    return InMemoryLedgerStore()


@lru_cache
def get_order_store() -> Any:
    if settings.db_enabled:
        return PgOrderStore()
    return InMemoryOrderStore()


@lru_cache
def get_gateway_config_store() -> Any:
    if settings.gateway_config_source == "database":
        return PgGatewayConfigStore()
    return SettingsGatewayConfigStore(settings)


@lru_cache
def get_event_log() -> WebhookEventLog:
    return WebhookEventLog(get_ledger_store())


@lru_cache
def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine(get_ledger_store(), get_order_store())


@lru_cache
def get_verification_service() -> VerificationService:
    return VerificationService(get_ledger_store(), settings)
