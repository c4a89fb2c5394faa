from __future__ import annotations

import pathlib
import sys
from decimal import Decimal

from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from payrecon.config import settings
from payrecon.dependencies import get_ledger_store
from payrecon.domain.enums import Gateway
from payrecon.domain.models import PaymentTransaction, WebhookLogEntry
from payrecon.domain.statuses import TransactionStatus
from payrecon.main import app
from payrecon.repositories.memory_store import InMemoryLedgerStore


def test_health() -> None:
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_health_metrics_endpoint() -> None:
    store = InMemoryLedgerStore(dispute_ledger=False)
    store.save_transaction(
        PaymentTransaction(
            transaction_id="stripe_pi_1",
            gateway=Gateway.STRIPE,
            amount=Decimal("10.00"),
            currency="USD",
            status=TransactionStatus.COMPLETED,
        )
    )
    store.insert_webhook_log(
        WebhookLogEntry(request_id="stripe-evt_1-1", webhook_type="stripe", event_type="refund.updated",
                        event_id="evt_1")
    )
    app.dependency_overrides[get_ledger_store] = lambda: store
    try:
        client = TestClient(app)
        response = client.get("/health/metrics")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert "database" in body
    assert body["transactions"] == {"completed": 1}
    assert body["webhooks"] == {"processing": 1}
    assert body["ledger"] == {"refund_ledger": True, "dispute_ledger": False}


def test_docs_require_basic_auth() -> None:
    client = TestClient(app)
    assert client.get("/openapi.json").status_code == 401
    response = client.get("/openapi.json", auth=(settings.api_basic_username, settings.api_basic_password))
    assert response.status_code == 200
    assert "/api/webhooks/{gateway}" in response.json()["paths"]


def test_docs_reject_wrong_basic_credentials() -> None:
    client = TestClient(app)
    response = client.get("/docs", auth=(settings.api_basic_username, "wrong-password"))
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Basic"
    assert client.get("/redoc", auth=("someone", settings.api_basic_password)).status_code == 401
