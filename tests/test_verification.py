from __future__ import annotations

import asyncio
import pathlib
import sys
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest
import stripe  # type: ignore[import-untyped]
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from payrecon.config import Settings, settings
from payrecon.dependencies import get_verification_service
from payrecon.domain.dtos import VerificationRequest
from payrecon.domain.enums import Gateway
from payrecon.domain.models import PaymentTransaction, VerificationRecord
from payrecon.domain.statuses import CanonicalStatus, TransactionStatus
from payrecon.main import app
from payrecon.providers.airwallex_gateway import AIRWALLEX_STATUS_TABLE, AirwallexIntentStatus
from payrecon.providers.base import GatewayTimeoutError
from payrecon.providers.paypal_gateway import PAYPAL_STATUS_TABLE, PayPalOrderStatus
from payrecon.providers.stripe_gateway import STRIPE_STATUS_TABLE, StripeIntentStatus
from payrecon.providers.webpay_gateway import WEBPAY_STATUS_TABLE, WebpayTransactionStatus
from payrecon.repositories.memory_store import InMemoryLedgerStore
from payrecon.services.verification_service import VERIFICATION_FRESHNESS, VerificationService


class FakeResponse:
    def __init__(self, payload: dict[str, Any], status_code: int = 200):
        self._payload = payload
        self.status_code = status_code
        self.headers: dict[str, str] = {}
        self.text = ""

    def json(self) -> dict[str, Any]:
        return self._payload


@pytest.fixture()
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture()
def gateway_settings() -> Settings:
    return Settings(
        stripe_secret_key="sk_test_123",
        airwallex_client_id="client",
        airwallex_api_key="key",
        paypal_client_id="pp_client",
        paypal_client_secret="pp_secret",
        gateway_timeout_seconds=0.2,
    )


@pytest.fixture()
def stripe_calls(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    calls: list[str] = []
    intents = {
        "pi_ok": {"id": "pi_ok", "status": "succeeded", "amount": 10050, "amount_received": 10050, "currency": "usd"},
        "pi_wait": {"id": "pi_wait", "status": "requires_action", "amount": 500, "currency": "usd"},
        "pi_dead": {
            "id": "pi_dead",
            "status": "canceled",
            "amount": 500,
            "currency": "usd",
            "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
        },
        "pi_odd": {"id": "pi_odd", "status": "requires_magic", "amount": 500, "currency": "usd"},
    }

    def fake_retrieve(payment_id: str, api_key: str | None = None, **kwargs: Any) -> dict[str, Any]:
        assert api_key == "sk_test_123"
        calls.append(payment_id)
        return dict(intents[payment_id])

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    return calls


def _stripe(transaction_id: str, **kwargs: Any) -> VerificationRequest:
    return VerificationRequest(transaction_id=transaction_id, gateway=Gateway.STRIPE, **kwargs)


def test_bank_transfer_without_record_needs_proof(
    store: InMemoryLedgerStore, gateway_settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def no_network(self, *args: Any, **kwargs: Any) -> None:  # type: ignore[override]
        raise AssertionError("network call attempted")

    monkeypatch.setattr(httpx.AsyncClient, "send", no_network)
    service = VerificationService(store, gateway_settings)
    result, session = asyncio.run(
        service.verify(VerificationRequest(transaction_id="bank_transfer_ref_1", gateway=Gateway.BANK_TRANSFER))
    )
    assert result.status == CanonicalStatus.PENDING
    assert result.success is True
    assert session is None
    assert any("proof of payment" in hint for hint in result.recommendations)


def test_bank_transfer_uses_stored_transaction(store: InMemoryLedgerStore, gateway_settings: Settings) -> None:
    store.save_transaction(
        PaymentTransaction(
            transaction_id="bank_transfer_ref_2",
            gateway=Gateway.BANK_TRANSFER,
            amount=Decimal("250.00"),
            currency="EUR",
            status=TransactionStatus.PARTIALLY_REFUNDED,
        )
    )
    service = VerificationService(store, gateway_settings)
    request = VerificationRequest(
        transaction_id="bank_transfer_ref_2",
        gateway=Gateway.BANK_TRANSFER,
        expected_amount=Decimal("250"),
        expected_currency="eur",
    )
    result, _ = asyncio.run(service.verify(request))
    assert result.status == CanonicalStatus.COMPLETED
    assert result.gateway_status == "partially_refunded"
    assert result.amount_matches is True
    assert result.currency_matches is True


@pytest.mark.parametrize(
    ("transaction_id", "expected"),
    [
        ("stripe_pi_ok", CanonicalStatus.COMPLETED),
        ("stripe_pi_wait", CanonicalStatus.PENDING),
        ("stripe_pi_dead", CanonicalStatus.FAILED),
    ],
)
def test_stripe_status_mapping(
    store: InMemoryLedgerStore, gateway_settings: Settings, stripe_calls: list[str],
    transaction_id: str, expected: CanonicalStatus,
) -> None:
    service = VerificationService(store, gateway_settings)
    result, _ = asyncio.run(service.verify(_stripe(transaction_id)))
    assert result.success is True
    assert result.status == expected
    assert result.currency == "USD"
    assert stripe_calls == [transaction_id.removeprefix("stripe_")]


def test_stripe_failure_carries_gateway_error(
    store: InMemoryLedgerStore, gateway_settings: Settings, stripe_calls: list[str]
) -> None:
    service = VerificationService(store, gateway_settings)
    result, _ = asyncio.run(service.verify(_stripe("stripe_pi_dead")))
    assert result.error == "Your card was declined."
    assert any("Your card was declined." in hint for hint in result.recommendations)


def test_unrecognized_status_is_pending_for_review(
    store: InMemoryLedgerStore, gateway_settings: Settings, stripe_calls: list[str]
) -> None:
    service = VerificationService(store, gateway_settings)
    result, _ = asyncio.run(service.verify(_stripe("stripe_pi_odd")))
    assert result.status == CanonicalStatus.PENDING
    assert result.gateway_status == "requires_magic"
    assert any("manually" in hint for hint in result.recommendations)


def test_amount_and_currency_expectations(
    store: InMemoryLedgerStore, gateway_settings: Settings, stripe_calls: list[str]
) -> None:
    service = VerificationService(store, gateway_settings)
    ok, _ = asyncio.run(
        service.verify(_stripe("stripe_pi_ok", expected_amount=Decimal("100.5"), expected_currency="usd"))
    )
    assert ok.amount == Decimal("100.50")
    assert ok.amount_matches is True
    assert ok.currency_matches is True

    off, _ = asyncio.run(
        service.verify(
            _stripe("stripe_pi_ok", expected_amount=Decimal("99.00"), expected_currency="EUR", force_refresh=True)
        )
    )
    assert off.status == CanonicalStatus.COMPLETED
    assert off.amount_matches is False
    assert off.currency_matches is False
    assert any(hint.startswith("Amount mismatch") for hint in off.recommendations)
    assert any(hint.startswith("Currency mismatch") for hint in off.recommendations)


def test_recent_verification_is_served_from_cache(
    store: InMemoryLedgerStore, gateway_settings: Settings, stripe_calls: list[str]
) -> None:
    service = VerificationService(store, gateway_settings)
    first, _ = asyncio.run(service.verify(_stripe("stripe_pi_ok")))
    second, _ = asyncio.run(service.verify(_stripe("stripe_pi_ok")))
    assert first.cached is False
    assert second.cached is True
    assert second.status == CanonicalStatus.COMPLETED
    assert stripe_calls == ["pi_ok"]

    third, _ = asyncio.run(service.verify(_stripe("stripe_pi_ok", force_refresh=True)))
    assert third.cached is False
    assert stripe_calls == ["pi_ok", "pi_ok"]


def test_cached_result_rechecks_expectations_of_each_caller(
    store: InMemoryLedgerStore, gateway_settings: Settings, stripe_calls: list[str]
) -> None:
    service = VerificationService(store, gateway_settings)
    wrong, _ = asyncio.run(service.verify(_stripe("stripe_pi_ok", expected_amount=Decimal("1.00"))))
    assert wrong.amount_matches is False
    assert any(hint.startswith("Amount mismatch") for hint in wrong.recommendations)
    assert store.verifications
    assert all(
        not hint.startswith("Amount mismatch")
        for record in store.verifications.values()
        for hint in record.recommendations
    )

    right, _ = asyncio.run(service.verify(_stripe("stripe_pi_ok", expected_amount=Decimal("100.50"))))
    assert right.cached is True
    assert right.amount_matches is True
    assert right.recommendations == ["Payment confirmed by the gateway."]

    other, _ = asyncio.run(service.verify(_stripe("stripe_pi_ok", expected_currency="EUR")))
    assert other.cached is True
    assert other.currency_matches is False
    assert any(hint.startswith("Currency mismatch") for hint in other.recommendations)
    assert stripe_calls == ["pi_ok"]


def test_stale_verification_is_refreshed(
    store: InMemoryLedgerStore, gateway_settings: Settings, stripe_calls: list[str]
) -> None:
    store.save_verification(
        VerificationRecord(
            transaction_id="stripe_pi_wait",
            gateway=Gateway.STRIPE,
            status=CanonicalStatus.COMPLETED,
            verified_at=datetime.now(timezone.utc) - VERIFICATION_FRESHNESS - timedelta(seconds=1),
        )
    )
    service = VerificationService(store, gateway_settings)
    result, _ = asyncio.run(service.verify(_stripe("stripe_pi_wait")))
    assert result.cached is False
    assert result.status == CanonicalStatus.PENDING
    assert stripe_calls == ["pi_wait"]


def test_gateway_timeout_is_a_failed_result(
    store: InMemoryLedgerStore, gateway_settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[str] = []

    def slow_retrieve(payment_id: str, api_key: str | None = None, **kwargs: Any) -> dict[str, Any]:
        calls.append(payment_id)
        time.sleep(0.5)
        return {"id": payment_id, "status": "succeeded"}

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", slow_retrieve)
    service = VerificationService(store, gateway_settings)
    result, _ = asyncio.run(service.verify(_stripe("stripe_pi_slow")))
    assert result.success is False
    assert result.status == CanonicalStatus.PENDING
    assert result.error
    assert calls == ["pi_slow"]
    assert store.verifications == {}


def test_timeout_from_injected_client(store: InMemoryLedgerStore, gateway_settings: Settings) -> None:
    class TimingOutClient:
        async def retrieve(self, payment_id: str, session: Any = None) -> Any:
            raise GatewayTimeoutError("gateway did not respond in time")

    service = VerificationService(store, gateway_settings, client_factory=lambda gateway: TimingOutClient())
    result, _ = asyncio.run(
        service.verify(VerificationRequest(transaction_id="airwallex_int_1", gateway=Gateway.AIRWALLEX))
    )
    assert result.success is False
    assert result.error == "gateway did not respond in time"
    assert any("retry" in hint for hint in result.recommendations)


def test_missing_credentials_is_a_failed_result(store: InMemoryLedgerStore) -> None:
    service = VerificationService(store, Settings(stripe_secret_key=""))
    result, _ = asyncio.run(service.verify(_stripe("stripe_pi_ok")))
    assert result.success is False
    assert result.error == "Gateway not configured for verification"


def test_airwallex_batch_reuses_one_login(
    store: InMemoryLedgerStore, gateway_settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    logins: list[str] = []
    lookups: list[str] = []

    async def fake_post(self, url, headers=None, **kwargs):  # type: ignore[override]
        logins.append(str(url))
        expires = (datetime.now(timezone.utc) + timedelta(minutes=30)).isoformat()
        return FakeResponse({"token": "awx_token", "expires_at": expires})

    async def fake_get(self, url, headers=None, **kwargs):  # type: ignore[override]
        assert headers == {"Authorization": "Bearer awx_token"}
        intent_id = str(url).rsplit("/", 1)[-1]
        lookups.append(intent_id)
        status = "SUCCEEDED" if intent_id != "int_3" else "REQUIRES_PAYMENT_METHOD"
        return FakeResponse({"id": intent_id, "status": status, "amount": 100.5, "currency": "usd"})

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)
    service = VerificationService(store, gateway_settings)
    requests = [
        VerificationRequest(transaction_id=f"airwallex_int_{i}", gateway=Gateway.AIRWALLEX,
                            expected_amount=Decimal("100.50"))
        for i in (1, 2, 3)
    ]
    results = asyncio.run(service.verify_batch(requests))
    assert [result.status for result in results] == [
        CanonicalStatus.COMPLETED,
        CanonicalStatus.COMPLETED,
        CanonicalStatus.PENDING,
    ]
    assert all(result.amount_matches for result in results)
    assert lookups == ["int_1", "int_2", "int_3"]
    assert len(logins) == 1
    assert logins[0].endswith("/api/v1/authentication/login")


def test_paypal_declined_capture(
    store: InMemoryLedgerStore, gateway_settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def fake_post(self, url, **kwargs):  # type: ignore[override]
        return FakeResponse({"access_token": "pp_token", "expires_in": 32400})

    async def fake_get(self, url, headers=None, **kwargs):  # type: ignore[override]
        return FakeResponse(
            {
                "id": "ORDER1",
                "status": "VOIDED",
                "purchase_units": [
                    {
                        "amount": {"currency_code": "USD", "value": "15.00"},
                        "payments": {"captures": [{"status": "DECLINED", "status_details": {"reason": "RISK"}}]},
                    }
                ],
            }
        )

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)
    service = VerificationService(store, gateway_settings)
    result, session = asyncio.run(
        service.verify(VerificationRequest(transaction_id="paypal_ORDER1", gateway=Gateway.PAYPAL))
    )
    assert result.status == CanonicalStatus.FAILED
    assert result.amount == Decimal("15.00")
    assert result.error == "Capture declined: RISK"
    assert session is not None and session.access_token == "pp_token"


class UnreadableResponse(FakeResponse):
    def json(self) -> dict[str, Any]:
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_unreadable_airwallex_reply_does_not_abort_the_batch(
    store: InMemoryLedgerStore, gateway_settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def fake_post(self, url, headers=None, **kwargs):  # type: ignore[override]
        expires = (datetime.now(timezone.utc) + timedelta(minutes=30)).isoformat()
        return FakeResponse({"token": "awx_token", "expires_at": expires})

    async def fake_get(self, url, headers=None, **kwargs):  # type: ignore[override]
        intent_id = str(url).rsplit("/", 1)[-1]
        if intent_id == "int_html":
            return UnreadableResponse({})
        if intent_id == "int_bad_amount":
            return FakeResponse({"id": intent_id, "status": "SUCCEEDED", "amount": "n/a", "currency": "usd"})
        return FakeResponse({"id": intent_id, "status": "SUCCEEDED", "amount": 10, "currency": "usd"})

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)
    service = VerificationService(store, gateway_settings)
    requests = [
        VerificationRequest(transaction_id=f"airwallex_{intent_id}", gateway=Gateway.AIRWALLEX)
        for intent_id in ("int_html", "int_bad_amount", "int_ok")
    ]
    results = asyncio.run(service.verify_batch(requests))
    assert [result.success for result in results] == [False, False, True]
    assert all(result.status == CanonicalStatus.PENDING for result in results[:2])
    assert all(result.error for result in results[:2])
    assert results[2].status == CanonicalStatus.COMPLETED
    assert list(store.verifications) == [("airwallex", "airwallex_int_ok")]


def test_unreadable_paypal_token_reply_is_a_failed_result(
    store: InMemoryLedgerStore, gateway_settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def fake_post(self, url, **kwargs):  # type: ignore[override]
        return FakeResponse({"error": "invalid_client"})

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    service = VerificationService(store, gateway_settings)
    result, session = asyncio.run(
        service.verify(VerificationRequest(transaction_id="paypal_ORDER1", gateway=Gateway.PAYPAL))
    )
    assert result.success is False
    assert result.status == CanonicalStatus.PENDING
    assert result.error == "PayPal token request returned an unreadable reply"
    assert session is None


def test_unreadable_paypal_order_is_a_failed_result(
    store: InMemoryLedgerStore, gateway_settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def fake_post(self, url, **kwargs):  # type: ignore[override]
        return FakeResponse({"access_token": "pp_token", "expires_in": 32400})

    async def fake_get(self, url, headers=None, **kwargs):  # type: ignore[override]
        return FakeResponse(
            {
                "id": "ORDER2",
                "status": "COMPLETED",
                "purchase_units": [{"amount": {"currency_code": "USD", "value": "abc"}}],
            }
        )

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)
    service = VerificationService(store, gateway_settings)
    result, _ = asyncio.run(
        service.verify(VerificationRequest(transaction_id="paypal_ORDER2", gateway=Gateway.PAYPAL))
    )
    assert result.success is False
    assert result.error == "PayPal returned an unreadable order ORDER2"


@pytest.mark.parametrize(
    ("statuses", "table"),
    [
        (AirwallexIntentStatus, AIRWALLEX_STATUS_TABLE),
        (StripeIntentStatus, STRIPE_STATUS_TABLE),
        (PayPalOrderStatus, PAYPAL_STATUS_TABLE),
        (WebpayTransactionStatus, WEBPAY_STATUS_TABLE),
    ],
)
def test_status_tables_are_exhaustive(statuses: Any, table: dict[Any, CanonicalStatus]) -> None:
    assert set(table) == set(statuses)
    assert set(table.values()) <= set(CanonicalStatus)


def test_verify_endpoints_require_bearer_token(store: InMemoryLedgerStore, gateway_settings: Settings) -> None:
    app.dependency_overrides[get_verification_service] = lambda: VerificationService(store, gateway_settings)
    try:
        client = TestClient(app)
        payload = {"transaction_id": "bank_transfer_ref_1", "gateway": "bank_transfer"}
        assert client.post("/api/payments/verify", json=payload).status_code == 401

        headers = {"Authorization": f"Bearer {settings.api_bearer_token}"}
        response = client.post("/api/payments/verify", json=payload, headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "pending"

        batch = client.post("/api/payments/verify/batch", json={"items": [payload, payload]}, headers=headers)
        assert batch.status_code == 200
        assert len(batch.json()["results"]) == 2

        empty = client.post("/api/payments/verify/batch", json={"items": []}, headers=headers)
        assert empty.status_code == 422
    finally:
        app.dependency_overrides.clear()


def test_verify_rejects_wrong_or_unset_operator_token(
    store: InMemoryLedgerStore, gateway_settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    app.dependency_overrides[get_verification_service] = lambda: VerificationService(store, gateway_settings)
    payload = {"transaction_id": "bank_transfer_ref_1", "gateway": "bank_transfer"}
    try:
        client = TestClient(app)
        wrong = client.post("/api/payments/verify", json=payload, headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401
        assert wrong.headers["www-authenticate"] == "Bearer"
        monkeypatch.setattr(settings, "api_bearer_token", "")
        unset = client.post("/api/payments/verify", json=payload, headers={"Authorization": "Bearer nope"})
        assert unset.status_code == 401
    finally:
        app.dependency_overrides.clear()
