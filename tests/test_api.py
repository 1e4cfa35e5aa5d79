"""API endpoint tests.

Drives the FastAPI app over an in-memory engine.
"""

import json
from collections.abc import AsyncGenerator
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from bnpl_engine.api.app import create_app, error_status
from bnpl_engine.domain import GatewayOutcome
from bnpl_engine.engine import InstallmentEngine
from bnpl_engine.errors import NotEligibleForEarlyPaymentError, QuoteExpiredError

from conftest import NOW


pytestmark = pytest.mark.asyncio

API = "/api/v1"


@pytest_asyncio.fixture
async def client(engine) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    app = create_app(engine=engine)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def create_approved(client: AsyncClient) -> dict:
    response = await client.post(
        f"{API}/transactions",
        json={
            "user_id": "user_1",
            "merchant_id": "merchant_1",
            "principal": 20000,
            "currency": "usd",
            "installment_count": 4,
            "items": [{"name": "Headphones", "unit_price": 20000}],
        },
    )
    assert response.status_code == 201, response.text
    tx = response.json()

    response = await client.post(
        f"{API}/transactions/{tx['id']}/decision",
        json={"approved": True, "score": 0.9, "first_due_at": (NOW + timedelta(days=1)).isoformat()},
    )
    assert response.status_code == 200, response.text
    return response.json()


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert "timestamp" in data

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    async def test_metrics(self, client: AsyncClient):
        await create_approved(client)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'bnpl_domain_events_total{event_type="transaction_approved"} 1' in response.text
        assert 'bnpl_payments_open{status="scheduled"} 4' in response.text


class TestTransactions:
    """Test transaction endpoints."""

    async def test_create_and_approve(self, client: AsyncClient):
        data = await create_approved(client)

        assert data["status"] == "approved"
        assert data["transaction"]["status"] == "approved"
        assert data["transaction"]["currency"] == "USD"
        assert data["transaction"]["items"][0]["name"] == "Headphones"
        assert [p["amount"] for p in data["payments"]] == [5000, 5000, 5000, 5000]
        assert all(p["status"] == "scheduled" for p in data["payments"])

    async def test_reject(self, client: AsyncClient):
        response = await client.post(
            f"{API}/transactions",
            json={
                "user_id": "user_1",
                "merchant_id": "merchant_1",
                "principal": 9000,
                "currency": "EUR",
                "installment_count": 3,
            },
        )
        tx_id = response.json()["id"]

        response = await client.post(
            f"{API}/transactions/{tx_id}/decision",
            json={"approved": False, "reason": "limit", "first_due_at": NOW.isoformat()},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["payments"] == []

    async def test_unsupported_installment_count(self, client: AsyncClient):
        response = await client.post(
            f"{API}/transactions",
            json={
                "user_id": "user_1",
                "merchant_id": "merchant_1",
                "principal": 20000,
                "currency": "USD",
                "installment_count": 12,
            },
        )

        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_PLAN"

    async def test_schema_validation(self, client: AsyncClient):
        response = await client.post(
            f"{API}/transactions",
            json={"user_id": "user_1", "merchant_id": "m", "principal": -5, "currency": "USD"},
        )
        assert response.status_code == 422

    async def test_unknown_transaction(self, client: AsyncClient):
        response = await client.get(f"{API}/transactions/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_payments_of_unknown_transaction(self, client: AsyncClient):
        response = await client.get(f"{API}/transactions/missing/payments")
        assert response.status_code == 404

    async def test_double_decision_conflicts(self, client: AsyncClient):
        data = await create_approved(client)
        tx_id = data["transaction"]["id"]

        response = await client.post(
            f"{API}/transactions/{tx_id}/decision",
            json={"approved": True, "first_due_at": (NOW + timedelta(days=1)).isoformat()},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    async def test_cancel_without_body(self, client: AsyncClient):
        data = await create_approved(client)
        tx_id = data["transaction"]["id"]

        response = await client.post(f"{API}/transactions/{tx_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        payments = (await client.get(f"{API}/transactions/{tx_id}/payments")).json()
        assert all(p["status"] == "cancelled" for p in payments)


class TestPayments:
    """Test payment collection endpoints."""

    async def test_confirm_and_summary(self, client: AsyncClient):
        data = await create_approved(client)
        payment_id = data["payments"][0]["id"]

        response = await client.post(
            f"{API}/payments/{payment_id}/confirm", json={"payment_method_ref": "pm_1"}
        )

        assert response.status_code == 200, response.text
        assert response.json()["status"] == "succeeded"
        assert response.json()["payment"]["status"] == "completed"

        summary = (await client.get(f"{API}/transactions/{data['transaction']['id']}/summary")).json()
        assert summary["transaction"]["status"] == "partially_paid"
        assert summary["amount_paid"] == 5000
        assert summary["outstanding_amount"] == 15000
        assert summary["next_payment"]["id"] == data["payments"][1]["id"]

    async def test_failed_confirm_is_not_http_error(self, client: AsyncClient, gateway):
        data = await create_approved(client)
        payment_id = data["payments"][0]["id"]
        gateway.script(GatewayOutcome.FAILED)

        response = await client.post(
            f"{API}/payments/{payment_id}/confirm", json={"payment_method_ref": "pm_1"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "failed"
        assert body["payment"]["status"] == "failed"
        assert body["payment"]["retry_count"] == 1

    async def test_confirm_cancelled_payment_conflicts(self, client: AsyncClient):
        data = await create_approved(client)
        payment_id = data["payments"][0]["id"]
        await client.post(f"{API}/payments/{payment_id}/cancel", json={"reason": "operator"})

        response = await client.post(
            f"{API}/payments/{payment_id}/confirm", json={"payment_method_ref": "pm_1"}
        )

        assert response.status_code == 409

    async def test_refund(self, client: AsyncClient):
        data = await create_approved(client)
        payment_id = data["payments"][0]["id"]
        await client.post(f"{API}/payments/{payment_id}/confirm", json={"payment_method_ref": "pm_1"})

        response = await client.post(f"{API}/payments/{payment_id}/refund", json={"amount": 2000})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["amount"] == 2000

    async def test_get_unknown_payment(self, client: AsyncClient):
        response = await client.get(f"{API}/payments/missing")
        assert response.status_code == 404


class TestEarlyPayment:
    """Test quote and settle endpoints."""

    async def test_quote_and_settle(self, client: AsyncClient, gateway):
        data = await create_approved(client)
        tx_id = data["transaction"]["id"]

        response = await client.post(f"{API}/transactions/{tx_id}/early-payment/quotes")
        assert response.status_code == 201, response.text
        quote = response.json()
        assert quote["gross_amount"] == 20000
        assert quote["net_amount"] == quote["gross_amount"] - quote["discount_amount"]
        assert len(quote["lines"]) == 4

        response = await client.post(
            f"{API}/early-payment/quotes/{quote['quote_id']}/settle",
            json={"payment_method_ref": "pm_1"},
        )
        assert response.status_code == 200, response.text
        settled = response.json()
        assert settled["was_duplicate"] is False
        assert settled["transaction"]["status"] == "completed"
        assert settled["net_amount"] == quote["net_amount"]

        again = await client.post(
            f"{API}/early-payment/quotes/{quote['quote_id']}/settle",
            json={"payment_method_ref": "pm_1"},
        )
        assert again.json()["was_duplicate"] is True
        assert len(gateway.confirm_calls) == 1

    async def test_quote_selected_payments(self, client: AsyncClient):
        data = await create_approved(client)
        tx_id = data["transaction"]["id"]
        last = data["payments"][-1]["id"]

        response = await client.post(
            f"{API}/transactions/{tx_id}/early-payment/quotes", json={"payment_ids": [last]}
        )

        assert response.status_code == 201
        assert [line["payment_id"] for line in response.json()["lines"]] == [last]

    async def test_declined_settlement(self, client: AsyncClient, gateway):
        data = await create_approved(client)
        quote = (
            await client.post(f"{API}/transactions/{data['transaction']['id']}/early-payment/quotes")
        ).json()
        gateway.script(GatewayOutcome.FAILED)

        response = await client.post(
            f"{API}/early-payment/quotes/{quote['quote_id']}/settle",
            json={"payment_method_ref": "pm_1"},
        )

        assert response.status_code == 402
        assert response.json()["code"] == "PAYMENT_DECLINED"

    async def test_ineligible_quote(self, client: AsyncClient):
        data = await create_approved(client)

        response = await client.post(
            f"{API}/transactions/{data['transaction']['id']}/early-payment/quotes",
            json={"payment_ids": ["not-a-payment"]},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "NOT_ELIGIBLE"

    async def test_error_status_mapping(self):
        assert error_status(QuoteExpiredError("q")) == (410, "QUOTE_EXPIRED")
        assert error_status(NotEligibleForEarlyPaymentError("p", "x")) == (409, "NOT_ELIGIBLE")


class TestWebhooks:
    """Test the signed webhook endpoint."""

    async def test_signed_delivery(self, client: AsyncClient, gateway, engine):
        data = await create_approved(client)
        payment = data["payments"][0]
        intent = gateway.create_intent(
            payment["amount"], "USD", {"payment_id": payment["id"], "transaction_id": payment["transaction_id"]}
        ).intent_reference
        body, header = gateway.signed_webhook(intent, GatewayOutcome.SUCCEEDED, event_id="evt_1", at=NOW)

        response = await client.post(
            f"{API}/webhooks/gateway",
            content=body,
            headers={"X-Gateway-Signature": header, "Content-Type": "application/json"},
        )

        assert response.status_code == 200, response.text
        ack = response.json()
        assert ack["event_id"] == "evt_1"
        assert ack["status"] == "applied"
        assert ack["payment_status"] == "completed"
        assert ack["duplicate"] is False

        redelivery = await client.post(
            f"{API}/webhooks/gateway",
            content=body,
            headers={"X-Gateway-Signature": header, "Content-Type": "application/json"},
        )
        assert redelivery.status_code == 200
        assert redelivery.json()["duplicate"] is True

    async def test_bad_signature(self, client: AsyncClient, gateway):
        body = json.dumps({"id": "evt_x"}).encode()

        response = await client.post(
            f"{API}/webhooks/gateway",
            content=body,
            headers={"X-Gateway-Signature": "t=1,v1=deadbeef"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_SIGNATURE"

    async def test_missing_signature(self, client: AsyncClient):
        response = await client.post(f"{API}/webhooks/gateway", content=b"{}")
        assert response.status_code == 401

    async def test_unknown_intent_acknowledged(self, client: AsyncClient, gateway):
        body, header = gateway.signed_webhook("pi_unknown", GatewayOutcome.FAILED, at=NOW)

        response = await client.post(
            f"{API}/webhooks/gateway", content=body, headers={"X-Gateway-Signature": header}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "stale"

    async def test_webhooks_disabled_without_secret(self, store, gateway):
        app = create_app(engine=InstallmentEngine(store, gateway, clock=lambda: NOW))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(f"{API}/webhooks/gateway", content=b"{}")

        assert response.status_code == 503
