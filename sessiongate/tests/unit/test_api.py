from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from sessiongate.apps.api import deps
from sessiongate.apps.api.main import create_app
from sessiongate.apps.api.rate_limit import RateLimiter
from sessiongate.apps.api.routes import notify as notify_routes
from sessiongate.domain.records import TenantRecord, UsageRecord
from sessiongate.providers.messaging.fake import FakeMessagingProvider
from sessiongate.services.delivery import DeliveryService
from sessiongate.services.idempotency import IdempotencyGuard
from sessiongate.services.inbound import InboundProcessor
from sessiongate.services.quota import QuotaService
from sessiongate.services.sessions import SessionTracker
from sessiongate.services.telemetry import MetricsCollector
from sessiongate.services.usage import UsageLedger
from sessiongate.tests.utils.stores import (
    FakeInboundStore,
    FakeMessageCacheStore,
    FakeOutboundStore,
    FakeRedis,
    FakeSessionStore,
    FakeTenantStore,
    FakeUsageStore,
    MutableClock,
)


class _Services:
    def __init__(self) -> None:
        self.clock = MutableClock()
        self.metrics = MetricsCollector()
        self.provider = FakeMessagingProvider()
        self.usage = FakeUsageStore()
        self.inbound = FakeInboundStore()
        self.tenants = FakeTenantStore(
            TenantRecord("t1", "Trattoria", "+15550001111", "FREE", 1),
            TenantRecord("t2", "Busy Bistro", "+15550002222", "FREE", None),
        )
        self.tracker = SessionTracker(FakeSessionStore(), window=timedelta(hours=24), time_provider=self.clock)
        self.ledger = UsageLedger(self.usage, tracker=self.tracker, time_provider=self.clock)
        self.quota = QuotaService(self.usage, time_provider=self.clock)
        self.outbound = FakeOutboundStore()
        self.delivery = DeliveryService(
            provider=self.provider,
            outbound=self.outbound,
            cache=FakeMessageCacheStore(self.clock),
            inbound=self.inbound,
            tenants=self.tenants,
            metrics=self.metrics,
            time_provider=self.clock,
        )
        redis = FakeRedis()
        self.processor = InboundProcessor(
            tenants=self.tenants,
            inbound=self.inbound,
            guard=IdempotencyGuard(redis=redis),
            limiter=RateLimiter(redis=redis, time_provider=lambda: 0.0),
            ledger=self.ledger,
            delivery=self.delivery,
            metrics=self.metrics,
            time_provider=self.clock,
        )


@pytest.fixture
def services() -> _Services:
    return _Services()


@pytest.fixture
def client(services: _Services):
    app = create_app()
    app.dependency_overrides[deps.get_delivery] = lambda: services.delivery
    app.dependency_overrides[deps.get_inbound] = lambda: services.processor
    app.dependency_overrides[deps.get_quota] = lambda: services.quota
    app.dependency_overrides[deps.get_ledger] = lambda: services.ledger
    app.dependency_overrides[deps.get_tracker] = lambda: services.tracker
    app.dependency_overrides[deps.get_tenant_store] = lambda: services.tenants
    app.dependency_overrides[deps.get_metrics_collector] = lambda: services.metrics
    with TestClient(app) as test_client:
        yield test_client


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-Id"]


def test_webhook_processes_form_callback(client: TestClient, services: _Services) -> None:
    form = {"From": "whatsapp:+15551230000", "To": "whatsapp:+15550001111", "MessageSid": "SM1", "Body": "Hi"}

    response = client.post("/whatsapp/webhook", data=form)

    assert response.status_code == 200
    assert response.json()["new_session"] is True
    assert "SM1" in services.inbound.records


def test_webhook_rate_limit_sets_retry_after(client: TestClient) -> None:
    base = {"From": "whatsapp:+15551230000", "To": "whatsapp:+15550001111", "Body": "Hi"}

    client.post("/whatsapp/webhook", data={**base, "MessageSid": "SM1"})
    response = client.post("/whatsapp/webhook", data={**base, "MessageSid": "SM2"})

    assert response.status_code == 429
    assert response.headers["X-RateLimit-Scope"] == "restaurant:t1"
    assert int(response.headers["Retry-After"]) >= 1


def test_webhook_requires_addresses(client: TestClient) -> None:
    response = client.post("/whatsapp/webhook", data={"Body": "Hi"})

    assert response.status_code == 400


def test_notify_sends_and_reports_quota(client: TestClient, services: _Services) -> None:
    response = client.post(
        "/api/notify",
        json={"to": "+15551230000", "message": "Your order is ready", "tenant_id": "t1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["channel"] == "template"
    assert body["status"] == "sent"
    assert response.headers["X-Quota-Month-Limit"] == "1000"
    assert len(services.provider.sent) == 1


def test_notify_blocks_exhausted_tenant(client: TestClient, services: _Services) -> None:
    services.usage.rows[("t1", 3, 2026)] = UsageRecord("t1", 3, 2026, 1000, None)

    response = client.post(
        "/api/notify",
        json={"to": "+15551230000", "message": "Hello", "tenant_id": "t1"},
    )

    assert response.status_code == 402
    assert response.json()["detail"]["code"] == "QUOTA_EXCEEDED"
    assert services.provider.sent == []


def test_notify_rejects_invalid_recipient(client: TestClient) -> None:
    response = client.post("/api/notify", json={"to": "nobody", "message": "Hello"})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_INPUT"


def test_notify_provider_failure_maps_to_502(client: TestClient, services: _Services) -> None:
    services.provider.fail_next_template(code="63024")

    response = client.post("/api/notify", json={"to": "+15551230000", "message": "Hello"})

    assert response.status_code == 502
    assert response.json()["detail"]["provider_code"] == "63024"


def test_notify_unrecorded_send_reports_provider_sid(client: TestClient, services: _Services) -> None:
    services.outbound.fail_mark_sent = True

    response = client.post("/api/notify", json={"to": "+15551230000", "message": "Hello"})

    assert response.status_code == 500
    detail = response.json()["detail"]
    assert detail["code"] == "DELIVERY_RECORD_FAILED"
    assert detail["provider_sid"] == services.provider.sent[0].sid


def test_notify_queue_enqueues_job(client: TestClient, services: _Services, monkeypatch) -> None:
    queued: list = []

    async def _fake_enqueue(payload):
        queued.append(payload)
        return payload.request_id

    monkeypatch.setattr(notify_routes, "enqueue_outbound_message", _fake_enqueue)

    response = client.post(
        "/api/notify",
        json={"to": "+15551230000", "message": "Hello", "queue": True},
        headers={"X-Request-Id": "req-42"},
    )

    assert response.status_code == 202
    assert response.json() == {"job_id": "req-42", "queued": True}
    assert queued[0].body == "Hello"
    assert services.provider.sent == []


def test_restaurant_order_route(client: TestClient, services: _Services) -> None:
    response = client.post("/api/notify/restaurant-order", json={"tenant_id": "t2", "order_text": "Order #9"})

    assert response.status_code == 200
    assert services.provider.sent[0].to_address == "whatsapp:+15550002222"

    missing = client.post("/api/notify/restaurant-order", json={"tenant_id": "nope", "order_text": "Order"})
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "TENANT_NOT_FOUND"


def test_usage_routes(client: TestClient, services: _Services) -> None:
    services.usage.rows[("t1", 3, 2026)] = UsageRecord("t1", 3, 2026, 900, None)

    created = client.post("/api/usage/t1/adjustments", json={"amount": 500, "reason": "promo"})
    assert created.status_code == 201
    assert created.json()["amount"] == 500

    usage = client.get("/api/usage/t1")
    assert usage.status_code == 200
    assert usage.json()["effective_limit"] == 1500
    assert usage.json()["remaining"] == 600
    assert usage.headers["X-Quota-Month-Used"] == "900"

    history = client.get("/api/usage/t1/history", params={"months": 2})
    assert history.json()["items"][0]["period"] == "2026-03"

    assert client.get("/api/usage/missing").status_code == 404


def test_usage_adjustment_requires_known_tenant(client: TestClient) -> None:
    response = client.post("/api/usage/missing/adjustments", json={})

    assert response.status_code == 404


def test_ops_metrics_snapshot(client: TestClient) -> None:
    client.post(
        "/whatsapp/webhook",
        data={"From": "whatsapp:+15551230000", "To": "whatsapp:+15550001111", "MessageSid": "SM1"},
    )

    response = client.get("/ops/metrics")

    assert response.status_code == 200
    assert response.json()["metrics"]["counters"]["webhooks_received"] == 1
    assert "db_pool" in response.json()


def test_session_stats_route_uses_tracker_clock(client: TestClient) -> None:
    base = {"From": "whatsapp:+15551230000", "To": "whatsapp:+15550002222"}
    client.post("/whatsapp/webhook", data={**base, "MessageSid": "SM10", "Body": "Hi"})
    client.post("/whatsapp/webhook", data={**base, "MessageSid": "SM11", "Body": "Again"})

    response = client.get("/api/usage/t2/sessions", params={"days": 7})

    assert response.status_code == 200
    body = response.json()
    assert body["total_sessions"] == 1
    assert body["total_messages"] == 2
    assert body["end"].startswith("2026-03-15")
