from __future__ import annotations

import pytest

from sessiongate.apps.api.rate_limit import reset_rate_limiter_state
from sessiongate.core.config import get_settings
from sessiongate.providers.messaging.factory import reset_messaging_provider
from sessiongate.services.delivery import reset_delivery_service
from sessiongate.services.idempotency import reset_idempotency_guard
from sessiongate.services.inbound import reset_inbound_processor
from sessiongate.services.quota import reset_quota_service
from sessiongate.services.send_queue import reset_redis_pool
from sessiongate.services.sessions import reset_session_tracker
from sessiongate.services.telemetry import reset_metrics
from sessiongate.services.usage import reset_usage_ledger


def _reset_singletons() -> None:
    get_settings.cache_clear()
    reset_rate_limiter_state()
    reset_messaging_provider()
    reset_delivery_service()
    reset_idempotency_guard()
    reset_inbound_processor()
    reset_quota_service()
    reset_redis_pool()
    reset_session_tracker()
    reset_usage_ledger()
    reset_metrics()


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    # Each test starts from known settings and fresh process-wide services.
    monkeypatch.setenv("WHATSAPP_FROM", "whatsapp:+15550001111")
    monkeypatch.setenv("TEMPLATE_ORDER_SID", "HXorder")
    monkeypatch.setenv("TEMPLATE_NOTIFICATION_SID", "HXnotify")
    monkeypatch.setenv("MESSAGING_PROVIDER", "fake")
    _reset_singletons()
    yield
    _reset_singletons()
