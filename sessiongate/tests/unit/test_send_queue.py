from __future__ import annotations

import pytest
from arq import Retry

from sessiongate.core.errors import ProviderSendError
from sessiongate.domain.records import TenantRecord
from sessiongate.providers.messaging.fake import FakeMessagingProvider
from sessiongate.services.delivery import DeliveryService
from sessiongate.services.send_queue import OutboundJobPayload, enqueue_outbound_message
from sessiongate.tests.utils.stores import (
    FakeInboundStore,
    FakeMessageCacheStore,
    FakeOutboundStore,
    FakeTenantStore,
    MutableClock,
)
from sessiongate.workers.send_worker import process_outbound_job


class _FakeJob:
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id


class _FakeArqPool:
    def __init__(self) -> None:
        self.jobs: dict[str, tuple[str, dict, str]] = {}

    async def enqueue_job(self, function: str, payload: dict, *, _job_id: str, _queue_name: str):
        if _job_id in self.jobs:
            return None
        self.jobs[_job_id] = (function, payload, _queue_name)
        return _FakeJob(_job_id)


def _delivery(
    provider: FakeMessagingProvider, outbound: FakeOutboundStore | None = None
) -> DeliveryService:
    clock = MutableClock()
    return DeliveryService(
        provider=provider,
        outbound=outbound or FakeOutboundStore(),
        cache=FakeMessageCacheStore(clock),
        inbound=FakeInboundStore(),
        tenants=FakeTenantStore(TenantRecord("t1", "Trattoria", "+15550001111", "FREE", None)),
        time_provider=clock,
    )


@pytest.mark.asyncio
async def test_enqueue_uses_request_id_as_job_id() -> None:
    pool = _FakeArqPool()
    payload = OutboundJobPayload(to="+15551230000", body="Hello", request_id="req-1")

    first = await enqueue_outbound_message(payload, redis=pool)
    second = await enqueue_outbound_message(payload, redis=pool)

    assert first == second == "req-1"
    function, stored, queue = pool.jobs["req-1"]
    assert function == "deliver_outbound_message"
    assert stored["body"] == "Hello"
    assert queue == "outbound"


@pytest.mark.asyncio
async def test_worker_delivers_notification() -> None:
    provider = FakeMessagingProvider()
    payload = OutboundJobPayload(to="+15551230000", body="Hello")

    result = await process_outbound_job(payload, attempt=1, max_tries=3, delivery=_delivery(provider))

    assert result == "sent"
    assert provider.sent[0].kind == "template"


@pytest.mark.asyncio
async def test_worker_delivers_restaurant_order() -> None:
    provider = FakeMessagingProvider()
    payload = OutboundJobPayload(kind="restaurant_order", tenant_id="t1", body="Order #1")

    await process_outbound_job(payload, attempt=1, max_tries=3, delivery=_delivery(provider))

    assert provider.sent[0].to_address == "whatsapp:+15550001111"


@pytest.mark.asyncio
async def test_transient_provider_errors_are_retried() -> None:
    provider = FakeMessagingProvider()
    provider.template_errors.append(ProviderSendError("upstream unavailable", status=503))
    payload = OutboundJobPayload(to="+15551230000", body="Hello")

    with pytest.raises(Retry):
        await process_outbound_job(payload, attempt=1, max_tries=3, delivery=_delivery(provider))


@pytest.mark.asyncio
async def test_permanent_errors_and_last_attempt_are_not_retried() -> None:
    provider = FakeMessagingProvider()
    provider.fail_next_template(code="21211")
    delivery = _delivery(provider)

    rejected = await process_outbound_job(
        OutboundJobPayload(to="+15551230000", body="Hello"), attempt=1, max_tries=3, delivery=delivery
    )
    invalid = await process_outbound_job(
        OutboundJobPayload(to="nobody", body="Hello"), attempt=1, max_tries=3, delivery=delivery
    )
    provider.template_errors.append(ProviderSendError("upstream unavailable", status=503))
    exhausted = await process_outbound_job(
        OutboundJobPayload(to="+15551230000", body="Hello"), attempt=3, max_tries=3, delivery=delivery
    )

    assert rejected == invalid == exhausted == "failed"


@pytest.mark.asyncio
async def test_unrecorded_accepted_send_is_not_retried() -> None:
    provider = FakeMessagingProvider()
    outbound = FakeOutboundStore()
    outbound.fail_mark_sent = True
    payload = OutboundJobPayload(to="+15551230000", body="Hello")

    result = await process_outbound_job(
        payload, attempt=1, max_tries=3, delivery=_delivery(provider, outbound)
    )

    assert result == "failed"
    assert len(provider.sent) == 1
    assert next(iter(outbound.rows.values())).statuses == ["pending", "failed"]
