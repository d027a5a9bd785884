from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from sessiongate.core.config import get_settings
from sessiongate.core.errors import (
    DeliveryRecordError,
    EmptyMessageError,
    InvalidRecipientError,
    ProviderSendError,
    TemplateNotConfiguredError,
    TenantNotFoundError,
)
from sessiongate.domain.delivery import Channel, DeliveryStatus
from sessiongate.domain.records import TenantRecord
from sessiongate.providers.messaging.fake import FakeMessagingProvider
from sessiongate.services.delivery import DeliveryService
from sessiongate.services.telemetry import (
    DEFERRED_COALESCED,
    MESSAGES_FAILED,
    TEMPLATE_FALLBACKS,
    MetricsCollector,
)
from sessiongate.tests.utils.stores import (
    FakeInboundStore,
    FakeMessageCacheStore,
    FakeOutboundStore,
    FakeTenantStore,
    MutableClock,
)


CUSTOMER = "+15551230000"
MULTILINE = "Order #42\n2x Margherita\n1x Tiramisu"


class _Harness:
    def __init__(self) -> None:
        self.clock = MutableClock()
        self.provider = FakeMessagingProvider()
        self.outbound = FakeOutboundStore()
        self.cache = FakeMessageCacheStore(self.clock)
        self.inbound = FakeInboundStore()
        self.tenants = FakeTenantStore(
            TenantRecord("t1", "Trattoria", "+15550001111", "FREE", None),
            TenantRecord("t2", "No Number", None, "FREE", None),
        )
        self.metrics = MetricsCollector()
        self.service = DeliveryService(
            provider=self.provider,
            outbound=self.outbound,
            cache=self.cache,
            inbound=self.inbound,
            tenants=self.tenants,
            metrics=self.metrics,
            time_provider=self.clock,
        )

    def customer_wrote(self, hours_ago: float) -> None:
        self.inbound.seed(CUSTOMER, self.clock.now - timedelta(hours=hours_ago))

    def only_row(self):
        assert len(self.outbound.rows) == 1
        return next(iter(self.outbound.rows.values()))


@pytest.mark.asyncio
async def test_recent_inbound_sends_freeform() -> None:
    h = _Harness()
    h.customer_wrote(hours_ago=23)

    result = await h.service.send_notification(CUSTOMER, "Your order is ready")

    assert result.channel == Channel.FREEFORM
    assert result.status == DeliveryStatus.SENT
    sent = h.provider.sent[0]
    assert sent.kind == "freeform"
    assert sent.to_address == f"whatsapp:{CUSTOMER}"
    assert sent.from_address == "whatsapp:+15550001111"
    row = h.only_row()
    assert row.statuses == ["pending", "sent"]
    assert row.record.channel == "freeform"
    assert row.record.metadata["evidence"]["window_hours"] == 24


@pytest.mark.asyncio
async def test_window_is_inclusive_at_exactly_24_hours() -> None:
    h = _Harness()
    h.customer_wrote(hours_ago=24)

    result = await h.service.send_notification(CUSTOMER, "Ready")

    assert result.channel == Channel.FREEFORM


@pytest.mark.asyncio
async def test_stale_inbound_uses_order_template() -> None:
    h = _Harness()
    h.customer_wrote(hours_ago=25)

    result = await h.service.send_notification(CUSTOMER, "Order #42: 2x Margherita")

    assert result.channel == Channel.TEMPLATE
    assert result.deferred is False
    sent = h.provider.sent[0]
    assert sent.kind == "template"
    assert sent.template_sid == "HXorder"
    assert sent.variables == {"order_text": "Order #42: 2x Margherita"}
    assert h.only_row().record.template_name == "new_order_notification"
    assert h.cache.entries == {}


@pytest.mark.asyncio
async def test_unsuitable_body_is_deferred_behind_call_to_action() -> None:
    h = _Harness()

    result = await h.service.send_notification(CUSTOMER, MULTILINE)

    assert result.deferred is True
    assert result.channel == Channel.TEMPLATE
    assert [s.template_sid for s in h.provider.sent] == ["HXnotify"]
    entry = next(iter(h.cache.entries.values()))
    assert entry.message_text == MULTILINE
    assert entry.expires_at == h.clock.now + timedelta(hours=48)
    row = h.only_row()
    assert row.record.metadata["deferred"] is True
    assert row.record.metadata["cache_entry_id"] == entry.id
    assert entry.outbound_message_id == row.record.id


@pytest.mark.asyncio
async def test_overlong_body_is_deferred() -> None:
    h = _Harness()

    result = await h.service.send_notification(CUSTOMER, "x" * 1025)

    assert result.deferred is True


@pytest.mark.asyncio
async def test_session_expired_error_falls_back_to_template_once() -> None:
    h = _Harness()
    h.customer_wrote(hours_ago=1)
    h.provider.fail_next_freeform(code="63016")

    result = await h.service.send_notification(CUSTOMER, "Ready for pickup")

    assert result.channel == Channel.TEMPLATE
    assert [s.kind for s in h.provider.sent] == ["template"]
    row = h.only_row()
    assert row.statuses == ["pending", "fallback", "sent"]
    assert row.metas[1].provider_error_code == "63016"
    assert row.record.metadata["fallback"] is True
    assert h.metrics.counter(TEMPLATE_FALLBACKS) == 1


@pytest.mark.asyncio
async def test_failed_fallback_is_terminal_and_not_retried() -> None:
    h = _Harness()
    h.customer_wrote(hours_ago=1)
    h.provider.fail_next_freeform(code="63016")
    h.provider.fail_next_template(code="63024")

    with pytest.raises(ProviderSendError):
        await h.service.send_notification(CUSTOMER, "Ready for pickup")

    row = h.only_row()
    assert row.statuses == ["pending", "fallback", "failed"]
    assert row.record.error_code == "63024"
    assert row.record.metadata["fallback"] is True
    assert h.provider.sent == []
    assert h.metrics.counter(MESSAGES_FAILED) == 1


@pytest.mark.asyncio
async def test_other_freeform_errors_do_not_fall_back() -> None:
    h = _Harness()
    h.customer_wrote(hours_ago=1)
    h.provider.fail_next_freeform(code="21211")

    with pytest.raises(ProviderSendError):
        await h.service.send_notification(CUSTOMER, "Ready")

    row = h.only_row()
    assert row.statuses == ["pending", "failed"]
    assert row.record.channel == "freeform"
    assert h.provider.sent == []


@pytest.mark.asyncio
async def test_pending_call_to_action_is_coalesced() -> None:
    h = _Harness()
    first = await h.service.send_notification(CUSTOMER, MULTILINE)
    h.clock.advance(minutes=10)

    second = await h.service.send_notification(CUSTOMER, MULTILINE + "\n1x Espresso")

    assert second.coalesced is True
    assert second.id is None
    assert second.outbound_message_id == first.outbound_message_id
    assert len(h.provider.sent) == 1
    assert len(h.outbound.rows) == 1
    entry = next(iter(h.cache.entries.values()))
    assert entry.message_text.endswith("1x Espresso")
    assert entry.expires_at == h.clock.now + timedelta(hours=48)
    assert h.metrics.counter(DEFERRED_COALESCED) == 1


@pytest.mark.asyncio
async def test_call_to_action_older_than_window_is_not_reused() -> None:
    h = _Harness()
    await h.service.send_notification(CUSTOMER, MULTILINE)
    h.clock.advance(hours=25)

    result = await h.service.send_notification(CUSTOMER, MULTILINE)

    assert result.coalesced is False
    assert len(h.provider.sent) == 2


@pytest.mark.asyncio
async def test_cached_payload_is_consumed_once() -> None:
    h = _Harness()
    await h.service.send_notification(CUSTOMER, MULTILINE)

    assert await h.service.consume_cached_message_for_phone(f"whatsapp:{CUSTOMER}") == MULTILINE
    assert await h.service.consume_cached_message_for_phone(CUSTOMER) is None
    assert await h.service.consume_cached_message_for_phone("not a phone") is None


@pytest.mark.asyncio
async def test_expired_cache_entry_is_not_released() -> None:
    h = _Harness()
    await h.service.send_notification(CUSTOMER, MULTILINE)
    h.clock.advance(hours=49)

    assert await h.service.consume_cached_message_for_phone(CUSTOMER) is None


@pytest.mark.asyncio
async def test_validation_runs_before_any_store_call() -> None:
    h = _Harness()

    with pytest.raises(InvalidRecipientError):
        await h.service.send_notification("call me", "Hello")
    with pytest.raises(EmptyMessageError):
        await h.service.send_notification(CUSTOMER, "   ")

    assert h.outbound.rows == {}
    assert h.provider.sent == []


@pytest.mark.asyncio
async def test_missing_notification_template_fails_the_send(monkeypatch) -> None:
    monkeypatch.setenv("TEMPLATE_NOTIFICATION_SID", "")
    get_settings.cache_clear()
    h = _Harness()

    with pytest.raises(TemplateNotConfiguredError):
        await h.service.send_notification(CUSTOMER, MULTILINE)

    assert h.only_row().statuses == ["pending", "failed"]


@pytest.mark.asyncio
async def test_cache_write_failure_marks_failed() -> None:
    h = _Harness()
    h.cache.fail_create = True

    with pytest.raises(DeliveryRecordError) as raised:
        await h.service.send_notification(CUSTOMER, MULTILINE)

    assert h.only_row().statuses == ["pending", "failed"]
    assert h.cache.entries == {}
    assert raised.value.provider_sid == h.provider.sent[0].sid


@pytest.mark.asyncio
async def test_record_failure_after_send_marks_failed() -> None:
    h = _Harness()
    h.customer_wrote(hours_ago=1)
    h.outbound.fail_mark_sent = True

    with pytest.raises(DeliveryRecordError) as raised:
        await h.service.send_notification(CUSTOMER, "Ready")

    assert h.only_row().statuses == ["pending", "failed"]
    assert raised.value.provider_sid == h.provider.sent[0].sid


@pytest.mark.asyncio
async def test_cancelled_send_is_marked_failed() -> None:
    h = _Harness()
    h.customer_wrote(hours_ago=1)

    async def hang(**_: object) -> str:
        await asyncio.sleep(3600)
        return "SMnever"

    h.provider.send_freeform = hang

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(h.service.send_notification(CUSTOMER, "Ready"), 0.05)

    row = h.only_row()
    assert row.statuses == ["pending", "failed"]
    assert row.record.error_message == "CancelledError"
    assert h.metrics.counter(MESSAGES_FAILED) == 1


@pytest.mark.asyncio
async def test_reply_after_call_to_action_switches_to_freeform() -> None:
    h = _Harness()
    deferred = await h.service.send_notification(CUSTOMER, MULTILINE)
    h.clock.advance(minutes=5)
    h.customer_wrote(hours_ago=0)

    followup = await h.service.send_notification(CUSTOMER, "Ready for pickup")

    assert deferred.deferred is True
    assert followup.channel == Channel.FREEFORM
    assert followup.coalesced is False
    assert len(h.outbound.rows) == 2
    assert [sent.kind for sent in h.provider.sent] == ["template", "freeform"]
    assert await h.service.consume_cached_message_for_phone(CUSTOMER) == MULTILINE


@pytest.mark.asyncio
async def test_force_freeform_skips_window_lookup() -> None:
    h = _Harness()

    result = await h.service.send_notification(CUSTOMER, MULTILINE, force_freeform=True)

    assert result.channel == Channel.FREEFORM
    assert h.only_row().record.metadata["evidence"]["forced"] is True


@pytest.mark.asyncio
async def test_restaurant_order_targets_tenant_number() -> None:
    h = _Harness()

    result = await h.service.notify_restaurant_order("t1", "Order #7: 1x Lasagna")

    assert result.channel == Channel.TEMPLATE
    assert h.provider.sent[0].to_address == "whatsapp:+15550001111"
    assert h.only_row().record.tenant_id == "t1"

    with pytest.raises(TenantNotFoundError):
        await h.service.notify_restaurant_order("missing", "Order")
    with pytest.raises(InvalidRecipientError):
        await h.service.notify_restaurant_order("t2", "Order")
    with pytest.raises(EmptyMessageError):
        await h.service.notify_restaurant_order("t1", "")
