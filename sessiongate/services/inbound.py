from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from sessiongate.apps.api.rate_limit import RateLimitDecision, RateLimiter, check_inbound_limits
from sessiongate.core.errors import SessionGateError
from sessiongate.domain.records import InboundRecord
from sessiongate.persistence.repos.messages import (
    InboundStore,
    SqlInboundStore,
    SqlTenantStore,
    TenantStore,
)
from sessiongate.services.delivery import DeliveryService, get_delivery_service
from sessiongate.services.idempotency import IdempotencyGuard, get_idempotency_guard
from sessiongate.services.phone import standardize_whatsapp_number
from sessiongate.services.telemetry import (
    MESSAGES_RECEIVED,
    WEBHOOKS_DUPLICATE,
    WEBHOOKS_FAILED,
    WEBHOOKS_PROCESSED,
    WEBHOOKS_RECEIVED,
    MetricsCollector,
    get_metrics,
)
from sessiongate.services.usage import TrackResult, UsageLedger, get_usage_ledger


logger = logging.getLogger(__name__)

VIEW_ORDER_PAYLOAD = "view_order"
VIEW_ORDER_TEXT = "View Order Details"
ORDER_UNAVAILABLE_TEXT = "Sorry, order details are no longer available. Please contact support."
LOCAL_SID_PREFIX = "local-"


@dataclass(frozen=True)
class InboundEvent:
    # Provider webhook fields used by the pipeline.
    from_number: str
    to_number: str
    message_sid: str | None = None
    body: str | None = None
    profile_name: str | None = None
    button_payload: str | None = None
    button_text: str | None = None
    latitude: str | None = None
    longitude: str | None = None
    address: str | None = None
    num_media: int = 0
    media_url: str | None = None
    media_content_type: str | None = None

    @property
    def is_view_order_request(self) -> bool:
        return (
            self.button_payload == VIEW_ORDER_PAYLOAD
            or self.body == VIEW_ORDER_TEXT
            or self.button_text == VIEW_ORDER_TEXT
        )

    @property
    def is_button_response(self) -> bool:
        return bool(self.button_payload or self.button_text)


@dataclass(frozen=True)
class InboundOutcome:
    status_code: int
    success: bool
    reason: str | None = None
    tenant_id: str | None = None
    session_id: str | None = None
    new_session: bool = False
    rate_limit: RateLimitDecision | None = None
    details: dict[str, Any] = field(default_factory=dict)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _stored_sid(event: InboundEvent) -> str:
    # Events without a provider id still need a row for channel selection.
    return event.message_sid or f"{LOCAL_SID_PREFIX}{uuid4().hex}"


def _classify(event: InboundEvent) -> tuple[str, str, dict[str, Any]]:
    # Derive message type, stored body and metadata from the raw webhook fields.
    message_type = "text"
    content = event.body or ""
    metadata: dict[str, Any] = {}
    if event.is_button_response:
        message_type = "interactive"
        content = event.button_payload or event.body or event.button_text or content
        metadata.update(
            buttonPayload=event.button_payload,
            buttonText=event.button_text,
            isButtonResponse=True,
        )
    if event.latitude and event.longitude:
        message_type = "location"
        content = event.address or f"{event.latitude}, {event.longitude}"
        metadata["location"] = {
            "latitude": event.latitude,
            "longitude": event.longitude,
            "address": event.address,
        }
    if event.num_media > 0:
        message_type = "image"
        metadata["mediaUrl"] = event.media_url
        metadata["mediaContentType"] = event.media_content_type
    if event.profile_name:
        metadata["profileName"] = event.profile_name
    return message_type, content, metadata


class InboundProcessor:
    """Run one inbound webhook event through dedupe, admission and tracking.

    Order matters: tenant routing, then dedupe (stored sid, then lock), then
    rate limits, then persistence and session tracking. A view-order tap
    additionally releases the cached payload as a free-form reply.
    """

    def __init__(
        self,
        *,
        tenants: TenantStore | None = None,
        inbound: InboundStore | None = None,
        guard: IdempotencyGuard | None = None,
        limiter: RateLimiter | None = None,
        ledger: UsageLedger | None = None,
        delivery: DeliveryService | None = None,
        metrics: MetricsCollector | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._tenants = tenants or SqlTenantStore()
        self._inbound = inbound or SqlInboundStore()
        self._guard = guard
        self._limiter = limiter
        self._ledger = ledger
        self._delivery = delivery
        self._metrics = metrics
        self._time_provider = time_provider or _utc_now

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics or get_metrics()

    async def process(self, event: InboundEvent) -> InboundOutcome:
        start = time.monotonic()
        self.metrics.increment(WEBHOOKS_RECEIVED)
        try:
            outcome = await self._process(event)
        except Exception:
            self.metrics.increment(WEBHOOKS_FAILED)
            logger.exception("inbound_processing_failed sid=%s", event.message_sid)
            raise
        finally:
            self.metrics.record_processing_time((time.monotonic() - start) * 1000.0)
        if outcome.status_code >= 500:
            self.metrics.increment(WEBHOOKS_FAILED)
        else:
            self.metrics.increment(WEBHOOKS_PROCESSED)
        return outcome

    async def _process(self, event: InboundEvent) -> InboundOutcome:
        guard = self._guard or get_idempotency_guard()
        to_number = standardize_whatsapp_number(event.to_number)
        tenant = await self._tenants.get_by_number(to_number) if to_number else None
        if tenant is None:
            logger.warning("inbound_unknown_tenant to=%s", event.to_number)
            return InboundOutcome(status_code=404, success=False, reason="tenant_not_found")

        customer = standardize_whatsapp_number(event.from_number)
        if not customer:
            return InboundOutcome(
                status_code=400, success=False, reason="invalid_sender", tenant_id=tenant.id
            )

        lock_key = f"msg:{event.message_sid}" if event.message_sid else None
        if lock_key is not None:
            if await self._inbound.exists(event.message_sid or ""):
                return self._duplicate(tenant.id, "already_stored")
            if await guard.is_processed(lock_key):
                return self._duplicate(tenant.id, "already_processed")
            if not await guard.try_acquire_lock(lock_key):
                return self._duplicate(tenant.id, "in_flight")

        breach = await check_inbound_limits(
            tenant_id=tenant.id,
            customer_phone=customer,
            tenant_max=tenant.max_messages_per_min,
            limiter=self._limiter,
        )
        if breach is not None:
            return InboundOutcome(
                status_code=429,
                success=False,
                reason="rate_limited",
                tenant_id=tenant.id,
                rate_limit=breach,
            )

        now = self._time_provider()
        if event.is_view_order_request:
            outcome = await self._handle_view_order(event, tenant.id, customer, to_number, now)
        else:
            outcome = await self._handle_message(event, tenant.id, customer, to_number, now)

        if lock_key is not None:
            await guard.mark_processed(lock_key)
        return outcome

    def _duplicate(self, tenant_id: str, reason: str) -> InboundOutcome:
        logger.info("inbound_duplicate tenant_id=%s reason=%s", tenant_id, reason)
        self.metrics.increment(WEBHOOKS_DUPLICATE)
        return InboundOutcome(status_code=200, success=True, reason=reason, tenant_id=tenant_id)

    async def _persist_and_track(
        self,
        record: InboundRecord,
    ) -> TrackResult | None:
        # Only the first copy of a provider message counts towards the session.
        stored = await self._inbound.record(record)
        if not stored:
            return None
        self.metrics.increment(MESSAGES_RECEIVED)
        ledger = self._ledger or get_usage_ledger()
        return await ledger.track_message(record.tenant_id, record.customer_wa, record.created_at)

    async def _handle_message(
        self,
        event: InboundEvent,
        tenant_id: str,
        customer: str,
        to_number: str,
        now: datetime,
    ) -> InboundOutcome:
        message_type, content, metadata = _classify(event)
        tracked = await self._persist_and_track(
            InboundRecord(
                tenant_id=tenant_id,
                customer_wa=customer,
                to_phone=to_number,
                wa_sid=_stored_sid(event),
                message_type=message_type,
                body=content,
                created_at=now,
                metadata=metadata or None,
            )
        )
        if tracked is None:
            return self._duplicate(tenant_id, "stored_concurrently")
        return InboundOutcome(
            status_code=200,
            success=True,
            tenant_id=tenant_id,
            session_id=tracked.session.session_id,
            new_session=tracked.session.is_new,
            details={"message_type": message_type},
        )

    async def _handle_view_order(
        self,
        event: InboundEvent,
        tenant_id: str,
        customer: str,
        to_number: str,
        now: datetime,
    ) -> InboundOutcome:
        delivery = self._delivery or get_delivery_service()
        tracked: TrackResult | None = None
        try:
            tracked = await self._persist_and_track(
                InboundRecord(
                    tenant_id=tenant_id,
                    customer_wa=customer,
                    to_phone=to_number,
                    wa_sid=_stored_sid(event),
                    message_type="button",
                    body=event.button_text or event.body or VIEW_ORDER_TEXT,
                    created_at=now,
                    metadata={
                        "buttonPayload": event.button_payload,
                        "buttonText": event.button_text,
                        "isButtonResponse": True,
                    },
                )
            )
        except Exception as exc:  # noqa: BLE001
            # The tap still unlocks the payload even if bookkeeping failed.
            logger.warning("view_order_persist_failed customer=%s error=%s", customer, exc)

        session_id = tracked.session.session_id if tracked else None
        cached = await delivery.consume_cached_message_for_phone(customer)
        if cached is None:
            logger.warning("view_order_cache_miss customer=%s", customer)
            try:
                await delivery.send_notification(
                    customer,
                    ORDER_UNAVAILABLE_TEXT,
                    tenant_id=tenant_id,
                    from_number=to_number,
                    force_freeform=True,
                )
            except SessionGateError as exc:
                logger.error("view_order_apology_failed customer=%s error=%s", customer, exc)
            return InboundOutcome(
                status_code=404,
                success=False,
                reason="cached_message_not_found",
                tenant_id=tenant_id,
                session_id=session_id,
            )

        try:
            result = await delivery.send_notification(
                customer,
                cached,
                tenant_id=tenant_id,
                from_number=to_number,
                force_freeform=True,
            )
        except SessionGateError as exc:
            logger.error("view_order_send_failed customer=%s error=%s", customer, exc)
            return InboundOutcome(
                status_code=500,
                success=False,
                reason="cached_message_send_failed",
                tenant_id=tenant_id,
                session_id=session_id,
            )
        return InboundOutcome(
            status_code=200,
            success=True,
            tenant_id=tenant_id,
            session_id=session_id,
            new_session=bool(tracked and tracked.session.is_new),
            details={"outbound_message_id": result.outbound_message_id},
        )


_processor: InboundProcessor | None = None


def get_inbound_processor() -> InboundProcessor:
    global _processor
    if _processor is None:
        _processor = InboundProcessor()
    return _processor


def reset_inbound_processor() -> None:
    global _processor
    _processor = None
