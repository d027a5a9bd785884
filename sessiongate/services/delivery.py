"""Outbound delivery with session-aware channel selection.

A send goes out free-form when the recipient wrote to us within the session
window, otherwise through an approved template. When the body cannot be
embedded in the order template, a generic call-to-action template is sent and
the real body waits in the message cache until the recipient taps the button.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Awaitable, Callable, TypeVar

from sessiongate.core.config import get_settings
from sessiongate.core.errors import (
    DeliveryRecordError,
    EmptyMessageError,
    InvalidRecipientError,
    ProviderConfigError,
    ProviderSendError,
    TemplateNotConfiguredError,
    TenantNotFoundError,
)
from sessiongate.domain.delivery import (
    Channel,
    DeliveryState,
    DeliveryStatus,
    FailedMeta,
    FallbackMeta,
    NotifyResult,
    PendingMeta,
    SentMeta,
    SessionWindowEvidence,
    channel_for_state,
    status_for_state,
    transition,
)
from sessiongate.persistence.repos.message_cache import MessageCacheStore, SqlMessageCacheStore
from sessiongate.persistence.repos.messages import (
    InboundStore,
    SqlInboundStore,
    SqlTenantStore,
    TenantStore,
)
from sessiongate.persistence.repos.outbound import OutboundStore, SqlOutboundStore
from sessiongate.providers.messaging.base import MessagingProvider
from sessiongate.providers.messaging.factory import get_messaging_provider
from sessiongate.services.phone import ensure_whatsapp_address, standardize_whatsapp_number
from sessiongate.services.telemetry import (
    CACHE_CONSUMED,
    DEFERRED_CACHED,
    DEFERRED_COALESCED,
    MESSAGES_FAILED,
    MESSAGES_SENT,
    TEMPLATE_FALLBACKS,
    MetricsCollector,
    get_metrics,
)


logger = logging.getLogger(__name__)

# Template variables may not carry newlines, tabs or long runs of spaces.
_UNSUITABLE_VARIABLE = re.compile(r"[\n\r\t]| {4,}")

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryService:
    def __init__(
        self,
        *,
        provider: MessagingProvider | None = None,
        outbound: OutboundStore | None = None,
        cache: MessageCacheStore | None = None,
        inbound: InboundStore | None = None,
        tenants: TenantStore | None = None,
        metrics: MetricsCollector | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._provider = provider
        self._outbound = outbound or SqlOutboundStore()
        self._cache = cache or SqlMessageCacheStore()
        self._inbound = inbound or SqlInboundStore()
        self._tenants = tenants or SqlTenantStore()
        self._metrics = metrics
        self._time_provider = time_provider or _utc_now

    @property
    def provider(self) -> MessagingProvider:
        return self._provider or get_messaging_provider()

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics or get_metrics()

    def within_session_window(self, last_inbound_at: datetime | None, at: datetime) -> bool:
        # Inclusive at exactly 24h.
        if last_inbound_at is None:
            return False
        window = timedelta(hours=get_settings().session_window_hours)
        return at - last_inbound_at <= window

    def fits_order_template(self, text: str) -> bool:
        settings = get_settings()
        if not settings.template_order_sid:
            return False
        if len(text) > settings.template_variable_max_chars:
            return False
        return _UNSUITABLE_VARIABLE.search(text) is None

    async def send_notification(
        self,
        to: str,
        body: str,
        *,
        tenant_id: str | None = None,
        from_number: str | None = None,
        force_freeform: bool = False,
        conversation_id: str | None = None,
    ) -> NotifyResult:
        settings = get_settings()
        recipient = standardize_whatsapp_number(to)
        if not recipient:
            raise InvalidRecipientError(f"Invalid recipient phone number: {to!r}")
        text = (body or "").strip()
        if not text:
            raise EmptyMessageError("Message body must be a non-empty string")
        sender = standardize_whatsapp_number(from_number or settings.whatsapp_from)
        if not sender:
            raise ProviderConfigError("No sender WhatsApp number is configured")

        now = self._time_provider()
        last_inbound_at = None if force_freeform else await self._inbound.last_inbound_at(recipient)
        evidence = SessionWindowEvidence(
            last_inbound_at=last_inbound_at,
            checked_at=now,
            window_hours=settings.session_window_hours,
            forced=force_freeform,
        )
        if force_freeform or self.within_session_window(last_inbound_at, now):
            state = transition(DeliveryState.UNDETERMINED, DeliveryState.FREEFORM)
        else:
            state = transition(DeliveryState.UNDETERMINED, DeliveryState.TEMPLATE)

        if state == DeliveryState.TEMPLATE:
            coalesced = await self._coalesce_pending(recipient, text, now)
            if coalesced is not None:
                return coalesced

        message_id = await self._outbound.create_pending(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            to_phone=recipient,
            from_phone=sender,
            body=text,
            channel=channel_for_state(state),
            meta=PendingMeta(evidence=evidence),
        )

        try:
            if state == DeliveryState.FREEFORM:
                try:
                    sid = await self.provider.send_freeform(
                        from_address=ensure_whatsapp_address(sender),
                        to_address=ensure_whatsapp_address(recipient),
                        body=text,
                    )
                except ProviderSendError as exc:
                    if not exc.is_session_expired:
                        raise
                    state = transition(state, DeliveryState.TEMPLATE_AFTER_FALLBACK)
                    logger.warning(
                        "session_window_closed_fallback outbound_id=%s to=%s", message_id, recipient
                    )
                    await self._outbound.mark_fallback(
                        message_id,
                        meta=FallbackMeta(evidence=evidence, provider_error_code=exc.code),
                    )
                    self.metrics.increment(TEMPLATE_FALLBACKS)
                else:
                    sent = transition(state, DeliveryState.SENT)
                    await self._record_accepted(
                        sid,
                        self._outbound.mark_sent(
                            message_id,
                            channel=Channel.FREEFORM,
                            wa_sid=sid,
                            template_sid=None,
                            template_name=None,
                            meta=SentMeta(evidence=evidence),
                        ),
                    )
                    self.metrics.increment(MESSAGES_SENT)
                    return NotifyResult(
                        id=sid,
                        channel=Channel.FREEFORM,
                        status=status_for_state(sent),
                        outbound_message_id=message_id,
                    )
            return await self._send_template(
                message_id=message_id,
                state=state,
                recipient=recipient,
                sender=sender,
                text=text,
                evidence=evidence,
                now=now,
            )
        except asyncio.CancelledError as exc:
            # A cancelled attempt still ends failed; shield the write from a second cancel.
            await asyncio.shield(self._mark_failed(message_id, state, evidence, exc))
            raise
        except Exception as exc:  # noqa: BLE001 - record the terminal state, then propagate
            await self._mark_failed(message_id, state, evidence, exc)
            raise

    async def _record_accepted(self, sid: str, write: Awaitable[T]) -> T:
        # The provider holds the message from here on; callers must not resend it.
        try:
            return await write
        except Exception as exc:  # noqa: BLE001 - wrapped so retries can tell it apart
            logger.error("outbound_record_after_send_failed sid=%s error=%s", sid, exc)
            raise DeliveryRecordError(
                f"Message {sid} was accepted by the provider but could not be recorded",
                provider_sid=sid,
            ) from exc

    async def _send_template(
        self,
        *,
        message_id: str,
        state: DeliveryState,
        recipient: str,
        sender: str,
        text: str,
        evidence: SessionWindowEvidence,
        now: datetime,
    ) -> NotifyResult:
        settings = get_settings()
        fallback = state == DeliveryState.TEMPLATE_AFTER_FALLBACK
        from_address = ensure_whatsapp_address(sender)
        to_address = ensure_whatsapp_address(recipient)

        if self.fits_order_template(text):
            sid = await self.provider.send_template(
                from_address=from_address,
                to_address=to_address,
                template_sid=settings.template_order_sid or "",
                variables={settings.template_order_variable: text},
            )
            sent = transition(state, DeliveryState.SENT)
            await self._record_accepted(
                sid,
                self._outbound.mark_sent(
                    message_id,
                    channel=Channel.TEMPLATE,
                    wa_sid=sid,
                    template_sid=settings.template_order_sid,
                    template_name=settings.template_order_name,
                    meta=SentMeta(evidence=evidence, fallback=fallback),
                ),
            )
            self.metrics.increment(MESSAGES_SENT)
            return NotifyResult(
                id=sid,
                channel=Channel.TEMPLATE,
                status=status_for_state(sent),
                outbound_message_id=message_id,
            )

        if not settings.template_notification_sid:
            raise TemplateNotConfiguredError(
                "Body does not fit the order template and no notification template is configured"
            )
        # Send the call-to-action first; the payload is only cached once a template is out.
        sid = await self.provider.send_template(
            from_address=from_address,
            to_address=to_address,
            template_sid=settings.template_notification_sid,
        )
        entry = await self._record_accepted(
            sid,
            self._cache.create(
                to_phone=recipient,
                from_phone=sender,
                message_text=text,
                template_name=settings.template_notification_name,
                template_sid=settings.template_notification_sid,
                outbound_message_id=message_id,
                expires_at=now + timedelta(hours=settings.message_cache_ttl_hours),
            ),
        )
        sent = transition(state, DeliveryState.SENT)
        await self._record_accepted(
            sid,
            self._outbound.mark_sent(
                message_id,
                channel=Channel.TEMPLATE,
                wa_sid=sid,
                template_sid=settings.template_notification_sid,
                template_name=settings.template_notification_name,
                meta=SentMeta(evidence=evidence, deferred=True, cache_entry_id=entry.id, fallback=fallback),
            ),
        )
        self.metrics.increment(MESSAGES_SENT)
        self.metrics.increment(DEFERRED_CACHED)
        logger.info("deferred_payload_cached outbound_id=%s cache_id=%s", message_id, entry.id)
        return NotifyResult(
            id=sid,
            channel=Channel.TEMPLATE,
            status=status_for_state(sent),
            deferred=True,
            outbound_message_id=message_id,
        )

    async def _coalesce_pending(
        self,
        recipient: str,
        text: str,
        now: datetime,
    ) -> NotifyResult | None:
        # Refresh the payload behind an outstanding call-to-action instead of sending another one.
        # A reply since the call-to-action already routed the send to free-form.
        settings = get_settings()
        window = timedelta(hours=settings.session_window_hours)
        entry = await self._cache.find_pending(recipient, created_after=now - window, now=now)
        if entry is None:
            return None
        refreshed = await self._cache.refresh(
            entry.id,
            message_text=text,
            expires_at=now + timedelta(hours=settings.message_cache_ttl_hours),
        )
        if not refreshed:
            # Consumed between lookup and update; send normally.
            return None
        self.metrics.increment(DEFERRED_COALESCED)
        logger.info("deferred_payload_refreshed cache_id=%s to=%s", entry.id, recipient)
        return NotifyResult(
            id=None,
            channel=Channel.TEMPLATE,
            status=DeliveryStatus.SENT,
            deferred=True,
            coalesced=True,
            outbound_message_id=entry.outbound_message_id,
        )

    async def _mark_failed(
        self,
        message_id: str,
        state: DeliveryState,
        evidence: SessionWindowEvidence,
        exc: BaseException,
    ) -> None:
        transition(state, DeliveryState.FAILED)
        code = exc.code if isinstance(exc, ProviderSendError) else None
        message = str(exc) or type(exc).__name__
        self.metrics.increment(MESSAGES_FAILED)
        try:
            await self._outbound.mark_failed(
                message_id,
                channel=channel_for_state(state),
                error_code=code,
                error_message=message,
                meta=FailedMeta(
                    evidence=evidence,
                    last_error=message,
                    error_code=code,
                    fallback=state == DeliveryState.TEMPLATE_AFTER_FALLBACK,
                ),
            )
        except Exception:  # noqa: BLE001 - the send error is the one to surface
            logger.exception("outbound_mark_failed_error outbound_id=%s", message_id)
        logger.warning(
            "outbound_send_failed outbound_id=%s state=%s code=%s", message_id, state.value, code
        )

    async def consume_cached_message_for_phone(self, phone: str) -> str | None:
        recipient = standardize_whatsapp_number(phone)
        if not recipient:
            return None
        entry = await self._cache.consume_latest(recipient, now=self._time_provider())
        if entry is None:
            return None
        self.metrics.increment(CACHE_CONSUMED)
        logger.info("deferred_payload_consumed cache_id=%s to=%s", entry.id, recipient)
        return entry.message_text

    async def notify_restaurant_order(
        self,
        tenant_id: str,
        body: str,
        *,
        to_number: str | None = None,
        from_number: str | None = None,
    ) -> NotifyResult:
        if not tenant_id:
            raise TenantNotFoundError("tenant_id is required")
        if not (body or "").strip():
            raise EmptyMessageError("Order text must be a non-empty string")
        tenant = await self._tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found")
        recipient = to_number or tenant.whatsapp_number
        if not recipient:
            raise InvalidRecipientError(f"Tenant {tenant_id} has no WhatsApp number")
        return await self.send_notification(
            recipient,
            body,
            tenant_id=tenant_id,
            from_number=from_number,
        )


_delivery_service: DeliveryService | None = None


def get_delivery_service() -> DeliveryService:
    global _delivery_service
    if _delivery_service is None:
        _delivery_service = DeliveryService()
    return _delivery_service


def reset_delivery_service() -> None:
    global _delivery_service
    _delivery_service = None


async def send_notification(to: str, body: str, **kwargs) -> NotifyResult:
    return await get_delivery_service().send_notification(to, body, **kwargs)


async def notify_restaurant_order(tenant_id: str, body: str, **kwargs) -> NotifyResult:
    return await get_delivery_service().notify_restaurant_order(tenant_id, body, **kwargs)


async def consume_cached_message_for_phone(phone: str) -> str | None:
    return await get_delivery_service().consume_cached_message_for_phone(phone)
