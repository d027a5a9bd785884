from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessiongate.core.errors import StoreError
from sessiongate.domain.delivery import (
    Channel,
    DeliveryStatus,
    FailedMeta,
    FallbackMeta,
    PendingMeta,
    SentMeta,
)
from sessiongate.domain.models import OutboundMessage
from sessiongate.persistence.db import SessionLocal


class OutboundStore(Protocol):
    async def create_pending(
        self,
        *,
        tenant_id: str | None,
        conversation_id: str | None,
        to_phone: str,
        from_phone: str | None,
        body: str,
        channel: Channel,
        meta: PendingMeta,
    ) -> str:
        ...

    async def mark_fallback(self, message_id: str, *, meta: FallbackMeta) -> None:
        ...

    async def mark_sent(
        self,
        message_id: str,
        *,
        channel: Channel,
        wa_sid: str | None,
        template_sid: str | None,
        template_name: str | None,
        meta: SentMeta,
    ) -> None:
        ...

    async def mark_failed(
        self,
        message_id: str,
        *,
        channel: Channel,
        error_code: str | None,
        error_message: str,
        meta: FailedMeta,
    ) -> None:
        ...


class SqlOutboundStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def create_pending(
        self,
        *,
        tenant_id: str | None,
        conversation_id: str | None,
        to_phone: str,
        from_phone: str | None,
        body: str,
        channel: Channel,
        meta: PendingMeta,
    ) -> str:
        row = OutboundMessage(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            to_phone=to_phone,
            from_phone=from_phone,
            body=body,
            channel=channel.value,
            status=DeliveryStatus.PENDING.value,
            metadata_json=meta.to_json(),
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            return row.id

    async def mark_fallback(self, message_id: str, *, meta: FallbackMeta) -> None:
        # The record stays pending while the template retry runs.
        await self._update(
            message_id,
            channel=Channel.TEMPLATE.value,
            metadata_json=meta.to_json(),
        )

    async def mark_sent(
        self,
        message_id: str,
        *,
        channel: Channel,
        wa_sid: str | None,
        template_sid: str | None,
        template_name: str | None,
        meta: SentMeta,
    ) -> None:
        await self._update(
            message_id,
            channel=channel.value,
            status=DeliveryStatus.SENT.value,
            wa_sid=wa_sid,
            template_sid=template_sid,
            template_name=template_name,
            metadata_json=meta.to_json(),
        )

    async def mark_failed(
        self,
        message_id: str,
        *,
        channel: Channel,
        error_code: str | None,
        error_message: str,
        meta: FailedMeta,
    ) -> None:
        await self._update(
            message_id,
            channel=channel.value,
            status=DeliveryStatus.FAILED.value,
            error_code=error_code,
            error_message=error_message,
            metadata_json=meta.to_json(),
        )

    async def _update(self, message_id: str, **values: Any) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(OutboundMessage)
                .where(OutboundMessage.id == message_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount == 0:
                raise StoreError(f"outbound message {message_id} not found")
