from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessiongate.domain.models import InboundMessage, Tenant
from sessiongate.domain.records import InboundRecord, TenantRecord
from sessiongate.persistence.db import SessionLocal


class InboundStore(Protocol):
    async def exists(self, wa_sid: str) -> bool:
        ...

    async def record(self, message: InboundRecord) -> bool:
        ...

    async def last_inbound_at(self, sender: str) -> datetime | None:
        ...


class TenantStore(Protocol):
    async def get(self, tenant_id: str) -> TenantRecord | None:
        ...

    async def get_by_number(self, whatsapp_number: str) -> TenantRecord | None:
        ...


def _tenant_record(row: Tenant) -> TenantRecord:
    return TenantRecord(
        id=row.id,
        name=row.name,
        whatsapp_number=row.whatsapp_number,
        plan=row.plan,
        max_messages_per_min=row.max_messages_per_min,
    )


class SqlInboundStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def exists(self, wa_sid: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(InboundMessage.id).where(InboundMessage.wa_sid == wa_sid).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def record(self, message: InboundRecord) -> bool:
        # Returns False when the provider id was already stored.
        stmt = (
            insert(InboundMessage)
            .values(
                tenant_id=message.tenant_id,
                customer_wa=message.customer_wa,
                to_phone=message.to_phone,
                wa_sid=message.wa_sid,
                message_type=message.message_type,
                body=message.body,
                metadata_json=message.metadata,
                created_at=message.created_at,
            )
            .on_conflict_do_nothing(index_elements=[InboundMessage.wa_sid])
            .returning(InboundMessage.id)
        )
        async with self._session_factory() as session:
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return inserted is not None

    async def last_inbound_at(self, sender: str) -> datetime | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.max(InboundMessage.created_at)).where(InboundMessage.customer_wa == sender)
            )
            return result.scalar_one_or_none()


class SqlTenantStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def get(self, tenant_id: str) -> TenantRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Tenant, tenant_id)
            return _tenant_record(row) if row is not None else None

    async def get_by_number(self, whatsapp_number: str) -> TenantRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Tenant).where(Tenant.whatsapp_number == whatsapp_number).limit(1)
            )
            row = result.scalar_one_or_none()
            return _tenant_record(row) if row is not None else None
