from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessiongate.domain.models import MessageCache
from sessiongate.domain.records import CacheEntry
from sessiongate.persistence.db import SessionLocal


class MessageCacheStore(Protocol):
    async def create(
        self,
        *,
        to_phone: str,
        from_phone: str | None,
        message_text: str,
        template_name: str | None,
        template_sid: str | None,
        outbound_message_id: str | None,
        expires_at: datetime,
    ) -> CacheEntry:
        ...

    async def find_pending(self, to_phone: str, *, created_after: datetime, now: datetime) -> CacheEntry | None:
        ...

    async def refresh(self, entry_id: str, *, message_text: str, expires_at: datetime) -> bool:
        ...

    async def consume_latest(self, to_phone: str, *, now: datetime) -> CacheEntry | None:
        ...

    async def prune(self, *, before: datetime) -> int:
        ...


def _to_entry(row: MessageCache) -> CacheEntry:
    return CacheEntry(
        id=row.id,
        to_phone=row.to_phone,
        from_phone=row.from_phone,
        message_text=row.message_text,
        template_name=row.template_name,
        template_sid=row.template_sid,
        outbound_message_id=row.outbound_message_id,
        delivered=bool(row.delivered),
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


class SqlMessageCacheStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def create(
        self,
        *,
        to_phone: str,
        from_phone: str | None,
        message_text: str,
        template_name: str | None,
        template_sid: str | None,
        outbound_message_id: str | None,
        expires_at: datetime,
    ) -> CacheEntry:
        row = MessageCache(
            to_phone=to_phone,
            from_phone=from_phone,
            message_text=message_text,
            template_name=template_name,
            template_sid=template_sid,
            outbound_message_id=outbound_message_id,
            delivered=False,
            expires_at=expires_at,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _to_entry(row)

    async def find_pending(self, to_phone: str, *, created_after: datetime, now: datetime) -> CacheEntry | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MessageCache)
                .where(
                    MessageCache.to_phone == to_phone,
                    MessageCache.delivered.is_(False),
                    MessageCache.expires_at > now,
                    MessageCache.created_at >= created_after,
                )
                .order_by(MessageCache.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_entry(row) if row is not None else None

    async def refresh(self, entry_id: str, *, message_text: str, expires_at: datetime) -> bool:
        # Only an undelivered entry may be rewritten; a concurrent consume wins.
        async with self._session_factory() as session:
            result = await session.execute(
                update(MessageCache)
                .where(MessageCache.id == entry_id, MessageCache.delivered.is_(False))
                .values(message_text=message_text, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def consume_latest(self, to_phone: str, *, now: datetime) -> CacheEntry | None:
        # Claim exactly one entry; concurrent consumers skip the locked row.
        target = (
            select(MessageCache.id)
            .where(
                MessageCache.to_phone == to_phone,
                MessageCache.delivered.is_(False),
                MessageCache.expires_at > now,
            )
            .order_by(MessageCache.created_at.desc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(MessageCache)
            .where(MessageCache.id == target, MessageCache.delivered.is_(False))
            .values(delivered=True, delivered_at=now)
            .returning(MessageCache)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return _to_entry(row) if row is not None else None

    async def prune(self, *, before: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(MessageCache).where(
                    or_(MessageCache.expires_at < before, MessageCache.delivered_at < before)
                )
            )
            await session.commit()
            return int(result.rowcount or 0)
