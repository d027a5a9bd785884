from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessiongate.core.errors import StoreError
from sessiongate.domain.models import ConversationSession
from sessiongate.domain.records import SessionRecord, SessionStats
from sessiongate.domain.results import AlreadyExists, Created, InsertOutcome
from sessiongate.persistence.db import SessionLocal


class SessionStore(Protocol):
    async def latest(self, tenant_id: str, customer_wa: str) -> SessionRecord | None:
        ...

    async def active_at(self, tenant_id: str, customer_wa: str, at: datetime) -> SessionRecord | None:
        ...

    async def create(
        self,
        *,
        tenant_id: str,
        customer_wa: str,
        sequence: int,
        start: datetime,
        end: datetime,
    ) -> InsertOutcome[SessionRecord]:
        ...

    async def extend(self, session_id: str, proposed_end: datetime) -> SessionRecord:
        ...

    async def stats(self, tenant_id: str, start: datetime, end: datetime) -> SessionStats:
        ...


def _to_record(row: ConversationSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        customer_wa=row.customer_wa,
        sequence=int(row.sequence),
        session_start=row.session_start,
        session_end=row.session_end,
        message_count=int(row.message_count or 0),
    )


class SqlSessionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def latest(self, tenant_id: str, customer_wa: str) -> SessionRecord | None:
        async with self._session_factory() as session:
            return await _latest(session, tenant_id, customer_wa)

    async def active_at(self, tenant_id: str, customer_wa: str, at: datetime) -> SessionRecord | None:
        # A session is active while its end lies strictly after the instant.
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConversationSession)
                .where(
                    ConversationSession.tenant_id == tenant_id,
                    ConversationSession.customer_wa == customer_wa,
                    ConversationSession.session_end > at,
                )
                .order_by(ConversationSession.session_end.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_record(row) if row is not None else None

    async def create(
        self,
        *,
        tenant_id: str,
        customer_wa: str,
        sequence: int,
        start: datetime,
        end: datetime,
    ) -> InsertOutcome[SessionRecord]:
        # Race-safe insert: the loser of a concurrent create reads the winner's row.
        stmt = (
            insert(ConversationSession)
            .values(
                tenant_id=tenant_id,
                customer_wa=customer_wa,
                sequence=sequence,
                session_start=start,
                session_end=end,
                message_count=1,
            )
            .on_conflict_do_nothing(constraint="uq_conversation_sessions_sequence")
            .returning(ConversationSession)
        )
        async with self._session_factory() as session:
            created = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            if created is not None:
                return Created(_to_record(created))
            result = await session.execute(
                select(ConversationSession).where(
                    ConversationSession.tenant_id == tenant_id,
                    ConversationSession.customer_wa == customer_wa,
                    ConversationSession.sequence == sequence,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                raise StoreError("session insert conflicted but no row was found")
            return AlreadyExists(_to_record(existing))

    async def extend(self, session_id: str, proposed_end: datetime) -> SessionRecord:
        # Single-statement increment; the end only moves forward.
        stmt = (
            update(ConversationSession)
            .where(ConversationSession.id == session_id)
            .values(
                message_count=ConversationSession.message_count + 1,
                session_end=func.greatest(ConversationSession.session_end, proposed_end),
            )
            .returning(ConversationSession)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            if row is None:
                raise StoreError(f"session {session_id} not found")
            return _to_record(row)

    async def stats(self, tenant_id: str, start: datetime, end: datetime) -> SessionStats:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    func.count(ConversationSession.id),
                    func.count(func.distinct(ConversationSession.customer_wa)),
                    func.coalesce(func.sum(ConversationSession.message_count), 0),
                ).where(
                    ConversationSession.tenant_id == tenant_id,
                    ConversationSession.session_start >= start,
                    ConversationSession.session_start <= end,
                )
            )
            total, unique_customers, messages = result.one()
        total = int(total or 0)
        messages = int(messages or 0)
        return SessionStats(
            total_sessions=total,
            unique_customers=int(unique_customers or 0),
            total_messages=messages,
            average_messages_per_session=(messages / total) if total else 0.0,
        )


async def _latest(session: AsyncSession, tenant_id: str, customer_wa: str) -> SessionRecord | None:
    result = await session.execute(
        select(ConversationSession)
        .where(
            ConversationSession.tenant_id == tenant_id,
            ConversationSession.customer_wa == customer_wa,
        )
        .order_by(ConversationSession.session_end.desc(), ConversationSession.sequence.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return _to_record(row) if row is not None else None
