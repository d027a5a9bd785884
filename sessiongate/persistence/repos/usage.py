from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessiongate.core.errors import RelationNotFoundError
from sessiongate.domain.models import MonthlyUsage, UsageAdjustment
from sessiongate.domain.records import AdjustmentRecord, UsageRecord
from sessiongate.persistence.db import SessionLocal, is_undefined_table


class UsageStore(Protocol):
    async def increment(self, tenant_id: str, month: int, year: int, at: datetime) -> UsageRecord:
        ...

    async def get(self, tenant_id: str, month: int, year: int) -> UsageRecord | None:
        ...

    async def get_or_create(self, tenant_id: str, month: int, year: int) -> UsageRecord:
        ...

    async def history(self, tenant_id: str, *, since_year: int, since_month: int) -> list[UsageRecord]:
        ...

    async def reset(self, tenant_id: str, month: int, year: int) -> UsageRecord:
        ...

    async def adjustments_total(self, tenant_id: str, month: int, year: int) -> int:
        ...

    async def add_adjustment(
        self,
        *,
        tenant_id: str,
        month: int,
        year: int,
        amount: int,
        type: str,
        reason: str | None,
    ) -> AdjustmentRecord:
        ...


def _to_record(row: MonthlyUsage) -> UsageRecord:
    return UsageRecord(
        tenant_id=row.tenant_id,
        month=int(row.month),
        year=int(row.year),
        conversation_count=int(row.conversation_count or 0),
        last_conversation_at=row.last_conversation_at,
    )


class SqlUsageStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def increment(self, tenant_id: str, month: int, year: int, at: datetime) -> UsageRecord:
        # Upsert-increment in one statement so concurrent new sessions never lose a count.
        stmt = insert(MonthlyUsage).values(
            tenant_id=tenant_id,
            month=month,
            year=year,
            conversation_count=1,
            last_conversation_at=at,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_monthly_usage_period",
            set_={
                "conversation_count": MonthlyUsage.conversation_count + 1,
                "last_conversation_at": at,
                "updated_at": func.now(),
            },
        ).returning(MonthlyUsage)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one()
            await session.commit()
            return _to_record(row)

    async def get(self, tenant_id: str, month: int, year: int) -> UsageRecord | None:
        async with self._session_factory() as session:
            row = await _get(session, tenant_id, month, year)
            return _to_record(row) if row is not None else None

    async def get_or_create(self, tenant_id: str, month: int, year: int) -> UsageRecord:
        stmt = (
            insert(MonthlyUsage)
            .values(tenant_id=tenant_id, month=month, year=year, conversation_count=0)
            .on_conflict_do_nothing(constraint="uq_monthly_usage_period")
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
            row = await _get(session, tenant_id, month, year)
            return _to_record(row)

    async def history(self, tenant_id: str, *, since_year: int, since_month: int) -> list[UsageRecord]:
        # Compare on a linear month index so the range can cross a year boundary.
        since_index = since_year * 12 + (since_month - 1)
        async with self._session_factory() as session:
            result = await session.execute(
                select(MonthlyUsage)
                .where(
                    MonthlyUsage.tenant_id == tenant_id,
                    (MonthlyUsage.year * 12 + (MonthlyUsage.month - 1)) >= since_index,
                )
                .order_by(MonthlyUsage.year.desc(), MonthlyUsage.month.desc())
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def reset(self, tenant_id: str, month: int, year: int) -> UsageRecord:
        await self.get_or_create(tenant_id, month, year)
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    update(MonthlyUsage)
                    .where(
                        MonthlyUsage.tenant_id == tenant_id,
                        MonthlyUsage.month == month,
                        MonthlyUsage.year == year,
                    )
                    .values(conversation_count=0, last_conversation_at=None)
                    .returning(MonthlyUsage)
                    .execution_options(synchronize_session=False)
                )
            ).scalar_one()
            await session.commit()
            return _to_record(row)

    async def adjustments_total(self, tenant_id: str, month: int, year: int) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(func.coalesce(func.sum(UsageAdjustment.amount), 0)).where(
                        UsageAdjustment.tenant_id == tenant_id,
                        UsageAdjustment.month == month,
                        UsageAdjustment.year == year,
                    )
                )
                return int(result.scalar_one() or 0)
        except DBAPIError as exc:
            if is_undefined_table(exc):
                raise RelationNotFoundError("usage_adjustments table is missing") from exc
            raise

    async def add_adjustment(
        self,
        *,
        tenant_id: str,
        month: int,
        year: int,
        amount: int,
        type: str,
        reason: str | None,
    ) -> AdjustmentRecord:
        row = UsageAdjustment(
            tenant_id=tenant_id,
            month=month,
            year=year,
            amount=amount,
            type=type,
            reason=reason,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return AdjustmentRecord(
                id=int(row.id),
                tenant_id=row.tenant_id,
                month=int(row.month),
                year=int(row.year),
                amount=int(row.amount),
                type=row.type,
                reason=row.reason,
                created_at=row.created_at,
            )


async def _get(session: AsyncSession, tenant_id: str, month: int, year: int) -> MonthlyUsage | None:
    result = await session.execute(
        select(MonthlyUsage).where(
            MonthlyUsage.tenant_id == tenant_id,
            MonthlyUsage.month == month,
            MonthlyUsage.year == year,
        )
    )
    return result.scalar_one_or_none()
