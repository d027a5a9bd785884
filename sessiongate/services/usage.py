from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from sessiongate.domain.records import AdjustmentRecord, UsageRecord
from sessiongate.persistence.repos.usage import SqlUsageStore, UsageStore
from sessiongate.services.sessions import SessionInfo, SessionTracker, get_session_tracker


logger = logging.getLogger(__name__)

DEFAULT_ADJUSTMENT_AMOUNT = 1000
DEFAULT_ADJUSTMENT_TYPE = "RENEW"


@dataclass(frozen=True)
class TrackResult:
    usage: UsageRecord
    session: SessionInfo


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_back(year: int, month: int, months: int) -> tuple[int, int]:
    # Step back a number of calendar months, wrapping the year.
    index = year * 12 + (month - 1) - months
    return index // 12, index % 12 + 1


class UsageLedger:
    """Monthly billable-conversation counters and manual top-ups.

    A conversation is billed once, when the message that opens a new session
    is tracked. Messages inside an active session never touch the counter.
    """

    def __init__(
        self,
        store: UsageStore | None = None,
        *,
        tracker: SessionTracker | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store or SqlUsageStore()
        self._tracker = tracker
        self._time_provider = time_provider or _utc_now

    @property
    def store(self) -> UsageStore:
        return self._store

    def _session_tracker(self) -> SessionTracker:
        return self._tracker or get_session_tracker()

    async def track_message(
        self,
        tenant_id: str,
        customer_wa: str,
        at: datetime | None = None,
    ) -> TrackResult:
        # Two sequential store calls; a crash between them leaves the session unbilled.
        at = at or self._time_provider()
        session = await self._session_tracker().detect_session(tenant_id, customer_wa, at)
        if session.is_new:
            usage = await self.increment_usage(tenant_id, at.month, at.year, at)
        else:
            usage = await self._store.get_or_create(tenant_id, at.month, at.year)
        return TrackResult(usage=usage, session=session)

    async def increment_usage(
        self,
        tenant_id: str,
        month: int,
        year: int,
        at: datetime | None = None,
    ) -> UsageRecord:
        usage = await self._store.increment(tenant_id, month, year, at or self._time_provider())
        logger.info(
            "usage_incremented tenant_id=%s period=%04d-%02d count=%d",
            tenant_id,
            year,
            month,
            usage.conversation_count,
        )
        return usage

    async def get_or_create_monthly_usage(self, tenant_id: str, month: int, year: int) -> UsageRecord:
        return await self._store.get_or_create(tenant_id, month, year)

    async def get_current_month_usage(self, tenant_id: str, at: datetime | None = None) -> UsageRecord:
        at = at or self._time_provider()
        return await self._store.get_or_create(tenant_id, at.month, at.year)

    async def get_usage_history(
        self,
        tenant_id: str,
        months_back: int = 12,
        at: datetime | None = None,
    ) -> list[UsageRecord]:
        at = at or self._time_provider()
        since_year, since_month = month_back(at.year, at.month, max(0, months_back - 1))
        return await self._store.history(tenant_id, since_year=since_year, since_month=since_month)

    async def reset_monthly_usage(self, tenant_id: str, month: int, year: int) -> UsageRecord:
        logger.warning("usage_reset tenant_id=%s period=%04d-%02d", tenant_id, year, month)
        return await self._store.reset(tenant_id, month, year)

    async def add_adjustment(
        self,
        tenant_id: str,
        amount: int = DEFAULT_ADJUSTMENT_AMOUNT,
        type: str = DEFAULT_ADJUSTMENT_TYPE,
        reason: str | None = None,
        at: datetime | None = None,
    ) -> AdjustmentRecord:
        # Top-ups apply to the calendar month of ``at`` only.
        at = at or self._time_provider()
        record = await self._store.add_adjustment(
            tenant_id=tenant_id,
            month=at.month,
            year=at.year,
            amount=int(amount),
            type=type,
            reason=reason,
        )
        logger.info(
            "usage_adjustment_added tenant_id=%s amount=%d type=%s", tenant_id, record.amount, type
        )
        return record


_ledger: UsageLedger | None = None


def get_usage_ledger() -> UsageLedger:
    global _ledger
    if _ledger is None:
        _ledger = UsageLedger()
    return _ledger


def reset_usage_ledger() -> None:
    global _ledger
    _ledger = None


async def track_message(tenant_id: str, customer_wa: str, at: datetime | None = None) -> TrackResult:
    return await get_usage_ledger().track_message(tenant_id, customer_wa, at)
