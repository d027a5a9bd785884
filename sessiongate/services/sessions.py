from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from sessiongate.core.config import get_settings
from sessiongate.domain.records import SessionRecord, SessionStats
from sessiongate.domain.results import AlreadyExists
from sessiongate.persistence.repos.sessions import SessionStore, SqlSessionStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    # Result of attributing one inbound message to a session.
    is_new: bool
    session_id: str
    session_start: datetime
    session_end: datetime
    message_count: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _info(record: SessionRecord, *, is_new: bool) -> SessionInfo:
    return SessionInfo(
        is_new=is_new,
        session_id=record.id,
        session_start=record.session_start,
        session_end=record.session_end,
        message_count=record.message_count,
    )


def is_session_active(session_end: datetime, at: datetime | None = None) -> bool:
    # A session covers [start, end); the end instant already belongs to the next one.
    return (at or _utc_now()) < session_end


def session_time_remaining(session_end: datetime, at: datetime | None = None) -> timedelta:
    remaining = session_end - (at or _utc_now())
    return max(remaining, timedelta(0))


class SessionTracker:
    """Attribute inbound messages to 24-hour conversation sessions.

    Exactly one session row exists per logical session even when two workers
    handle the first message from the same customer at once: both propose the
    same sequence number and the store's unique key picks a winner. The loser
    extends the winner's row instead of creating a second one.
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        *,
        window: timedelta | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store or SqlSessionStore()
        self._window = window or timedelta(hours=get_settings().session_window_hours)
        self._time_provider = time_provider or _utc_now

    @property
    def window(self) -> timedelta:
        return self._window

    async def detect_session(
        self,
        tenant_id: str,
        customer_wa: str,
        at: datetime | None = None,
    ) -> SessionInfo:
        at = at or self._time_provider()
        proposed_end = at + self._window
        latest = await self._store.latest(tenant_id, customer_wa)

        if latest is not None and at < latest.session_end:
            extended = await self._store.extend(latest.id, proposed_end)
            return _info(extended, is_new=False)

        sequence = latest.sequence + 1 if latest is not None else 1
        outcome = await self._store.create(
            tenant_id=tenant_id,
            customer_wa=customer_wa,
            sequence=sequence,
            start=at,
            end=proposed_end,
        )
        if isinstance(outcome, AlreadyExists):
            # Lost the creation race; count this message against the winner.
            logger.info(
                "session_create_conflict tenant_id=%s sequence=%d", tenant_id, sequence
            )
            extended = await self._store.extend(outcome.existing.id, proposed_end)
            return _info(extended, is_new=False)

        logger.info(
            "session_started tenant_id=%s session_id=%s", tenant_id, outcome.record.id
        )
        return _info(outcome.record, is_new=True)

    async def get_active_session(
        self,
        tenant_id: str,
        customer_wa: str,
        at: datetime | None = None,
    ) -> SessionRecord | None:
        return await self._store.active_at(tenant_id, customer_wa, at or self._time_provider())

    async def get_session_stats(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime | None = None,
    ) -> SessionStats:
        return await self._store.stats(tenant_id, start, end or self._time_provider())

    async def get_recent_session_stats(
        self,
        tenant_id: str,
        days: int = 30,
    ) -> tuple[datetime, datetime, SessionStats]:
        # Trailing window ending at the tracker clock.
        end = self._time_provider()
        start = end - timedelta(days=days)
        return start, end, await self._store.stats(tenant_id, start, end)


_tracker: SessionTracker | None = None


def get_session_tracker() -> SessionTracker:
    global _tracker
    if _tracker is None:
        _tracker = SessionTracker()
    return _tracker


def reset_session_tracker() -> None:
    global _tracker
    _tracker = None
