from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from fastapi import HTTPException, status

from sessiongate.core.config import get_settings
from sessiongate.core.errors import QuotaExceededError, RelationNotFoundError
from sessiongate.persistence.repos.usage import SqlUsageStore, UsageStore
from sessiongate.services.resilience import guarded_store_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanLimits:
    # None marks an unlimited plan.
    conversations_per_month: int | None
    name: str


PLANS: dict[str, PlanLimits] = {
    "FREE": PlanLimits(1000, "Free Plan"),
    "BASIC": PlanLimits(5000, "Basic Plan"),
    "PRO": PlanLimits(25000, "Pro Plan"),
    "ENTERPRISE": PlanLimits(None, "Enterprise Plan"),
}


@dataclass(frozen=True)
class QuotaStatus:
    """Quota position for one tenant in one billing month.

    ``plan_limit``, ``effective_limit`` and ``remaining`` are None for
    unlimited plans. ``degraded`` is set when a ledger read fell back to its
    default.
    """

    tenant_id: str
    plan_code: str
    plan_name: str
    month: int
    year: int
    used: int
    plan_limit: int | None
    adjustments: int
    effective_limit: int | None
    remaining: int | None
    usage_percent: float | None
    near_limit: bool
    exceeded: bool
    reset_at: datetime
    days_until_reset: int
    degraded: bool = False

    @property
    def allowed(self) -> bool:
        return not self.exceeded

    @property
    def unlimited(self) -> bool:
        return self.plan_limit is None

    def error_message(self) -> str:
        return (
            f"Monthly conversation limit of {self.effective_limit} reached. "
            f"Used: {self.used} conversations. Please upgrade your plan or wait until next month."
        )

    def to_json(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "plan": self.plan_code,
            "plan_name": self.plan_name,
            "period": f"{self.year:04d}-{self.month:02d}",
            "used": self.used,
            "plan_limit": self.plan_limit,
            "adjustments": self.adjustments,
            "effective_limit": self.effective_limit,
            "remaining": self.remaining,
            "usage_percent": self.usage_percent,
            "near_limit": self.near_limit,
            "exceeded": self.exceeded,
            "allowed": self.allowed,
            "reset_at": self.reset_at.isoformat(),
            "days_until_reset": self.days_until_reset,
            "degraded": self.degraded,
        }


def _utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def resolve_plan(plan: str | None) -> tuple[str, PlanLimits]:
    # Unknown or missing plan names fall back to the configured default.
    default_code = get_settings().quota_default_plan.upper()
    code = (plan or default_code).upper()
    if code not in PLANS:
        code = default_code if default_code in PLANS else "FREE"
    return code, PLANS[code]


def quota_reset_at(at: datetime) -> datetime:
    # Quotas reset at 00:00 UTC on the first day of the next month.
    if at.month == 12:
        return datetime(at.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(at.year, at.month + 1, 1, tzinfo=timezone.utc)


def days_until_reset(at: datetime) -> int:
    # Partial days round up, so the last day of a month reports 1.
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    delta = quota_reset_at(at) - at
    days = delta.days + (1 if delta.seconds or delta.microseconds else 0)
    return max(days, 0)


class QuotaService:
    def __init__(
        self,
        store: UsageStore | None = None,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow time injection for deterministic rollover tests.
        self._store = store or SqlUsageStore()
        self._time_provider = time_provider or _utc_now

    async def get_effective_quota(
        self,
        tenant_id: str,
        plan: str | None = None,
        at: datetime | None = None,
    ) -> QuotaStatus:
        settings = get_settings()
        at = at or self._time_provider()
        plan_code, limits = resolve_plan(plan)
        timeout_ms = settings.quota_store_timeout_ms

        async def _read_used() -> int:
            usage = await self._store.get(tenant_id, at.month, at.year)
            return usage.conversation_count if usage is not None else 0

        # Usage store failures count as zero used so sends are not blocked.
        used_result = await guarded_store_call(
            _read_used, operation="quota_usage", timeout_ms=timeout_ms
        )
        used = int(used_result.unwrap_or(0))
        degraded = not used_result.ok

        plan_limit = limits.conversations_per_month
        if plan_limit is None:
            return QuotaStatus(
                tenant_id=tenant_id,
                plan_code=plan_code,
                plan_name=limits.name,
                month=at.month,
                year=at.year,
                used=used,
                plan_limit=None,
                adjustments=0,
                effective_limit=None,
                remaining=None,
                usage_percent=None,
                near_limit=False,
                exceeded=False,
                reset_at=quota_reset_at(at),
                days_until_reset=days_until_reset(at),
                degraded=degraded,
            )

        adjustments, adjustments_ok = await self._adjustments_total(tenant_id, at, timeout_ms)
        degraded = degraded or not adjustments_ok

        effective_limit = plan_limit + adjustments
        remaining = max(0, effective_limit - used)
        # A non-positive limit (negative adjustments) counts as fully used.
        ratio = used / effective_limit if effective_limit > 0 else 1.0
        return QuotaStatus(
            tenant_id=tenant_id,
            plan_code=plan_code,
            plan_name=limits.name,
            month=at.month,
            year=at.year,
            used=used,
            plan_limit=plan_limit,
            adjustments=adjustments,
            effective_limit=effective_limit,
            remaining=remaining,
            usage_percent=round(ratio * 100.0, 2),
            near_limit=ratio >= settings.quota_near_limit_ratio,
            exceeded=used >= effective_limit,
            reset_at=quota_reset_at(at),
            days_until_reset=days_until_reset(at),
            degraded=degraded,
        )

    async def _adjustments_total(self, tenant_id: str, at: datetime, timeout_ms: int) -> tuple[int, bool]:
        # A missing adjustments table is "no data", not a degraded read.
        async def _read() -> int | None:
            try:
                return await self._store.adjustments_total(tenant_id, at.month, at.year)
            except RelationNotFoundError:
                logger.info("usage_adjustments_missing tenant_id=%s", tenant_id)
                return None

        result = await guarded_store_call(_read, operation="quota_adjustments", timeout_ms=timeout_ms)
        if not result.ok:
            return 0, False
        return int(result.value or 0), True

    async def check_quota(
        self,
        tenant_id: str,
        plan: str | None = None,
        at: datetime | None = None,
    ) -> QuotaStatus:
        return await self.get_effective_quota(tenant_id, plan, at)

    async def enforce_quota(
        self,
        tenant_id: str,
        plan: str | None = None,
        at: datetime | None = None,
    ) -> QuotaStatus:
        quota = await self.get_effective_quota(tenant_id, plan, at)
        if quota.exceeded:
            logger.warning(
                "quota_exceeded tenant_id=%s used=%d limit=%s",
                tenant_id,
                quota.used,
                quota.effective_limit,
            )
            raise QuotaExceededError(quota.error_message(), status=quota)
        return quota


_quota_service: QuotaService | None = None


def get_quota_service() -> QuotaService:
    # Cache the quota service for reuse across requests.
    global _quota_service
    if _quota_service is None:
        _quota_service = QuotaService()
    return _quota_service


def reset_quota_service() -> None:
    # Reset cached services for deterministic tests.
    global _quota_service
    _quota_service = None


async def check_quota(tenant_id: str, plan: str | None = None, at: datetime | None = None) -> QuotaStatus:
    return await get_quota_service().check_quota(tenant_id, plan, at)


async def enforce_quota(tenant_id: str, plan: str | None = None, at: datetime | None = None) -> QuotaStatus:
    return await get_quota_service().enforce_quota(tenant_id, plan, at)


def _format_limit(value: int | None) -> str:
    # Represent unlimited limits using the agreed header token.
    return "unlimited" if value is None else str(value)


def quota_headers(quota: QuotaStatus) -> dict[str, str]:
    # Render quota headers for responses with consistent casing.
    return {
        "X-Quota-Month-Limit": _format_limit(quota.effective_limit),
        "X-Quota-Month-Used": str(quota.used),
        "X-Quota-Month-Remaining": _format_limit(quota.remaining),
        "X-Quota-Near-Limit": "true" if quota.near_limit else "false",
        "X-Quota-Reset": quota.reset_at.isoformat(),
    }


def build_quota_exception(quota: QuotaStatus) -> HTTPException:
    # Construct stable 402 payloads with usage and reset details.
    detail = {
        "code": "QUOTA_EXCEEDED",
        "message": quota.error_message(),
        "plan": quota.plan_code,
        "limit": quota.effective_limit,
        "used": quota.used,
        "remaining": 0,
        "reset_at": quota.reset_at.isoformat(),
        "days_until_reset": quota.days_until_reset,
    }
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail=detail,
        headers=quota_headers(quota),
    )
