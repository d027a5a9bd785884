from __future__ import annotations

from datetime import datetime, timezone

import pytest

from sessiongate.core.config import get_settings
from sessiongate.core.errors import QuotaExceededError
from sessiongate.domain.records import UsageRecord
from sessiongate.services.quota import (
    QuotaService,
    build_quota_exception,
    days_until_reset,
    quota_headers,
    quota_reset_at,
    resolve_plan,
)
from sessiongate.services.telemetry import STORE_DEGRADED, get_metrics
from sessiongate.tests.utils.stores import FakeUsageStore, MutableClock


def _seed_usage(store: FakeUsageStore, used: int, tenant_id: str = "t1") -> None:
    store.rows[(tenant_id, 3, 2026)] = UsageRecord(tenant_id, 3, 2026, used, None)


@pytest.mark.asyncio
async def test_adjustments_extend_the_plan_limit() -> None:
    store = FakeUsageStore()
    _seed_usage(store, 1200)
    await store.add_adjustment(tenant_id="t1", month=3, year=2026, amount=500, type="RENEW", reason=None)
    service = QuotaService(store, time_provider=MutableClock())

    quota = await service.check_quota("t1", "FREE")

    assert quota.plan_limit == 1000
    assert quota.adjustments == 500
    assert quota.effective_limit == 1500
    assert quota.remaining == 300
    assert quota.usage_percent == 80.0
    assert quota.near_limit is False
    assert quota.allowed is True
    assert quota.degraded is False


@pytest.mark.asyncio
async def test_quota_is_exceeded_at_the_limit() -> None:
    store = FakeUsageStore()
    _seed_usage(store, 1000)
    service = QuotaService(store, time_provider=MutableClock())

    quota = await service.check_quota("t1", "FREE")

    assert quota.exceeded is True
    assert quota.remaining == 0
    assert quota.near_limit is True
    with pytest.raises(QuotaExceededError) as excinfo:
        await service.enforce_quota("t1", "FREE")
    assert excinfo.value.status.used == 1000


@pytest.mark.asyncio
async def test_adjustments_only_apply_to_their_month() -> None:
    store = FakeUsageStore()
    _seed_usage(store, 1000)
    await store.add_adjustment(tenant_id="t1", month=2, year=2026, amount=500, type="RENEW", reason=None)
    service = QuotaService(store, time_provider=MutableClock())

    quota = await service.check_quota("t1", "FREE")

    assert quota.adjustments == 0
    assert quota.exceeded is True


@pytest.mark.asyncio
async def test_missing_adjustments_table_counts_as_zero() -> None:
    store = FakeUsageStore()
    store.missing_adjustments_table = True
    _seed_usage(store, 10)
    service = QuotaService(store, time_provider=MutableClock())

    quota = await service.check_quota("t1", "BASIC")

    assert quota.adjustments == 0
    assert quota.effective_limit == 5000
    assert quota.degraded is False


@pytest.mark.asyncio
async def test_negative_adjustments_can_exhaust_the_quota() -> None:
    store = FakeUsageStore()
    await store.add_adjustment(tenant_id="t1", month=3, year=2026, amount=-1000, type="PENALTY", reason=None)
    service = QuotaService(store, time_provider=MutableClock())

    quota = await service.check_quota("t1", "FREE")

    assert quota.effective_limit == 0
    assert quota.exceeded is True
    assert quota.usage_percent == 100.0


@pytest.mark.asyncio
async def test_unlimited_plan_is_never_exceeded() -> None:
    store = FakeUsageStore()
    _seed_usage(store, 1_000_000)
    service = QuotaService(store, time_provider=MutableClock())

    quota = await service.check_quota("t1", "ENTERPRISE")

    assert quota.unlimited is True
    assert quota.exceeded is False
    assert quota.remaining is None
    assert quota_headers(quota)["X-Quota-Month-Limit"] == "unlimited"


@pytest.mark.asyncio
async def test_store_failure_fails_open_and_is_degraded() -> None:
    store = FakeUsageStore()
    store.fail_reads = True
    service = QuotaService(store, time_provider=MutableClock())

    quota = await service.check_quota("t1", "FREE")

    assert quota.used == 0
    assert quota.allowed is True
    assert quota.degraded is True
    assert get_metrics().counter(STORE_DEGRADED) == 1


@pytest.mark.asyncio
async def test_slow_store_times_out_and_fails_open(monkeypatch) -> None:
    monkeypatch.setenv("QUOTA_STORE_TIMEOUT_MS", "20")
    get_settings.cache_clear()
    store = FakeUsageStore()
    _seed_usage(store, 5000)
    store.read_delay_s = 1.0
    service = QuotaService(store, time_provider=MutableClock())

    quota = await service.check_quota("t1", "FREE")

    assert quota.used == 0
    assert quota.degraded is True


def test_unknown_plan_falls_back_to_default() -> None:
    assert resolve_plan(None)[0] == "FREE"
    assert resolve_plan("pro")[0] == "PRO"
    assert resolve_plan("GOLD")[0] == "FREE"


def test_reset_boundaries() -> None:
    assert quota_reset_at(datetime(2026, 12, 5, tzinfo=timezone.utc)) == datetime(2027, 1, 1, tzinfo=timezone.utc)
    assert days_until_reset(datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)) == 1
    assert days_until_reset(datetime(2026, 3, 1, tzinfo=timezone.utc)) == 31


@pytest.mark.asyncio
async def test_quota_exception_payload() -> None:
    store = FakeUsageStore()
    _seed_usage(store, 1000)
    quota = await QuotaService(store, time_provider=MutableClock()).check_quota("t1", "FREE")

    exc = build_quota_exception(quota)

    assert exc.status_code == 402
    assert exc.detail["code"] == "QUOTA_EXCEEDED"
    assert exc.detail["used"] == 1000
    assert exc.headers["X-Quota-Month-Remaining"] == "0"
