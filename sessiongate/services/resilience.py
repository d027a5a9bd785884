from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from redis.asyncio import Redis

from sessiongate.core.config import get_settings
from sessiongate.domain.results import StoreResult
from sessiongate.services.telemetry import STORE_DEGRADED, MetricsCollector, get_metrics


logger = logging.getLogger(__name__)

T = TypeVar("T")


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse a shared Redis connection for idempotency keys and rate-limit windows.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def reset_resilience_redis() -> None:
    # Drop cached connections for deterministic test setup.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None


async def guarded_store_call(
    call: Callable[[], Awaitable[T]],
    *,
    operation: str,
    timeout_ms: int,
    metrics: MetricsCollector | None = None,
) -> StoreResult[T]:
    """Run one store call under a deadline.

    Timeouts and store errors come back as ``StoreResult.unavailable`` with a
    warning logged; the caller decides the fallback value.
    """
    start = time.monotonic()
    try:
        value = await asyncio.wait_for(call(), timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError:
        took_ms = int((time.monotonic() - start) * 1000)
        logger.warning("store_call_timeout operation=%s took_ms=%d", operation, took_ms)
        (metrics or get_metrics()).increment(STORE_DEGRADED)
        return StoreResult.unavailable("timeout")
    except Exception as exc:  # noqa: BLE001 - fail-open paths degrade on any store failure
        logger.warning("store_call_failed operation=%s error=%s", operation, exc)
        (metrics or get_metrics()).increment(STORE_DEGRADED)
        return StoreResult.unavailable(type(exc).__name__)
    return StoreResult.success(value)
