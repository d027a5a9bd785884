from __future__ import annotations

import logging
from typing import Any

from sessiongate.core.config import get_settings
from sessiongate.services import resilience
from sessiongate.services.telemetry import MetricsCollector


logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """Redis-backed dedupe markers for inbound event processing.

    All three operations fail open: an unreachable store never blocks an
    inbound event. The lock reports ``True`` (proceed) and the processed check
    reports ``False`` (not seen), so a Redis outage can let a duplicate through
    but never drops an event.
    """

    def __init__(self, *, redis: Any | None = None, metrics: MetricsCollector | None = None) -> None:
        self._redis = redis
        self._metrics = metrics

    async def _client(self) -> Any | None:
        if self._redis is not None:
            return self._redis
        return await resilience.get_resilience_redis()

    def _key(self, key: str) -> str:
        return f"{get_settings().idempotency_prefix}:{key}"

    async def try_acquire_lock(self, key: str) -> bool:
        # True for the first caller, False for duplicates, True when the store is unavailable.
        settings = get_settings()
        redis = await self._client()
        if redis is None:
            logger.warning("idempotency_redis_unavailable key=%s", key)
            return True
        redis_key = self._key(key)
        result = await resilience.guarded_store_call(
            lambda: redis.set(redis_key, "1", ex=settings.idempotency_ttl_s, nx=True),
            operation="idempotency_lock",
            timeout_ms=settings.idempotency_lock_timeout_ms,
            metrics=self._metrics,
        )
        if not result.ok:
            logger.warning("idempotency_lock_fail_open key=%s reason=%s", redis_key, result.reason)
        return bool(result.unwrap_or(True))

    async def is_processed(self, key: str) -> bool:
        settings = get_settings()
        redis = await self._client()
        if redis is None:
            return False
        redis_key = self._key(key)
        result = await resilience.guarded_store_call(
            lambda: redis.exists(redis_key),
            operation="idempotency_exists",
            timeout_ms=settings.idempotency_lock_timeout_ms,
            metrics=self._metrics,
        )
        return int(result.unwrap_or(0)) == 1

    async def mark_processed(self, key: str, value: str = "1") -> None:
        # Best effort; a lost marker only weakens dedupe for this key.
        settings = get_settings()
        redis = await self._client()
        if redis is None:
            logger.warning("idempotency_mark_skipped key=%s", key)
            return
        redis_key = self._key(key)
        result = await resilience.guarded_store_call(
            lambda: redis.setex(redis_key, settings.idempotency_ttl_s, value),
            operation="idempotency_mark",
            timeout_ms=settings.idempotency_lock_timeout_ms,
            metrics=self._metrics,
        )
        if not result.ok:
            logger.error("idempotency_mark_failed key=%s reason=%s", redis_key, result.reason)


_guard: IdempotencyGuard | None = None


def get_idempotency_guard() -> IdempotencyGuard:
    global _guard
    if _guard is None:
        _guard = IdempotencyGuard()
    return _guard


def reset_idempotency_guard() -> None:
    global _guard
    _guard = None


async def is_processed(key: str) -> bool:
    return await get_idempotency_guard().is_processed(key)


async def mark_processed(key: str, value: str = "1") -> None:
    await get_idempotency_guard().mark_processed(key, value)


async def try_acquire_idempotency_lock(key: str) -> bool:
    return await get_idempotency_guard().try_acquire_lock(key)
