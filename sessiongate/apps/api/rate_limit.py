from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time
from typing import Any, Callable

from fastapi import HTTPException, status

from sessiongate.core.config import get_settings
from sessiongate.services import resilience
from sessiongate.services.phone import normalize_phone_number
from sessiongate.services.telemetry import RATE_LIMITED, MetricsCollector, get_metrics


logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"


@dataclass(frozen=True)
class RateLimitDecision:
    # Outcome of one fixed-window check; reset_at_ms is epoch milliseconds.
    allowed: bool
    scope: str
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_ms: int = 0
    degraded: bool = False


def tenant_scope(tenant_id: str) -> str:
    return f"restaurant:{tenant_id}"


def customer_scope(tenant_id: str, phone: str) -> str:
    return f"customer:{tenant_id}:{normalize_phone_number(phone)}"


# INCR and the first-hit PEXPIRE run as one atomic script.
_FIXED_WINDOW_LUA = r"""
local count = redis.call("INCR", KEYS[1])
if count == 1 then
    redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
return count
"""


class RateLimiter:
    def __init__(
        self,
        *,
        redis: Any | None = None,
        time_provider: Callable[[], float] | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._redis = redis
        self._time_provider = time_provider or time.time
        self._metrics = metrics

    async def _client(self) -> Any | None:
        if self._redis is not None:
            return self._redis
        return await resilience.get_resilience_redis()

    async def check(self, scope: str, max_requests: int, window_ms: int) -> RateLimitDecision:
        # One counter per scope and window; the first hit in a window arms the expiry.
        settings = get_settings()
        now_ms = int(self._time_provider() * 1000)
        bucket = now_ms // window_ms
        key = f"{settings.rl_redis_prefix}:{scope}:{bucket}"

        redis = await self._client()
        if redis is None:
            return self._fail_open(scope, max_requests, now_ms, window_ms, reason="redis_unavailable")

        async def _count() -> int:
            return int(await redis.eval(_FIXED_WINDOW_LUA, 1, key, window_ms))

        result = await resilience.guarded_store_call(
            _count,
            operation="rate_limit",
            timeout_ms=settings.rate_limit_timeout_ms,
            metrics=self._metrics,
        )
        if not result.ok:
            return self._fail_open(scope, max_requests, now_ms, window_ms, reason=result.reason)

        count = int(result.value or 0)
        allowed = count <= max_requests
        reset_at_ms = (bucket + 1) * window_ms
        return RateLimitDecision(
            allowed=allowed,
            scope=scope,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_at_ms=reset_at_ms,
            retry_after_ms=0 if allowed else max(0, reset_at_ms - now_ms),
        )

    def _fail_open(
        self,
        scope: str,
        max_requests: int,
        now_ms: int,
        window_ms: int,
        *,
        reason: str | None,
    ) -> RateLimitDecision:
        logger.warning("rate_limit_degraded scope=%s reason=%s", scope, reason)
        return RateLimitDecision(
            allowed=True,
            scope=scope,
            limit=max_requests,
            remaining=max_requests,
            reset_at_ms=now_ms + window_ms,
            degraded=True,
        )


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    # Cache the rate limiter so requests share Redis connections and time provider.
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _rate_limiter
    _rate_limiter = None
    resilience.reset_resilience_redis()


async def check_rate_limit(
    scope: str,
    max_requests: int | None = None,
    window_ms: int | None = None,
) -> RateLimitDecision:
    settings = get_settings()
    return await get_rate_limiter().check(
        scope,
        max_requests if max_requests is not None else settings.rl_global_max,
        window_ms if window_ms is not None else settings.rl_window_ms,
    )


async def check_inbound_limits(
    *,
    tenant_id: str,
    customer_phone: str,
    tenant_max: int | None = None,
    limiter: RateLimiter | None = None,
) -> RateLimitDecision | None:
    """Evaluate global, tenant and customer windows in order.

    Returns the first breached decision, or None when every window admits the
    event or rate limiting is disabled.
    """
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None
    limiter = limiter or get_rate_limiter()
    window_ms = settings.rl_window_ms
    checks = (
        (GLOBAL_SCOPE, settings.rl_global_max),
        (tenant_scope(tenant_id), tenant_max or settings.rl_tenant_max),
        (customer_scope(tenant_id, customer_phone), settings.rl_customer_max),
    )
    for scope, limit in checks:
        decision = await limiter.check(scope, limit, window_ms)
        if not decision.allowed:
            logger.info("rate_limited scope=%s limit=%d", scope, limit)
            get_metrics().increment(RATE_LIMITED)
            return decision
    return None


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(decision.reset_at_ms / 1000.0))),
        "X-RateLimit-Scope": decision.scope,
    }
    if decision.degraded:
        headers["X-RateLimit-Status"] = "degraded"
    return headers


def throttle_exception(decision: RateLimitDecision) -> HTTPException:
    # Construct a stable 429 response with retry hints and metadata.
    retry_after_s = int(math.ceil(decision.retry_after_ms / 1000.0))
    headers = rate_limit_headers(decision)
    headers["Retry-After"] = str(retry_after_s)
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "scope": decision.scope,
            "retry_after_ms": decision.retry_after_ms,
        },
        headers=headers,
    )
