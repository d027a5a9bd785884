from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque


# Counter names used across services.
WEBHOOKS_RECEIVED = "webhooks_received"
WEBHOOKS_PROCESSED = "webhooks_processed"
WEBHOOKS_FAILED = "webhooks_failed"
WEBHOOKS_DUPLICATE = "webhooks_duplicate"
MESSAGES_RECEIVED = "messages_received"
MESSAGES_SENT = "messages_sent"
MESSAGES_FAILED = "messages_failed"
TEMPLATE_FALLBACKS = "template_fallbacks"
DEFERRED_CACHED = "deferred_cached"
DEFERRED_COALESCED = "deferred_coalesced"
CACHE_CONSUMED = "cache_consumed"
RATE_LIMITED = "rate_limited"
STORE_DEGRADED = "store_degraded"


class MetricsCollector:
    """In-process counters plus a bounded window of processing times."""

    def __init__(
        self,
        *,
        max_samples: int = 1000,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._time_provider = time_provider or time.time
        self._counters: dict[str, int] = defaultdict(int)
        self._processing_ms: Deque[float] = deque(maxlen=max_samples)
        self._started_at = self._time_provider()

    def increment(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def record_processing_time(self, duration_ms: float) -> None:
        self._processing_ms.append(float(duration_ms))

    def counter(self, name: str) -> int:
        return int(self._counters.get(name, 0))

    def snapshot(self) -> dict[str, Any]:
        # Error rate covers finished webhooks only.
        processed = self.counter(WEBHOOKS_PROCESSED)
        failed = self.counter(WEBHOOKS_FAILED)
        finished = processed + failed
        samples = sorted(self._processing_ms)
        avg_ms = round(sum(samples) / len(samples)) if samples else 0
        p95_ms = samples[max(0, math.ceil(0.95 * len(samples)) - 1)] if samples else None
        return {
            "counters": dict(self._counters),
            "avg_processing_time_ms": avg_ms,
            "p95_processing_time_ms": p95_ms,
            "error_rate": round(failed / finished, 4) if finished else 0.0,
            "uptime_s": int(self._time_provider() - self._started_at),
        }

    def reset(self) -> None:
        self._counters.clear()
        self._processing_ms.clear()
        self._started_at = self._time_provider()


_metrics: MetricsCollector | None = None


def init_metrics(collector: MetricsCollector | None = None) -> MetricsCollector:
    # Install the process-wide collector at application or worker startup.
    global _metrics
    _metrics = collector or MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def reset_metrics() -> None:
    # Drop the process collector for deterministic tests.
    global _metrics
    _metrics = None
