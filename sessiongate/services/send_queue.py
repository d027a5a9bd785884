from __future__ import annotations

import asyncio
import logging
from typing import Literal
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field

from sessiongate.core.config import get_settings


logger = logging.getLogger(__name__)

SEND_JOB_NAME = "deliver_outbound_message"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class OutboundJobPayload(BaseModel):
    # Job schema shared by the API and the send worker.
    kind: Literal["notification", "restaurant_order"] = "notification"
    to: str | None = None
    body: str = Field(min_length=1)
    tenant_id: str | None = None
    from_number: str | None = None
    force_freeform: bool = False
    request_id: str = Field(default_factory=lambda: str(uuid4()))


async def get_redis_pool():
    # Cache the arq pool per event loop to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Loop-bound pools break across test event loops.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.send_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


def reset_redis_pool() -> None:
    global _redis_pool, _redis_pool_loop
    _redis_pool = None
    _redis_pool_loop = None


async def enqueue_outbound_message(payload: OutboundJobPayload, *, redis=None) -> str:
    """Queue a send for the worker and return the job id.

    The request id doubles as the arq job id, so re-enqueuing the same request
    while the first job is still queued is a no-op.
    """
    settings = get_settings()
    redis = redis or await get_redis_pool()
    job = await redis.enqueue_job(
        SEND_JOB_NAME,
        payload.model_dump(),
        _job_id=payload.request_id,
        _queue_name=settings.send_queue_name,
    )
    if job is None:
        logger.info("outbound_job_already_queued job_id=%s", payload.request_id)
        return payload.request_id
    logger.info("outbound_job_enqueued job_id=%s kind=%s", job.job_id, payload.kind)
    return job.job_id
