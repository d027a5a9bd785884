from __future__ import annotations

import logging

from arq import Retry
from arq.connections import RedisSettings

from sessiongate.core.config import get_settings
from sessiongate.core.errors import (
    DeliveryRecordError,
    InputValidationError,
    ProviderConfigError,
    ProviderSendError,
    TenantNotFoundError,
)
from sessiongate.core.logging import configure_logging
from sessiongate.services.delivery import DeliveryService, get_delivery_service
from sessiongate.services.send_queue import OutboundJobPayload
from sessiongate.services.telemetry import init_metrics


logger = logging.getLogger(__name__)

RETRY_DEFER_S = 5


def _is_retryable(exc: Exception) -> bool:
    # Provider rejections with a 4xx status will fail the same way again.
    # Once the provider accepted the message a retry would deliver it twice.
    if isinstance(
        exc, (InputValidationError, TenantNotFoundError, ProviderConfigError, DeliveryRecordError)
    ):
        return False
    if isinstance(exc, ProviderSendError):
        return exc.status is None or exc.status >= 500 or exc.status == 429
    return True


async def process_outbound_job(
    payload: OutboundJobPayload,
    *,
    attempt: int,
    max_tries: int,
    delivery: DeliveryService | None = None,
) -> str:
    delivery = delivery or get_delivery_service()
    try:
        if payload.kind == "restaurant_order":
            result = await delivery.notify_restaurant_order(
                payload.tenant_id or "",
                payload.body,
                to_number=payload.to,
                from_number=payload.from_number,
            )
        else:
            result = await delivery.send_notification(
                payload.to or "",
                payload.body,
                tenant_id=payload.tenant_id,
                from_number=payload.from_number,
                force_freeform=payload.force_freeform,
            )
    except Exception as exc:  # noqa: BLE001 - retry decision needs the concrete error
        if _is_retryable(exc) and attempt < max_tries:
            logger.warning(
                "outbound_job_retry request_id=%s attempt=%d error=%s", payload.request_id, attempt, exc
            )
            raise Retry(defer=RETRY_DEFER_S * attempt) from exc
        logger.error(
            "outbound_job_failed request_id=%s attempt=%d error=%s", payload.request_id, attempt, exc
        )
        return "failed"
    return "coalesced" if result.coalesced else result.status.value


async def deliver_outbound_message(ctx, payload: dict) -> str:
    # Validate in the worker so malformed jobs fail loudly instead of sending.
    job_payload = OutboundJobPayload.model_validate(payload)
    settings = get_settings()
    return await process_outbound_job(
        job_payload,
        attempt=ctx.get("job_try", 1),
        max_tries=settings.send_max_tries,
    )


async def _startup(ctx) -> None:
    configure_logging()
    init_metrics()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.send_queue_name
    max_tries = max(1, int(settings.send_max_tries))
    functions = [deliver_outbound_message]
    on_startup = _startup
