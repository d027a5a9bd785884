from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from sessiongate.apps.api.deps import get_delivery, get_quota, get_tenant_store
from sessiongate.core.config import get_settings
from sessiongate.core.errors import EmptyMessageError, TenantNotFoundError
from sessiongate.persistence.repos.messages import TenantStore
from sessiongate.services.delivery import DeliveryService
from sessiongate.services.quota import QuotaService, QuotaStatus, quota_headers
from sessiongate.services.send_queue import OutboundJobPayload, enqueue_outbound_message


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notify", tags=["notify"])


class NotifyRequest(BaseModel):
    to: str = Field(min_length=1)
    message: str
    tenant_id: str | None = None
    from_number: str | None = None
    force_freeform: bool = False
    queue: bool = False


class RestaurantOrderRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    order_text: str
    to: str | None = None
    from_number: str | None = None
    queue: bool = False


async def _enforce_tenant_quota(
    tenant_id: str | None,
    tenants: TenantStore,
    quota: QuotaService,
) -> QuotaStatus | None:
    # Untenanted sends are operator messages and bypass billing.
    if not tenant_id or not get_settings().quota_enforcement_enabled:
        return None
    tenant = await tenants.get(tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return await quota.enforce_quota(tenant_id, tenant.plan)


def _apply_quota_headers(response: Response, quota_status: QuotaStatus | None) -> None:
    if quota_status is None:
        return
    for key, value in quota_headers(quota_status).items():
        response.headers[key] = value


async def _enqueue(request: Request, quota_status: QuotaStatus | None, **fields) -> JSONResponse:
    # Reject empty bodies here; the worker would only fail them later.
    if not (fields.get("body") or "").strip():
        raise EmptyMessageError("Message body must be a non-empty string")
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        fields["request_id"] = request_id
    job_id = await enqueue_outbound_message(OutboundJobPayload(**fields))
    queued = JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"job_id": job_id, "queued": True})
    _apply_quota_headers(queued, quota_status)
    return queued


@router.post("")
async def notify(
    payload: NotifyRequest,
    request: Request,
    response: Response,
    delivery: DeliveryService = Depends(get_delivery),
    quota: QuotaService = Depends(get_quota),
    tenants: TenantStore = Depends(get_tenant_store),
):
    quota_status = await _enforce_tenant_quota(payload.tenant_id, tenants, quota)
    if payload.queue:
        return await _enqueue(
            request,
            quota_status,
            kind="notification",
            to=payload.to,
            body=payload.message,
            tenant_id=payload.tenant_id,
            from_number=payload.from_number,
            force_freeform=payload.force_freeform,
        )

    result = await delivery.send_notification(
        payload.to,
        payload.message,
        tenant_id=payload.tenant_id,
        from_number=payload.from_number,
        force_freeform=payload.force_freeform,
    )
    _apply_quota_headers(response, quota_status)
    return result.to_json()


@router.post("/restaurant-order")
async def notify_restaurant_order(
    payload: RestaurantOrderRequest,
    request: Request,
    response: Response,
    delivery: DeliveryService = Depends(get_delivery),
    quota: QuotaService = Depends(get_quota),
    tenants: TenantStore = Depends(get_tenant_store),
):
    quota_status = await _enforce_tenant_quota(payload.tenant_id, tenants, quota)
    if payload.queue:
        return await _enqueue(
            request,
            quota_status,
            kind="restaurant_order",
            to=payload.to,
            body=payload.order_text,
            tenant_id=payload.tenant_id,
            from_number=payload.from_number,
        )

    result = await delivery.notify_restaurant_order(
        payload.tenant_id,
        payload.order_text,
        to_number=payload.to,
        from_number=payload.from_number,
    )
    _apply_quota_headers(response, quota_status)
    return result.to_json()
