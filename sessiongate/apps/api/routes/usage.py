from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from sessiongate.apps.api.deps import get_ledger, get_quota, get_tenant_store, get_tracker
from sessiongate.core.errors import TenantNotFoundError
from sessiongate.persistence.repos.messages import TenantStore
from sessiongate.services.quota import QuotaService, quota_headers
from sessiongate.services.sessions import SessionTracker
from sessiongate.services.usage import DEFAULT_ADJUSTMENT_AMOUNT, DEFAULT_ADJUSTMENT_TYPE, UsageLedger


router = APIRouter(prefix="/api/usage", tags=["usage"])


class AdjustmentRequest(BaseModel):
    amount: int = DEFAULT_ADJUSTMENT_AMOUNT
    type: str = Field(default=DEFAULT_ADJUSTMENT_TYPE, min_length=1, max_length=32)
    reason: str | None = None


async def _require_tenant(tenant_id: str, tenants: TenantStore):
    tenant = await tenants.get(tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return tenant


@router.get("/{tenant_id}")
async def get_usage(
    tenant_id: str,
    response: Response,
    quota: QuotaService = Depends(get_quota),
    tenants: TenantStore = Depends(get_tenant_store),
) -> dict:
    tenant = await _require_tenant(tenant_id, tenants)
    quota_status = await quota.check_quota(tenant_id, tenant.plan)
    for key, value in quota_headers(quota_status).items():
        response.headers[key] = value
    return quota_status.to_json()


@router.get("/{tenant_id}/history")
async def get_usage_history(
    tenant_id: str,
    months: int = Query(default=12, ge=1, le=36),
    ledger: UsageLedger = Depends(get_ledger),
) -> dict:
    rows = await ledger.get_usage_history(tenant_id, months_back=months)
    return {
        "tenant_id": tenant_id,
        "items": [
            {
                "period": f"{row.year:04d}-{row.month:02d}",
                "conversation_count": row.conversation_count,
                "last_conversation_at": row.last_conversation_at.isoformat()
                if row.last_conversation_at
                else None,
            }
            for row in rows
        ],
    }


@router.post("/{tenant_id}/adjustments", status_code=status.HTTP_201_CREATED)
async def add_adjustment(
    tenant_id: str,
    payload: AdjustmentRequest,
    ledger: UsageLedger = Depends(get_ledger),
    tenants: TenantStore = Depends(get_tenant_store),
) -> dict:
    await _require_tenant(tenant_id, tenants)
    record = await ledger.add_adjustment(
        tenant_id,
        amount=payload.amount,
        type=payload.type,
        reason=payload.reason,
    )
    return {
        "id": record.id,
        "tenant_id": record.tenant_id,
        "period": f"{record.year:04d}-{record.month:02d}",
        "amount": record.amount,
        "type": record.type,
        "reason": record.reason,
    }


@router.get("/{tenant_id}/sessions")
async def get_session_stats(
    tenant_id: str,
    days: int = Query(default=30, ge=1, le=365),
    tracker: SessionTracker = Depends(get_tracker),
) -> dict:
    start, end, stats = await tracker.get_recent_session_stats(tenant_id, days)
    return {
        "tenant_id": tenant_id,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "total_sessions": stats.total_sessions,
        "unique_customers": stats.unique_customers,
        "total_messages": stats.total_messages,
        "average_messages_per_session": stats.average_messages_per_session,
    }
