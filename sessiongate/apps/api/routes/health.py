from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from sessiongate.apps.api.deps import get_metrics_collector
from sessiongate.persistence.db import pool_stats
from sessiongate.services.telemetry import MetricsCollector


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get("/ops/metrics")
async def ops_metrics(metrics: MetricsCollector = Depends(get_metrics_collector)) -> dict:
    # In-process counters plus the DB pool view for this worker.
    return {"metrics": metrics.snapshot(), "db_pool": pool_stats()}
