from __future__ import annotations

from sessiongate.services.delivery import DeliveryService, get_delivery_service
from sessiongate.services.inbound import InboundProcessor, get_inbound_processor
from sessiongate.services.quota import QuotaService, get_quota_service
from sessiongate.services.sessions import SessionTracker, get_session_tracker
from sessiongate.services.telemetry import MetricsCollector, get_metrics
from sessiongate.services.usage import UsageLedger, get_usage_ledger
from sessiongate.persistence.repos.messages import SqlTenantStore, TenantStore


# Route dependencies return the process-wide services; tests swap them via
# app.dependency_overrides.


def get_delivery() -> DeliveryService:
    return get_delivery_service()


def get_inbound() -> InboundProcessor:
    return get_inbound_processor()


def get_quota() -> QuotaService:
    return get_quota_service()


def get_ledger() -> UsageLedger:
    return get_usage_ledger()


def get_tracker() -> SessionTracker:
    return get_session_tracker()


def get_tenant_store() -> TenantStore:
    return SqlTenantStore()


def get_metrics_collector() -> MetricsCollector:
    return get_metrics()
