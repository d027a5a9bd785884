from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class SessionRecord:
    # Detached view of a conversation session row.
    id: str
    tenant_id: str
    customer_wa: str
    sequence: int
    session_start: datetime
    session_end: datetime
    message_count: int


@dataclass(frozen=True)
class UsageRecord:
    # Detached view of one tenant-month usage row.
    tenant_id: str
    month: int
    year: int
    conversation_count: int
    last_conversation_at: datetime | None


@dataclass(frozen=True)
class AdjustmentRecord:
    id: int
    tenant_id: str
    month: int
    year: int
    amount: int
    type: str
    reason: str | None
    created_at: datetime | None


@dataclass(frozen=True)
class TenantRecord:
    id: str
    name: str
    whatsapp_number: str | None
    plan: str | None
    max_messages_per_min: int | None


@dataclass(frozen=True)
class CacheEntry:
    # Pending deferred payload awaiting the customer's tap.
    id: str
    to_phone: str
    from_phone: str | None
    message_text: str
    template_name: str | None
    template_sid: str | None
    outbound_message_id: str | None
    delivered: bool
    expires_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class InboundRecord:
    tenant_id: str
    customer_wa: str
    to_phone: str
    wa_sid: str
    message_type: str
    body: str | None
    created_at: datetime
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class SessionStats:
    # Aggregate session activity for one tenant over a time range.
    total_sessions: int
    unique_customers: int
    total_messages: int
    average_messages_per_session: float
