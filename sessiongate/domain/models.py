from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    # Minimal tenant configuration read by the delivery engine.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    whatsapp_number: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    plan: Mapped[str | None] = mapped_column(String, nullable=True)
    max_messages_per_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ConversationSession(Base):
    __tablename__ = "conversation_sessions"
    __table_args__ = (
        # Concurrent creators of the same logical session collide on this key.
        UniqueConstraint(
            "tenant_id",
            "customer_wa",
            "sequence",
            name="uq_conversation_sessions_sequence",
        ),
        Index(
            "ix_conversation_sessions_lookup",
            "tenant_id",
            "customer_wa",
            "session_end",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    customer_wa: Mapped[str] = mapped_column(String)
    sequence: Mapped[int] = mapped_column(Integer)
    session_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    session_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    message_count: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class MonthlyUsage(Base):
    __tablename__ = "monthly_usage"
    __table_args__ = (
        UniqueConstraint("tenant_id", "month", "year", name="uq_monthly_usage_period"),
    )

    # Billable conversations per tenant and calendar month.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    month: Mapped[int] = mapped_column(Integer)
    year: Mapped[int] = mapped_column(Integer)
    conversation_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    last_conversation_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageAdjustment(Base):
    __tablename__ = "usage_adjustments"
    __table_args__ = (
        Index("ix_usage_adjustments_period", "tenant_id", "year", "month"),
    )

    # Append-only manual quota top-ups; amounts may be negative.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    month: Mapped[int] = mapped_column(Integer)
    year: Mapped[int] = mapped_column(Integer)
    amount: Mapped[int] = mapped_column(Integer)
    type: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class InboundMessage(Base):
    __tablename__ = "inbound_messages"
    __table_args__ = (
        Index("ix_inbound_messages_sender_time", "customer_wa", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    customer_wa: Mapped[str] = mapped_column(String)
    to_phone: Mapped[str] = mapped_column(String)
    # Provider message id; the unique index absorbs duplicate webhook deliveries.
    wa_sid: Mapped[str] = mapped_column(String, unique=True)
    message_type: Mapped[str] = mapped_column(String, default="text")
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB, nullable=True)
    # Event time, used as session-window evidence.
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboundMessage(Base):
    __tablename__ = "outbound_messages"
    __table_args__ = (
        Index("ix_outbound_messages_recipient", "to_phone", "created_at"),
    )

    # One row per attempted send; status ends in sent or failed.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    conversation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    to_phone: Mapped[str] = mapped_column(String)
    from_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    body: Mapped[str] = mapped_column(Text)
    channel: Mapped[str] = mapped_column(String)
    template_sid: Mapped[str | None] = mapped_column(String, nullable=True)
    template_name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    wa_sid: Mapped[str | None] = mapped_column(String, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class MessageCache(Base):
    __tablename__ = "message_cache"
    __table_args__ = (
        Index("ix_message_cache_pending", "to_phone", "delivered", "expires_at"),
    )

    # Deferred payload released on the customer's button tap.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    to_phone: Mapped[str] = mapped_column(String)
    from_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    message_text: Mapped[str] = mapped_column(Text)
    template_name: Mapped[str | None] = mapped_column(String, nullable=True)
    template_sid: Mapped[str | None] = mapped_column(String, nullable=True)
    outbound_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
