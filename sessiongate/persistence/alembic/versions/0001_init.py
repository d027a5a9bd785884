"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("whatsapp_number", sa.String(), nullable=True, unique=True),
        sa.Column("plan", sa.String(), nullable=True),
        sa.Column("max_messages_per_min", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "conversation_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("customer_wa", sa.String(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("session_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("session_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "tenant_id", "customer_wa", "sequence", name="uq_conversation_sessions_sequence"
        ),
    )
    op.create_index("ix_conversation_sessions_tenant_id", "conversation_sessions", ["tenant_id"])
    op.create_index(
        "ix_conversation_sessions_lookup",
        "conversation_sessions",
        ["tenant_id", "customer_wa", "session_end"],
    )

    op.create_table(
        "monthly_usage",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("conversation_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_conversation_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "month", "year", name="uq_monthly_usage_period"),
    )
    op.create_index("ix_monthly_usage_tenant_id", "monthly_usage", ["tenant_id"])

    op.create_table(
        "usage_adjustments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_usage_adjustments_period", "usage_adjustments", ["tenant_id", "year", "month"]
    )

    op.create_table(
        "inbound_messages",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("customer_wa", sa.String(), nullable=False),
        sa.Column("to_phone", sa.String(), nullable=False),
        sa.Column("wa_sid", sa.String(), nullable=False, unique=True),
        sa.Column("message_type", sa.String(), nullable=False, server_default="text"),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_inbound_messages_tenant_id", "inbound_messages", ["tenant_id"])
    op.create_index(
        "ix_inbound_messages_sender_time", "inbound_messages", ["customer_wa", "created_at"]
    )

    op.create_table(
        "outbound_messages",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("conversation_id", sa.String(), nullable=True),
        sa.Column("to_phone", sa.String(), nullable=False),
        sa.Column("from_phone", sa.String(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("template_sid", sa.String(), nullable=True),
        sa.Column("template_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("wa_sid", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_outbound_messages_tenant_id", "outbound_messages", ["tenant_id"])
    op.create_index(
        "ix_outbound_messages_recipient", "outbound_messages", ["to_phone", "created_at"]
    )

    op.create_table(
        "message_cache",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("to_phone", sa.String(), nullable=False),
        sa.Column("from_phone", sa.String(), nullable=True),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("template_name", sa.String(), nullable=True),
        sa.Column("template_sid", sa.String(), nullable=True),
        sa.Column("outbound_message_id", sa.String(), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_message_cache_pending", "message_cache", ["to_phone", "delivered", "expires_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_message_cache_pending", table_name="message_cache")
    op.drop_table("message_cache")
    op.drop_index("ix_outbound_messages_recipient", table_name="outbound_messages")
    op.drop_index("ix_outbound_messages_tenant_id", table_name="outbound_messages")
    op.drop_table("outbound_messages")
    op.drop_index("ix_inbound_messages_sender_time", table_name="inbound_messages")
    op.drop_index("ix_inbound_messages_tenant_id", table_name="inbound_messages")
    op.drop_table("inbound_messages")
    op.drop_index("ix_usage_adjustments_period", table_name="usage_adjustments")
    op.drop_table("usage_adjustments")
    op.drop_index("ix_monthly_usage_tenant_id", table_name="monthly_usage")
    op.drop_table("monthly_usage")
    op.drop_index("ix_conversation_sessions_lookup", table_name="conversation_sessions")
    op.drop_index("ix_conversation_sessions_tenant_id", table_name="conversation_sessions")
    op.drop_table("conversation_sessions")
    op.drop_table("tenants")
