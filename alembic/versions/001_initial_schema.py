"""Initial schema: platform accounts, idempotency, job queue, dead letters, conversations, booking, audit

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Platform account linkage: which owner receives events for a page / business id
    op.create_table(
        "platform_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("platform_account_id", sa.String(100), nullable=False),
        sa.Column("display_name", sa.String(200), nullable=True),
        sa.Column("access_token_encrypted", sa.Text, nullable=True),
        sa.Column("timezone", sa.String(50), nullable=False, server_default="UTC"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("platform", "platform_account_id", name="uq_platform_accounts_platform_account"),
    )
    op.create_index("ix_platform_accounts_owner_id", "platform_accounts", ["owner_id"])

    # Idempotency: one row per inbound event id
    op.create_table(
        "webhook_idempotency",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payload_hash", sa.String(64), nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("error_summary", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_webhook_idempotency_platform", "webhook_idempotency", ["platform"])
    op.create_index("ix_webhook_idempotency_status", "webhook_idempotency", ["status"])

    # Durable job queue: sequence defines per-conversation order
    op.create_table(
        "queue_jobs",
        sa.Column("sequence", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("conversation_key", sa.String(400), nullable=False),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("payload_encrypted", sa.Text, nullable=False),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("visible_after", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_owner", sa.String(100), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("error_history", postgresql.JSONB, nullable=True),
    )
    op.create_index("ix_queue_jobs_conversation_key_sequence", "queue_jobs", ["conversation_key", "sequence"])
    op.create_index("ix_queue_jobs_visible_after", "queue_jobs", ["visible_after"])

    # Dead letters: exhausted or permanently rejected events, payload encrypted
    op.create_table(
        "dead_letter_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("platform_account_id", sa.String(100), nullable=False),
        sa.Column("conversation_key", sa.String(400), nullable=False),
        sa.Column("payload_encrypted", sa.Text, nullable=False),
        sa.Column("last_error", sa.Text, nullable=False),
        sa.Column("error_history", postgresql.JSONB, nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("stored_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending_review"),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replayed_by", sa.String(100), nullable=True),
    )
    op.create_index("ix_dead_letter_entries_event_id", "dead_letter_entries", ["event_id"])
    op.create_index("ix_dead_letter_entries_platform", "dead_letter_entries", ["platform"])
    op.create_index("ix_dead_letter_entries_correlation_id", "dead_letter_entries", ["correlation_id"])
    op.create_index("ix_dead_letter_entries_status", "dead_letter_entries", ["status"])

    # Conversation state: one row per (owner, platform, thread)
    op.create_table(
        "conversation_states",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("external_thread_id", sa.String(255), nullable=False),
        sa.Column("platform_account_id", sa.String(100), nullable=False),
        sa.Column("step", sa.String(30), nullable=False, server_default="idle"),
        sa.Column("last_intent", sa.String(30), nullable=True),
        sa.Column("cycle", sa.Integer, nullable=False, server_default="1"),
        sa.Column("collected_fields", postgresql.JSONB, nullable=True),
        sa.Column("slot_options", postgresql.JSONB, nullable=True),
        sa.Column("selected_slot", postgresql.JSONB, nullable=True),
        sa.Column("booking_reference", sa.String(64), nullable=True),
        sa.Column("last_event_id", sa.String(255), nullable=True),
        sa.Column("last_reply_encrypted", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("owner_id", "platform", "external_thread_id", name="uq_conversation_states_thread"),
    )
    op.create_index("ix_conversation_states_step", "conversation_states", ["step"])

    op.create_table(
        "conversation_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "conversation_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversation_states.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("content_encrypted", sa.Text, nullable=False),
        sa.Column("platform_message_id", sa.String(255), nullable=True),
        sa.Column("event_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("conversation_id", "platform_message_id", name="uq_conversation_messages_platform_id"),
    )
    op.create_index(
        "ix_conversation_messages_conversation_created", "conversation_messages", ["conversation_id", "created_at"],
    )

    # Booking
    op.create_table(
        "availability_windows",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("weekday", sa.Integer, nullable=False),
        sa.Column("start_time", sa.String(5), nullable=False),
        sa.Column("end_time", sa.String(5), nullable=False),
        sa.Column("slot_minutes", sa.Integer, nullable=False, server_default="30"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
    )
    op.create_index("ix_availability_windows_owner_id", "availability_windows", ["owner_id"])

    op.create_table(
        "appointments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("slot_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("slot_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("idempotency_key", sa.String(64), nullable=False, unique=True),
        sa.Column("reference", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="confirmed"),
        sa.Column("details_encrypted", sa.Text, nullable=True),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("owner_id", "slot_start", name="uq_appointments_owner_slot"),
    )
    op.create_index("ix_appointments_owner_id", "appointments", ["owner_id"])

    # Audit log: append-only, metadata only
    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("actor_id", sa.String(100), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(10), nullable=False),
        sa.Column("error_summary", sa.Text, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_correlation_id", "audit_logs", ["correlation_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_resource", "audit_logs", ["resource_type", "resource_id"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("appointments")
    op.drop_table("availability_windows")
    op.drop_table("conversation_messages")
    op.drop_table("conversation_states")
    op.drop_table("dead_letter_entries")
    op.drop_table("queue_jobs")
    op.drop_table("webhook_idempotency")
    op.drop_table("platform_accounts")
