"""Add consent tracking to conversations, owner notification URL, nullable dead-letter payload.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "conversation_states",
        sa.Column("consent_status", sa.String(20), nullable=True),
    )
    op.add_column(
        "conversation_states",
        sa.Column("consent_updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column(
        "platform_accounts",
        sa.Column("notification_webhook_url", sa.Text(), nullable=True),
    )
    # Entries stored while no ENCRYPTION_KEY was configured keep no payload
    op.alter_column("dead_letter_entries", "payload_encrypted", existing_type=sa.Text(), nullable=True)


def downgrade() -> None:
    op.execute("DELETE FROM dead_letter_entries WHERE payload_encrypted IS NULL")
    op.alter_column("dead_letter_entries", "payload_encrypted", existing_type=sa.Text(), nullable=False)
    op.drop_column("platform_accounts", "notification_webhook_url")
    op.drop_column("conversation_states", "consent_updated_at")
    op.drop_column("conversation_states", "consent_status")
