"""Initial PostgreSQL schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create initial schema for the CityPing delivery engine."""

    # 1. send_history: one row per (user, content), version bumped on resend
    op.create_table(
        "send_history",
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("content_id", sa.String(length=200), nullable=False),
        sa.Column("content_type", sa.String(length=50), nullable=False),
        sa.Column("source_id", sa.String(length=200), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_window", sa.String(length=20), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("user_id", "content_id"),
    )
    op.create_index(
        "idx_send_history_user_sent", "send_history", ["user_id", "sent_at"]
    )

    # 2. pending_content: deferred items per (user, window)
    op.create_table(
        "pending_content",
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("delivery_window", sa.String(length=20), nullable=False),
        sa.Column("content_id", sa.String(length=200), nullable=False),
        sa.Column("item", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("eligible_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "delivery_window", "content_id"),
    )

    # 3. accepted_items: signature indexed; writers serialize on an advisory lock
    op.create_table(
        "accepted_items",
        sa.Column("item_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source", sa.String(length=100), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("locator", sa.Text(), nullable=False),
        sa.Column("locator_lower", sa.Text(), nullable=False),
        sa.Column("excerpt", sa.Text(), nullable=True),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("locator_signature", sa.Text(), nullable=True),
        sa.Column("fingerprint", sa.Text(), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index(
        "idx_accepted_items_locator", "accepted_items", ["locator_lower"]
    )
    op.create_index(
        "idx_accepted_items_signature", "accepted_items", ["locator_signature"]
    )
    op.create_index(
        "idx_accepted_items_accepted_at", "accepted_items", ["accepted_at"]
    )

    # 4. delivery_tasks: outbox, idempotent on (user, reference, channel)
    op.create_table(
        "delivery_tasks",
        sa.Column("task_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("reference_id", sa.String(length=200), nullable=False),
        sa.Column("kind", sa.String(length=30), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint(
            "user_id", "reference_id", "channel", name="uq_delivery_tasks_key"
        ),
    )
    op.create_index(
        "idx_delivery_tasks_scheduled", "delivery_tasks", ["status", "scheduled_for"]
    )

    # 5. users and per-topic preferences
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("tier", sa.String(length=20), nullable=False),
        sa.Column("sms_opt_in", sa.String(length=20), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_table(
        "user_preferences",
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("topic", sa.String(length=50), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "settings",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.PrimaryKeyConstraint("user_id", "topic"),
    )
    op.create_index(
        "idx_user_preferences_topic", "user_preferences", ["topic", "enabled"]
    )


def downgrade() -> None:
    """Drop all engine tables."""
    op.drop_index("idx_user_preferences_topic", table_name="user_preferences")
    op.drop_table("user_preferences")
    op.drop_table("users")
    op.drop_index("idx_delivery_tasks_scheduled", table_name="delivery_tasks")
    op.drop_table("delivery_tasks")
    op.drop_index("idx_accepted_items_accepted_at", table_name="accepted_items")
    op.drop_index("idx_accepted_items_signature", table_name="accepted_items")
    op.drop_index("idx_accepted_items_locator", table_name="accepted_items")
    op.drop_table("accepted_items")
    op.drop_table("pending_content")
    op.drop_index("idx_send_history_user_sent", table_name="send_history")
    op.drop_table("send_history")
