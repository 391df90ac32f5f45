"""Create autopilot policy, tracking, ledger and credential tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "autopilot_policies",
        sa.Column("conversation_id", sa.String(length=128), nullable=False),
        sa.Column("location_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reply_delay_minutes", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("max_replies_per_conversation", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("max_replies_per_day", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("operating_hours_json", sa.Text(), nullable=True),
        sa.Column("cancel_on_user_reply", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("require_human_keywords_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("exclude_keywords_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("agent_id", sa.String(length=128), nullable=True),
        sa.Column("model", sa.String(length=128), nullable=False),
        sa.Column("temperature", sa.Float(), nullable=False),
        sa.Column("max_tokens", sa.Integer(), nullable=False, server_default="500"),
        sa.Column("custom_prompt", sa.Text(), nullable=True),
        sa.Column("message_type", sa.String(length=16), nullable=False, server_default="SMS"),
        sa.Column("prefer_conversation_type", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("conversation_id"),
        sa.CheckConstraint("reply_delay_minutes >= 0", name="ck_autopilot_policies_delay_non_negative"),
        sa.CheckConstraint(
            "max_replies_per_conversation >= 0",
            name="ck_autopilot_policies_conversation_quota_non_negative",
        ),
        sa.CheckConstraint("max_replies_per_day >= 0", name="ck_autopilot_policies_daily_quota_non_negative"),
    )
    op.create_index("ix_autopilot_policies_location_id", "autopilot_policies", ["location_id"], unique=False)
    op.create_index("ix_autopilot_policies_user_id", "autopilot_policies", ["user_id"], unique=False)
    op.create_index("ix_autopilot_policies_is_enabled", "autopilot_policies", ["is_enabled"], unique=False)

    op.create_table(
        "autopilot_conversation_tracking",
        sa.Column("conversation_id", sa.String(length=128), nullable=False),
        sa.Column("location_id", sa.String(length=128), nullable=True),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("last_seen_message_id", sa.String(length=128), nullable=True),
        sa.Column("last_seen_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_human_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_ai_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_ai_message_id", sa.String(length=128), nullable=True),
        sa.Column("replies_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("replies_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reply_date", sa.Date(), nullable=True),
        sa.Column("conversation_status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("contact_name", sa.String(length=256), nullable=True),
        sa.Column("contact_email", sa.String(length=256), nullable=True),
        sa.Column("contact_phone", sa.String(length=64), nullable=True),
        sa.Column("paused_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("conversation_id"),
    )
    op.create_index(
        "ix_autopilot_conversation_tracking_location_id",
        "autopilot_conversation_tracking",
        ["location_id"],
        unique=False,
    )
    op.create_index(
        "ix_autopilot_conversation_tracking_updated_at",
        "autopilot_conversation_tracking",
        ["updated_at"],
        unique=False,
    )

    op.create_table(
        "autopilot_processed_messages",
        sa.Column("message_id", sa.String(length=128), nullable=False),
        sa.Column("conversation_id", sa.String(length=128), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index(
        "ix_autopilot_processed_messages_conversation_id",
        "autopilot_processed_messages",
        ["conversation_id"],
        unique=False,
    )

    op.create_table(
        "provider_credentials",
        sa.Column("provider_key", sa.String(length=64), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("provider_key"),
    )


def downgrade() -> None:
    op.drop_table("provider_credentials")
    op.drop_index("ix_autopilot_processed_messages_conversation_id", table_name="autopilot_processed_messages")
    op.drop_table("autopilot_processed_messages")
    op.drop_index("ix_autopilot_conversation_tracking_updated_at", table_name="autopilot_conversation_tracking")
    op.drop_index("ix_autopilot_conversation_tracking_location_id", table_name="autopilot_conversation_tracking")
    op.drop_table("autopilot_conversation_tracking")
    op.drop_index("ix_autopilot_policies_is_enabled", table_name="autopilot_policies")
    op.drop_index("ix_autopilot_policies_user_id", table_name="autopilot_policies")
    op.drop_index("ix_autopilot_policies_location_id", table_name="autopilot_policies")
    op.drop_table("autopilot_policies")
