"""conditions, messaging accounts and delivery tracking

Revision ID: 7b3f5e8a1c42
Revises: 4d1e7a2c9b10
Create Date: 2026-10-14

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "7b3f5e8a1c42"
down_revision: Union[str, Sequence[str], None] = "4d1e7a2c9b10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid():
    return postgresql.UUID(as_uuid=True)


def _timestamps():
    return [
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("campaign_conditions"):
        op.create_table(
            "campaign_conditions",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id"), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=True),
            sa.Column("sequence_order", sa.Integer(), nullable=False),
            sa.Column("condition_type", sa.String(length=50), nullable=False),
            sa.Column("trigger_action", sa.String(length=50), nullable=False, server_default="log_only"),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("reward_pool_id", _uuid(), sa.ForeignKey("reward_pools.id"), nullable=True),
            sa.Column("message_template", sa.String(length=1000), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
            sa.UniqueConstraint("campaign_id", "sequence_order", name="uq_campaign_conditions_campaign_sequence"),
            sa.CheckConstraint("sequence_order >= 1", name="ck_campaign_conditions_sequence_positive"),
        )

    if not insp.has_table("recipient_condition_status"):
        op.create_table(
            "recipient_condition_status",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("recipient_id", _uuid(), sa.ForeignKey("recipients.id"), nullable=False),
            sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id"), nullable=False),
            sa.Column("condition_id", _uuid(), sa.ForeignKey("campaign_conditions.id"), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("completed_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("metadata", postgresql.JSONB(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("recipient_id", "condition_id", name="uq_recipient_condition_status_recipient_condition"),
        )

    if not insp.has_table("reward_units"):
        op.create_table(
            "reward_units",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("pool_id", _uuid(), sa.ForeignKey("reward_pools.id"), nullable=False),
            sa.Column("code", sa.String(length=100), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="available"),
            sa.Column("recipient_id", _uuid(), sa.ForeignKey("recipients.id"), nullable=True),
            sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id"), nullable=True),
            sa.Column("condition_id", _uuid(), sa.ForeignKey("campaign_conditions.id"), nullable=True),
            sa.Column("claimed_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("delivered_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("returned_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
            sa.UniqueConstraint("recipient_id", "condition_id", name="uq_reward_units_recipient_condition"),
        )

    insp = sa.inspect(bind)
    indexes = {ix["name"] for ix in insp.get_indexes("reward_units")}
    if "ix_reward_units_pool_id" not in indexes:
        op.create_index("ix_reward_units_pool_id", "reward_units", ["pool_id"])
    if "ix_reward_units_pool_status" not in indexes:
        # claim path: first available unit of a pool
        op.create_index("ix_reward_units_pool_status", "reward_units", ["pool_id", "status"])

    if not insp.has_table("messaging_accounts"):
        op.create_table(
            "messaging_accounts",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("level", sa.String(length=20), nullable=False),
            sa.Column("entity_id", _uuid(), nullable=True),
            sa.Column("channel", sa.String(length=10), nullable=False, server_default="sms"),
            sa.Column("friendly_name", sa.String(length=100), nullable=True),
            sa.Column("credentials_ref", sa.String(length=255), nullable=True),
            sa.Column("from_address", sa.String(length=255), nullable=True),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("validated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("last_validated_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("last_error", sa.String(length=2000), nullable=True),
            sa.Column("last_error_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("circuit_open_until", sa.TIMESTAMP(), nullable=True),
            sa.Column("monthly_usage_limit", sa.Integer(), nullable=True),
            sa.Column("current_month_usage", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("usage_month", sa.String(length=7), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("level", "entity_id", "channel", name="uq_messaging_accounts_level_entity_channel"),
        )

    if not insp.has_table("delivery_records"):
        op.create_table(
            "delivery_records",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("recipient_id", _uuid(), sa.ForeignKey("recipients.id"), nullable=False),
            sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id"), nullable=False),
            sa.Column("condition_id", _uuid(), sa.ForeignKey("campaign_conditions.id"), nullable=False),
            sa.Column("reward_unit_id", _uuid(), sa.ForeignKey("reward_units.id"), nullable=True),
            sa.Column("channel", sa.String(length=10), nullable=False, server_default="sms"),
            sa.Column("destination", sa.String(length=255), nullable=True),
            sa.Column("account_level", sa.String(length=20), nullable=True),
            sa.Column("account_id", _uuid(), nullable=True),
            sa.Column("stage", sa.String(length=20), nullable=False, server_default="evaluated"),
            sa.Column("delivery_status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("retryable", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("failure_reason", sa.String(length=2000), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_retry_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("last_attempt_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("provider_message_id", sa.String(length=255), nullable=True),
            sa.Column("message_body", sa.String(length=2000), nullable=True),
            sa.Column("sent_at", sa.TIMESTAMP(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("recipient_id", "condition_id", name="uq_delivery_records_recipient_condition"),
        )

    insp = sa.inspect(bind)
    indexes = {ix["name"] for ix in insp.get_indexes("delivery_records")}
    if "ix_delivery_records_retry_sweep" not in indexes:
        op.create_index(
            "ix_delivery_records_retry_sweep",
            "delivery_records",
            ["delivery_status", "retryable", "last_attempt_at"],
        )

    if not insp.has_table("activity_log"):
        op.create_table(
            "activity_log",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("category", sa.String(length=30), nullable=False),
            sa.Column("event_type", sa.String(length=50), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="success"),
            sa.Column("severity", sa.String(length=20), nullable=False, server_default="info"),
            sa.Column("recipient_id", _uuid(), nullable=True),
            sa.Column("campaign_id", _uuid(), nullable=True),
            sa.Column("delivery_record_id", _uuid(), nullable=True),
            sa.Column("details", postgresql.JSONB(), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        )


def downgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    for table in (
        "activity_log",
        "delivery_records",
        "messaging_accounts",
        "reward_units",
        "recipient_condition_status",
        "campaign_conditions",
    ):
        if insp.has_table(table):
            op.drop_table(table)
