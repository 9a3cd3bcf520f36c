"""tenants, campaigns and reward inventory

Revision ID: 4d1e7a2c9b10
Revises:
Create Date: 2026-10-12

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "4d1e7a2c9b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid():
    return postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("agencies"):
        op.create_table(
            "agencies",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        )

    if not insp.has_table("clients"):
        op.create_table(
            "clients",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("agency_id", _uuid(), sa.ForeignKey("agencies.id"), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        )

    if not insp.has_table("campaigns"):
        op.create_table(
            "campaigns",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("client_id", _uuid(), sa.ForeignKey("clients.id"), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        )

    if not insp.has_table("recipients"):
        op.create_table(
            "recipients",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("campaign_id", _uuid(), sa.ForeignKey("campaigns.id"), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=True),
            sa.Column("last_name", sa.String(length=100), nullable=True),
            sa.Column("phone", sa.String(length=20), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        )

    if not insp.has_table("reward_pools"):
        op.create_table(
            "reward_pools",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("client_id", _uuid(), sa.ForeignKey("clients.id"), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("brand", sa.String(length=100), nullable=False),
            sa.Column("denomination", sa.Numeric(10, 2), nullable=False),
            sa.Column("available_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("claimed_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("delivered_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("cost_per_unit", sa.Numeric(10, 2), nullable=True),
            sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("active", sa.Boolean(), nullable=True, server_default=sa.text("true")),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
            sa.CheckConstraint("available_count >= 0", name="ck_reward_pools_available_non_negative"),
        )


def downgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    for table in ("reward_pools", "recipients", "campaigns", "clients", "agencies"):
        if insp.has_table(table):
            op.drop_table(table)
