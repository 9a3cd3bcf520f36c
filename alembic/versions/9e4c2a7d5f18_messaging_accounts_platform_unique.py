"""one platform messaging account per channel

Revision ID: 9e4c2a7d5f18
Revises: 7b3f5e8a1c42
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "9e4c2a7d5f18"
down_revision: Union[str, Sequence[str], None] = "7b3f5e8a1c42"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


INDEX_NAME = "uq_messaging_accounts_platform_channel"


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("messaging_accounts"):
        return

    indexes = {ix["name"] for ix in insp.get_indexes("messaging_accounts")}
    if INDEX_NAME in indexes:
        return

    op.create_index(
        INDEX_NAME,
        "messaging_accounts",
        ["level", "channel"],
        unique=True,
        postgresql_where=sa.text("entity_id IS NULL"),
        sqlite_where=sa.text("entity_id IS NULL"),
    )


def downgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if insp.has_table("messaging_accounts"):
        indexes = {ix["name"] for ix in insp.get_indexes("messaging_accounts")}
        if INDEX_NAME in indexes:
            op.drop_index(INDEX_NAME, table_name="messaging_accounts")
