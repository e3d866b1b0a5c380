"""Achievements and deposit failure reason

Revision ID: 8d2f5b1c7e64
Revises: 4c1e7a9b2d30
Create Date: 2026-10-18 15:30:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8d2f5b1c7e64"
down_revision: str | Sequence[str] | None = "4c1e7a9b2d30"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add achievement tables and ``dgt_purchase_orders.failure_reason``."""
    op.add_column(
        "dgt_purchase_orders", sa.Column("failure_reason", sa.Text, nullable=True),
    )

    op.create_table(
        "achievements",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(60), nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("icon", sa.String(255), nullable=True),
        sa.Column("trigger_type", sa.String(30), nullable=False, server_default="manual"),
        sa.Column("trigger_config", postgresql.JSONB, nullable=True),
        sa.Column("series", sa.String(60), nullable=True),
        sa.Column("series_order", sa.Integer, nullable=True),
        sa.Column("reward_xp", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reward_dgt", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_achievements_series", "achievements", ["series", "series_order"])

    op.create_table(
        "user_achievements",
        sa.Column(
            "user_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "achievement_id", sa.Integer,
            sa.ForeignKey("achievements.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("earned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("granted_by", sa.Integer, nullable=True),
    )


def downgrade() -> None:
    op.drop_table("user_achievements")
    op.drop_index("ix_achievements_series", table_name="achievements")
    op.drop_table("achievements")
    op.drop_column("dgt_purchase_orders", "failure_reason")
