"""Initial degentalk schema

Revision ID: 4c1e7a9b2d30
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c1e7a9b2d30"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def _user_fk(name: str, *, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(
        name, sa.Integer, sa.ForeignKey("users.id", ondelete=ondelete), nullable=nullable,
    )


def upgrade() -> None:
    """Create accounts, forum, XP, ledger, payment and admin tables."""

    # --- accounts ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(50), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("xp", sa.Integer, nullable=False, server_default="0"),
        sa.Column("level", sa.Integer, nullable=False, server_default="1"),
        sa.Column("clout", sa.Integer, nullable=False, server_default="0"),
        sa.Column("bio", sa.Text, nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column("ccpayment_account_id", sa.String(100), nullable=True, unique=True),
        sa.Column("is_banned", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _created_at("updated_at"),
    )
    op.create_index("ix_users_xp_desc", "users", ["xp"])
    op.create_index("ix_users_last_seen", "users", ["last_seen_at"])

    op.create_table(
        "roles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(50), nullable=False, unique=True),
        sa.Column("xp_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("description", sa.Text, nullable=True),
    )
    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        _created_at("granted_at"),
    )
    op.create_table(
        "user_bans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("user_id"),
        _user_fk("banned_by", nullable=True, ondelete="SET NULL"),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lifted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_user_bans_user", "user_bans", ["user_id"])

    # --- forum ---
    op.create_table(
        "forum_structure",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "parent_id", sa.Integer,
            sa.ForeignKey("forum_structure.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("type", sa.String(10), nullable=False, server_default="forum"),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("slug", sa.String(120), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("xp_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("is_locked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("tipping_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("min_xp_to_post", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_index("ix_forum_structure_parent", "forum_structure", ["parent_id", "position"])

    op.create_table(
        "threads",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "structure_id", sa.Integer,
            sa.ForeignKey("forum_structure.id", ondelete="CASCADE"), nullable=False,
        ),
        _user_fk("user_id"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(300), nullable=False, unique=True),
        sa.Column("is_locked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_pinned", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_solved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("solving_post_id", sa.Integer, nullable=True),
        sa.Column("view_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("post_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_post_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        _created_at(),
    )
    op.create_index("ix_threads_structure_last_post", "threads", ["structure_id", "last_post_at"])
    op.create_index("ix_threads_user", "threads", ["user_id"])

    op.create_table(
        "posts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("thread_id", sa.Integer, sa.ForeignKey("threads.id", ondelete="CASCADE"), nullable=False),
        _user_fk("user_id"),
        sa.Column(
            "reply_to_post_id", sa.Integer,
            sa.ForeignKey("posts.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("like_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tip_total", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("is_edited", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        _created_at(),
    )
    op.create_index("ix_posts_thread_created", "posts", ["thread_id", "created_at"])
    op.create_index("ix_posts_user", "posts", ["user_id"])

    op.create_table(
        "post_likes",
        sa.Column("post_id", sa.Integer, sa.ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        _created_at(),
    )
    op.create_table(
        "tags",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(50), nullable=False, unique=True),
        sa.Column("slug", sa.String(60), nullable=False, unique=True),
    )
    op.create_table(
        "thread_tags",
        sa.Column("thread_id", sa.Integer, sa.ForeignKey("threads.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("tag_id", sa.Integer, sa.ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    )

    # --- social ---
    op.create_table(
        "user_follows",
        sa.Column("follower_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("followed_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        _created_at(),
        sa.CheckConstraint("follower_id <> followed_id", name="ck_user_follows_not_self"),
    )
    op.create_index("ix_user_follows_followed", "user_follows", ["followed_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("user_id"),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=True),
        sa.Column("data", postgresql.JSONB, nullable=True),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        _created_at(),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "is_read"])

    # --- XP & levels ---
    op.create_table(
        "xp_action_settings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(50), nullable=False, unique=True),
        sa.Column("base_value", sa.Integer, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("max_per_day", sa.Integer, nullable=True),
        sa.Column("cooldown_sec", sa.Integer, nullable=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at("updated_at"),
    )
    op.create_table(
        "xp_action_logs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        _user_fk("user_id"),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_xp_action_logs_user_action_time", "xp_action_logs",
        ["user_id", "action", "created_at"],
    )
    op.create_table(
        "xp_adjustment_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("user_id"),
        _user_fk("admin_id", nullable=True, ondelete="SET NULL"),
        sa.Column("adjustment_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("old_xp", sa.Integer, nullable=False),
        sa.Column("new_xp", sa.Integer, nullable=False),
        _created_at(),
    )
    op.create_table(
        "levels",
        sa.Column("level", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("min_xp", sa.Integer, nullable=False),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("rarity", sa.String(20), nullable=False, server_default="common"),
        sa.Column("reward_dgt", sa.BigInteger, nullable=False, server_default="0"),
    )

    # --- DGT ledger ---
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True,
        ),
        sa.Column("balance", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("last_transaction_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )
    op.create_table(
        "transactions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("wallet_id", sa.Integer, sa.ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False),
        _user_fk("user_id"),
        _user_fk("from_user_id", nullable=True, ondelete="SET NULL"),
        _user_fk("to_user_id", nullable=True, ondelete="SET NULL"),
        sa.Column("amount", sa.BigInteger, nullable=False),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="confirmed"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _created_at(),
    )
    op.create_index("ix_transactions_user_time", "transactions", ["user_id", "created_at"])
    op.create_index("ix_transactions_type_time", "transactions", ["type", "created_at"])
    op.create_index("ix_transactions_reference", "transactions", ["reference"])

    op.create_table(
        "rain_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("user_id"),
        sa.Column("amount", sa.BigInteger, nullable=False),
        sa.Column("recipient_count", sa.Integer, nullable=False),
        sa.Column("per_user_amount", sa.BigInteger, nullable=False),
        sa.Column("source", sa.String(30), nullable=False, server_default="shoutbox"),
        sa.Column("recipient_ids", postgresql.JSONB, nullable=True),
        _created_at(),
    )
    op.create_index("ix_rain_events_user_time", "rain_events", ["user_id", "created_at"])

    # --- CCPayment ---
    op.create_table(
        "dgt_purchase_orders",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("user_id"),
        sa.Column("merchant_order_id", sa.String(100), nullable=False, unique=True),
        sa.Column("coin_symbol", sa.String(20), nullable=False),
        sa.Column("chain", sa.String(30), nullable=True),
        sa.Column("deposit_address", sa.String(200), nullable=True),
        sa.Column("crypto_amount", sa.String(50), nullable=True),
        sa.Column("usd_amount", sa.String(50), nullable=False),
        sa.Column("dgt_amount", sa.BigInteger, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("provider_record_id", sa.String(100), nullable=True),
        _created_at(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "withdrawal_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("user_id"),
        sa.Column("order_id", sa.String(100), nullable=False, unique=True),
        sa.Column("coin_id", sa.Integer, nullable=False),
        sa.Column("chain", sa.String(30), nullable=False),
        sa.Column("address", sa.String(200), nullable=False),
        sa.Column("memo", sa.String(100), nullable=True),
        sa.Column("dgt_amount", sa.BigInteger, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("provider_record_id", sa.String(100), nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        _created_at(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    # --- admin configuration ---
    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text, nullable=True),
        _created_at("updated_at"),
    )
    op.create_index("ix_settings_category", "settings", ["category"])

    op.create_table(
        "feature_flags",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("rollout_percentage", sa.Integer, nullable=False, server_default="100"),
        _created_at("updated_at"),
    )
    op.create_table(
        "economy_config_overrides",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("section", sa.String(50), nullable=False, unique=True),
        sa.Column("value", postgresql.JSONB, nullable=False),
        sa.Column("updated_by", sa.Integer, nullable=True),
        _created_at(),
    )
    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.Integer, nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        _created_at("timestamp"),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index("ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"])

    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("bucket", sa.String(100), nullable=False),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_rate_limit_bucket_ts", "rate_limit_events",
        ["bucket", sa.text("timestamp DESC")],
    )


def downgrade() -> None:
    """Drop every table in reverse dependency order."""
    for table in (
        "rate_limit_events",
        "admin_log",
        "economy_config_overrides",
        "feature_flags",
        "settings",
        "withdrawal_requests",
        "dgt_purchase_orders",
        "rain_events",
        "transactions",
        "wallets",
        "levels",
        "xp_adjustment_logs",
        "xp_action_logs",
        "xp_action_settings",
        "notifications",
        "user_follows",
        "thread_tags",
        "tags",
        "post_likes",
        "posts",
        "threads",
        "forum_structure",
        "user_bans",
        "user_roles",
        "roles",
        "users",
    ):
        op.drop_table(table)
