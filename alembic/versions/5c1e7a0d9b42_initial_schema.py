"""Initial schema: communities, memberships, messages, moderation log, throttle

Revision ID: 5c1e7a0d9b42
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c1e7a0d9b42"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str, *, nullable: bool = True, now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if now else None,
    )


def upgrade() -> None:
    """Create every Parley table."""
    op.create_table(
        "communities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("slug", sa.String(120), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(20), nullable=False, server_default="general"),
        sa.Column("creator_id", sa.String(64), nullable=False),
        sa.Column("tags", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column("banner_url", sa.String(500), nullable=True),
        sa.Column("featured", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_private", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("require_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("max_members", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column(
            "message_rate_limit_enabled", sa.Boolean(), nullable=False, server_default=sa.true(),
        ),
        sa.Column("message_rate_limit_seconds", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("allow_media", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allow_files", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("reviewed_by", sa.String(64), nullable=True),
        _ts("reviewed_at"),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("member_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rules", postgresql.JSONB(), nullable=False, server_default="[]"),
        _ts("last_activity"),
        _ts("created_at", nullable=False, now=True),
        _ts("updated_at", nullable=False, now=True),
        sa.CheckConstraint("member_count >= 0", name="ck_communities_member_count"),
    )
    op.create_index("ix_communities_status_category", "communities", ["status", "category"])
    op.create_index("ix_communities_creator_status", "communities", ["creator_id", "status"])

    op.create_table(
        "memberships",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "community_id",
            sa.Integer(),
            sa.ForeignKey("communities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("permissions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("moderation_history", postgresql.JSONB(), nullable=False, server_default="[]"),
        _ts("mute_until"),
        _ts("ban_expires_at"),
        _ts("last_message_at"),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("last_seen"),
        _ts("joined_at", nullable=False, now=True),
        sa.Column("invited_by", sa.String(64), nullable=True),
        sa.Column("nickname", sa.String(50), nullable=True),
        sa.UniqueConstraint("community_id", "user_id", name="uq_membership_community_user"),
    )
    op.create_index("ix_memberships_community_status", "memberships", ["community_id", "status"])
    op.create_index("ix_memberships_user", "memberships", ["user_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "community_id",
            sa.Integer(),
            sa.ForeignKey("communities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_id", sa.String(64), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("message_type", sa.String(20), nullable=False, server_default="text"),
        sa.Column("attachments", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column(
            "reply_to_id",
            sa.Integer(),
            sa.ForeignKey("messages.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("deleted_at"),
        sa.Column("deleted_by", sa.String(64), nullable=True),
        sa.Column("deletion_reason", sa.String(200), nullable=True),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("pinned_at"),
        sa.Column("pinned_by", sa.String(64), nullable=True),
        sa.Column("spam_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("flagged_as_spam", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False, now=True),
    )
    op.create_index("ix_messages_community_created", "messages", ["community_id", "created_at"])
    op.create_index(
        "ix_messages_sender_community_created",
        "messages",
        ["sender_id", "community_id", "created_at"],
    )

    op.create_table(
        "moderation_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("community_id", sa.Integer(), nullable=False),
        sa.Column("moderator_id", sa.String(64), nullable=True),
        sa.Column("target_user_id", sa.String(64), nullable=True),
        sa.Column("target_message_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("severity", sa.String(10), nullable=False, server_default="medium"),
        _ts("created_at", nullable=False, now=True),
    )
    for name, column in (
        ("ix_moderation_log_community_time", "community_id"),
        ("ix_moderation_log_moderator_time", "moderator_id"),
        ("ix_moderation_log_target_user_time", "target_user_id"),
        ("ix_moderation_log_action_time", "action"),
    ):
        op.create_index(name, "moderation_log", [column, "created_at"])

    op.create_table(
        "mutation_rate_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        _ts("timestamp", nullable=False, now=True),
    )
    op.create_index(
        "ix_mutation_rate_user_ts",
        "mutation_rate_events",
        ["user_id", sa.text("timestamp DESC")],
    )
    op.create_index("ix_mutation_rate_ts", "mutation_rate_events", ["timestamp"])


def downgrade() -> None:
    """Drop every Parley table."""
    op.drop_index("ix_mutation_rate_ts", table_name="mutation_rate_events")
    op.drop_index("ix_mutation_rate_user_ts", table_name="mutation_rate_events")
    op.drop_table("mutation_rate_events")

    op.drop_table("moderation_log")
    op.drop_table("messages")
    op.drop_table("memberships")
    op.drop_table("communities")
