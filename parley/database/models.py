"""
parley.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- communities            — Named chat spaces with settings + approval state
- memberships            — One row per (community, user); the state machine
- messages               — Community messages (tombstoned, never removed)
- moderation_log         — Append-only audit trail (ids only, no cascades)
- mutation_rate_events   — Sliding-window bookkeeping for the API throttle

Status and role columns are plain strings holding :class:`enum.StrEnum`
values so conditional ``UPDATE … WHERE status = :expected`` statements
compare cleanly on every backend.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from parley.constants import MAX_MEMBERS_DEFAULT, RATE_LIMIT_SECONDS_DEFAULT, utcnow


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Parley ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class CommunityStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"


class MemberRole(enum.StrEnum):
    MEMBER = "member"
    MODERATOR = "moderator"
    CREATOR = "creator"


class MemberStatus(enum.StrEnum):
    ACTIVE = "active"
    PENDING = "pending"
    BANNED = "banned"
    KICKED = "kicked"
    LEFT = "left"


class MessageType(enum.StrEnum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"
    ANNOUNCEMENT = "announcement"


class ModerationAction(enum.StrEnum):
    """Actions recorded in moderation_log."""
    KICK_MEMBER = "kick_member"
    BAN_MEMBER = "ban_member"
    UNBAN_MEMBER = "unban_member"
    MUTE_MEMBER = "mute_member"
    UNMUTE_MEMBER = "unmute_member"
    DELETE_MESSAGE = "delete_message"
    PIN_MESSAGE = "pin_message"
    UNPIN_MESSAGE = "unpin_message"
    ADD_MODERATOR = "add_moderator"
    REMOVE_MODERATOR = "remove_moderator"
    UPDATE_RULES = "update_rules"
    UPDATE_SETTINGS = "update_settings"
    WARN_MEMBER = "warn_member"
    APPROVE_MEMBER = "approve_member"
    APPROVE_COMMUNITY = "approve_community"
    REJECT_COMMUNITY = "reject_community"
    SUSPEND_COMMUNITY = "suspend_community"
    ARCHIVE_COMMUNITY = "archive_community"
    DELETE_COMMUNITY = "delete_community"


class Severity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ---------------------------------------------------------------------------
# Communities
# ---------------------------------------------------------------------------
class Community(Base):
    __tablename__ = "communities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(20), default="general")
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tags: Mapped[list] = mapped_column(JSONB, default=list)
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    banner_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    featured: Mapped[bool] = mapped_column(Boolean, default=False)

    # Settings
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    require_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    max_members: Mapped[int] = mapped_column(Integer, default=MAX_MEMBERS_DEFAULT)
    message_rate_limit_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    message_rate_limit_seconds: Mapped[int] = mapped_column(
        Integer, default=RATE_LIMIT_SECONDS_DEFAULT
    )
    allow_media: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_files: Mapped[bool] = mapped_column(Boolean, default=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default=CommunityStatus.PENDING)
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Counters (maintained with atomic UPDATE expressions only)
    member_count: Mapped[int] = mapped_column(Integer, default=0)
    message_count: Mapped[int] = mapped_column(Integer, default=0)

    rules: Mapped[list] = mapped_column(JSONB, default=list)
    last_activity: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_communities_status_category", "status", "category"),
        Index("ix_communities_creator_status", "creator_id", "status"),
        CheckConstraint("member_count >= 0", name="ck_communities_member_count"),
    )

    def __repr__(self) -> str:
        return f"<Community id={self.id} slug={self.slug!r} status={self.status}>"


# ---------------------------------------------------------------------------
# Memberships — the per-(community, user) state machine
# ---------------------------------------------------------------------------
class Membership(Base):
    __tablename__ = "memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=MemberRole.MEMBER)
    status: Mapped[str] = mapped_column(String(20), default=MemberStatus.ACTIVE)
    permissions: Mapped[int] = mapped_column(Integer, default=0)
    moderation_history: Mapped[list] = mapped_column(JSONB, default=list)
    mute_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ban_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    invited_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    nickname: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        UniqueConstraint("community_id", "user_id", name="uq_membership_community_user"),
        Index("ix_memberships_community_status", "community_id", "status"),
        Index("ix_memberships_user", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Membership community={self.community_id} user={self.user_id!r} "
            f"role={self.role} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    message_type: Mapped[str] = mapped_column(String(20), default=MessageType.TEXT)
    attachments: Mapped[list] = mapped_column(JSONB, default=list)
    reply_to_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    deletion_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)

    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    pinned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pinned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    spam_score: Mapped[int] = mapped_column(Integer, default=0)
    flagged_as_spam: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_messages_community_created", "community_id", "created_at"),
        Index("ix_messages_sender_community_created", "sender_id", "community_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Message id={self.id} community={self.community_id} sender={self.sender_id!r}>"


# ---------------------------------------------------------------------------
# ModerationLog — append-only audit trail
# ---------------------------------------------------------------------------
class ModerationLogEntry(Base):
    __tablename__ = "moderation_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Plain ids: entries must outlive the community / message they reference.
    community_id: Mapped[int] = mapped_column(Integer, nullable=False)
    moderator_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # NULL = system
    target_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    severity: Mapped[str] = mapped_column(String(10), default=Severity.MEDIUM)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_moderation_log_community_time", "community_id", "created_at"),
        Index("ix_moderation_log_moderator_time", "moderator_id", "created_at"),
        Index("ix_moderation_log_target_user_time", "target_user_id", "created_at"),
        Index("ix_moderation_log_action_time", "action", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ModerationLogEntry id={self.id} community={self.community_id} "
            f"action={self.action}>"
        )


# ---------------------------------------------------------------------------
# MutationRateEvent — durable state for the API mutation throttle
# ---------------------------------------------------------------------------
class MutationRateEvent(Base):
    __tablename__ = "mutation_rate_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_mutation_rate_user_ts", "user_id", timestamp.desc()),
        Index("ix_mutation_rate_ts", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<MutationRateEvent user={self.user_id!r} ts={self.timestamp}>"
