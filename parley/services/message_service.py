"""
parley.services.message_service — Sending, deleting and reading messages
=========================================================================

``send`` runs the whole pipeline in **one** transaction::

    membership active?  ──►  not muted?  ──►  content valid?
          ──►  rate-limit CAS on memberships.last_message_at
          ──►  reply target valid?  ──►  INSERT message
          ──►  spam score (history includes this message)
          ──►  flag / warn / auto-mute  ──►  counters
    COMMIT  ──►  new-message (+ spam-detected, member-muted)

Any failure along the way rolls the whole thing back: no message, no
counter drift, no consumed rate-limit slot.

Deleting never removes a row.  The message becomes a tombstone
(``is_deleted``) and the moderation log keeps the original content.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Engine, func, or_, select, update
from sqlalchemy.orm import Session

from parley.constants import (
    DELETION_REASON_MAX_LENGTH,
    MESSAGE_MAX_LENGTH,
    MESSAGE_PAGE_DEFAULT,
    MESSAGE_PAGE_MAX,
    as_utc,
    utcnow,
)
from parley.database.engine import get_session
from parley.database.models import (
    Community,
    MemberRole,
    MemberStatus,
    Membership,
    Message,
    MessageType,
    ModerationAction,
    Severity,
)
from parley.engine.permissions import Actor, Capability
from parley.engine.spam import DUPLICATE_WINDOW, HistoryEntry, auto_mute_minutes, score_message
from parley.errors import (
    Banned,
    InvalidStateTransition,
    Muted,
    NotAMember,
    NotFound,
    PermissionDenied,
    RateLimited,
    ValidationError,
)
from parley.services.broadcast import NULL_PUBLISHER, EventPublisher
from parley.services.membership_service import (
    actor_can,
    apply_mute,
    find_membership,
    get_community,
    is_muted,
    reconcile,
)
from parley.services.moderation_log import log_action

logger = logging.getLogger(__name__)

MAX_ATTACHMENTS = 10


@dataclass(slots=True)
class MessagePage:
    """One page of a community's timeline, oldest first."""

    messages: list[Message]
    has_more: bool
    total: int


def message_dict(message: Message) -> dict[str, Any]:
    """JSON form shared by the REST layer and ``new-message`` events."""
    return {
        "id": message.id,
        "communityId": message.community_id,
        "senderId": message.sender_id,
        "content": message.content,
        "messageType": message.message_type,
        "attachments": list(message.attachments or []),
        "replyTo": message.reply_to_id,
        "isDeleted": message.is_deleted,
        "deletedAt": _iso(message.deleted_at),
        "deletedBy": message.deleted_by,
        "deletionReason": message.deletion_reason,
        "isPinned": message.is_pinned,
        "pinnedBy": message.pinned_by,
        "pinnedAt": _iso(message.pinned_at),
        "spamScore": message.spam_score,
        "flaggedAsSpam": message.flagged_as_spam,
        "createdAt": _iso(message.created_at),
    }


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _validate_attachments(attachments: Any) -> list[dict]:
    cleaned = []
    for item in attachments or []:
        if isinstance(item, str):
            item = {"url": item}
        if not isinstance(item, dict) or not str(item.get("url") or "").strip():
            raise ValidationError("Each attachment needs a url")
        cleaned.append({
            "url": str(item["url"]).strip(),
            "filename": item.get("filename"),
            "mimetype": item.get("mimetype"),
            "size": item.get("size"),
        })
    if len(cleaned) > MAX_ATTACHMENTS:
        raise ValidationError(f"At most {MAX_ATTACHMENTS} attachments per message")
    return cleaned


def _validate_content(
    community: Community,
    membership: Membership,
    sender: Actor,
    content: str,
    message_type: str,
    attachments: list[dict],
) -> None:
    try:
        message_type = MessageType(message_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown message type {message_type!r}") from exc

    if message_type == MessageType.SYSTEM:
        raise PermissionDenied("System messages cannot be sent by users")
    if message_type == MessageType.ANNOUNCEMENT and not (
        sender.is_admin or membership.role in (MemberRole.CREATOR, MemberRole.MODERATOR)
    ):
        raise PermissionDenied("Only moderators can post announcements")

    if len(content) > MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Message must be at most {MESSAGE_MAX_LENGTH} characters")
    if message_type in (MessageType.TEXT, MessageType.ANNOUNCEMENT) and not content:
        raise ValidationError("Message content cannot be empty")
    if message_type in (MessageType.IMAGE, MessageType.FILE) and not attachments:
        raise ValidationError(f"A {message_type} message needs at least one attachment")
    if message_type == MessageType.IMAGE and not community.allow_media:
        raise ValidationError("Media messages are disabled in this community")
    if message_type == MessageType.FILE and not community.allow_files:
        raise ValidationError("File messages are disabled in this community")


def _claim_send_slot(
    session: Session,
    community: Community,
    membership: Membership,
    now: datetime,
) -> None:
    """Compare-and-swap ``last_message_at``; raise :class:`RateLimited` on loss."""
    stmt = update(Membership).where(Membership.id == membership.id)
    if community.message_rate_limit_enabled:
        limit = timedelta(seconds=community.message_rate_limit_seconds)
        stmt = stmt.where(or_(
            Membership.last_message_at.is_(None),
            Membership.last_message_at <= now - limit,
        ))
    result = session.execute(
        stmt.values(last_message_at=now).execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    session.refresh(membership)
    last = as_utc(membership.last_message_at) or now
    elapsed = (now - last).total_seconds()
    logger.debug("Rate limited %s in community %s", membership.user_id, community.id)
    raise RateLimited(community.message_rate_limit_seconds - elapsed)


def _recent_history(
    session: Session,
    community_id: int,
    sender_id: str,
    now: datetime,
) -> list[HistoryEntry]:
    rows = session.execute(
        select(Message.content, Message.created_at).where(
            Message.community_id == community_id,
            Message.sender_id == sender_id,
            Message.is_deleted.is_(False),
            Message.created_at >= now - DUPLICATE_WINDOW,
        )
    ).all()
    return [HistoryEntry(content=row.content, created_at=as_utc(row.created_at)) for row in rows]


# ---------------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------------
def send(
    engine: Engine,
    community_id: int,
    sender: Actor,
    content: str,
    *,
    message_type: str = MessageType.TEXT,
    attachments: list | None = None,
    reply_to_id: int | None = None,
    spam_visibility: str = "visible",
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Message:
    """Post a message to a community.

    Raises
    ------
    NotFound
        Community missing or not approved; reply target missing.
    NotAMember
        Sender has no active membership.
    Banned
        Sender is banned.
    Muted
        Sender is muted (``until`` carries the end of the mute).
    PermissionDenied
        System message from a user, or announcement from a non-moderator.
    ValidationError
        Empty / oversized content, missing attachments, disallowed media,
        or a reply to a message that is deleted or in another community.
    RateLimited
        Sent again within ``message_rate_limit_seconds``.
    """
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    content = (content or "").strip()
    attachments = _validate_attachments(attachments)
    muted_until = None

    with get_session(engine) as session:
        community = get_community(session, community_id, approved=True)
        membership = find_membership(session, community_id, sender.user_id)
        if membership is not None:
            reconcile(session, membership, now, events=events)
        if membership is None or membership.status != MemberStatus.ACTIVE:
            if membership is not None and membership.status == MemberStatus.BANNED:
                raise Banned(
                    "You are banned from this community",
                    until=as_utc(membership.ban_expires_at),
                )
            raise NotAMember("You are not an active member of this community")
        if is_muted(membership, now):
            raise Muted("You are muted in this community", until=as_utc(membership.mute_until))

        _validate_content(community, membership, sender, content, message_type, attachments)
        _claim_send_slot(session, community, membership, now)

        if reply_to_id is not None:
            parent = session.get(Message, reply_to_id)
            if parent is None:
                raise NotFound("Reply target not found")
            if parent.community_id != community_id:
                raise ValidationError("Cannot reply to a message from another community")
            if parent.is_deleted:
                raise ValidationError("Cannot reply to a deleted message")

        message = Message(
            community_id=community_id,
            sender_id=sender.user_id,
            content=content,
            message_type=str(message_type),
            attachments=attachments,
            reply_to_id=reply_to_id,
            created_at=now,
        )
        session.add(message)
        session.flush()

        verdict = score_message(content, _recent_history(session, community_id, sender.user_id, now), now)
        message.spam_score = verdict.score
        message.flagged_as_spam = verdict.is_spam

        if verdict.is_spam:
            log_action(
                session,
                community_id=community_id,
                action=ModerationAction.WARN_MEMBER,
                moderator_id=None,
                target_user_id=sender.user_id,
                target_message_id=message.id,
                reason="Automatic spam detection: " + "; ".join(verdict.reasons),
                details=verdict.to_dict(),
                severity=verdict.severity,
                now=now,
            )
            minutes = auto_mute_minutes(verdict)
            if minutes:
                muted_until = apply_mute(
                    session, membership,
                    moderator_id=None,
                    reason="Automatic mute for spam",
                    duration_minutes=minutes,
                    now=now,
                )

        session.execute(
            update(Membership)
            .where(Membership.id == membership.id)
            .values(message_count=Membership.message_count + 1, last_seen=now)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            update(Community)
            .where(Community.id == community_id)
            .values(message_count=Community.message_count + 1, last_activity=now)
            .execution_options(synchronize_session=False)
        )
        session.flush()
        session.expunge(message)

    payload = message_dict(message)
    if verdict.is_spam:
        logger.warning(
            "Message %s in community %s flagged as spam (score=%d)",
            message.id, community_id, verdict.score,
        )
        events.spam_detected(community_id, message.id, sender.user_id, verdict.to_dict())
        if muted_until is not None:
            events.member_muted(
                community_id, sender.user_id, None, "Automatic mute for spam", muted_until,
            )
    if not (verdict.is_spam and spam_visibility == "hidden"):
        events.new_message(community_id, payload)
    return message


# ---------------------------------------------------------------------------
# Delete / pin
# ---------------------------------------------------------------------------
def _load_message(session: Session, message_id: int) -> tuple[Message, Community]:
    message = session.get(Message, message_id)
    if message is None:
        raise NotFound("Message not found")
    return message, get_community(session, message.community_id)


def delete_message(
    engine: Engine,
    message_id: int,
    actor: Actor,
    *,
    reason: str | None = None,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Message:
    """Tombstone a message (sender, moderators with DELETE_MESSAGES, creator, admin)."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    reason = (reason or "").strip() or None
    if reason and len(reason) > DELETION_REASON_MAX_LENGTH:
        raise ValidationError(
            f"Deletion reason must be at most {DELETION_REASON_MAX_LENGTH} characters",
        )

    with get_session(engine) as session:
        message, community = _load_message(session, message_id)
        own = message.sender_id == actor.user_id
        if not own and not actor_can(session, community, actor, Capability.DELETE_MESSAGES):
            raise PermissionDenied("Insufficient permissions to delete this message")
        if message.is_deleted:
            raise InvalidStateTransition("Message is already deleted")

        original = message.content
        result = session.execute(
            update(Message)
            .where(Message.id == message.id, Message.is_deleted.is_(False))
            .values(is_deleted=True, deleted_at=now, deleted_by=actor.user_id, deletion_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition("Message is already deleted")
        session.refresh(message)
        log_action(
            session,
            community_id=community.id,
            action=ModerationAction.DELETE_MESSAGE,
            moderator_id=actor.user_id,
            target_user_id=message.sender_id,
            target_message_id=message.id,
            reason=reason,
            details={"original_content": original, "self_deleted": own},
            severity=Severity.LOW if own else Severity.MEDIUM,
            now=now,
        )
        session.flush()
        session.expunge(message)

    events.message_deleted(message.community_id, message.id, actor.user_id)
    return message


def set_pinned(
    engine: Engine,
    message_id: int,
    actor: Actor,
    *,
    pinned: bool,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Message:
    """Pin or unpin a message (creator, admins, moderators with PIN)."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    with get_session(engine) as session:
        message, community = _load_message(session, message_id)
        if not actor_can(session, community, actor, Capability.PIN):
            raise PermissionDenied("Insufficient permissions to pin messages")
        if message.is_deleted:
            raise InvalidStateTransition("Deleted messages cannot be pinned")

        values = (
            {"is_pinned": True, "pinned_by": actor.user_id, "pinned_at": now}
            if pinned else {"is_pinned": False, "pinned_by": None, "pinned_at": None}
        )
        result = session.execute(
            update(Message)
            .where(Message.id == message.id, Message.is_pinned.is_(not pinned))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(
                "Message is already pinned" if pinned else "Message is not pinned",
            )
        session.refresh(message)
        log_action(
            session,
            community_id=community.id,
            action=ModerationAction.PIN_MESSAGE if pinned else ModerationAction.UNPIN_MESSAGE,
            moderator_id=actor.user_id,
            target_user_id=message.sender_id,
            target_message_id=message.id,
            severity=Severity.LOW,
            now=now,
        )
        session.flush()
        session.expunge(message)

    events.message_pinned(message.community_id, message.id, actor.user_id, pinned=pinned)
    return message


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def _viewer_is_moderator(session: Session, community: Community, viewer: Actor) -> bool:
    return actor_can(session, community, viewer, None)


def _require_reader(session: Session, community: Community, viewer: Actor) -> None:
    if viewer.is_admin:
        return
    membership = find_membership(session, community.id, viewer.user_id)
    if membership is None or membership.status != MemberStatus.ACTIVE:
        raise NotAMember("You are not a member of this community")


def list_messages(
    engine: Engine,
    community_id: int,
    viewer: Actor,
    *,
    before: datetime | None = None,
    after: datetime | None = None,
    limit: int = MESSAGE_PAGE_DEFAULT,
    include_deleted: bool = False,
    spam_visibility: str = "visible",
) -> MessagePage:
    """Cursor-paginated timeline, returned oldest first.

    ``before`` pages backwards from a timestamp, ``after`` forwards; with
    neither, the newest page is returned.  Tombstones are hidden unless a
    moderator or admin asks for them.  Under the ``hidden`` spam policy,
    flagged messages are only visible to moderators and their sender.
    """
    limit = max(1, min(limit, MESSAGE_PAGE_MAX))
    before, after = as_utc(before), as_utc(after)
    with Session(engine) as session:
        community = get_community(session, community_id)
        _require_reader(session, community, viewer)
        moderator = _viewer_is_moderator(session, community, viewer)

        filters = [Message.community_id == community_id]
        if not (include_deleted and moderator):
            filters.append(Message.is_deleted.is_(False))
        if spam_visibility == "hidden" and not moderator:
            filters.append(or_(
                Message.flagged_as_spam.is_(False),
                Message.sender_id == viewer.user_id,
            ))
        total = session.scalar(select(func.count()).select_from(Message).where(*filters)) or 0

        stmt = select(Message).where(*filters)
        if after is not None:
            stmt = stmt.where(Message.created_at > after).order_by(
                Message.created_at.asc(), Message.id.asc(),
            )
        else:
            if before is not None:
                stmt = stmt.where(Message.created_at < before)
            stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc())
        rows = list(session.scalars(stmt.limit(limit + 1)).all())
        for row in rows:
            session.expunge(row)

    has_more = len(rows) > limit
    rows = rows[:limit]
    if after is None:
        rows.reverse()
    return MessagePage(messages=rows, has_more=has_more, total=total)


def get_message(engine: Engine, message_id: int, viewer: Actor) -> Message:
    """Single message; tombstones are visible to moderators and admins only."""
    with Session(engine) as session:
        message, community = _load_message(session, message_id)
        _require_reader(session, community, viewer)
        if message.is_deleted and not _viewer_is_moderator(session, community, viewer):
            raise NotFound("Message not found")
        session.expunge(message)
    return message
