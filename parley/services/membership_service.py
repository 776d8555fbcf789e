"""
parley.services.membership_service — Membership state machine
===============================================================

One :class:`~parley.database.models.Membership` row per (community, user)
moves through::

    pending ──► active ──► left ───┐
                  │  ▲             │ rejoin (resets joined_at)
                  │  └─────────────┤
                  ├──► kicked ─────┘
                  └──► banned ──► active   (unban or expiry only)

Every transition is a single conditional ``UPDATE … WHERE status IN
(:expected)``; a zero row count means another request changed the row
first and the call fails with :class:`InvalidMemberState` instead of
overwriting it.  ``communities.member_count`` only moves through atomic
``member_count ± 1`` expressions in the same transaction, so it always
equals the number of active memberships.

Timed bans and mutes are reconciled lazily: every read through this
module flips an expired ban back to ``active`` and clears an expired
mute before answering.  :mod:`parley.services.reconciliation_service`
does the same in bulk on a timer.

Each moderation action appends to the membership's summarised history
(last :data:`HISTORY_LIMIT` entries) and writes a moderation log entry in
the same transaction; the log is the full record.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Engine, event, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from parley.constants import DEFAULT_MUTE_MINUTES, REASON_MAX_LENGTH, as_utc, utcnow
from parley.database.engine import get_session
from parley.database.models import (
    Community,
    CommunityStatus,
    MemberRole,
    MemberStatus,
    Membership,
    ModerationAction,
    Severity,
)
from parley.engine.events import parse_topic
from parley.engine.permissions import (
    ALL_CAPABILITIES,
    Actor,
    Capability,
    Rank,
    actor_rank,
    capabilities_to_flags,
    has_capability,
    outranks,
    target_rank,
)
from parley.errors import (
    Banned,
    CommunityFull,
    InvalidMemberState,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from parley.services.broadcast import NULL_PUBLISHER, EventPublisher
from parley.services.moderation_log import log_action

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20

_REJOINABLE = (MemberStatus.KICKED, MemberStatus.LEFT)
_BANNABLE = (MemberStatus.ACTIVE, MemberStatus.PENDING, MemberStatus.KICKED, MemberStatus.LEFT)


# ---------------------------------------------------------------------------
# Session-level helpers (shared with the community and message services)
# ---------------------------------------------------------------------------
def get_community(session: Session, community_id: int, *, approved: bool = False) -> Community:
    community = session.get(Community, community_id)
    if community is None or (approved and community.status != CommunityStatus.APPROVED):
        raise NotFound("Community not found" + (" or not approved" if approved else ""))
    return community


def find_membership(session: Session, community_id: int, user_id: str) -> Membership | None:
    return session.scalar(
        select(Membership).where(
            Membership.community_id == community_id,
            Membership.user_id == user_id,
        )
    )


def require_membership(session: Session, community_id: int, user_id: str) -> Membership:
    membership = find_membership(session, community_id, user_id)
    if membership is None:
        raise NotFound("User is not a member of this community")
    return membership


def adjust_member_count(session: Session, community_id: int, delta: int) -> None:
    stmt = update(Community).where(Community.id == community_id)
    if delta < 0:
        stmt = stmt.where(Community.member_count > 0)
    session.execute(
        stmt.values(member_count=Community.member_count + delta)
        .execution_options(synchronize_session=False)
    )


def reserve_seat(session: Session, community_id: int) -> None:
    """Atomically take one seat, failing if ``max_members`` is reached."""
    result = session.execute(
        update(Community)
        .where(
            Community.id == community_id,
            Community.member_count < Community.max_members,
        )
        .values(member_count=Community.member_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CommunityFull("Community has reached maximum member limit")


def transition(
    session: Session,
    membership: Membership,
    expected: tuple[str, ...] | str,
    new_status: str,
    **values: Any,
) -> Membership:
    """Compare-and-set the membership status; refresh *membership* in place."""
    if isinstance(expected, str):
        expected = (expected,)
    result = session.execute(
        update(Membership)
        .where(Membership.id == membership.id, Membership.status.in_(expected))
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidMemberState(
            "Membership changed concurrently; reload and retry",
        )
    session.refresh(membership)
    logger.info(
        "Membership %s/%s: %s → %s",
        membership.community_id, membership.user_id, "|".join(expected), new_status,
    )
    return membership


def append_history(
    membership: Membership,
    action: str,
    *,
    moderator_id: str | None,
    now: datetime,
    reason: str | None = None,
    duration: int | None = None,
    expires_at: datetime | None = None,
) -> None:
    entry = {
        "action": action,
        "reason": reason,
        "moderator": moderator_id,
        "duration": duration,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "created_at": now.isoformat(),
    }
    history = list(membership.moderation_history or [])
    history.append(entry)
    membership.moderation_history = history[-HISTORY_LIMIT:]


def _publish_after_commit(session: Session, publish, *args: Any) -> None:
    """Run *publish* once the surrounding transaction has committed."""
    event.listen(session, "after_commit", lambda _session: publish(*args), once=True)


def reconcile(
    session: Session,
    membership: Membership,
    now: datetime,
    *,
    events: EventPublisher | None = None,
) -> Membership:
    """Lift an expired ban or mute on *membership*, if any.

    With *events*, ``member-unbanned`` / ``member-unmuted`` go out after
    the caller's transaction commits; nothing is sent if it rolls back.
    """
    ban_expiry = as_utc(membership.ban_expires_at)
    if membership.status == MemberStatus.BANNED and ban_expiry is not None and ban_expiry <= now:
        result = session.execute(
            update(Membership)
            .where(
                Membership.id == membership.id,
                Membership.status == MemberStatus.BANNED,
                Membership.ban_expires_at <= now,
            )
            .values(status=MemberStatus.ACTIVE, ban_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            adjust_member_count(session, membership.community_id, +1)
            session.refresh(membership)
            append_history(membership, "unbanned", moderator_id=None, now=now, reason="Ban expired")
            log_action(
                session,
                community_id=membership.community_id,
                action=ModerationAction.UNBAN_MEMBER,
                moderator_id=None,
                target_user_id=membership.user_id,
                reason="Ban expired",
                severity=Severity.LOW,
                now=now,
            )
            if events is not None:
                _publish_after_commit(
                    session, events.member_unbanned,
                    membership.community_id, membership.user_id, None,
                )
        else:
            session.refresh(membership)

    mute_expiry = as_utc(membership.mute_until)
    if mute_expiry is not None and mute_expiry <= now:
        result = session.execute(
            update(Membership)
            .where(Membership.id == membership.id, Membership.mute_until <= now)
            .values(mute_until=None)
            .execution_options(synchronize_session=False)
        )
        session.refresh(membership)
        if result.rowcount == 1 and events is not None:
            _publish_after_commit(
                session, events.member_unmuted,
                membership.community_id, membership.user_id, None,
            )
    return membership


def is_muted(membership: Membership, now: datetime) -> bool:
    until = as_utc(membership.mute_until)
    return until is not None and until > now


def actor_membership(session: Session, community_id: int, actor: Actor) -> Membership | None:
    """The actor's membership if it is active, else ``None``."""
    membership = find_membership(session, community_id, actor.user_id)
    if membership is None or membership.status != MemberStatus.ACTIVE:
        return None
    return membership


def actor_can(
    session: Session,
    community: Community,
    actor: Actor,
    capability: Capability | None,
) -> bool:
    """Admin, creator, or an active moderator holding *capability*."""
    if actor.is_admin or actor.user_id == community.creator_id:
        return True
    membership = actor_membership(session, community.id, actor)
    if membership is None:
        return False
    return has_capability(membership.role, membership.permissions, capability)


def _authorize_against(
    session: Session,
    community_id: int,
    actor: Actor,
    target: Membership,
    capability: Capability | None,
    verb: str,
) -> None:
    """Enforce the strict authority-rank rule for acting on *target*."""
    own = actor_membership(session, community_id, actor)
    rank = actor_rank(
        own.role if own else None,
        own.permissions if own else 0,
        capability,
        is_admin=actor.is_admin,
    )
    if rank == Rank.NONE:
        raise PermissionDenied(f"Insufficient permissions to {verb} members")
    if target.role == MemberRole.CREATOR:
        raise InvalidMemberState(f"The community creator cannot be {verb}ed")
    if not outranks(rank, target_rank(target.role)):
        raise PermissionDenied(
            "Moderators can only act on ordinary members; the creator or an "
            "admin is required to act on another moderator",
        )


def _clean_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    reason = reason.strip()
    if len(reason) > REASON_MAX_LENGTH:
        raise ValidationError(f"Reason must be at most {REASON_MAX_LENGTH} characters")
    return reason or None


def _require_positive(duration: int | None, label: str) -> None:
    if duration is not None and duration <= 0:
        raise ValidationError(f"{label} duration must be a positive number of minutes")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_membership(
    engine: Engine,
    community_id: int,
    user_id: str,
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Current membership with expired bans / mutes already lifted."""
    now = now or utcnow()
    with get_session(engine) as session:
        membership = reconcile(
            session, require_membership(session, community_id, user_id), now, events=events,
        )
        session.flush()
        session.expunge(membership)
    return membership


def list_members(
    engine: Engine,
    community_id: int,
    *,
    viewer: Actor | None = None,
    status: str | None = MemberStatus.ACTIVE,
    role: str | None = None,
    limit: int = 100,
    offset: int = 0,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> list[Membership]:
    """Memberships of a community, oldest first.

    Anyone may list active members; other statuses (pending requests,
    bans, …) are visible to moderators, the creator and admins only.
    """
    now = now or utcnow()
    with get_session(engine) as session:
        community = get_community(session, community_id)
        if status != MemberStatus.ACTIVE and (
            viewer is None or not actor_can(session, community, viewer, None)
        ):
            raise PermissionDenied("Only moderators can list non-active memberships")
        stmt = select(Membership).where(Membership.community_id == community_id)
        if status is not None:
            stmt = stmt.where(Membership.status == status)
        if role is not None:
            stmt = stmt.where(Membership.role == role)
        rows = session.scalars(
            stmt.order_by(Membership.joined_at.asc(), Membership.id.asc())
            .limit(max(1, min(limit, 500)))
            .offset(max(0, offset))
        ).all()
        for row in rows:
            reconcile(session, row, now, events=events)
        session.flush()
        for row in rows:
            session.expunge(row)
    return [row for row in rows if status is None or row.status == status]


def is_moderator(engine: Engine, community_id: int, actor: Actor) -> bool:
    """Creator, active moderator (any capability) or admin."""
    with Session(engine) as session:
        return actor_can(session, get_community(session, community_id), actor, None)


def can_subscribe(engine: Engine, actor: Actor, topic: str) -> bool:
    """Whether *actor* may receive events published to *topic*."""
    parsed = parse_topic(topic)
    if parsed is None:
        return False
    kind, key = parsed
    if kind == "user":
        return key == actor.user_id
    if actor.is_admin:
        return True
    with Session(engine) as session:
        community = session.get(Community, int(key))
        if community is None:
            return False
        if kind == "moderators":
            return actor_can(session, community, actor, None)
        return actor_membership(session, community.id, actor) is not None


# ---------------------------------------------------------------------------
# Self-service transitions
# ---------------------------------------------------------------------------
def join(
    engine: Engine,
    community_id: int,
    user_id: str,
    *,
    invited_by: str | None = None,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Join (or rejoin) a community.

    New and returning (kicked / left) users become ``active``, or
    ``pending`` when the community requires approval.

    Raises
    ------
    NotFound
        Community missing or not approved.
    Banned
        The user is banned (and the ban has not expired).
    InvalidMemberState
        Already active or already pending.
    CommunityFull
        ``max_members`` reached.
    """
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    try:
        with get_session(engine) as session:
            community = get_community(session, community_id, approved=True)
            new_status = (
                MemberStatus.PENDING if community.require_approval else MemberStatus.ACTIVE
            )
            membership = find_membership(session, community_id, user_id)
            if membership is not None:
                reconcile(session, membership, now, events=events)
                if membership.status == MemberStatus.BANNED:
                    raise Banned(
                        "You are banned from this community",
                        until=as_utc(membership.ban_expires_at),
                    )
                if membership.status == MemberStatus.ACTIVE:
                    raise InvalidMemberState("Already a member of this community")
                if membership.status == MemberStatus.PENDING:
                    raise InvalidMemberState("Join request is already pending approval")
                if new_status == MemberStatus.ACTIVE:
                    reserve_seat(session, community_id)
                transition(
                    session, membership, _REJOINABLE, new_status,
                    joined_at=now,
                    role=MemberRole.MEMBER,
                    permissions=0,
                    mute_until=None,
                    invited_by=invited_by,
                )
            else:
                if new_status == MemberStatus.ACTIVE:
                    reserve_seat(session, community_id)
                membership = Membership(
                    community_id=community_id,
                    user_id=user_id,
                    role=MemberRole.MEMBER,
                    status=new_status,
                    permissions=0,
                    moderation_history=[],
                    joined_at=now,
                    last_seen=now,
                    invited_by=invited_by,
                )
                session.add(membership)
                session.flush()
            session.expunge(membership)
    except IntegrityError as exc:
        raise InvalidMemberState("Already a member of this community") from exc

    logger.info("User %s joined community %s (%s)", user_id, community_id, membership.status)
    events.member_joined(community_id, user_id, membership.status)
    return membership


def leave(
    engine: Engine,
    community_id: int,
    user_id: str,
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Leave a community (or withdraw a pending join request)."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    with get_session(engine) as session:
        get_community(session, community_id)
        membership = reconcile(session, require_membership(session, community_id, user_id), now, events=events)
        if membership.role == MemberRole.CREATOR:
            raise InvalidMemberState(
                "The creator cannot leave; transfer ownership or delete the community",
            )
        if membership.status not in (MemberStatus.ACTIVE, MemberStatus.PENDING):
            raise InvalidMemberState(f"Cannot leave from status '{membership.status}'")
        was_active = membership.status == MemberStatus.ACTIVE
        transition(
            session, membership, membership.status, MemberStatus.LEFT,
            role=MemberRole.MEMBER, permissions=0,
        )
        if was_active:
            adjust_member_count(session, community_id, -1)
        session.flush()
        session.expunge(membership)

    events.member_left(community_id, user_id)
    return membership


# ---------------------------------------------------------------------------
# Moderation transitions
# ---------------------------------------------------------------------------
def approve_member(
    engine: Engine,
    community_id: int,
    actor: Actor,
    target_user_id: str,
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Accept a pending join request (needs the INVITE capability)."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    with get_session(engine) as session:
        community = get_community(session, community_id)
        if not actor_can(session, community, actor, Capability.INVITE):
            raise PermissionDenied("Insufficient permissions to approve members")
        membership = require_membership(session, community_id, target_user_id)
        if membership.status != MemberStatus.PENDING:
            raise InvalidMemberState("Member has no pending join request")
        reserve_seat(session, community_id)
        transition(session, membership, MemberStatus.PENDING, MemberStatus.ACTIVE, joined_at=now)
        append_history(membership, "approved", moderator_id=actor.user_id, now=now)
        log_action(
            session,
            community_id=community_id,
            action=ModerationAction.APPROVE_MEMBER,
            moderator_id=actor.user_id,
            target_user_id=target_user_id,
            severity=Severity.LOW,
            now=now,
        )
        session.flush()
        session.expunge(membership)

    events.member_joined(community_id, target_user_id, MemberStatus.ACTIVE)
    return membership


def kick(
    engine: Engine,
    community_id: int,
    actor: Actor,
    target_user_id: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Remove an active member; they may rejoin later."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    reason = _clean_reason(reason)
    with get_session(engine) as session:
        get_community(session, community_id)
        membership = reconcile(
            session, require_membership(session, community_id, target_user_id), now, events=events,
        )
        _authorize_against(session, community_id, actor, membership, Capability.KICK, "kick")
        if membership.status != MemberStatus.ACTIVE:
            raise InvalidMemberState("Only active members can be kicked")
        transition(
            session, membership, MemberStatus.ACTIVE, MemberStatus.KICKED,
            role=MemberRole.MEMBER, permissions=0, mute_until=None,
        )
        adjust_member_count(session, community_id, -1)
        append_history(membership, "kicked", moderator_id=actor.user_id, now=now, reason=reason)
        log_action(
            session,
            community_id=community_id,
            action=ModerationAction.KICK_MEMBER,
            moderator_id=actor.user_id,
            target_user_id=target_user_id,
            reason=reason,
            severity=Severity.MEDIUM,
            now=now,
        )
        session.flush()
        session.expunge(membership)

    events.member_kicked(community_id, target_user_id, actor.user_id, reason)
    return membership


def ban(
    engine: Engine,
    community_id: int,
    actor: Actor,
    target_user_id: str,
    *,
    reason: str | None = None,
    duration_minutes: int | None = None,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Ban a user, optionally for *duration_minutes*.

    Non-active (pending / kicked / left) users may also be banned so they
    cannot rejoin; only an active ban decrements ``member_count``.
    """
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    reason = _clean_reason(reason)
    _require_positive(duration_minutes, "Ban")
    expires_at = now + timedelta(minutes=duration_minutes) if duration_minutes else None
    with get_session(engine) as session:
        get_community(session, community_id)
        membership = reconcile(
            session, require_membership(session, community_id, target_user_id), now, events=events,
        )
        _authorize_against(session, community_id, actor, membership, Capability.BAN, "ban")
        if membership.status == MemberStatus.BANNED:
            raise InvalidMemberState("Member is already banned")
        was_active = membership.status == MemberStatus.ACTIVE
        transition(
            session, membership, _BANNABLE, MemberStatus.BANNED,
            ban_expires_at=expires_at,
            role=MemberRole.MEMBER,
            permissions=0,
            mute_until=None,
        )
        if was_active:
            adjust_member_count(session, community_id, -1)
        append_history(
            membership, "banned", moderator_id=actor.user_id, now=now,
            reason=reason, duration=duration_minutes, expires_at=expires_at,
        )
        log_action(
            session,
            community_id=community_id,
            action=ModerationAction.BAN_MEMBER,
            moderator_id=actor.user_id,
            target_user_id=target_user_id,
            reason=reason,
            details={
                "duration_minutes": duration_minutes,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
            severity=Severity.HIGH,
            now=now,
        )
        session.flush()
        session.expunge(membership)

    events.member_banned(community_id, target_user_id, actor.user_id, reason, expires_at)
    return membership


def unban(
    engine: Engine,
    community_id: int,
    actor: Actor,
    target_user_id: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Lift a ban explicitly; the member becomes active again."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    reason = _clean_reason(reason)
    with get_session(engine) as session:
        get_community(session, community_id)
        membership = reconcile(
            session, require_membership(session, community_id, target_user_id), now, events=events,
        )
        _authorize_against(session, community_id, actor, membership, Capability.BAN, "unban")
        if membership.status != MemberStatus.BANNED:
            raise InvalidMemberState("Member is not banned")
        transition(
            session, membership, MemberStatus.BANNED, MemberStatus.ACTIVE,
            ban_expires_at=None,
        )
        adjust_member_count(session, community_id, +1)
        append_history(membership, "unbanned", moderator_id=actor.user_id, now=now, reason=reason)
        log_action(
            session,
            community_id=community_id,
            action=ModerationAction.UNBAN_MEMBER,
            moderator_id=actor.user_id,
            target_user_id=target_user_id,
            reason=reason,
            severity=Severity.MEDIUM,
            now=now,
        )
        session.flush()
        session.expunge(membership)

    events.member_unbanned(community_id, target_user_id, actor.user_id)
    return membership


def apply_mute(
    session: Session,
    membership: Membership,
    *,
    moderator_id: str | None,
    reason: str | None,
    duration_minutes: int,
    now: datetime,
) -> datetime:
    """Set ``mute_until`` on an active membership inside *session*.

    Never shortens an existing longer mute.  Returns the effective end.
    """
    until = now + timedelta(minutes=duration_minutes)
    current = as_utc(membership.mute_until)
    if current is not None and current > until:
        until = current
    result = session.execute(
        update(Membership)
        .where(Membership.id == membership.id, Membership.status == MemberStatus.ACTIVE)
        .values(mute_until=until)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidMemberState("Only active members can be muted")
    session.refresh(membership)
    append_history(
        membership, "muted", moderator_id=moderator_id, now=now,
        reason=reason, duration=duration_minutes, expires_at=until,
    )
    log_action(
        session,
        community_id=membership.community_id,
        action=ModerationAction.MUTE_MEMBER,
        moderator_id=moderator_id,
        target_user_id=membership.user_id,
        reason=reason,
        details={"duration_minutes": duration_minutes, "mute_until": until.isoformat()},
        severity=Severity.MEDIUM,
        now=now,
    )
    return until


def mute(
    engine: Engine,
    community_id: int,
    actor: Actor,
    target_user_id: str,
    *,
    reason: str | None = None,
    duration_minutes: int = DEFAULT_MUTE_MINUTES,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Temporarily stop an active member from sending messages."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    reason = _clean_reason(reason)
    _require_positive(duration_minutes, "Mute")
    with get_session(engine) as session:
        get_community(session, community_id)
        membership = reconcile(
            session, require_membership(session, community_id, target_user_id), now, events=events,
        )
        _authorize_against(session, community_id, actor, membership, None, "mute")
        if membership.status != MemberStatus.ACTIVE:
            raise InvalidMemberState("Only active members can be muted")
        until = apply_mute(
            session, membership,
            moderator_id=actor.user_id,
            reason=reason,
            duration_minutes=duration_minutes,
            now=now,
        )
        session.flush()
        session.expunge(membership)

    events.member_muted(community_id, target_user_id, actor.user_id, reason, until)
    return membership


def unmute(
    engine: Engine,
    community_id: int,
    actor: Actor,
    target_user_id: str,
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    with get_session(engine) as session:
        get_community(session, community_id)
        membership = reconcile(
            session, require_membership(session, community_id, target_user_id), now, events=events,
        )
        _authorize_against(session, community_id, actor, membership, None, "unmute")
        if not is_muted(membership, now):
            raise InvalidMemberState("Member is not muted")
        session.execute(
            update(Membership)
            .where(Membership.id == membership.id)
            .values(mute_until=None)
            .execution_options(synchronize_session=False)
        )
        session.refresh(membership)
        append_history(membership, "unmuted", moderator_id=actor.user_id, now=now)
        log_action(
            session,
            community_id=community_id,
            action=ModerationAction.UNMUTE_MEMBER,
            moderator_id=actor.user_id,
            target_user_id=target_user_id,
            severity=Severity.LOW,
            now=now,
        )
        session.flush()
        session.expunge(membership)

    events.member_unmuted(community_id, target_user_id, actor.user_id)
    return membership


def warn(
    engine: Engine,
    community_id: int,
    actor: Actor,
    target_user_id: str,
    *,
    reason: str,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Record a formal warning; no state change."""
    now = now or utcnow()
    reason = _clean_reason(reason)
    if not reason:
        raise ValidationError("A warning requires a reason")
    with get_session(engine) as session:
        get_community(session, community_id)
        membership = reconcile(
            session, require_membership(session, community_id, target_user_id), now, events=events,
        )
        _authorize_against(session, community_id, actor, membership, None, "warn")
        append_history(membership, "warned", moderator_id=actor.user_id, now=now, reason=reason)
        log_action(
            session,
            community_id=community_id,
            action=ModerationAction.WARN_MEMBER,
            moderator_id=actor.user_id,
            target_user_id=target_user_id,
            reason=reason,
            severity=Severity.MEDIUM,
            now=now,
        )
        session.flush()
        session.expunge(membership)
    return membership


# ---------------------------------------------------------------------------
# Moderator roster
# ---------------------------------------------------------------------------
def _require_owner(session: Session, community: Community, actor: Actor) -> None:
    if actor.is_admin or actor.user_id == community.creator_id:
        return
    raise PermissionDenied("Only the community creator or an admin can manage moderators")


def promote(
    engine: Engine,
    community_id: int,
    actor: Actor,
    target_user_id: str,
    *,
    permissions: Capability = ALL_CAPABILITIES,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    """Make an active member a moderator, or replace a moderator's capabilities."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    with get_session(engine) as session:
        community = get_community(session, community_id)
        _require_owner(session, community, actor)
        membership = reconcile(
            session, require_membership(session, community_id, target_user_id), now, events=events,
        )
        if membership.role == MemberRole.CREATOR:
            raise InvalidMemberState("Cannot modify the creator's role")
        if membership.status != MemberStatus.ACTIVE:
            raise InvalidMemberState("Only active members can be promoted")
        result = session.execute(
            update(Membership)
            .where(
                Membership.id == membership.id,
                Membership.status == MemberStatus.ACTIVE,
                Membership.role != MemberRole.CREATOR,
            )
            .values(role=MemberRole.MODERATOR, permissions=int(permissions))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidMemberState("Membership changed concurrently; reload and retry")
        session.refresh(membership)
        flags = capabilities_to_flags(membership.permissions)
        append_history(membership, "promoted", moderator_id=actor.user_id, now=now)
        log_action(
            session,
            community_id=community_id,
            action=ModerationAction.ADD_MODERATOR,
            moderator_id=actor.user_id,
            target_user_id=target_user_id,
            details={"permissions": flags},
            severity=Severity.MEDIUM,
            now=now,
        )
        session.flush()
        session.expunge(membership)

    events.moderator_added(community_id, target_user_id, actor.user_id, flags)
    return membership


def demote(
    engine: Engine,
    community_id: int,
    actor: Actor,
    target_user_id: str,
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Membership:
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    with get_session(engine) as session:
        community = get_community(session, community_id)
        _require_owner(session, community, actor)
        membership = require_membership(session, community_id, target_user_id)
        if membership.role == MemberRole.CREATOR:
            raise InvalidMemberState("Cannot modify the creator's role")
        if membership.role != MemberRole.MODERATOR:
            raise InvalidMemberState("User is not a moderator of this community")
        result = session.execute(
            update(Membership)
            .where(Membership.id == membership.id, Membership.role == MemberRole.MODERATOR)
            .values(role=MemberRole.MEMBER, permissions=0)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidMemberState("Membership changed concurrently; reload and retry")
        session.refresh(membership)
        append_history(membership, "demoted", moderator_id=actor.user_id, now=now)
        log_action(
            session,
            community_id=community_id,
            action=ModerationAction.REMOVE_MODERATOR,
            moderator_id=actor.user_id,
            target_user_id=target_user_id,
            severity=Severity.MEDIUM,
            now=now,
        )
        session.flush()
        session.expunge(membership)

    events.moderator_removed(community_id, target_user_id, actor.user_id)
    return membership
