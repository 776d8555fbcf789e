"""
parley.api.routes.members — Membership and moderation endpoints
=================================================================

Joining and leaving are self-service.  Everything under
``/members/{user_id}/…`` and ``/moderators`` is a moderation action and
counts against the mutation throttle.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from parley.api.deps import get_current_user, get_engine, get_publisher
from parley.api.rate_limit import rate_limited_user
from parley.constants import DEFAULT_MUTE_MINUTES, as_utc
from parley.database.models import MemberStatus, Membership
from parley.engine.permissions import Actor, capabilities_from_flags, capabilities_to_flags
from parley.services import membership_service
from parley.services.broadcast import EventPublisher

router = APIRouter(prefix="/communities/{community_id}", tags=["members"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ModerationReason(BaseModel):
    reason: str | None = None


class BanRequest(BaseModel):
    reason: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0)


class MuteRequest(BaseModel):
    reason: str | None = None
    duration_minutes: int = Field(default=DEFAULT_MUTE_MINUTES, gt=0)


class WarnRequest(BaseModel):
    reason: str


class ModeratorAdd(BaseModel):
    user_id: str
    permissions: dict[str, bool] | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def membership_dict(m: Membership) -> dict:
    return {
        "community_id": m.community_id,
        "user_id": m.user_id,
        "role": m.role,
        "status": m.status,
        "permissions": capabilities_to_flags(m.permissions),
        "nickname": m.nickname,
        "mute_until": _iso(m.mute_until),
        "ban_expires_at": _iso(m.ban_expires_at),
        "message_count": m.message_count,
        "last_seen": _iso(m.last_seen),
        "joined_at": _iso(m.joined_at),
        "invited_by": m.invited_by,
        "moderation_history": list(m.moderation_history or []),
    }


# ---------------------------------------------------------------------------
# Self-service
# ---------------------------------------------------------------------------
@router.post("/join", status_code=201)
def join_community(
    community_id: int,
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.join(engine, community_id, actor.user_id, events=events)
    return membership_dict(m)


@router.post("/leave")
def leave_community(
    community_id: int,
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.leave(engine, community_id, actor.user_id, events=events)
    return membership_dict(m)


@router.get("/members")
def list_members(
    community_id: int,
    status: str | None = MemberStatus.ACTIVE,
    role: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    rows = membership_service.list_members(
        engine,
        community_id,
        viewer=actor,
        status=status or None,
        role=role,
        limit=limit,
        offset=offset,
        events=events,
    )
    return {"members": [membership_dict(m) for m in rows]}


@router.get("/members/me")
def my_membership(
    community_id: int,
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.get_membership(engine, community_id, actor.user_id, events=events)
    return membership_dict(m)


# ---------------------------------------------------------------------------
# Moderation actions
# ---------------------------------------------------------------------------
@router.post("/members/{user_id}/approve")
def approve_member(
    community_id: int,
    user_id: str,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.approve_member(engine, community_id, actor, user_id, events=events)
    return membership_dict(m)


@router.post("/members/{user_id}/kick")
def kick_member(
    community_id: int,
    user_id: str,
    body: ModerationReason,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.kick(
        engine, community_id, actor, user_id, reason=body.reason, events=events,
    )
    return membership_dict(m)


@router.post("/members/{user_id}/ban")
def ban_member(
    community_id: int,
    user_id: str,
    body: BanRequest,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.ban(
        engine, community_id, actor, user_id,
        reason=body.reason,
        duration_minutes=body.duration_minutes,
        events=events,
    )
    return membership_dict(m)


@router.post("/members/{user_id}/unban")
def unban_member(
    community_id: int,
    user_id: str,
    body: ModerationReason,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.unban(
        engine, community_id, actor, user_id, reason=body.reason, events=events,
    )
    return membership_dict(m)


@router.post("/members/{user_id}/mute")
def mute_member(
    community_id: int,
    user_id: str,
    body: MuteRequest,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.mute(
        engine, community_id, actor, user_id,
        reason=body.reason,
        duration_minutes=body.duration_minutes,
        events=events,
    )
    return membership_dict(m)


@router.post("/members/{user_id}/unmute")
def unmute_member(
    community_id: int,
    user_id: str,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.unmute(engine, community_id, actor, user_id, events=events)
    return membership_dict(m)


@router.post("/members/{user_id}/warn")
def warn_member(
    community_id: int,
    user_id: str,
    body: WarnRequest,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.warn(
        engine, community_id, actor, user_id, reason=body.reason, events=events,
    )
    return membership_dict(m)


# ---------------------------------------------------------------------------
# Moderator roster
# ---------------------------------------------------------------------------
@router.post("/moderators")
def add_moderator(
    community_id: int,
    body: ModeratorAdd,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.promote(
        engine, community_id, actor, body.user_id,
        permissions=capabilities_from_flags(body.permissions),
        events=events,
    )
    return membership_dict(m)


@router.delete("/moderators/{user_id}")
def remove_moderator(
    community_id: int,
    user_id: str,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    m = membership_service.demote(engine, community_id, actor, user_id, events=events)
    return membership_dict(m)
