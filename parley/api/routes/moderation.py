"""
parley.api.routes.moderation — Moderation log queries
=======================================================

Read-only.  A community's log is visible to its creator, its moderators
and platform admins; the cross-community log only to admins.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from parley.api.deps import get_current_admin, get_current_user, get_engine
from parley.constants import as_utc
from parley.database.models import ModerationLogEntry
from parley.engine.permissions import Actor
from parley.errors import PermissionDenied
from parley.services import moderation_log
from parley.services.membership_service import is_moderator

router = APIRouter(tags=["moderation"])


def _entry_dict(e: ModerationLogEntry) -> dict:
    created = as_utc(e.created_at)
    return {
        "id": e.id,
        "community_id": e.community_id,
        "moderator_id": e.moderator_id,
        "target_user_id": e.target_user_id,
        "target_message_id": e.target_message_id,
        "action": e.action,
        "description": moderation_log.describe_action(e.action),
        "reason": e.reason,
        "details": e.details,
        "severity": e.severity,
        "created_at": created.isoformat() if created else None,
    }


def _require_moderator(engine, community_id: int, actor: Actor) -> None:
    if not is_moderator(engine, community_id, actor):
        raise PermissionDenied("Moderator access required")


@router.get("/communities/{community_id}/moderation/log")
def community_log(
    community_id: int,
    moderator_id: str | None = None,
    target_user_id: str | None = None,
    target_message_id: int | None = None,
    action: str | None = None,
    severity: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
):
    _require_moderator(engine, community_id, actor)
    entries, total = moderation_log.query_log(
        engine,
        community_id=community_id,
        moderator_id=moderator_id,
        target_user_id=target_user_id,
        target_message_id=target_message_id,
        action=action,
        severity=severity,
        start=as_utc(start),
        end=as_utc(end),
        limit=limit,
        offset=offset,
    )
    return {"entries": [_entry_dict(e) for e in entries], "total": total}


@router.get("/communities/{community_id}/moderation/stats")
def community_stats(
    community_id: int,
    days: int = Query(30, ge=1, le=365),
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
):
    _require_moderator(engine, community_id, actor)
    return {"days": days, "stats": moderation_log.community_stats(engine, community_id, days=days)}


@router.get("/moderation/moderators/{moderator_id}/activity")
def moderator_activity(
    moderator_id: str,
    days: int = Query(30, ge=1, le=365),
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
):
    if actor.user_id != moderator_id and not actor.is_admin:
        raise PermissionDenied("Can only view your own moderation activity")
    activity = moderation_log.moderator_activity(engine, moderator_id, days=days)
    return {
        "moderator_id": moderator_id,
        "days": days,
        "activity": [
            {**row, "last_action": row["last_action"].isoformat() if row["last_action"] else None}
            for row in activity
        ],
    }


@router.get("/moderation/log")
def global_log(
    community_id: int | None = None,
    moderator_id: str | None = None,
    target_user_id: str | None = None,
    action: str | None = None,
    severity: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: Actor = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    entries, total = moderation_log.query_log(
        engine,
        community_id=community_id,
        moderator_id=moderator_id,
        target_user_id=target_user_id,
        action=action,
        severity=severity,
        limit=limit,
        offset=offset,
    )
    return {"entries": [_entry_dict(e) for e in entries], "total": total}
