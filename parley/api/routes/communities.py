"""
parley.api.routes.communities — Community registry endpoints
==============================================================
"""

from __future__ import annotations

from collections.abc import Iterable

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from parley.api.deps import (
    get_config,
    get_current_user,
    get_engine,
    get_optional_user,
    get_publisher,
)
from parley.api.rate_limit import rate_limited_user
from parley.config import ParleyConfig
from parley.constants import MAX_MEMBERS_DEFAULT, RATE_LIMIT_SECONDS_DEFAULT, as_utc
from parley.database.models import Community, Membership
from parley.engine.permissions import Actor, capabilities_to_flags
from parley.services import community_service
from parley.services.broadcast import EventPublisher
from parley.services.community_service import CommunitySpec

router = APIRouter(prefix="/communities", tags=["communities"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class Rule(BaseModel):
    title: str
    description: str = ""


class CommunityCreate(BaseModel):
    name: str
    description: str | None = None
    category: str = "general"
    tags: list[str] = Field(default_factory=list)
    avatar_url: str | None = None
    banner_url: str | None = None
    is_private: bool = False
    require_approval: bool = False
    max_members: int = MAX_MEMBERS_DEFAULT
    message_rate_limit_enabled: bool = True
    message_rate_limit_seconds: int = RATE_LIMIT_SECONDS_DEFAULT
    allow_media: bool = True
    allow_files: bool = True
    rules: list[Rule] = Field(default_factory=list)


class CommunityUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    category: str | None = None
    tags: list[str] | None = None
    avatar_url: str | None = None
    banner_url: str | None = None
    is_private: bool | None = None
    require_approval: bool | None = None
    max_members: int | None = None
    message_rate_limit_enabled: bool | None = None
    message_rate_limit_seconds: int | None = None
    allow_media: bool | None = None
    allow_files: bool | None = None


class RulesUpdate(BaseModel):
    rules: list[Rule]


class ReviewDecision(BaseModel):
    reason: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def community_dict(c: Community, moderators: Iterable[Membership] = ()) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "slug": c.slug,
        "description": c.description,
        "category": c.category,
        "tags": list(c.tags or []),
        "creator_id": c.creator_id,
        "avatar_url": c.avatar_url,
        "banner_url": c.banner_url,
        "featured": c.featured,
        "settings": {
            "is_private": c.is_private,
            "require_approval": c.require_approval,
            "max_members": c.max_members,
            "message_rate_limit_enabled": c.message_rate_limit_enabled,
            "message_rate_limit_seconds": c.message_rate_limit_seconds,
            "allow_media": c.allow_media,
            "allow_files": c.allow_files,
        },
        "status": c.status,
        "reviewed_by": c.reviewed_by,
        "reviewed_at": _iso(c.reviewed_at),
        "rejection_reason": c.rejection_reason,
        "member_count": c.member_count,
        "message_count": c.message_count,
        "rules": list(c.rules or []),
        "last_activity": _iso(c.last_activity),
        "created_at": _iso(c.created_at),
        "moderators": [
            {"user": m.user_id, "permissions": capabilities_to_flags(m.permissions)}
            for m in moderators
        ],
    }


def _serialize(engine, community: Community) -> dict:
    moderators = community_service.moderators_by_community(engine, [community.id])
    return community_dict(community, moderators[community.id])


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------
@router.get("")
def list_communities(
    status: str | None = None,
    category: str | None = None,
    tag: str | None = None,
    q: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    viewer: Actor | None = Depends(get_optional_user),
    engine=Depends(get_engine),
):
    rows, total = community_service.list_communities(
        engine,
        viewer=viewer,
        status=status,
        category=category,
        tag=tag,
        query=q,
        page=page,
        limit=limit,
    )
    moderators = community_service.moderators_by_community(engine, [c.id for c in rows])
    return {
        "communities": [community_dict(c, moderators[c.id]) for c in rows],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.get("/mine")
def my_communities(
    actor: Actor = Depends(get_current_user),
    engine=Depends(get_engine),
):
    pairs = community_service.list_for_user(engine, actor.user_id)
    moderators = community_service.moderators_by_community(engine, [c.id for c, _ in pairs])
    return {
        "communities": [
            {
                **community_dict(c, moderators[c.id]),
                "role": m.role,
                "joined_at": _iso(m.joined_at),
            }
            for c, m in pairs
        ],
    }


@router.get("/{community_id}")
def get_community(
    community_id: int,
    viewer: Actor | None = Depends(get_optional_user),
    engine=Depends(get_engine),
):
    return _serialize(engine, community_service.get(engine, community_id, viewer))


# ---------------------------------------------------------------------------
# Create / edit
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
def create_community(
    body: CommunityCreate,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    cfg: ParleyConfig = Depends(get_config),
):
    community = community_service.create(
        engine,
        CommunitySpec(**body.model_dump()),
        actor.user_id,
        max_pending=cfg.max_pending_per_creator,
    )
    return _serialize(engine, community)


@router.patch("/{community_id}")
def update_community(
    community_id: int,
    body: CommunityUpdate,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    community = community_service.update_settings(
        engine, community_id, actor, body.model_dump(exclude_unset=True), events=events,
    )
    return _serialize(engine, community)


@router.put("/{community_id}/rules")
def replace_rules(
    community_id: int,
    body: RulesUpdate,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    community = community_service.update_rules(
        engine, community_id, actor, [r.model_dump() for r in body.rules], events=events,
    )
    return {"id": community.id, "rules": community.rules}


# ---------------------------------------------------------------------------
# Review (platform admins)
# ---------------------------------------------------------------------------
@router.post("/{community_id}/approve")
def approve_community(
    community_id: int,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    return _serialize(engine, community_service.approve(engine, community_id, actor, events=events))


@router.post("/{community_id}/reject")
def reject_community(
    community_id: int,
    body: ReviewDecision,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    community = community_service.reject(
        engine, community_id, actor, body.reason or "", events=events,
    )
    return _serialize(engine, community)


@router.post("/{community_id}/suspend")
def suspend_community(
    community_id: int,
    body: ReviewDecision,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    community = community_service.suspend(
        engine, community_id, actor, body.reason or "", events=events,
    )
    return _serialize(engine, community)


@router.post("/{community_id}/archive")
def archive_community(
    community_id: int,
    body: ReviewDecision,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
    events: EventPublisher = Depends(get_publisher),
):
    community = community_service.archive(
        engine, community_id, actor, body.reason, events=events,
    )
    return _serialize(engine, community)


@router.delete("/{community_id}", status_code=204)
def delete_community(
    community_id: int,
    reason: str | None = None,
    actor: Actor = Depends(rate_limited_user),
    engine=Depends(get_engine),
):
    community_service.delete_community(engine, community_id, actor, reason)
