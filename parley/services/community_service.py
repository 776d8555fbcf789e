"""
parley.services.community_service — Community Registry
========================================================

Lifecycle::

    pending ──► approved ──► suspended
       │           │    ╲        │
       ▼           ▼     ╲       ▼
    rejected    archived ◄───────┘   (admin only, from anything)

Creation inserts the community and its creator membership (role
``creator``, every capability, ``member_count = 1``) in one transaction.
Users may hold at most ``max_pending_per_creator`` communities awaiting
review.  Seeded communities skip review.

Visibility: non-admin viewers only ever see ``approved`` communities,
plus their own pending/rejected ones when fetched by id.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import Engine, String, cast, delete, func, or_, select, update
from sqlalchemy.orm import Session

from parley.constants import (
    COMMUNITY_CATEGORIES,
    DESCRIPTION_MAX_LENGTH,
    MAX_MEMBERS_DEFAULT,
    MAX_MEMBERS_RANGE,
    NAME_MAX_LENGTH,
    NAME_MIN_LENGTH,
    RATE_LIMIT_SECONDS_DEFAULT,
    RATE_LIMIT_SECONDS_RANGE,
    REASON_MAX_LENGTH,
    RULE_DESCRIPTION_MAX_LENGTH,
    RULE_TITLE_MAX_LENGTH,
    TAG_MAX_LENGTH,
    slugify,
    utcnow,
)
from parley.database.engine import get_session
from parley.database.models import (
    Community,
    CommunityStatus,
    MemberRole,
    MemberStatus,
    Membership,
    Message,
    ModerationAction,
    Severity,
)
from parley.engine.permissions import ALL_CAPABILITIES, Actor, Capability
from parley.errors import (
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from parley.services.broadcast import NULL_PUBLISHER, EventPublisher
from parley.services.membership_service import actor_can, get_community
from parley.services.moderation_log import log_action

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Columns a settings patch may touch.
SETTINGS_FIELDS = (
    "name",
    "description",
    "category",
    "tags",
    "avatar_url",
    "banner_url",
    "is_private",
    "require_approval",
    "max_members",
    "message_rate_limit_enabled",
    "message_rate_limit_seconds",
    "allow_media",
    "allow_files",
)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class CommunitySpec:
    """Everything a creator supplies when proposing a community."""

    name: str
    description: str | None = None
    category: str = "general"
    tags: list[str] = field(default_factory=list)
    avatar_url: str | None = None
    banner_url: str | None = None
    is_private: bool = False
    require_approval: bool = False
    max_members: int = MAX_MEMBERS_DEFAULT
    message_rate_limit_enabled: bool = True
    message_rate_limit_seconds: int = RATE_LIMIT_SECONDS_DEFAULT
    allow_media: bool = True
    allow_files: bool = True
    rules: list[dict] = field(default_factory=list)


def _validate_name(name: Any) -> str:
    name = str(name or "").strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValidationError(
            f"Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters",
        )
    if not slugify(name):
        raise ValidationError("Name must contain at least one letter or digit")
    return name


def _validate_tags(tags: Any) -> list[str]:
    cleaned: list[str] = []
    for tag in tags or []:
        tag = str(tag).strip().lower()
        if not tag:
            continue
        if len(tag) > TAG_MAX_LENGTH:
            raise ValidationError(f"Tags must be at most {TAG_MAX_LENGTH} characters")
        if tag not in cleaned:
            cleaned.append(tag)
    return cleaned


def _validate_range(value: Any, bounds: tuple[int, int], label: str) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{label} must be an integer") from exc
    low, high = bounds
    if not low <= value <= high:
        raise ValidationError(f"{label} must be between {low} and {high}")
    return value


def validate_rules(rules: Any) -> list[dict]:
    """Normalise ``[{"title", "description"}]`` and assign a display order."""
    if not isinstance(rules, list):
        raise ValidationError("Rules must be a list")
    result = []
    for index, rule in enumerate(rules):
        if not isinstance(rule, dict):
            raise ValidationError("Each rule must be an object with a title")
        title = str(rule.get("title") or "").strip()
        description = str(rule.get("description") or "").strip()
        if not title:
            raise ValidationError("Rule title is required")
        if len(title) > RULE_TITLE_MAX_LENGTH:
            raise ValidationError(f"Rule title must be at most {RULE_TITLE_MAX_LENGTH} characters")
        if len(description) > RULE_DESCRIPTION_MAX_LENGTH:
            raise ValidationError(
                f"Rule description must be at most {RULE_DESCRIPTION_MAX_LENGTH} characters",
            )
        result.append({"title": title, "description": description, "order": index})
    return result


def _validate_setting(key: str, value: Any) -> Any:
    if key == "name":
        return _validate_name(value)
    if key == "description":
        value = (value or "").strip() or None
        if value and len(value) > DESCRIPTION_MAX_LENGTH:
            raise ValidationError(
                f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters",
            )
        return value
    if key == "category":
        if value not in COMMUNITY_CATEGORIES:
            raise ValidationError(f"Unknown category {value!r}")
        return value
    if key == "tags":
        return _validate_tags(value)
    if key == "max_members":
        return _validate_range(value, MAX_MEMBERS_RANGE, "max_members")
    if key == "message_rate_limit_seconds":
        return _validate_range(value, RATE_LIMIT_SECONDS_RANGE, "message_rate_limit_seconds")
    if key in ("avatar_url", "banner_url"):
        return value or None
    return bool(value)


def _clean_reason(reason: str | None, *, required: bool, action: str) -> str | None:
    reason = (reason or "").strip()
    if required and not reason:
        raise ValidationError(f"A reason is required to {action} a community")
    if len(reason) > REASON_MAX_LENGTH:
        raise ValidationError(f"Reason must be at most {REASON_MAX_LENGTH} characters")
    return reason or None


def _require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise PermissionDenied(f"Only platform admins can {action} communities")


def _detach(session: Session, community: Community) -> Community:
    session.flush()
    session.refresh(community)
    session.expunge(community)
    return community


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def create(
    engine: Engine,
    spec: CommunitySpec,
    creator_id: str,
    *,
    seeded: bool = False,
    max_pending: int = 3,
    now: datetime | None = None,
) -> Community:
    """Propose a community; ``seeded=True`` creates it already approved.

    Raises
    ------
    ValidationError
        Bad field values, a name whose slug is taken, or the creator
        already has *max_pending* communities awaiting review.
    """
    now = now or utcnow()
    values = {key: _validate_setting(key, getattr(spec, key)) for key in SETTINGS_FIELDS}
    rules = validate_rules(spec.rules)
    slug = slugify(values["name"])

    with get_session(engine) as session:
        if session.scalar(select(Community.id).where(Community.slug == slug)) is not None:
            raise ValidationError("A community with a similar name already exists")
        if not seeded:
            pending = session.scalar(
                select(func.count()).select_from(Community).where(
                    Community.creator_id == creator_id,
                    Community.status == CommunityStatus.PENDING,
                )
            ) or 0
            if pending >= max_pending:
                raise ValidationError(
                    f"You already have {pending} communities awaiting review",
                )

        community = Community(
            **values,
            slug=slug,
            creator_id=creator_id,
            rules=rules,
            status=CommunityStatus.APPROVED if seeded else CommunityStatus.PENDING,
            reviewed_by=creator_id if seeded else None,
            reviewed_at=now if seeded else None,
            member_count=1,
            message_count=0,
            created_at=now,
        )
        session.add(community)
        session.flush()
        session.add(Membership(
            community_id=community.id,
            user_id=creator_id,
            role=MemberRole.CREATOR,
            status=MemberStatus.ACTIVE,
            permissions=int(ALL_CAPABILITIES),
            moderation_history=[],
            joined_at=now,
            last_seen=now,
        ))
        log_action(
            session,
            community_id=community.id,
            action=ModerationAction.UPDATE_SETTINGS,
            moderator_id=creator_id,
            reason="Community created",
            details={"created": True, "seeded": seeded, "name": community.name},
            severity=Severity.LOW,
            now=now,
        )
        community = _detach(session, community)

    logger.info("Community %s (%s) created by %s [%s]", community.id, slug, creator_id, community.status)
    return community


# ---------------------------------------------------------------------------
# Review lifecycle (platform admins)
# ---------------------------------------------------------------------------
def _set_status(
    session: Session,
    community: Community,
    expected: tuple[str, ...],
    new_status: str,
    *,
    action: ModerationAction,
    actor: Actor,
    reason: str | None,
    severity: Severity,
    now: datetime,
    **values: Any,
) -> None:
    """Conditionally move *community* to *new_status* and log the review."""
    previous = community.status
    result = session.execute(
        update(Community)
        .where(Community.id == community.id, Community.status.in_(expected))
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateTransition(
            f"Cannot move community from '{previous}' to '{new_status}'",
        )
    log_action(
        session,
        community_id=community.id,
        action=action,
        moderator_id=actor.user_id,
        reason=reason,
        details={"before": str(previous), "status": str(new_status)},
        severity=severity,
        now=now,
    )
    logger.info("Community %s: %s → %s", community.id, previous, new_status)


def approve(
    engine: Engine,
    community_id: int,
    actor: Actor,
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Community:
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    _require_admin(actor, "approve")
    with get_session(engine) as session:
        community = get_community(session, community_id)
        _set_status(
            session, community, (CommunityStatus.PENDING,), CommunityStatus.APPROVED,
            action=ModerationAction.APPROVE_COMMUNITY, actor=actor, reason=None,
            severity=Severity.LOW, now=now,
            reviewed_by=actor.user_id, reviewed_at=now, rejection_reason=None,
        )
        community = _detach(session, community)

    events.approval_status(community.id, community.creator_id, CommunityStatus.APPROVED)
    return community


def reject(
    engine: Engine,
    community_id: int,
    actor: Actor,
    reason: str,
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Community:
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    _require_admin(actor, "reject")
    reason = _clean_reason(reason, required=True, action="reject")
    with get_session(engine) as session:
        community = get_community(session, community_id)
        _set_status(
            session, community, (CommunityStatus.PENDING,), CommunityStatus.REJECTED,
            action=ModerationAction.REJECT_COMMUNITY, actor=actor, reason=reason,
            severity=Severity.MEDIUM, now=now,
            reviewed_by=actor.user_id, reviewed_at=now, rejection_reason=reason,
        )
        community = _detach(session, community)

    events.approval_status(community.id, community.creator_id, CommunityStatus.REJECTED, reason)
    return community


def suspend(
    engine: Engine,
    community_id: int,
    actor: Actor,
    reason: str,
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Community:
    """Take a community offline pending further review."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    _require_admin(actor, "suspend")
    reason = _clean_reason(reason, required=True, action="suspend")
    with get_session(engine) as session:
        community = get_community(session, community_id)
        _set_status(
            session, community,
            (CommunityStatus.PENDING, CommunityStatus.APPROVED, CommunityStatus.REJECTED),
            CommunityStatus.SUSPENDED,
            action=ModerationAction.SUSPEND_COMMUNITY, actor=actor, reason=reason,
            severity=Severity.HIGH, now=now,
            reviewed_by=actor.user_id, reviewed_at=now, rejection_reason=reason,
        )
        community = _detach(session, community)

    events.approval_status(community.id, community.creator_id, CommunityStatus.SUSPENDED, reason)
    return community


def archive(
    engine: Engine,
    community_id: int,
    actor: Actor,
    reason: str | None = None,
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Community:
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    _require_admin(actor, "archive")
    reason = _clean_reason(reason, required=False, action="archive")
    with get_session(engine) as session:
        community = get_community(session, community_id)
        _set_status(
            session, community,
            tuple(s for s in CommunityStatus if s != CommunityStatus.ARCHIVED),
            CommunityStatus.ARCHIVED,
            action=ModerationAction.ARCHIVE_COMMUNITY, actor=actor, reason=reason,
            severity=Severity.MEDIUM, now=now,
            reviewed_by=actor.user_id, reviewed_at=now,
        )
        community = _detach(session, community)

    events.approval_status(community.id, community.creator_id, CommunityStatus.ARCHIVED, reason)
    return community


def delete_community(
    engine: Engine,
    community_id: int,
    actor: Actor,
    reason: str | None = None,
    *,
    now: datetime | None = None,
) -> None:
    """Hard delete a community with its memberships and messages.

    Moderation log entries reference plain ids and are kept.
    """
    now = now or utcnow()
    _require_admin(actor, "delete")
    reason = _clean_reason(reason, required=False, action="delete")
    with get_session(engine) as session:
        community = get_community(session, community_id)
        log_action(
            session,
            community_id=community.id,
            action=ModerationAction.DELETE_COMMUNITY,
            moderator_id=actor.user_id,
            reason=reason,
            details={
                "name": community.name,
                "status": str(community.status),
                "member_count": community.member_count,
                "message_count": community.message_count,
            },
            severity=Severity.CRITICAL,
            now=now,
        )
        session.execute(
            update(Message)
            .where(Message.community_id == community.id)
            .values(reply_to_id=None)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            delete(Message)
            .where(Message.community_id == community.id)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            delete(Membership)
            .where(Membership.community_id == community.id)
            .execution_options(synchronize_session=False)
        )
        session.delete(community)
    logger.warning("Community %s hard-deleted by admin %s", community_id, actor.user_id)


# ---------------------------------------------------------------------------
# Settings & rules (creator, moderators with MANAGE_RULES, admins)
# ---------------------------------------------------------------------------
def update_settings(
    engine: Engine,
    community_id: int,
    actor: Actor,
    patch: dict[str, Any],
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Community:
    """Apply a partial settings update and log the before/after values.

    Unknown keys raise :class:`ValidationError`.  Unchanged values are
    dropped from the diff; an empty diff is a no-op.
    """
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    unknown = set(patch) - set(SETTINGS_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    cleaned = {key: _validate_setting(key, value) for key, value in patch.items()}

    with get_session(engine) as session:
        community = get_community(session, community_id)
        if not actor_can(session, community, actor, Capability.MANAGE_RULES):
            raise PermissionDenied("Insufficient permissions to update community settings")

        before = {k: getattr(community, k) for k in cleaned if getattr(community, k) != cleaned[k]}
        after = {k: cleaned[k] for k in before}
        if not after:
            return _detach(session, community)

        if "name" in after:
            slug = slugify(after["name"])
            clash = session.scalar(
                select(Community.id).where(Community.slug == slug, Community.id != community.id)
            )
            if clash is not None:
                raise ValidationError("A community with a similar name already exists")
            community.slug = slug
        if "max_members" in after and after["max_members"] < community.member_count:
            raise ValidationError("max_members cannot be lower than the current member count")

        for key, value in after.items():
            setattr(community, key, value)
        log_action(
            session,
            community_id=community.id,
            action=ModerationAction.UPDATE_SETTINGS,
            moderator_id=actor.user_id,
            details={"before": before, "after": after},
            severity=Severity.LOW,
            now=now,
        )
        community = _detach(session, community)

    events.settings_updated(community.id, actor.user_id, after)
    return community


def update_rules(
    engine: Engine,
    community_id: int,
    actor: Actor,
    rules: list[dict],
    *,
    now: datetime | None = None,
    events: EventPublisher | None = None,
) -> Community:
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    rules = validate_rules(rules)
    with get_session(engine) as session:
        community = get_community(session, community_id)
        if not actor_can(session, community, actor, Capability.MANAGE_RULES):
            raise PermissionDenied("Insufficient permissions to update community rules")
        previous = list(community.rules or [])
        community.rules = rules
        log_action(
            session,
            community_id=community.id,
            action=ModerationAction.UPDATE_RULES,
            moderator_id=actor.user_id,
            details={"before": previous, "after": rules},
            severity=Severity.LOW,
            now=now,
        )
        community = _detach(session, community)

    events.rules_updated(community.id, actor.user_id, rules)
    return community


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get(engine: Engine, community_id: int, viewer: Actor | None = None) -> Community:
    """Fetch one community as *viewer* sees it.

    Raises :class:`NotFound` for communities the viewer may not see.
    """
    with Session(engine) as session:
        community = session.get(Community, community_id)
        if community is None:
            raise NotFound("Community not found")
        visible = (
            community.status == CommunityStatus.APPROVED
            or (viewer is not None and (viewer.is_admin or viewer.user_id == community.creator_id))
        )
        if not visible:
            raise NotFound("Community not found")
        session.expunge(community)
    return community


def relevance(community: Community, query: str) -> int:
    """Score how well *community* matches a free-text *query*.

    Exact name 100, name prefix 60, name substring 40, exact tag 30,
    tag substring 15, description substring 10; summed per search term.
    """
    score = 0
    name = community.name.lower()
    tags = [t.lower() for t in community.tags or []]
    description = (community.description or "").lower()
    for term in query.lower().split():
        if name == term:
            score += 100
        elif name.startswith(term):
            score += 60
        elif term in name:
            score += 40
        if term in tags:
            score += 30
        elif any(term in tag for tag in tags):
            score += 15
        if term in description:
            score += 10
    return score


def _tag_clause(engine: Engine, tag: str):
    if engine.dialect.name == "postgresql":
        return Community.tags.contains([tag])
    pattern = _like_escape(json.dumps(tag))
    return cast(Community.tags, String).like(f"%{pattern}%", escape="!")


def _like_escape(text: str) -> str:
    return text.replace("!", "!!").replace("%", "!%").replace("_", "!_")


def _query_clause(terms: str):
    clauses = []
    for term in terms.lower().split():
        pattern = f"%{_like_escape(term)}%"
        clauses.append(func.lower(Community.name).like(pattern, escape="!"))
        clauses.append(func.lower(Community.description).like(pattern, escape="!"))
        clauses.append(cast(Community.tags, String).like(pattern, escape="!"))
    return or_(*clauses)


def list_communities(
    engine: Engine,
    *,
    viewer: Actor | None = None,
    status: str | None = None,
    category: str | None = None,
    tag: str | None = None,
    query: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Community], int]:
    """Paginated directory listing plus the total match count.

    Non-admins always get ``approved`` communities regardless of *status*.
    With *query*, results are ordered by :func:`relevance`, then member
    count; otherwise featured first, then most recently active.
    Filtering and paging run in SQL; a *query* narrows candidates in SQL
    and ranks the survivors in Python.
    """
    if viewer is None or not viewer.is_admin:
        status = CommunityStatus.APPROVED
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    page = max(1, page)
    offset = (page - 1) * limit

    stmt = select(Community)
    if status is not None:
        stmt = stmt.where(Community.status == status)
    if category is not None:
        stmt = stmt.where(Community.category == category)
    if tag is not None and tag.strip():
        stmt = stmt.where(_tag_clause(engine, tag.strip().lower()))

    terms = (query or "").strip()
    with Session(engine) as session:
        if terms:
            rows = list(session.scalars(stmt.where(_query_clause(terms))).all())
        else:
            total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            ordered = stmt.order_by(
                Community.featured.desc(),
                func.coalesce(Community.last_activity, Community.created_at).desc(),
                Community.id,
            )
            rows = list(session.scalars(ordered.limit(limit).offset(offset)).all())
        for row in rows:
            session.expunge(row)

    if not terms:
        return rows, total

    scored = [(relevance(c, terms), c) for c in rows]
    scored = [pair for pair in scored if pair[0] > 0]
    scored.sort(key=lambda pair: (-pair[0], -pair[1].member_count, pair[1].id))
    return [c for _, c in scored[offset:offset + limit]], len(scored)


def list_for_user(engine: Engine, user_id: str) -> list[tuple[Community, Membership]]:
    """Approved communities *user_id* is an active member of, with the membership."""
    with Session(engine) as session:
        rows = session.execute(
            select(Community, Membership)
            .join(Membership, Membership.community_id == Community.id)
            .where(
                Membership.user_id == user_id,
                Membership.status == MemberStatus.ACTIVE,
                Community.status == CommunityStatus.APPROVED,
            )
            .order_by(Membership.joined_at.desc())
        ).all()
        pairs = [(community, membership) for community, membership in rows]
        for community, membership in pairs:
            session.expunge(community)
            session.expunge(membership)
    return pairs


def moderators_by_community(
    engine: Engine, community_ids: list[int],
) -> dict[int, list[Membership]]:
    """Active moderator memberships for each of *community_ids*, oldest first."""
    result: dict[int, list[Membership]] = {cid: [] for cid in community_ids}
    if not community_ids:
        return result
    with Session(engine) as session:
        rows = session.scalars(
            select(Membership)
            .where(
                Membership.community_id.in_(community_ids),
                Membership.role == MemberRole.MODERATOR,
                Membership.status == MemberStatus.ACTIVE,
            )
            .order_by(Membership.joined_at.asc(), Membership.id.asc())
        ).all()
        for row in rows:
            session.expunge(row)
            result[row.community_id].append(row)
    return result
