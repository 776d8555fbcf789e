"""
parley.services.moderation_log — Append-only moderation audit trail
====================================================================

Every administrative action (human or automatic) lands here as one
:class:`~parley.database.models.ModerationLogEntry`.  Writers call
:func:`log_action` with the session of the transaction that performs the
action, so the audit row commits (or rolls back) together with it.

The module exposes no update or delete API.  Entries carry plain ids,
so history survives a later hard delete of the community or message.
``moderator_id = NULL`` marks a system action (e.g. auto-mute for spam).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from parley.constants import as_utc, utcnow
from parley.database.models import ModerationAction, ModerationLogEntry, Severity

logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 200

ACTION_DESCRIPTIONS: dict[str, str] = {
    ModerationAction.KICK_MEMBER: "Kicked member from community",
    ModerationAction.BAN_MEMBER: "Banned member from community",
    ModerationAction.UNBAN_MEMBER: "Unbanned member from community",
    ModerationAction.MUTE_MEMBER: "Muted member in community",
    ModerationAction.UNMUTE_MEMBER: "Unmuted member in community",
    ModerationAction.DELETE_MESSAGE: "Deleted message",
    ModerationAction.PIN_MESSAGE: "Pinned message",
    ModerationAction.UNPIN_MESSAGE: "Unpinned message",
    ModerationAction.ADD_MODERATOR: "Added moderator",
    ModerationAction.REMOVE_MODERATOR: "Removed moderator",
    ModerationAction.UPDATE_RULES: "Updated community rules",
    ModerationAction.UPDATE_SETTINGS: "Updated community settings",
    ModerationAction.WARN_MEMBER: "Warned member",
    ModerationAction.APPROVE_MEMBER: "Approved join request",
    ModerationAction.APPROVE_COMMUNITY: "Approved community",
    ModerationAction.REJECT_COMMUNITY: "Rejected community",
    ModerationAction.SUSPEND_COMMUNITY: "Suspended community",
    ModerationAction.ARCHIVE_COMMUNITY: "Archived community",
    ModerationAction.DELETE_COMMUNITY: "Deleted community",
}


def describe_action(action: str) -> str:
    return ACTION_DESCRIPTIONS.get(action, "Unknown action")


# ---------------------------------------------------------------------------
# Write
# ---------------------------------------------------------------------------
def log_action(
    session: Session,
    *,
    community_id: int,
    action: ModerationAction,
    moderator_id: str | None,
    target_user_id: str | None = None,
    target_message_id: int | None = None,
    reason: str | None = None,
    details: dict[str, Any] | None = None,
    severity: Severity = Severity.MEDIUM,
    now: datetime | None = None,
) -> ModerationLogEntry:
    """Append one entry within the caller's transaction."""
    entry = ModerationLogEntry(
        community_id=community_id,
        moderator_id=moderator_id,
        target_user_id=target_user_id,
        target_message_id=target_message_id,
        action=str(action),
        reason=reason,
        details=details,
        severity=str(severity),
        created_at=now or utcnow(),
    )
    session.add(entry)
    logger.info(
        "Moderation %s in community %s by %s (target user=%s message=%s)",
        action, community_id, moderator_id or "system", target_user_id, target_message_id,
    )
    return entry


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------
def query_log(
    engine: Engine,
    *,
    community_id: int | None = None,
    moderator_id: str | None = None,
    target_user_id: str | None = None,
    target_message_id: int | None = None,
    action: str | None = None,
    severity: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ModerationLogEntry], int]:
    """Filtered log entries, newest first, plus the unpaginated total."""
    filters = []
    if community_id is not None:
        filters.append(ModerationLogEntry.community_id == community_id)
    if moderator_id is not None:
        filters.append(ModerationLogEntry.moderator_id == moderator_id)
    if target_user_id is not None:
        filters.append(ModerationLogEntry.target_user_id == target_user_id)
    if target_message_id is not None:
        filters.append(ModerationLogEntry.target_message_id == target_message_id)
    if action is not None:
        filters.append(ModerationLogEntry.action == action)
    if severity is not None:
        filters.append(ModerationLogEntry.severity == severity)
    if start is not None:
        filters.append(ModerationLogEntry.created_at >= start)
    if end is not None:
        filters.append(ModerationLogEntry.created_at <= end)

    limit = max(1, min(limit, MAX_QUERY_LIMIT))
    with Session(engine) as session:
        total = session.scalar(
            select(func.count()).select_from(ModerationLogEntry).where(*filters)
        ) or 0
        rows = session.scalars(
            select(ModerationLogEntry)
            .where(*filters)
            .order_by(ModerationLogEntry.created_at.desc(), ModerationLogEntry.id.desc())
            .limit(limit)
            .offset(max(0, offset))
        ).all()
        for row in rows:
            session.expunge(row)
    return list(rows), total


def community_stats(
    engine: Engine,
    community_id: int,
    *,
    days: int = 30,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Per-action counts over the trailing *days*, with distinct moderators.

    Returns ``[{"action", "count", "moderators": [...]}]`` sorted by count.
    """
    since = (now or utcnow()) - timedelta(days=days)
    window = (
        ModerationLogEntry.community_id == community_id,
        ModerationLogEntry.created_at >= since,
    )
    with Session(engine) as session:
        counts = session.execute(
            select(ModerationLogEntry.action, func.count().label("n"))
            .where(*window)
            .group_by(ModerationLogEntry.action)
        ).all()
        pairs = session.execute(
            select(ModerationLogEntry.action, ModerationLogEntry.moderator_id)
            .where(*window, ModerationLogEntry.moderator_id.is_not(None))
            .distinct()
        ).all()

    moderators: dict[str, list[str]] = defaultdict(list)
    for action, moderator_id in pairs:
        moderators[action].append(moderator_id)

    stats = [
        {
            "action": action,
            "description": describe_action(action),
            "count": n,
            "moderators": sorted(moderators.get(action, [])),
        }
        for action, n in counts
    ]
    stats.sort(key=lambda s: (-s["count"], s["action"]))
    return stats


def moderator_activity(
    engine: Engine,
    moderator_id: str,
    *,
    days: int = 30,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Per (community, action) counts for one moderator, most recent first."""
    since = (now or utcnow()) - timedelta(days=days)
    with Session(engine) as session:
        rows = session.execute(
            select(
                ModerationLogEntry.community_id,
                ModerationLogEntry.action,
                func.count().label("n"),
                func.max(ModerationLogEntry.created_at).label("last_action"),
            )
            .where(
                ModerationLogEntry.moderator_id == moderator_id,
                ModerationLogEntry.created_at >= since,
            )
            .group_by(ModerationLogEntry.community_id, ModerationLogEntry.action)
        ).all()

    activity = [
        {
            "community_id": row.community_id,
            "action": row.action,
            "count": row.n,
            "last_action": as_utc(row.last_action),
        }
        for row in rows
    ]
    activity.sort(key=lambda a: a["last_action"], reverse=True)
    return activity
