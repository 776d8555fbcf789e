"""
parley.services.reconciliation_service — Periodic cleanup of timed moderation
===============================================================================

Reads through :mod:`parley.services.membership_service` already lift an
expired ban or mute the moment anyone looks at the membership.  This
module does the same for rows nobody has looked at, so member counts and
mute badges stay accurate for idle users.

Both jobs are idempotent and safe to run concurrently with live traffic:
each expired row is flipped with the same conditional update the lazy
path uses, so a row reconciled by a request in between is skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, func, select, update

from parley.constants import utcnow
from parley.database.engine import get_session
from parley.database.models import Community, MemberStatus, Membership
from parley.services.broadcast import NULL_PUBLISHER, EventPublisher
from parley.services.membership_service import reconcile

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    bans_lifted: int = 0
    mutes_cleared: int = 0


def reconcile_expired_moderation(
    engine: Engine,
    now: datetime | None = None,
    *,
    events: EventPublisher | None = None,
) -> ReconcileResult:
    """Lift every ban and mute whose end time has passed."""
    now = now or utcnow()
    events = events or NULL_PUBLISHER
    lifted: list[tuple[int, str]] = []
    cleared: list[tuple[int, str]] = []

    with get_session(engine) as session:
        rows = session.scalars(
            select(Membership).where(
                (
                    (Membership.status == MemberStatus.BANNED)
                    & Membership.ban_expires_at.is_not(None)
                    & (Membership.ban_expires_at <= now)
                )
                | (Membership.mute_until.is_not(None) & (Membership.mute_until <= now))
            )
        ).all()
        for membership in rows:
            was_banned = membership.status == MemberStatus.BANNED
            had_mute = membership.mute_until is not None
            reconcile(session, membership, now, events=events)
            key = (membership.community_id, membership.user_id)
            if was_banned and membership.status == MemberStatus.ACTIVE:
                lifted.append(key)
            if had_mute and membership.mute_until is None:
                cleared.append(key)
        session.flush()

    if lifted or cleared:
        logger.info("Reconciled %d expired bans and %d expired mutes", len(lifted), len(cleared))
    return ReconcileResult(bans_lifted=len(lifted), mutes_cleared=len(cleared))


def reconcile_member_counts(engine: Engine) -> dict:
    """Rewrite ``member_count`` wherever it differs from the active memberships.

    Returns ``{"checked": N, "corrected": M, "corrections": [...]}``.
    """
    active = (
        select(Membership.community_id, func.count().label("n"))
        .where(Membership.status == MemberStatus.ACTIVE)
        .group_by(Membership.community_id)
        .subquery()
    )
    corrections: list[dict] = []
    with get_session(engine) as session:
        rows = session.execute(
            select(Community.id, Community.member_count, func.coalesce(active.c.n, 0))
            .outerjoin(active, active.c.community_id == Community.id)
        ).all()
        for community_id, stored, actual in rows:
            if stored == actual:
                continue
            corrections.append({
                "community_id": community_id,
                "stored": stored,
                "actual": actual,
                "diff": actual - stored,
            })
            session.execute(
                update(Community)
                .where(Community.id == community_id)
                .values(member_count=actual)
                .execution_options(synchronize_session=False)
            )

    if corrections:
        logger.warning(
            "Member count reconciliation: corrected %d/%d communities: %s",
            len(corrections), len(rows), corrections,
        )
    else:
        logger.info("Member count reconciliation: all %d communities match", len(rows))

    return {
        "checked": len(rows),
        "corrected": len(corrections),
        "corrections": corrections,
    }
