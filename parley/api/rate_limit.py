"""
parley.api.rate_limit — Per-User Mutation Rate Limiting
=========================================================

Throttle for moderation and administrative write endpoints: 50 mutations
per 5-minute sliding window per user (JWT ``sub`` claim).  Message sending
has its own per-community limit in the message service and is not
counted here.

DB-backed (``mutation_rate_events``) so the window survives restarts and
is shared by every API worker.  Returns HTTP 429 with a ``Retry-After``
header when the limit is exceeded.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from parley.api.deps import get_current_user
from parley.constants import as_utc, utcnow
from parley.database.models import MutationRateEvent
from parley.engine.permissions import Actor

logger = logging.getLogger(__name__)

# Default: 50 mutations per 300-second sliding window
DEFAULT_RATE_LIMIT = 50
DEFAULT_WINDOW_SECONDS = 300

# HTTP methods considered "mutations"
_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class MutationRateLimiter:
    """Sliding-window rate limiter keyed by user ID."""

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        *,
        engine: Engine,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine

    def _prune(self, session: Session, user_id: str, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.window_seconds)
        session.execute(
            delete(MutationRateEvent).where(
                MutationRateEvent.user_id == user_id,
                MutationRateEvent.timestamp < cutoff,
            )
        )

    def check(self, user_id: str, now: datetime | None = None) -> tuple[bool, dict[str, Any]]:
        """Check if the user is within rate limits.

        Returns (allowed, info) where info contains:
          - remaining: requests remaining in the window
          - reset: seconds until the oldest request expires
          - limit: the max requests per window
        """
        now = now or utcnow()
        with Session(self.engine) as session:
            self._prune(session, user_id, now)
            timestamps = session.scalars(
                select(MutationRateEvent.timestamp)
                .where(MutationRateEvent.user_id == user_id)
                .order_by(MutationRateEvent.timestamp.asc())
            ).all()
            session.commit()

        count = len(timestamps)
        if count >= self.max_requests:
            oldest = as_utc(timestamps[0])
            reset = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
            return False, {
                "remaining": 0,
                "reset": max(1, int(reset) + 1),
                "limit": self.max_requests,
            }

        return True, {
            "remaining": self.max_requests - count,
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def record(self, user_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Record a request and return the updated rate-limit info."""
        now = now or utcnow()
        with Session(self.engine) as session:
            self._prune(session, user_id, now)
            session.add(MutationRateEvent(user_id=user_id, timestamp=now))
            session.flush()
            count = session.scalar(
                select(func.count())
                .select_from(MutationRateEvent)
                .where(MutationRateEvent.user_id == user_id)
            ) or 0
            session.commit()

        return {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def reset(self, user_id: str | None = None) -> None:
        """Clear rate limit state. If user_id is None, clear all."""
        with Session(self.engine) as session:
            stmt = delete(MutationRateEvent)
            if user_id is not None:
                stmt = stmt.where(MutationRateEvent.user_id == user_id)
            session.execute(stmt)
            session.commit()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------
_limiter: MutationRateLimiter | None = None


def get_rate_limiter() -> MutationRateLimiter:
    """Return the global rate limiter instance."""
    if _limiter is None:
        raise RuntimeError("Rate limiter not configured; call configure_rate_limiter() first")
    return _limiter


def configure_rate_limiter(*, engine: Engine, max_requests: int = DEFAULT_RATE_LIMIT) -> None:
    global _limiter
    _limiter = MutationRateLimiter(
        max_requests=max_requests,
        window_seconds=DEFAULT_WINDOW_SECONDS,
        engine=engine,
    )


# ---------------------------------------------------------------------------
# FastAPI dependency — chains after get_current_user
# ---------------------------------------------------------------------------
async def rate_limited_user(
    request: Request,
    actor: Actor = Depends(get_current_user),
) -> Actor:
    """Authenticate the caller *and* enforce the mutation throttle.

    GET/HEAD/OPTIONS requests pass through without rate-limit checks.
    Raises HTTP 429 when the limit is exceeded.
    """
    if request.method not in _MUTATION_METHODS:
        return actor

    limiter = get_rate_limiter()
    allowed, info = await asyncio.to_thread(limiter.check, actor.user_id)

    if not allowed:
        logger.warning(
            "Mutation rate limit exceeded for %s: %d requests per %ds",
            actor.user_id, limiter.max_requests, limiter.window_seconds,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": (
                    f"Rate limit exceeded: {limiter.max_requests}"
                    f" actions per {limiter.window_seconds // 60} minutes."
                ),
                "retryAfterSeconds": info["reset"],
            },
            headers={"Retry-After": str(info["reset"])},
        )

    await asyncio.to_thread(limiter.record, actor.user_id)
    return actor
