"""
parley.constants — Shared Constants & Helpers
==============================================

Single source of truth for field limits, settings bounds and the small
text/time helpers shared by the services and the API layer.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Field limits
# ---------------------------------------------------------------------------
NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
TAG_MAX_LENGTH = 30
RULE_TITLE_MAX_LENGTH = 100
RULE_DESCRIPTION_MAX_LENGTH = 500
MESSAGE_MAX_LENGTH = 2000
DELETION_REASON_MAX_LENGTH = 200
REASON_MAX_LENGTH = 500

# ---------------------------------------------------------------------------
# Community settings bounds and defaults
# ---------------------------------------------------------------------------
MAX_MEMBERS_DEFAULT = 1000
MAX_MEMBERS_RANGE = (10, 10000)
RATE_LIMIT_SECONDS_DEFAULT = 5
RATE_LIMIT_SECONDS_RANGE = (2, 60)

DEFAULT_MUTE_MINUTES = 60
MESSAGE_PAGE_DEFAULT = 50
MESSAGE_PAGE_MAX = 100

# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------
COMMUNITY_CATEGORIES: frozenset[str] = frozenset({
    "education", "welfare", "spiritual", "social", "charity",
    "youth", "women", "general", "technology", "health",
})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_COLLAPSE_RE = re.compile(r"[\s_-]+")


def slugify(name: str) -> str:
    """Lower-case, ASCII-only, hyphen-separated form of *name*."""
    slug = _SLUG_STRIP_RE.sub("", name.lower().strip())
    slug = _SLUG_COLLAPSE_RE.sub("-", slug)
    return slug.strip("-")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
