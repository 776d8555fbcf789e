"""
parley.database.seed — Pre-approved Community Seeder
=====================================================

Communities listed under ``seed_communities`` in ``config.yaml`` are
created on startup already approved, owned by ``seed_creator_id``.

Idempotent — an entry whose slug already exists is skipped, so later
admin edits to a seeded community are never overwritten.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import fields

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from parley.constants import slugify
from parley.database.models import Community
from parley.services.community_service import CommunitySpec, create

logger = logging.getLogger(__name__)

_SPEC_FIELDS = frozenset(f.name for f in fields(CommunitySpec))


def seed_communities(engine: Engine, entries: Iterable[dict], creator_id: str) -> int:
    """Create every configured community that does not exist yet.

    Returns the number of communities inserted.  Unknown keys in an entry
    are ignored with a warning.
    """
    with Session(engine) as session:
        existing = set(session.scalars(select(Community.slug)).all())

    inserted = 0
    for entry in entries:
        name = str(entry.get("name") or "")
        if slugify(name) in existing:
            continue
        unknown = set(entry) - _SPEC_FIELDS
        if unknown:
            logger.warning("Ignoring unknown seed keys for %r: %s", name, sorted(unknown))
        spec = CommunitySpec(**{k: v for k, v in entry.items() if k in _SPEC_FIELDS})
        community = create(engine, spec, creator_id, seeded=True)
        existing.add(community.slug)
        inserted += 1

    if inserted:
        logger.info("Seeded %d pre-approved communities.", inserted)
    return inserted
