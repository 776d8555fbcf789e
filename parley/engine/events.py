"""
parley.engine.events — BroadcastEvent and topic names
======================================================

The universal envelope for real-time fan-out.  Services build a
:class:`BroadcastEvent` after their transaction commits and hand it to
the injected broadcaster; the transport only ever sees
:meth:`BroadcastEvent.to_message`.

Topics::

    community:{id}              every subscriber of the community
    community:{id}:moderators   creator, moderators and admins only
    user:{id}                   one user's private notices
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from parley.constants import utcnow

__all__ = [
    "EventType",
    "BroadcastEvent",
    "community_topic",
    "moderators_topic",
    "user_topic",
    "parse_topic",
]


class EventType(enum.StrEnum):
    NEW_MESSAGE = "new-message"
    MESSAGE_DELETED = "message-deleted"
    MESSAGE_PINNED = "message-pinned"
    MESSAGE_UNPINNED = "message-unpinned"
    MEMBER_JOINED = "member-joined"
    MEMBER_LEFT = "member-left"
    MEMBER_KICKED = "member-kicked"
    MEMBER_BANNED = "member-banned"
    MEMBER_UNBANNED = "member-unbanned"
    MEMBER_MUTED = "member-muted"
    MEMBER_UNMUTED = "member-unmuted"
    MODERATOR_ADDED = "moderator-added"
    MODERATOR_REMOVED = "moderator-removed"
    SETTINGS_UPDATED = "settings-updated"
    RULES_UPDATED = "rules-updated"
    SPAM_DETECTED = "spam-detected"
    COMMUNITY_APPROVAL_STATUS = "community-approval-status"


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------
def community_topic(community_id: int) -> str:
    return f"community:{community_id}"


def moderators_topic(community_id: int) -> str:
    return f"community:{community_id}:moderators"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def parse_topic(topic: str) -> tuple[str, str] | None:
    """Split a topic into ``(kind, key)``.

    ``kind`` is ``"community"``, ``"moderators"`` or ``"user"``; returns
    ``None`` for anything malformed.
    """
    parts = topic.split(":")
    if len(parts) == 2 and parts[0] == "user" and parts[1]:
        return "user", parts[1]
    if parts[0] != "community" or len(parts) not in (2, 3) or not parts[1].isdigit():
        return None
    if len(parts) == 2:
        return "community", parts[1]
    if parts[2] == "moderators":
        return "moderators", parts[1]
    return None


# ---------------------------------------------------------------------------
# BroadcastEvent — the envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BroadcastEvent:
    """One real-time notification addressed to a single topic."""

    event_type: EventType
    topic: str
    community_id: int
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_message(self) -> dict[str, Any]:
        """Wire form: ``{"type", "topic", "data": {communityId, ..., timestamp}}``."""
        return {
            "type": str(self.event_type),
            "topic": self.topic,
            "data": {
                "communityId": self.community_id,
                **self.payload,
                "timestamp": self.timestamp.isoformat(),
            },
        }
