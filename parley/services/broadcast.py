"""
parley.services.broadcast — Broadcaster port + typed event publisher
=====================================================================

Services never reach for a transport.  They receive an
:class:`EventPublisher` (or nothing, in which case events go to a
:class:`NullBroadcaster`) and call one typed method per event after their
transaction has committed.

    Broadcaster (port)      ``publish(event) -> None``; must not block.
    NullBroadcaster         Drops events (CLI, tests, background jobs).
    ConnectionHub           WebSocket fan-out, see :mod:`parley.services.realtime`.

Delivery is at-most-once.  A transport error is logged and swallowed
here so the write that produced the event is never affected.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

from parley.engine.events import (
    BroadcastEvent,
    EventType,
    community_topic,
    moderators_topic,
    user_topic,
)

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    def publish(self, event: BroadcastEvent) -> None: ...


class NullBroadcaster:
    """Discards every event."""

    def publish(self, event: BroadcastEvent) -> None:
        logger.debug("Dropping %s for %s (no transport)", event.event_type, event.topic)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# EventPublisher — one method per event kind
# ---------------------------------------------------------------------------
class EventPublisher:
    """Builds :class:`BroadcastEvent` envelopes and hands them to a port."""

    def __init__(self, broadcaster: Broadcaster | None = None) -> None:
        self.broadcaster: Broadcaster = broadcaster or NullBroadcaster()

    def emit(
        self,
        event_type: EventType,
        topic: str,
        community_id: int,
        **payload: Any,
    ) -> None:
        event = BroadcastEvent(
            event_type=event_type,
            topic=topic,
            community_id=community_id,
            payload=payload,
        )
        try:
            self.broadcaster.publish(event)
        except Exception:
            logger.warning(
                "Broadcast of %s to %s failed", event_type, topic, exc_info=True,
            )

    def _community_and_user(
        self,
        event_type: EventType,
        community_id: int,
        user_id: str,
        **payload: Any,
    ) -> None:
        self.emit(event_type, community_topic(community_id), community_id, userId=user_id, **payload)
        self.emit(event_type, user_topic(user_id), community_id, userId=user_id, **payload)

    # -- messages ----------------------------------------------------------
    def new_message(self, community_id: int, message: dict) -> None:
        self.emit(EventType.NEW_MESSAGE, community_topic(community_id), community_id, message=message)

    def message_deleted(self, community_id: int, message_id: int, deleted_by: str) -> None:
        self.emit(
            EventType.MESSAGE_DELETED, community_topic(community_id), community_id,
            messageId=message_id, deletedBy=deleted_by,
        )

    def message_pinned(self, community_id: int, message_id: int, actor_id: str, *, pinned: bool) -> None:
        event_type = EventType.MESSAGE_PINNED if pinned else EventType.MESSAGE_UNPINNED
        self.emit(
            event_type, community_topic(community_id), community_id,
            messageId=message_id, actorId=actor_id,
        )

    def spam_detected(
        self, community_id: int, message_id: int, sender_id: str, verdict: dict,
    ) -> None:
        self.emit(
            EventType.SPAM_DETECTED, moderators_topic(community_id), community_id,
            messageId=message_id, senderId=sender_id, **verdict,
        )

    # -- membership --------------------------------------------------------
    def member_joined(self, community_id: int, user_id: str, status: str) -> None:
        # Pending join requests are only of interest to whoever can approve them.
        topic = (
            moderators_topic(community_id) if status == "pending"
            else community_topic(community_id)
        )
        self.emit(EventType.MEMBER_JOINED, topic, community_id, userId=user_id, status=status)

    def member_left(self, community_id: int, user_id: str) -> None:
        self.emit(EventType.MEMBER_LEFT, community_topic(community_id), community_id, userId=user_id)

    def member_kicked(self, community_id: int, user_id: str, moderator_id: str, reason: str | None) -> None:
        self._community_and_user(
            EventType.MEMBER_KICKED, community_id, user_id,
            moderatorId=moderator_id, reason=reason,
        )

    def member_banned(
        self, community_id: int, user_id: str, moderator_id: str,
        reason: str | None, expires_at: datetime | None,
    ) -> None:
        self._community_and_user(
            EventType.MEMBER_BANNED, community_id, user_id,
            moderatorId=moderator_id, reason=reason, expiresAt=_iso(expires_at),
        )

    def member_unbanned(self, community_id: int, user_id: str, moderator_id: str | None) -> None:
        self._community_and_user(
            EventType.MEMBER_UNBANNED, community_id, user_id, moderatorId=moderator_id,
        )

    def member_muted(
        self, community_id: int, user_id: str, moderator_id: str | None,
        reason: str | None, until: datetime,
    ) -> None:
        self._community_and_user(
            EventType.MEMBER_MUTED, community_id, user_id,
            moderatorId=moderator_id, reason=reason, mutedUntil=_iso(until),
        )

    def member_unmuted(self, community_id: int, user_id: str, moderator_id: str | None) -> None:
        self._community_and_user(
            EventType.MEMBER_UNMUTED, community_id, user_id, moderatorId=moderator_id,
        )

    def moderator_added(
        self, community_id: int, user_id: str, actor_id: str, permissions: dict[str, bool],
    ) -> None:
        self._community_and_user(
            EventType.MODERATOR_ADDED, community_id, user_id,
            actorId=actor_id, permissions=permissions,
        )

    def moderator_removed(self, community_id: int, user_id: str, actor_id: str) -> None:
        self._community_and_user(
            EventType.MODERATOR_REMOVED, community_id, user_id, actorId=actor_id,
        )

    # -- community ---------------------------------------------------------
    def settings_updated(self, community_id: int, actor_id: str, changes: dict) -> None:
        self.emit(
            EventType.SETTINGS_UPDATED, community_topic(community_id), community_id,
            actorId=actor_id, changes=changes,
        )

    def rules_updated(self, community_id: int, actor_id: str, rules: list) -> None:
        self.emit(
            EventType.RULES_UPDATED, community_topic(community_id), community_id,
            actorId=actor_id, rules=rules,
        )

    def approval_status(
        self, community_id: int, creator_id: str, status: str, reason: str | None = None,
    ) -> None:
        self.emit(
            EventType.COMMUNITY_APPROVAL_STATUS, user_topic(creator_id), community_id,
            status=status, reason=reason,
        )


NULL_PUBLISHER = EventPublisher(NullBroadcaster())
