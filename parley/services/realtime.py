"""
parley.services.realtime — WebSocket fan-out (ConnectionHub)
==============================================================

:class:`ConnectionHub` is the production :class:`~parley.services.broadcast.Broadcaster`.
Service functions run on worker threads, so :meth:`ConnectionHub.publish`
never awaits anything: it schedules :meth:`ConnectionHub.deliver` on the
hub's event loop and returns immediately.

    worker thread ──publish()──► run_coroutine_threadsafe ──► deliver() on loop
    event loop    ──publish()──► loop.create_task          ──► deliver() on loop

Delivery is at-most-once.  A connection whose send fails is dropped.

Subscriptions are checked by an *authorizer* ``(actor, topic) -> bool``
(normally :func:`parley.services.membership_service.can_subscribe`, run
on a worker thread).  Every connection is subscribed to its own
``user:{id}`` topic on connect.  Members who leave, are kicked or are
banned lose their community subscriptions as soon as the event
announcing it goes out.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from starlette.websockets import WebSocket, WebSocketState

from parley.constants import utcnow
from parley.database.engine import run_db
from parley.engine.events import (
    BroadcastEvent,
    EventType,
    community_topic,
    moderators_topic,
    user_topic,
)
from parley.engine.permissions import Actor

logger = logging.getLogger(__name__)

Authorizer = Callable[[Actor, str], bool]

# Event → topics the *target* user is removed from once it is delivered.
_REVOKING_EVENTS: dict[EventType, tuple[Callable[[int], str], ...]] = {
    EventType.MEMBER_KICKED: (community_topic, moderators_topic),
    EventType.MEMBER_LEFT: (community_topic, moderators_topic),
    EventType.MEMBER_BANNED: (community_topic, moderators_topic),
    EventType.MODERATOR_REMOVED: (moderators_topic,),
}


@dataclass
class Connection:
    """One accepted WebSocket and the topics it listens to."""

    websocket: WebSocket
    actor: Actor
    connected_at: datetime = field(default_factory=utcnow)
    subscriptions: set[str] = field(default_factory=set)


class ConnectionHub:
    """Tracks WebSocket connections and fans :class:`BroadcastEvent` out to them."""

    def __init__(self, authorizer: Authorizer | None = None) -> None:
        self._connections: dict[str, Connection] = {}
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._authorizer = authorizer
        self._heartbeat_task: asyncio.Task | None = None
        # Strong references to in-flight deliveries (tasks or thread-safe futures).
        self._tasks: set[asyncio.Future | concurrent.futures.Future] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the event loop that owns every connection."""
        self._loop = loop

    # -----------------------------------------------------------------------
    # Broadcaster port
    # -----------------------------------------------------------------------
    def publish(self, event: BroadcastEvent) -> None:
        """Schedule delivery of *event*; safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Hub has no running loop; dropping %s", event.event_type)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            pending = loop.create_task(self.deliver(event))
        else:
            pending = asyncio.run_coroutine_threadsafe(self.deliver(event), loop)
        self._tasks.add(pending)
        pending.add_done_callback(self._tasks.discard)
        pending.add_done_callback(self._log_delivery_failure)

    @staticmethod
    def _log_delivery_failure(future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Broadcast delivery failed", exc_info=exc)

    async def deliver(self, event: BroadcastEvent) -> int:
        """Send *event* to every connection subscribed to its topic.

        Returns the number of connections that received it.
        """
        message = event.to_message()
        async with self._lock:
            targets = [
                (conn_id, conn) for conn_id, conn in self._connections.items()
                if event.topic in conn.subscriptions
            ]

        sent = 0
        for conn_id, conn in targets:
            if await self._send(conn_id, conn, message):
                sent += 1

        revoke = _REVOKING_EVENTS.get(event.event_type)
        user_id = event.payload.get("userId")
        if revoke and user_id and event.topic == community_topic(event.community_id):
            await self._revoke(user_id, [make(event.community_id) for make in revoke])
        return sent

    # -----------------------------------------------------------------------
    # Connections
    # -----------------------------------------------------------------------
    async def connect(self, websocket: WebSocket, connection_id: str, actor: Actor) -> None:
        await websocket.accept()
        connection = Connection(websocket=websocket, actor=actor)
        connection.subscriptions.add(user_topic(actor.user_id))
        async with self._lock:
            self._connections[connection_id] = connection
            total = len(self._connections)
        logger.info("WebSocket %s connected for %s (%d open)", connection_id[:8], actor.user_id, total)
        await self._send(connection_id, connection, {
            "type": "connected",
            "data": {"connectionId": connection_id, "userId": actor.user_id},
        })

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            total = len(self._connections)
        if connection is not None:
            logger.info(
                "WebSocket %s disconnected for %s (%d open)",
                connection_id[:8], connection.actor.user_id, total,
            )

    async def subscribe(self, connection_id: str, topic: str) -> bool:
        """Add *topic* to a connection if the authorizer allows it."""
        async with self._lock:
            connection = self._connections.get(connection_id)
        if connection is None:
            return False
        if self._authorizer is not None:
            allowed = await run_db(self._authorizer, connection.actor, topic)
            if not allowed:
                logger.debug("Subscription to %s refused for %s", topic, connection.actor.user_id)
                return False
        async with self._lock:
            connection.subscriptions.add(topic)
        return True

    async def unsubscribe(self, connection_id: str, topic: str) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            connection.subscriptions.discard(topic)
        return True

    async def send_to(self, connection_id: str, message: dict[str, Any]) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return await self._send(connection_id, connection, message)

    async def _send(self, connection_id: str, connection: Connection, message: dict[str, Any]) -> bool:
        try:
            if connection.websocket.client_state == WebSocketState.CONNECTED:
                await connection.websocket.send_json(message)
                return True
        except Exception:
            logger.debug("WebSocket send to %s failed", connection_id[:8], exc_info=True)
        await self.disconnect(connection_id)
        return False

    async def _revoke(self, user_id: str, topics: list[str]) -> None:
        async with self._lock:
            for connection in self._connections.values():
                if connection.actor.user_id == user_id:
                    connection.subscriptions.difference_update(topics)

    # -----------------------------------------------------------------------
    # Heartbeat
    # -----------------------------------------------------------------------
    def start_heartbeat(self, interval: float) -> None:
        if interval > 0 and (self._heartbeat_task is None or self._heartbeat_task.done()):
            self._heartbeat_task = asyncio.get_running_loop().create_task(
                self._heartbeat_loop(interval)
            )

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _heartbeat_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            async with self._lock:
                targets = list(self._connections.items())
            for conn_id, conn in targets:
                await self._send(conn_id, conn, {
                    "type": "heartbeat",
                    "data": {"connections": len(targets)},
                })

    # -----------------------------------------------------------------------
    # Stats
    # -----------------------------------------------------------------------
    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def pending_deliveries(self) -> int:
        return len(self._tasks)

    def online_users(self, community_id: int) -> set[str]:
        """User ids currently listening to a community."""
        topic = community_topic(community_id)
        return {
            conn.actor.user_id for conn in self._connections.values()
            if topic in conn.subscriptions
        }

    def get_stats(self) -> dict[str, int]:
        return {
            "total_connections": len(self._connections),
            "unique_users": len({c.actor.user_id for c in self._connections.values()}),
            "topics": len({t for c in self._connections.values() for t in c.subscriptions}),
        }
