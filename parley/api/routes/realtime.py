"""
parley.api.routes.realtime — WebSocket endpoint
=================================================

Connect with a token::

    ws://host/api/ws?token=<jwt>

The connection is automatically subscribed to ``user:{id}``.  Clients
then send::

    {"action": "subscribe",   "topic": "community:12"}
    {"action": "unsubscribe", "topic": "community:12"}
    {"action": "ping"}

and receive ``subscribed`` / ``unsubscribed`` / ``error`` / ``pong``
replies alongside broadcast events.
"""

from __future__ import annotations

import json
import logging
import uuid

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from jwt.exceptions import InvalidTokenError

from parley.api.deps import decode_token, get_hub
from parley.services.realtime import ConnectionHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str | None = Query(None),
    hub: ConnectionHub = Depends(get_hub),
):
    try:
        actor = decode_token(token or "")
    except InvalidTokenError:
        await websocket.close(code=1008, reason="Invalid token")
        return

    connection_id = str(uuid.uuid4())
    await hub.connect(websocket, connection_id, actor)
    try:
        while True:
            try:
                data = json.loads(await websocket.receive_text())
            except ValueError:
                await hub.send_to(connection_id, {
                    "type": "error",
                    "data": {"message": "Frames must be JSON objects"},
                })
                continue
            action = data.get("action") if isinstance(data, dict) else None
            topic = data.get("topic") if isinstance(data, dict) else None

            if action == "subscribe" and topic:
                if await hub.subscribe(connection_id, topic):
                    await hub.send_to(connection_id, {"type": "subscribed", "topic": topic})
                else:
                    await hub.send_to(connection_id, {
                        "type": "error",
                        "topic": topic,
                        "data": {"message": "Not allowed to subscribe to this topic"},
                    })
            elif action == "unsubscribe" and topic:
                await hub.unsubscribe(connection_id, topic)
                await hub.send_to(connection_id, {"type": "unsubscribed", "topic": topic})
            elif action == "ping":
                await hub.send_to(connection_id, {"type": "pong"})
            else:
                await hub.send_to(connection_id, {
                    "type": "error",
                    "data": {"message": f"Unknown action {action!r}"},
                })
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection_id)
