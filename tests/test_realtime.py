"""
tests/test_realtime.py — WebSocket hub and broadcast publisher
===============================================================

The hub is exercised with in-memory fake sockets; the endpoint test at
the bottom goes through Starlette's TestClient.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial

import pytest
from conftest import add_member, make_community, make_token, run
from starlette.websockets import WebSocketDisconnect, WebSocketState

from parley.engine.events import BroadcastEvent, EventType, parse_topic
from parley.engine.permissions import Actor
from parley.services.broadcast import EventPublisher
from parley.services.membership_service import can_subscribe
from parley.services.realtime import ConnectionHub


class FakeWebSocket:
    def __init__(self, *, broken: bool = False):
        self.sent: list[dict] = []
        self.accepted = False
        self.broken = broken
        self.client_state = WebSocketState.CONNECTED

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]


def _event(event_type=EventType.NEW_MESSAGE, topic="community:1", **payload):
    return BroadcastEvent(event_type=event_type, topic=topic, community_id=1, payload=payload)


class TestTopics:
    def test_parse_topic(self):
        assert parse_topic("community:12") == ("community", "12")
        assert parse_topic("community:12:moderators") == ("moderators", "12")
        assert parse_topic("user:abc") == ("user", "abc")
        assert parse_topic("community:abc") is None
        assert parse_topic("community:1:everyone") is None
        assert parse_topic("user:") is None

    def test_wire_format(self):
        message = _event(messageId=5).to_message()
        assert message["type"] == "new-message"
        assert message["topic"] == "community:1"
        assert message["data"]["communityId"] == 1
        assert message["data"]["messageId"] == 5
        assert "timestamp" in message["data"]


class TestConnectionHub:
    def test_connect_subscribes_own_user_topic(self):
        hub = ConnectionHub()
        ws = FakeWebSocket()

        async def scenario():
            await hub.connect(ws, "c1", Actor("alice"))
            return await hub.deliver(_event(topic="user:alice"))

        assert run(scenario()) == 1
        assert ws.accepted
        assert ws.types() == ["connected", "new-message"]
        assert hub.get_stats() == {"total_connections": 1, "unique_users": 1, "topics": 1}

    def test_deliver_only_to_subscribers(self):
        hub = ConnectionHub()
        listening, idle = FakeWebSocket(), FakeWebSocket()

        async def scenario():
            await hub.connect(listening, "c1", Actor("alice"))
            await hub.connect(idle, "c2", Actor("bob"))
            await hub.subscribe("c1", "community:1")
            return await hub.deliver(_event())

        assert run(scenario()) == 1
        assert listening.types() == ["connected", "new-message"]
        assert idle.types() == ["connected"]
        assert hub.online_users(1) == {"alice"}

    def test_authorizer_refuses(self):
        hub = ConnectionHub(authorizer=lambda actor, topic: topic == "community:1")
        ws = FakeWebSocket()

        async def scenario():
            await hub.connect(ws, "c1", Actor("alice"))
            return (
                await hub.subscribe("c1", "community:1"),
                await hub.subscribe("c1", "community:2"),
            )

        assert run(scenario()) == (True, False)

    def test_unsubscribe(self):
        hub = ConnectionHub()
        ws = FakeWebSocket()

        async def scenario():
            await hub.connect(ws, "c1", Actor("alice"))
            await hub.subscribe("c1", "community:1")
            await hub.unsubscribe("c1", "community:1")
            return await hub.deliver(_event())

        assert run(scenario()) == 0

    def test_kick_revokes_community_topics(self):
        hub = ConnectionHub()
        target, bystander = FakeWebSocket(), FakeWebSocket()

        async def scenario():
            await hub.connect(target, "c1", Actor("alice"))
            await hub.connect(bystander, "c2", Actor("bob"))
            for conn in ("c1", "c2"):
                await hub.subscribe(conn, "community:1")
            await hub.subscribe("c1", "community:1:moderators")
            await hub.deliver(_event(EventType.MEMBER_KICKED, userId="alice"))
            return await hub.deliver(_event())

        assert run(scenario()) == 1
        assert target.types() == ["connected", "member-kicked"]
        assert bystander.types() == ["connected", "member-kicked", "new-message"]
        assert hub.online_users(1) == {"bob"}

    def test_leave_revokes_community_topics(self):
        hub = ConnectionHub()
        leaver = FakeWebSocket()

        async def scenario():
            await hub.connect(leaver, "c1", Actor("alice"))
            await hub.subscribe("c1", "community:1")
            await hub.subscribe("c1", "community:1:moderators")
            await hub.deliver(_event(EventType.MEMBER_LEFT, userId="alice"))
            await hub.deliver(_event(topic="community:1:moderators"))
            return await hub.deliver(_event())

        assert run(scenario()) == 0
        assert leaver.types() == ["connected", "member-left"]
        assert hub.online_users(1) == set()

    def test_failed_send_drops_connection(self):
        hub = ConnectionHub()
        broken = FakeWebSocket(broken=True)

        async def scenario():
            await hub.connect(broken, "c1", Actor("alice"))
            return hub.connection_count

        assert run(scenario()) == 0

    def test_closed_socket_is_skipped(self):
        hub = ConnectionHub()
        ws = FakeWebSocket()

        async def scenario():
            await hub.connect(ws, "c1", Actor("alice"))
            ws.client_state = WebSocketState.DISCONNECTED
            return await hub.deliver(_event(topic="user:alice"))

        assert run(scenario()) == 0
        assert hub.connection_count == 0

    def test_publish_without_loop_is_dropped(self):
        ConnectionHub().publish(_event())

    def test_publish_from_worker_thread(self):
        hub = ConnectionHub()
        ws = FakeWebSocket()

        async def scenario():
            hub.bind_loop(asyncio.get_running_loop())
            await hub.connect(ws, "c1", Actor("alice"))
            publisher = EventPublisher(hub)
            await asyncio.to_thread(publisher.member_muted, 1, "alice", None, "spam", _event().timestamp)
            for _ in range(50):
                if len(ws.sent) > 1:
                    break
                await asyncio.sleep(0.01)

        run(scenario())
        assert ws.types() == ["connected", "member-muted"]
        assert ws.sent[1]["topic"] == "user:alice"

    def test_publish_on_loop(self):
        hub = ConnectionHub()
        ws = FakeWebSocket()

        async def scenario():
            hub.bind_loop(asyncio.get_running_loop())
            await hub.connect(ws, "c1", Actor("alice"))
            await hub.subscribe("c1", "community:1")
            EventPublisher(hub).new_message(1, {"id": 7})
            await asyncio.sleep(0.01)

        run(scenario())
        assert ws.sent[-1]["data"]["message"] == {"id": 7}

    def test_delivery_tasks_are_tracked_until_done(self):
        hub = ConnectionHub()
        ws = FakeWebSocket()

        async def scenario():
            hub.bind_loop(asyncio.get_running_loop())
            await hub.connect(ws, "c1", Actor("alice"))
            hub.publish(_event(topic="user:alice"))
            queued = hub.pending_deliveries
            await asyncio.sleep(0.01)
            return queued

        assert run(scenario()) == 1
        assert hub.pending_deliveries == 0
        assert ws.types() == ["connected", "new-message"]

    def test_failed_delivery_is_logged(self, caplog, monkeypatch):
        hub = ConnectionHub()

        async def exploding(event):
            raise RuntimeError("fan-out broke")

        monkeypatch.setattr(hub, "deliver", exploding)

        async def scenario():
            hub.bind_loop(asyncio.get_running_loop())
            hub.publish(_event())
            await asyncio.sleep(0.01)

        with caplog.at_level(logging.ERROR, logger="parley.services.realtime"):
            run(scenario())
        assert "Broadcast delivery failed" in caplog.text
        assert "fan-out broke" in caplog.text
        assert hub.pending_deliveries == 0

    def test_heartbeat(self):
        hub = ConnectionHub()
        ws = FakeWebSocket()

        async def scenario():
            await hub.connect(ws, "c1", Actor("alice"))
            hub.start_heartbeat(0.01)
            await asyncio.sleep(0.05)
            await hub.stop_heartbeat()

        run(scenario())
        assert "heartbeat" in ws.types()


class TestPublisher:
    def test_transport_errors_are_swallowed(self):
        class Exploding:
            def publish(self, event):
                raise RuntimeError("down")

        EventPublisher(Exploding()).member_left(1, "alice")

    def test_kick_goes_to_community_and_user(self, events, recorder):
        events.member_kicked(3, "alice", "mod", "rude")
        assert [e.topic for e in recorder.events] == ["community:3", "user:alice"]
        assert recorder.events[0].payload == {"userId": "alice", "moderatorId": "mod", "reason": "rude"}


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------
class TestWebSocketEndpoint:
    @pytest.fixture
    def ws_client(self, client, db_engine):
        from parley.api.deps import get_hub
        from parley.api.main import app

        hub = ConnectionHub(authorizer=partial(can_subscribe, db_engine))
        app.dependency_overrides[get_hub] = lambda: hub
        return client

    def test_bad_token_closes(self, ws_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with ws_client.websocket_connect("/api/ws?token=nope"):
                pass
        assert exc_info.value.code == 1008

    def test_subscribe_flow(self, ws_client, db_engine):
        community = make_community(db_engine)
        add_member(db_engine, community.id, "alice")

        with ws_client.websocket_connect(f"/api/ws?token={make_token('alice')}") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"
            assert hello["data"]["userId"] == "alice"

            ws.send_json({"action": "ping"})
            assert ws.receive_json() == {"type": "pong"}

            ws.send_json({"action": "subscribe", "topic": f"community:{community.id}"})
            assert ws.receive_json()["type"] == "subscribed"

            ws.send_json({"action": "subscribe", "topic": f"community:{community.id}:moderators"})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"action": "dance"})
            assert ws.receive_json()["type"] == "error"

    def test_non_json_frame_keeps_connection(self, ws_client):
        with ws_client.websocket_connect(f"/api/ws?token={make_token('alice')}") as ws:
            assert ws.receive_json()["type"] == "connected"

            ws.send_text("not json")
            reply = ws.receive_json()
            assert reply["type"] == "error"
            assert reply["data"]["message"] == "Frames must be JSON objects"

            ws.send_json({"action": "ping"})
            assert ws.receive_json() == {"type": "pong"}
