"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Integration tests for the public REST surface using the FastAPI
TestClient against the in-memory engine.

These tests verify:
- Auth guards (missing/invalid tokens, admin-only endpoints)
- The ``{"detail": {"error": ...}}`` envelope for domain errors
- The create → approve → join → send → list flow end to end
- Health endpoints
"""

from __future__ import annotations

import pytest
from conftest import add_member, add_moderator, auth, make_community, make_token

from parley.engine.permissions import Capability

# ===========================================================================
# Health endpoints
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_realtime_health(self, client):
        from parley.api.deps import get_hub
        from parley.api.main import app
        from parley.services.realtime import ConnectionHub

        app.dependency_overrides[get_hub] = lambda: ConnectionHub()
        resp = client.get("/api/health/realtime")
        assert resp.status_code == 200
        assert resp.json() == {"total_connections": 0, "unique_users": 0, "topics": 0}


# ===========================================================================
# Auth guards
# ===========================================================================
class TestAuthGuards:
    AUTHED_ENDPOINTS = [
        ("post", "/api/communities"),
        ("get", "/api/communities/mine"),
        ("post", "/api/communities/1/join"),
        ("get", "/api/communities/1/messages"),
        ("get", "/api/moderation/log"),
    ]

    @pytest.mark.parametrize("method,endpoint", AUTHED_ENDPOINTS)
    def test_no_token_returns_401(self, client, method, endpoint):
        resp = getattr(client, method)(endpoint)
        assert resp.status_code == 401

    @pytest.mark.parametrize("method,endpoint", AUTHED_ENDPOINTS)
    def test_invalid_token_returns_401(self, client, method, endpoint):
        resp = getattr(client, method)(endpoint, headers=auth("garbage.token.here"))
        assert resp.status_code == 401

    def test_global_log_requires_admin(self, client):
        resp = client.get("/api/moderation/log", headers=auth(make_token("42")))
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Not admin"

    def test_global_log_allows_admin(self, client, admin_token):
        resp = client.get("/api/moderation/log", headers=auth(admin_token))
        assert resp.status_code == 200
        assert resp.json() == {"entries": [], "total": 0}

    def test_community_log_requires_moderator(self, client, db_engine):
        community = make_community(db_engine)
        add_member(db_engine, community.id, "alice")
        resp = client.get(
            f"/api/communities/{community.id}/moderation/log",
            headers=auth(make_token("alice")),
        )
        assert resp.status_code == 403
        assert resp.json()["detail"]["error"] == "permission_denied"


# ===========================================================================
# Error envelope
# ===========================================================================
class TestErrorEnvelope:
    def test_unknown_community(self, client):
        resp = client.get("/api/communities/999")
        assert resp.status_code == 404
        assert resp.json()["detail"]["error"] == "not_found"
        assert "message" in resp.json()["detail"]

    def test_validation_error(self, client):
        resp = client.post(
            "/api/communities", json={"name": "ab"}, headers=auth(make_token("42")),
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "validation_error"

    def test_non_admin_cannot_approve(self, client):
        token = make_token("42")
        created = client.post("/api/communities", json={"name": "Chess Club"}, headers=auth(token))
        resp = client.post(f"/api/communities/{created.json()['id']}/approve", headers=auth(token))
        assert resp.status_code == 403
        assert resp.json()["detail"]["error"] == "permission_denied"

    def test_join_pending_community_not_found(self, client):
        created = client.post(
            "/api/communities", json={"name": "Chess Club"}, headers=auth(make_token("42")),
        )
        resp = client.post(
            f"/api/communities/{created.json()['id']}/join", headers=auth(make_token("7")),
        )
        assert resp.status_code == 404

    def test_message_rate_limit_sets_retry_after(self, client, db_engine):
        community = make_community(db_engine)
        add_member(db_engine, community.id, "alice")
        headers = auth(make_token("alice"))
        url = f"/api/communities/{community.id}/messages"

        assert client.post(url, json={"content": "hello"}, headers=headers).status_code == 201
        resp = client.post(url, json={"content": "again"}, headers=headers)

        assert resp.status_code == 429
        body = resp.json()["detail"]
        assert body["error"] == "rate_limited"
        assert resp.headers["Retry-After"] == str(body["retryAfterSeconds"])
        assert 1 <= body["retryAfterSeconds"] <= 5


# ===========================================================================
# End-to-end flow
# ===========================================================================
class TestCommunityFlow:
    def test_create_approve_join_send_list(self, client, admin_token, recorder):
        creator = auth(make_token("creator"))
        alice = auth(make_token("alice"))

        resp = client.post(
            "/api/communities",
            json={
                "name": "Chess Club",
                "category": "social",
                "tags": ["Chess", "chess", "openings"],
                "rules": [{"title": "No engines"}],
            },
            headers=creator,
        )
        assert resp.status_code == 201
        community = resp.json()
        assert community["status"] == "pending"
        assert community["slug"] == "chess-club"
        assert community["tags"] == ["chess", "openings"]
        assert community["member_count"] == 1

        resp = client.post(f"/api/communities/{community['id']}/approve", headers=auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["status"] == "approved"

        resp = client.post(f"/api/communities/{community['id']}/join", headers=alice)
        assert resp.status_code == 201
        assert resp.json()["status"] == "active"
        assert resp.json()["role"] == "member"

        resp = client.post(
            f"/api/communities/{community['id']}/messages",
            json={"content": "Anyone up for a game?"},
            headers=alice,
        )
        assert resp.status_code == 201
        message = resp.json()
        assert message["senderId"] == "alice"
        assert message["flaggedAsSpam"] is False

        resp = client.get(f"/api/communities/{community['id']}/messages", headers=creator)
        assert resp.status_code == 200
        page = resp.json()
        assert [m["id"] for m in page["messages"]] == [message["id"]]
        assert page["pagination"]["has_more"] is False

        mine = client.get("/api/communities/mine", headers=alice).json()["communities"]
        assert [c["id"] for c in mine] == [community["id"]]

        assert "new-message" in recorder.types(f"community:{community['id']}")

    def test_moderation_endpoints(self, client, db_engine, admin_token):
        community = make_community(db_engine)
        add_member(db_engine, community.id, "alice")
        creator = auth(make_token("creator"))
        base = f"/api/communities/{community.id}"

        resp = client.post(f"{base}/members/alice/mute", json={"reason": "cool off"}, headers=creator)
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"
        assert resp.json()["mute_until"] is not None

        resp = client.post(f"{base}/members/alice/kick", json={"reason": "rude"}, headers=creator)
        assert resp.status_code == 200
        assert resp.json()["status"] == "kicked"

        resp = client.get(f"{base}/moderation/log", headers=creator)
        assert resp.status_code == 200
        actions = [e["action"] for e in resp.json()["entries"]]
        assert actions[:2] == ["kick_member", "mute_member"]

        resp = client.get(
            "/api/moderation/log", params={"action": "kick_member"}, headers=auth(admin_token),
        )
        assert resp.json()["total"] == 1
        assert resp.json()["entries"][0]["target_user_id"] == "alice"

        resp = client.get("/api/moderation/moderators/creator/activity", headers=creator)
        assert resp.status_code == 200
        assert {a["action"] for a in resp.json()["activity"]} >= {"kick_member", "mute_member"}

    def test_member_cannot_kick(self, client, db_engine):
        community = make_community(db_engine)
        add_member(db_engine, community.id, "alice")
        add_member(db_engine, community.id, "bob")
        resp = client.post(
            f"/api/communities/{community.id}/members/bob/kick",
            json={},
            headers=auth(make_token("alice")),
        )
        assert resp.status_code == 403


# ===========================================================================
# Community payloads
# ===========================================================================
class TestCommunityPayload:
    def test_detail_lists_moderators(self, client, db_engine):
        community = make_community(db_engine)
        add_moderator(db_engine, community, "mod")
        add_moderator(db_engine, community, "pinner", permissions=Capability.PIN)
        add_member(db_engine, community.id, "alice")

        resp = client.get(f"/api/communities/{community.id}")
        assert resp.status_code == 200
        moderators = resp.json()["moderators"]
        assert [m["user"] for m in moderators] == ["mod", "pinner"]
        assert all(moderators[0]["permissions"].values())
        assert moderators[1]["permissions"] == {
            "can_kick": False,
            "can_ban": False,
            "can_delete_messages": False,
            "can_manage_rules": False,
            "can_invite": False,
            "can_pin": True,
        }

    def test_listing_includes_moderators(self, client, db_engine):
        with_mod = make_community(db_engine, name="Moderated Hall")
        make_community(db_engine, name="Quiet Corner")
        add_moderator(db_engine, with_mod, "mod")

        rows = client.get("/api/communities").json()["communities"]
        by_name = {c["name"]: c["moderators"] for c in rows}
        assert [m["user"] for m in by_name["Moderated Hall"]] == ["mod"]
        assert by_name["Quiet Corner"] == []
