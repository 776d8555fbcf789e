"""
tests/test_moderation_log.py — Moderation audit trail
======================================================
"""

from __future__ import annotations

from datetime import timedelta

from conftest import T0

from parley.database.engine import get_session
from parley.database.models import ModerationAction, Severity
from parley.services.moderation_log import (
    community_stats,
    describe_action,
    log_action,
    moderator_activity,
    query_log,
)


def _seed(engine):
    rows = [
        (1, "mod-a", "u1", ModerationAction.KICK_MEMBER, Severity.MEDIUM, 0),
        (1, "mod-a", "u2", ModerationAction.KICK_MEMBER, Severity.MEDIUM, 60),
        (1, "mod-b", "u3", ModerationAction.BAN_MEMBER, Severity.HIGH, 120),
        (1, None, "u4", ModerationAction.WARN_MEMBER, Severity.HIGH, 180),
        (2, "mod-a", "u1", ModerationAction.MUTE_MEMBER, Severity.MEDIUM, 240),
    ]
    with get_session(engine) as session:
        for community_id, moderator, target, action, severity, offset in rows:
            log_action(
                session,
                community_id=community_id,
                action=action,
                moderator_id=moderator,
                target_user_id=target,
                severity=severity,
                now=T0 + timedelta(seconds=offset),
            )


class TestQueryLog:
    def test_newest_first_with_total(self, db_engine):
        _seed(db_engine)
        rows, total = query_log(db_engine, community_id=1, limit=2)
        assert total == 4
        assert [r.target_user_id for r in rows] == ["u4", "u3"]

    def test_filters(self, db_engine):
        _seed(db_engine)
        rows, total = query_log(db_engine, moderator_id="mod-a")
        assert total == 3
        rows, total = query_log(db_engine, action="kick_member", target_user_id="u2")
        assert [r.target_user_id for r in rows] == ["u2"]
        rows, total = query_log(db_engine, severity="high")
        assert total == 2
        rows, total = query_log(
            db_engine, start=T0 + timedelta(seconds=30), end=T0 + timedelta(seconds=150),
        )
        assert sorted(r.target_user_id for r in rows) == ["u2", "u3"]

    def test_offset(self, db_engine):
        _seed(db_engine)
        rows, total = query_log(db_engine, community_id=1, limit=2, offset=2)
        assert total == 4
        assert [r.target_user_id for r in rows] == ["u2", "u1"]

    def test_system_entries_have_no_moderator(self, db_engine):
        _seed(db_engine)
        rows, _ = query_log(db_engine, action="warn_member")
        assert rows[0].moderator_id is None


class TestAggregates:
    def test_community_stats(self, db_engine):
        _seed(db_engine)
        stats = community_stats(db_engine, 1, days=30, now=T0 + timedelta(days=1))
        assert stats[0] == {
            "action": "kick_member",
            "description": "Kicked member from community",
            "count": 2,
            "moderators": ["mod-a"],
        }
        by_action = {s["action"]: s for s in stats}
        assert by_action["warn_member"]["moderators"] == []
        assert set(by_action) == {"kick_member", "ban_member", "warn_member"}

    def test_stats_window(self, db_engine):
        _seed(db_engine)
        assert community_stats(db_engine, 1, days=1, now=T0 + timedelta(days=3)) == []

    def test_moderator_activity(self, db_engine):
        _seed(db_engine)
        activity = moderator_activity(db_engine, "mod-a", now=T0 + timedelta(days=1))
        assert [(a["community_id"], a["action"], a["count"]) for a in activity] == [
            (2, "mute_member", 1),
            (1, "kick_member", 2),
        ]
        assert activity[0]["last_action"].tzinfo is not None

    def test_describe_unknown_action(self):
        assert describe_action("dance") == "Unknown action"
        assert describe_action(ModerationAction.PIN_MESSAGE) == "Pinned message"
