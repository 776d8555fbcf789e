"""
tests/test_rate_limit.py — Mutation Rate Limiting Tests
=========================================================
Moderation and administrative write endpoints are throttled per user
with a DB-backed sliding window, returning 429 with a consistent error
payload and a ``Retry-After`` header.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import T0, auth, make_community, make_token
from sqlalchemy.orm import Session

from parley.api.rate_limit import MutationRateLimiter
from parley.database.models import MutationRateEvent


# ---------------------------------------------------------------------------
# Unit tests for the MutationRateLimiter core (DB-backed)
# ---------------------------------------------------------------------------
class TestMutationRateLimiter:
    """Test the sliding-window rate limiter in isolation (DB-backed)."""

    @pytest.fixture(autouse=True)
    def _limiter(self, db_engine):
        """Create a fresh DB-backed limiter for each test."""
        self.limiter = MutationRateLimiter(max_requests=5, window_seconds=60, engine=db_engine)
        self.engine = db_engine

    def _count(self) -> int:
        with Session(self.engine) as s:
            return s.query(MutationRateEvent).count()

    def test_allows_requests_within_limit(self):
        for _ in range(5):
            allowed, _ = self.limiter.check("user1")
            assert allowed
            self.limiter.record("user1")

    def test_blocks_after_limit_exceeded(self):
        limiter = MutationRateLimiter(max_requests=3, window_seconds=60, engine=self.engine)
        for _ in range(3):
            limiter.record("user1")

        allowed, info = limiter.check("user1")
        assert not allowed
        assert info["remaining"] == 0
        assert info["reset"] > 0

    def test_separate_users_have_separate_limits(self):
        limiter = MutationRateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("user1")
        limiter.record("user1")

        allowed1, _ = limiter.check("user1")
        assert not allowed1

        allowed2, _ = limiter.check("user2")
        assert allowed2

    def test_remaining_count_decreases(self):
        _, info = self.limiter.check("user1")
        assert info["remaining"] == 5

        self.limiter.record("user1")
        _, info = self.limiter.check("user1")
        assert info["remaining"] == 4

    def test_window_expiry_prunes_old_events(self):
        limiter = MutationRateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("user1", now=T0)
        limiter.record("user1", now=T0 + timedelta(seconds=10))

        allowed, info = limiter.check("user1", now=T0 + timedelta(seconds=30))
        assert not allowed
        assert info["reset"] == 31

        allowed, info = limiter.check("user1", now=T0 + timedelta(seconds=65))
        assert allowed
        assert info["remaining"] == 1
        assert self._count() == 1

    def test_reset_clears_specific_user(self):
        limiter = MutationRateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("user1")
        limiter.record("user1")
        limiter.record("user2")

        limiter.reset("user1")

        allowed1, _ = limiter.check("user1")
        assert allowed1

        _, info2 = limiter.check("user2")
        assert info2["remaining"] == 1

    def test_reset_all(self):
        self.limiter.record("user1")
        self.limiter.record("user2")
        self.limiter.reset()
        assert self._count() == 0


# ---------------------------------------------------------------------------
# Integration tests with FastAPI TestClient
# ---------------------------------------------------------------------------
class TestRateLimitDependency:
    """Test the rate limiter dependency end-to-end via TestClient."""

    @pytest.fixture
    def limited(self, client, db_engine):
        """Swap in a low-limit limiter behind the shared client."""
        import parley.api.rate_limit as rl_mod

        original = rl_mod._limiter
        rl_mod._limiter = MutationRateLimiter(max_requests=3, window_seconds=60, engine=db_engine)
        yield client, rl_mod._limiter
        rl_mod._limiter = original

    def test_get_requests_not_rate_limited(self, limited, db_engine):
        test_client, limiter = limited
        community = make_community(db_engine)
        for _ in range(3):
            limiter.record("reader")

        for _ in range(5):
            resp = test_client.get(
                f"/api/communities/{community.id}", headers=auth(make_token("reader")),
            )
            assert resp.status_code == 200

    def test_returns_429_after_limit(self, limited, db_engine):
        test_client, limiter = limited
        for _ in range(3):
            limiter.record("busy")

        resp = test_client.post(
            "/api/communities",
            headers=auth(make_token("busy")),
            json={"name": "Late Night Coders"},
        )
        assert resp.status_code == 429
        body = resp.json()
        assert body["detail"]["error"] == "rate_limit_exceeded"
        assert body["detail"]["retryAfterSeconds"] > 0
        assert "Retry-After" in resp.headers

    def test_successful_mutations_are_recorded(self, limited):
        test_client, limiter = limited
        resp = test_client.post(
            "/api/communities",
            headers=auth(make_token("builder")),
            json={"name": "Weekend Hikers"},
        )
        assert resp.status_code == 201
        _, info = limiter.check("builder")
        assert info["remaining"] == 2

    def test_different_users_have_separate_limits(self, limited):
        test_client, limiter = limited
        for _ in range(3):
            limiter.record("first")

        blocked = test_client.post(
            "/api/communities", headers=auth(make_token("first")), json={"name": "Chess Club"},
        )
        allowed = test_client.post(
            "/api/communities", headers=auth(make_token("second")), json={"name": "Chess Club"},
        )
        assert blocked.status_code == 429
        assert allowed.status_code == 201
