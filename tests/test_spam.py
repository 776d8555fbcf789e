"""
tests/test_spam.py — Anti-spam scorer
======================================

Pure-function tests for :func:`parley.engine.spam.score_message`.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from parley.database.models import Severity
from parley.engine.spam import (
    HistoryEntry,
    SpamVerdict,
    auto_mute_minutes,
    caps_ratio,
    count_links,
    score_message,
    severity_for,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _history(content: str, *ages_seconds: int) -> list[HistoryEntry]:
    return [HistoryEntry(content=content, created_at=NOW - timedelta(seconds=a)) for a in ages_seconds]


class TestSignals:
    def test_plain_message_scores_zero(self):
        verdict = score_message("hello everyone, see you tonight", [], NOW)
        assert verdict.score == 0
        assert verdict.is_spam is False
        assert verdict.severity == Severity.LOW
        assert verdict.reasons == ()

    def test_duplicates_need_three_in_window(self):
        two = score_message("same thing", _history("same thing", 0, 30), NOW)
        three = score_message("same thing", _history("same thing", 0, 30, 60), NOW)
        assert two.score == 0
        assert three.score == 30
        assert "Duplicate message detected" in three.reasons

    def test_duplicates_outside_window_ignored(self):
        history = _history("same thing", 0, 11 * 60, 12 * 60)
        assert score_message("same thing", history, NOW).score == 0

    def test_duplicate_compare_ignores_surrounding_whitespace(self):
        history = _history("  same thing ", 0, 5, 10)
        assert score_message("same thing", history, NOW).score == 30

    def test_rapid_fire(self):
        history = [
            HistoryEntry(content=f"message {i}", created_at=NOW - timedelta(seconds=i * 5))
            for i in range(10)
        ]
        verdict = score_message("message 0", history, NOW)
        assert verdict.score == 25
        assert "Rapid messaging detected" in verdict.reasons

    def test_caps(self):
        assert score_message("THIS IS VERY LOUD", [], NOW).score == 15
        assert caps_ratio("12345 !!") == 0.0

    def test_links(self):
        text = "a.io b.io c.io d.io e.io"
        assert count_links(text) == 5
        assert score_message(text, [], NOW).score == 20
        assert score_message("a.io b.io c.io d.io", [], NOW).score == 0

    def test_mentions(self):
        text = " ".join(f"@user{i}" for i in range(10))
        assert score_message(text, [], NOW).score == 15

    def test_emoji(self):
        assert score_message("😀😀😀", [], NOW).score == 10

    def test_repeated_characters(self):
        assert score_message("n" + "o" * 12, [], NOW).score == 10
        assert score_message("n" + "o" * 9, [], NOW).score == 0

    def test_suspicious_needs_two_patterns(self):
        assert score_message("we won a prize", [], NOW).score == 0
        verdict = score_message("free bitcoin for everyone", [], NOW)
        assert verdict.score == 20
        assert "Suspicious patterns detected" in verdict.reasons


class TestVerdict:
    def test_high_severity_spam(self):
        text = "free bitcoin at a.io b.io c.io d.io e.io"
        verdict = score_message(text, _history(text, 0, 20, 40), NOW)
        assert verdict.score == 70
        assert verdict.is_spam is True
        assert verdict.severity == Severity.HIGH
        assert auto_mute_minutes(verdict) == 30

    def test_critical_spam(self):
        text = "FREE BITCOIN CLICK HERE A.IO B.IO C.IO D.IO E.IO"
        verdict = score_message(text, _history(text, 0, 20, 40), NOW)
        assert verdict.score == 85
        assert verdict.severity == Severity.CRITICAL
        assert auto_mute_minutes(verdict) == 60

    def test_score_capped_at_100(self):
        text = "FREE BITCOIN CLICK HERE A.IO B.IO C.IO D.IO E.IO"
        history = _history(text, *range(0, 50, 5))
        verdict = score_message(text, history, NOW)
        assert verdict.score == 100
        assert len(verdict.reasons) == 5

    def test_below_threshold_is_not_spam(self):
        verdict = score_message("THIS IS LOUD", _history("THIS IS LOUD", 0, 1, 2), NOW)
        assert verdict.score == 45
        assert verdict.is_spam is False
        assert auto_mute_minutes(verdict) is None

    def test_naive_history_timestamps_treated_as_utc(self):
        naive = NOW.replace(tzinfo=None)
        history = [HistoryEntry(content="same", created_at=naive) for _ in range(3)]
        assert score_message("same", history, NOW).score == 30

    def test_to_dict(self):
        verdict = SpamVerdict(score=72, is_spam=True, severity=Severity.HIGH, reasons=("x",))
        assert verdict.to_dict() == {
            "spamScore": 72,
            "isSpam": True,
            "severity": "high",
            "reasons": ["x"],
        }


class TestSeverityBuckets:
    @pytest.mark.parametrize("score,expected", [
        (0, Severity.LOW),
        (39, Severity.LOW),
        (40, Severity.MEDIUM),
        (59, Severity.MEDIUM),
        (60, Severity.HIGH),
        (79, Severity.HIGH),
        (80, Severity.CRITICAL),
        (100, Severity.CRITICAL),
    ])
    def test_bucket(self, score, expected):
        assert severity_for(score) == expected
