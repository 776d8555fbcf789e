"""
parley.engine.spam — Anti-spam scoring
=======================================

Deterministic heuristic scorer for community messages.  Each signal adds
a fixed weight; the total is capped at 100.

| Signal | Threshold | Weight |
|---|---|---|
| Duplicate content | ≥3 identical messages in 10 min | 30 |
| Rapid messaging | ≥10 messages in 60 s | 25 |
| Uppercase | ≥70 % of letters | 15 |
| Links | ≥5 | 20 |
| Mentions | ≥10 | 15 |
| Emoji | ≥50 % of characters | 10 |
| Repeated characters | a run of ≥10 | 10 |
| Suspicious phrasing | ≥2 patterns | 20 |

A message is spam at a score of 70 or more.  Severity buckets: ≥80
critical, ≥60 high, ≥40 medium, otherwise low.

Pure — the caller supplies the sender's recent history (including the
message being scored) and the reference time.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from parley.constants import as_utc
from parley.database.models import Severity

__all__ = [
    "HistoryEntry",
    "SpamVerdict",
    "score_message",
    "severity_for",
    "auto_mute_minutes",
    "DUPLICATE_WINDOW",
    "RAPID_WINDOW",
]

# ---------------------------------------------------------------------------
# Thresholds and weights
# ---------------------------------------------------------------------------
DUPLICATE_WINDOW = timedelta(minutes=10)
RAPID_WINDOW = timedelta(seconds=60)

_DUPLICATE_THRESHOLD = 3
_RAPID_THRESHOLD = 10
_CAPS_RATIO = 0.7
_LINK_THRESHOLD = 5
_MENTION_THRESHOLD = 10
_EMOJI_RATIO = 0.5
_SUSPICIOUS_THRESHOLD = 2

_DUPLICATE_WEIGHT = 30
_RAPID_WEIGHT = 25
_CAPS_WEIGHT = 15
_LINK_WEIGHT = 20
_MENTION_WEIGHT = 15
_EMOJI_WEIGHT = 10
_REPEATED_WEIGHT = 10
_SUSPICIOUS_WEIGHT = 20

SPAM_THRESHOLD = 70
MAX_SCORE = 100

_AUTO_MUTE_MINUTES: dict[Severity, int] = {
    Severity.CRITICAL: 60,
    Severity.HIGH: 30,
}

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------
_LINK_RE = re.compile(r"(https?://\S+|www\.\S+|\b[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b)")
_MENTION_RE = re.compile(r"@\w+")
_EMOJI_RE = re.compile(
    "["
    "\U0001F600-\U0001F64F"
    "\U0001F300-\U0001F5FF"
    "\U0001F680-\U0001F6FF"
    "\U0001F1E0-\U0001F1FF"
    "\u2600-\u26FF"
    "\u2700-\u27BF"
    "]"
)
_REPEATED_RE = re.compile(r"(.)\1{9,}")
_SUSPICIOUS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:click|visit|check)\s+(?:here|this|link)", re.IGNORECASE),
    re.compile(r"(?:free|win|prize|money|cash|earn)", re.IGNORECASE),
    re.compile(r"(?:urgent|limited|offer|deal|discount)", re.IGNORECASE),
    re.compile(r"(?:bitcoin|crypto|investment|trading)", re.IGNORECASE),
    re.compile(r"(?:viagra|casino|gambling|lottery)", re.IGNORECASE),
)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """One of the sender's recent (non-deleted) messages in the community."""

    content: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class SpamVerdict:
    score: int
    is_spam: bool
    severity: Severity
    reasons: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "spamScore": self.score,
            "isSpam": self.is_spam,
            "severity": str(self.severity),
            "reasons": list(self.reasons),
        }


# ---------------------------------------------------------------------------
# Individual signals
# ---------------------------------------------------------------------------
def caps_ratio(text: str) -> float:
    letters = [c for c in text if c.isascii() and c.isalpha()]
    if not letters:
        return 0.0
    upper = sum(1 for c in letters if c.isupper())
    return upper / len(letters)


def count_links(text: str) -> int:
    return len(_LINK_RE.findall(text))


def count_mentions(text: str) -> int:
    return len(_MENTION_RE.findall(text))


def emoji_ratio(text: str) -> float:
    if not text:
        return 0.0
    return len(_EMOJI_RE.findall(text)) / len(text)


def has_repeated_run(text: str) -> bool:
    return _REPEATED_RE.search(text) is not None


def count_suspicious(text: str) -> int:
    return sum(1 for pattern in _SUSPICIOUS_PATTERNS if pattern.search(text))


def severity_for(score: int) -> Severity:
    if score >= 80:
        return Severity.CRITICAL
    if score >= 60:
        return Severity.HIGH
    if score >= 40:
        return Severity.MEDIUM
    return Severity.LOW


def auto_mute_minutes(verdict: SpamVerdict) -> int | None:
    """Mute length applied automatically to a spam sender, if any."""
    if not verdict.is_spam:
        return None
    return _AUTO_MUTE_MINUTES.get(verdict.severity)


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------
def score_message(
    content: str,
    history: Iterable[HistoryEntry],
    now: datetime,
) -> SpamVerdict:
    """Score *content* against the sender's recent *history*.

    Parameters
    ----------
    content:
        The message text being scored.
    history:
        The sender's recent non-deleted messages in the same community,
        **including** the message being scored.
    now:
        Reference time for the duplicate and rapid-fire windows.

    Returns
    -------
    SpamVerdict
        Capped score, spam flag, severity bucket and human-readable reasons.
    """
    now = as_utc(now)
    text = content.strip()
    score = 0
    reasons: list[str] = []

    duplicate_cutoff = now - DUPLICATE_WINDOW
    rapid_cutoff = now - RAPID_WINDOW
    duplicates = 0
    recent = 0
    for entry in history:
        sent_at = as_utc(entry.created_at)
        if sent_at >= duplicate_cutoff and entry.content.strip() == text:
            duplicates += 1
        if sent_at >= rapid_cutoff:
            recent += 1

    if duplicates >= _DUPLICATE_THRESHOLD:
        score += _DUPLICATE_WEIGHT
        reasons.append("Duplicate message detected")

    if recent >= _RAPID_THRESHOLD:
        score += _RAPID_WEIGHT
        reasons.append("Rapid messaging detected")

    if caps_ratio(text) >= _CAPS_RATIO:
        score += _CAPS_WEIGHT
        reasons.append("Excessive capital letters")

    if count_links(text) >= _LINK_THRESHOLD:
        score += _LINK_WEIGHT
        reasons.append("Excessive links")

    if count_mentions(text) >= _MENTION_THRESHOLD:
        score += _MENTION_WEIGHT
        reasons.append("Excessive mentions")

    if emoji_ratio(text) >= _EMOJI_RATIO:
        score += _EMOJI_WEIGHT
        reasons.append("Excessive emojis")

    if has_repeated_run(text):
        score += _REPEATED_WEIGHT
        reasons.append("Repeated characters")

    if count_suspicious(text) >= _SUSPICIOUS_THRESHOLD:
        score += _SUSPICIOUS_WEIGHT
        reasons.append("Suspicious patterns detected")

    capped = min(score, MAX_SCORE)
    return SpamVerdict(
        score=capped,
        is_spam=capped >= SPAM_THRESHOLD,
        severity=severity_for(capped),
        reasons=tuple(reasons),
    )
