"""
parley.errors — Domain Exception Taxonomy
==========================================

Services raise these; they never raise ``HTTPException`` directly so they
stay usable from the WebSocket hub, background jobs and tests.  The API
layer installs one exception handler (see :mod:`parley.api.main`) that
renders every :class:`ParleyError` as::

    {"detail": {"error": "<code>", "message": "...", ...extra}}

with the status code carried by the exception class.  ``RateLimited``
additionally sets a ``Retry-After`` header.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any


class ParleyError(Exception):
    """Base class for every error surfaced to API callers."""

    code = "error"
    status_code = 400

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_detail(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.extra}


class NotFound(ParleyError):
    """Community, message or membership absent."""

    code = "not_found"
    status_code = 404


class PermissionDenied(ParleyError):
    """Actor's role or capabilities are insufficient."""

    code = "permission_denied"
    status_code = 403


class InvalidStateTransition(ParleyError):
    """Requested lifecycle transition is not allowed from the current state."""

    code = "invalid_state_transition"
    status_code = 409


class InvalidMemberState(InvalidStateTransition):
    """Membership state machine rejected the transition."""

    code = "invalid_member_state"


class NotAMember(ParleyError):
    code = "not_a_member"
    status_code = 403


class Muted(ParleyError):
    code = "muted"
    status_code = 403

    def __init__(self, message: str, *, until: datetime | None = None) -> None:
        super().__init__(message, mutedUntil=until.isoformat() if until else None)
        self.until = until


class Banned(ParleyError):
    code = "banned"
    status_code = 403

    def __init__(self, message: str, *, until: datetime | None = None) -> None:
        super().__init__(message, bannedUntil=until.isoformat() if until else None)
        self.until = until


class RateLimited(ParleyError):
    """Sender must wait ``retry_after_seconds`` before the next message."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after_seconds: float) -> None:
        seconds = max(1, math.ceil(retry_after_seconds))
        super().__init__(
            f"Please wait {seconds} seconds before sending another message",
            retryAfterSeconds=seconds,
        )
        self.retry_after_seconds = seconds


class ValidationError(ParleyError):
    """Input failed business validation; nothing was persisted."""

    code = "validation_error"
    status_code = 422


class CommunityFull(ParleyError):
    code = "community_full"
    status_code = 409
