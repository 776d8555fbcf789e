"""
parley.api.deps — FastAPI dependency injection
================================================
"""

from __future__ import annotations

import os
from functools import lru_cache, partial
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from parley.config import ParleyConfig, load_config
from parley.database.engine import create_db_engine
from parley.engine.permissions import Actor
from parley.services.broadcast import EventPublisher
from parley.services.membership_service import can_subscribe
from parley.services.realtime import ConnectionHub

_WEAK_SECRETS = frozenset({
    "parley-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> ParleyConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_hub() -> ConnectionHub:
    return ConnectionHub(authorizer=partial(can_subscribe, get_engine()))


def get_publisher(hub: Annotated[ConnectionHub, Depends(get_hub)]) -> EventPublisher:
    return EventPublisher(hub)


def decode_token(token: str) -> Actor:
    """Turn an identity-service JWT into an :class:`Actor`.

    Raises :class:`InvalidTokenError` if the token is bad or has no ``sub``.
    """
    payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    user_id = payload.get("sub")
    if not user_id:
        raise InvalidTokenError("Token has no subject")
    return Actor(user_id=str(user_id), role=str(payload.get("role") or "user"))


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> Actor:
    """Validate the bearer JWT and return the caller. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        return decode_token(token)
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
) -> Actor | None:
    """Like :func:`get_current_user` but anonymous callers get ``None``."""
    if not authorization:
        return None
    return get_current_user(authorization)


def get_current_admin(actor: Annotated[Actor, Depends(get_current_user)]) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return actor
