"""
tests/test_jwt_startup — JWT Secret Validation at Startup
===========================================================
The API must refuse to start when JWT_SECRET is missing, blank, too
short, or a known weak default.
"""

from __future__ import annotations

import os
from unittest.mock import patch

import jwt
import pytest

from parley.api.deps import JWT_ALGORITHM, JWT_SECRET, _load_jwt_secret, decode_token


class TestJWTSecretValidation:
    """Prove that _load_jwt_secret() rejects bad secrets and accepts good ones."""

    def test_rejects_missing_secret(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                _load_jwt_secret()

    def test_rejects_empty_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": ""}):
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                _load_jwt_secret()

    def test_rejects_known_weak_default(self):
        with patch.dict(os.environ, {"JWT_SECRET": "parley-dev-secret-change-me"}):
            with pytest.raises(RuntimeError, match="known weak default"):
                _load_jwt_secret()

    def test_rejects_short_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": "tooshort"}):
            with pytest.raises(RuntimeError, match="too short"):
                _load_jwt_secret()

    def test_accepts_strong_secret(self):
        good_secret = "a" * 64
        with patch.dict(os.environ, {"JWT_SECRET": good_secret}):
            assert _load_jwt_secret() == good_secret


class TestDecodeToken:
    def test_role_defaults_to_user(self):
        actor = decode_token(jwt.encode({"sub": "42"}, JWT_SECRET, algorithm=JWT_ALGORITHM))
        assert actor.user_id == "42"
        assert actor.role == "user"
        assert not actor.is_admin

    def test_admin_role(self):
        token = jwt.encode({"sub": "7", "role": "admin"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        assert decode_token(token).is_admin

    def test_missing_subject_rejected(self):
        token = jwt.encode({"role": "admin"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        with pytest.raises(jwt.InvalidTokenError):
            decode_token(token)

    def test_wrong_secret_rejected(self):
        token = jwt.encode({"sub": "7"}, "another-secret-" + "y" * 40, algorithm=JWT_ALGORITHM)
        with pytest.raises(jwt.InvalidTokenError):
            decode_token(token)
