"""
Security Test Suite: Password Hashing and JWT Sessions

Tests that the security primitives:
- Hash passwords with bcrypt and reject wrong or malformed hashes
- Store only digests of opaque tokens
- Mint access tokens that round-trip the user and session
- Reject expired, tampered, foreign-issuer and incomplete tokens
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import jwt
import pytest

from app.config.settings import Settings
from app.infrastructure.exceptions import AuthenticationError
from app.infrastructure.security import (
    create_access_token,
    decode_access_token,
    generate_token,
    hash_password,
    hash_token,
    verify_password,
)


SECRET = "unit-test-secret-0123456789abcdef012345"


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, jwt_issuer="creditflow", access_token_expire_minutes=30)


class TestPasswords:

    def test_hash_and_verify(self):
        hashed = hash_password("s3cret-password", rounds=4)

        assert hashed != "s3cret-password"
        assert verify_password("s3cret-password", hashed) is True
        assert verify_password("wrong-password", hashed) is False

    def test_malformed_hash_is_rejected(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestOpaqueTokens:

    def test_tokens_are_unique(self):
        assert generate_token() != generate_token()

    def test_hash_is_sha256_hex(self):
        digest = hash_token("abc")

        assert len(digest) == 64
        assert digest == hash_token("abc")
        assert digest != hash_token("abd")


class TestAccessTokens:

    def test_round_trip(self, settings):
        user_id = uuid4()
        token = create_access_token(user_id, "session-token", settings)

        claims = decode_access_token(token, settings)

        assert claims.user_id == user_id
        assert claims.session_token == "session-token"
        assert claims.expires_at > datetime.now(timezone.utc)

    def test_expired_token(self, settings):
        issued = datetime.now(timezone.utc) - timedelta(hours=2)
        token = create_access_token(uuid4(), "sid", settings, now=issued)

        with pytest.raises(AuthenticationError, match="expired"):
            decode_access_token(token, settings)

    def test_wrong_secret(self, settings):
        token = create_access_token(uuid4(), "sid", settings)
        other = Settings(jwt_secret="another-secret-0123456789abcdef0123456")

        with pytest.raises(AuthenticationError):
            decode_access_token(token, other)

    def test_foreign_issuer(self, settings):
        token = create_access_token(uuid4(), "sid", settings)
        other = Settings(jwt_secret=SECRET, jwt_issuer="someone-else")

        with pytest.raises(AuthenticationError):
            decode_access_token(token, other)

    def test_missing_session_claim(self, settings):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": str(uuid4()), "iss": "creditflow", "iat": now, "exp": now + timedelta(minutes=5)},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(AuthenticationError):
            decode_access_token(token, settings)

    def test_non_uuid_subject(self, settings):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": "admin", "sid": "x", "iss": "creditflow", "iat": now, "exp": now + timedelta(minutes=5)},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(AuthenticationError, match="subject"):
            decode_access_token(token, settings)

    def test_garbage_token(self, settings):
        with pytest.raises(AuthenticationError):
            decode_access_token("not.a.jwt", settings)
