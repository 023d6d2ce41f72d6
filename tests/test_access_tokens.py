"""Tests for scoped report access tokens."""

from datetime import timedelta

import jwt
import pytest

from app.core.access_tokens import TOKEN_SCOPE, AccessTokenManager, revocation_key
from app.core.errors import AuthRequired
from app.core.schemas_intake import PersistenceMode, utcnow

SECRET = "test-access-token-secret"


@pytest.fixture
def manager():
    return AccessTokenManager(SECRET)


class TestRememberedTokens:
    def test_valid_within_seven_days(self, manager):
        issued = utcnow()
        token = manager.issue("intake-1", PersistenceMode.REMEMBERED, now=issued)

        assert manager.validate(token, now=issued + timedelta(days=6)) == "intake-1"

    def test_invalid_after_seven_days(self, manager):
        issued = utcnow()
        token = manager.issue("intake-1", PersistenceMode.REMEMBERED, now=issued)

        with pytest.raises(AuthRequired, match="expired"):
            manager.validate(token, now=issued + timedelta(days=8))

    def test_expiry_is_exactly_seven_days(self, manager):
        issued = utcnow().replace(microsecond=0)
        token = manager.issue("intake-1", "remembered", now=issued)

        claims = manager.decode(token, now=issued)
        assert claims.expires_at - claims.issued_at == timedelta(days=7)

    def test_revoked_token_rejected(self, manager):
        token = manager.issue("intake-1", PersistenceMode.REMEMBERED)
        key = revocation_key(manager.decode(token))

        with pytest.raises(AuthRequired, match="revoked"):
            manager.validate(token, revoked={key})


class TestEphemeralTokens:
    def test_no_absolute_expiry(self, manager):
        issued = utcnow()
        token = manager.issue("intake-1", PersistenceMode.EPHEMERAL, now=issued)

        claims = manager.decode(token, now=issued + timedelta(days=30))
        assert claims.expires_at is None
        assert claims.context_id

    def test_context_revocation_kills_every_token_of_that_context(self, manager):
        first = manager.issue("intake-1", PersistenceMode.EPHEMERAL, context_id="browser-1")
        second = manager.issue("intake-1", PersistenceMode.EPHEMERAL, context_id="browser-1")
        other = manager.issue("intake-1", PersistenceMode.EPHEMERAL, context_id="browser-2")

        revoked = {revocation_key(manager.decode(first))}

        with pytest.raises(AuthRequired):
            manager.validate(second, revoked=revoked)
        assert manager.validate(other, revoked=revoked) == "intake-1"


class TestRejection:
    def test_garbage_token(self, manager):
        with pytest.raises(AuthRequired):
            manager.validate("not-a-token")

    def test_missing_token(self, manager):
        with pytest.raises(AuthRequired):
            manager.validate("")

    def test_token_signed_with_other_secret(self, manager):
        token = AccessTokenManager("other-secret").issue("intake-1", PersistenceMode.REMEMBERED)

        with pytest.raises(AuthRequired):
            manager.validate(token)

    def test_wrong_scope(self, manager):
        now = utcnow()
        token = jwt.encode(
            {"sub": "intake-1", "scope": "admin", "mode": "remembered", "iat": int(now.timestamp()),
             "exp": int((now + timedelta(days=1)).timestamp()), "jti": "abc"},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(AuthRequired, match="scope"):
            manager.validate(token)

    def test_remembered_without_expiry(self, manager):
        token = jwt.encode(
            {"sub": "intake-1", "scope": TOKEN_SCOPE, "mode": "remembered",
             "iat": int(utcnow().timestamp()), "jti": "abc"},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(AuthRequired):
            manager.validate(token)

    def test_secret_required(self):
        with pytest.raises(ValueError):
            AccessTokenManager("")
