"""Scoped bearer tokens protecting a generated Decision Memo.

Tokens are HS256 JWTs bound to one intake id. Two lifetimes:

- ``remembered``: absolute expiry exactly 7 days after issuance.
- ``ephemeral``: no absolute expiry; carries a context id and dies when that
  context is ended (logout) or the intake expires.

The server stores nothing per token except revoked token/context ids on the
intake record.
"""

from collections.abc import Container
from datetime import UTC, datetime, timedelta
from typing import Optional
from uuid import uuid4

import jwt

from app.core.errors import AuthRequired
from app.core.logging import get_logger
from app.core.schemas_intake import AccessTokenClaims, PersistenceMode, utcnow

logger = get_logger(__name__)

REMEMBERED_TOKEN_LIFETIME = timedelta(days=7)
TOKEN_SCOPE = "decision_memo:artifact"
_ALGORITHM = "HS256"


def _ts(value: datetime) -> int:
    return int(value.timestamp())


class AccessTokenManager:
    """Issues and validates report-scoped access tokens."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Access token secret is required")
        self._secret = secret

    def issue(
        self,
        intake_id: str,
        persistence_mode: PersistenceMode | str,
        context_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Issue a token for ``intake_id``."""
        mode = PersistenceMode(persistence_mode)
        now = now or utcnow()
        claims: dict = {
            "sub": intake_id,
            "scope": TOKEN_SCOPE,
            "mode": mode.value,
            "iat": _ts(now),
            "jti": uuid4().hex,
        }
        if mode == PersistenceMode.REMEMBERED:
            claims["exp"] = _ts(now + REMEMBERED_TOKEN_LIFETIME)
        else:
            claims["ctx"] = context_id or uuid4().hex

        logger.info(f"Issued {mode.value} access token for intake {intake_id}")
        return jwt.encode(claims, self._secret, algorithm=_ALGORITHM)

    def decode(self, token: str, now: Optional[datetime] = None) -> AccessTokenClaims:
        """
        Decode and check signature, scope and expiry.

        Raises:
            AuthRequired: on any malformed, foreign, or expired token
        """
        if not token:
            raise AuthRequired("Access token required")
        try:
            # Expiry is checked below against ``now`` so callers can evaluate
            # tokens at a given instant.
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "require": ["sub", "iat", "jti"]},
            )
        except jwt.InvalidTokenError as e:
            raise AuthRequired("Invalid access token") from e

        if payload.get("scope") != TOKEN_SCOPE:
            raise AuthRequired("Token scope does not grant artifact access")

        try:
            mode = PersistenceMode(payload.get("mode"))
        except ValueError as e:
            raise AuthRequired("Unknown token persistence mode") from e

        issued_at = datetime.fromtimestamp(payload["iat"], UTC)
        expires_at = datetime.fromtimestamp(payload["exp"], UTC) if payload.get("exp") else None

        if mode == PersistenceMode.REMEMBERED and expires_at is None:
            raise AuthRequired("Remembered token without expiry")
        if mode == PersistenceMode.EPHEMERAL and not payload.get("ctx"):
            raise AuthRequired("Ephemeral token without context")

        now = now or utcnow()
        if expires_at is not None and now >= expires_at:
            raise AuthRequired("Access token expired")

        return AccessTokenClaims(
            intake_id=payload["sub"],
            issued_at=issued_at,
            expires_at=expires_at,
            persistence_mode=mode,
            token_id=payload["jti"],
            context_id=payload.get("ctx"),
        )

    def validate(
        self,
        token: str,
        revoked: Container[str] = frozenset(),
        now: Optional[datetime] = None,
    ) -> str:
        """
        Validate ``token`` and return the intake id it is scoped to.

        Args:
            token: Encoded bearer token
            revoked: Revoked token ids / context ids for the intake
            now: Evaluation instant (defaults to current time)

        Raises:
            AuthRequired: unrecognized, expired or revoked token
        """
        claims = self.decode(token, now=now)
        if revocation_key(claims) in revoked:
            raise AuthRequired("Access token revoked")
        return claims.intake_id


def revocation_key(claims: AccessTokenClaims) -> str:
    """Id recorded on the intake when a token is revoked.

    Ephemeral tokens are revoked per context so every token from that
    context dies together.
    """
    if claims.persistence_mode == PersistenceMode.EPHEMERAL and claims.context_id:
        return f"ctx:{claims.context_id}"
    return f"jti:{claims.token_id}"
