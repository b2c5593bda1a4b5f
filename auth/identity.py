"""
auth/identity.py -- Identity provider contract and the bundled local provider.

The gateway never verifies a password or signs a token itself; it asks an
IdentityProvider. Any object with the methods of the IdentityProvider
protocol can be injected (a hosted IdP client in production, a fake in tests).

LocalIdentityProvider is the implementation shipped with Storegate:

  Passwords: bcrypt, used directly (no passlib wrapper). The _DUMMY_HASH
       constant enables timing equalization in verify_credentials() so
       response time does not reveal whether an email is registered [C1].

  Tokens: python-jose HS256 JWTs signed with SECRET_KEY. Claims: sub
       (identity id), email, iat, exp and a random jti so every refresh yields
       a distinct token. Lifetime is Settings.token_expire_seconds (60 min).

  Federated identities: verify_federated() accepts the token response authlib
       returns after an OIDC code exchange and requires a verified email
       (see auth/oauth.py). Federated identity ids are "<provider>:<sub>".

Credentials live in their own table (identity_credentials). Lockout and role
state are not here -- those belong to the account directory.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Protocol

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import Column, MetaData, String, Table, Text

from auth.errors import InvalidCredentials, TokenError
from auth.models import Identity, TokenGrant
from auth.oauth import extract_verified_identity
from auth.store import normalize_email
from core.clock import Clock, to_iso, utcnow
from core.config import get_settings
from core.db import make_engine

logger = logging.getLogger("storegate.auth.identity")

_ALGORITHM = "HS256"


class IdentityProvider(Protocol):
    def verify_credentials(self, email: str, password: str) -> Identity: ...

    def verify_federated(self, provider_token: dict) -> Identity: ...

    def issue_token(self, identity: Identity) -> TokenGrant: ...

    def refresh_token(self, token: str) -> TokenGrant: ...

    def decode_token(self, token: str) -> dict | None: ...

    def set_password(self, identity_id: str, password: str) -> bool: ...


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


_BCRYPT_MAX_BYTES = 72


def _secret(plain: str) -> bytes:
    # bcrypt only reads the first 72 bytes; recent releases reject longer input.
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Cost factor comes from Settings.bcrypt_rounds.
    """
    salt = bcrypt.gensalt(rounds=get_settings().bcrypt_rounds)
    return bcrypt.hashpw(_secret(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_secret(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login is not measurably slower
# than later ones. verify_credentials() always runs bcrypt, even for unknown
# emails [C1].
_DUMMY_HASH: str = hash_password("storegate_timing_dummy")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_credentials = Table(
    "identity_credentials",
    _metadata,
    Column("identity_id", String(128), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", Text, nullable=False, server_default=""),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", String(40), nullable=False),
)


class LocalIdentityProvider:
    """Password + JWT identity provider backed by SQLAlchemy Core.

    Usage:
        provider = LocalIdentityProvider()
        identity = provider.register("a@x.com", "correct horse", "Ada")
        grant = provider.issue_token(identity)
        provider.decode_token(grant.token)["sub"] == identity.identity_id
    """

    def __init__(
        self,
        db_url: str | None = None,
        secret_key: str | None = None,
        token_lifetime: timedelta | None = None,
        clock: Clock = utcnow,
    ) -> None:
        settings = get_settings()
        self.engine = make_engine(db_url or settings.database_url)
        self._secret_key = secret_key or settings.secret_key
        self.token_lifetime = token_lifetime or settings.token_lifetime
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, display_name: str = "") -> Identity:
        """Create password credentials and return the new identity.

        Raises sqlalchemy.exc.IntegrityError if the email is already registered.
        """
        identity = Identity(
            identity_id=uuid.uuid4().hex,
            email=normalize_email(email),
            display_name=display_name,
            provider="password",
        )
        with self.engine.begin() as conn:
            conn.execute(
                _credentials.insert().values(
                    identity_id=identity.identity_id,
                    email=identity.email,
                    display_name=display_name,
                    hashed_password=hash_password(password),
                    created_at=to_iso(self._clock()),
                )
            )
        return identity

    def set_password(self, identity_id: str, password: str) -> bool:
        """Replace the stored hash. Returns False if the identity is unknown."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.identity_id == identity_id)
                .values(hashed_password=hash_password(password))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_credentials(self, email: str, password: str) -> Identity:
        """Verify an email/password pair with timing equalization [C1].

        Raises InvalidCredentials for an unknown email and for a wrong
        password alike.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _credentials.select().where(_credentials.c.email == normalize_email(email))
            ).fetchone()
        if row is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_password(password, _DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password, row.hashed_password):
            raise InvalidCredentials()
        return Identity(
            identity_id=row.identity_id,
            email=row.email,
            display_name=row.display_name or "",
            provider="password",
        )

    def verify_federated(self, provider_token: dict) -> Identity:
        """Map an authlib OIDC token response to an Identity.

        Raises InvalidCredentials when the provider does not vouch for a
        verified email.
        """
        try:
            provider, subject, email, name = extract_verified_identity(provider_token)
        except ValueError as exc:
            logger.warning("Federated login rejected: %s", exc)
            raise InvalidCredentials() from exc
        return Identity(
            identity_id=f"{provider}:{subject}",
            email=normalize_email(email),
            display_name=name,
            provider=provider,
        )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def issue_token(self, identity: Identity) -> TokenGrant:
        now = self._clock()
        expires_at = now + self.token_lifetime
        payload = {
            "sub": identity.identity_id,
            "email": identity.email,
            "provider": identity.provider,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_hex(8),
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        return TokenGrant(token=token, expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc))

    def decode_token(self, token: str) -> dict | None:
        """Decode and verify a JWT. Returns the claims or None on any failure.

        Expiry is checked against the provider clock, not wall time, so tests
        with a fake clock see consistent results.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        if "sub" not in payload or "exp" not in payload:
            return None
        if payload["exp"] <= self._clock().timestamp():
            return None
        return payload

    def refresh_token(self, token: str) -> TokenGrant:
        """Exchange a still-valid token for a fresh one with a new lifetime.

        Raises TokenError when the presented token is invalid or expired.
        """
        payload = self.decode_token(token)
        if payload is None:
            raise TokenError()
        identity = Identity(
            identity_id=payload["sub"],
            email=payload.get("email", ""),
            provider=payload.get("provider", "password"),
        )
        return self.issue_token(identity)

    def close(self) -> None:
        self.engine.dispose()
