"""
auth/tokens.py -- JWT issuance, password hashing, and single-use token utilities.

Security design decisions:
  JWT: python-jose with HS256. Two independent secrets:
       SECRET_KEY signs 30-minute access tokens, REFRESH_SECRET_KEY signs
       7-day refresh tokens. An access token can therefore never pass
       refresh validation and vice versa. Both carry
       {email, sub, role, status}; refresh tokens add a random jti so two
       tokens minted in the same second still differ.

  Refresh rotation [R1]: TokenIssuer.issue() supersedes the identity's
       previous refresh token through CredentialStore.replace_refresh_token(),
       which deletes and inserts in one transaction. "Latest wins" -- the
       base flow does not compare a presented refresh token with the stored
       record. STRICT_REFRESH_ROTATION=true closes that gap by requiring the
       presented token to equal the stored one, so a logged-out or
       superseded refresh token stops working immediately.

  Passwords: bcrypt directly (no passlib wrapper). Cost factor from
       BCRYPT_ROUNDS. _DUMMY_HASH enables timing equalization in login so
       response time does not reveal whether an email exists [C1].

  Single-use tokens (email verification, password reset):
       secrets.token_hex(32) -- 256 bits of entropy. Only
       HMAC-SHA256(SECRET_KEY, token) is stored, so a database leak does not
       hand out working reset links. Deterministic, so lookup stays O(1).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidToken
from auth.models import Identity, IdentityStatus, Role, TokenPair
from auth.store import is_expired, to_iso
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("shepherd.auth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only reads the first 72 bytes. The API layer caps passwords at
    128 characters; longer multi-byte inputs are truncated by bcrypt itself.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8")[:72], salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Timing equalization dummy hash [C1]. Always run verify_password() even when
# the email does not exist.
_DUMMY_HASH: str = hash_password("shepherd_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Burn one bcrypt comparison for a login that has no stored hash [C1]."""
    verify_password(plain, _DUMMY_HASH)


_PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"\d"), "one number"),
)


def password_policy_violation(password: str) -> str | None:
    """Return a human-readable reason if password is too weak, else None."""
    if len(password) < 8:
        return "Password must be at least 8 characters."
    missing = [label for pattern, label in _PASSWORD_RULES if not pattern.search(password)]
    if missing:
        return "Password must contain at least " + ", ".join(missing) + "."
    return None


# ---------------------------------------------------------------------------
# Single-use opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Generate a verification / reset token: 64 hex chars, 256 bits."""
    return secrets.token_hex(32)


def hash_opaque_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


def expiry_after(seconds: int) -> str:
    """ISO timestamp `seconds` from now, in the store's format."""
    return to_iso(datetime.now(timezone.utc) + timedelta(seconds=seconds))


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and validates access/refresh token pairs.

    Usage:
        issuer = TokenIssuer(store)
        pair = issuer.issue(identity)
        identity = issuer.validate_refresh(pair.refresh_token)
    """

    def __init__(self, store: CredentialStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    def issue(self, identity: Identity) -> TokenPair:
        """Mint a token pair and make its refresh token the only live one [R1]."""
        now = datetime.now(timezone.utc)
        claims = {
            "email": identity.email,
            "sub": identity.id,
            "role": identity.role.value,
            "status": identity.status.value,
            "iat": now,
        }
        access_token = jwt.encode(
            {**claims, "exp": now + timedelta(seconds=self.settings.access_token_expire_seconds)},
            self.settings.secret_key,
            algorithm=_ALGORITHM,
        )
        refresh_expires = now + timedelta(seconds=self.settings.refresh_token_expire_seconds)
        refresh_token = jwt.encode(
            {**claims, "exp": refresh_expires, "jti": secrets.token_hex(16)},
            self.settings.refresh_secret_key,
            algorithm=_ALGORITHM,
        )
        self.store.replace_refresh_token(identity.id, refresh_token, to_iso(refresh_expires))
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.settings.access_token_expire_seconds,
        )

    def validate_refresh(self, token: str) -> Identity:
        """Verify a refresh token and return the (re-fetched) identity.

        Raises InvalidToken with the same message for every failure: bad
        signature, expiry, unknown or inactive identity, and -- in strict
        mode -- a token that is not the stored one.
        """
        payload = _decode(token, self.settings.refresh_secret_key)
        if payload is None:
            raise InvalidToken()
        identity = self.store.get_by_id(payload["sub"])
        if identity is None or identity.status == IdentityStatus.INACTIVE:
            raise InvalidToken()
        if self.settings.strict_refresh_rotation:
            record = self.store.get_refresh_token(identity.id)
            if (
                record is None
                or not hmac.compare_digest(record.token.encode(), token.encode())
                or is_expired(record.expires_at)
            ):
                raise InvalidToken()
        return identity

    def decode_access_token(self, token: str) -> dict | None:
        """Decode and verify an access JWT. Returns the payload dict or None.

        Returning None (rather than raising) keeps the auth dependency simple:
        any invalid token is treated as unauthenticated.
        """
        return _decode(token, self.settings.secret_key)


def _decode(token: str, key: str) -> dict | None:
    try:
        payload = jwt.decode(token, key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub") or not payload.get("email"):
        return None
    # Closed sets: a token naming an unknown role or status is invalid.
    try:
        Role(payload.get("role"))
        IdentityStatus(payload.get("status"))
    except ValueError:
        return None
    return payload
