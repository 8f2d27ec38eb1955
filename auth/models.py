"""
auth/models.py -- Domain dataclasses and enums for identity entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and services do the work.

Role and IdentityStatus are closed sets. Values coming from tokens, request
bodies or the database are parsed into these enums at the boundary, so guards
compare enum members rather than free-form strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    PASTORAL_STAFF = "PASTORAL_STAFF"
    ADMIN_STAFF = "ADMIN_STAFF"
    MINISTRY_LEADER = "MINISTRY_LEADER"
    VOLUNTEER = "VOLUNTEER"


class IdentityStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


ADMIN_ROLES: frozenset[Role] = frozenset({Role.SUPER_ADMIN, Role.ADMIN})


@dataclass
class Identity:
    """A staff member who can authenticate.

    email is stored lower-cased and is the login name.

    phone holds an encrypted envelope (core.crypto), never the plaintext.

    email_verification_token / password_reset_token hold HMAC digests of the
    single-use tokens (auth.tokens.hash_opaque_token). The raw tokens only
    exist inside the notification that delivers them.

    mfa_secret is written at enrollment start; mfa_enabled flips to True only
    after one successful code against it.
    """

    email: str
    password_hash: str
    first_name: str
    last_name: str
    role: Role = Role.VOLUNTEER
    status: IdentityStatus = IdentityStatus.ACTIVE
    id: str | None = None
    phone: str | None = None  # encrypted envelope
    email_verified: bool = False
    email_verification_token: str | None = None
    email_verification_expires: str | None = None
    password_reset_token: str | None = None
    password_reset_expires: str | None = None
    mfa_secret: str | None = None
    mfa_enabled: bool = False
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class RefreshTokenRecord:
    """The single live refresh token of an identity."""

    identity_id: str
    token: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class AuditEntry:
    """One mutation performed by an authenticated caller. Append-only."""

    actor_id: str
    action: str  # "<METHOD>_<resource>", e.g. "PATCH_users"
    resource_type: str
    resource_id: str | None = None
    details: dict = field(default_factory=dict)  # method, path, sanitized body
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: str | None = None
    id: int | None = None


@dataclass
class IdentitySummary:
    """What callers may see about an identity. No hashes, secrets, or tokens."""

    id: str
    email: str
    first_name: str
    last_name: str
    role: Role
    status: IdentityStatus
    email_verified: bool
    mfa_enabled: bool
    phone: str | None = None  # decrypted; None when unset or unreadable
    last_login: str | None = None
    created_at: str | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password


@dataclass
class LoginResult:
    identity: IdentitySummary
    tokens: TokenPair


@dataclass
class RegistrationAck:
    identity_id: str
    message: str


@dataclass
class MfaEnrollment:
    secret: str
    provisioning_uri: str
    qr_image: str  # data: URI (SVG)
