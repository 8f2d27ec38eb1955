"""
API request and response models for the Shepherd identity endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuditEntry, IdentityStatus, IdentitySummary, Role, TokenPair
from auth.tokens import password_policy_violation

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
MFA_CODE_PATTERN = r"^\d{6}$"


def _strong_password(value: str) -> str:
    reason = password_policy_violation(value)
    if reason is not None:
        raise ValueError(reason)
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        return _strong_password(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    mfa_code is only required once the identity has enabled MFA.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    mfa_code: Optional[str] = Field(default=None, pattern=MFA_CODE_PATTERN)


class TokenRequest(BaseModel):
    """Body carrying a single-use email verification token."""

    token: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class EmailRequest(BaseModel):
    """Request body for forgot-password and resend-verification."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(max_length=128)

    @field_validator("new_password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        return _strong_password(value)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(max_length=128)

    @field_validator("new_password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        return _strong_password(value)


class MfaVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(pattern=MFA_CODE_PATTERN)


class IdentityCreate(BaseModel):
    """Request body for POST /api/v1/users (admin only)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    role: Role = Role.VOLUNTEER
    status: IdentityStatus = IdentityStatus.ACTIVE

    @field_validator("password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        return _strong_password(value)


class ProfilePatch(BaseModel):
    """Request body for PATCH /api/v1/users/me. Omitted fields are unchanged; phone=null clears it."""

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)


class IdentityPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    role: Optional[Role] = None
    status: Optional[IdentityStatus] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class RegisterResponse(BaseModel):
    """Response for POST /api/v1/auth/register. Never carries the token."""

    model_config = ConfigDict(frozen=True)

    identity_id: str
    message: str


class IdentityResponse(BaseModel):
    """Caller-visible identity. No hashes, secrets, or tokens."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    role: Role
    status: IdentityStatus
    email_verified: bool
    mfa_enabled: bool
    last_login: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_summary(cls, summary: IdentitySummary) -> "IdentityResponse":
        return cls(
            id=summary.id,
            email=summary.email,
            first_name=summary.first_name,
            last_name=summary.last_name,
            phone=summary.phone,
            role=summary.role,
            status=summary.status,
            email_verified=summary.email_verified,
            mfa_enabled=summary.mfa_enabled,
            last_login=summary.last_login,
            created_at=summary.created_at,
        )


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )


class LoginResponse(TokenResponse):
    """Response for POST /api/v1/auth/login: token pair plus the identity."""

    user: IdentityResponse


class MfaSetupResponse(BaseModel):
    """Response for POST /api/v1/auth/mfa/setup.

    qr_code is an SVG data: URI the client can drop straight into an <img>.
    """

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str
    qr_code: str


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    actor_id: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: dict
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: str

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            timestamp=entry.timestamp or "",
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
