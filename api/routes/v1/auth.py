"""
api/routes/v1/auth.py -- Registration, login, session and credential endpoints.

Routes:
  POST  /api/v1/auth/register             -- self-registration (PENDING, unverified)
  POST  /api/v1/auth/verify-email         -- consume verification token
  POST  /api/v1/auth/resend-verification  -- new verification link; generic answer
  POST  /api/v1/auth/login                -- password (+ MFA) login; token pair
  POST  /api/v1/auth/refresh              -- exchange refresh token for a new pair
  POST  /api/v1/auth/forgot-password      -- reset link; generic answer
  POST  /api/v1/auth/reset-password       -- consume reset token
  POST  /api/v1/auth/mfa/setup            -- begin TOTP enrollment (requires auth)
  POST  /api/v1/auth/mfa/verify           -- confirm TOTP enrollment (requires auth)
  PATCH /api/v1/auth/password/change      -- change password (requires auth)
  POST  /api/v1/auth/logout               -- revoke refresh token (requires auth)
  GET   /api/v1/auth/me                   -- current identity (requires auth)

Security:
  [C1] SessionService.login() provides timing equalization -- use it, never inline.
  [C2] forgot-password and resend-verification answer identically for known
       and unknown emails.
  [M5] Cache-Control: no-store on every response that carries a token or secret.
  Authenticated routes are guarded by auth.guards.authorize(<operation id>);
  PENDING identities may use all of them.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    ChangePasswordRequest,
    EmailRequest,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MfaSetupResponse,
    MfaVerifyRequest,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenRequest,
    TokenResponse,
)
from auth.guards import authorize
from auth.mfa import MfaManager
from auth.models import Identity
from auth.registration import RegistrationService
from auth.session import SessionService

router = APIRouter()


def _registration(request: Request) -> RegistrationService:
    return request.app.state.registration_service


def _sessions(request: Request) -> SessionService:
    return request.app.state.session_service


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a PENDING account and email a verification link.

    The account can log in once the email is verified, but stays read-only
    until an administrator approves it.
    """
    ack = _registration(request).register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        phone=body.phone,
    )
    return RegisterResponse(identity_id=ack.identity_id, message=ack.message)


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, body: TokenRequest) -> MessageResponse:
    _registration(request).verify_email(body.token)
    return MessageResponse(message="Email verified successfully. Your account is pending administrator approval.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    return MessageResponse(message=_registration(request).resend_verification(body.email))


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, response: Response, body: LoginRequest) -> LoginResponse:
    """Authenticate with email, password and (when enabled) a TOTP code.

    Unknown email, wrong password and deactivated account all produce the
    same invalid_credentials error.
    """
    result = _sessions(request).login(body.email, body.password, mfa_code=body.mfa_code)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    tokens = result.tokens
    return LoginResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        user=IdentityResponse.from_summary(result.identity),
    )


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenResponse:
    pair = _sessions(request).refresh(body.refresh_token)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse.from_pair(pair)


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    """Always 200 with the same message [C2]."""
    return MessageResponse(message=_registration(request).request_password_reset(body.email))


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _registration(request).reset_password(body.token, body.new_password)
    return MessageResponse(message="Password reset successfully.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/mfa/setup", response_model=MfaSetupResponse)
def mfa_setup(
    request: Request,
    response: Response,
    identity: Identity = Depends(authorize("auth.mfa_setup")),
) -> MfaSetupResponse:
    """Provision a TOTP secret. MFA is not enforced until /auth/mfa/verify succeeds."""
    mfa: MfaManager = request.app.state.mfa_manager
    enrollment = mfa.begin_enrollment(identity.id)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return MfaSetupResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        qr_code=enrollment.qr_image,
    )


@router.post("/auth/mfa/verify", response_model=MessageResponse)
def mfa_verify(
    request: Request,
    body: MfaVerifyRequest,
    identity: Identity = Depends(authorize("auth.mfa_verify")),
) -> MessageResponse:
    mfa: MfaManager = request.app.state.mfa_manager
    mfa.confirm_enrollment(identity.id, body.code)
    return MessageResponse(message="MFA enabled successfully.")


@router.patch("/auth/password/change", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(authorize("auth.password_change")),
) -> MessageResponse:
    _sessions(request).change_password(identity.id, body.old_password, body.new_password)
    return MessageResponse(message="Password changed successfully.")


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: RefreshRequest,
    identity: Identity = Depends(authorize("auth.logout")),
) -> MessageResponse:
    """Revoke the given refresh token. Idempotent; the access token simply expires."""
    _sessions(request).logout(identity.id, body.refresh_token)
    return MessageResponse(message="Logged out successfully.")


@router.get("/auth/me", response_model=IdentityResponse)
def me(request: Request, identity: Identity = Depends(authorize("auth.me"))) -> IdentityResponse:
    """Return the caller's identity as currently stored."""
    return IdentityResponse.from_summary(_sessions(request).current_identity(identity.id))
