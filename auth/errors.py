"""
auth/errors.py -- Domain exception hierarchy for the identity services.

Services raise these; api/main.py translates every IdentityError into the
standard error envelope using the class-level code and status_code. Messages
are deliberately generic where detail would leak account state:
InvalidCredentials and InvalidToken read the same regardless of cause.

Layer rule: stdlib only.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for all caller-facing identity errors."""

    code: str = "identity_error"
    status_code: int = 400
    default_message: str = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailure(IdentityError):
    code = "validation_error"
    status_code = 422
    default_message = "Request validation failed."


class InvalidCredentials(IdentityError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid credentials."


class EmailUnverified(IdentityError):
    code = "email_unverified"
    status_code = 403
    default_message = "Email address has not been verified."


class MfaRequired(IdentityError):
    code = "mfa_required"
    status_code = 401
    default_message = "MFA code required."


class InvalidMfaCode(IdentityError):
    code = "invalid_mfa_code"
    status_code = 401
    default_message = "Invalid MFA code."


class MfaNotConfigured(IdentityError):
    code = "mfa_not_configured"
    status_code = 400
    default_message = "MFA has not been set up."


class InvalidToken(IdentityError):
    code = "invalid_token"
    status_code = 401
    default_message = "Invalid or expired token."


class DuplicateIdentity(IdentityError):
    code = "duplicate_identity"
    status_code = 409
    default_message = "An account with this email already exists."


class AlreadyEnabled(IdentityError):
    code = "already_enabled"
    status_code = 409
    default_message = "MFA is already enabled."


class AlreadyVerified(IdentityError):
    code = "already_verified"
    status_code = 409
    default_message = "Email address is already verified."


class NotPending(IdentityError):
    code = "not_pending"
    status_code = 409
    default_message = "Account is not pending approval."


class Forbidden(IdentityError):
    code = "forbidden"
    status_code = 403
    default_message = "You do not have permission to perform this action."


class NotFound(IdentityError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found."
