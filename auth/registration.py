"""
auth/registration.py -- Self-registration, email verification, password recovery
and administrator approval.

Account lifecycle:

    register()        -> PENDING, email unverified
    verify_email()    -> PENDING, email verified
    approve()         -> ACTIVE   (admin only, requires a verified email)

Nothing here moves an identity back to PENDING.

Single-use tokens [T1]:
  Verification and reset tokens are 256-bit random hex strings. Only their
  HMAC digest is persisted; the raw value goes out in the notification and
  nowhere else. Consuming a token clears it; requesting a new one overwrites
  the digest, which invalidates any link already sent.

Enumeration resistance [C2]:
  request_password_reset() and resend_verification() return the same
  acknowledgment whether or not the email exists.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AlreadyVerified,
    DuplicateIdentity,
    EmailUnverified,
    InvalidToken,
    NotFound,
    NotPending,
    ValidationFailure,
)
from auth.models import Identity, IdentityStatus, RegistrationAck, Role
from auth.notifier import Notifier, dispatch
from auth.store import CredentialStore, is_expired
from auth.tokens import (
    expiry_after,
    generate_opaque_token,
    hash_opaque_token,
    hash_password,
    password_policy_violation,
)
from core.config import Settings, get_settings
from core.crypto import FieldCipher

logger = logging.getLogger("shepherd.auth.registration")

REGISTERED_MESSAGE = (
    "Registration successful. Please check your email to verify your account. "
    "An administrator will review your registration."
)
RESET_REQUESTED_MESSAGE = "If an account exists with this email, you will receive a password reset link."
VERIFICATION_RESENT_MESSAGE = "If the account exists and is unverified, a new verification link has been sent."


class RegistrationService:
    """Drives an identity from registration to ACTIVE, plus password recovery.

    Usage:
        service = RegistrationService(store, LogNotifier(), cipher)
        ack = service.register("alice@church.org", "Passw0rd!", "Alice", "Smith")
    """

    def __init__(
        self,
        store: CredentialStore,
        notifier: Notifier,
        cipher: FieldCipher,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.cipher = cipher
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        phone: str | None = None,
    ) -> RegistrationAck:
        """Create a PENDING, unverified VOLUNTEER and send the verification link."""
        _check_password(password)
        email = email.strip().lower()
        if self.store.get_by_email(email) is not None:
            raise DuplicateIdentity()

        raw_token = generate_opaque_token()
        identity = Identity(
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            phone=self.cipher.encrypt(phone) if phone else None,
            role=Role.VOLUNTEER,
            status=IdentityStatus.PENDING,
            email_verified=False,
            email_verification_token=hash_opaque_token(raw_token),
            email_verification_expires=expiry_after(self.settings.email_verification_ttl_seconds),
        )
        identity_id = self._insert(identity)
        logger.info("Identity %s registered (pending)", identity_id)

        dispatch(self.notifier.send_verification, email, raw_token)
        dispatch(self.notifier.send_registration_alert, email, identity.full_name)
        return RegistrationAck(identity_id=identity_id, message=REGISTERED_MESSAGE)

    def verify_email(self, token: str) -> None:
        identity = self.store.get_by_verification_token(hash_opaque_token(token))
        if identity is None or is_expired(identity.email_verification_expires):
            raise InvalidToken("Invalid or expired verification token.")
        if identity.email_verified:
            raise AlreadyVerified()
        self.store.update_identity(
            identity.id,
            email_verified=True,
            email_verification_token=None,
            email_verification_expires=None,
        )
        logger.info("Email verified for identity %s", identity.id)

    def resend_verification(self, email: str) -> str:
        identity = self.store.get_by_email(email.strip())
        if identity is not None and not identity.email_verified:
            raw_token = generate_opaque_token()
            self.store.update_identity(
                identity.id,
                email_verification_token=hash_opaque_token(raw_token),
                email_verification_expires=expiry_after(self.settings.email_verification_ttl_seconds),
            )
            dispatch(self.notifier.send_verification, identity.email, raw_token)
        return VERIFICATION_RESENT_MESSAGE

    # ------------------------------------------------------------------
    # Password recovery
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> str:
        """Write a 1-hour reset token if the email exists. Same answer either way [C2]."""
        identity = self.store.get_by_email(email.strip())
        if identity is not None:
            raw_token = generate_opaque_token()
            self.store.update_identity(
                identity.id,
                password_reset_token=hash_opaque_token(raw_token),
                password_reset_expires=expiry_after(self.settings.password_reset_ttl_seconds),
            )
            dispatch(self.notifier.send_password_reset, identity.email, raw_token)
        return RESET_REQUESTED_MESSAGE

    def reset_password(self, token: str, new_password: str) -> None:
        """Consume a reset token and set a new password.

        With REVOKE_SESSIONS_ON_PASSWORD_RESET every refresh token of the
        identity is deleted, so a stolen session cannot outlive the reset.
        """
        identity = self.store.get_by_reset_token(hash_opaque_token(token))
        if identity is None or is_expired(identity.password_reset_expires):
            raise InvalidToken("Invalid or expired reset token.")
        _check_password(new_password)
        self.store.update_identity(
            identity.id,
            password_hash=hash_password(new_password),
            password_reset_token=None,
            password_reset_expires=None,
        )
        if self.settings.revoke_sessions_on_password_reset:
            self.store.delete_refresh_tokens(identity.id)
        logger.info("Password reset for identity %s", identity.id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def approve(self, identity_id: str) -> Identity:
        identity = self.store.get_by_id(identity_id)
        if identity is None:
            raise NotFound("Identity not found.")
        if identity.status != IdentityStatus.PENDING:
            raise NotPending()
        if not identity.email_verified:
            raise EmailUnverified("Identity must verify their email before approval.")
        self.store.update_identity(identity_id, status=IdentityStatus.ACTIVE)
        logger.info("Identity %s approved", identity_id)
        dispatch(self.notifier.send_approved, identity.email, identity.first_name)
        return self.store.get_by_id(identity_id)

    def create_identity(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Role = Role.VOLUNTEER,
        status: IdentityStatus = IdentityStatus.ACTIVE,
        phone: str | None = None,
    ) -> Identity:
        """Administrator-created identity: pre-verified, no notification."""
        _check_password(password)
        email = email.strip().lower()
        if self.store.get_by_email(email) is not None:
            raise DuplicateIdentity()
        identity_id = self._insert(
            Identity(
                email=email,
                password_hash=hash_password(password),
                first_name=first_name,
                last_name=last_name,
                phone=self.cipher.encrypt(phone) if phone else None,
                role=role,
                status=status,
                email_verified=True,
            )
        )
        logger.info("Identity %s created with role %s", identity_id, role.value)
        return self.store.get_by_id(identity_id)

    def _insert(self, identity: Identity) -> str:
        # The pre-check above races with concurrent registrations; the unique
        # index on email is the real guard.
        try:
            return self.store.create_identity(identity)
        except IntegrityError as exc:
            raise DuplicateIdentity() from exc


def _check_password(password: str) -> None:
    reason = password_policy_violation(password)
    if reason is not None:
        raise ValidationFailure(reason)
