"""
auth/session.py -- Login, refresh, logout and password change.

login() check order:
  1. Unknown email -> burn a dummy bcrypt comparison, InvalidCredentials [C1].
  2. Wrong password or INACTIVE -> InvalidCredentials (same message).
  3. Unverified email (when REQUIRE_EMAIL_VERIFICATION) -> EmailUnverified.
  4. MFA enabled -> MfaRequired without a code, InvalidMfaCode on mismatch.
  5. Stamp last_login, issue a token pair.

PENDING identities may log in once verified. What they may do afterwards is
decided per operation by auth.guards.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.errors import (
    EmailUnverified,
    InvalidCredentials,
    InvalidMfaCode,
    MfaRequired,
    NotFound,
    ValidationFailure,
)
from auth.mfa import MfaManager
from auth.models import Identity, IdentityStatus, IdentitySummary, LoginResult, TokenPair
from auth.store import CredentialStore
from auth.tokens import (
    TokenIssuer,
    equalize_timing,
    hash_password,
    password_policy_violation,
    verify_password,
)
from core.config import Settings, get_settings
from core.crypto import DecryptionFailure, FieldCipher

logger = logging.getLogger("shepherd.auth.session")


def summarize_identity(identity: Identity, cipher: FieldCipher) -> IdentitySummary:
    """Project an Identity to its caller-visible form, decrypting the phone.

    An unreadable phone envelope is reported as None and logged; it never
    fails the request.
    """
    phone = None
    if identity.phone:
        try:
            phone = cipher.decrypt(identity.phone)
        except DecryptionFailure:
            logger.warning("Phone of identity %s could not be decrypted", identity.id)
    return IdentitySummary(
        id=identity.id,
        email=identity.email,
        first_name=identity.first_name,
        last_name=identity.last_name,
        role=identity.role,
        status=identity.status,
        email_verified=identity.email_verified,
        mfa_enabled=identity.mfa_enabled,
        phone=phone,
        last_login=identity.last_login,
        created_at=identity.created_at,
    )


class SessionService:
    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        mfa: MfaManager,
        cipher: FieldCipher,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.mfa = mfa
        self.cipher = cipher
        self.settings = settings or get_settings()

    def login(self, email: str, password: str, mfa_code: str | None = None) -> LoginResult:
        identity = self.store.get_by_email(email.strip())
        if identity is None:
            equalize_timing(password)
            raise InvalidCredentials()
        if not verify_password(password, identity.password_hash) or identity.status == IdentityStatus.INACTIVE:
            raise InvalidCredentials()
        if self.settings.require_email_verification and not identity.email_verified:
            raise EmailUnverified("Please verify your email before logging in.")
        if identity.mfa_enabled:
            if not mfa_code:
                raise MfaRequired()
            if not self.mfa.challenge(identity, mfa_code):
                raise InvalidMfaCode()

        self.store.update_last_login(identity.id)
        tokens = self.issuer.issue(identity)
        logger.info("Login succeeded for identity %s", identity.id)
        refreshed = self.store.get_by_id(identity.id) or identity
        return LoginResult(identity=summarize_identity(refreshed, self.cipher), tokens=tokens)

    def refresh(self, refresh_token: str) -> TokenPair:
        identity = self.issuer.validate_refresh(refresh_token)
        return self.issuer.issue(identity)

    def logout(self, identity_id: str, refresh_token: str) -> None:
        """Delete the matching refresh token. Unknown tokens are not an error."""
        removed = self.store.delete_refresh_token(identity_id, refresh_token)
        logger.info("Logout for identity %s (%d token(s) revoked)", identity_id, removed)

    def change_password(self, identity_id: str, old_password: str, new_password: str) -> None:
        identity = self._get(identity_id)
        if not verify_password(old_password, identity.password_hash):
            raise InvalidCredentials("Current password is incorrect.")
        reason = password_policy_violation(new_password)
        if reason is not None:
            raise ValidationFailure(reason)
        self.store.update_identity(identity_id, password_hash=hash_password(new_password))
        logger.info("Password changed for identity %s", identity_id)

    def current_identity(self, identity_id: str) -> IdentitySummary:
        return summarize_identity(self._get(identity_id), self.cipher)

    def _get(self, identity_id: str) -> Identity:
        identity = self.store.get_by_id(identity_id)
        if identity is None:
            raise NotFound("Identity not found.")
        return identity
