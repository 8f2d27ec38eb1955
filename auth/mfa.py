"""
auth/mfa.py -- TOTP enrollment and verification.

Enrollment is two-step: begin_enrollment() stores a fresh secret with
mfa_enabled still False; confirm_enrollment() flips the flag only after one
valid code proves the authenticator app holds the secret. A wrong code leaves
the secret in place so the user can retry without rescanning.

Verification uses the standard 30-second step and accepts the current step
plus one on either side (valid_window=1) for clock skew. Anything older is
rejected, so a code captured more than ~60 seconds ago cannot be replayed.
"""

from __future__ import annotations

import base64
import io
import logging
from datetime import datetime

import pyotp
import qrcode
from qrcode.image.svg import SvgPathImage

from auth.errors import AlreadyEnabled, InvalidMfaCode, MfaNotConfigured, NotFound
from auth.models import Identity, MfaEnrollment
from auth.store import CredentialStore
from core.config import Settings, get_settings

logger = logging.getLogger("shepherd.auth.mfa")

_VALID_WINDOW = 1


def verify_code(secret: str, code: str | None, at: datetime | None = None) -> bool:
    """Check a 6-digit TOTP code against secret, allowing +/-1 step of skew."""
    if not code:
        return False
    cleaned = "".join(ch for ch in code if ch.isdigit())
    if len(cleaned) != 6:
        return False
    return pyotp.TOTP(secret).verify(cleaned, for_time=at, valid_window=_VALID_WINDOW)


def render_qr(data: str) -> str:
    """Render data as an SVG QR code and return it as a data: URI."""
    image = qrcode.make(data, image_factory=SvgPathImage)
    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


class MfaManager:
    def __init__(self, store: CredentialStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    def begin_enrollment(self, identity_id: str) -> MfaEnrollment:
        """Provision a new, unconfirmed TOTP secret for an identity.

        Calling it again before confirming replaces the previous secret.
        """
        identity = self._get(identity_id)
        if identity.mfa_enabled:
            raise AlreadyEnabled()
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=identity.email, issuer_name=self.settings.mfa_issuer)
        self.store.update_identity(identity_id, mfa_secret=secret, mfa_enabled=False)
        logger.info("MFA enrollment started for identity %s", identity_id)
        return MfaEnrollment(secret=secret, provisioning_uri=uri, qr_image=render_qr(uri))

    def confirm_enrollment(self, identity_id: str, code: str) -> None:
        """Enable MFA once code matches the provisioned secret."""
        identity = self._get(identity_id)
        if identity.mfa_enabled:
            raise AlreadyEnabled()
        if not identity.mfa_secret:
            raise MfaNotConfigured()
        if not verify_code(identity.mfa_secret, code):
            raise InvalidMfaCode()
        self.store.update_identity(identity_id, mfa_enabled=True)
        logger.info("MFA enabled for identity %s", identity_id)

    def challenge(self, identity: Identity, code: str | None) -> bool:
        """Login-time check. Identities without enabled MFA always pass."""
        if not identity.mfa_enabled or not identity.mfa_secret:
            return True
        return verify_code(identity.mfa_secret, code)

    def _get(self, identity_id: str) -> Identity:
        identity = self.store.get_by_id(identity_id)
        if identity is None:
            raise NotFound("Identity not found.")
        return identity
