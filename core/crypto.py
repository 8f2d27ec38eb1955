"""
core/crypto.py -- Field-level encryption for personal data at rest.

Envelope format (wire-compatible with existing stored values):

    hex(iv):hex(auth_tag):hex(ciphertext)

  iv         16 random bytes, fresh for every encrypt() call
  auth_tag   16-byte AES-GCM tag
  ciphertext AES-256-GCM output, no associated data

Key handling:
  The 256-bit key is derived once from the ENCRYPTION_KEY passphrase with
  scrypt (N=2^14, r=8, p=1) and a static salt. The salt is static because the
  key must be reproducible across restarts and hosts; per-value randomness
  comes from the IV. The derived key lives on an immutable FieldCipher
  instance created in the application lifespan and handed to the services
  that need it -- there is no module-level key.

Failure policy:
  decrypt() raises DecryptionFailure for a tampered value, a malformed
  envelope, or a value written under a different key. Callers treat that as
  "field unavailable" and carry on -- it is a data-quality event, never a
  reason to fail the request.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

_SALT = b"salt"
_KEY_LENGTH = 32
_IV_LENGTH = 16
_TAG_LENGTH = 16
_DELIMITER = ":"


class DecryptionFailure(Exception):
    """An envelope could not be authenticated or parsed."""


def derive_key(secret: str) -> bytes:
    """Derive the 32-byte field key from a passphrase (scrypt, static salt)."""
    kdf = Scrypt(salt=_SALT, length=_KEY_LENGTH, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


class FieldCipher:
    """AES-256-GCM encryption of individual string fields.

    Usage:
        cipher = FieldCipher.from_secret(settings.encryption_key)
        stored = cipher.encrypt("+1 555 0100")
        cipher.decrypt(stored)  # "+1 555 0100"

    Instances hold only the derived key and are safe to share across threads.
    """

    __slots__ = ("_aead",)

    def __init__(self, key: bytes) -> None:
        if len(key) != _KEY_LENGTH:
            raise ValueError("FieldCipher requires a 32-byte key.")
        self._aead = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str) -> FieldCipher:
        """Build a cipher from the ENCRYPTION_KEY passphrase. Call once at startup."""
        return cls(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a field value. Empty input is returned unchanged."""
        if not plaintext:
            return plaintext
        iv = os.urandom(_IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        return _DELIMITER.join((iv.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, envelope: str) -> str:
        """Return the plaintext of an envelope. Raises DecryptionFailure."""
        if not envelope:
            return envelope
        parts = envelope.split(_DELIMITER)
        if len(parts) != 3:
            raise DecryptionFailure("Malformed envelope.")
        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as exc:
            raise DecryptionFailure("Malformed envelope.") from exc
        if len(iv) != _IV_LENGTH or len(tag) != _TAG_LENGTH:
            raise DecryptionFailure("Malformed envelope.")
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionFailure("Authentication tag mismatch.") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailure("Plaintext is not valid UTF-8.") from exc
