"""Unit tests for auth/registration.py -- registration, verification, recovery, approval.

Covers:
- register() creates a PENDING, unverified VOLUNTEER and notifies user + admin
- stored tokens are digests; the raw token only appears in the notification
- duplicate email -> DuplicateIdentity
- verify_email() single use; expired -> InvalidToken
- resend_verification() invalidates the previous link
- request_password_reset() answers identically for known and unknown emails
- reset_password(): expired token keeps the old password; success revokes sessions
- approve() state machine; create_identity() pre-verified
- a failing notifier never fails the operation
"""

from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import (
    AlreadyVerified,
    DuplicateIdentity,
    EmailUnverified,
    InvalidToken,
    NotFound,
    NotPending,
    ValidationFailure,
)
from auth.models import IdentityStatus, Role
from auth.notifier import Notifier
from auth.registration import RegistrationService
from auth.store import to_iso
from auth.tokens import hash_opaque_token, verify_password

PASSWORD = "Passw0rd!"


def _register(registration, email="alice@church.org", **kwargs):
    return registration.register(email, PASSWORD, "Alice", "Smith", **kwargs)


# ---------------------------------------------------------------------------
# register
# ---------------------------------------------------------------------------


def test_register_creates_pending_identity(store, registration, notifier):
    ack = _register(registration)
    identity = store.get_by_id(ack.identity_id)

    assert identity.status == IdentityStatus.PENDING
    assert identity.role == Role.VOLUNTEER
    assert identity.email_verified is False
    assert verify_password(PASSWORD, identity.password_hash)
    assert "verify" in ack.message.lower()

    raw = notifier.last("verification", "alice@church.org")
    assert identity.email_verification_token == hash_opaque_token(raw)
    assert raw not in ack.message
    assert notifier.last("registration_alert", "alice@church.org") == "Alice Smith"


def test_register_encrypts_phone(store, registration, cipher):
    ack = _register(registration, phone="+1 555 0100")
    stored = store.get_by_id(ack.identity_id).phone
    assert stored != "+1 555 0100"
    assert cipher.decrypt(stored) == "+1 555 0100"


def test_register_lowercases_email(store, registration):
    ack = _register(registration, email="Alice@Church.ORG")
    assert store.get_by_id(ack.identity_id).email == "alice@church.org"


def test_register_duplicate_email(registration):
    _register(registration)
    with pytest.raises(DuplicateIdentity):
        _register(registration, email="ALICE@church.org")


def test_register_weak_password(registration):
    with pytest.raises(ValidationFailure):
        registration.register("weak@church.org", "password", "Weak", "Password")


def test_register_survives_notifier_failure(store, cipher, settings):
    class BrokenNotifier(Notifier):
        def send_verification(self, email, token):
            raise ConnectionError("smtp down")

        def send_registration_alert(self, email, name):
            raise ConnectionError("smtp down")

    service = RegistrationService(store, BrokenNotifier(), cipher, settings)
    ack = service.register("bob@church.org", PASSWORD, "Bob", "Jones")
    assert store.get_by_id(ack.identity_id) is not None


# ---------------------------------------------------------------------------
# verify_email / resend_verification
# ---------------------------------------------------------------------------


def test_verify_email_once(store, registration, notifier):
    ack = _register(registration)
    token = notifier.last("verification", "alice@church.org")

    registration.verify_email(token)
    identity = store.get_by_id(ack.identity_id)
    assert identity.email_verified is True
    assert identity.email_verification_token is None
    assert identity.status == IdentityStatus.PENDING

    with pytest.raises(InvalidToken):
        registration.verify_email(token)


def test_verify_email_expired(store, registration, notifier):
    ack = _register(registration)
    store.update_identity(ack.identity_id, email_verification_expires=_past())
    with pytest.raises(InvalidToken):
        registration.verify_email(notifier.last("verification", "alice@church.org"))


def test_verify_email_unknown_token(registration):
    with pytest.raises(InvalidToken):
        registration.verify_email("0" * 64)


def test_verify_email_already_verified(store, registration, make_identity):
    identity = make_identity(
        store,
        email="done@church.org",
        email_verified=True,
        email_verification_token=hash_opaque_token("leftover"),
        email_verification_expires=_future(),
    )
    with pytest.raises(AlreadyVerified):
        registration.verify_email("leftover")
    assert store.get_by_id(identity.id).email_verified is True


def test_resend_verification_invalidates_old_link(store, registration, notifier):
    _register(registration)
    old = notifier.last("verification", "alice@church.org")

    message = registration.resend_verification("alice@church.org")
    new = notifier.last("verification", "alice@church.org")
    assert new != old
    assert message == registration.resend_verification("nobody@church.org")

    with pytest.raises(InvalidToken):
        registration.verify_email(old)
    registration.verify_email(new)


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


def test_forgot_password_same_answer(store, registration, notifier, make_identity):
    make_identity(store, email="known@church.org")
    known = registration.request_password_reset("known@church.org")
    unknown = registration.request_password_reset("unknown@church.org")

    assert known == unknown
    notifier.last("password_reset", "known@church.org")
    assert all(email != "unknown@church.org" for _, email, _ in notifier.sent)


def test_reset_password_success_revokes_sessions(store, registration, notifier, issuer, make_identity):
    identity = make_identity(store, email="reset@church.org")
    issuer.issue(identity)
    registration.request_password_reset("reset@church.org")
    token = notifier.last("password_reset", "reset@church.org")

    registration.reset_password(token, "N3wPassword")

    stored = store.get_by_id(identity.id)
    assert verify_password("N3wPassword", stored.password_hash)
    assert stored.password_reset_token is None
    assert store.count_refresh_tokens(identity.id) == 0
    with pytest.raises(InvalidToken):
        registration.reset_password(token, "An0therPassword")


def test_reset_password_keeps_sessions_when_disabled(store, notifier, cipher, settings, issuer, make_identity):
    service = RegistrationService(
        store, notifier, cipher, settings.model_copy(update={"revoke_sessions_on_password_reset": False})
    )
    identity = make_identity(store, email="keep@church.org")
    issuer.issue(identity)
    service.request_password_reset("keep@church.org")
    service.reset_password(notifier.last("password_reset", "keep@church.org"), "N3wPassword")
    assert store.count_refresh_tokens(identity.id) == 1


def test_reset_password_expired_token_keeps_old_password(store, registration, notifier, sessions, make_identity):
    identity = make_identity(store, email="late@church.org")
    registration.request_password_reset("late@church.org")
    token = notifier.last("password_reset", "late@church.org")
    store.update_identity(identity.id, password_reset_expires=_past())

    with pytest.raises(InvalidToken):
        registration.reset_password(token, "N3wPassword")

    result = sessions.login("late@church.org", PASSWORD)
    assert result.identity.id == identity.id


def test_second_reset_request_invalidates_first(store, registration, notifier, make_identity):
    make_identity(store, email="twice@church.org")
    registration.request_password_reset("twice@church.org")
    first = notifier.last("password_reset", "twice@church.org")
    registration.request_password_reset("twice@church.org")

    with pytest.raises(InvalidToken):
        registration.reset_password(first, "N3wPassword")


# ---------------------------------------------------------------------------
# approve / create_identity
# ---------------------------------------------------------------------------


def test_approve_before_verification(registration):
    ack = _register(registration)
    with pytest.raises(EmailUnverified):
        registration.approve(ack.identity_id)


def test_approve_verified_identity(store, registration, notifier):
    ack = _register(registration)
    registration.verify_email(notifier.last("verification", "alice@church.org"))

    approved = registration.approve(ack.identity_id)
    assert approved.status == IdentityStatus.ACTIVE
    assert notifier.last("approved", "alice@church.org") == "Alice"

    with pytest.raises(NotPending):
        registration.approve(ack.identity_id)


def test_approve_unknown(registration):
    with pytest.raises(NotFound):
        registration.approve("missing")


def test_create_identity_is_preverified(registration, notifier, cipher):
    created = registration.create_identity(
        "staff@church.org",
        PASSWORD,
        "Sam",
        "Staff",
        role=Role.ADMIN_STAFF,
        phone="+1 555 0199",
    )
    assert created.email_verified is True
    assert created.status == IdentityStatus.ACTIVE
    assert created.role == Role.ADMIN_STAFF
    assert cipher.decrypt(created.phone) == "+1 555 0199"
    assert notifier.sent == []

    with pytest.raises(DuplicateIdentity):
        registration.create_identity("staff@church.org", PASSWORD, "Sam", "Staff")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _past() -> str:
    return to_iso(datetime.now(timezone.utc) - timedelta(minutes=1))


def _future() -> str:
    return to_iso(datetime.now(timezone.utc) + timedelta(hours=1))
