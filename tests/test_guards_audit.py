"""Unit tests for auth/guards.py, auth/audit.py and auth/notifier.py.

Covers:
- check_access(): unauthenticated, role mismatch, PENDING mutation rules
- every route operation id resolves to a policy
- sanitize_payload() redacts nested sensitive keys
- build_entry() fills actor, action label, resource id, client info
- AuditRecorder.record() logs and swallows store failures
- LogNotifier redacts recipients; dispatch() never raises
"""

import logging
from unittest.mock import MagicMock

import pytest
from starlette.requests import Request

from auth.audit import REDACTED, AuditRecorder, build_entry, sanitize_payload
from auth.errors import Forbidden
from auth.guards import OPERATION_POLICIES, OperationPolicy, authorize, check_access
from auth.models import ADMIN_ROLES, AuditEntry, Identity, IdentityStatus, Role
from auth.notifier import LogNotifier, dispatch, redact_email


def _identity(role=Role.VOLUNTEER, status=IdentityStatus.ACTIVE) -> Identity:
    return Identity(
        id="abc123",
        email="member@church.org",
        password_hash="x",
        first_name="Test",
        last_name="Member",
        role=role,
        status=status,
    )


# ---------------------------------------------------------------------------
# check_access
# ---------------------------------------------------------------------------


def test_unauthenticated_is_forbidden():
    with pytest.raises(Forbidden):
        check_access(None, OperationPolicy("users", mutation=False))


def test_role_mismatch_is_forbidden():
    with pytest.raises(Forbidden):
        check_access(_identity(Role.MINISTRY_LEADER), OperationPolicy("users", mutation=False, roles=ADMIN_ROLES))


def test_admin_role_allowed():
    check_access(_identity(Role.ADMIN), OperationPolicy("users", mutation=True, roles=ADMIN_ROLES))


def test_pending_may_read():
    check_access(_identity(status=IdentityStatus.PENDING), OperationPolicy("users", mutation=False))


def test_pending_mutation_forbidden():
    with pytest.raises(Forbidden) as exc_info:
        check_access(_identity(status=IdentityStatus.PENDING), OperationPolicy("users", mutation=True))
    assert "pending" in exc_info.value.message.lower()


def test_pending_allowed_mutation():
    check_access(
        _identity(status=IdentityStatus.PENDING),
        OperationPolicy("auth", mutation=True, pending_allowed=True),
    )


def test_pending_admin_cannot_mutate_users():
    with pytest.raises(Forbidden):
        check_access(_identity(Role.ADMIN, IdentityStatus.PENDING), OPERATION_POLICIES["users.update"])
    check_access(_identity(Role.ADMIN, IdentityStatus.PENDING), OPERATION_POLICIES["users.list"])


def test_own_profile_update_blocked_only_while_pending():
    policy = OPERATION_POLICIES["users.update_me"]
    assert policy.mutation and policy.roles is None
    check_access(_identity(), policy)
    with pytest.raises(Forbidden) as exc_info:
        check_access(_identity(status=IdentityStatus.PENDING), policy)
    assert "pending approval" in exc_info.value.message
    check_access(_identity(status=IdentityStatus.PENDING), OPERATION_POLICIES["users.me"])


def test_self_service_operations_are_pending_allowed():
    for op in ("auth.me", "auth.mfa_setup", "auth.mfa_verify", "auth.password_change", "auth.logout"):
        assert OPERATION_POLICIES[op].pending_allowed, op
        assert OPERATION_POLICIES[op].roles is None, op


def test_unknown_operation_fails_fast():
    with pytest.raises(KeyError):
        authorize("users.impersonate")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


def test_sanitize_payload_redacts_nested():
    payload = {
        "email": "a@church.org",
        "password": "Passw0rd!",
        "new_password": "N3wPassword",
        "refresh_token": "jwt",
        "code": "123456",
        "profile": {"mfa_secret": "BASE32", "first_name": "Alice"},
        "items": [{"token": "t"}, {"name": "ok"}],
    }
    clean = sanitize_payload(payload)

    assert clean["email"] == "a@church.org"
    for key in ("password", "new_password", "refresh_token", "code"):
        assert clean[key] == REDACTED
    assert clean["profile"] == {"mfa_secret": REDACTED, "first_name": "Alice"}
    assert clean["items"] == [{"token": REDACTED}, {"name": "ok"}]
    assert payload["password"] == "Passw0rd!"  # input untouched


def test_build_entry():
    request = Request(
        {
            "type": "http",
            "method": "PATCH",
            "path": "/api/v1/users/xyz",
            "query_string": b"",
            "headers": [(b"user-agent", b"pytest-agent")],
            "client": ("10.0.0.7", 5555),
            "server": ("testserver", 80),
            "scheme": "http",
            "path_params": {"identity_id": "xyz"},
        }
    )
    entry = build_entry(_identity(Role.ADMIN), request, "users", {"role": "ADMIN", "password": "p"})

    assert entry.actor_id == "abc123"
    assert entry.action == "PATCH_users"
    assert entry.resource_type == "users"
    assert entry.resource_id == "xyz"
    assert entry.ip_address == "10.0.0.7"
    assert entry.user_agent == "pytest-agent"
    assert entry.details["path"] == "/api/v1/users/xyz"
    assert entry.details["body"] == {"role": "ADMIN", "password": REDACTED}


def test_recorder_persists(store):
    AuditRecorder(store).record(AuditEntry(actor_id="abc123", action="POST_users", resource_type="users"))
    entries = store.list_audit_entries()
    assert len(entries) == 1
    assert entries[0].action == "POST_users"
    assert entries[0].timestamp


def test_recorder_swallows_failures(caplog):
    broken = MagicMock()
    broken.create_audit_entry.side_effect = RuntimeError("disk full")
    with caplog.at_level(logging.ERROR, logger="shepherd.auth.audit"):
        AuditRecorder(broken).record(AuditEntry(actor_id="abc123", action="DELETE_users", resource_type="users"))
    assert "Audit write failed" in caplog.text


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


def test_redact_email():
    assert redact_email("alice.smith@church.org") == "al***@church.org"
    assert redact_email("not-an-email") == "redacted"


def test_log_notifier_redacts_recipient(settings, caplog):
    with caplog.at_level(logging.INFO, logger="shepherd.auth.notifier"):
        LogNotifier(settings).send_password_reset("alice.smith@church.org", "rawtoken")
    info = [r.getMessage() for r in caplog.records if r.levelno == logging.INFO]
    assert any("al***@church.org" in m for m in info)
    assert not any("alice.smith@church.org" in m or "rawtoken" in m for m in info)


def test_dispatch_swallows_errors(caplog):
    def send_verification(email, token):
        raise ConnectionError("smtp down")

    with caplog.at_level(logging.ERROR, logger="shepherd.auth.notifier"):
        dispatch(send_verification, "a@church.org", "t")
    assert "send_verification failed" in caplog.text
