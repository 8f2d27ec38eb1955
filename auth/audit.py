"""
auth/audit.py -- Append-only audit trail of authenticated mutations.

auth.guards.authorize() builds an AuditEntry for every mutation operation and
schedules AuditRecorder.record() as a Starlette background task. Background
tasks ride on the successful response, so a handler that raised never
produces an entry, and the write happens after the client has its answer.

record() never raises: a failed audit write is logged with a traceback and
the request outcome stands.

Request bodies are stored sanitized. Any key that names a password, secret,
token or MFA code is replaced by "[REDACTED]" at every nesting level.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Request

from auth.models import AuditEntry, Identity
from auth.store import CredentialStore

logger = logging.getLogger("shepherd.auth.audit")

REDACTED = "[REDACTED]"

_SENSITIVE_FRAGMENTS = ("password", "secret", "token")
_SENSITIVE_KEYS = frozenset({"code", "mfa_code", "otp"})


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SENSITIVE_KEYS or any(f in lowered for f in _SENSITIVE_FRAGMENTS)


def sanitize_payload(payload: Any) -> Any:
    """Return a copy of payload with sensitive values redacted."""
    if isinstance(payload, dict):
        return {
            key: REDACTED if isinstance(key, str) and _is_sensitive(key) else sanitize_payload(value)
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [sanitize_payload(item) for item in payload]
    return payload


def build_entry(identity: Identity, request: Request, resource: str, payload: Any) -> AuditEntry:
    """Describe a mutation by identity on resource as an AuditEntry."""
    resource_id = request.path_params.get("identity_id") or request.path_params.get("id")
    return AuditEntry(
        actor_id=identity.id,
        action=f"{request.method}_{resource}",
        resource_type=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details={
            "method": request.method,
            "path": request.url.path,
            "body": sanitize_payload(payload) if payload is not None else None,
        },
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


class AuditRecorder:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def record(self, entry: AuditEntry) -> None:
        try:
            self.store.create_audit_entry(entry)
        except Exception:
            logger.exception("Audit write failed for action %s by %s", entry.action, entry.actor_id)
