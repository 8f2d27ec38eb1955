"""
auth/guards.py -- Per-operation access policy.

Every protected route declares its operation id:

    @router.patch("/users/{identity_id}")
    def update(..., actor: Identity = Depends(authorize("users.update"))): ...

authorize() looks the id up in OPERATION_POLICIES when the router module is
imported, so a typo fails at startup rather than on the first request.

Rules, in order (check_access):
  1. No identity                                   -> Forbidden
  2. policy.roles set and identity.role not in it  -> Forbidden
  3. PENDING + mutation + not pending_allowed      -> Forbidden

PENDING identities can read, and can manage their own credentials (MFA,
password, logout), but cannot change shared data until approved.

Mutations are audited: authorize() schedules an AuditEntry as a background
task after the access check passes (see auth.audit).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import BackgroundTasks, Depends, Request

from auth.audit import AuditRecorder, build_entry
from auth.dependencies import get_current_identity
from auth.errors import Forbidden
from auth.models import ADMIN_ROLES, Identity, IdentityStatus, Role

logger = logging.getLogger("shepherd.auth.guards")


@dataclass(frozen=True)
class OperationPolicy:
    resource: str
    mutation: bool
    roles: frozenset[Role] | None = None  # None = any authenticated identity
    pending_allowed: bool = False


OPERATION_POLICIES: dict[str, OperationPolicy] = {
    # Self-service: open to PENDING identities
    "auth.me": OperationPolicy("auth", mutation=False, pending_allowed=True),
    "auth.mfa_setup": OperationPolicy("auth", mutation=True, pending_allowed=True),
    "auth.mfa_verify": OperationPolicy("auth", mutation=True, pending_allowed=True),
    "auth.password_change": OperationPolicy("auth", mutation=True, pending_allowed=True),
    "auth.logout": OperationPolicy("auth", mutation=True, pending_allowed=True),
    # Identity administration
    "users.list": OperationPolicy("users", mutation=False, roles=ADMIN_ROLES, pending_allowed=True),
    "users.me": OperationPolicy("users", mutation=False, pending_allowed=True),
    "users.update_me": OperationPolicy("users", mutation=True),
    "users.get": OperationPolicy("users", mutation=False, pending_allowed=True),
    "users.create": OperationPolicy("users", mutation=True, roles=ADMIN_ROLES),
    "users.update": OperationPolicy("users", mutation=True, roles=ADMIN_ROLES),
    "users.delete": OperationPolicy("users", mutation=True, roles=ADMIN_ROLES),
    "users.approve": OperationPolicy("users", mutation=True, roles=ADMIN_ROLES),
    "audit.list": OperationPolicy("audit", mutation=False, roles=ADMIN_ROLES),
}


def check_access(identity: Identity | None, policy: OperationPolicy) -> None:
    """Raise Forbidden unless identity may perform an operation under policy."""
    if identity is None:
        raise Forbidden("Authentication required.")
    if policy.roles is not None and identity.role not in policy.roles:
        raise Forbidden()
    if identity.status == IdentityStatus.PENDING and policy.mutation and not policy.pending_allowed:
        raise Forbidden("Your account is pending approval. You can view data but cannot make changes.")


def authorize(operation_id: str) -> Callable:
    """Build the dependency guarding operation_id. Returns the caller's Identity."""
    policy = OPERATION_POLICIES[operation_id]

    async def dependency(
        request: Request,
        background_tasks: BackgroundTasks,
        identity: Identity = Depends(get_current_identity),
    ) -> Identity:
        check_access(identity, policy)
        if policy.mutation:
            recorder: AuditRecorder = request.app.state.audit_recorder
            entry = build_entry(identity, request, policy.resource, await _json_body(request))
            background_tasks.add_task(recorder.record, entry)
        return identity

    return dependency


async def _json_body(request: Request):
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        logger.debug("Audited request body is not JSON; storing without body")
        return None
