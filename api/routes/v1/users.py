"""
api/routes/v1/users.py -- Identity administration and audit log endpoints.

Routes:
  GET    /api/v1/users                  -- list identities, ?status= filter (admin)
  POST   /api/v1/users                  -- create a pre-verified identity (admin)
  GET    /api/v1/users/me               -- caller's own profile (pending-allowed)
  PATCH  /api/v1/users/me               -- caller's own name/phone (not pending)
  GET    /api/v1/users/{id}             -- one identity (any authenticated caller)
  PATCH  /api/v1/users/{id}             -- name/phone/role/status (admin)
  DELETE /api/v1/users/{id}             -- delete identity (admin)
  PATCH  /api/v1/users/{id}/approve     -- PENDING -> ACTIVE (admin)
  GET    /api/v1/audit                  -- recent audit entries (admin)

Security:
  [M4] PATCH/DELETE block self-deactivation, self-deletion, and removing the
       last active super admin.
  [M7] Only a super admin can grant SUPER_ADMIN or modify a super admin.
  Status changes never move an identity to or from PENDING here; leaving
  PENDING is what /approve is for.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import (
    AuditEntryResponse,
    IdentityCreate,
    IdentityPatch,
    IdentityResponse,
    MessageResponse,
    ProfilePatch,
)
from auth.errors import Forbidden, NotFound
from auth.guards import authorize
from auth.models import Identity, IdentityStatus, Role
from auth.registration import RegistrationService
from auth.session import summarize_identity
from auth.store import CredentialStore
from core.crypto import FieldCipher

router = APIRouter()


def _store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


def _to_response(request: Request, identity: Identity | None) -> IdentityResponse:
    if identity is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "Identity not found after write."},
        )
    cipher: FieldCipher = request.app.state.cipher
    return IdentityResponse.from_summary(summarize_identity(identity, cipher))


def _get_or_404(store: CredentialStore, identity_id: str) -> Identity:
    identity = store.get_by_id(identity_id)
    if identity is None:
        raise NotFound("Identity not found.")
    return identity


def _profile_updates(request: Request, body: IdentityPatch | ProfilePatch) -> dict:
    updates: dict = {}
    for name in ("first_name", "last_name"):
        value = getattr(body, name)
        if value is not None:
            updates[name] = value
    if "phone" in body.model_fields_set:
        cipher: FieldCipher = request.app.state.cipher
        updates["phone"] = cipher.encrypt(body.phone) if body.phone else None
    return updates


def _is_last_super_admin(store: CredentialStore, target: Identity) -> bool:
    return (
        target.role == Role.SUPER_ADMIN
        and target.status == IdentityStatus.ACTIVE
        and store.count_active_with_role(Role.SUPER_ADMIN) <= 1
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[IdentityResponse])
def list_users(
    request: Request,
    status: Optional[IdentityStatus] = Query(default=None),
    actor: Identity = Depends(authorize("users.list")),
) -> list[IdentityResponse]:
    """List identities newest first. Admin only; pending admins may read."""
    return [_to_response(request, i) for i in _store(request).list_identities(status=status)]


@router.get("/users/me", response_model=IdentityResponse)
def get_own_profile(request: Request, actor: Identity = Depends(authorize("users.me"))) -> IdentityResponse:
    return _to_response(request, _get_or_404(_store(request), actor.id))


@router.get("/users/{identity_id}", response_model=IdentityResponse)
def get_user(
    request: Request,
    identity_id: str,
    actor: Identity = Depends(authorize("users.get")),
) -> IdentityResponse:
    return _to_response(request, _get_or_404(_store(request), identity_id))


@router.get("/audit", response_model=list[AuditEntryResponse])
def list_audit(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    actor_id: Optional[str] = Query(default=None, max_length=32),
    actor: Identity = Depends(authorize("audit.list")),
) -> list[AuditEntryResponse]:
    entries = _store(request).list_audit_entries(limit=limit, actor_id=actor_id)
    return [AuditEntryResponse.from_entry(e) for e in entries]


# ---------------------------------------------------------------------------
# Mutations (admin only, audited)
# ---------------------------------------------------------------------------


@router.post("/users", response_model=IdentityResponse, status_code=201)
def create_user(
    request: Request,
    body: IdentityCreate,
    actor: Identity = Depends(authorize("users.create")),
) -> IdentityResponse:
    """Create an identity directly. It is pre-verified and no email is sent."""
    if body.role == Role.SUPER_ADMIN and actor.role != Role.SUPER_ADMIN:  # [M7]
        raise Forbidden("Only a super admin can create a super admin.")
    registration: RegistrationService = request.app.state.registration_service
    created = registration.create_identity(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        role=body.role,
        status=body.status,
        phone=body.phone,
    )
    return _to_response(request, created)


@router.patch("/users/me", response_model=IdentityResponse)
def update_own_profile(
    request: Request,
    body: ProfilePatch,
    actor: Identity = Depends(authorize("users.update_me")),
) -> IdentityResponse:
    """Update the caller's own name or phone. Any ACTIVE identity; not open to PENDING."""
    updates = _profile_updates(request, body)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    store = _store(request)
    store.update_identity(actor.id, **updates)
    return _to_response(request, store.get_by_id(actor.id))


@router.patch("/users/{identity_id}", response_model=IdentityResponse)
def update_user(
    request: Request,
    identity_id: str,
    body: IdentityPatch,
    actor: Identity = Depends(authorize("users.update")),
) -> IdentityResponse:
    """Update profile fields, role or ACTIVE/INACTIVE status.

    Deactivating an identity also revokes its refresh token.
    """
    store = _store(request)
    target = _get_or_404(store, identity_id)

    if actor.role != Role.SUPER_ADMIN and (  # [M7]
        target.role == Role.SUPER_ADMIN or body.role == Role.SUPER_ADMIN
    ):
        raise Forbidden("Only a super admin can change a super admin.")

    updates = _profile_updates(request, body)

    if body.status is not None and body.status != target.status:
        if IdentityStatus.PENDING in (body.status, target.status):
            raise HTTPException(
                status_code=409,
                detail={
                    "code": "invalid_status_transition",
                    "message": "Pending accounts leave PENDING only through approval.",
                },
            )
        if body.status == IdentityStatus.INACTIVE:
            # [M4] Block self-deactivation
            if target.id == actor.id:
                raise HTTPException(
                    status_code=400,
                    detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
                )
            # [M4] Block deactivating the last super admin
            if _is_last_super_admin(store, target):
                raise HTTPException(
                    status_code=400,
                    detail={"code": "last_super_admin", "message": "Cannot deactivate the last active super admin."},
                )
        updates["status"] = body.status

    if body.role is not None and body.role != target.role:
        if _is_last_super_admin(store, target):  # [M4]
            raise HTTPException(
                status_code=400,
                detail={"code": "last_super_admin", "message": "Cannot demote the last active super admin."},
            )
        updates["role"] = body.role

    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    store.update_identity(identity_id, **updates)
    if updates.get("status") == IdentityStatus.INACTIVE:
        store.delete_refresh_tokens(identity_id)
    return _to_response(request, store.get_by_id(identity_id))


@router.delete("/users/{identity_id}", response_model=MessageResponse)
def delete_user(
    request: Request,
    identity_id: str,
    actor: Identity = Depends(authorize("users.delete")),
) -> MessageResponse:
    store = _store(request)
    target = _get_or_404(store, identity_id)
    if target.id == actor.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    if target.role == Role.SUPER_ADMIN and actor.role != Role.SUPER_ADMIN:  # [M7]
        raise Forbidden("Only a super admin can delete a super admin.")
    if _is_last_super_admin(store, target):  # [M4]
        raise HTTPException(
            status_code=400,
            detail={"code": "last_super_admin", "message": "Cannot delete the last active super admin."},
        )
    store.delete_identity(identity_id)
    return MessageResponse(message="User deleted successfully.")


@router.patch("/users/{identity_id}/approve", response_model=IdentityResponse)
def approve_user(
    request: Request,
    identity_id: str,
    actor: Identity = Depends(authorize("users.approve")),
) -> IdentityResponse:
    """Activate a PENDING identity whose email is verified, and notify them."""
    registration: RegistrationService = request.app.state.registration_service
    return _to_response(request, registration.approve(identity_id))
