"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Credentials arrive as "Authorization: Bearer <access token>". The token only
identifies the caller: the identity is re-read from the store on every
request, so a role change or deactivation takes effect immediately instead of
when the 30-minute token expires. INACTIVE identities are unauthenticated.

try_get_current_identity() is the soft variant (returns None on failure).
get_current_identity() wraps it and raises HTTP 401 if unauthenticated.
Role and pending-status checks live in auth.guards.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Identity, IdentityStatus
from auth.store import CredentialStore
from auth.tokens import TokenIssuer


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        return auth_header[7:].strip() or None
    return None


def try_get_current_identity(request: Request) -> Identity | None:
    """Attempt to authenticate the request via its Bearer token.

    Returns the stored Identity on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_identity().
    """
    token = bearer_token(request)
    if not token:
        return None
    issuer: TokenIssuer = request.app.state.token_issuer
    payload = issuer.decode_access_token(token)
    if payload is None:
        return None
    store: CredentialStore = request.app.state.credential_store
    identity = store.get_by_id(payload["sub"])
    if identity is None or identity.status == IdentityStatus.INACTIVE:
        return None
    return identity


def get_current_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    identity = try_get_current_identity(request)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
