"""
tests/conftest.py -- Shared test fixtures for the Shepherd identity tests.

This module provides:
  - RecordingNotifier: captures notifications so tests can read raw tokens
  - store / cipher / issuer / mfa / registration / sessions: unit-level services
    over a private in-memory store
  - make_identity / auth_header: helper fixtures for inserting identities
    directly and building Bearer headers
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient with a seeded super admin and its access token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API client because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit fixtures stay in one thread, so plain :memory: is fine.

DEBUG must be set before any auth/core import so get_settings() auto-generates
the secrets rather than raising ValueError. BCRYPT_ROUNDS is lowered to keep
hashing fast. "testserver" is TestClient's Host header.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core import -- get_settings() is cached on
# first use and auth.tokens reads it at import time.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_services
from auth.mfa import MfaManager
from auth.models import Identity, IdentityStatus, Role
from auth.notifier import Notifier
from auth.registration import RegistrationService
from auth.session import SessionService
from auth.store import CredentialStore
from auth.tokens import TokenIssuer, hash_password
from core.config import get_settings
from core.crypto import FieldCipher

PASSWORD = "Passw0rd!"
ADMIN_EMAIL = "admin@church.org"
ADMIN_PASSWORD = "Adm1nPassw0rd"


# ---------------------------------------------------------------------------
# Notifier fake
# ---------------------------------------------------------------------------


class RecordingNotifier(Notifier):
    """Notifier that remembers every call instead of sending anything."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send_verification(self, email: str, token: str) -> None:
        self.sent.append(("verification", email, token))

    def send_password_reset(self, email: str, token: str) -> None:
        self.sent.append(("password_reset", email, token))

    def send_registration_alert(self, email: str, name: str) -> None:
        self.sent.append(("registration_alert", email, name))

    def send_approved(self, email: str, first_name: str) -> None:
        self.sent.append(("approved", email, first_name))

    def last(self, kind: str, email: str) -> str:
        """Payload of the most recent `kind` notification about `email`."""
        for sent_kind, sent_email, payload in reversed(self.sent):
            if sent_kind == kind and sent_email == email:
                return payload
        raise AssertionError(f"No {kind} notification for {email}")


# ---------------------------------------------------------------------------
# Unit-level service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture(scope="session")
def cipher() -> FieldCipher:
    return FieldCipher.from_secret("unit-test-field-encryption-passphrase")


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def issuer(store, settings) -> TokenIssuer:
    return TokenIssuer(store, settings)


@pytest.fixture
def mfa(store, settings) -> MfaManager:
    return MfaManager(store, settings)


@pytest.fixture
def registration(store, notifier, cipher, settings) -> RegistrationService:
    return RegistrationService(store, notifier, cipher, settings)


@pytest.fixture
def sessions(store, issuer, mfa, cipher, settings) -> SessionService:
    return SessionService(store, issuer, mfa, cipher, settings)


def _make_identity(
    store: CredentialStore,
    email: str = "member@church.org",
    password: str = PASSWORD,
    role: Role = Role.VOLUNTEER,
    status: IdentityStatus = IdentityStatus.ACTIVE,
    email_verified: bool = True,
    **extra,
) -> Identity:
    """Insert an identity directly and return it as stored."""
    identity_id = store.create_identity(
        Identity(
            email=email,
            password_hash=hash_password(password),
            first_name="Test",
            last_name="Member",
            role=role,
            status=status,
            email_verified=email_verified,
            **extra,
        )
    )
    return store.get_by_id(identity_id)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> CredentialStore:
    """Create an isolated named shared-memory store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return CredentialStore(db_url=f"sqlite:///file:test_identity_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: CredentialStore, notifier: Notifier):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_services(app, store, notifier=notifier)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but an isolated in-memory store. The notifier is
    a RecordingNotifier, reachable as client.app.state.notifier.
    """
    store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    admin = _make_identity(store, email=ADMIN_EMAIL, password=ADMIN_PASSWORD, role=Role.SUPER_ADMIN)
    token = TokenIssuer(store).issue(admin).access_token

    app.router.lifespan_context = _patch_lifespan(store, RecordingNotifier())

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    store.close()


@pytest.fixture
def make_identity():
    """Factory fixture: make_identity(store, email=..., role=..., ...) -> Identity."""
    return _make_identity


@pytest.fixture
def auth_header():
    """auth_header(token) -> Authorization header dict."""

    def build(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    return build
