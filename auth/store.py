"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_identity / _row_to_refresh_token /
_row_to_audit_entry are the mappers. Services and routes never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Single active refresh token per identity [R1]:
    replace_refresh_token() deletes every record for the identity and inserts
    the new one inside one transaction. Three layers keep it atomic:
      1. One connection, one commit -- the delete and insert land together.
      2. An in-process lock serializes rotations (SQLite shared-cache
         connections report "table is locked" instead of waiting).
      3. UNIQUE(identity_id) on refresh_tokens -- a second live row for the
         same identity cannot exist even if another process races us.

Timeouts:
  The driver-level busy/connect timeout is set from STORE_TIMEOUT_SECONDS so
  no store call blocks indefinitely on a locked database.

DB URL: DATABASE_URL (defaults to sqlite:///shepherd_identity.db).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import AuditEntry, Identity, IdentityStatus, RefreshTokenRecord, Role

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("phone", Text),  # encrypted envelope
    Column("role", String(30), nullable=False, server_default=Role.VOLUNTEER.value),
    Column("status", String(20), nullable=False, server_default=IdentityStatus.PENDING.value),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verification_token", String(64), unique=True),  # HMAC hex
    Column("email_verification_expires", String(32)),
    Column("password_reset_token", String(64), unique=True),  # HMAC hex
    Column("password_reset_expires", String(32)),
    Column("mfa_secret", String(64)),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "identity_id",
        String(32),
        ForeignKey("identities.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,  # [R1]
    ),
    Column("token", Text, nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", String(32), nullable=False),
    Column("action", String(100), nullable=False),
    Column("resource_type", String(50), nullable=False),
    Column("resource_id", String(64)),
    Column("details", Text),  # JSON: method, path, sanitized body
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("timestamp", String(32), nullable=False),
)

# Columns update_identity() accepts. Anything else is a programming error.
_MUTABLE_FIELDS = frozenset(
    {
        "password_hash",
        "first_name",
        "last_name",
        "phone",
        "role",
        "status",
        "email_verified",
        "email_verification_token",
        "email_verification_expires",
        "password_reset_token",
        "password_reset_expires",
        "mfa_secret",
        "mfa_enabled",
        "last_login",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Render a timestamp as fixed-width ISO 8601 UTC.

    Fixed width (microseconds always present) keeps text comparison in SQL
    consistent with chronological order.
    """
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def is_expired(value: str | None) -> bool:
    """True when an ISO timestamp is missing or in the past."""
    if not value:
        return True
    return parse_iso(value) <= datetime.now(timezone.utc)


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _to_db(fields: dict) -> dict:
    """Convert enums and bools to their column representation."""
    out: dict = {}
    for key, value in fields.items():
        if isinstance(value, (Role, IdentityStatus)):
            value = value.value
        elif isinstance(value, bool):
            value = 1 if value else 0
        out[key] = value
    return out


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Identity, RefreshTokenRecord and AuditEntry records.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        identity_id = store.create_identity(Identity(email="a@x.org", ...))
        identity = store.get_by_email("a@x.org")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///shepherd_identity.db", timeout: float = 10.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        else:
            connect_args["connect_timeout"] = int(timeout)
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)
        self._rotation_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def has_identities(self) -> bool:
        """Return True if at least one identity exists (first-run detection)."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_identities)).scalar()
        return (result or 0) > 0

    def create_identity(self, identity: Identity) -> str:
        """Insert a new identity and return its id.

        A random id is assigned when identity.id is None. Raises
        sqlalchemy.exc.IntegrityError if the email already exists; callers
        translate that into DuplicateIdentity.
        """
        identity_id = identity.id or uuid.uuid4().hex
        now = _now_iso()
        values = _to_db(
            {
                "id": identity_id,
                "email": identity.email.lower(),
                "password_hash": identity.password_hash,
                "first_name": identity.first_name,
                "last_name": identity.last_name,
                "phone": identity.phone,
                "role": identity.role,
                "status": identity.status,
                "email_verified": identity.email_verified,
                "email_verification_token": identity.email_verification_token,
                "email_verification_expires": identity.email_verification_expires,
                "password_reset_token": identity.password_reset_token,
                "password_reset_expires": identity.password_reset_expires,
                "mfa_secret": identity.mfa_secret,
                "mfa_enabled": identity.mfa_enabled,
                "created_at": now,
                "updated_at": now,
            }
        )
        with self.engine.connect() as conn:
            conn.execute(_identities.insert().values(**values))
            conn.commit()
        return identity_id

    def get_by_id(self, identity_id: str) -> Identity | None:
        """Look up an identity by primary key. Returns None if not found."""
        return self._fetch_one(_identities.c.id == identity_id)

    def get_by_email(self, email: str) -> Identity | None:
        """Look up an identity by email (case-insensitive). Returns None if not found."""
        return self._fetch_one(_identities.c.email == email.lower())

    def get_by_verification_token(self, token_hash: str) -> Identity | None:
        """Look up an identity by the digest of its email verification token."""
        return self._fetch_one(_identities.c.email_verification_token == token_hash)

    def get_by_reset_token(self, token_hash: str) -> Identity | None:
        """Look up an identity by the digest of its password reset token."""
        return self._fetch_one(_identities.c.password_reset_token == token_hash)

    def list_identities(self, status: IdentityStatus | None = None) -> list[Identity]:
        """Return identities newest first, optionally filtered by status."""
        query = _identities.select().order_by(_identities.c.created_at.desc())
        if status is not None:
            query = query.where(_identities.c.status == status.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_identity(r) for r in rows]

    def update_identity(self, identity_id: str, **fields) -> bool:
        """Update mutable fields on an existing identity.

        Enum and bool values are converted for storage. updated_at is stamped
        automatically. Returns True if a row was updated, False if
        identity_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        values = _to_db(fields)
        values["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_identities.update().where(_identities.c.id == identity_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, identity_id: str) -> None:
        """Stamp the current UTC timestamp as last_login."""
        with self.engine.connect() as conn:
            conn.execute(_identities.update().where(_identities.c.id == identity_id).values(last_login=_now_iso()))
            conn.commit()

    def count_active_with_role(self, role: Role) -> int:
        """Return the number of ACTIVE identities holding role.

        Used by PATCH/DELETE /users/{id} to keep at least one super admin.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_identities)
                .where((_identities.c.role == role.value) & (_identities.c.status == IdentityStatus.ACTIVE.value))
            ).scalar()
        return result or 0

    def delete_identity(self, identity_id: str) -> bool:
        """Permanently delete an identity; its refresh token cascades with it.

        Audit entries are kept -- the log is append-only. Returns True if the
        identity existed.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_identities.delete().where(_identities.c.id == identity_id))
            conn.commit()
        return result.rowcount > 0

    def _fetch_one(self, clause) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(clause)).fetchone()
        return _row_to_identity(row) if row is not None else None

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def replace_refresh_token(self, identity_id: str, token: str, expires_at: str) -> RefreshTokenRecord:
        """Supersede every refresh token of identity_id with a new one [R1].

        Delete and insert share one transaction; see the module docstring for
        why this cannot leave two live records behind.
        """
        now = _now_iso()
        with self._rotation_lock, self.engine.connect() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.identity_id == identity_id))
            result = conn.execute(
                _refresh_tokens.insert().values(
                    identity_id=identity_id,
                    token=token,
                    expires_at=expires_at,
                    created_at=now,
                )
            )
            conn.commit()
        return RefreshTokenRecord(
            id=result.inserted_primary_key[0],
            identity_id=identity_id,
            token=token,
            expires_at=expires_at,
            created_at=now,
        )

    def get_refresh_token(self, identity_id: str) -> RefreshTokenRecord | None:
        """Return the stored refresh token record of an identity, if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.identity_id == identity_id)
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def count_refresh_tokens(self, identity_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_refresh_tokens).where(_refresh_tokens.c.identity_id == identity_id)
            ).scalar()
        return result or 0

    def delete_refresh_token(self, identity_id: str, token: str) -> int:
        """Delete the record matching both identity and token.

        The identity check stops one caller from revoking another's session
        with a leaked token. Returns the number of rows removed (0 is fine).
        """
        with self._rotation_lock, self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.identity_id == identity_id) & (_refresh_tokens.c.token == token)
                )
            )
            conn.commit()
        return result.rowcount

    def delete_refresh_tokens(self, identity_id: str) -> int:
        """Delete every refresh token of an identity. Returns rows removed."""
        with self._rotation_lock, self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.identity_id == identity_id))
            conn.commit()
        return result.rowcount

    def purge_expired_refresh_tokens(self) -> int:
        """Delete refresh tokens past their expiry. Storage hygiene only.

        Expiry is already enforced at validation time; this just trims rows.
        ISO 8601 UTC strings of identical format compare correctly as text.
        """
        with self._rotation_lock, self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _now_iso()))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def create_audit_entry(self, entry: AuditEntry) -> int:
        """Append an audit entry and return its id."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    actor_id=entry.actor_id,
                    action=entry.action,
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    details=json.dumps(entry.details, default=str),
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    timestamp=entry.timestamp or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_audit_entries(self, limit: int = 100, actor_id: str | None = None) -> list[AuditEntry]:
        """Return the most recent audit entries, newest first."""
        query = _audit_log.select().order_by(_audit_log.c.id.desc()).limit(limit)
        if actor_id is not None:
            query = query.where(_audit_log.c.actor_id == actor_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit_entry(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        role=Role(row.role),
        status=IdentityStatus(row.status),
        email_verified=bool(row.email_verified),
        email_verification_token=row.email_verification_token,
        email_verification_expires=row.email_verification_expires,
        password_reset_token=row.password_reset_token,
        password_reset_expires=row.password_reset_expires,
        mfa_secret=row.mfa_secret,
        mfa_enabled=bool(row.mfa_enabled),
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        identity_id=row.identity_id,
        token=row.token,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_audit_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        actor_id=row.actor_id,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=row.timestamp,
    )
