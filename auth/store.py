"""
auth/store.py -- SQLAlchemy Core persistence for credential records.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_record is the mapper. The session
manager only sees the CredentialLookup contract (find_credential); the other
methods serve provisioning (CLI, tests) and the password-change route.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Password hashes are stored with their algorithm tag so a mismatched row is
  detected at verification time instead of silently failing.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select, text
from sqlalchemy.engine import Engine

from auth.models import CredentialRecord
from auth.passwords import HashAlgorithm

_DEFAULT_DB_URL = "sqlite:///watchlist_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", String(32), nullable=False, unique=True),  # uuid4 hex
    Column("username", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("password_algo", String(16), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("password_changed_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so login reads do not block on password writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for CredentialRecord entities.

    Usage:
        store = CredentialStore()
        pid = store.create_user("alice", hasher.hash("secret"), HashAlgorithm.BCRYPT)
        record = store.find_credential("alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Lookup (CredentialLookup contract)
    # ------------------------------------------------------------------

    def find_credential(self, identifier: str) -> CredentialRecord | None:
        """Look up a credential by exact login name (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == identifier)).fetchone()
        return _row_to_record(row) if row is not None else None

    def get_by_principal(self, principal_id: str) -> CredentialRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.principal_id == principal_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    # ------------------------------------------------------------------
    # Provisioning and maintenance
    # ------------------------------------------------------------------

    def create_user(
        self,
        identifier: str,
        password_hash: str,
        algorithm: HashAlgorithm,
        *,
        principal_id: str | None = None,
        is_active: bool = True,
    ) -> str:
        """Insert a credential record and return its principal id.

        Raises sqlalchemy.exc.IntegrityError if the username or principal id
        already exists.
        """
        pid = principal_id or uuid.uuid4().hex
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    principal_id=pid,
                    username=identifier,
                    password_hash=password_hash,
                    password_algo=HashAlgorithm(algorithm).value,
                    is_active=1 if is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return pid

    def update_password(self, principal_id: str, password_hash: str, algorithm: HashAlgorithm) -> bool:
        """Replace the stored hash. Returns True if a row was updated.

        The caller is responsible for revoking the principal's existing
        sessions afterwards.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.principal_id == principal_id)
                .values(
                    password_hash=password_hash,
                    password_algo=HashAlgorithm(algorithm).value,
                    password_changed_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def set_active(self, principal_id: str, is_active: bool) -> bool:
        """Enable or disable login for a principal. Returns True if a row was updated."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.principal_id == principal_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def ping(self) -> None:
        """Raise if the database cannot answer a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_record(row) -> CredentialRecord:
    # password_algo is passed through as the raw tag; the session manager
    # compares it against the configured algorithm and treats a mismatch as
    # a data error.
    return CredentialRecord(
        principal_id=row.principal_id,
        identifier=row.username,
        password_hash=row.password_hash,
        algorithm=row.password_algo,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        password_changed_at=row.password_changed_at,
    )
