"""
tests/conftest.py -- Shared test fixtures for the watchlist auth tests.

This module provides:
  - at(): fixed-epoch clock helper; every core test passes ``now`` explicitly
  - hasher / codec / cache / revocations / credential_store / sessions: the
    session core wired the way the lifespan wires it, with fast bcrypt
  - api_client: TestClient with a patched lifespan and one seeded user

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set these before any api/core import so get_settings() builds a
# dev-mode Settings with the in-memory cache and a generous login limit.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.passwords import HashAlgorithm, PasswordHasher
from auth.revocation import RevocationStore
from auth.session import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from cache.store import MemoryKeyValueStore
from core.config import Settings

SIGNING_KEY = "test-signing-key-0123456789abcdef0123456789"
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

ALICE = "alice"
ALICE_PASSWORD = "correct horse battery staple"


def at(seconds: float) -> datetime:
    """Return T0 + ``seconds``."""
    return T0 + timedelta(seconds=seconds)


def memory_db_url(name: str) -> str:
    """Unique named shared-memory SQLite URL, so tests never share rows."""
    return f"sqlite:///file:test_auth_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    # Minimum work factor: tests exercise behaviour, not hash strength.
    return PasswordHasher(HashAlgorithm.BCRYPT, bcrypt_rounds=4)


@pytest.fixture
def codec() -> TokenCodec:
    # One-second leeway: a token issued at t=0 is expired at t=3601.
    return TokenCodec(
        SIGNING_KEY,
        access_lifetime=timedelta(hours=1),
        refresh_lifetime=timedelta(days=1),
        leeway=timedelta(seconds=1),
    )


@pytest.fixture
def cache() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def revocations(cache: MemoryKeyValueStore, codec: TokenCodec) -> RevocationStore:
    return RevocationStore(cache, max_lifetime=codec.max_lifetime, leeway=codec.leeway)


@pytest.fixture
def credential_store(hasher: PasswordHasher) -> Generator[CredentialStore, None, None]:
    """Credential store seeded with one active user whose login name and principal id are both "alice"."""
    store = CredentialStore(db_url=memory_db_url("core"))
    store.create_user(ALICE, hasher.hash(ALICE_PASSWORD), hasher.algorithm, principal_id=ALICE)
    yield store
    store.close()


@pytest.fixture
def alice_id(credential_store: CredentialStore) -> str:
    return credential_store.find_credential(ALICE).principal_id


@pytest.fixture
def sessions(
    codec: TokenCodec,
    hasher: PasswordHasher,
    credential_store: CredentialStore,
    revocations: RevocationStore,
) -> SessionManager:
    return SessionManager(codec, hasher, credential_store, revocations)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, store: CredentialStore, cache: MemoryKeyValueStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test components into app.state so TestClient routes see
    an isolated database and cache rather than the configured ones.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.credentials = store
        app.state.cache = cache
        app.state.sessions = SessionManager.from_settings(settings, credentials=store, cache=cache)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str], None, None]:
    """Yield (client, principal_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers. The user "testadmin" / "testpass123" exists
    before the client starts.
    """
    settings = Settings(
        debug=True,
        secret_key=SIGNING_KEY,
        cache_backend="memory",
        bcrypt_rounds=4,
        login_rate_limit="1000/minute",
    )
    store = CredentialStore(db_url=memory_db_url("api"))
    hasher = PasswordHasher.from_settings(settings)
    pid = store.create_user("testadmin", hasher.hash("testpass123"), hasher.algorithm)

    app.router.lifespan_context = _patch_lifespan(settings, store, MemoryKeyValueStore())

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, pid

    store.close()
