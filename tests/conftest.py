"""
tests/conftest.py -- Shared test fixtures for credkeeper.

This module provides:
  - FakeClock / ScriptedCodes / RecordingNotifier: deterministic stand-ins
    for time, the OTP generator and outbound notifications
  - engine + store + core fixtures on a private in-memory SQLite DB per test
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain ':memory:' DBs are per-connection and would present a blank schema to
each worker thread.

DEBUG, BCRYPT_ROUNDS and LOGIN_RATE_LIMIT must be set before any auth/core
import so get_settings() picks them up: DEBUG auto-generates SECRET_KEY,
4 bcrypt rounds keeps the suite fast, and the login limit is raised so
repeated logins across tests are not throttled.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_service
from auth.hashing import SecretHasher
from auth.models import Account
from auth.otp import OTPManager, generate_code
from auth.service import CredentialService
from auth.store import AccountStore, OTPStore, SessionStore, create_store_engine
from auth.tokens import SigningKeyProvider, TokenIssuer
from core.config import get_settings

TEST_KEY = "k" * 40
OTHER_KEY = "o" * 40

# ---------------------------------------------------------------------------
# Deterministic collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class ScriptedCodes:
    """OTP generator that hands out queued codes first, then random ones."""

    def __init__(self) -> None:
        self._queue: list[str] = []

    def queue(self, *codes: str) -> None:
        self._queue.extend(codes)

    def __call__(self) -> str:
        if self._queue:
            return self._queue.pop(0)
        return generate_code()


class RecordingNotifier:
    """Notifier that records every send. Set fail=True to make sends raise."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = False

    def send(self, purpose: str, account: Account, payload: dict) -> None:
        if self.fail:
            raise ConnectionError("mail relay unavailable")
        self.sent.append((purpose, account.email, payload))

    def last_code(self, email: str) -> str:
        for _purpose, to, payload in reversed(self.sent):
            if to == email and "code" in payload:
                return payload["code"]
        raise AssertionError(f"no code sent to {email}")


# ---------------------------------------------------------------------------
# Core fixtures -- one private in-memory DB per test
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    eng = create_store_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codes() -> ScriptedCodes:
    return ScriptedCodes()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def hasher() -> SecretHasher:
    return SecretHasher(rounds=4)


@pytest.fixture
def accounts(engine) -> AccountStore:
    return AccountStore(engine)


@pytest.fixture
def otp_store(engine) -> OTPStore:
    return OTPStore(engine)


@pytest.fixture
def sessions(engine) -> SessionStore:
    return SessionStore(engine)


@pytest.fixture
def otp(otp_store, hasher, codes, clock) -> OTPManager:
    return OTPManager(otp_store, hasher, generator=codes, clock=clock)


@pytest.fixture
def issuer(sessions, clock) -> TokenIssuer:
    return TokenIssuer(sessions, SigningKeyProvider(TEST_KEY), clock=clock)


@pytest.fixture
def service(accounts, otp, issuer, hasher, notifier) -> CredentialService:
    return CredentialService(accounts, otp, issuer, hasher, notifier, otp_ttl_minutes=60, resend_interval_seconds=30)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "AdminPass123!"


def _patch_lifespan(engine, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires a service built on the test engine into app.state so TestClient
    routes never touch the configured DATABASE_URL.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.service = build_service(engine, get_settings(), notifier=notifier)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, RecordingNotifier], None, None]:
    """Yield (client, notifier) for API integration tests.

    A verified admin account (ADMIN_EMAIL / ADMIN_PASSWORD) is seeded before
    the client starts. Tests register their own accounts with unique emails.
    """
    db_url = f"sqlite:///file:test_api_{request.module.__name__}?mode=memory&cache=shared&uri=true"
    engine = create_store_engine(db_url)
    notifier = RecordingNotifier()

    AccountStore(engine).create(
        Account(
            email=ADMIN_EMAIL,
            hashed_password=SecretHasher(rounds=4).hash(ADMIN_PASSWORD),
            role="admin",
            full_name="Test Admin",
            email_verified=True,
        )
    )

    app.router.lifespan_context = _patch_lifespan(engine, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, notifier

    engine.dispose()


@pytest.fixture
def admin_credentials() -> tuple[str, str]:
    """(email, password) of the verified admin seeded by api_client."""
    return ADMIN_EMAIL, ADMIN_PASSWORD
