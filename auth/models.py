"""
auth/models.py -- Domain dataclasses for credential lifecycle entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the shape.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

PURPOSE_VERIFY_EMAIL = "verify-email"
PURPOSE_RESET_PASSWORD = "reset-password"
PURPOSES: frozenset[str] = frozenset({PURPOSE_VERIFY_EMAIL, PURPOSE_RESET_PASSWORD})

ROLES: frozenset[str] = frozenset({"occupant", "admin"})


@dataclass
class Account:
    """A registered identity, owned by the account repository.

    email is always stored lower-cased and stripped. hashed_password is a
    bcrypt digest; the plaintext never leaves the request that carried it.
    The refresh-credential digest lives in the session store, not here.
    """

    email: str
    hashed_password: str
    role: str = "occupant"  # "occupant" or "admin"
    full_name: str = ""
    id: int | None = None
    email_verified: bool = False
    created_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class OTPRecord:
    """A one-time code awaiting use. Immutable once stored.

    code_hash is the bcrypt digest of the 6-digit code. All timestamps are
    timezone-aware UTC.
    """

    account_id: int
    purpose: str  # "verify-email" or "reset-password"
    code_hash: str
    created_at: datetime
    expires_at: datetime
    id: int | None = None


@dataclass(frozen=True)
class SessionRecord:
    """The single active refresh credential for an account, stored as a digest."""

    account_id: int
    refresh_digest: str
    expires_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    account_id: int
    email: str
    role: str
    expires_at: datetime
