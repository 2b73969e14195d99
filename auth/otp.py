"""
auth/otp.py -- One-time code generation, verification and rate limiting.

State machine per (account, purpose):

  (none) --create--> live --verify ok--> live (caller consumes) --consume--> (none)
                      |
                      +--now > expires_at--> expired (verify fails, row kept)
                      +--create / invalidate_all--> superseded (row deleted)

verify() never deletes; the caller decides when to consume. Email
verification consumes after marking the account verified. Password reset
consumes before changing the password, and a False from consume() means a
newer code superseded this one, so the reset is refused.

Codes are hashed with the same SecretHasher as passwords. Expiry granularity
is minutes; all timestamps are absolute UTC.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import secrets
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from auth.errors import Conflict, Expired, Mismatch, NotFound, RateLimited, ValidationError
from auth.hashing import SecretHasher
from auth.models import PURPOSES, OTPRecord
from auth.store import OTPStore

logger = logging.getLogger("credkeeper.otp")

CODE_LENGTH = 6


def generate_code() -> str:
    """Return a 6-digit code drawn uniformly from 000000-999999.

    secrets.randbelow uses the OS CSPRNG; zero-padding keeps leading zeros.
    """
    return f"{secrets.randbelow(10**CODE_LENGTH):0{CODE_LENGTH}d}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_purpose(purpose: str) -> None:
    if purpose not in PURPOSES:
        raise ValidationError("Invalid OTP purpose.")


class OTPManager:
    """Create, verify, invalidate and rate-limit one-time codes.

    generator and clock are injectable so tests can script codes and move
    time without sleeping.
    """

    def __init__(
        self,
        store: OTPStore,
        hasher: SecretHasher,
        generator: Callable[[], str] = generate_code,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.generator = generator
        self.clock = clock

    def create(
        self,
        account_id: int,
        purpose: str,
        ttl_minutes: int,
        min_interval_seconds: int | None = None,
    ) -> str:
        """Issue a fresh code for (account_id, purpose) and return the plaintext.

        Any existing record for the pair is superseded in the same
        transaction. With min_interval_seconds the replacement only happens
        if no record newer than the interval exists at write time; otherwise
        RateLimited is raised and nothing changes.
        """
        _check_purpose(purpose)
        if ttl_minutes < 1:
            raise ValidationError("OTP lifetime must be at least one minute.")
        code = self.generator()
        now = self.clock()
        record = OTPRecord(
            account_id=account_id,
            purpose=purpose,
            code_hash=self.hasher.hash(code),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )
        newer_than = None
        if min_interval_seconds is not None:
            newer_than = now - timedelta(seconds=min_interval_seconds)
        stored = self.store.replace(record, newer_than=newer_than)
        if stored is None:
            if min_interval_seconds is not None:
                self.check_rate(account_id, purpose, min_interval_seconds)
                raise RateLimited(min_interval_seconds)
            raise Conflict("A newer code was issued concurrently.")
        logger.info("OTP issued account_id=%s purpose=%s", account_id, purpose)
        return code

    def verify(self, account_id: int, code: str, allowed_purposes: Iterable[str]) -> OTPRecord:
        """Return the record that code unlocks, without deleting it.

        Raises:
            NotFound: no record exists for any of allowed_purposes.
            Expired:  records exist but every one is past expires_at.
            Mismatch: no unexpired record matches code.
        """
        purposes = set(allowed_purposes)
        for purpose in purposes:
            _check_purpose(purpose)
        records = self.store.find(account_id, purposes)
        if not records:
            raise NotFound("Invalid or expired OTP.")
        now = self.clock()
        live = [r for r in records if now <= r.expires_at]
        if not live:
            raise Expired("Invalid or expired OTP.")
        for record in live:
            if self.hasher.verify(code, record.code_hash):
                return record
        logger.info("OTP mismatch account_id=%s", account_id)
        raise Mismatch("Invalid OTP.")

    def consume(self, record: OTPRecord) -> bool:
        """Delete the verified record. Idempotent; False if it was already gone."""
        return self.store.delete(record.id)

    def invalidate_all(self, account_id: int, purpose: str) -> int:
        _check_purpose(purpose)
        return self.store.delete_all(account_id, purpose)

    def check_rate(self, account_id: int, purpose: str, min_interval_seconds: int) -> None:
        """Raise RateLimited if the current record is younger than min_interval_seconds.

        Read-only guard. The atomic version of this check runs again inside
        create() when it is given min_interval_seconds.
        """
        _check_purpose(purpose)
        record = self.store.latest(account_id, purpose)
        if record is None:
            return
        elapsed = (self.clock() - record.created_at).total_seconds()
        if elapsed < min_interval_seconds:
            raise RateLimited(math.ceil(min_interval_seconds - elapsed))
