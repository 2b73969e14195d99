"""
auth/hashing.py -- One-way hashing for passwords, one-time codes and refresh credentials.

Security design decisions:
  Passwords and OTP codes: bcrypt via the bcrypt package directly (no passlib
       wrapper). Both are low-entropy secrets, so bcrypt's cost factor is what
       makes brute force expensive. A 6-digit code has only 10^6 values; the
       cost factor plus the short expiry is the defence for stolen digests.

  72-byte limit: bcrypt 4.x raises on inputs longer than 72 bytes instead of
       truncating. We check first and raise InputTooLarge, so callers get a
       typed validation failure rather than a ValueError from the C layer.

  Timing equalization: dummy_verify() runs bcrypt against a digest computed
       once per hasher, so a login for an unknown email costs the same as a
       login with a wrong password.

  Refresh credentials: 256 bits of entropy, so bcrypt's slowness buys
       nothing. token_digest() is HMAC-SHA256 keyed with the server secret --
       an attacker holding a DB dump still cannot confirm a guessed value
       without the key.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac

import bcrypt

from auth.errors import InputTooLarge

MAX_SECRET_BYTES = 72

_DUMMY_SECRET = "credkeeper_timing_dummy"


class SecretHasher:
    """bcrypt hasher shared by the password and OTP paths.

    Usage:
        hasher = SecretHasher(rounds=10)
        digest = hasher.hash("Secret123!")
        hasher.verify("Secret123!", digest)   # True
    """

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = rounds
        self._dummy_hash: str | None = None

    def hash(self, secret: str) -> str:
        """Return a salted bcrypt digest of secret.

        Raises InputTooLarge when the UTF-8 encoding exceeds 72 bytes.
        """
        encoded = _encode(secret)
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, secret: str, digest: str) -> bool:
        """Return True if secret matches digest.

        Over-long input and malformed digests both return False; neither can
        match a digest this hasher produced.
        """
        try:
            return bcrypt.checkpw(_encode(secret), digest.encode("utf-8"))
        except (InputTooLarge, ValueError):
            return False

    def dummy_verify(self, secret: str) -> bool:
        """Burn one bcrypt verification against a fixed digest. Always False."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(_DUMMY_SECRET)
        self.verify(secret, self._dummy_hash)
        return False


def token_digest(raw: str, key: str) -> str:
    """Return HMAC-SHA256(key, raw) as hex. Deterministic, so it can be compared directly."""
    return hmac.new(key.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256).hexdigest()


def _encode(secret: str) -> bytes:
    encoded = secret.encode("utf-8")
    if len(encoded) > MAX_SECRET_BYTES:
        raise InputTooLarge(f"Secrets are limited to {MAX_SECRET_BYTES} bytes.")
    return encoded
