"""
auth/tokens.py -- Access-token signing and refresh-credential rotation.

Security design decisions:
  Access tokens: python-jose JWT with HS256, 15 minute absolute expiry. They
       carry account id (sub), email and role and are verified without a store
       lookup. They are never persisted, so they cannot be revoked; the short
       lifetime bounds that.

  Refresh credentials: "<account_id>.<secret>.<tag>". secret is
       secrets.token_urlsafe(32) (256 bits). tag is an HMAC over
       "<account_id>.<secret>" under the current signing key, so a value the
       server never minted fails to parse and cannot be used to touch another
       account's session. Only token_digest(raw) is stored, one per account,
       7 day absolute expiry.

  Rotation-on-use: every rotate() mints a new credential and compare-and-sets
       the stored digest. Presenting a well-formed credential whose digest no
       longer matches means an old value was replayed -- the session is
       revoked, forcing the legitimate holder to log in again.

  Key rollover: SigningKeyProvider signs with the current key and verifies
       against the current key plus PREVIOUS_SECRET_KEYS, so changing the key
       does not log everyone out.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import Expired, InvalidCredential, InvalidSignature
from auth.hashing import token_digest
from auth.models import AccessClaims, Account, SessionRecord, TokenPair
from auth.store import SessionStore

logger = logging.getLogger("credkeeper.tokens")

_ALGORITHM = "HS256"

ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)

# Length of the hex HMAC tag appended to refresh credentials (128 bits).
_TAG_LENGTH = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SigningKeyProvider:
    """Key material for access tokens and refresh-credential tags.

    verification_keys is ordered: current key first, then retired keys.
    """

    def __init__(self, signing_key: str, previous_keys: list[str] | None = None) -> None:
        self.signing_key = signing_key
        self.verification_keys = [signing_key, *(previous_keys or [])]

    @classmethod
    def from_settings(cls, settings) -> "SigningKeyProvider":
        return cls(settings.secret_key, settings.previous_keys)


class TokenIssuer:
    """Mint, verify, rotate and revoke access/refresh credential pairs.

    Usage:
        issuer = TokenIssuer(SessionStore(engine), SigningKeyProvider(key))
        pair = issuer.issue(account)
        claims = issuer.verify_access(pair.access_token)
        pair = issuer.rotate(pair.refresh_token, accounts.find_by_id)
        issuer.revoke(account.id)
    """

    def __init__(
        self,
        sessions: SessionStore,
        keys: SigningKeyProvider,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.keys = keys
        self.clock = clock

    # ------------------------------------------------------------------
    # Issue / rotate / revoke
    # ------------------------------------------------------------------

    def issue(self, account: Account) -> TokenPair:
        """Mint a new pair and overwrite the account's stored session."""
        now = self.clock()
        raw = self._new_refresh_credential(account.id)
        self.sessions.save(self._session_record(account.id, raw, now))
        logger.info("Session issued account_id=%s", account.id)
        return self._pair(account, raw, now)

    def rotate(self, presented: str, load_account: Callable[[int], Account | None]) -> TokenPair:
        """Exchange a refresh credential for a new pair. The old value stops working.

        Raises InvalidCredential when the credential is malformed, forged,
        expired, replayed, or its account is gone. Replay also revokes the
        session.
        """
        parsed = self._parse(presented)
        if parsed is None:
            raise InvalidCredential()
        account_id, minted_with = parsed

        session = self.sessions.get(account_id)
        if session is None:
            raise InvalidCredential()

        presented_digest = token_digest(presented, minted_with)
        if not hmac.compare_digest(presented_digest, session.refresh_digest):
            # Well-formed but not current: an already-rotated value was replayed.
            logger.warning("Refresh credential reuse detected account_id=%s; revoking session", account_id)
            self.sessions.clear(account_id)
            raise InvalidCredential()

        now = self.clock()
        if now > session.expires_at:
            self.sessions.clear(account_id)
            raise InvalidCredential()

        account = load_account(account_id)
        if account is None:
            self.sessions.clear(account_id)
            raise InvalidCredential()

        raw = self._new_refresh_credential(account_id)
        if not self.sessions.swap(account_id, session.refresh_digest, self._session_record(account_id, raw, now)):
            # A concurrent rotate/login/logout changed the row after we read it.
            raise InvalidCredential()
        logger.info("Session rotated account_id=%s", account_id)
        return self._pair(account, raw, now)

    def revoke(self, account_id: int) -> None:
        """End the account's session. Safe to call when there is none."""
        if self.sessions.clear(account_id):
            logger.info("Session revoked account_id=%s", account_id)

    def resolve(self, presented: str) -> int | None:
        """Return the account id a refresh credential was minted for, or None.

        Only checks format and tag. Says nothing about whether the credential
        is still the current one.
        """
        parsed = self._parse(presented)
        return parsed[0] if parsed is not None else None

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def create_access_token(self, account: Account, now: datetime | None = None) -> str:
        issued_at = now or self.clock()
        payload = {
            "sub": str(account.id),
            "email": account.email,
            "role": account.role,
            "type": "access",
            "iat": issued_at,
            "exp": issued_at + ACCESS_TOKEN_TTL,
        }
        return jwt.encode(payload, self.keys.signing_key, algorithm=_ALGORITHM)

    def verify_access(self, token: str) -> AccessClaims:
        """Check signature and expiry; return the claims.

        Every verification key is tried so tokens signed before a key
        rollover stay valid until they expire.

        Raises:
            Expired:          signature valid but exp is in the past.
            InvalidSignature: no key verifies the token, or claims are malformed.
        """
        for key in self.keys.verification_keys:
            try:
                payload = jwt.decode(token, key, algorithms=[_ALGORITHM])
            except ExpiredSignatureError as exc:
                raise Expired("Access token has expired.") from exc
            except JWTError:
                continue
            return _claims_from_payload(payload)
        raise InvalidSignature()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _parse(self, presented: str) -> tuple[int, str] | None:
        """Split and authenticate a refresh credential.

        Returns (account_id, key the tag verified under). The stored digest
        was computed with that same key when the credential was minted.
        """
        parts = presented.split(".") if presented else []
        if len(parts) != 3:
            return None
        account_part, secret, tag = parts
        if not (account_part.isascii() and account_part.isdigit()) or not secret:
            return None
        message = f"{account_part}.{secret}"
        for key in self.keys.verification_keys:
            if hmac.compare_digest(_tag(message, key).encode("ascii"), tag.encode("utf-8")):
                return int(account_part), key
        return None

    def _new_refresh_credential(self, account_id: int) -> str:
        message = f"{account_id}.{secrets.token_urlsafe(32)}"
        return f"{message}.{_tag(message, self.keys.signing_key)}"

    def _session_record(self, account_id: int, raw: str, now: datetime) -> SessionRecord:
        return SessionRecord(
            account_id=account_id,
            refresh_digest=token_digest(raw, self.keys.signing_key),
            expires_at=now + REFRESH_TOKEN_TTL,
            updated_at=now,
        )

    def _pair(self, account: Account, raw: str, now: datetime) -> TokenPair:
        return TokenPair(
            access_token=self.create_access_token(account, now),
            refresh_token=raw,
            expires_in=int(ACCESS_TOKEN_TTL.total_seconds()),
        )


def _tag(message: str, key: str) -> str:
    return token_digest(f"refresh:{message}", key)[:_TAG_LENGTH]


def _claims_from_payload(payload: dict) -> AccessClaims:
    if payload.get("type") != "access":
        raise InvalidSignature("Not an access token.")
    try:
        return AccessClaims(
            account_id=int(payload["sub"]),
            email=payload["email"],
            role=payload["role"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidSignature("Malformed access token claims.") from exc
