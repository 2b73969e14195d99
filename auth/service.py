"""
auth/service.py -- Credential lifecycle flows: register, verify, reset, login, refresh, logout.

CredentialService composes the account repository, OTPManager, TokenIssuer
and a notifier. Each flow is an explicit sequence; the rollback policy is:

  State mutations (account insert, OTP replace, password update, session
      write) are the transaction boundary. If one raises, the flow stops and
      the typed error propagates.
  Notifications run after the state they describe is committed. Their
      failures are logged and swallowed -- a user who misses an email can
      ask for a resend, while undoing a committed registration would not
      help anyone.

Enumeration resistance:
  request_password_reset() returns the same result whether or not the email
      is registered, and pays one bcrypt hash on both paths.
  login() returns one Unauthorized for unknown email and wrong password, and
      burns a bcrypt verify in both cases so timing does not differ.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re

from email_validator import EmailNotValidError, validate_email

from auth.errors import Conflict, Forbidden, NotFound, SamePassword, Unauthorized, ValidationError
from auth.hashing import MAX_SECRET_BYTES, SecretHasher
from auth.models import (
    PURPOSE_RESET_PASSWORD,
    PURPOSE_VERIFY_EMAIL,
    PURPOSES,
    ROLES,
    AccessClaims,
    Account,
    OTPRecord,
    TokenPair,
)
from auth.notifier import (
    NOTIFY_RESEND_OTP,
    NOTIFY_RESET_PASSWORD,
    NOTIFY_RESET_SUCCESS,
    NOTIFY_VERIFY_EMAIL,
    Notifier,
)
from auth.otp import OTPManager, generate_code, utcnow
from auth.store import normalize_email
from auth.tokens import TokenIssuer

logger = logging.getLogger("credkeeper.auth")

_PASSWORD_PATTERN = re.compile(r"^[A-Za-z0-9@$!%*?&]{8,}$")
_CODE_PATTERN = re.compile(r"^[0-9]{6}$")

MIN_PASSWORD_LENGTH = 8


class CredentialService:
    """Facade over the credential core. One instance per application.

    Usage:
        service = CredentialService(accounts, otp, issuer, hasher, notifier)
        service.register("a@x.com", "Secret123!")
        service.verify("a@x.com", "123456")
        account, pair = service.login("a@x.com", "Secret123!")
        pair = service.refresh(pair.refresh_token)
        service.logout(pair.refresh_token)
    """

    def __init__(
        self,
        accounts,
        otp: OTPManager,
        issuer: TokenIssuer,
        hasher: SecretHasher,
        notifier: Notifier,
        otp_ttl_minutes: int = 60,
        resend_interval_seconds: int = 30,
    ) -> None:
        self.accounts = accounts
        self.otp = otp
        self.issuer = issuer
        self.hasher = hasher
        self.notifier = notifier
        self.otp_ttl_minutes = otp_ttl_minutes
        self.resend_interval_seconds = resend_interval_seconds

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, full_name: str = "", role: str = "occupant") -> Account:
        """Create an unverified account and send it a verify-email code.

        Raises ValidationError for malformed input and Conflict if the email
        is taken. Notification failure does not roll the account back.
        """
        email = _check_email(email)
        _check_password(password, strict=True)
        if role not in ROLES:
            raise ValidationError("Invalid role.")
        if self.accounts.find_by_email(email) is not None:
            raise Conflict("Email already exists.")

        account = self.accounts.create(
            Account(
                email=email,
                hashed_password=self.hasher.hash(password),
                full_name=full_name.strip(),
                role=role,
            )
        )
        code = self.otp.create(account.id, PURPOSE_VERIFY_EMAIL, self.otp_ttl_minutes)
        logger.info("Account registered account_id=%s", account.id)
        self._notify(NOTIFY_VERIFY_EMAIL, account, self._code_payload(code))
        return account

    def verify(self, email: str, code: str) -> OTPRecord:
        """Check a code sent to email; return the matched record.

        A verify-email code marks the account verified and is then consumed.
        A reset-password code is only confirmed -- it stays live so
        complete_password_reset() can use it.
        """
        email = _check_email(email)
        code = _check_code(code)
        account = self._require_account(email)
        record = self.otp.verify(account.id, code, PURPOSES)
        if record.purpose == PURPOSE_VERIFY_EMAIL:
            if not account.email_verified:
                self.accounts.update_fields(account.id, email_verified=True)
            self.otp.consume(record)
            logger.info("Email verified account_id=%s", account.id)
        return record

    def resend(self, email: str, purpose: str) -> None:
        """Replace the code for purpose and send the new one.

        Raises RateLimited if the current code is younger than the resend
        interval. check_rate() fails fast; the guarded create() repeats the
        check inside the replace transaction so two concurrent resends cannot
        both succeed.
        """
        email = _check_email(email)
        purpose = (purpose or "").strip().lower()
        if purpose not in PURPOSES:
            raise ValidationError("Invalid OTP purpose.")
        account = self._require_account(email)
        if purpose == PURPOSE_VERIFY_EMAIL and account.email_verified:
            raise ValidationError("Email is already verified.")

        self.otp.check_rate(account.id, purpose, self.resend_interval_seconds)
        code = self.otp.create(
            account.id,
            purpose,
            self.otp_ttl_minutes,
            min_interval_seconds=self.resend_interval_seconds,
        )
        self._notify(NOTIFY_RESEND_OTP, account, {**self._code_payload(code), "purpose": purpose})

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> None:
        """Send a reset code if email is registered. Same outcome either way."""
        email = _check_email(email)
        account = self.accounts.find_by_email(email)
        if account is None:
            # Equalize timing with the known-email path, which hashes a new code.
            self.hasher.hash(generate_code())
            logger.info("Password reset requested for unknown email")
            return
        self.otp.invalidate_all(account.id, PURPOSE_RESET_PASSWORD)
        code = self.otp.create(account.id, PURPOSE_RESET_PASSWORD, self.otp_ttl_minutes)
        self._notify(NOTIFY_RESET_PASSWORD, account, self._code_payload(code))

    def complete_password_reset(self, email: str, code: str, new_password: str) -> None:
        """Set a new password using a reset-password code.

        Raises SamePassword if new_password equals the current one. On
        success the code is consumed and any open session is revoked.

        The code is consumed before the password changes. If a newer reset
        request superseded it after verify(), the consume finds nothing and
        NotFound is raised with the password untouched.
        """
        email = _check_email(email)
        code = _check_code(code)
        _check_password(new_password)
        account = self._require_account(email)
        record = self.otp.verify(account.id, code, [PURPOSE_RESET_PASSWORD])
        if self.hasher.verify(new_password, account.hashed_password):
            raise SamePassword()

        hashed_password = self.hasher.hash(new_password)
        if not self.otp.consume(record):
            raise NotFound("Invalid or expired OTP.")
        self.accounts.update_fields(account.id, hashed_password=hashed_password)
        self.issuer.revoke(account.id)
        logger.info("Password reset account_id=%s", account.id)
        self._notify(NOTIFY_RESET_SUCCESS, account, {})

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> tuple[Account, TokenPair]:
        """Authenticate and open a session, replacing any existing one.

        Raises Unauthorized for unknown email or wrong password (same
        message, same cost) and Forbidden if the email is not verified yet.
        """
        email = normalize_email(email or "")
        password = password or ""
        account = self.accounts.find_by_email(email) if email else None
        if account is None:
            # Equalize timing -- do NOT return before running bcrypt.
            self.hasher.dummy_verify(password)
            raise Unauthorized("Incorrect email or password.")
        if not self.hasher.verify(password, account.hashed_password):
            raise Unauthorized("Incorrect email or password.")
        if not account.email_verified:
            raise Forbidden("Please verify your email first.")

        pair = self.issuer.issue(account)
        self.accounts.update_fields(account.id, last_login=utcnow().isoformat())
        logger.info("Login account_id=%s", account.id)
        return account, pair

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh credential. Raises InvalidCredential on any failure."""
        return self.issuer.rotate(refresh_token or "", self.accounts.find_by_id)

    def logout(self, refresh_token: str | None) -> None:
        """End the session the credential belongs to. Never raises for bad input."""
        account_id = self.issuer.resolve(refresh_token or "")
        if account_id is None:
            return
        self.issuer.revoke(account_id)

    def authenticate(self, access_token: str) -> AccessClaims:
        """Verify an access token. Raises Expired or InvalidSignature."""
        return self.issuer.verify_access(access_token)

    def revoke_account_sessions(self, account_id: int) -> None:
        """Administrative logout of another account."""
        if self.accounts.find_by_id(account_id) is None:
            raise NotFound("Account not found.")
        self.issuer.revoke(account_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_account(self, email: str) -> Account:
        account = self.accounts.find_by_email(email)
        if account is None:
            raise NotFound("User not found.")
        return account

    def _code_payload(self, code: str) -> dict:
        return {"code": code, "expires_in_minutes": self.otp_ttl_minutes}

    def _notify(self, purpose: str, account: Account, payload: dict) -> None:
        try:
            self.notifier.send(purpose, account, payload)
        except Exception:
            logger.exception("Notification failed purpose=%s account_id=%s", purpose, account.id)


# ---------------------------------------------------------------------------
# Input checks
# ---------------------------------------------------------------------------


def _check_email(email: str) -> str:
    """Validate address syntax with email-validator; return the lower-cased form.

    No DNS lookups: deliverability is the notifier's problem.
    """
    try:
        result = validate_email(normalize_email(email or ""), check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError("Email must be valid.") from exc
    return normalize_email(result.normalized)


def _check_password(password: str, strict: bool = False) -> None:
    """Enforce the password policy.

    strict adds the registration character-class rule. Both forms cap the
    length at bcrypt's 72-byte limit.
    """
    password = password or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if len(password.encode("utf-8")) > MAX_SECRET_BYTES:
        raise ValidationError(f"Password must be at most {MAX_SECRET_BYTES} bytes.")
    if strict and not _PASSWORD_PATTERN.fullmatch(password):
        raise ValidationError(
            "Password must be at least 8 characters long and may include letters, numbers, and @$!%*?&."
        )


def _check_code(code: str) -> str:
    code = str(code or "").strip()
    if not _CODE_PATTERN.match(code):
        raise ValidationError("Invalid OTP format.")
    return code
