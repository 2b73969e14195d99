"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. AccountStore, OTPStore and SessionStore are
the repositories; the _row_to_* functions are the mappers. Service code never
touches SQL directly.

Concurrency:
  Nothing here takes a process-wide lock. Every per-(account, purpose) or
  per-account mutation is a single transaction or a single conditional
  statement, so the stores stay correct when several workers share one DB:

  OTPStore.replace() deletes and inserts inside one transaction. With a
      newer_than guard it only inserts when no record newer than the cutoff
      survives the delete, which makes the resend rate check atomic.
  SessionStore.swap() is UPDATE ... WHERE refresh_digest = :expected, a
      compare-and-set. rowcount tells the caller whether it won.

  UNIQUE(account_id, purpose) on otp_codes is a backstop only. The at-most-one
  invariant is enforced by replace(); the constraint turns a lost race on
  engines without SQLite's writer lock into an IntegrityError we report.

Timestamps:
  DateTime columns hold UTC. SQLite drops tzinfo on the way in, so _as_utc()
  re-attaches it on the way out.

Security:
  All queries use bound parameters. No f-strings in SQL. Only digests are
  stored -- never plaintext passwords, codes or refresh credentials.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict
from auth.models import Account, OTPRecord, SessionRecord

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("hashed_password", Text, nullable=False),
    Column("full_name", String(255), nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default="occupant"),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    sqlite_autoincrement=True,
)

_otp_codes = Table(
    "otp_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False),
    Column("purpose", String(30), nullable=False),  # "verify-email", "reset-password"
    Column("code_hash", Text, nullable=False),  # bcrypt digest
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("account_id", "purpose", name="uq_otp_account_purpose"),
    # Ids are never reused, so consume() of a superseded record cannot hit its replacement.
    sqlite_autoincrement=True,
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("account_id", Integer, primary_key=True, autoincrement=False),
    Column("refresh_digest", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# Columns AccountStore.update_fields() may touch. id/email/created_at are fixed.
_ACCOUNT_MUTABLE_FIELDS = frozenset({"hashed_password", "full_name", "role", "email_verified", "last_login"})


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore WAL silently.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Create an Engine for db_url and make sure all tables exist.

    The three stores share one engine; the caller owns it and disposes it on
    shutdown.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountStore:
    """Reference account repository.

    The credential core depends only on find_by_email, find_by_id, create and
    update_fields; any object with those methods can stand in.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, account: Account) -> Account:
        """Insert a new account and return it with id and created_at filled in.

        Raises Conflict if the email is already registered. The service checks
        first; this catches the race where two registrations pass that check.
        """
        email = normalize_email(account.email)
        created_at = _now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _accounts.insert().values(
                        email=email,
                        hashed_password=account.hashed_password,
                        full_name=account.full_name,
                        role=account.role,
                        email_verified=account.email_verified,
                        created_at=created_at,
                    )
                )
                account_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise Conflict("Email already exists.") from exc
        return Account(
            id=account_id,
            email=email,
            hashed_password=account.hashed_password,
            full_name=account.full_name,
            role=account.role,
            email_verified=account.email_verified,
            created_at=created_at,
        )

    def find_by_email(self, email: str) -> Account | None:
        """Look up an account by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_fields(self, account_id: int, **fields) -> bool:
        """Update mutable fields on an existing account.

        Unknown field names raise ValueError rather than being silently
        dropped. Returns True if a row was updated, False if account_id was
        not found.
        """
        unknown = set(fields) - _ACCOUNT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if not fields:
            return False
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


class OTPStore:
    """Keyed store of OTP records, at most one per (account, purpose)."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def replace(self, record: OTPRecord, newer_than: datetime | None = None) -> OTPRecord | None:
        """Supersede any record for (account, purpose) with record, atomically.

        Without newer_than: delete-then-insert, unconditionally.
        With newer_than: only records created at or before the cutoff are
            deleted, and the insert happens only if nothing newer survived.
            Returns None when a newer record blocked the insert.

        Also returns None when a concurrent writer won the race and the
        backstop constraint rejected this insert.
        """
        key = (_otp_codes.c.account_id == record.account_id) & (_otp_codes.c.purpose == record.purpose)
        try:
            with self.engine.begin() as conn:
                delete = _otp_codes.delete().where(key)
                if newer_than is not None:
                    delete = delete.where(_otp_codes.c.created_at <= newer_than)
                # The DELETE takes the write lock before the check below runs.
                conn.execute(delete)
                if newer_than is not None:
                    blocking = conn.execute(select(_otp_codes.c.id).where(key)).first()
                    if blocking is not None:
                        return None
                result = conn.execute(
                    _otp_codes.insert().values(
                        account_id=record.account_id,
                        purpose=record.purpose,
                        code_hash=record.code_hash,
                        created_at=record.created_at,
                        expires_at=record.expires_at,
                    )
                )
                record_id = result.inserted_primary_key[0]
        except IntegrityError:
            return None
        return OTPRecord(
            id=record_id,
            account_id=record.account_id,
            purpose=record.purpose,
            code_hash=record.code_hash,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )

    def find(self, account_id: int, purposes) -> list[OTPRecord]:
        """Return the records for account_id restricted to purposes, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _otp_codes.select()
                .where((_otp_codes.c.account_id == account_id) & (_otp_codes.c.purpose.in_(list(purposes))))
                .order_by(_otp_codes.c.created_at.desc(), _otp_codes.c.id.desc())
            ).fetchall()
        return [_row_to_otp(r) for r in rows]

    def latest(self, account_id: int, purpose: str) -> OTPRecord | None:
        records = self.find(account_id, [purpose])
        return records[0] if records else None

    def delete(self, record_id: int) -> bool:
        """Delete one record by id. Idempotent: False if it was already gone."""
        with self.engine.begin() as conn:
            result = conn.execute(_otp_codes.delete().where(_otp_codes.c.id == record_id))
        return result.rowcount > 0

    def delete_all(self, account_id: int, purpose: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_codes.delete().where((_otp_codes.c.account_id == account_id) & (_otp_codes.c.purpose == purpose))
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore:
    """Current refresh-credential digest per account. One row per account."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, account_id: int) -> SessionRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.account_id == account_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def save(self, record: SessionRecord) -> None:
        """Store record, overwriting any existing session for the account.

        UPDATE first, INSERT if nothing was updated. If a concurrent save
        inserted in between, the primary key rejects ours and we overwrite
        theirs -- last writer wins, as with any fresh login.
        """
        values = {
            "refresh_digest": record.refresh_digest,
            "expires_at": record.expires_at,
            "updated_at": record.updated_at,
        }
        where = _sessions.c.account_id == record.account_id
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.update().where(where).values(**values))
            if result.rowcount > 0:
                return
        try:
            with self.engine.begin() as conn:
                conn.execute(_sessions.insert().values(account_id=record.account_id, **values))
        except IntegrityError:
            with self.engine.begin() as conn:
                conn.execute(_sessions.update().where(where).values(**values))

    def swap(self, account_id: int, expected_digest: str, record: SessionRecord) -> bool:
        """Replace the stored digest only if it still equals expected_digest.

        Returns True if this call won. A False return means a concurrent
        rotate, login or revoke changed the row first.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.account_id == account_id) & (_sessions.c.refresh_digest == expected_digest))
                .values(
                    refresh_digest=record.refresh_digest,
                    expires_at=record.expires_at,
                    updated_at=record.updated_at,
                )
            )
        return result.rowcount > 0

    def clear(self, account_id: int) -> bool:
        """Delete the session for account_id. Idempotent: False if there was none."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        full_name=row.full_name,
        role=row.role,
        email_verified=bool(row.email_verified),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_otp(row) -> OTPRecord:
    return OTPRecord(
        id=row.id,
        account_id=row.account_id,
        purpose=row.purpose,
        code_hash=row.code_hash,
        created_at=_as_utc(row.created_at),
        expires_at=_as_utc(row.expires_at),
    )


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        account_id=row.account_id,
        refresh_digest=row.refresh_digest,
        expires_at=_as_utc(row.expires_at),
        updated_at=_as_utc(row.updated_at),
    )
