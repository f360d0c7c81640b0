"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and one-time codes.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account / _row_to_code are the mappers. Services never touch SQL.

This module is also the credential policy point: password hashing on create,
timing-equalized password checks, and the failed-login counter with its
lockout transition all live here so no caller can bypass them.

Concurrency:
  Counters (failed_logins, code attempts) are changed with single UPDATE
  statements that compute the new value in SQL (col = col + 1), so two
  concurrent failures can never under-count. Status and password changes
  are compare-and-swap on the version column; a lost race raises
  ConflictError and the caller re-reads.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import ACTIVE, LOCKED, UNVERIFIED, Account, OneTimeCode
from auth.tokens import burn_password_check, hash_password
from auth.tokens import verify_password as _check_password
from core.config import get_settings
from core.errors import ConflictError, DuplicateError
from core.validation import normalize_email

logger = logging.getLogger("eventgate.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'eventgate_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # normalized lowercase
    Column("display_name", String(100), nullable=False),
    Column("hashed_password", Text),  # NULL for invite placeholders
    Column("status", String(20), nullable=False, server_default=UNVERIFIED),
    Column("failed_logins", Integer, nullable=False, server_default="0"),
    Column("lock_expires_at", String(32)),  # ISO 8601, only while locked
    Column("version", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_codes = Table(
    "one_time_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("consumed", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("superseded", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("consumed_at", String(32)),
    Index("ix_codes_live", "account_id", "purpose", "consumed", "expires_at"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    """Fixed-width ISO 8601 so stored timestamps compare correctly as text."""
    return value.isoformat(timespec="microseconds") if value is not None else None


def _parse_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO 8601 timestamp; naive values are treated as UTC."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and OneTimeCode entities.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account = store.create_account("a@x.com", "Secret123!", "Alice")
        store.record_failed_login(account)
        store.close()
    """

    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or get_settings().database_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_plain: str | None,
        display_name: str,
        status: str = UNVERIFIED,
    ) -> Account:
        """Insert a new account and return it.

        password_plain may be None only for invite placeholders. Raises
        DuplicateError if the normalized email is already taken; the unique
        index is the arbiter, so two concurrent registrations cannot both win.
        """
        hashed = hash_password(password_plain) if password_plain is not None else None
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _accounts.insert().values(
                        email=normalize_email(email),
                        display_name=display_name,
                        hashed_password=hashed,
                        status=status,
                        failed_logins=0,
                        version=0,
                        created_at=_to_iso(_now()),
                    )
                )
                conn.commit()
                account_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateError() from exc
        return self.get_by_id(account_id)

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_many(self, account_ids: list[int]) -> list[Account]:
        """Return the accounts for the given ids, ordered by email."""
        if not account_ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                _accounts.select().where(_accounts.c.id.in_(account_ids)).order_by(_accounts.c.email)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    # ------------------------------------------------------------------
    # Credential policy
    # ------------------------------------------------------------------

    def verify_password(self, account: Account, password_plain: str) -> bool:
        """Return True if password_plain matches the account's hash.

        Accounts without a password (invite placeholders) never match, but
        bcrypt still runs so timing does not reveal them [C1].
        """
        if account.hashed_password is None:
            burn_password_check(password_plain)
            return False
        return _check_password(password_plain, account.hashed_password)

    def record_failed_login(self, account: Account) -> Account:
        """Count a failed login; lock the account when the threshold is reached.

        One UPDATE computes the new counter and, from the same value, the
        status and lock expiry. Concurrent failures serialize on the row.
        """
        settings = get_settings()
        lock_until = _to_iso(_now() + timedelta(seconds=settings.lockout_seconds))
        reached = _accounts.c.failed_logins + 1 >= settings.lockout_threshold
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account.id)
                .values(
                    failed_logins=_accounts.c.failed_logins + 1,
                    status=case((reached, LOCKED), else_=_accounts.c.status),
                    lock_expires_at=case((reached, lock_until), else_=_accounts.c.lock_expires_at),
                    version=_accounts.c.version + 1,
                )
            )
            updated = self._fetch_account(conn, account.id)
        if updated.status == LOCKED and account.status != LOCKED:
            logger.warning("Account %d locked after %d failed logins", updated.id, updated.failed_logins)
        return updated

    def record_successful_login(self, account: Account) -> Account:
        """Reset the failure counter and clear any lock."""
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account.id)
                .values(
                    failed_logins=0,
                    status=ACTIVE,
                    lock_expires_at=None,
                    version=_accounts.c.version + 1,
                )
            )
            return self._fetch_account(conn, account.id)

    # ------------------------------------------------------------------
    # Compare-and-swap transitions
    # ------------------------------------------------------------------

    def activate(self, account: Account) -> Account:
        """Unverified -> Active."""
        return self._compare_and_swap(account, status=ACTIVE, failed_logins=0, lock_expires_at=None)

    def unlock(self, account: Account) -> Account:
        """Locked -> Active once the lock has elapsed. Starts a fresh failure window."""
        return self._compare_and_swap(account, status=ACTIVE, failed_logins=0, lock_expires_at=None)

    def set_password(self, account: Account, password_plain: str) -> Account:
        return self._compare_and_swap(account, hashed_password=hash_password(password_plain))

    def update_registration(self, account: Account, password_plain: str, display_name: str) -> Account:
        """Overwrite the credentials of a still-unverified account on re-registration."""
        return self._compare_and_swap(
            account,
            hashed_password=hash_password(password_plain),
            display_name=display_name,
        )

    def _compare_and_swap(self, account: Account, **fields) -> Account:
        """Apply fields only if the row still carries account.version.

        Raises ConflictError when another writer got there first.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account.id) & (_accounts.c.version == account.version))
                .values(version=_accounts.c.version + 1, **fields)
            )
            if result.rowcount == 0:
                raise ConflictError(f"account {account.id} changed concurrently")
            return self._fetch_account(conn, account.id)

    def _fetch_account(self, conn: Connection, account_id: int) -> Account:
        row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row)

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    def replace_code(self, code: OneTimeCode) -> OneTimeCode:
        """Supersede any live code for (account, purpose) and insert this one.

        Both statements run in one transaction so at most one live code ever
        exists per account and purpose.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _codes.update()
                .where(
                    (_codes.c.account_id == code.account_id)
                    & (_codes.c.purpose == code.purpose)
                    & (_codes.c.consumed == 0)
                    & (_codes.c.superseded == 0)
                )
                .values(superseded=1)
            )
            result = conn.execute(
                _codes.insert().values(
                    account_id=code.account_id,
                    purpose=code.purpose,
                    code_hash=code.code_hash,
                    issued_at=_to_iso(code.issued_at),
                    expires_at=_to_iso(code.expires_at),
                    attempts=0,
                    consumed=0,
                    superseded=0,
                )
            )
            code_id = result.inserted_primary_key[0]
            row = conn.execute(_codes.select().where(_codes.c.id == code_id)).fetchone()
        return _row_to_code(row)

    def get_live_code(self, account_id: int, purpose: str) -> OneTimeCode | None:
        """Return the current unconsumed, unsuperseded code (expired or not)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _codes.select()
                .where(
                    (_codes.c.account_id == account_id)
                    & (_codes.c.purpose == purpose)
                    & (_codes.c.consumed == 0)
                    & (_codes.c.superseded == 0)
                )
                .order_by(_codes.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_code(row) if row is not None else None

    def register_code_attempt(self, code_id: int) -> int | None:
        """Atomically increment a live code's attempt counter.

        Returns the new count, or None if the code stopped being live
        (consumed or superseded by a concurrent request).
        """
        live = (_codes.c.id == code_id) & (_codes.c.consumed == 0) & (_codes.c.superseded == 0)
        with self.engine.begin() as conn:
            result = conn.execute(_codes.update().where(live).values(attempts=_codes.c.attempts + 1))
            if result.rowcount == 0:
                return None
            return conn.execute(_codes.select().where(_codes.c.id == code_id)).fetchone().attempts

    def consume_code(self, code_id: int) -> bool:
        """Mark a live code consumed. False if a concurrent request consumed it first."""
        live = (_codes.c.id == code_id) & (_codes.c.consumed == 0) & (_codes.c.superseded == 0)
        with self.engine.connect() as conn:
            result = conn.execute(_codes.update().where(live).values(consumed=1, consumed_at=_to_iso(_now())))
            conn.commit()
        return result.rowcount > 0

    def is_superseded_code(self, account_id: int, purpose: str, code_hash: str) -> bool:
        """True if code_hash belongs to a code that a newer one replaced."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _codes.select()
                .where(
                    (_codes.c.account_id == account_id)
                    & (_codes.c.purpose == purpose)
                    & (_codes.c.code_hash == code_hash)
                    & (_codes.c.superseded == 1)
                )
                .limit(1)
            ).fetchone()
        return row is not None

    def purge_expired_codes(self) -> int:
        """Delete every code past its expiry, whatever its state. Returns rows removed."""
        now = _to_iso(_now())
        with self.engine.connect() as conn:
            result = conn.execute(_codes.delete().where(_codes.c.expires_at < now))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        hashed_password=row.hashed_password,
        status=row.status,
        failed_logins=row.failed_logins,
        lock_expires_at=_parse_iso(row.lock_expires_at),
        version=row.version,
        created_at=_parse_iso(row.created_at),
    )


def _row_to_code(row) -> OneTimeCode:
    return OneTimeCode(
        id=row.id,
        account_id=row.account_id,
        purpose=row.purpose,
        code_hash=row.code_hash,
        issued_at=_parse_iso(row.issued_at),
        expires_at=_parse_iso(row.expires_at),
        attempts=row.attempts,
        consumed=bool(row.consumed),
    )
