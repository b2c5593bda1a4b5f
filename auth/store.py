"""
auth/store.py -- SQLAlchemy Core persistence layer for admin accounts.

Pattern: Repository + Data Mapper.
AccountDirectory is the repository; _row_to_account / _account_values are the
mappers. Gateway, lockout and route code never touch SQL directly.

Concurrency:
  Every row carries a version column. compare_and_swap() writes only when the
  stored version still equals the version the caller read, and bumps it in the
  same statement. update() wraps that in a bounded read-modify-write retry
  loop, so two concurrent failed logins against the same account can never
  both read failed_attempts=3 and both write 4. This is the only supported way
  to change lock state.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are normalized (strip + lower) on every read and write path.

DB URL: Settings.database_url (default ./storegate.db).

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.errors import ConcurrencyError
from auth.models import AdminAccount
from core.clock import Clock, from_iso, to_iso, utcnow
from core.config import get_settings
from core.db import make_engine

logger = logging.getLogger("storegate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "admin_accounts",
    _metadata,
    Column("identity_id", String(128), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", Text, nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default="viewer"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("last_failed_at", String(40)),
    Column("is_locked", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("last_login_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("version", Integer, nullable=False, server_default="0"),
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountDirectory:
    """Repository for AdminAccount records.

    Usage:
        directory = AccountDirectory()
        directory.create(AdminAccount(identity_id="u1", email="a@x.com", role="admin"))
        account = directory.get_by_email("a@x.com")
        directory.close()
    """

    def __init__(self, db_url: str | None = None, clock: Clock = utcnow, max_retries: int = 10) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        self._clock = clock
        self.max_retries = max_retries
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, identity_id: str) -> AdminAccount | None:
        """Look up an account by identity id. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.identity_id == identity_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> AdminAccount | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[AdminAccount]:
        """Return all accounts ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.email)).fetchall()
        return [_row_to_account(r) for r in rows]

    def count_active_admins(self) -> int:
        """Number of active admin accounts. Guards last-admin deactivation."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_accounts)
                .where((_accounts.c.role == "admin") & (_accounts.c.is_active == 1))
            ).scalar()
        return result or 0

    def has_accounts(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return (result or 0) > 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, account: AdminAccount) -> AdminAccount:
        """Insert a new account and return the stored record.

        Raises sqlalchemy.exc.IntegrityError if the identity id or email is
        already taken. First-time federated provisioning relies on that to
        detect a concurrent request that created the record first.
        """
        now = self._clock()
        stored = replace(
            account,
            email=normalize_email(account.email),
            created_at=account.created_at or now,
            updated_at=now,
            version=0,
        )
        with self.engine.begin() as conn:
            conn.execute(_accounts.insert().values(**_account_values(stored)))
        logger.info("Created %s account %s", stored.role, stored.email)
        return stored

    def upsert(self, account: AdminAccount) -> AdminAccount:
        """Unconditionally write the account, inserting it if absent.

        Intended for operator tooling and seeding. Lock-state changes made by
        the gateway go through update(), which is version-checked.
        """
        now = self._clock()
        with self.engine.begin() as conn:
            row = conn.execute(
                select(_accounts.c.version, _accounts.c.created_at).where(
                    _accounts.c.identity_id == account.identity_id
                )
            ).fetchone()
            if row is None:
                stored = replace(
                    account,
                    email=normalize_email(account.email),
                    created_at=account.created_at or now,
                    updated_at=now,
                    version=0,
                )
                conn.execute(_accounts.insert().values(**_account_values(stored)))
            else:
                stored = replace(
                    account,
                    email=normalize_email(account.email),
                    created_at=from_iso(row.created_at),
                    updated_at=now,
                    version=row.version + 1,
                )
                conn.execute(
                    _accounts.update()
                    .where(_accounts.c.identity_id == account.identity_id)
                    .values(**_account_values(stored))
                )
        return stored

    def compare_and_swap(self, account: AdminAccount, expected_version: int) -> AdminAccount | None:
        """Write account only if the stored version equals expected_version.

        Returns the stored record (version bumped) on success, None when another
        writer got there first or the row no longer exists.
        """
        stored = replace(
            account,
            email=normalize_email(account.email),
            updated_at=self._clock(),
            version=expected_version + 1,
        )
        values = _account_values(stored)
        values.pop("identity_id")
        values.pop("created_at")
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.identity_id == account.identity_id) & (_accounts.c.version == expected_version))
                .values(**values)
            )
        return stored if result.rowcount == 1 else None

    def update(
        self,
        identity_id: str,
        mutate: Callable[[AdminAccount], AdminAccount | None],
    ) -> AdminAccount | None:
        """Atomic read-modify-write against one account.

        mutate receives the current record and returns the desired record, or
        None to leave the row untouched. On a version conflict the record is
        re-read and mutate runs again against fresh state.

        Returns the stored record (or the unchanged current record when mutate
        declined), None when the account does not exist.

        Raises ConcurrencyError after max_retries conflicts in a row.
        """
        for attempt in range(1, self.max_retries + 1):
            current = self.get(identity_id)
            if current is None:
                return None
            desired = mutate(replace(current))
            if desired is None:
                return current
            stored = self.compare_and_swap(desired, current.version)
            if stored is not None:
                return stored
            logger.debug("Version conflict on %s (attempt %d/%d)", identity_id, attempt, self.max_retries)
        raise ConcurrencyError()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _account_values(account: AdminAccount) -> dict:
    return {
        "identity_id": account.identity_id,
        "email": account.email,
        "display_name": account.display_name,
        "role": account.role,
        "is_active": 1 if account.is_active else 0,
        "failed_attempts": account.failed_attempts,
        "last_failed_at": to_iso(account.last_failed_at),
        "is_locked": 1 if account.is_locked else 0,
        "locked_until": to_iso(account.locked_until),
        "last_login_at": to_iso(account.last_login_at),
        "created_at": to_iso(account.created_at),
        "updated_at": to_iso(account.updated_at),
        "version": account.version,
    }


def _row_to_account(row) -> AdminAccount:
    return AdminAccount(
        identity_id=row.identity_id,
        email=row.email,
        display_name=row.display_name or "",
        role=row.role,
        is_active=bool(row.is_active),
        failed_attempts=row.failed_attempts,
        last_failed_at=from_iso(row.last_failed_at),
        is_locked=bool(row.is_locked),
        locked_until=from_iso(row.locked_until),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        version=row.version,
    )
