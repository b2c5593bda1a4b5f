"""
audit/store.py -- SQLAlchemy Core append-only audit ledger.

Pattern: Repository, insert-only. The public surface is append() plus a few
read queries for privileged readers. There is deliberately no update() or
delete() here -- entries are immutable once written.

Failure contract:
  append() raises WriteError and nothing else. It never rejects an entry for
  content reasons; a malformed metadata value is stringified rather than
  refused. Callers on the authentication path catch WriteError and report it
  on the operator channel (see auth/gateway.py) without changing the auth
  decision.

Concurrency: appends are independent inserts with an autoincrement key, so
concurrent writers need no coordination.

Timestamps are stored as UTC ISO 8601 with fixed microsecond precision so
string comparison in SQL matches chronological order.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from audit.models import AuditEntry
from core.config import get_settings
from core.db import make_engine

logger = logging.getLogger("storegate.audit")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_entries = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(32), nullable=False),
    Column("identity_key", String(255), nullable=False),
    Column("status", String(16), nullable=False),
    Column("reason", Text, nullable=False, server_default=""),
    Column("timestamp", String(40), nullable=False),
    Column("details", Text),  # JSON object (AuditEntry.metadata)
    Index("ix_audit_log_identity_key", "identity_key"),
    Index("ix_audit_log_timestamp", "timestamp"),
)

_DEFAULT_LIMIT = 100
_MAX_LIMIT = 1000


class WriteError(Exception):
    """The ledger could not persist an entry."""


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditLedger:
    """Append-only store for AuditEntry records.

    Usage:
        ledger = AuditLedger()
        entry_id = ledger.append(AuditEntry(action="logout", identity_key="a@x.com",
                                            status="success", reason="User logged out",
                                            timestamp=utcnow()))
        ledger.for_identity("a@x.com")
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    def append(self, entry: AuditEntry) -> int:
        """Persist one entry and return its ledger id.

        Raises WriteError on any storage failure.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _entries.insert().values(
                        action=entry.action,
                        identity_key=entry.identity_key,
                        status=entry.status,
                        reason=entry.reason or "",
                        timestamp=_ts(entry.timestamp),
                        details=json.dumps(dict(entry.metadata), default=str) if entry.metadata else None,
                    )
                )
                entry_id = result.inserted_primary_key[0]
            logger.debug("Audit %s %s for %s (id=%s)", entry.action, entry.status, entry.identity_key, entry_id)
            return entry_id
        except SQLAlchemyError as exc:
            raise WriteError(f"audit append failed for action={entry.action}") from exc

    # ------------------------------------------------------------------
    # Privileged readers
    # ------------------------------------------------------------------

    def for_identity(self, identity_key: str, limit: int = _DEFAULT_LIMIT) -> list[AuditEntry]:
        """Entries for one identity, newest first."""
        query = (
            _entries.select()
            .where(_entries.c.identity_key == identity_key)
            .order_by(_entries.c.id.desc())
            .limit(_clamp(limit))
        )
        return self._fetch(query)

    def between(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        identity_key: str | None = None,
        limit: int = _DEFAULT_LIMIT,
    ) -> list[AuditEntry]:
        """Entries with start <= timestamp < end, newest first. Either bound may be open."""
        query = _entries.select()
        if start is not None:
            query = query.where(_entries.c.timestamp >= _ts(start))
        if end is not None:
            query = query.where(_entries.c.timestamp < _ts(end))
        if identity_key is not None:
            query = query.where(_entries.c.identity_key == identity_key)
        return self._fetch(query.order_by(_entries.c.id.desc()).limit(_clamp(limit)))

    def recent(self, limit: int = _DEFAULT_LIMIT) -> list[AuditEntry]:
        return self._fetch(_entries.select().order_by(_entries.c.id.desc()).limit(_clamp(limit)))

    def count(self, action: str | None = None, identity_key: str | None = None) -> int:
        query = select(func.count()).select_from(_entries)
        if action is not None:
            query = query.where(_entries.c.action == action)
        if identity_key is not None:
            query = query.where(_entries.c.identity_key == identity_key)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def _fetch(self, query) -> list[AuditEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _clamp(limit: int) -> int:
    return max(1, min(limit, _MAX_LIMIT))


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        action=row.action,
        identity_key=row.identity_key,
        status=row.status,
        reason=row.reason or "",
        timestamp=datetime.fromisoformat(row.timestamp),
        metadata=json.loads(row.details) if row.details else {},
    )
