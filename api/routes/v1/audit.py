"""
api/routes/v1/audit.py -- Read access to the audit ledger (audit:read).

The ledger has no write or delete route; entries are appended only by the
gateway as a side effect of authentication decisions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse
from audit.store import AuditLedger
from auth.dependencies import require_capability
from auth.models import AdminAccount
from auth.permissions import AUDIT_READ
from auth.store import normalize_email

router = APIRouter()


@router.get("/audit", response_model=list[AuditEntryResponse])
def list_audit_entries(
    request: Request,
    identity: Optional[str] = Query(default=None, max_length=255),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    current: AdminAccount = Depends(require_capability(AUDIT_READ)),
) -> list[AuditEntryResponse]:
    """Entries newest first, optionally filtered by identity and [since, until)."""
    ledger: AuditLedger = request.app.state.ledger
    entries = ledger.between(
        start=since,
        end=until,
        identity_key=normalize_email(identity) if identity else None,
        limit=limit,
    )
    return [AuditEntryResponse.from_entry(e) for e in entries]
