"""
api/routes/v1/accounts.py -- Admin account management.

Routes:
  GET   /api/v1/accounts                      -- list accounts (accounts:read)
  POST  /api/v1/accounts                      -- pre-create an account (accounts:manage)
  PATCH /api/v1/accounts/{identity_id}        -- role / active / display name (accounts:manage)
  POST  /api/v1/accounts/{identity_id}/unlock -- clear lockout state (accounts:manage)

[M4] Guards on PATCH:
  - Self-deactivation (admin accidentally locking themselves out).
  - Deactivating or demoting the last active admin (no recovery path without
    DB access).

Writes go through AccountDirectory.update(), so an edit racing with a login's
lock-state update is retried against fresh state rather than lost.
"""

from __future__ import annotations

from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import AccountCreate, AccountPatch, AccountResponse
from auth.dependencies import require_capability
from auth.models import AdminAccount
from auth.permissions import ACCOUNTS_MANAGE, ACCOUNTS_READ
from auth.store import AccountDirectory

router = APIRouter()


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": "Account not found."},
    )


@router.get("/accounts", response_model=list[AccountResponse])
def list_accounts(
    request: Request,
    current: AdminAccount = Depends(require_capability(ACCOUNTS_READ)),
) -> list[AccountResponse]:
    """List all admin accounts, ordered by email."""
    directory: AccountDirectory = request.app.state.directory
    return [AccountResponse.from_account(a) for a in directory.list_accounts()]


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    request: Request,
    body: AccountCreate,
    current: AdminAccount = Depends(require_capability(ACCOUNTS_MANAGE)),
) -> AccountResponse:
    """Pre-create an admin account.

    With a password, local credentials are registered under the same identity
    id. Without one, the account is linked on the person's first federated
    login by matching email.
    """
    directory: AccountDirectory = request.app.state.directory
    if directory.get_by_email(body.email) is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        )

    try:
        if body.password:
            identity = request.app.state.provider.register(body.email, body.password, body.display_name)
            identity_id = identity.identity_id
        else:
            identity_id = f"pending:{body.email.strip().lower()}"
        created = directory.create(
            AdminAccount(
                identity_id=identity_id,
                email=body.email,
                display_name=body.display_name,
                role=body.role.value,
            )
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc
    return AccountResponse.from_account(created)


@router.patch("/accounts/{identity_id}", response_model=AccountResponse)
def update_account(
    request: Request,
    identity_id: str,
    body: AccountPatch,
    current: AdminAccount = Depends(require_capability(ACCOUNTS_MANAGE)),
) -> AccountResponse:
    """Change an account's role, active flag or display name."""
    directory: AccountDirectory = request.app.state.directory

    target = directory.get(identity_id)
    if target is None:
        raise _not_found()

    if body.role is None and body.is_active is None and body.display_name is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    deactivating = body.is_active is False and target.is_active
    demoting = body.role is not None and body.role.value != "admin" and target.role == "admin"

    # [M4] Block self-deactivation
    if deactivating and target.identity_id == current.identity_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    # [M4] Block removing the last admin
    if (deactivating or demoting) and target.role == "admin" and target.is_active:
        if directory.count_active_admins() <= 1:
            raise HTTPException(
                status_code=400,
                detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
            )

    def apply(account: AdminAccount) -> AdminAccount:
        changes: dict = {}
        if body.role is not None:
            changes["role"] = body.role.value
        if body.is_active is not None:
            changes["is_active"] = body.is_active
        if body.display_name is not None:
            changes["display_name"] = body.display_name
        return replace(account, **changes)

    updated = directory.update(identity_id, apply)
    if updated is None:
        raise _not_found()
    return AccountResponse.from_account(updated)


@router.post("/accounts/{identity_id}/unlock", response_model=AccountResponse)
def unlock_account(
    request: Request,
    identity_id: str,
    current: AdminAccount = Depends(require_capability(ACCOUNTS_MANAGE)),
) -> AccountResponse:
    """Clear the failure counter and any lock, ahead of natural expiry."""
    updated = request.app.state.lockout.unlock(identity_id)
    if updated is None:
        raise _not_found()
    return AccountResponse.from_account(updated)
