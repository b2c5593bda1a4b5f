"""
tests/test_account_store.py -- AccountDirectory reads, writes and versioning.

Covers:
  - create() normalizes email and rejects duplicates
  - upsert() inserts, then overwrites while bumping the version
  - update() applies a mutation, declines on None, returns None when missing
  - count_active_admins() / has_accounts()
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import AdminAccount
from auth.store import AccountDirectory
from conftest import START, FakeClock, memory_url


@pytest.fixture
def directory(clock: FakeClock):
    d = AccountDirectory(db_url=memory_url("directory"), clock=clock)
    yield d
    d.close()


def test_create_normalizes_email(directory: AccountDirectory) -> None:
    created = directory.create(AdminAccount(identity_id="u1", email=" Ops@Shop.Test ", role="admin"))
    assert created.email == "ops@shop.test"
    assert created.version == 0
    assert created.created_at == START
    assert directory.get_by_email("OPS@shop.test").identity_id == "u1"


def test_create_duplicate_email_rejected(directory: AccountDirectory) -> None:
    directory.create(AdminAccount(identity_id="u1", email="a@x.com", role="viewer"))
    with pytest.raises(IntegrityError):
        directory.create(AdminAccount(identity_id="u2", email="A@x.com", role="viewer"))


def test_upsert_inserts_then_overwrites(directory: AccountDirectory, clock: FakeClock) -> None:
    first = directory.upsert(AdminAccount(identity_id="u1", email="a@x.com", role="viewer"))
    assert first.version == 0

    clock.tick(timedelta(minutes=5))
    second = directory.upsert(replace(first, role="editor"))
    assert second.version == 1
    assert second.created_at == START
    stored = directory.get("u1")
    assert stored.role == "editor"
    assert stored.updated_at == clock.now


def test_update_applies_and_declines(directory: AccountDirectory) -> None:
    directory.create(AdminAccount(identity_id="u1", email="a@x.com", role="viewer", display_name="Old"))
    updated = directory.update("u1", lambda a: replace(a, display_name="New"))
    assert updated.display_name == "New"
    assert updated.version == 1

    unchanged = directory.update("u1", lambda a: None)
    assert unchanged.version == 1
    assert directory.update("missing", lambda a: a) is None


def test_active_admin_count(directory: AccountDirectory) -> None:
    assert not directory.has_accounts()
    directory.create(AdminAccount(identity_id="u1", email="a@x.com", role="admin"))
    directory.create(AdminAccount(identity_id="u2", email="b@x.com", role="admin", is_active=False))
    directory.create(AdminAccount(identity_id="u3", email="c@x.com", role="editor"))
    assert directory.has_accounts()
    assert directory.count_active_admins() == 1
    assert [a.email for a in directory.list_accounts()] == ["a@x.com", "b@x.com", "c@x.com"]
