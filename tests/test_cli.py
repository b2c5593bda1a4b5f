"""
tests/test_cli.py -- Operator CLI commands against a throwaway database.

The CLI builds its stores from Settings.database_url, so each test points the
cached settings at a file under tmp_path and feeds passwords through a
patched getpass.
"""

from __future__ import annotations

import getpass

import pytest

import main
from auth.identity import LocalIdentityProvider
from auth.store import AccountDirectory
from core.config import get_settings


@pytest.fixture
def db_url(tmp_path, monkeypatch) -> str:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setattr(get_settings(), "database_url", url)
    return url


@pytest.fixture
def password(monkeypatch):
    """Answer every getpass prompt with the value set on the returned dict."""
    answer = {"value": "s3cret-pass"}
    monkeypatch.setattr(getpass, "getpass", lambda prompt="": answer["value"])
    return answer


def _directory(db_url: str) -> AccountDirectory:
    return AccountDirectory(db_url=db_url)


def test_create_admin_then_login(db_url, password, capsys) -> None:
    assert main.main(["create-admin", "Ops@Shop.test", "--name", "Ops"]) == 0
    assert "Created admin account ops@shop.test" in capsys.readouterr().out

    provider = LocalIdentityProvider(db_url=db_url)
    try:
        identity = provider.verify_credentials("ops@shop.test", "s3cret-pass")
    finally:
        provider.close()
    directory = _directory(db_url)
    try:
        assert directory.get(identity.identity_id).role == "admin"
    finally:
        directory.close()


def test_create_admin_rejects_short_password(db_url, password, capsys) -> None:
    password["value"] = "short"
    assert main.main(["create-admin", "ops@shop.test"]) == 1
    assert "at least 8 characters" in capsys.readouterr().out


def test_create_admin_duplicate(db_url, password, capsys) -> None:
    main.main(["create-admin", "ops@shop.test"])
    assert main.main(["create-admin", "OPS@shop.test"]) == 1
    assert "already exists" in capsys.readouterr().out


def test_set_password_for_pending_account(db_url, password) -> None:
    assert main.main(["create-admin", "ed@shop.test", "--role", "editor", "--no-password"]) == 0
    password["value"] = "another-pass"
    assert main.main(["set-password", "ed@shop.test"]) == 0

    provider = LocalIdentityProvider(db_url=db_url)
    try:
        assert provider.verify_credentials("ed@shop.test", "another-pass").email == "ed@shop.test"
    finally:
        provider.close()


def test_set_password_replaces_existing(db_url, password) -> None:
    main.main(["create-admin", "ops@shop.test"])
    password["value"] = "rotated-pass"
    assert main.main(["set-password", "ops@shop.test"]) == 0

    provider = LocalIdentityProvider(db_url=db_url)
    try:
        assert provider.verify_credentials("ops@shop.test", "rotated-pass")
    finally:
        provider.close()


def test_last_admin_cannot_be_deactivated(db_url, password, capsys) -> None:
    main.main(["create-admin", "ops@shop.test"])
    assert main.main(["deactivate", "ops@shop.test"]) == 1
    assert "last active admin" in capsys.readouterr().out

    main.main(["create-admin", "ed@shop.test", "--role", "editor"])
    assert main.main(["deactivate", "ed@shop.test"]) == 0
    assert main.main(["activate", "ed@shop.test"]) == 0


def test_unknown_email(db_url, capsys) -> None:
    assert main.main(["unlock", "ghost@shop.test"]) == 1
    assert "No account for 'ghost@shop.test'" in capsys.readouterr().out


def test_list_and_audit(db_url, password, capsys) -> None:
    main.main(["create-admin", "ops@shop.test"])
    capsys.readouterr()

    assert main.main(["list"]) == 0
    assert "ops@shop.test" in capsys.readouterr().out

    assert main.main(["audit"]) == 0
    assert "No audit entries." in capsys.readouterr().out
