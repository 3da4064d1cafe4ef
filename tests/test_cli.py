"""
tests/test_cli.py -- Tests for the operator CLI in main.py.

Each test points --db-url at a SQLite file under tmp_path, since every
command opens and closes its own directory connection.

Coverage:
  - init-db on an empty database
  - seed-fixture-user is idempotent and gives the fixture admin a salt
  - list-users output
  - revoke-credential: unknown email, nothing stored, normal and --strict
  - no command prints help
"""

from __future__ import annotations

import pytest

from auth.oidc import FIXTURE_EMAIL, FIXTURE_USER_ID
from auth.store import UserStore
from main import main


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'users.db'}"


def _store(db_url: str) -> UserStore:
    return UserStore(db_url)


def test_init_db(db_url, capsys):
    assert main(["--db-url", db_url, "init-db"]) == 0
    assert "0 user(s)" in capsys.readouterr().out


def test_seed_fixture_user_is_idempotent(db_url, capsys):
    assert main(["--db-url", db_url, "seed-fixture-user"]) == 0
    assert main(["--db-url", db_url, "seed-fixture-user"]) == 0
    out = capsys.readouterr().out
    assert "Created" in out
    assert "already exists" in out
    store = _store(db_url)
    try:
        user = store.get_by_email(FIXTURE_EMAIL)
        assert user.user_id == FIXTURE_USER_ID
        assert user.role == "admin"
        assert user.salt and len(user.salt) == 32
        assert store.count_users() == 1
    finally:
        store.close()


def test_list_users(db_url, capsys):
    main(["--db-url", db_url, "list-users"])
    assert "No users." in capsys.readouterr().out
    main(["--db-url", db_url, "seed-fixture-user"])
    capsys.readouterr()
    assert main(["--db-url", db_url, "list-users"]) == 0
    out = capsys.readouterr().out
    assert FIXTURE_EMAIL in out
    assert "credential=no" in out


def test_revoke_unknown_email(db_url, capsys):
    assert main(["--db-url", db_url, "revoke-credential", "nobody@example.com"]) == 1
    assert "[!]" in capsys.readouterr().out


def test_revoke_with_nothing_stored(db_url, capsys):
    main(["--db-url", db_url, "seed-fixture-user"])
    assert main(["--db-url", db_url, "revoke-credential", FIXTURE_EMAIL]) == 0
    assert "no stored credential" in capsys.readouterr().out


@pytest.mark.parametrize("strict", [False, True])
def test_revoke_credential(db_url, capsys, strict):
    main(["--db-url", db_url, "seed-fixture-user"])
    store = _store(db_url)
    try:
        salt = store.get_by_id(FIXTURE_USER_ID).salt
        store.save_encrypted_secret(FIXTURE_USER_ID, f"{salt}:00:00")
    finally:
        store.close()

    argv = ["--db-url", db_url, "revoke-credential", FIXTURE_EMAIL] + (["--strict"] if strict else [])
    assert main(argv) == 0
    assert "Revoked" in capsys.readouterr().out

    store = _store(db_url)
    try:
        user = store.get_by_id(FIXTURE_USER_ID)
        assert user.encrypted_secret is None
        assert (user.salt is None) is strict
    finally:
        store.close()


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "usage:" in capsys.readouterr().out
