"""
tests/test_cli.py -- Tests for the administrative command line (main.py).

Each test points --database-url at a SQLite file under tmp_path, so separate
main() invocations see the same data.
"""

from __future__ import annotations

import pytest

from auth.store import AuthStore
from main import build_parser, main
from tests.conftest import Seed, make_user


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


def _run(db_url: str, *args: str) -> int:
    return main(["--database-url", db_url, *args])


def test_init_db_then_noop(db_url, capsys) -> None:
    assert _run(db_url, "init-db", "--owner", "owner@example.com") == 0
    assert "Initialized" in capsys.readouterr().out

    assert _run(db_url, "init-db", "--owner", "owner@example.com") == 0
    assert "already initialized" in capsys.readouterr().out


def test_invite_app_and_pre_authorize(db_url, capsys) -> None:
    _run(db_url, "init-db", "--owner", "owner@example.com")
    assert _run(db_url, "invite-app", "bob@example.com", "--days", "30") == 0
    assert _run(db_url, "pre-authorize", "carol@example.com") == 0
    out = capsys.readouterr().out
    assert "bob@example.com" in out
    assert "Pre-authorized carol@example.com (Free)" in out


def test_invite_account_unknown_owner_fails(db_url, capsys) -> None:
    _run(db_url, "init-db", "--owner", "owner@example.com")
    code = _run(db_url, "invite-account", "alice@example.com", "--account-owner", "ghost@example.com", "--role", "Member")
    assert code == 1
    assert "[!]" in capsys.readouterr().err


def test_issue_token(db_url, capsys) -> None:
    _run(db_url, "init-db", "--owner", "owner@example.com")
    store = AuthStore(db_url)
    try:
        seed = Seed(
            account_type=store.get_account_type_by_name("Free"),
            roles={r.name: r for r in store.list_roles()},
        )
        make_user(store, seed, "dev@example.com", roles=("Administrator",))
    finally:
        store.close()
    capsys.readouterr()

    assert _run(db_url, "issue-token", "dev@example.com", "--minutes", "5") == 0
    token = capsys.readouterr().out.strip()
    assert token.count(".") == 2


def test_issue_token_unknown_user(db_url, capsys) -> None:
    assert _run(db_url, "issue-token", "nobody@example.com") == 1
    assert "nobody@example.com" in capsys.readouterr().err


def test_command_required() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
