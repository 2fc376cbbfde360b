"""
tests/test_cli.py -- Operator CLI commands against a file-backed SQLite database.

Each main() call builds and closes its own AuthService, so state has to
survive between calls on disk, as it does for a real operator.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import main as cli
from auth.store import CredentialStore, SigningKeyStore
from core.config import Settings

SECRET = "tokenwarden-cli-secret-0123456789abcdef"


@pytest.fixture
def db_url(tmp_path, monkeypatch) -> str:
    url = f"sqlite:///{tmp_path / 'tokenwarden.db'}"
    settings = Settings(debug=True, secret_key=SECRET, database_url=url, jwt_algorithm="ES256", redis_url="")
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    return url


@pytest.fixture
def store(db_url):
    s = CredentialStore(db_url)
    yield s
    s.close()


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 0
    assert "create-admin" in capsys.readouterr().out


def test_create_admin_with_generated_password(db_url, store, capsys):
    assert cli.main(["create-admin", "--email", "Ops@Example.com"]) == 0
    out = capsys.readouterr().out
    assert "Created administrator ops@example.com" in out
    assert "Temporary password: " in out

    user = store.find_by_email("ops@example.com")
    assert [r.name for r in store.roles_for_user(user.id)] == ["admin"]


def test_create_admin_with_given_password(db_url, capsys):
    assert cli.main(["create-admin", "--email", "ops@example.com", "--password", "Str0ng!Passw0rd"]) == 0
    assert "Temporary password" not in capsys.readouterr().out

    assert cli.main(["create-admin", "--email", "ops@example.com", "--password", "Str0ng!Passw0rd"]) == 1
    assert "already exists" in capsys.readouterr().out


def test_create_admin_rejects_weak_password(db_url, capsys):
    assert cli.main(["create-admin", "--email", "ops@example.com", "--password", "weak"]) == 1
    out = capsys.readouterr().out
    assert "Password does not meet the password policy." in out
    assert "at least" in out


def test_unlock_by_email(db_url, store, capsys):
    cli.main(["create-admin", "--email", "ops@example.com"])
    user = store.find_by_email("ops@example.com")
    for _ in range(5):
        store.record_login_failure(user.id)
    store.set_lock(user.id, datetime.now(timezone.utc) + timedelta(minutes=30))

    assert cli.main(["unlock", "--email", "OPS@example.com"]) == 0
    assert f"Unlocked account {user.id}" in capsys.readouterr().out
    unlocked = store.get_by_id(user.id)
    assert unlocked.locked_until is None
    assert unlocked.failed_login_attempts == 0


def test_unlock_unknown_account(db_url, capsys):
    assert cli.main(["unlock", "--email", "ghost@example.com"]) == 1
    assert "No account for 'ghost@example.com'" in capsys.readouterr().out
    assert cli.main(["unlock", "--user-id", "no-such-id"]) == 1
    assert "User not found." in capsys.readouterr().out


def test_unlock_requires_a_target(db_url):
    with pytest.raises(SystemExit):
        cli.main(["unlock"])


def test_rotate_and_purge_keys(db_url, store, capsys):
    assert cli.main(["rotate-key"]) == 0
    out = capsys.readouterr().out
    assert "Active signing key is now" in out

    keys = SigningKeyStore(store.engine).load_all()
    assert len(keys) == 2
    assert sum(1 for key, _ in keys if key.active) == 1

    # The retired key is still inside its grace window.
    assert cli.main(["purge-keys"]) == 0
    assert "Purged 0 expired signing key(s)." in capsys.readouterr().out


def test_rotation_is_audited_as_operator(db_url, store):
    cli.main(["rotate-key"])
    with store.engine.connect() as conn:
        rows = conn.exec_driver_sql("SELECT user_id, action FROM audit_logs WHERE action = 'key.rotate'").fetchall()
    assert rows == [(None, "key.rotate")]


def test_startup_failure_exits_2(monkeypatch, capsys):
    def broken():
        raise ValueError("SECRET_KEY is required")

    monkeypatch.setattr(cli, "get_settings", broken)
    assert cli.main(["rotate-key"]) == 2
    assert "Could not start: SECRET_KEY is required" in capsys.readouterr().out
