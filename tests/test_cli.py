"""
tests/test_cli.py -- Tests for the maintenance CLI in main.py.

Covers:
  - generate-key prints a usable Fernet key without touching any store
  - create-admin / set-password read the password from stdin or a double prompt
  - unlock, purge-blacklist
  - verify-audit exits 2 on a broken chain
  - StoreUnavailable exits 3
"""

from __future__ import annotations

import io

import pytest
from conftest import ADMIN_PASSWORD, USER_PASSWORD
from cryptography.fernet import Fernet
from sqlalchemy import update

import main
from audit import store as audit_store
from auth.models import DeviceContext
from core.errors import StoreUnavailable


@pytest.fixture
def cli(service, monkeypatch):
    """Point the CLI at the test service and keep its stores open after main() returns."""
    monkeypatch.setattr(main, "_open_service", lambda settings: service)
    monkeypatch.setattr(service.store, "close", lambda: None)
    monkeypatch.setattr(service.trail, "close", lambda: None)
    return service


def _stdin(monkeypatch, text: str) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(text + "\n"))


class TestParser:
    def test_no_command_prints_help(self, capsys):
        assert main.main([]) == 1
        assert "COMMAND" in capsys.readouterr().out

    def test_generate_key(self, capsys, monkeypatch):
        def fail(settings):
            raise AssertionError("generate-key must not open the stores")

        monkeypatch.setattr(main, "_open_service", fail)
        assert main.main(["generate-key"]) == 0
        out = capsys.readouterr().out.strip()
        assert out.startswith("ENCRYPTION_KEYS=")
        Fernet(out.split("=", 1)[1].encode())


class TestIdentityCommands:
    def test_create_admin_from_stdin(self, cli, monkeypatch, capsys):
        _stdin(monkeypatch, ADMIN_PASSWORD)
        assert main.main(["create-admin", "root", "--password-stdin"]) == 0
        identity = cli.store.get_by_username("root")
        assert identity.role == "admin"
        assert identity.must_change_password is False
        assert "Created admin 'root'" in capsys.readouterr().out

    def test_create_admin_interactive(self, cli, monkeypatch):
        answers = iter([ADMIN_PASSWORD, ADMIN_PASSWORD])
        monkeypatch.setattr(main.getpass, "getpass", lambda prompt: next(answers))
        assert main.main(["create-admin", "root", "--must-change"]) == 0
        assert cli.store.get_by_username("root").must_change_password is True

    def test_interactive_mismatch(self, cli, monkeypatch):
        answers = iter([ADMIN_PASSWORD, "something-else"])
        monkeypatch.setattr(main.getpass, "getpass", lambda prompt: next(answers))
        with pytest.raises(SystemExit):
            main.main(["create-admin", "root"])
        assert cli.store.get_by_username("root") is None

    def test_create_admin_weak_password(self, cli, monkeypatch, capsys):
        _stdin(monkeypatch, "weak")
        assert main.main(["create-admin", "root", "--password-stdin"]) == 1
        assert "[!]" in capsys.readouterr().out

    def test_create_admin_duplicate(self, cli, make_identity, monkeypatch, capsys):
        make_identity("root")
        _stdin(monkeypatch, ADMIN_PASSWORD)
        assert main.main(["create-admin", "root", "--password-stdin"]) == 1
        assert "already exists" in capsys.readouterr().out

    def test_set_password_revokes_sessions(self, cli, make_identity, monkeypatch):
        alice = make_identity("alice")
        bundle = cli.issuer.issue(alice, DeviceContext())
        _stdin(monkeypatch, "Operator-Set-Passw0rd!")
        assert main.main(["set-password", "alice", "--password-stdin"]) == 0
        assert cli.issuer.validate_access_token(bundle.access_token) is None
        assert cli.store.get_by_username("alice").must_change_password is False

    def test_set_password_unknown_identity(self, cli, capsys):
        assert main.main(["set-password", "ghost", "--password-stdin"]) == 1

    def test_unlock(self, cli, make_identity, capsys):
        make_identity("alice")
        for _ in range(5):
            cli.authenticate("alice", "wrong")
        assert main.main(["unlock", "alice"]) == 0
        assert "Unlocked 'alice'" in capsys.readouterr().out
        assert main.main(["unlock", "alice"]) == 0
        assert "was not locked" in capsys.readouterr().out


class TestMaintenanceCommands:
    def test_verify_audit_intact(self, cli, make_identity, capsys):
        make_identity("alice")
        assert main.main(["verify-audit"]) == 0
        assert "intact" in capsys.readouterr().out

    def test_verify_audit_broken(self, cli, make_identity, capsys):
        make_identity("alice")
        cli.authenticate("alice", USER_PASSWORD)
        with cli.trail.engine.begin() as conn:
            conn.execute(update(audit_store._audit_log).where(audit_store._audit_log.c.seq == 1).values(action="X"))
        assert main.main(["verify-audit"]) == 2
        assert "BROKEN at position 0" in capsys.readouterr().out

    def test_purge_blacklist(self, cli, capsys):
        assert main.main(["purge-blacklist"]) == 0
        assert "Purged 0 expired blacklist entries." in capsys.readouterr().out

    def test_store_unavailable_exit_code(self, cli, monkeypatch, capsys):
        def unavailable():
            raise StoreUnavailable("audit.verify")

        monkeypatch.setattr(cli.trail, "verify", unavailable)
        assert main.main(["verify-audit"]) == 3
        assert "Store unavailable during audit.verify" in capsys.readouterr().out
