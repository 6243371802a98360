"""Tests for the admin bootstrap script."""

import asyncio
import importlib.util
import sys
from pathlib import Path

import pytest

from warden.service.roles import ADMIN_ROLE_ID
from warden.service.runtime import get_runtime
from warden.storage.models import AccountStatus

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
_module_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_module_spec)
sys.modules[_module_spec.name] = bootstrap
_module_spec.loader.exec_module(bootstrap)

PASSWORD = "a long admin passphrase"


class TestBootstrapAdmin:
    def test_creates_active_admin(self):
        result = bootstrap.bootstrap_admin(" Root ", PASSWORD)
        assert result.status == "created"
        assert result.username == "root"
        account = get_runtime().store.get_account(result.user_id)
        assert account.status is AccountStatus.ACTIVE
        assert ADMIN_ROLE_ID in account.role_ids()

    def test_second_run_is_a_no_op(self):
        first = bootstrap.bootstrap_admin("root", PASSWORD)
        again = bootstrap.bootstrap_admin("root", PASSWORD)
        assert again.status == "already_admin"
        assert again.user_id == first.user_id

    def test_dry_run_changes_nothing(self):
        result = bootstrap.bootstrap_admin("root", PASSWORD, dry_run=True)
        assert result.status == "dry_run"
        assert get_runtime().store.get_account_by_username("root") is None

    def test_create_without_password_fails(self):
        with pytest.raises(ValueError):
            bootstrap.bootstrap_admin("root", None)

    def test_promotion_can_end_existing_sessions(self):
        runtime = get_runtime()
        account = runtime.accounts.register("alice", PASSWORD)
        _, session, _ = asyncio.run(runtime.auth.login("alice", PASSWORD))
        result = bootstrap.bootstrap_admin("alice", None, revoke_sessions=True)
        assert result.status == "promoted"
        assert result.sessions_revoked == 1
        assert runtime.store.get_session(session.id).revoked_at is not None
        assert ADMIN_ROLE_ID in runtime.store.get_account(account.id).role_ids()


class TestMain:
    def test_requires_username(self, monkeypatch, capsys):
        monkeypatch.delenv("ADMIN_USERNAME", raising=False)
        assert bootstrap.main([]) == 2
        assert "username" in capsys.readouterr().err

    def test_rejects_short_password(self, monkeypatch):
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
        assert bootstrap.main(["--username", "root", "--password", "short"]) == 2

    def test_reports_creation(self, capsys):
        assert bootstrap.main(["--username", "root", "--password", PASSWORD]) == 0
        assert "created admin root" in capsys.readouterr().out
