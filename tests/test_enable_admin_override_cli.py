"""Tests for the admin override operator script."""

from __future__ import annotations

import asyncio
import importlib.util
from pathlib import Path

import pytest

from authsync.storage.memory import MemoryKeyValueStore
from authsync.storage.models import AdminOverride

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "enable_admin_override.py"


def load_script():
    spec = importlib.util.spec_from_file_location("enable_admin_override", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def cli(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AUTHSYNC_STATE_DIR", str(tmp_path))
    monkeypatch.setenv("ADMIN_OVERRIDE_APPROVERS", "lead@x.com")
    monkeypatch.delenv("ADMIN_OVERRIDE_APPROVED_BY", raising=False)
    monkeypatch.delenv("CACHE_ENCRYPTION_KEY", raising=False)
    monkeypatch.delenv("CACHE_BACKEND", raising=False)
    return load_script()


def stored_override(tmp_path):
    store = MemoryKeyValueStore(str(tmp_path))
    raw = asyncio.run(store.get("authsync:admin_override:override"))
    return AdminOverride.from_dict(raw) if raw else None


class TestEnableOverrideScript:
    def test_enable_status_clear(self, cli, tmp_path, capsys):
        assert cli.main(
            ["enable", "--email", "ops@x.com", "--hours", "2", "--approved-by", "lead@x.com"]
        ) == 0
        override = stored_override(tmp_path)
        assert override.email == "ops@x.com"
        assert override.approved_by == "lead@x.com"

        assert cli.main(["status"]) == 0
        out = capsys.readouterr().out
        assert "(valid)" in out
        assert "enabled" in out

        assert cli.main(["clear", "--actor", "lead@x.com"]) == 0
        assert stored_override(tmp_path) is None

    def test_unapproved_request_fails(self, cli, tmp_path, capsys):
        code = cli.main(
            ["enable", "--email", "ops@x.com", "--hours", "1", "--approved-by", "intruder@x.com"]
        )
        assert code == 1
        assert "admin_override_misuse" in capsys.readouterr().out
        assert stored_override(tmp_path) is None

    def test_duration_over_limit_fails(self, cli, tmp_path):
        code = cli.main(
            ["enable", "--email", "ops@x.com", "--hours", "48", "--approved-by", "lead@x.com"]
        )
        assert code == 1
        assert stored_override(tmp_path) is None

    def test_approver_is_required(self, cli, capsys):
        assert cli.main(["enable", "--email", "ops@x.com"]) == 1
        assert "--approved-by" in capsys.readouterr().out

    def test_status_without_override(self, cli, capsys):
        assert cli.main(["status"]) == 0
        assert "No override recorded" in capsys.readouterr().out
