"""Tests for matchday.cli — local admin commands against a temp database."""

import sys

import pytest

from matchday import cli


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture(autouse=True)
def no_user_config(tmp_path, monkeypatch):
    """Keep a developer's ~/.matchday/config.toml out of the tests."""
    monkeypatch.setattr("matchday.config.CONFIG_PATH", tmp_path / "missing.toml")


def _run(monkeypatch, db_path, *argv) -> int:
    monkeypatch.setattr(sys, "argv", ["matchday", "--db", db_path, *argv])
    with pytest.raises(SystemExit) as exc:
        cli.main()
    return exc.value.code


class TestCli:
    def test_open_round_needs_admin(self, monkeypatch, db_path):
        assert _run(monkeypatch, db_path, "open-round") == 1

    def test_admin_workflow(self, monkeypatch, db_path, capsys):
        assert _run(monkeypatch, db_path, "add-user", "ada", "--admin") == 0
        assert _run(monkeypatch, db_path, "add-user", "anna") == 0
        assert _run(monkeypatch, db_path, "open-round") == 0
        assert _run(monkeypatch, db_path, "open-round") == 1
        assert _run(monkeypatch, db_path, "archive") == 0

        assert _run(monkeypatch, db_path, "standings") == 0
        out = capsys.readouterr().out
        assert "ada" in out
        assert "anna" in out

    def test_duplicate_user(self, monkeypatch, db_path):
        assert _run(monkeypatch, db_path, "add-user", "anna") == 0
        assert _run(monkeypatch, db_path, "add-user", "anna") == 1

    def test_reset_needs_confirmation(self, monkeypatch, db_path):
        _run(monkeypatch, db_path, "add-user", "ada", "--admin")
        assert _run(monkeypatch, db_path, "reset") == 1
        assert _run(monkeypatch, db_path, "reset", "--yes") == 0
