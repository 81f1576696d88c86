"""Tests for matchday.config — TOML rules and server settings."""

import logging
import textwrap
from pathlib import Path

import pytest

from matchday.config import (
    DEFAULT_DB_PATH,
    DEFAULT_PORT,
    MatchdayConfig,
    RulesConfig,
    load_config,
)


@pytest.fixture
def config_dir(tmp_path):
    """Temporary directory for config files."""
    return tmp_path


def _write_config(config_dir: Path, content: str) -> Path:
    """Write a config.toml and return the path."""
    config_path = config_dir / "config.toml"
    config_path.write_text(textwrap.dedent(content))
    return config_path


class TestLoadConfig:
    def test_missing_file_returns_defaults(self, config_dir):
        cfg = load_config(config_dir / "nonexistent.toml")
        assert isinstance(cfg, MatchdayConfig)
        assert cfg.rules == RulesConfig()
        assert cfg.server.db_path == DEFAULT_DB_PATH
        assert cfg.server.port == DEFAULT_PORT

    def test_default_rules(self):
        rules = RulesConfig()
        assert rules.slate_size == 12
        assert rules.win_threshold == 7
        assert rules.survival_entry_fee == 2
        assert rules.reserved_teams == 4
        assert rules.starting_balance == 100
        assert rules.keep_jackpot_on_rollover is False

    def test_partial_rules_keep_other_defaults(self, config_dir):
        path = _write_config(config_dir, """\
            [rules]
            win_threshold = 8
            survival_entry_fee = 5
        """)
        cfg = load_config(path)
        assert cfg.rules.win_threshold == 8
        assert cfg.rules.survival_entry_fee == 5
        assert cfg.rules.slate_size == 12
        assert cfg.rules.base_stake == 1

    def test_jackpot_rollover_flag(self, config_dir):
        path = _write_config(config_dir, """\
            [rules]
            keep_jackpot_on_rollover = true
        """)
        assert load_config(path).rules.keep_jackpot_on_rollover is True

    def test_server_section(self, config_dir):
        path = _write_config(config_dir, """\
            [server]
            db_path = "/var/lib/matchday/game.db"
            port = 9100
        """)
        cfg = load_config(path)
        assert cfg.server.db_path == "/var/lib/matchday/game.db"
        assert cfg.server.port == 9100

    def test_tilde_expansion(self, config_dir):
        path = _write_config(config_dir, """\
            [server]
            db_path = "~/.matchday/matchday.db"
        """)
        cfg = load_config(path)
        assert "~" not in cfg.server.db_path
        assert cfg.server.db_path.endswith("matchday.db")

    def test_bad_toml_returns_defaults(self, config_dir):
        path = _write_config(config_dir, "[rules\nslate_size = ")
        cfg = load_config(path)
        assert cfg.rules == RulesConfig()

    def test_unreachable_threshold_warns(self, config_dir, caplog):
        path = _write_config(config_dir, """\
            [rules]
            slate_size = 6
            win_threshold = 7
        """)
        with caplog.at_level(logging.WARNING, logger="matchday.config"):
            cfg = load_config(path)
        assert cfg.rules.slate_size == 6
        assert "win_threshold" in caplog.text


class TestPredictionCost:
    def test_base_stake(self):
        assert RulesConfig().prediction_cost(include_jackpot=False) == 1

    def test_with_jackpot(self):
        assert RulesConfig().prediction_cost(include_jackpot=True) == 2
