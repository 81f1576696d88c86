"""
matchday/config.py - Local configuration management

Reads game rules and server settings from a platform-appropriate config directory:
  - macOS/Linux: ~/.matchday/config.toml
  - Windows: %APPDATA%\\matchday\\config.toml

Every key is optional. A missing file (or one that fails to parse) yields the
reference rules: 12 matches per round, 7 correct guesses to win.

Example:
    [rules]
    slate_size = 12
    win_threshold = 7
    base_stake = 1
    jackpot_surcharge = 1
    survival_entry_fee = 2
    reserved_teams = 4
    starting_balance = 100
    keep_jackpot_on_rollover = false

    [server]
    db_path = "~/.matchday/matchday.db"
    port = 8000
"""

import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================


def _get_config_dir() -> Path:
    """Get platform-appropriate config directory."""
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / "matchday"
    return Path.home() / ".matchday"


CONFIG_DIR = _get_config_dir()
CONFIG_PATH = CONFIG_DIR / "config.toml"

DEFAULT_DB_PATH = "matchday.db"
DEFAULT_PORT = 8000


# ============================================================================
# Data Types
# ============================================================================

@dataclass
class RulesConfig:
    """Economic and scoring rules shared by every engine."""

    slate_size: int = 12  # matches per round
    win_threshold: int = 7  # correct guesses needed to share the pot
    base_stake: int = 1  # tokens per prediction set, all of it goes to the pot
    jackpot_surcharge: int = 1  # extra cost for jackpot opt-in
    survival_entry_fee: int = 2
    reserved_teams: int = 4  # trailing teams of the slate that can't be survival picks
    starting_balance: int = 100  # balance for new users and after a system reset
    keep_jackpot_on_rollover: bool = False

    def prediction_cost(self, include_jackpot: bool) -> int:
        return self.base_stake + (self.jackpot_surcharge if include_jackpot else 0)


@dataclass
class ServerConfig:
    """HTTP server settings."""

    db_path: str = DEFAULT_DB_PATH
    port: int = DEFAULT_PORT


@dataclass
class MatchdayConfig:
    """Top-level configuration."""

    rules: RulesConfig = field(default_factory=RulesConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


# ============================================================================
# Parsing
# ============================================================================

def _expand(path: str | None) -> str | None:
    """Expand ~ in a path string."""
    if path is None:
        return None
    return str(Path(path).expanduser())


def _parse_rules(data: dict) -> RulesConfig:
    """Parse the [rules] section, falling back to defaults per key."""
    _defaults = RulesConfig()
    rules = RulesConfig(
        slate_size=data.get("slate_size", _defaults.slate_size),
        win_threshold=data.get("win_threshold", _defaults.win_threshold),
        base_stake=data.get("base_stake", _defaults.base_stake),
        jackpot_surcharge=data.get("jackpot_surcharge", _defaults.jackpot_surcharge),
        survival_entry_fee=data.get("survival_entry_fee", _defaults.survival_entry_fee),
        reserved_teams=data.get("reserved_teams", _defaults.reserved_teams),
        starting_balance=data.get("starting_balance", _defaults.starting_balance),
        keep_jackpot_on_rollover=data.get(
            "keep_jackpot_on_rollover", _defaults.keep_jackpot_on_rollover
        ),
    )
    if rules.win_threshold > rules.slate_size:
        logger.warning(
            f"win_threshold {rules.win_threshold} exceeds slate_size {rules.slate_size}; "
            "no round can ever have winners"
        )
    return rules


def load_config(path: Path | None = None) -> MatchdayConfig:
    """
    Read config from TOML file.

    Args:
        path: Override config file path (default: ~/.matchday/config.toml)

    Returns:
        MatchdayConfig. Missing file or bad TOML returns the defaults.
    """
    config_path = path or CONFIG_PATH

    if not config_path.exists():
        return MatchdayConfig()

    try:
        with open(config_path, "rb") as f:
            raw = tomllib.load(f)
    except Exception as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return MatchdayConfig()

    rules = RulesConfig()
    if isinstance(raw.get("rules"), dict):
        rules = _parse_rules(raw["rules"])

    server = ServerConfig()
    if isinstance(raw.get("server"), dict):
        server_data = raw["server"]
        server = ServerConfig(
            db_path=_expand(server_data.get("db_path")) or DEFAULT_DB_PATH,
            port=server_data.get("port", DEFAULT_PORT),
        )

    return MatchdayConfig(rules=rules, server=server)
