"""Shared fixtures: an in-memory game with an admin, four players and a Serie A slate."""

from datetime import datetime, timezone

import pytest

from matchday.config import RulesConfig
from matchday.db import GameDB
from matchday.game import Game
from matchday.models import ROLE_ADMIN, Match

FIXTURES = [
    ("Inter", "Milan"),
    ("Juventus", "Napoli"),
    ("Roma", "Lazio"),
    ("Atalanta", "Fiorentina"),
    ("Bologna", "Torino"),
    ("Genoa", "Udinese"),
    ("Lecce", "Cagliari"),
    ("Verona", "Empoli"),
    ("Monza", "Parma"),
    ("Como", "Venezia"),
    ("Sassuolo", "Pisa"),
    ("Cremonese", "Salernitana"),
]


def make_slate() -> list[Match]:
    return [Match(home=home, away=away) for home, away in FIXTURES]


class FakeClock:
    """Settable clock for deadline checks."""

    def __init__(self):
        self.now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def declare_all(game: Game, admin_id: str, outcomes: list[str]) -> None:
    for idx, outcome in enumerate(outcomes):
        result = game.declare_outcome(admin_id, idx, outcome)
        assert result.success, result.message


@pytest.fixture
def db():
    """Fresh in-memory DB for each test."""
    return GameDB(":memory:")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rules():
    return RulesConfig()


@pytest.fixture
def game(db, rules, clock):
    return Game(db, rules, clock=clock)


@pytest.fixture
def admin(game):
    return game.register_user("admin", ROLE_ADMIN).data["id"]


@pytest.fixture
def players(game):
    """Four regular users, 100 tokens each."""
    return [game.register_user(name).data["id"] for name in ("anna", "bruno", "carla", "dario")]


@pytest.fixture
def live_round(game, admin):
    result = game.open_round(admin, make_slate())
    assert result.success, result.message
    return game.current_round()
