"""
Matchday - Football prediction game

Users stake tokens on 1X2 prediction sets for a round of matches, play
survival seasons (one winning team per round, never the same team twice),
and challenge each other to wagered duels.
"""

__version__ = "0.1.0"

from .config import MatchdayConfig, RulesConfig, ServerConfig, load_config

from .db import GameDB

from .errors import ArchiveFailed, GameError

from .events import Event, EventBus

from .game import Game, Result

from .models import (
    # Outcomes
    HOME_WIN,
    DRAW,
    AWAY_WIN,
    OUTCOMES,
    # Data types
    User,
    Match,
    Round,
    PredictionSet,
    SurvivalSeason,
    SurvivalPlayer,
    SurvivalPick,
    Duel,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "MatchdayConfig",
    "RulesConfig",
    "ServerConfig",
    "load_config",
    # Storage
    "GameDB",
    # Errors
    "ArchiveFailed",
    "GameError",
    # Events
    "Event",
    "EventBus",
    # Facade
    "Game",
    "Result",
    # Models
    "HOME_WIN",
    "DRAW",
    "AWAY_WIN",
    "OUTCOMES",
    "User",
    "Match",
    "Round",
    "PredictionSet",
    "SurvivalSeason",
    "SurvivalPlayer",
    "SurvivalPick",
    "Duel",
]
