"""
matchday/leveling.py - Lifetime stats and level tiers.

Runs as the last settlement step of an archive: every user with a
prediction set on the round gets their points, accuracy and level refreshed.
"""

import logging
from dataclasses import dataclass

from .config import RulesConfig
from .db import GameDB
from .models import Round, User
from .scoring import accuracy_percent, score_guesses

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LevelTier:
    """Thresholds a user must meet, all at once, to hold a level."""

    level: int
    label: str
    bets: int
    wins: int
    tokens: int

    def satisfied_by(self, bets: int, wins: int, tokens_won: int) -> bool:
        return bets >= self.bets and wins >= self.wins and tokens_won >= self.tokens


LEVEL_TIERS = (
    LevelTier(1, "Principiante", bets=0, wins=0, tokens=0),
    LevelTier(2, "Scommettitore", bets=5, wins=1, tokens=100),
    LevelTier(3, "Veterano", bets=15, wins=3, tokens=500),
    LevelTier(4, "Campione", bets=30, wins=7, tokens=1500),
    LevelTier(5, "Leggenda", bets=50, wins=15, tokens=5000),
)


def level_for(
    bets: int, wins: int, tokens_won: int, tiers: tuple[LevelTier, ...] = LEVEL_TIERS
) -> int:
    """Highest tier whose thresholds are all met.

    Scans every tier from the top instead of stepping up from the current
    level: a tier set doesn't have to be a chain of supersets.
    """
    for tier in sorted(tiers, key=lambda t: t.level, reverse=True):
        if tier.satisfied_by(bets, wins, tokens_won):
            return tier.level
    return min(t.level for t in tiers)


def tier_label(level: int, tiers: tuple[LevelTier, ...] = LEVEL_TIERS) -> str:
    for tier in tiers:
        if tier.level == level:
            return tier.label
    return "Novizio"


class LevelingAggregator:
    def __init__(self, db: GameDB, rules: RulesConfig, tiers: tuple[LevelTier, ...] = LEVEL_TIERS):
        self._db = db
        self._rules = rules
        self._tiers = tiers

    def refresh_round(self, round_: Round) -> dict:
        """Fold this round's scores into lifetime stats for every bettor."""
        updated = 0
        with self._db.transaction():
            for bet in self._db.bets_for_round(round_.id):
                points = score_guesses(bet.guesses, round_.outcomes)
                self._db.increment_user_stats(bet.user_id, total_points=points, rounds_played=1)
                self.refresh_user(bet.user_id)
                updated += 1
        logger.info(f"Leveling refreshed for {updated} user(s) after round {round_.id}")
        return {"users": updated}

    def refresh_user(self, user_id: str) -> User | None:
        """Recompute accuracy and level from the stored counters."""
        user = self._db.get_user(user_id)
        if user is None:
            return None
        accuracy = accuracy_percent(user.total_points, user.rounds_played, self._rules.slate_size)
        level = level_for(user.bets_placed, user.total_wins, user.total_tokens_won, self._tiers)
        if level != user.level:
            logger.info(f"{user.username} is now level {level} ({tier_label(level, self._tiers)})")
        self._db.update_user(user_id, accuracy=accuracy, level=level)
        user.accuracy = accuracy
        user.level = level
        return user
