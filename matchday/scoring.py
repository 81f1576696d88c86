"""
matchday/scoring.py - Scoring and pot-splitting math.

Pure functions, no storage access. The settlement, duel and leveling
engines all score through here so the rules can't drift apart.
"""

from dataclasses import dataclass
from typing import Sequence


def score_guesses(guesses: Sequence[str], outcomes: Sequence[str | None]) -> int:
    """Count matches whose declared outcome equals the guess.

    Unset outcomes (None) never count.
    """
    return sum(
        1
        for guess, outcome in zip(guesses, outcomes)
        if outcome is not None and guess == outcome
    )


def max_score(scores: Sequence[int]) -> int:
    return max(scores, default=0)


@dataclass
class PotSplit:
    """How a pot is divided between winners."""

    payout: int  # tokens per winner
    burned: int  # indivisible remainder, destroyed

    def total_paid(self, winners: int) -> int:
        return self.payout * winners


def split_pot(total: int, winners: int) -> PotSplit:
    """Floor-divide total among winners; the remainder is burned.

    payout * winners + burned == total, and burned < winners.
    """
    if winners <= 0:
        raise ValueError("split_pot needs at least one winner")
    payout, burned = divmod(total, winners)
    return PotSplit(payout=payout, burned=burned)


def accuracy_percent(correct: int, rounds: int, slate_size: int) -> float:
    """Lifetime correct guesses over guesses made, as a 0-100 percentage."""
    possible = rounds * slate_size
    if possible <= 0:
        return 0.0
    return round(100 * correct / possible, 1)
