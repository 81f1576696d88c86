"""
matchday/rounds.py - Round (matchday) lifecycle.

OPEN: admins edit the slate and declare results, users submit prediction
sets, survival picks and duels.
CLOSED: archive has started; nothing new is accepted.
ARCHIVED: every settlement step has committed; pot and jackpot are zero.

Archive runs the settlement steps in order:

    duels -> survival -> predictions -> leveling

Each step commits in its own transaction together with a marker row in
``settlement_steps``. If a step fails, the round stays CLOSED and calling
archive() again skips the steps that already committed. Ledger event ids
are derived from the round/duel/season ids, so even a replayed step can't
pay anyone twice.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from .config import RulesConfig
from .db import GameDB
from .duels import DuelEngine
from .errors import (
    ArchiveFailed,
    BetsLocked,
    DeadlinePassed,
    DuplicateBet,
    InvalidAmount,
    InvalidMatchIndex,
    InvalidPrediction,
    RoundAlreadyOpen,
    RoundNotOpen,
    UserNotFound,
)
from .events import (
    BET_PLACED,
    DUEL_COMPLETED,
    ROUND_ARCHIVED,
    ROUND_OPENED,
    ROUND_RESULTS_UPDATED,
    EventBus,
)
from .ledger import Ledger
from .leveling import LevelingAggregator
from .models import (
    OUTCOMES,
    ROUND_ARCHIVED as STATUS_ARCHIVED,
    ROUND_CLOSED,
    ROUND_OPEN,
    Match,
    PredictionSet,
    Round,
)
from .settlement import PredictionSettlement
from .survival import SurvivalEngine

logger = logging.getLogger(__name__)

STEP_DUELS = "duels"
STEP_SURVIVAL = "survival"
STEP_PREDICTIONS = "predictions"
STEP_LEVELING = "leveling"
ARCHIVE_STEPS = (STEP_DUELS, STEP_SURVIVAL, STEP_PREDICTIONS, STEP_LEVELING)


@dataclass
class ArchiveReport:
    """What archive() did, for admin dashboards."""

    round_id: int
    steps: dict[str, dict[str, Any]] = field(default_factory=dict)
    resumed: bool = False

    @property
    def settlement(self) -> dict[str, Any]:
        return self.steps.get(STEP_PREDICTIONS, {})

    @property
    def survival(self) -> dict[str, Any]:
        return self.steps.get(STEP_SURVIVAL, {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "round_id": self.round_id,
            "resumed": self.resumed,
            "winners": self.settlement.get("winners", []),
            "payout": self.settlement.get("payout", 0),
            "burned": self.settlement.get("burned", 0),
            "rollover_pot": self.settlement.get("rollover_pot", 0),
            "super_jackpot_hit": self.settlement.get("super_jackpot_hit", False),
            "survival": {
                "eliminated": self.survival.get("eliminated", 0),
                "advanced": self.survival.get("advanced", 0),
            },
            "duels": self.steps.get(STEP_DUELS, {}),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: str | datetime) -> datetime:
    ts = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class RoundManager:
    """State machine for the single live round."""

    def __init__(
        self,
        db: GameDB,
        ledger: Ledger,
        rules: RulesConfig,
        events: EventBus,
        duels: DuelEngine,
        survival: SurvivalEngine,
        settlement: PredictionSettlement,
        leveling: LevelingAggregator,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._db = db
        self._ledger = ledger
        self._rules = rules
        self._events = events
        self._duels = duels
        self._survival = survival
        self._settlement = settlement
        self._leveling = leveling
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current(self) -> Round | None:
        return self._db.live_round()

    def get(self, round_id: int) -> Round | None:
        return self._db.get_round(round_id)

    def archived(self) -> list[Round]:
        return self._db.archived_rounds()

    def bets_for(self, round_id: int) -> list[PredictionSet]:
        return self._db.bets_for_round(round_id)

    def user_bet(self, user_id: str, round_id: int | None = None) -> PredictionSet | None:
        if round_id is None:
            round_ = self._db.live_round()
            if round_ is None:
                return None
            round_id = round_.id
        return self._db.get_bet(user_id, round_id)

    def leaderboard(self, limit: int = 100) -> list[dict[str, Any]]:
        return self._db.leaderboard(limit)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, matches: list[Match] | None = None) -> Round:
        """Start a new round, seeded with the last round's rollover."""
        size = self._rules.slate_size
        if matches is None:
            matches = [Match(home="", away="") for _ in range(size)]
        if len(matches) != size:
            raise InvalidPrediction(f"A round needs exactly {size} matches")

        with self._db.transaction():
            if self._db.live_round() is not None:
                raise RoundAlreadyOpen()
            previous = self._db.last_archived_round()
            pot = previous.rollover_pot if previous else 0
            jackpot = previous.rollover_jackpot if previous else 0
            try:
                round_id = self._db.create_round(matches, pot=pot, jackpot=jackpot)
            except sqlite3.IntegrityError:
                raise RoundAlreadyOpen()

        logger.info(f"Round {round_id} opened (starting pot {pot}, jackpot {jackpot})")
        self._events.publish(ROUND_OPENED, round_id=round_id, pot=pot, jackpot=jackpot)
        return self._db.get_round(round_id)

    def _open_round(self) -> Round:
        round_ = self._db.live_round()
        if round_ is None or round_.status != ROUND_OPEN:
            raise RoundNotOpen()
        return round_

    def _check_index(self, round_: Round, index: int) -> None:
        if not 0 <= index < len(round_.matches):
            raise InvalidMatchIndex(f"Match index must be between 0 and {len(round_.matches) - 1}")

    # ------------------------------------------------------------------
    # Admin edits
    # ------------------------------------------------------------------

    def edit_match(self, index: int, home: str, away: str, league: str = "SERIE A") -> Round:
        with self._db.transaction():
            round_ = self._open_round()
            self._check_index(round_, index)
            round_.matches[index] = Match(home=home, away=away, league=league)
            self._db.update_round(round_.id, matches=round_.matches)
        return round_

    def declare_outcome(self, index: int, outcome: str | None) -> Round:
        """Set (or clear, with None) a match result while the round is open."""
        if outcome is not None and outcome not in OUTCOMES:
            raise InvalidPrediction(f"Outcome must be one of {', '.join(OUTCOMES)}")

        with self._db.transaction():
            round_ = self._open_round()
            self._check_index(round_, index)
            round_.outcomes[index] = outcome
            self._db.update_round(round_.id, outcomes=round_.outcomes)

        self._duels.refresh_live_scores(round_)
        self._events.publish(
            ROUND_RESULTS_UPDATED, round_id=round_.id, index=index, outcome=outcome
        )
        return round_

    def set_jackpot(self, amount: int) -> Round:
        if amount < 0:
            raise InvalidAmount()
        with self._db.transaction():
            round_ = self._open_round()
            self._db.update_round(round_.id, jackpot=amount)
            round_.jackpot = amount
        logger.info(f"Round {round_.id} jackpot set to {amount}")
        return round_

    def set_deadline(self, deadline: str | datetime | None) -> Round:
        value = _parse_ts(deadline).isoformat() if deadline is not None else None
        with self._db.transaction():
            round_ = self._open_round()
            self._db.update_round(round_.id, deadline=value)
            round_.deadline = value
        return round_

    def set_bets_locked(self, locked: bool) -> Round:
        with self._db.transaction():
            round_ = self._open_round()
            self._db.update_round(round_.id, bets_locked=locked)
            round_.bets_locked = locked
        logger.info(f"Round {round_.id} bets {'locked' if locked else 'unlocked'}")
        return round_

    def reset_round(self) -> Round:
        """Clear results and delete every prediction set, refunding the stakes.

        Open duels on the round are called off with their wagers returned.
        """
        with self._db.transaction():
            round_ = self._open_round()
            self._duels.cancel_open(round_)
            bets = self._db.bets_for_round(round_.id)
            for bet in bets:
                self._ledger.credit(
                    bet.user_id,
                    self._rules.prediction_cost(bet.include_jackpot),
                    event_id=f"bet:{bet.id}:refund",
                    reason="round reset",
                )
                self._db.increment_user_stats(bet.user_id, bets_placed=-1)
            self._db.delete_bets(round_.id)
            pot = max(0, round_.pot - self._rules.base_stake * len(bets))
            outcomes = [None] * len(round_.matches)
            self._db.update_round(round_.id, outcomes=outcomes, pot=pot)

        logger.info(f"Round {round_.id} reset: {len(bets)} prediction set(s) refunded")
        self._events.publish(ROUND_RESULTS_UPDATED, round_id=round_.id, reset=True)
        return self._db.get_round(round_.id)

    # ------------------------------------------------------------------
    # Prediction sets
    # ------------------------------------------------------------------

    def submit_prediction(
        self, user_id: str, guesses: list[str], include_jackpot: bool = False
    ) -> PredictionSet:
        cost = self._rules.prediction_cost(include_jackpot)
        # archive() closes the round under this same lock
        with self._db.transaction():
            round_ = self._db.live_round()
            if round_ is None or round_.status != ROUND_OPEN:
                raise RoundNotOpen()
            if round_.deadline and self._clock() >= _parse_ts(round_.deadline):
                raise DeadlinePassed()
            if round_.bets_locked:
                raise BetsLocked()
            if len(guesses) != len(round_.matches) or any(g not in OUTCOMES for g in guesses):
                raise InvalidPrediction(
                    f"Provide exactly {len(round_.matches)} guesses, each one of {', '.join(OUTCOMES)}"
                )
            if self._db.get_user(user_id) is None:
                raise UserNotFound()
            try:
                bet_id = self._db.insert_bet(user_id, round_.id, list(guesses), include_jackpot)
            except sqlite3.IntegrityError:
                raise DuplicateBet()
            self._ledger.debit(user_id, cost, event_id=f"bet:{bet_id}:stake", reason="prediction set")
            self._db.add_to_pot(round_.id, self._rules.base_stake)
            self._db.increment_user_stats(user_id, bets_placed=1)

        bet = self._db.get_bet(user_id, round_.id)
        logger.info(
            f"{bet.username} placed a prediction set on round {round_.id}"
            + (" (with jackpot)" if include_jackpot else "")
        )
        self._events.publish(BET_PLACED, round_id=round_.id, user_id=user_id)
        return bet

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    def archive(self) -> ArchiveReport:
        """Settle and archive the live round. Safe to call again after a failure."""
        with self._db.transaction():
            round_ = self._db.live_round()
            if round_ is None:
                raise RoundNotOpen()

            resumed = round_.status == ROUND_CLOSED
            if not resumed:
                # Refuse up front rather than half-archive a round whose
                # survival picks can't be resolved yet
                self._survival.check_round_ready(round_)
                self._db.update_round(round_.id, status=ROUND_CLOSED)
                round_.status = ROUND_CLOSED

        if not resumed:
            logger.info(f"Round {round_.id} closed, archiving")
        else:
            logger.info(f"Round {round_.id} resuming interrupted archive")

        report = ArchiveReport(round_id=round_.id, resumed=resumed)
        runners = {
            STEP_DUELS: self._duels.resolve,
            STEP_SURVIVAL: self._survival.process_round,
            STEP_PREDICTIONS: lambda r: self._settlement.settle(r).to_dict(),
            STEP_LEVELING: self._leveling.refresh_round,
        }

        for step in ARCHIVE_STEPS:
            try:
                with self._db.transaction():
                    # Marker read under the lock so a concurrent retry can't
                    # run the same step twice
                    summary = self._db.step_summary(round_.id, step)
                    skipped = summary is not None
                    if not skipped:
                        summary = runners[step](round_)
                        self._db.mark_step(round_.id, step, summary)
            except Exception as e:
                logger.exception(f"Archive of round {round_.id} failed at step '{step}'")
                raise ArchiveFailed(round_.id, step, e) from e
            report.steps[step] = summary

            if skipped:
                logger.info(f"Round {round_.id}: step '{step}' already committed, skipping")
            elif step == STEP_DUELS:
                for duel in summary["completed"]:
                    self._events.publish(DUEL_COMPLETED, round_id=round_.id, **duel)

        with self._db.transaction():
            current = self._db.get_round(round_.id)
            if current.status == STATUS_ARCHIVED:
                raise RoundNotOpen()
            self._db.update_round(
                round_.id,
                status=STATUS_ARCHIVED,
                live=None,
                pot=0,
                jackpot=0,
                archived_at=_utcnow().isoformat(),
            )

        logger.info(f"Round {round_.id} archived")
        self._events.publish(ROUND_ARCHIVED, **report.to_dict())
        return report

    # ------------------------------------------------------------------
    # System
    # ------------------------------------------------------------------

    def reset_system(self) -> None:
        """Wipe all game data and restore every balance to the starting value."""
        with self._db.transaction():
            self._db.wipe_game_data(self._rules.starting_balance)
        logger.warning("System reset: all rounds, bets, seasons and duels deleted")
