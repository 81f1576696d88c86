"""
matchday/duels.py - Head-to-head wagered challenges.

Both sides are scored with their own prediction set against the same
round's outcomes. Wagers sit in escrow (debited from the challenger on
creation, from the opponent on acceptance) until the round is archived.
"""

import logging
from typing import Any

from .db import GameDB
from .errors import (
    DuelNotFound,
    DuelNotPending,
    InvalidWager,
    NoOpenRound,
    NotOpponent,
    OpponentIneligible,
    RoundNotOpen,
    SelfChallenge,
    UserNotFound,
)
from .events import DUEL_RECEIVED, DUEL_RESPONDED, EventBus
from .ledger import Ledger
from .models import (
    DUEL_ACCEPTED,
    DUEL_COMPLETED,
    DUEL_DECLINED,
    DUEL_PENDING,
    Duel,
    Round,
)
from .scoring import score_guesses

logger = logging.getLogger(__name__)


class DuelEngine:
    def __init__(self, db: GameDB, ledger: Ledger, events: EventBus):
        self._db = db
        self._ledger = ledger
        self._events = events

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_duel(self, challenger_id: str, opponent_id: str, wager: int = 0) -> Duel:
        """Challenge a user who already has a prediction set on the open round."""
        with self._db.transaction():
            round_ = self._db.live_round()
            if round_ is None or not round_.is_open:
                raise NoOpenRound()
            if challenger_id == opponent_id:
                raise SelfChallenge()
            if wager < 0:
                raise InvalidWager()
            if self._db.get_user(opponent_id) is None:
                raise UserNotFound("Opponent not found")
            if self._db.get_bet(opponent_id, round_.id) is None:
                raise OpponentIneligible()
            duel_id = self._db.insert_duel(round_.id, challenger_id, opponent_id, wager)
            if wager > 0:
                self._ledger.debit(
                    challenger_id, wager, event_id=f"duel:{duel_id}:escrow:challenger", reason="duel wager"
                )

        duel = self._db.get_duel(duel_id)
        logger.info(
            f"Duel {duel_id}: {duel.challenger_name} challenged {duel.opponent_name} "
            f"for {wager} token(s)"
        )
        self._events.publish(
            DUEL_RECEIVED,
            duel_id=duel_id,
            challenger_id=challenger_id,
            opponent_id=opponent_id,
            wager=wager,
        )
        return duel

    def respond(self, user_id: str, duel_id: str, accept: bool) -> Duel:
        """Opponent accepts (escrowing their wager) or declines (refunding the challenger)."""
        with self._db.transaction():
            duel = self._db.get_duel(duel_id)
            if duel is None:
                raise DuelNotFound()
            if duel.status != DUEL_PENDING:
                raise DuelNotPending()
            if duel.opponent_id != user_id:
                raise NotOpponent()
            round_ = self._db.get_round(duel.round_id)
            if round_ is None or not round_.is_open:
                raise RoundNotOpen()

            if accept:
                if duel.wager > 0:
                    self._ledger.debit(
                        user_id, duel.wager, event_id=f"duel:{duel_id}:escrow:opponent", reason="duel wager"
                    )
                self._db.update_duel(duel_id, status=DUEL_ACCEPTED)
            else:
                self._refund(duel, duel.challenger_id, "challenger")
                self._db.update_duel(duel_id, status=DUEL_DECLINED)

        duel = self._db.get_duel(duel_id)
        logger.info(f"Duel {duel_id} {duel.status.lower()} by {duel.opponent_name}")
        self._events.publish(
            DUEL_RESPONDED, duel_id=duel_id, challenger_id=duel.challenger_id, status=duel.status
        )
        return duel

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _scores(self, duel: Duel, round_: Round) -> tuple[int, int]:
        challenger_bet = self._db.get_bet(duel.challenger_id, round_.id)
        opponent_bet = self._db.get_bet(duel.opponent_id, round_.id)
        challenger = score_guesses(challenger_bet.guesses, round_.outcomes) if challenger_bet else 0
        opponent = score_guesses(opponent_bet.guesses, round_.outcomes) if opponent_bet else 0
        return challenger, opponent

    def live_score(self, duel_id: str) -> Duel:
        """Current score of a duel from the declared outcomes so far.

        Only ACCEPTED duels are recomputed; the cached scores are never
        written over a duel that has already been settled.
        """
        duel = self._db.get_duel(duel_id)
        if duel is None:
            raise DuelNotFound()
        if duel.status != DUEL_ACCEPTED:
            return duel

        round_ = self._db.get_round(duel.round_id)
        challenger, opponent = self._scores(duel, round_)
        if self._db.cache_duel_scores(duel_id, challenger, opponent):
            duel.challenger_score = challenger
            duel.opponent_score = opponent
            return duel
        # Settled while we were computing; the stored result wins
        return self._db.get_duel(duel_id)

    def refresh_live_scores(self, round_: Round) -> int:
        """Recompute every accepted duel on a round. Returns how many were updated."""
        updated = 0
        for duel in self._db.duels_for_round(round_.id, DUEL_ACCEPTED):
            challenger, opponent = self._scores(duel, round_)
            if self._db.cache_duel_scores(duel.id, challenger, opponent):
                updated += 1
        return updated

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def resolve(self, round_: Round) -> dict[str, Any]:
        """Settle every accepted duel on the round and expire pending ones.

        Strict winner takes both wagers; a tie gives each side its own
        wager back. Pending challenges are refunded and marked DECLINED.
        """
        completed = []
        expired = []
        with self._db.transaction():
            for duel in self._db.duels_for_round(round_.id, DUEL_ACCEPTED):
                challenger, opponent = self._scores(duel, round_)
                winner_id = None
                if challenger > opponent:
                    winner_id = duel.challenger_id
                elif opponent > challenger:
                    winner_id = duel.opponent_id

                if duel.wager > 0:
                    if winner_id is not None:
                        self._ledger.credit(
                            winner_id,
                            2 * duel.wager,
                            event_id=f"duel:{duel.id}:payout",
                            reason="duel winnings",
                        )
                    else:
                        self._refund(duel, duel.challenger_id, "challenger")
                        self._refund(duel, duel.opponent_id, "opponent")

                self._db.update_duel(
                    duel.id,
                    status=DUEL_COMPLETED,
                    challenger_score=challenger,
                    opponent_score=opponent,
                    winner_id=winner_id,
                )
                completed.append(
                    {"duel_id": duel.id, "winner_id": winner_id, "scores": [challenger, opponent]}
                )

            for duel in self._db.duels_for_round(round_.id, DUEL_PENDING):
                self._refund(duel, duel.challenger_id, "challenger")
                self._db.update_duel(duel.id, status=DUEL_DECLINED)
                expired.append(duel.id)

        logger.info(
            f"Round {round_.id} duels resolved: {len(completed)} completed, {len(expired)} expired"
        )
        return {"completed": completed, "expired": expired}

    def cancel_open(self, round_: Round) -> list[str]:
        """Call off every pending or accepted duel on the round, refunding all escrow.

        Used when the round's prediction sets are wiped.
        """
        cancelled = []
        with self._db.transaction():
            for duel in self._db.duels_for_round(round_.id, DUEL_ACCEPTED):
                self._refund(duel, duel.challenger_id, "challenger")
                self._refund(duel, duel.opponent_id, "opponent")
                self._db.update_duel(duel.id, status=DUEL_DECLINED)
                cancelled.append(duel.id)
            for duel in self._db.duels_for_round(round_.id, DUEL_PENDING):
                self._refund(duel, duel.challenger_id, "challenger")
                self._db.update_duel(duel.id, status=DUEL_DECLINED)
                cancelled.append(duel.id)
        if cancelled:
            logger.info(f"Round {round_.id}: {len(cancelled)} open duel(s) called off and refunded")
        return cancelled

    def _refund(self, duel: Duel, user_id: str, side: str) -> None:
        if duel.wager <= 0:
            return
        self._ledger.credit(
            user_id, duel.wager, event_id=f"duel:{duel.id}:refund:{side}", reason="duel refund"
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def challengeable_users(self, user_id: str) -> list[dict[str, Any]]:
        """Users with a prediction set on the open round, other than the caller."""
        round_ = self._db.live_round()
        if round_ is None or not round_.is_open:
            return []
        return [
            {"id": bet.user_id, "username": bet.username}
            for bet in self._db.bets_for_round(round_.id)
            if bet.user_id != user_id
        ]

    def duels_for(self, user_id: str) -> list[Duel]:
        round_ = self._db.live_round()
        if round_ is None:
            return []
        return self._db.duels_for_user(round_.id, user_id)

    def all_duels(self) -> list[Duel]:
        round_ = self._db.live_round()
        if round_ is None:
            return []
        return self._db.duels_for_round(round_.id)
