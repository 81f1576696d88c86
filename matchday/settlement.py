"""
matchday/settlement.py - Prediction set settlement.

Scores every prediction set of a finished round, pays the pot (plus the
super jackpot) to the best scores if they reach the win threshold, and
otherwise rolls the pot over to the next round.
"""

import logging
from dataclasses import asdict, dataclass, field

from .config import RulesConfig
from .db import GameDB
from .ledger import Ledger
from .models import Round
from .scoring import max_score, score_guesses, split_pot

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    round_id: int
    max_score: int = 0
    winners: list[str] = field(default_factory=list)
    payout: int = 0
    burned: int = 0
    rollover_pot: int = 0
    rollover_jackpot: int = 0
    super_jackpot_hit: bool = False

    @property
    def winners_found(self) -> bool:
        return bool(self.winners)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["winners_found"] = self.winners_found
        return data


class PredictionSettlement:
    def __init__(self, db: GameDB, ledger: Ledger, rules: RulesConfig):
        self._db = db
        self._ledger = ledger
        self._rules = rules

    def settle(self, round_: Round) -> SettlementResult:
        """Score, pay winners, and record the outcome on the round row."""
        result = SettlementResult(round_id=round_.id)

        with self._db.transaction():
            bets = self._db.bets_for_round(round_.id)
            scores = {}
            for bet in bets:
                scores[bet.id] = score_guesses(bet.guesses, round_.outcomes)
                self._db.set_bet_score(bet.id, scores[bet.id])

            result.max_score = max_score(list(scores.values()))

            if bets and result.max_score >= self._rules.win_threshold:
                winners = [bet for bet in bets if scores[bet.id] == result.max_score]
                split = split_pot(round_.pot + round_.jackpot, len(winners))
                result.winners = [bet.user_id for bet in winners]
                result.payout = split.payout
                result.burned = split.burned
                result.super_jackpot_hit = result.max_score == self._rules.slate_size

                for bet in winners:
                    paid = self._ledger.credit(
                        bet.user_id,
                        split.payout,
                        event_id=f"round:{round_.id}:payout:{bet.user_id}",
                        reason=f"round {round_.id} winnings",
                    )
                    if paid:
                        self._db.increment_user_stats(
                            bet.user_id, wins_1x2=1, total_tokens_won=split.payout
                        )
                logger.info(
                    f"Round {round_.id}: {len(winners)} winner(s) at {result.max_score}/"
                    f"{self._rules.slate_size}, {split.payout} each, {split.burned} burned"
                )
            else:
                result.rollover_pot = round_.pot
                if self._rules.keep_jackpot_on_rollover:
                    result.rollover_jackpot = round_.jackpot
                logger.info(
                    f"Round {round_.id}: no winners (best {result.max_score}), "
                    f"rolling over pot {result.rollover_pot}"
                )

            self._db.update_round(
                round_.id,
                winners=result.winners,
                payout=result.payout,
                burned=result.burned,
                rollover_pot=result.rollover_pot,
                rollover_jackpot=result.rollover_jackpot,
                winners_found=result.winners_found,
                super_jackpot_hit=result.super_jackpot_hit,
            )

        return result
