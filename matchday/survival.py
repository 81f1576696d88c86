"""
matchday/survival.py - Elimination seasons.

Players pay an entry fee into the season's prize pool, then pick one team
per round. A team may be used once per season. Winning keeps you alive;
a draw, a loss, or no pick at all eliminates you. The last one standing
takes the whole pool.
"""

import logging
import sqlite3
from typing import Any

from .config import RulesConfig
from .db import GameDB
from .errors import (
    AlreadyJoined,
    NoOpenRound,
    PickAlreadyExists,
    PlayerNotAlive,
    ResultsIncomplete,
    SeasonInProgress,
    SeasonNotDecided,
    SeasonNotOpen,
    TeamAlreadyUsed,
    TeamNotEligible,
    UserNotFound,
)
from .events import SURVIVAL_PICK, SURVIVAL_SEASON_CLOSED, EventBus
from .leveling import LevelingAggregator
from .ledger import Ledger
from .models import (
    PICK_ELIMINATED,
    PICK_WIN,
    PLAYER_ELIMINATED,
    PLAYER_WINNER,
    Round,
    SEASON_ACTIVE,
    SEASON_COMPLETED,
    SEASON_OPEN,
    SurvivalPick,
    SurvivalPlayer,
    SurvivalSeason,
)

logger = logging.getLogger(__name__)


class SurvivalEngine:
    def __init__(
        self,
        db: GameDB,
        ledger: Ledger,
        rules: RulesConfig,
        events: EventBus,
        leveling: LevelingAggregator | None = None,
    ):
        self._db = db
        self._ledger = ledger
        self._rules = rules
        self._events = events
        self._leveling = leveling

    # ------------------------------------------------------------------
    # Seasons
    # ------------------------------------------------------------------

    def current_season(self) -> SurvivalSeason | None:
        return self._db.live_season()

    def start_new_season(self) -> SurvivalSeason:
        with self._db.transaction():
            if self._db.live_season() is not None:
                raise SeasonInProgress()
            try:
                season_id = self._db.create_season()
            except sqlite3.IntegrityError:
                raise SeasonInProgress()
        logger.info(f"Survival season {season_id} opened")
        return self._db.get_season(season_id)

    def join_season(self, user_id: str, season_id: int) -> SurvivalPlayer:
        """Pay the entry fee into the prize pool and enter as ALIVE."""
        fee = self._rules.survival_entry_fee
        with self._db.transaction():
            season = self._db.get_season(season_id)
            if season is None or season.status != SEASON_OPEN:
                raise SeasonNotOpen()
            if self._db.get_user(user_id) is None:
                raise UserNotFound()
            if self._db.get_player(season_id, user_id) is not None:
                raise AlreadyJoined()
            try:
                self._db.insert_player(season_id, user_id)
            except sqlite3.IntegrityError:
                raise AlreadyJoined()
            self._ledger.debit(
                user_id, fee, event_id=f"survival:{season_id}:entry:{user_id}", reason="survival entry"
            )
            self._db.add_to_prize_pool(season_id, fee)

        player = self._db.get_player(season_id, user_id)
        logger.info(f"{player.username} joined survival season {season_id}")
        return player

    def close_season(self, season_id: int) -> SurvivalSeason:
        """Pay the sole survivor, or record a stalemate if nobody is left."""
        with self._db.transaction():
            season = self._db.get_season(season_id)
            if season is None or season.status == SEASON_COMPLETED:
                raise SeasonNotOpen("Survival season is not in progress")
            alive = [p for p in self._db.players_for_season(season_id) if p.is_alive]
            if len(alive) > 1:
                raise SeasonNotDecided(f"{len(alive)} players are still alive")

            winner_id = None
            if alive:
                winner = alive[0]
                winner_id = winner.user_id
                self._db.update_player(winner.id, status=PLAYER_WINNER)
                paid = self._ledger.credit(
                    winner.user_id,
                    season.prize_pool,
                    event_id=f"survival:{season_id}:prize",
                    reason=f"survival season {season_id} prize",
                )
                if paid:
                    self._db.increment_user_stats(
                        winner.user_id, wins_survival=1, total_tokens_won=season.prize_pool
                    )
                if self._leveling is not None:
                    self._leveling.refresh_user(winner.user_id)
                logger.info(
                    f"Survival season {season_id} won by {winner.username}: {season.prize_pool} tokens"
                )
            else:
                logger.info(
                    f"Survival season {season_id} ended in stalemate, {season.prize_pool} tokens burned"
                )

            self._db.update_season(
                season_id,
                status=SEASON_COMPLETED,
                winner_id=winner_id,
                stalemate=winner_id is None,
                live=None,
            )

        closed = self._db.get_season(season_id)
        self._events.publish(
            SURVIVAL_SEASON_CLOSED,
            season_id=season_id,
            winner_id=winner_id,
            prize_pool=closed.prize_pool,
            stalemate=closed.stalemate,
        )
        return closed

    # ------------------------------------------------------------------
    # Picks
    # ------------------------------------------------------------------

    def eligible_teams(self, round_: Round, used_teams: list[str] | None = None) -> list[str]:
        """Teams a player may pick this round.

        The trailing ``reserved_teams`` of the slate are never pickable, and
        teams already used this season are removed.
        """
        teams = round_.teams()
        reserved = self._rules.reserved_teams
        if reserved > 0:
            teams = teams[:-reserved]
        used = set(used_teams or [])
        return [t for t in teams if t and t not in used]

    def submit_pick(self, user_id: str, season_id: int, team: str) -> SurvivalPick:
        with self._db.transaction():
            player = self._db.get_player(season_id, user_id)
            if player is None or not player.is_alive:
                raise PlayerNotAlive()

            round_ = self._db.live_round()
            if round_ is None or not round_.is_open:
                raise NoOpenRound()

            if team in player.used_teams:
                raise TeamAlreadyUsed(f"You already used {team} this season")
            if self._db.get_pick(player.id, round_.id) is not None:
                raise PickAlreadyExists()
            if team not in self.eligible_teams(round_):
                raise TeamNotEligible(f"{team} can't be picked this round")
            try:
                pick_id = self._db.insert_pick(player.id, round_.id, team)
            except sqlite3.IntegrityError:
                raise PickAlreadyExists()

        logger.info(f"{player.username} picked {team} for round {round_.id}")
        self._events.publish(SURVIVAL_PICK, season_id=season_id, user_id=user_id, round_id=round_.id)
        return SurvivalPick(id=pick_id, player_id=player.id, round_id=round_.id, team=team)

    # ------------------------------------------------------------------
    # Round processing
    # ------------------------------------------------------------------

    def check_round_ready(self, round_: Round) -> None:
        """Raise ResultsIncomplete if an alive player's pick has no outcome yet."""
        season = self._db.live_season()
        if season is None:
            return
        picks = {p.player_id: p for p in self._db.picks_for_round(round_.id)}
        for player in self._db.players_for_season(season.id):
            if not player.is_alive or player.id not in picks:
                continue
            found = round_.match_for_team(picks[player.id].team)
            if found is not None and round_.outcomes[found[0]] is None:
                match = found[1]
                raise ResultsIncomplete(
                    f"No result for {match.home} - {match.away}, picked by {player.username}"
                )

    def process_round(self, round_: Round) -> dict[str, Any]:
        """Resolve every alive player's pick against the round's outcomes."""
        season = self._db.live_season()
        if season is None:
            logger.debug(f"Round {round_.id}: no survival season in progress")
            return {"season_id": None, "eliminated": 0, "advanced": 0}

        self.check_round_ready(round_)

        eliminated = 0
        advanced = 0
        with self._db.transaction():
            picks = {p.player_id: p for p in self._db.picks_for_round(round_.id)}
            for player in self._db.players_for_season(season.id):
                if not player.is_alive:
                    continue

                pick = picks.get(player.id)
                if pick is None:
                    self._eliminate(player, round_.id, "no pick")
                    eliminated += 1
                    continue

                found = round_.match_for_team(pick.team)
                if found is None:
                    logger.warning(
                        f"{player.username} picked {pick.team}, which isn't in round {round_.id}"
                    )
                    self._db.set_pick_result(pick.id, PICK_ELIMINATED)
                    self._eliminate(player, round_.id, "team not playing")
                    eliminated += 1
                    continue

                idx, match = found
                if match.winner(round_.outcomes[idx]) == pick.team:
                    self._db.set_pick_result(pick.id, PICK_WIN)
                    self._db.update_player(player.id, used_teams=player.used_teams + [pick.team])
                    advanced += 1
                else:
                    self._db.set_pick_result(pick.id, PICK_ELIMINATED)
                    self._eliminate(player, round_.id, f"{pick.team} did not win")
                    eliminated += 1

            if season.status == SEASON_OPEN:
                self._db.update_season(season.id, status=SEASON_ACTIVE)
            if season.start_round_id is None:
                self._db.update_season(season.id, start_round_id=round_.id)

        logger.info(
            f"Survival round {round_.id} processed: {eliminated} eliminated, {advanced} advanced"
        )
        return {"season_id": season.id, "eliminated": eliminated, "advanced": advanced}

    def _eliminate(self, player: SurvivalPlayer, round_id: int, why: str) -> None:
        self._db.update_player(player.id, status=PLAYER_ELIMINATED, eliminated_at_round=round_id)
        logger.debug(f"{player.username} eliminated in round {round_id}: {why}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state(self, user_id: str | None = None) -> dict[str, Any]:
        """Season, players with their current pick, and the caller's own context."""
        season = self._db.live_season()
        if season is None:
            return {"season": None, "players": [], "me": None}

        round_ = self._db.live_round()
        picks = {}
        if round_ is not None:
            picks = {p.player_id: p for p in self._db.picks_for_round(round_.id)}

        players = self._db.players_for_season(season.id)
        me = None
        for player in players:
            pick = picks.get(player.id)
            player.current_pick = pick.team if pick else None
            if user_id is not None and player.user_id == user_id:
                me = {
                    "player": player.to_dict(),
                    "pick": pick.team if pick else None,
                    "pick_status": pick.result if pick else None,
                    "eligible_teams": (
                        self.eligible_teams(round_, player.used_teams)
                        if round_ is not None and player.is_alive
                        else []
                    ),
                }

        return {
            "season": season.to_dict(),
            "players": [p.to_dict() for p in players],
            "me": me,
        }
