"""
matchday/game.py - One object that wires the engines together.

Collaborators (the HTTP server, the CLI, admin tooling) talk to Game only.
Commands never raise for user errors: they return a Result with a success
flag, a human-readable message and, on failure, the error code.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .config import MatchdayConfig, RulesConfig
from .db import GameDB
from .duels import DuelEngine
from .errors import ArchiveFailed, GameError, NotAuthorized, UserNotFound, UsernameTaken
from .events import EventBus
from .ledger import Ledger
from .leveling import LevelingAggregator, tier_label
from .models import ROLE_ADMIN, ROLE_USER, Match, User
from .rounds import RoundManager
from .settlement import PredictionSettlement
from .survival import SurvivalEngine

logger = logging.getLogger(__name__)


@dataclass
class Result:
    success: bool
    message: str
    data: Any = None
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data, "code": self.code}


def _jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


class Game:
    """Facade over the ledger, the round state machine and the three engines."""

    def __init__(
        self,
        db: GameDB,
        rules: RulesConfig | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.rules = rules or RulesConfig()
        self.events = events or EventBus()
        self.ledger = Ledger(db)
        self.leveling = LevelingAggregator(db, self.rules)
        self.duels = DuelEngine(db, self.ledger, self.events)
        self.survival = SurvivalEngine(db, self.ledger, self.rules, self.events, self.leveling)
        self.settlement = PredictionSettlement(db, self.ledger, self.rules)
        round_kwargs = {"clock": clock} if clock is not None else {}
        self.rounds = RoundManager(
            db,
            self.ledger,
            self.rules,
            self.events,
            duels=self.duels,
            survival=self.survival,
            settlement=self.settlement,
            leveling=self.leveling,
            **round_kwargs,
        )

    @classmethod
    def from_config(cls, config: MatchdayConfig, db_path: str | None = None) -> "Game":
        return cls(GameDB(db_path or config.server.db_path), config.rules)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _command(self, message: str | Callable[[Any], str], action: Callable[[], Any]) -> Result:
        try:
            data = action()
        except GameError as e:
            logger.info(f"Rejected ({e.code}): {e}")
            return Result(False, str(e), code=e.code)
        text = message(data) if callable(message) else message
        return Result(True, text, data=_jsonable(data))

    def _require_user(self, user_id: str) -> User:
        user = self.db.get_user(user_id)
        if user is None:
            raise UserNotFound()
        return user

    def _require_admin(self, actor_id: str) -> User:
        user = self._require_user(actor_id)
        if not user.is_admin:
            raise NotAuthorized()
        return user

    def _admin(self, actor_id: str, message: str, action: Callable[[], Any]) -> Result:
        def run():
            self._require_admin(actor_id)
            return action()

        return self._command(message, run)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register_user(self, username: str, role: str = ROLE_USER) -> Result:
        """Create a user funded with the starting balance."""
        def run():
            with self.db.transaction():
                try:
                    user_id = self.db.create_user(username, role=role)
                except sqlite3.IntegrityError:
                    raise UsernameTaken(f"Username {username} is taken")
                self.ledger.credit(
                    user_id,
                    self.rules.starting_balance,
                    event_id=f"user:{user_id}:signup",
                    reason="signup",
                )
            logger.info(f"Registered {username} ({role})")
            return self.db.get_user(user_id)

        return self._command("User registered", run)

    def profile(self, user_id: str) -> dict[str, Any] | None:
        user = self.db.get_user(user_id)
        if user is None:
            return None
        data = user.to_dict()
        data["level_label"] = tier_label(user.level)
        data["total_wins"] = user.total_wins
        return data

    def list_users(self) -> list[User]:
        return self.db.list_users()

    def adjust_tokens(self, actor_id: str, user_id: str, delta: int) -> Result:
        def run():
            self._require_user(user_id)
            balance = self.ledger.adjust(user_id, delta, event_id=f"admin:{uuid.uuid4()}")
            return {"user_id": user_id, "balance": balance}

        return self._admin(actor_id, "Balance updated", run)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_round(self):
        return self.rounds.current()

    def archived_rounds(self):
        return self.rounds.archived()

    def user_bet(self, user_id: str, round_id: int | None = None):
        return self.rounds.user_bet(user_id, round_id)

    def round_bets(self, round_id: int):
        return self.rounds.bets_for(round_id)

    def leaderboard(self, limit: int = 100) -> list[dict[str, Any]]:
        return self.rounds.leaderboard(limit)

    def survival_state(self, user_id: str | None = None) -> dict[str, Any]:
        return self.survival.state(user_id)

    def my_duels(self, user_id: str):
        return self.duels.duels_for(user_id)

    def challengeable_users(self, user_id: str) -> list[dict[str, Any]]:
        return self.duels.challengeable_users(user_id)

    def live_score(self, duel_id: str) -> Result:
        return self._command("Live score", lambda: self.duels.live_score(duel_id))

    # ------------------------------------------------------------------
    # User commands
    # ------------------------------------------------------------------

    def submit_prediction(self, user_id: str, guesses: list[str], include_jackpot: bool = False) -> Result:
        message = "Prediction set + super jackpot placed!" if include_jackpot else "Prediction set placed!"
        return self._command(
            message, lambda: self.rounds.submit_prediction(user_id, guesses, include_jackpot)
        )

    def join_season(self, user_id: str, season_id: int) -> Result:
        return self._command(
            "You joined the survival season", lambda: self.survival.join_season(user_id, season_id)
        )

    def submit_pick(self, user_id: str, season_id: int, team: str) -> Result:
        return self._command(
            lambda pick: f"Pick saved: {pick.team}",
            lambda: self.survival.submit_pick(user_id, season_id, team),
        )

    def create_duel(self, user_id: str, opponent_id: str, wager: int = 0) -> Result:
        def run():
            self._require_user(user_id)
            return self.duels.create_duel(user_id, opponent_id, wager)

        return self._command("Challenge sent!", run)

    def respond_duel(self, user_id: str, duel_id: str, accept: bool) -> Result:
        return self._command(
            "Challenge accepted!" if accept else "Challenge declined",
            lambda: self.duels.respond(user_id, duel_id, accept),
        )

    # ------------------------------------------------------------------
    # Admin commands
    # ------------------------------------------------------------------

    def open_round(self, actor_id: str, matches: list[Match] | None = None) -> Result:
        return self._admin(actor_id, "Round opened", lambda: self.rounds.open(matches))

    def edit_match(self, actor_id: str, index: int, home: str, away: str, league: str = "SERIE A") -> Result:
        return self._admin(
            actor_id, "Match updated", lambda: self.rounds.edit_match(index, home, away, league)
        )

    def declare_outcome(self, actor_id: str, index: int, outcome: str | None) -> Result:
        return self._admin(
            actor_id,
            "Result cleared" if outcome is None else "Result saved",
            lambda: self.rounds.declare_outcome(index, outcome),
        )

    def set_jackpot(self, actor_id: str, amount: int) -> Result:
        return self._admin(actor_id, "Super jackpot updated", lambda: self.rounds.set_jackpot(amount))

    def set_deadline(self, actor_id: str, deadline: str | datetime | None) -> Result:
        return self._admin(actor_id, "Deadline updated", lambda: self.rounds.set_deadline(deadline))

    def set_bets_locked(self, actor_id: str, locked: bool) -> Result:
        return self._admin(
            actor_id,
            "Bets locked" if locked else "Bets unlocked",
            lambda: self.rounds.set_bets_locked(locked),
        )

    def reset_round(self, actor_id: str) -> Result:
        return self._admin(actor_id, "Round reset", self.rounds.reset_round)

    def archive_round(self, actor_id: str) -> Result:
        """Archive the live round. A mid-way fault comes back as ARCHIVE_FAILED
        with the round id and step; calling again resumes from that step."""
        try:
            self._require_admin(actor_id)
            report = self.rounds.archive()
        except GameError as e:
            logger.info(f"Archive rejected ({e.code}): {e}")
            return Result(False, str(e), code=e.code)
        except ArchiveFailed as e:
            return Result(
                False,
                f"{e}. Completed steps are kept; retry archive to resume.",
                data={"round_id": e.round_id, "step": e.step},
                code=e.code,
            )

        data = report.to_dict()
        if data["winners"]:
            message = f"Round archived. {len(data['winners'])} winner(s)!"
        else:
            message = "Round archived. No winners (rollover)"
        return Result(True, message, data=data)

    def reset_system(self, actor_id: str) -> Result:
        return self._admin(
            actor_id,
            "System reset. All game data has been cleared.",
            self.rounds.reset_system,
        )

    def start_season(self, actor_id: str) -> Result:
        return self._admin(actor_id, "Survival season started", self.survival.start_new_season)

    def close_season(self, actor_id: str, season_id: int) -> Result:
        def message(season):
            if season.stalemate:
                return "Season closed with no survivors"
            return f"Season closed, {season.prize_pool} tokens paid to the winner"

        def run():
            self._require_admin(actor_id)
            return self.survival.close_season(season_id)

        return self._command(message, run)


__all__ = ["Game", "Result", "ROLE_ADMIN", "ROLE_USER"]
