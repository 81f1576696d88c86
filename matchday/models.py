"""
matchday/models.py - Data types shared by the storage layer and the engines.

Rows come out of SQLite as dicts; each type has ``from_row`` to build itself
and ``to_dict`` for JSON responses. Statuses are plain strings, matching the
values stored in the database.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any

# Match outcomes (1X2 notation)
HOME_WIN = "1"
DRAW = "X"
AWAY_WIN = "2"
OUTCOMES = (HOME_WIN, DRAW, AWAY_WIN)

ROLE_ADMIN = "ADMIN"
ROLE_USER = "USER"

LEAGUES = ("SERIE A", "CUSTOM")

# Round lifecycle
ROUND_OPEN = "OPEN"
ROUND_CLOSED = "CLOSED"
ROUND_ARCHIVED = "ARCHIVED"

# Survival
SEASON_OPEN = "OPEN"
SEASON_ACTIVE = "ACTIVE"
SEASON_COMPLETED = "COMPLETED"

PLAYER_ALIVE = "ALIVE"
PLAYER_ELIMINATED = "ELIMINATED"
PLAYER_WINNER = "WINNER"

PICK_PENDING = "PENDING"
PICK_WIN = "WIN"
PICK_ELIMINATED = "ELIMINATED"

# Duels
DUEL_PENDING = "PENDING"
DUEL_ACCEPTED = "ACCEPTED"
DUEL_DECLINED = "DECLINED"
DUEL_COMPLETED = "COMPLETED"


def _loads(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    return json.loads(value)


@dataclass
class User:
    id: str
    username: str
    role: str = ROLE_USER
    balance: int = 0
    wins_1x2: int = 0
    wins_survival: int = 0
    total_tokens_won: int = 0
    bets_placed: int = 0
    total_points: int = 0
    rounds_played: int = 0
    accuracy: float = 0.0
    level: int = 1
    created_at: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def total_wins(self) -> int:
        return self.wins_1x2 + self.wins_survival

    @classmethod
    def from_row(cls, row: dict) -> "User":
        return cls(**row)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Match:
    home: str
    away: str
    league: str = "SERIE A"

    def teams(self) -> tuple[str, str]:
        return (self.home, self.away)

    def winner(self, outcome: str | None) -> str | None:
        """Team that won given a declared outcome, None for a draw or unset."""
        if outcome == HOME_WIN:
            return self.home
        if outcome == AWAY_WIN:
            return self.away
        return None


@dataclass
class Round:
    id: int
    matches: list[Match]
    outcomes: list[str | None]
    pot: int = 0
    jackpot: int = 0
    status: str = ROUND_OPEN
    deadline: str | None = None
    bets_locked: bool = False
    winners: list[str] = field(default_factory=list)
    payout: int = 0
    burned: int = 0
    rollover_pot: int = 0
    rollover_jackpot: int = 0
    winners_found: bool = False
    super_jackpot_hit: bool = False
    created_at: str | None = None
    archived_at: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status == ROUND_OPEN

    def teams(self) -> list[str]:
        """All teams in slate order: home then away for each match."""
        return [team for match in self.matches for team in match.teams()]

    def match_for_team(self, team: str) -> tuple[int, Match] | None:
        for idx, match in enumerate(self.matches):
            if team in match.teams():
                return idx, match
        return None

    @classmethod
    def from_row(cls, row: dict) -> "Round":
        return cls(
            id=row["id"],
            matches=[Match(**m) for m in _loads(row["matches"], [])],
            outcomes=_loads(row["outcomes"], []),
            pot=row["pot"],
            jackpot=row["jackpot"],
            status=row["status"],
            deadline=row["deadline"],
            bets_locked=bool(row["bets_locked"]),
            winners=_loads(row["winners"], []),
            payout=row["payout"],
            burned=row["burned"],
            rollover_pot=row["rollover_pot"],
            rollover_jackpot=row["rollover_jackpot"],
            winners_found=bool(row["winners_found"]),
            super_jackpot_hit=bool(row["super_jackpot_hit"]),
            created_at=row["created_at"],
            archived_at=row["archived_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PredictionSet:
    id: str
    user_id: str
    round_id: int
    guesses: list[str]
    include_jackpot: bool = False
    score: int | None = None
    created_at: str | None = None
    username: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "PredictionSet":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            round_id=row["round_id"],
            guesses=_loads(row["guesses"], []),
            include_jackpot=bool(row["include_jackpot"]),
            score=row["score"],
            created_at=row["created_at"],
            username=row.get("username"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SurvivalSeason:
    id: int
    status: str = SEASON_OPEN
    prize_pool: int = 0
    start_round_id: int | None = None
    winner_id: str | None = None
    stalemate: bool = False
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "SurvivalSeason":
        return cls(
            id=row["id"],
            status=row["status"],
            prize_pool=row["prize_pool"],
            start_round_id=row["start_round_id"],
            winner_id=row["winner_id"],
            stalemate=bool(row["stalemate"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SurvivalPlayer:
    id: str
    season_id: int
    user_id: str
    status: str = PLAYER_ALIVE
    used_teams: list[str] = field(default_factory=list)
    eliminated_at_round: int | None = None
    username: str | None = None
    current_pick: str | None = None

    @property
    def is_alive(self) -> bool:
        return self.status == PLAYER_ALIVE

    @classmethod
    def from_row(cls, row: dict) -> "SurvivalPlayer":
        return cls(
            id=row["id"],
            season_id=row["season_id"],
            user_id=row["user_id"],
            status=row["status"],
            used_teams=_loads(row["used_teams"], []),
            eliminated_at_round=row["eliminated_at_round"],
            username=row.get("username"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SurvivalPick:
    id: str
    player_id: str
    round_id: int
    team: str
    result: str = PICK_PENDING

    @classmethod
    def from_row(cls, row: dict) -> "SurvivalPick":
        return cls(**row)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Duel:
    id: str
    round_id: int
    challenger_id: str
    opponent_id: str
    status: str = DUEL_PENDING
    wager: int = 0
    challenger_score: int = 0
    opponent_score: int = 0
    winner_id: str | None = None
    created_at: str | None = None
    challenger_name: str | None = None
    opponent_name: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Duel":
        return cls(**row)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
