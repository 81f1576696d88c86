"""
matchday/db.py - SQLite storage for the settlement core.

All queries go through GameDB. One instance per process lifetime, backed by
a single SQLite file (or :memory: for tests).

The connection runs in autocommit mode; multi-statement commands wrap their
work in ``transaction()``, which serializes writers behind a process lock
and a ``BEGIN IMMEDIATE``. Nested ``transaction()`` blocks become savepoints,
so a failing inner step (a rejected debit, say) rolls back only itself.

Invariants that must hold under concurrent requests live in the schema:
one live round (``rounds.live`` is UNIQUE, NULL once archived), one bet per
(user, round), one pick per (player, round), one player per (season, user),
one ledger entry per event id, and non-negative balances.
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from .models import (
    DUEL_ACCEPTED,
    Duel,
    Match,
    PredictionSet,
    ROUND_ARCHIVED,
    Round,
    SEASON_OPEN,
    SurvivalPick,
    SurvivalPlayer,
    SurvivalSeason,
    User,
)

# Columns stored as JSON text
_JSON_COLUMNS = {"matches", "outcomes", "winners", "guesses", "used_teams"}


class GameDB:
    """Thin wrapper around SQLite for users, rounds, bets, survival and duels."""

    def __init__(self, path: str = "matchday.db"):
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._depth = 0
        self._create_tables()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _create_tables(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL DEFAULT 'USER',
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                wins_1x2 INTEGER NOT NULL DEFAULT 0,
                wins_survival INTEGER NOT NULL DEFAULT 0,
                total_tokens_won INTEGER NOT NULL DEFAULT 0,
                bets_placed INTEGER NOT NULL DEFAULT 0,
                total_points INTEGER NOT NULL DEFAULT 0,
                rounds_played INTEGER NOT NULL DEFAULT 0,
                accuracy REAL NOT NULL DEFAULT 0,
                level INTEGER NOT NULL DEFAULT 1,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS ledger (
                event_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                delta INTEGER NOT NULL,
                reason TEXT,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS rounds (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                matches TEXT NOT NULL,
                outcomes TEXT NOT NULL,
                pot INTEGER NOT NULL DEFAULT 0,
                jackpot INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'OPEN',
                deadline TEXT,
                bets_locked INTEGER NOT NULL DEFAULT 0,
                winners TEXT NOT NULL DEFAULT '[]',
                payout INTEGER NOT NULL DEFAULT 0,
                burned INTEGER NOT NULL DEFAULT 0,
                rollover_pot INTEGER NOT NULL DEFAULT 0,
                rollover_jackpot INTEGER NOT NULL DEFAULT 0,
                winners_found INTEGER NOT NULL DEFAULT 0,
                super_jackpot_hit INTEGER NOT NULL DEFAULT 0,
                live INTEGER UNIQUE,
                created_at TEXT,
                archived_at TEXT
            );

            CREATE TABLE IF NOT EXISTS bets (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                round_id INTEGER NOT NULL REFERENCES rounds(id) ON DELETE CASCADE,
                guesses TEXT NOT NULL,
                include_jackpot INTEGER NOT NULL DEFAULT 0,
                score INTEGER,
                created_at TEXT,
                UNIQUE (user_id, round_id)
            );

            CREATE TABLE IF NOT EXISTS survival_seasons (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                status TEXT NOT NULL DEFAULT 'OPEN',
                prize_pool INTEGER NOT NULL DEFAULT 0,
                start_round_id INTEGER,
                winner_id TEXT,
                stalemate INTEGER NOT NULL DEFAULT 0,
                live INTEGER UNIQUE,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS survival_players (
                id TEXT PRIMARY KEY,
                season_id INTEGER NOT NULL REFERENCES survival_seasons(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                status TEXT NOT NULL DEFAULT 'ALIVE',
                used_teams TEXT NOT NULL DEFAULT '[]',
                eliminated_at_round INTEGER,
                created_at TEXT,
                UNIQUE (season_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS survival_picks (
                id TEXT PRIMARY KEY,
                player_id TEXT NOT NULL REFERENCES survival_players(id) ON DELETE CASCADE,
                round_id INTEGER NOT NULL,
                team TEXT NOT NULL,
                result TEXT NOT NULL DEFAULT 'PENDING',
                UNIQUE (player_id, round_id)
            );

            CREATE TABLE IF NOT EXISTS duels (
                id TEXT PRIMARY KEY,
                round_id INTEGER NOT NULL REFERENCES rounds(id) ON DELETE CASCADE,
                challenger_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                opponent_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                status TEXT NOT NULL DEFAULT 'PENDING',
                wager INTEGER NOT NULL DEFAULT 0,
                challenger_score INTEGER NOT NULL DEFAULT 0,
                opponent_score INTEGER NOT NULL DEFAULT 0,
                winner_id TEXT,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS settlement_steps (
                round_id INTEGER NOT NULL,
                step TEXT NOT NULL,
                summary TEXT,
                completed_at TEXT,
                PRIMARY KEY (round_id, step)
            );
            """
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically. Commits on success, rolls back on any exception."""
        with self._lock:
            savepoint = f"sp{self._depth}"
            if self._depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
            else:
                self._conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.execute("ROLLBACK")
                else:
                    self._conn.execute(f"ROLLBACK TO {savepoint}")
                    self._conn.execute(f"RELEASE {savepoint}")
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.execute("COMMIT")
                else:
                    self._conn.execute(f"RELEASE {savepoint}")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def _fetchall(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def _update(self, table: str, key: str, key_value: Any, fields: dict[str, Any]) -> None:
        """UPDATE a single row by key. Column names come from our own code only."""
        if not fields:
            return
        assignments = ", ".join(f"{col} = ?" for col in fields)
        values = tuple(_encode(col, v) for col, v in fields.items())
        self._execute(
            f"UPDATE {table} SET {assignments} WHERE {key} = ?", values + (key_value,)
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, username: str, role: str = "USER", balance: int = 0) -> str:
        """Insert a user. Returns user_id. Raises IntegrityError on duplicate username."""
        user_id = str(uuid.uuid4())
        self._execute(
            "INSERT INTO users (id, username, role, balance, created_at) VALUES (?, ?, ?, ?, ?)",
            (user_id, username, role, balance, _now()),
        )
        return user_id

    def get_user(self, user_id: str) -> User | None:
        row = self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return User.from_row(row) if row else None

    def get_user_by_name(self, username: str) -> User | None:
        row = self._fetchone("SELECT * FROM users WHERE username = ?", (username,))
        return User.from_row(row) if row else None

    def list_users(self) -> list[User]:
        rows = self._fetchall("SELECT * FROM users ORDER BY created_at DESC")
        return [User.from_row(r) for r in rows]

    def apply_balance_delta(self, user_id: str, delta: int) -> bool:
        """Atomically add delta to a balance. Returns False if it would go negative."""
        cursor = self._execute(
            "UPDATE users SET balance = balance + ? WHERE id = ? AND balance + ? >= 0",
            (delta, user_id, delta),
        )
        return cursor.rowcount == 1

    def increment_user_stats(self, user_id: str, **increments: int) -> None:
        """Add to counters such as bets_placed or wins_1x2 without reading them first."""
        if not increments:
            return
        assignments = ", ".join(f"{col} = {col} + ?" for col in increments)
        self._execute(
            f"UPDATE users SET {assignments} WHERE id = ?",
            tuple(increments.values()) + (user_id,),
        )

    def update_user(self, user_id: str, **fields: Any) -> None:
        self._update("users", "id", user_id, fields)

    def leaderboard(self, limit: int = 100) -> list[dict[str, Any]]:
        """(user, lifetime points) sorted descending."""
        return self._fetchall(
            "SELECT id AS user_id, username, total_points, level FROM users "
            "ORDER BY total_points DESC, username ASC LIMIT ?",
            (limit,),
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def insert_ledger_entry(self, event_id: str, user_id: str, delta: int, reason: str) -> bool:
        """Record a balance event. Returns False if event_id was already applied."""
        cursor = self._execute(
            "INSERT OR IGNORE INTO ledger (event_id, user_id, delta, reason, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (event_id, user_id, delta, reason, _now()),
        )
        return cursor.rowcount == 1

    def ledger_entries(self, user_id: str) -> list[dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM ledger WHERE user_id = ? ORDER BY created_at ASC, rowid ASC",
            (user_id,),
        )

    def ledger_event_exists(self, event_id: str) -> bool:
        return self._fetchone("SELECT 1 AS hit FROM ledger WHERE event_id = ?", (event_id,)) is not None

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def create_round(self, matches: list[Match], pot: int = 0, jackpot: int = 0) -> int:
        """Insert a live round. Raises IntegrityError if another round is live."""
        cursor = self._execute(
            "INSERT INTO rounds (matches, outcomes, pot, jackpot, status, live, created_at) "
            "VALUES (?, ?, ?, ?, 'OPEN', 1, ?)",
            (
                _encode("matches", matches),
                json.dumps([None] * len(matches)),
                pot,
                jackpot,
                _now(),
            ),
        )
        return cursor.lastrowid

    def live_round(self) -> Round | None:
        """The one round that isn't archived yet (OPEN or CLOSED), if any."""
        row = self._fetchone("SELECT * FROM rounds WHERE live = 1")
        return Round.from_row(row) if row else None

    def get_round(self, round_id: int) -> Round | None:
        row = self._fetchone("SELECT * FROM rounds WHERE id = ?", (round_id,))
        return Round.from_row(row) if row else None

    def archived_rounds(self) -> list[Round]:
        rows = self._fetchall(
            "SELECT * FROM rounds WHERE status = ? ORDER BY id DESC", (ROUND_ARCHIVED,)
        )
        return [Round.from_row(r) for r in rows]

    def last_archived_round(self) -> Round | None:
        row = self._fetchone(
            "SELECT * FROM rounds WHERE status = ? ORDER BY id DESC LIMIT 1", (ROUND_ARCHIVED,)
        )
        return Round.from_row(row) if row else None

    def update_round(self, round_id: int, **fields: Any) -> None:
        self._update("rounds", "id", round_id, fields)

    def add_to_pot(self, round_id: int, amount: int) -> None:
        self._execute("UPDATE rounds SET pot = pot + ? WHERE id = ?", (amount, round_id))

    # ------------------------------------------------------------------
    # Bets
    # ------------------------------------------------------------------

    def insert_bet(
        self, user_id: str, round_id: int, guesses: list[str], include_jackpot: bool
    ) -> str:
        """Insert a prediction set. Raises IntegrityError if the user already bet this round."""
        bet_id = str(uuid.uuid4())
        self._execute(
            "INSERT INTO bets (id, user_id, round_id, guesses, include_jackpot, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (bet_id, user_id, round_id, json.dumps(guesses), int(include_jackpot), _now()),
        )
        return bet_id

    def get_bet(self, user_id: str, round_id: int) -> PredictionSet | None:
        row = self._fetchone(
            "SELECT b.*, u.username FROM bets b JOIN users u ON u.id = b.user_id "
            "WHERE b.user_id = ? AND b.round_id = ?",
            (user_id, round_id),
        )
        return PredictionSet.from_row(row) if row else None

    def bets_for_round(self, round_id: int) -> list[PredictionSet]:
        rows = self._fetchall(
            "SELECT b.*, u.username FROM bets b JOIN users u ON u.id = b.user_id "
            "WHERE b.round_id = ? ORDER BY b.created_at ASC, b.rowid ASC",
            (round_id,),
        )
        return [PredictionSet.from_row(r) for r in rows]

    def set_bet_score(self, bet_id: str, score: int) -> None:
        self._execute("UPDATE bets SET score = ? WHERE id = ?", (score, bet_id))

    def delete_bets(self, round_id: int) -> int:
        return self._execute("DELETE FROM bets WHERE round_id = ?", (round_id,)).rowcount

    # ------------------------------------------------------------------
    # Survival
    # ------------------------------------------------------------------

    def create_season(self) -> int:
        """Insert an OPEN season. Raises IntegrityError if one is already live."""
        cursor = self._execute(
            "INSERT INTO survival_seasons (status, prize_pool, live, created_at) "
            "VALUES (?, 0, 1, ?)",
            (SEASON_OPEN, _now()),
        )
        return cursor.lastrowid

    def live_season(self) -> SurvivalSeason | None:
        """The newest season that hasn't completed (OPEN or ACTIVE)."""
        row = self._fetchone("SELECT * FROM survival_seasons WHERE live = 1")
        return SurvivalSeason.from_row(row) if row else None

    def get_season(self, season_id: int) -> SurvivalSeason | None:
        row = self._fetchone("SELECT * FROM survival_seasons WHERE id = ?", (season_id,))
        return SurvivalSeason.from_row(row) if row else None

    def update_season(self, season_id: int, **fields: Any) -> None:
        self._update("survival_seasons", "id", season_id, fields)

    def add_to_prize_pool(self, season_id: int, amount: int) -> None:
        self._execute(
            "UPDATE survival_seasons SET prize_pool = prize_pool + ? WHERE id = ?",
            (amount, season_id),
        )

    def insert_player(self, season_id: int, user_id: str) -> str:
        """Insert an ALIVE player. Raises IntegrityError if the user already joined."""
        player_id = str(uuid.uuid4())
        self._execute(
            "INSERT INTO survival_players (id, season_id, user_id, status, used_teams, created_at) "
            "VALUES (?, ?, ?, 'ALIVE', '[]', ?)",
            (player_id, season_id, user_id, _now()),
        )
        return player_id

    def get_player(self, season_id: int, user_id: str) -> SurvivalPlayer | None:
        row = self._fetchone(
            "SELECT p.*, u.username FROM survival_players p JOIN users u ON u.id = p.user_id "
            "WHERE p.season_id = ? AND p.user_id = ?",
            (season_id, user_id),
        )
        return SurvivalPlayer.from_row(row) if row else None

    def players_for_season(self, season_id: int) -> list[SurvivalPlayer]:
        rows = self._fetchall(
            "SELECT p.*, u.username FROM survival_players p JOIN users u ON u.id = p.user_id "
            "WHERE p.season_id = ? ORDER BY p.created_at ASC, p.rowid ASC",
            (season_id,),
        )
        return [SurvivalPlayer.from_row(r) for r in rows]

    def update_player(self, player_id: str, **fields: Any) -> None:
        self._update("survival_players", "id", player_id, fields)

    def insert_pick(self, player_id: str, round_id: int, team: str) -> str:
        """Insert a pick. Raises IntegrityError if the player already picked this round."""
        pick_id = str(uuid.uuid4())
        self._execute(
            "INSERT INTO survival_picks (id, player_id, round_id, team, result) "
            "VALUES (?, ?, ?, ?, 'PENDING')",
            (pick_id, player_id, round_id, team),
        )
        return pick_id

    def get_pick(self, player_id: str, round_id: int) -> SurvivalPick | None:
        row = self._fetchone(
            "SELECT id, player_id, round_id, team, result FROM survival_picks "
            "WHERE player_id = ? AND round_id = ?",
            (player_id, round_id),
        )
        return SurvivalPick.from_row(row) if row else None

    def picks_for_round(self, round_id: int) -> list[SurvivalPick]:
        rows = self._fetchall(
            "SELECT id, player_id, round_id, team, result FROM survival_picks WHERE round_id = ?",
            (round_id,),
        )
        return [SurvivalPick.from_row(r) for r in rows]

    def set_pick_result(self, pick_id: str, result: str) -> None:
        self._execute("UPDATE survival_picks SET result = ? WHERE id = ?", (result, pick_id))

    # ------------------------------------------------------------------
    # Duels
    # ------------------------------------------------------------------

    def insert_duel(self, round_id: int, challenger_id: str, opponent_id: str, wager: int) -> str:
        duel_id = str(uuid.uuid4())
        self._execute(
            "INSERT INTO duels (id, round_id, challenger_id, opponent_id, status, wager, created_at) "
            "VALUES (?, ?, ?, ?, 'PENDING', ?, ?)",
            (duel_id, round_id, challenger_id, opponent_id, wager, _now()),
        )
        return duel_id

    _DUEL_SELECT = (
        "SELECT d.*, c.username AS challenger_name, o.username AS opponent_name "
        "FROM duels d "
        "JOIN users c ON c.id = d.challenger_id "
        "JOIN users o ON o.id = d.opponent_id "
    )

    def get_duel(self, duel_id: str) -> Duel | None:
        row = self._fetchone(self._DUEL_SELECT + "WHERE d.id = ?", (duel_id,))
        return Duel.from_row(row) if row else None

    def duels_for_round(self, round_id: int, status: str | None = None) -> list[Duel]:
        if status is None:
            rows = self._fetchall(
                self._DUEL_SELECT + "WHERE d.round_id = ? ORDER BY d.created_at DESC",
                (round_id,),
            )
        else:
            rows = self._fetchall(
                self._DUEL_SELECT + "WHERE d.round_id = ? AND d.status = ? "
                "ORDER BY d.created_at ASC, d.rowid ASC",
                (round_id, status),
            )
        return [Duel.from_row(r) for r in rows]

    def duels_for_user(self, round_id: int, user_id: str) -> list[Duel]:
        rows = self._fetchall(
            self._DUEL_SELECT + "WHERE d.round_id = ? AND (d.challenger_id = ? OR d.opponent_id = ?) "
            "ORDER BY d.created_at DESC",
            (round_id, user_id, user_id),
        )
        return [Duel.from_row(r) for r in rows]

    def update_duel(self, duel_id: str, **fields: Any) -> None:
        self._update("duels", "id", duel_id, fields)

    def cache_duel_scores(self, duel_id: str, challenger_score: int, opponent_score: int) -> bool:
        """Store live scores unless the duel has been settled. Returns True if written."""
        cursor = self._execute(
            "UPDATE duels SET challenger_score = ?, opponent_score = ? "
            "WHERE id = ? AND status = ?",
            (challenger_score, opponent_score, duel_id, DUEL_ACCEPTED),
        )
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Settlement steps
    # ------------------------------------------------------------------

    def step_summary(self, round_id: int, step: str) -> dict[str, Any] | None:
        """Summary recorded when a step committed, or None if it hasn't run."""
        row = self._fetchone(
            "SELECT summary FROM settlement_steps WHERE round_id = ? AND step = ?",
            (round_id, step),
        )
        if row is None:
            return None
        return json.loads(row["summary"] or "{}")

    def mark_step(self, round_id: int, step: str, summary: dict[str, Any]) -> None:
        self._execute(
            "INSERT INTO settlement_steps (round_id, step, summary, completed_at) VALUES (?, ?, ?, ?)",
            (round_id, step, json.dumps(summary), _now()),
        )

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def wipe_game_data(self, starting_balance: int) -> None:
        """Delete all rounds, bets, seasons, duels and ledger rows; restore balances."""
        for table in (
            "survival_picks",
            "survival_players",
            "survival_seasons",
            "duels",
            "bets",
            "rounds",
            "ledger",
            "settlement_steps",
        ):
            self._execute(f"DELETE FROM {table}")
        self._execute(
            "UPDATE users SET balance = ?, wins_1x2 = 0, wins_survival = 0, total_tokens_won = 0, "
            "bets_placed = 0, total_points = 0, rounds_played = 0, accuracy = 0, level = 1",
            (starting_balance,),
        )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def user_count(self) -> int:
        return self._fetchone("SELECT COUNT(*) AS n FROM users")["n"]

    def total_balance(self) -> int:
        return self._fetchone("SELECT COALESCE(SUM(balance), 0) AS n FROM users")["n"]


def _encode(column: str, value: Any) -> Any:
    """Serialize list/dataclass columns to JSON text; pass scalars through."""
    if column in _JSON_COLUMNS:
        return json.dumps([_plain(v) for v in value])
    if isinstance(value, bool):
        return int(value)
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, Match):
        return {"home": value.home, "away": value.away, "league": value.league}
    return value


def _now() -> str:
    """ISO timestamp in UTC."""
    return datetime.now(timezone.utc).isoformat()
