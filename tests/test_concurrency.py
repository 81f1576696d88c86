"""
tests/test_concurrency.py - Commands racing each other on a file-backed DB.

The server runs sync endpoints on a thread pool, so these drive the game
from several threads against one GameDB, the way uvicorn would.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from matchday.db import GameDB
from matchday.errors import InsufficientFunds
from matchday.ledger import Ledger
from matchday.models import DUEL_DECLINED, ROUND_ARCHIVED, ROUND_OPEN

from .conftest import declare_all, make_slate

ALL_HOME = ["1"] * 12


@pytest.fixture
def db(tmp_path):
    """File-backed DB; overrides the in-memory one from conftest."""
    db = GameDB(str(tmp_path / "race.db"))
    yield db
    db.close()


def _archive_inside(game, admin, monkeypatch, method):
    """Patch a GameDB read so its first call starts archive_round on another thread.

    The calling command keeps going after giving the archive half a second,
    so if the command's checks and writes aren't under one lock the archive
    lands in between.
    """
    original = getattr(game.db, method)
    racers = []
    results = []

    def racing(*args, **kwargs):
        if not racers:
            racer = threading.Thread(target=lambda: results.append(game.archive_round(admin)))
            racers.append(racer)
            racer.start()
            racer.join(timeout=0.5)
        return original(*args, **kwargs)

    monkeypatch.setattr(game.db, method, racing)

    def finish():
        for racer in racers:
            racer.join()
        monkeypatch.undo()
        return results[0]

    return finish


# ======================================================================
# Same user, same round
# ======================================================================


class TestConcurrentBets:
    def test_one_prediction_set_per_user(self, game, players, live_round):
        anna = players[0]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: game.submit_prediction(anna, ALL_HOME), range(8)))

        assert sum(r.success for r in results) == 1
        assert {r.code for r in results if not r.success} == {"DUPLICATE_BET"}
        assert game.db.get_user(anna).balance == 99
        assert game.db.get_user(anna).bets_placed == 1
        assert game.current_round().pot == 1

    def test_many_users_all_counted(self, game, players, live_round):
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda uid: game.submit_prediction(uid, ALL_HOME), players))

        assert all(r.success for r in results)
        assert game.current_round().pot == len(players)


# ======================================================================
# Balance
# ======================================================================


class TestConcurrentDebits:
    def test_balance_never_goes_negative(self, db):
        ledger = Ledger(db)
        alice = db.create_user("alice", balance=100)

        def take(i):
            try:
                return ledger.debit(alice, 5, event_id=f"race:{i}")
            except InsufficientFunds:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            applied = list(pool.map(take, range(30)))

        assert sum(applied) == 20
        assert ledger.balance(alice) == 0

    def test_same_event_applied_once(self, db):
        ledger = Ledger(db)
        alice = db.create_user("alice", balance=100)

        with ThreadPoolExecutor(max_workers=8) as pool:
            applied = list(pool.map(lambda _: ledger.debit(alice, 10, event_id="once"), range(10)))

        assert applied.count(True) == 1
        assert ledger.balance(alice) == 90


# ======================================================================
# Commands racing archive
# ======================================================================


class TestRacingArchive:
    def test_bet_lands_before_close(self, game, admin, players, live_round, monkeypatch):
        anna = players[0]
        finish = _archive_inside(game, admin, monkeypatch, "get_user")

        result = game.submit_prediction(anna, ALL_HOME)
        archived = finish()

        assert result.success
        assert archived.success
        assert game.db.get_round(live_round.id).status == ROUND_ARCHIVED
        # The bet was part of the archived round: scored, stake rolled over
        assert game.db.get_bet(anna, live_round.id).score == 0
        assert game.db.get_user(anna).balance == 99
        game.open_round(admin, make_slate())
        assert game.current_round().pot == 1

    def test_duel_lands_before_close(self, game, admin, players, live_round, monkeypatch):
        anna, bruno = players[:2]
        game.submit_prediction(anna, ALL_HOME)
        game.submit_prediction(bruno, ALL_HOME)
        finish = _archive_inside(game, admin, monkeypatch, "get_bet")

        result = game.create_duel(anna, bruno, wager=10)
        archived = finish()

        assert result.success
        assert archived.success
        # Still pending at archive, so it was expired and refunded
        assert game.db.get_duel(result.data["id"]).status == DUEL_DECLINED
        assert game.db.get_user(anna).balance == 99

    def test_pick_blocks_archive_until_result(self, game, admin, players, live_round, monkeypatch):
        anna = players[0]
        season_id = game.start_season(admin).data["id"]
        game.join_season(anna, season_id)
        finish = _archive_inside(game, admin, monkeypatch, "get_pick")

        result = game.submit_pick(anna, season_id, "Inter")
        archived = finish()

        assert result.success
        assert archived.code == "RESULTS_INCOMPLETE"
        assert game.current_round().status == ROUND_OPEN

        declare_all(game, admin, ALL_HOME)
        assert game.archive_round(admin).success

    def test_two_archives_settle_once(self, game, admin, players, live_round):
        game.db.update_round(live_round.id, pot=20)
        game.submit_prediction(players[0], ALL_HOME)
        declare_all(game, admin, ALL_HOME)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: game.archive_round(admin), range(2)))

        assert sum(r.success for r in results) == 1
        assert [r.code for r in results if not r.success] == ["ROUND_NOT_OPEN"]
        assert game.db.get_user(players[0]).balance == 99 + 21
        assert game.db.get_user(players[0]).wins_1x2 == 1
