"""Tests for the archive saga — step ordering, failure and resumption."""

from matchday.events import ROUND_ARCHIVED
from matchday.models import ROUND_CLOSED

from .conftest import declare_all, make_slate

EIGHT_HOME = ["1"] * 8 + ["2"] * 4


def _boom(*args, **kwargs):
    raise RuntimeError("disk on fire")


class TestArchive:
    def test_no_round(self, game, admin):
        assert game.archive_round(admin).code == "ROUND_NOT_OPEN"

    def test_users_cannot_archive(self, game, players, live_round):
        assert game.archive_round(players[0]).code == "NOT_AUTHORIZED"
        assert game.current_round().status == "OPEN"

    def test_new_round_after_archive(self, game, admin, live_round):
        assert game.archive_round(admin).success
        assert game.current_round() is None
        assert game.open_round(admin, make_slate()).success
        assert game.current_round().id != live_round.id

    def test_archived_history(self, game, admin, live_round):
        game.archive_round(admin)
        game.open_round(admin, make_slate())
        game.archive_round(admin)
        ids = [r.id for r in game.archived_rounds()]
        assert ids == sorted(ids, reverse=True)
        assert len(ids) == 2

    def test_publishes_summary(self, game, admin, players, live_round):
        game.submit_prediction(players[0], ["1"] * 12)
        declare_all(game, admin, EIGHT_HOME)
        seen = []
        game.events.subscribe(seen.append)
        game.archive_round(admin)

        archived = [e for e in seen if e.type == ROUND_ARCHIVED]
        assert len(archived) == 1
        assert archived[0].payload["round_id"] == live_round.id
        assert archived[0].payload["winners"] == [players[0]]


class TestArchiveFailure:
    def test_failed_step_reported(self, game, admin, players, live_round, monkeypatch):
        monkeypatch.setattr(game.leveling, "refresh_round", _boom)
        result = game.archive_round(admin)

        assert not result.success
        assert result.code == "ARCHIVE_FAILED"
        assert result.data == {"round_id": live_round.id, "step": "leveling"}
        assert game.current_round().status == ROUND_CLOSED

    def test_closed_round_rejects_bets(self, game, admin, players, live_round, monkeypatch):
        monkeypatch.setattr(game.settlement, "settle", _boom)
        game.archive_round(admin)
        assert game.submit_prediction(players[0], ["1"] * 12).code == "ROUND_NOT_OPEN"

    def test_resume_pays_once(self, game, admin, players, live_round, monkeypatch):
        game.db.update_round(live_round.id, pot=18)
        game.submit_prediction(players[0], ["1"] * 12)
        game.submit_prediction(players[1], ["1"] * 12)
        declare_all(game, admin, EIGHT_HOME)

        # Predictions pay out, then leveling blows up
        monkeypatch.setattr(game.leveling, "refresh_round", _boom)
        assert game.archive_round(admin).code == "ARCHIVE_FAILED"
        assert game.db.get_user(players[0]).balance == 109

        monkeypatch.undo()
        result = game.archive_round(admin)
        assert result.success
        assert result.data["resumed"] is True
        assert result.data["payout"] == 10
        assert game.db.get_user(players[0]).balance == 109
        assert game.db.get_user(players[0]).wins_1x2 == 1
        assert game.db.get_user(players[0]).total_points == 8

    def test_failed_step_rolls_back(self, game, admin, players, live_round, monkeypatch):
        game.submit_prediction(players[0], ["1"] * 12)
        declare_all(game, admin, EIGHT_HOME)

        original = game.settlement.settle

        def settle_then_fail(round_):
            original(round_)
            raise RuntimeError("crash after paying")

        monkeypatch.setattr(game.settlement, "settle", settle_then_fail)
        game.archive_round(admin)
        # The step's payout was rolled back with it
        assert game.db.get_user(players[0]).balance == 99

        monkeypatch.undo()
        game.archive_round(admin)
        assert game.db.get_user(players[0]).balance == 100

    def test_duels_not_resettled_on_resume(self, game, admin, players, live_round, monkeypatch):
        anna, bruno = players[:2]
        game.submit_prediction(anna, ["1"] * 12)
        game.submit_prediction(bruno, ["X"] * 12)
        duel_id = game.create_duel(anna, bruno, wager=5).data["id"]
        game.respond_duel(bruno, duel_id, accept=True)
        declare_all(game, admin, ["1"] * 6 + ["2"] * 6)

        monkeypatch.setattr(game.survival, "process_round", _boom)
        result = game.archive_round(admin)
        assert result.data["step"] == "survival"
        assert game.db.get_user(anna).balance == 99 - 5 + 10

        monkeypatch.undo()
        assert game.archive_round(admin).success
        assert game.db.get_user(anna).balance == 99 - 5 + 10
        assert game.db.get_user(bruno).balance == 94
