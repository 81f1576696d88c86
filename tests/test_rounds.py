"""Tests for matchday.rounds — the round lifecycle and prediction sets."""

from datetime import timedelta

from matchday.events import BET_PLACED, ROUND_OPENED
from matchday.models import DUEL_DECLINED, ROUND_OPEN, Match

from .conftest import make_slate

ALL_HOME = ["1"] * 12


# ======================================================================
# Opening
# ======================================================================


class TestOpenRound:
    def test_open_creates_live_round(self, game, admin):
        result = game.open_round(admin, make_slate())
        assert result.success
        live = game.current_round()
        assert live.status == ROUND_OPEN
        assert live.pot == 0
        assert live.jackpot == 0
        assert live.outcomes == [None] * 12
        assert live.matches[0].home == "Inter"

    def test_second_open_rejected(self, game, admin, live_round):
        result = game.open_round(admin, make_slate())
        assert not result.success
        assert result.code == "ROUND_ALREADY_OPEN"
        assert game.current_round().id == live_round.id

    def test_default_slate_is_blank(self, game, admin):
        game.open_round(admin)
        live = game.current_round()
        assert len(live.matches) == 12
        assert live.matches[0].home == ""

    def test_wrong_slate_size_rejected(self, game, admin):
        result = game.open_round(admin, make_slate()[:10])
        assert result.code == "INVALID_PREDICTION"
        assert game.current_round() is None

    def test_users_cannot_open(self, game, players):
        result = game.open_round(players[0], make_slate())
        assert result.code == "NOT_AUTHORIZED"

    def test_publishes_event(self, game, admin):
        seen = []
        game.events.subscribe(seen.append)
        game.open_round(admin, make_slate())
        assert [e.type for e in seen] == [ROUND_OPENED]


# ======================================================================
# Admin edits
# ======================================================================


class TestAdminEdits:
    def test_edit_match(self, game, admin, live_round):
        result = game.edit_match(admin, 3, "Torino", "Genoa", "CUSTOM")
        assert result.success
        match = game.current_round().matches[3]
        assert match == Match(home="Torino", away="Genoa", league="CUSTOM")

    def test_edit_out_of_range(self, game, admin, live_round):
        assert game.edit_match(admin, 12, "A", "B").code == "INVALID_MATCH_INDEX"

    def test_declare_and_clear_outcome(self, game, admin, live_round):
        game.declare_outcome(admin, 0, "X")
        assert game.current_round().outcomes[0] == "X"
        game.declare_outcome(admin, 0, None)
        assert game.current_round().outcomes[0] is None

    def test_invalid_outcome(self, game, admin, live_round):
        assert game.declare_outcome(admin, 0, "3").code == "INVALID_PREDICTION"

    def test_negative_jackpot_rejected(self, game, admin, live_round):
        assert game.set_jackpot(admin, -5).code == "INVALID_AMOUNT"

    def test_set_jackpot(self, game, admin, live_round):
        game.set_jackpot(admin, 50)
        assert game.current_round().jackpot == 50

    def test_edits_need_open_round(self, game, admin):
        assert game.declare_outcome(admin, 0, "1").code == "ROUND_NOT_OPEN"
        assert game.set_bets_locked(admin, True).code == "ROUND_NOT_OPEN"


# ======================================================================
# Prediction sets
# ======================================================================


class TestSubmitPrediction:
    def test_stake_goes_to_pot(self, game, players, live_round):
        result = game.submit_prediction(players[0], ALL_HOME)
        assert result.success
        assert game.db.get_user(players[0]).balance == 99
        assert game.current_round().pot == 1
        assert game.db.get_user(players[0]).bets_placed == 1

    def test_jackpot_costs_extra_but_pot_gets_one(self, game, players, live_round):
        game.submit_prediction(players[0], ALL_HOME, include_jackpot=True)
        assert game.db.get_user(players[0]).balance == 98
        assert game.current_round().pot == 1
        assert game.user_bet(players[0]).include_jackpot is True

    def test_duplicate_rejected(self, game, players, live_round):
        game.submit_prediction(players[0], ALL_HOME)
        result = game.submit_prediction(players[0], ["X"] * 12)
        assert result.code == "DUPLICATE_BET"
        assert game.db.get_user(players[0]).balance == 99
        assert game.current_round().pot == 1
        assert game.user_bet(players[0]).guesses == ALL_HOME

    def test_wrong_length_rejected(self, game, players, live_round):
        assert game.submit_prediction(players[0], ["1"] * 11).code == "INVALID_PREDICTION"

    def test_bad_symbol_rejected(self, game, players, live_round):
        guesses = ["1"] * 11 + ["3"]
        assert game.submit_prediction(players[0], guesses).code == "INVALID_PREDICTION"

    def test_no_round(self, game, players):
        assert game.submit_prediction(players[0], ALL_HOME).code == "ROUND_NOT_OPEN"

    def test_deadline_passed(self, game, admin, players, live_round, clock):
        game.set_deadline(admin, clock.now - timedelta(minutes=1))
        result = game.submit_prediction(players[0], ALL_HOME)
        assert result.code == "DEADLINE_PASSED"
        assert game.db.get_user(players[0]).balance == 100

    def test_before_deadline_accepted(self, game, admin, players, live_round, clock):
        game.set_deadline(admin, (clock.now + timedelta(hours=2)).isoformat())
        assert game.submit_prediction(players[0], ALL_HOME).success

    def test_locked(self, game, admin, players, live_round):
        game.set_bets_locked(admin, True)
        assert game.submit_prediction(players[0], ALL_HOME).code == "BETS_LOCKED"
        game.set_bets_locked(admin, False)
        assert game.submit_prediction(players[0], ALL_HOME).success

    def test_insufficient_funds_leaves_no_trace(self, game, admin, players, live_round):
        game.adjust_tokens(admin, players[0], -100)
        result = game.submit_prediction(players[0], ALL_HOME)
        assert result.code == "INSUFFICIENT_FUNDS"
        assert game.user_bet(players[0]) is None
        assert game.current_round().pot == 0
        assert game.db.get_user(players[0]).bets_placed == 0

    def test_publishes_event(self, game, players, live_round):
        seen = []
        game.events.subscribe(seen.append)
        game.submit_prediction(players[0], ALL_HOME)
        assert seen[0].type == BET_PLACED
        assert seen[0].payload["user_id"] == players[0]

    def test_round_bets_listing(self, game, players, live_round):
        for uid in players[:3]:
            game.submit_prediction(uid, ALL_HOME)
        bets = game.round_bets(live_round.id)
        assert [b.username for b in bets] == ["anna", "bruno", "carla"]


# ======================================================================
# Reset round
# ======================================================================


class TestResetRound:
    def test_refunds_and_clears(self, game, admin, players, live_round):
        game.submit_prediction(players[0], ALL_HOME, include_jackpot=True)
        game.submit_prediction(players[1], ALL_HOME)
        game.declare_outcome(admin, 0, "1")

        result = game.reset_round(admin)
        assert result.success

        live = game.current_round()
        assert live.outcomes == [None] * 12
        assert live.pot == 0
        assert game.round_bets(live.id) == []
        assert game.db.get_user(players[0]).balance == 100
        assert game.db.get_user(players[1]).balance == 100
        assert game.db.get_user(players[0]).bets_placed == 0

    def test_can_bet_again_after_reset(self, game, admin, players, live_round):
        game.submit_prediction(players[0], ALL_HOME)
        game.reset_round(admin)
        assert game.submit_prediction(players[0], ["X"] * 12).success

    def test_keeps_rollover_seed(self, game, admin, players, live_round):
        game.db.update_round(live_round.id, pot=10)
        game.submit_prediction(players[0], ALL_HOME)
        game.reset_round(admin)
        assert game.current_round().pot == 10

    def test_calls_off_open_duels(self, game, admin, players, live_round):
        anna, bruno, carla = players[:3]
        for uid in (anna, bruno, carla):
            game.submit_prediction(uid, ALL_HOME)
        accepted = game.create_duel(anna, bruno, wager=5).data["id"]
        game.respond_duel(bruno, accepted, accept=True)
        pending = game.create_duel(anna, carla, wager=3).data["id"]
        assert game.db.get_user(anna).balance == 99 - 5 - 3

        assert game.reset_round(admin).success

        assert game.db.get_duel(accepted).status == DUEL_DECLINED
        assert game.db.get_duel(pending).status == DUEL_DECLINED
        assert game.db.get_user(anna).balance == 100
        assert game.db.get_user(bruno).balance == 100
        assert game.db.get_user(carla).balance == 100

    def test_archive_after_reset_settles_no_duels(self, game, admin, players, live_round):
        anna, bruno = players[:2]
        game.submit_prediction(anna, ALL_HOME)
        game.submit_prediction(bruno, ALL_HOME)
        duel_id = game.create_duel(anna, bruno, wager=5).data["id"]
        game.respond_duel(bruno, duel_id, accept=True)
        game.reset_round(admin)

        result = game.archive_round(admin)
        assert result.success
        assert game.db.get_duel(duel_id).status == DUEL_DECLINED
        assert game.db.get_user(anna).balance == 100
        assert game.db.get_user(bruno).balance == 100


# ======================================================================
# System reset
# ======================================================================


class TestResetSystem:
    def test_wipes_everything(self, game, admin, players, live_round):
        game.submit_prediction(players[0], ALL_HOME)
        game.start_season(admin)

        result = game.reset_system(admin)
        assert result.success
        assert game.current_round() is None
        assert game.survival_state()["season"] is None
        user = game.db.get_user(players[0])
        assert user.balance == 100
        assert user.bets_placed == 0

    def test_users_cannot_reset(self, game, players):
        assert game.reset_system(players[0]).code == "NOT_AUTHORIZED"
