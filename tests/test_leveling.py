"""Tests for matchday.leveling — lifetime stats and level tiers."""

from matchday.leveling import LEVEL_TIERS, LevelTier, level_for, tier_label

from .conftest import declare_all

EIGHT_HOME = ["1"] * 8 + ["2"] * 4


class TestLevelFor:
    def test_newcomer(self):
        assert level_for(0, 0, 0) == 1

    def test_exact_thresholds(self):
        assert level_for(5, 1, 100) == 2
        assert level_for(15, 3, 500) == 3
        assert level_for(30, 7, 1500) == 4
        assert level_for(50, 15, 5000) == 5

    def test_every_threshold_must_hold(self):
        assert level_for(5, 1, 99) == 1
        assert level_for(100, 0, 10_000) == 1
        assert level_for(50, 15, 4999) == 4

    def test_non_chained_tiers(self):
        tiers = (
            LevelTier(1, "one", 0, 0, 0),
            LevelTier(2, "two", bets=10, wins=0, tokens=0),
            LevelTier(3, "three", bets=0, wins=2, tokens=0),
        )
        # Tier 3 is reachable without meeting tier 2
        assert level_for(0, 2, 0, tiers) == 3

    def test_labels(self):
        assert [tier_label(t.level) for t in LEVEL_TIERS] == [
            "Principiante",
            "Scommettitore",
            "Veterano",
            "Campione",
            "Leggenda",
        ]


class TestAggregator:
    def test_points_and_accuracy_after_archive(self, game, admin, players, live_round):
        game.submit_prediction(players[0], ["1"] * 12)
        game.submit_prediction(players[1], ["X"] * 12)
        declare_all(game, admin, EIGHT_HOME)
        game.archive_round(admin)

        anna = game.db.get_user(players[0])
        assert anna.total_points == 8
        assert anna.rounds_played == 1
        assert anna.accuracy == 66.7

        bruno = game.db.get_user(players[1])
        assert bruno.total_points == 0
        assert bruno.rounds_played == 1
        assert bruno.accuracy == 0.0

    def test_non_bettors_untouched(self, game, admin, players, live_round):
        game.submit_prediction(players[0], ["1"] * 12)
        game.archive_round(admin)
        assert game.db.get_user(players[2]).rounds_played == 0

    def test_level_up(self, game, admin, players, live_round):
        anna = players[0]
        game.db.update_user(anna, bets_placed=4, total_tokens_won=95)
        game.db.update_round(live_round.id, pot=4)
        game.submit_prediction(anna, ["1"] * 12)
        declare_all(game, admin, EIGHT_HOME)
        game.archive_round(admin)

        user = game.db.get_user(anna)
        assert user.bets_placed == 5
        assert user.wins_1x2 == 1
        assert user.total_tokens_won == 100
        assert user.level == 2

    def test_leaderboard_by_points(self, game, admin, players, live_round):
        game.submit_prediction(players[0], ["X"] * 12)
        game.submit_prediction(players[1], ["1"] * 12)
        declare_all(game, admin, EIGHT_HOME)
        game.archive_round(admin)

        board = game.leaderboard()
        assert board[0]["username"] == "bruno"
        assert board[0]["total_points"] == 8

    def test_profile_has_level_label(self, game, players):
        profile = game.profile(players[0])
        assert profile["level"] == 1
        assert profile["level_label"] == "Principiante"
        assert profile["total_wins"] == 0

    def test_profile_unknown_user(self, game):
        assert game.profile("nobody") is None
