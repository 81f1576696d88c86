"""
matchday/errors.py - Typed failures for every game command.

User errors are recoverable: the facade turns them into a failed Result
carrying ``code`` and ``message``. ArchiveFailed is the one systemic fault.
"""


class GameError(Exception):
    """Base class for all user-facing game errors."""

    code = "GAME_ERROR"
    message = "Operation failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


# Rounds and prediction sets

class RoundNotOpen(GameError):
    code = "ROUND_NOT_OPEN"
    message = "No round is open for this action"


class RoundAlreadyOpen(GameError):
    code = "ROUND_ALREADY_OPEN"
    message = "A round is already in progress"


class NoOpenRound(GameError):
    code = "NO_OPEN_ROUND"
    message = "There is no open round"


class DeadlinePassed(GameError):
    code = "DEADLINE_PASSED"
    message = "Betting is closed for this round (deadline reached)"


class BetsLocked(GameError):
    code = "BETS_LOCKED"
    message = "Betting has been locked by an admin"


class DuplicateBet(GameError):
    code = "DUPLICATE_BET"
    message = "You already placed a prediction set for this round"


class InvalidPrediction(GameError):
    code = "INVALID_PREDICTION"
    message = "Prediction set is malformed"


class InvalidMatchIndex(GameError):
    code = "INVALID_MATCH_INDEX"
    message = "Match index out of range"


class InvalidAmount(GameError):
    code = "INVALID_AMOUNT"
    message = "Amount must be zero or positive"


class InsufficientFunds(GameError):
    code = "INSUFFICIENT_FUNDS"
    message = "Insufficient tokens"


class ResultsIncomplete(GameError):
    code = "RESULTS_INCOMPLETE"
    message = "Not all matches needed for processing have results"


# Survival

class SeasonNotOpen(GameError):
    code = "SEASON_NOT_OPEN"
    message = "Survival season is not open for registration"


class SeasonNotDecided(GameError):
    code = "SEASON_NOT_DECIDED"
    message = "More than one player is still alive"


class SeasonInProgress(GameError):
    code = "SEASON_IN_PROGRESS"
    message = "A survival season is already in progress"


class AlreadyJoined(GameError):
    code = "ALREADY_JOINED"
    message = "You already joined this season"


class PlayerNotAlive(GameError):
    code = "PLAYER_NOT_ALIVE"
    message = "You are not alive in this season"


class TeamAlreadyUsed(GameError):
    code = "TEAM_ALREADY_USED"
    message = "You already picked this team in a previous round"


class TeamNotEligible(GameError):
    code = "TEAM_NOT_ELIGIBLE"
    message = "This team can't be picked this round"


class PickAlreadyExists(GameError):
    code = "PICK_ALREADY_EXISTS"
    message = "You already submitted a pick for this round"


# Duels

class DuelNotFound(GameError):
    code = "DUEL_NOT_FOUND"
    message = "Duel not found"


class DuelNotPending(GameError):
    code = "DUEL_NOT_PENDING"
    message = "Duel is no longer pending"


class NotOpponent(GameError):
    code = "NOT_OPPONENT"
    message = "Only the challenged user can respond"


class OpponentIneligible(GameError):
    code = "OPPONENT_INELIGIBLE"
    message = "Opponent has not placed a prediction set this round"


class SelfChallenge(GameError):
    code = "SELF_CHALLENGE"
    message = "You can't challenge yourself"


class InvalidWager(GameError):
    code = "INVALID_WAGER"
    message = "Wager must be zero or positive"


# Identity

class UserNotFound(GameError):
    code = "USER_NOT_FOUND"
    message = "User not found"


class UsernameTaken(GameError):
    code = "USERNAME_TAKEN"
    message = "Username is already taken"


class NotAuthorized(GameError):
    code = "NOT_AUTHORIZED"
    message = "Admin role required"


# ============================================================================
# Systemic
# ============================================================================


class ArchiveFailed(Exception):
    """A sub-step of archive() failed. Completed steps stay committed and
    are skipped when archive() is re-invoked."""

    code = "ARCHIVE_FAILED"

    def __init__(self, round_id: int, step: str, cause: BaseException):
        self.round_id = round_id
        self.step = step
        self.cause = cause
        super().__init__(f"Archive of round {round_id} failed at step '{step}': {cause}")
