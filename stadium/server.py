"""
stadium/server.py - FastAPI front for the Matchday game.

Caller identity comes from the auth proxy in front of us:
    X-User-Id     the authenticated user's id
    X-User-Role   USER or ADMIN

Endpoints:
    GET    /health                        Server health check
    POST   /users                         Register a user (bootstrap)
    GET    /users/{id}                    Profile with level and accuracy
    GET    /round                         Current live round
    GET    /rounds/archived               Archived rounds, newest first
    GET    /rounds/{id}/bets              Every prediction set on a round
    GET    /rounds/{id}/bets/me           The caller's prediction set
    GET    /leaderboard                   Users by total points
    POST   /bets                          Submit a prediction set
    GET    /survival                      Survival season state
    POST   /survival/join                 Pay the entry fee
    POST   /survival/pick                 Pick a team for the live round
    GET    /duels                         The caller's duels this round
    GET    /duels/opponents               Users that can be challenged
    POST   /duels                         Challenge a user
    POST   /duels/{id}/respond            Accept or decline
    GET    /duels/{id}/score              Live duel score

Admin (X-User-Role: ADMIN):
    POST   /admin/round                   Open a round
    PUT    /admin/round/matches/{i}       Edit a match
    PUT    /admin/round/outcomes/{i}      Declare (or clear) a result
    PUT    /admin/round/jackpot           Set the super jackpot
    PUT    /admin/round/deadline          Set the betting deadline
    PUT    /admin/round/lock              Lock or unlock betting
    POST   /admin/round/reset             Clear results, refund bets
    POST   /admin/round/archive           Settle and archive the round
    POST   /admin/reset                   Wipe all game data
    POST   /admin/users/{id}/tokens       Adjust a balance
    POST   /admin/survival/season         Start a survival season
    POST   /admin/survival/{id}/close     Close a survival season

Live updates:
    WS     /ws/events                     Every game event as JSON
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from matchday.config import load_config
from matchday.db import GameDB
from matchday.events import Event
from matchday.game import Game, Result
from matchday.models import LEAGUES, ROLE_ADMIN, ROLE_USER, Match

logger = logging.getLogger(__name__)

# Global game instance, set during lifespan
_game: Game | None = None


def get_game() -> Game:
    assert _game is not None, "Game not initialized"
    return _game


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _game
    config = load_config()
    db_path = getattr(app.state, "db_path", config.server.db_path)
    _game = Game(GameDB(db_path), config.rules)
    logger.info(f"Matchday DB initialized: {db_path}")

    loop = asyncio.get_running_loop()
    unsubscribe = _game.events.subscribe(_relay_to(loop))
    _log_startup_config(_game)

    yield
    unsubscribe()
    _game.db.close()
    _game = None


def _log_startup_config(game: Game):
    """Log the active rules on startup so operators can verify the config file."""
    rules = game.rules
    logger.info("=" * 50)
    logger.info("Matchday startup config:")
    logger.info(f"  Slate: {rules.slate_size} matches, {rules.win_threshold} correct to win")
    logger.info(
        f"  Stake: {rules.base_stake} (+{rules.jackpot_surcharge} with super jackpot) | "
        f"Survival fee: {rules.survival_entry_fee}"
    )
    logger.info(f"  Starting balance: {rules.starting_balance}")
    if rules.keep_jackpot_on_rollover:
        logger.info("  Jackpot: carried over when nobody wins")
    else:
        logger.info("  Jackpot: reset every round")

    live = game.current_round()
    if live is not None:
        logger.info(f"  Live round: {live.id} ({live.status}, pot {live.pot})")
    else:
        logger.info("  Live round: none")
    logger.info(f"  Users: {game.db.user_count()}")
    logger.info("=" * 50)


app = FastAPI(title="Matchday Stadium", lifespan=lifespan)

# Allow the web client to call the API from another origin
from starlette.middleware.cors import CORSMiddleware

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ======================================================================
# Error mapping
# ======================================================================

# Anything not listed is a plain 400
_STATUS_BY_CODE = {
    "NOT_AUTHORIZED": 403,
    "NOT_OPPONENT": 403,
    "USER_NOT_FOUND": 404,
    "DUEL_NOT_FOUND": 404,
    "USERNAME_TAKEN": 409,
    "ROUND_ALREADY_OPEN": 409,
    "DUPLICATE_BET": 409,
    "ALREADY_JOINED": 409,
    "PICK_ALREADY_EXISTS": 409,
    "TEAM_ALREADY_USED": 409,
    "SEASON_IN_PROGRESS": 409,
    "DUEL_NOT_PENDING": 409,
    "INSUFFICIENT_FUNDS": 402,
    "INVALID_PREDICTION": 422,
    "INVALID_MATCH_INDEX": 422,
    "INVALID_AMOUNT": 422,
    "INVALID_WAGER": 422,
    "ARCHIVE_FAILED": 500,
}


def _respond(result: Result) -> dict[str, Any]:
    if not result.success:
        status = _STATUS_BY_CODE.get(result.code, 400)
        raise HTTPException(
            status_code=status,
            detail={"code": result.code, "message": result.message, "data": result.data},
        )
    return {"success": True, "message": result.message, "data": result.data}


# ======================================================================
# Caller identity
# ======================================================================


def current_user(x_user_id: str | None = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def current_admin(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> str:
    """Admin routes need the proxy to vouch for the role; Game re-checks it."""
    user_id = current_user(x_user_id)
    if (x_user_role or "").upper() != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin role required")
    return user_id


# ======================================================================
# Request/Response Models
# ======================================================================


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1)
    role: str = ROLE_USER


class MatchRequest(BaseModel):
    home: str
    away: str
    league: str = LEAGUES[0]


class OpenRoundRequest(BaseModel):
    matches: list[MatchRequest] | None = None


class OutcomeRequest(BaseModel):
    outcome: str | None = None  # None clears the result


class JackpotRequest(BaseModel):
    amount: int


class DeadlineRequest(BaseModel):
    deadline: str | None = None  # ISO 8601, None removes it


class LockRequest(BaseModel):
    locked: bool


class BetRequest(BaseModel):
    guesses: list[str]
    include_jackpot: bool = False


class SeasonRequest(BaseModel):
    season_id: int


class PickRequest(BaseModel):
    season_id: int
    team: str


class DuelRequest(BaseModel):
    opponent_id: str
    wager: int = 0


class RespondRequest(BaseModel):
    accept: bool


class TokensRequest(BaseModel):
    delta: int


class CommandResponse(BaseModel):
    success: bool
    message: str
    data: Any = None


class HealthResponse(BaseModel):
    status: str
    live_round_id: int | None = None
    round_status: str | None = None
    users: int
    viewers: int


# ======================================================================
# Endpoints
# ======================================================================


@app.get("/health", response_model=HealthResponse)
def health() -> dict[str, Any]:
    game = get_game()
    live = game.current_round()
    return {
        "status": "ok",
        "live_round_id": live.id if live else None,
        "round_status": live.status if live else None,
        "users": game.db.user_count(),
        "viewers": _manager.viewer_count(),
    }


@app.post("/users", response_model=CommandResponse)
def register(req: RegisterRequest, x_user_id: str | None = Header(None)) -> dict[str, Any]:
    """Register a user. The very first user may register as admin; after
    that only an admin can create another admin."""
    game = get_game()
    role = req.role.upper()
    if role not in (ROLE_USER, ROLE_ADMIN):
        raise HTTPException(status_code=422, detail=f"Unknown role {req.role}")
    if role == ROLE_ADMIN and game.db.user_count() > 0:
        caller = game.db.get_user(x_user_id) if x_user_id else None
        if caller is None or not caller.is_admin:
            raise HTTPException(status_code=403, detail="Admin role required")
    return _respond(game.register_user(req.username, role))


@app.get("/users/{user_id}")
def get_profile(user_id: str) -> dict[str, Any]:
    profile = get_game().profile(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found")
    return profile


@app.get("/round")
def get_round() -> dict[str, Any]:
    live = get_game().current_round()
    if live is None:
        raise HTTPException(status_code=404, detail="No live round")
    return live.to_dict()


@app.get("/rounds/archived")
def get_archived_rounds() -> list[dict[str, Any]]:
    return [r.to_dict() for r in get_game().archived_rounds()]


@app.get("/rounds/{round_id}/bets")
def get_round_bets(round_id: int) -> list[dict[str, Any]]:
    return [b.to_dict() for b in get_game().round_bets(round_id)]


@app.get("/rounds/{round_id}/bets/me")
def get_my_bet(round_id: int, user_id: str = Depends(current_user)) -> dict[str, Any]:
    bet = get_game().user_bet(user_id, round_id)
    if bet is None:
        raise HTTPException(status_code=404, detail="No prediction set on this round")
    return bet.to_dict()


@app.get("/leaderboard")
def get_leaderboard(limit: int = 100) -> list[dict[str, Any]]:
    return get_game().leaderboard(limit)


@app.post("/bets", response_model=CommandResponse)
def submit_bet(req: BetRequest, user_id: str = Depends(current_user)) -> dict[str, Any]:
    return _respond(get_game().submit_prediction(user_id, req.guesses, req.include_jackpot))


# --- Survival ---


@app.get("/survival")
def get_survival(x_user_id: str | None = Header(None)) -> dict[str, Any]:
    return get_game().survival_state(x_user_id)


@app.post("/survival/join", response_model=CommandResponse)
def join_survival(req: SeasonRequest, user_id: str = Depends(current_user)) -> dict[str, Any]:
    return _respond(get_game().join_season(user_id, req.season_id))


@app.post("/survival/pick", response_model=CommandResponse)
def survival_pick(req: PickRequest, user_id: str = Depends(current_user)) -> dict[str, Any]:
    return _respond(get_game().submit_pick(user_id, req.season_id, req.team))


# --- Duels ---


@app.get("/duels")
def get_my_duels(user_id: str = Depends(current_user)) -> list[dict[str, Any]]:
    return [d.to_dict() for d in get_game().my_duels(user_id)]


@app.get("/duels/opponents")
def get_opponents(user_id: str = Depends(current_user)) -> list[dict[str, Any]]:
    return get_game().challengeable_users(user_id)


@app.post("/duels", response_model=CommandResponse)
def create_duel(req: DuelRequest, user_id: str = Depends(current_user)) -> dict[str, Any]:
    return _respond(get_game().create_duel(user_id, req.opponent_id, req.wager))


@app.post("/duels/{duel_id}/respond", response_model=CommandResponse)
def respond_duel(
    duel_id: str, req: RespondRequest, user_id: str = Depends(current_user)
) -> dict[str, Any]:
    return _respond(get_game().respond_duel(user_id, duel_id, req.accept))


@app.get("/duels/{duel_id}/score", response_model=CommandResponse)
def duel_score(duel_id: str) -> dict[str, Any]:
    return _respond(get_game().live_score(duel_id))


# --- Admin ---


@app.post("/admin/round", response_model=CommandResponse)
def admin_open_round(
    req: OpenRoundRequest | None = None, admin_id: str = Depends(current_admin)
) -> dict[str, Any]:
    matches = None
    if req is not None and req.matches is not None:
        matches = [Match(home=m.home, away=m.away, league=m.league) for m in req.matches]
    return _respond(get_game().open_round(admin_id, matches))


@app.put("/admin/round/matches/{index}", response_model=CommandResponse)
def admin_edit_match(
    index: int, req: MatchRequest, admin_id: str = Depends(current_admin)
) -> dict[str, Any]:
    return _respond(get_game().edit_match(admin_id, index, req.home, req.away, req.league))


@app.put("/admin/round/outcomes/{index}", response_model=CommandResponse)
def admin_declare_outcome(
    index: int, req: OutcomeRequest, admin_id: str = Depends(current_admin)
) -> dict[str, Any]:
    return _respond(get_game().declare_outcome(admin_id, index, req.outcome))


@app.put("/admin/round/jackpot", response_model=CommandResponse)
def admin_set_jackpot(req: JackpotRequest, admin_id: str = Depends(current_admin)) -> dict[str, Any]:
    return _respond(get_game().set_jackpot(admin_id, req.amount))


@app.put("/admin/round/deadline", response_model=CommandResponse)
def admin_set_deadline(req: DeadlineRequest, admin_id: str = Depends(current_admin)) -> dict[str, Any]:
    try:
        return _respond(get_game().set_deadline(admin_id, req.deadline))
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid deadline: {req.deadline}")


@app.put("/admin/round/lock", response_model=CommandResponse)
def admin_lock_bets(req: LockRequest, admin_id: str = Depends(current_admin)) -> dict[str, Any]:
    return _respond(get_game().set_bets_locked(admin_id, req.locked))


@app.post("/admin/round/reset", response_model=CommandResponse)
def admin_reset_round(admin_id: str = Depends(current_admin)) -> dict[str, Any]:
    return _respond(get_game().reset_round(admin_id))


@app.post("/admin/round/archive", response_model=CommandResponse)
def admin_archive_round(admin_id: str = Depends(current_admin)) -> dict[str, Any]:
    return _respond(get_game().archive_round(admin_id))


@app.post("/admin/reset", response_model=CommandResponse)
def admin_reset_system(admin_id: str = Depends(current_admin)) -> dict[str, Any]:
    return _respond(get_game().reset_system(admin_id))


@app.post("/admin/users/{user_id}/tokens", response_model=CommandResponse)
def admin_adjust_tokens(
    user_id: str, req: TokensRequest, admin_id: str = Depends(current_admin)
) -> dict[str, Any]:
    return _respond(get_game().adjust_tokens(admin_id, user_id, req.delta))


@app.post("/admin/survival/season", response_model=CommandResponse)
def admin_start_season(admin_id: str = Depends(current_admin)) -> dict[str, Any]:
    return _respond(get_game().start_season(admin_id))


@app.post("/admin/survival/{season_id}/close", response_model=CommandResponse)
def admin_close_season(season_id: int, admin_id: str = Depends(current_admin)) -> dict[str, Any]:
    return _respond(get_game().close_season(admin_id, season_id))


# ======================================================================
# Live Events
# ======================================================================


class ConnectionManager:
    """Fans game events out to connected WebSocket viewers."""

    def __init__(self):
        self.viewers: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.viewers.append(websocket)
        logger.info(f"Viewer connected ({len(self.viewers)} total)")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.viewers:
            self.viewers.remove(websocket)
            logger.info(f"Viewer disconnected ({len(self.viewers)} left)")

    async def broadcast(self, message: dict):
        """Send a message to every viewer, dropping the ones that fail."""
        dead = []
        for ws in list(self.viewers):
            try:
                await ws.send_json(message)
            except Exception:
                dead.append(ws)

        for ws in dead:
            self.disconnect(ws)

    def viewer_count(self) -> int:
        return len(self.viewers)


# Global connection manager
_manager = ConnectionManager()


def _relay_to(loop: asyncio.AbstractEventLoop):
    """Build an EventBus subscriber that forwards events to the viewers.

    Sync endpoints run in a worker thread, so the broadcast is handed to
    the server's event loop rather than awaited here.
    """

    def relay(event: Event) -> None:
        if not _manager.viewers:
            return
        asyncio.run_coroutine_threadsafe(_manager.broadcast(event.to_dict()), loop)

    return relay


@app.websocket("/ws/events")
async def websocket_events(websocket: WebSocket):
    """Push every game event to the viewer until they disconnect."""
    await _manager.connect(websocket)

    try:
        while True:
            # Viewers don't send anything, but we need to notice the disconnect
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "ping"})
                except Exception:
                    break
    except WebSocketDisconnect:
        pass
    finally:
        _manager.disconnect(websocket)
