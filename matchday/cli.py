#!/usr/bin/env python3
"""
matchday/cli.py - Command line interface for Matchday

Usage:
    matchday serve [--port PORT] [--db PATH]
    matchday open-round
    matchday archive
    matchday standings [--limit N]
    matchday add-user NAME [--admin]
    matchday reset --yes

Admin commands run as the first admin user in the database, so create one
with ``matchday add-user NAME --admin`` before opening a round.
"""

import argparse
import logging
import sys

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def _load_game(args):
    from .config import load_config
    from .game import Game

    config = load_config()
    return Game.from_config(config, db_path=args.db)


def _local_admin(game) -> str | None:
    for user in game.list_users():
        if user.is_admin:
            return user.id
    logger.error("No admin user found. Create one with: matchday add-user NAME --admin")
    return None


def _report(result) -> int:
    if result.success:
        logger.info(result.message)
        return 0
    logger.error(f"{result.message} ({result.code})")
    return 1


def cmd_serve(args):
    """Start the HTTP server."""
    try:
        import uvicorn
    except ImportError:
        logger.error("The server requires uvicorn: pip install matchday")
        return 1

    from .config import load_config
    from stadium.server import app

    config = load_config()
    db_path = args.db or config.server.db_path
    port = args.port or config.server.port

    # Set DB path on app state so lifespan picks it up
    app.state.db_path = db_path
    logger.info(f"Starting stadium server on port {port} (db: {db_path})")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
    return 0


def cmd_open_round(args):
    """Open a new round with an empty slate."""
    game = _load_game(args)
    admin_id = _local_admin(game)
    if admin_id is None:
        return 1
    result = game.open_round(admin_id)
    if result.success:
        data = result.data
        logger.info(f"Round {data['id']} is open (pot {data['pot']}, jackpot {data['jackpot']})")
    return _report(result)


def cmd_archive(args):
    """Settle and archive the live round."""
    game = _load_game(args)
    admin_id = _local_admin(game)
    if admin_id is None:
        return 1
    result = game.archive_round(admin_id)
    if result.success:
        data = result.data
        logger.info(
            f"Payout {data['payout']} to {len(data['winners'])} winner(s), "
            f"{data['burned']} burned, {data['rollover_pot']} rolled over"
        )
    elif result.data:
        logger.error(
            f"Round {result.data['round_id']} stopped at '{result.data['step']}'. "
            "Run archive again to resume."
        )
    return _report(result)


def cmd_standings(args):
    """Print the leaderboard."""
    try:
        from rich.console import Console
        from rich.table import Table
    except ImportError:
        print("Missing dependency: rich. Install: pip install matchday")
        return 1

    from .leveling import tier_label

    game = _load_game(args)
    rows = game.leaderboard(args.limit)
    console = Console()

    if not rows:
        console.print("[dim]No players yet.[/dim]")
        return 0

    table = Table(title="Standings", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Player", style="bold", min_width=14)
    table.add_column("Points", justify="right")
    table.add_column("Level", min_width=12)
    table.add_column("Balance", justify="right")

    for rank, row in enumerate(rows, start=1):
        user = game.db.get_user(row["user_id"])
        table.add_row(
            str(rank),
            row["username"],
            str(row["total_points"]),
            f"{row['level']} {tier_label(row['level'])}",
            str(user.balance if user else 0),
        )

    console.print(table)

    live = game.current_round()
    if live is not None:
        style = "green" if live.is_open else "yellow"
        console.print(
            f"[bold]Round {live.id}:[/bold] [{style}]{live.status}[/{style}], "
            f"pot {live.pot}, jackpot {live.jackpot}"
        )
    return 0


def cmd_add_user(args):
    """Register a user with the starting balance."""
    from .models import ROLE_ADMIN, ROLE_USER

    game = _load_game(args)
    result = game.register_user(args.name, ROLE_ADMIN if args.admin else ROLE_USER)
    if result.success:
        logger.info(f"User id: {result.data['id']}")
    return _report(result)


def cmd_reset(args):
    """Wipe all game data."""
    if not args.yes:
        logger.error("This deletes every round, bet, season and duel. Re-run with --yes")
        return 1
    game = _load_game(args)
    admin_id = _local_admin(game)
    if admin_id is None:
        return 1
    return _report(game.reset_system(admin_id))


def main():
    parser = argparse.ArgumentParser(
        prog="matchday",
        description="Football prediction game: 1X2 rounds, survival and duels",
    )
    parser.add_argument("--db", default=None, help="SQLite database path (default: from config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Server port (default: 8000)")
    serve_parser.set_defaults(func=cmd_serve)

    # open-round command
    open_parser = subparsers.add_parser("open-round", help="Open a new round")
    open_parser.set_defaults(func=cmd_open_round)

    # archive command
    archive_parser = subparsers.add_parser("archive", help="Settle and archive the live round")
    archive_parser.set_defaults(func=cmd_archive)

    # standings command
    standings_parser = subparsers.add_parser("standings", help="Show the leaderboard")
    standings_parser.add_argument("--limit", "-n", type=int, default=20, help="Rows to show (default: 20)")
    standings_parser.set_defaults(func=cmd_standings)

    # add-user command
    user_parser = subparsers.add_parser("add-user", help="Register a user")
    user_parser.add_argument("name", help="Username")
    user_parser.add_argument("--admin", action="store_true", help="Give the user the admin role")
    user_parser.set_defaults(func=cmd_add_user)

    # reset command
    reset_parser = subparsers.add_parser("reset", help="Wipe all game data")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the wipe")
    reset_parser.set_defaults(func=cmd_reset)

    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
