"""
stadium - HTTP and WebSocket front for Matchday

Turns authenticated requests into Game commands and relays game events
to connected viewers. All rules live in the matchday package.
"""

from .server import app

__all__ = ["app"]
