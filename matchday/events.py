"""
matchday/events.py - Fire-and-forget notifications after state changes.

The core publishes; whoever cares subscribes (the HTTP server relays events
to WebSocket viewers). Delivery is not the core's problem, so a failing
subscriber is logged and skipped.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

ROUND_OPENED = "round.opened"
ROUND_RESULTS_UPDATED = "round.results_updated"
ROUND_ARCHIVED = "round.archived"
BET_PLACED = "bet.placed"
DUEL_RECEIVED = "duel.received"
DUEL_RESPONDED = "duel.responded"
DUEL_COMPLETED = "duel.completed"
SURVIVAL_PICK = "survival.pick"
SURVIVAL_SEASON_CLOSED = "survival.season_closed"


@dataclass
class Event:
    type: str
    payload: dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "payload": self.payload, "timestamp": self.timestamp}


Subscriber = Callable[[Event], None]


class EventBus:
    """Synchronous in-process pub/sub."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event_type: str, **payload: Any) -> Event:
        event = Event(type=event_type, payload=payload)
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event subscriber failed on {event_type}: {e}")
        return event
