"""
matchday/ledger.py - The only code that moves tokens.

Every mutation carries an event id. The ledger row and the balance update
commit together, so replaying an event (a retried archive, a double-clicked
button) is a no-op that returns False.
"""

import logging

from .db import GameDB
from .errors import InsufficientFunds, UserNotFound

logger = logging.getLogger(__name__)


class Ledger:
    """Idempotent debit/credit over user balances."""

    def __init__(self, db: GameDB):
        self._db = db

    def balance(self, user_id: str) -> int:
        user = self._db.get_user(user_id)
        if user is None:
            raise UserNotFound()
        return user.balance

    def debit(self, user_id: str, amount: int, event_id: str, reason: str = "debit") -> bool:
        """Take tokens from a user.

        Returns True if applied, False if event_id was already applied.
        Raises InsufficientFunds (and records nothing) if balance < amount.
        """
        if amount < 0:
            raise ValueError(f"debit amount must be >= 0, got {amount}")
        return self._apply(user_id, -amount, event_id, reason)

    def credit(self, user_id: str, amount: int, event_id: str, reason: str = "credit") -> bool:
        """Give tokens to a user. Returns False if event_id was already applied."""
        if amount < 0:
            raise ValueError(f"credit amount must be >= 0, got {amount}")
        return self._apply(user_id, amount, event_id, reason)

    def transfer(
        self, src_id: str, dst_id: str, amount: int, event_id: str, reason: str = "transfer"
    ) -> bool:
        """Debit src and credit dst as one unit."""
        with self._db.transaction():
            debited = self.debit(src_id, amount, f"{event_id}:out", reason)
            credited = self.credit(dst_id, amount, f"{event_id}:in", reason)
        return debited or credited

    def adjust(self, user_id: str, delta: int, event_id: str, reason: str = "admin adjustment") -> int:
        """Admin grant or removal. Removals clamp at zero. Returns the new balance."""
        with self._db.transaction():
            current = self.balance(user_id)
            applied = max(delta, -current)
            self._apply(user_id, applied, event_id, reason)
            return self.balance(user_id)

    def history(self, user_id: str) -> list[dict]:
        return self._db.ledger_entries(user_id)

    def _apply(self, user_id: str, delta: int, event_id: str, reason: str) -> bool:
        with self._db.transaction():
            if self._db.get_user(user_id) is None:
                raise UserNotFound()
            if not self._db.insert_ledger_entry(event_id, user_id, delta, reason):
                logger.debug(f"Ledger event {event_id} already applied, skipping")
                return False
            if not self._db.apply_balance_delta(user_id, delta):
                raise InsufficientFunds()
        logger.debug(f"Ledger {event_id}: {user_id} {delta:+d} ({reason})")
        return True
