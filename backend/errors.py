from __future__ import annotations

from typing import Optional


class IllegalAction(ValueError):
    """Wrong phase, wrong turn or invalid payload. Never mutates table state."""


class InvariantViolation(RuntimeError):
    """Table state is inconsistent; the table has to be reset."""


class LedgerError(RuntimeError):
    pass


class InsufficientFundsError(LedgerError):
    def __init__(self, user_id: int, username: Optional[str] = None):
        self.user_id = user_id
        self.username = username
        who = username or str(user_id)
        super().__init__(f"{who} has insufficient tokens")
