"""
Caller-supplied deadlines for core operations.

The store has no timeouts of its own. Callers pass a Deadline into any
public operation; operations check it before each round trip and before
commit, and bound SQLite's busy wait by the remaining budget.

Usage:
    deadline = Deadline.after(2.0)
    engine.evaluate(resident_id, deadline=deadline)
"""

import time
from dataclasses import dataclass

from carebrain.errors import DeadlineExceeded


@dataclass(frozen=True)
class Deadline:
    """Absolute expiry on the monotonic clock."""

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(expires_at=time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self, operation: str) -> None:
        """Raise DeadlineExceeded if the budget is spent."""
        if self.expired:
            raise DeadlineExceeded(f"Deadline exceeded during {operation}", operation=operation)

    def sqlite_timeout(self, default: float) -> float:
        return min(default, self.remaining())


def check(deadline: Deadline | None, operation: str) -> None:
    """Check an optional deadline."""
    if deadline is not None:
        deadline.check(operation)
