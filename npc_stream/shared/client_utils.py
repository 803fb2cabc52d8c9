from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger


def make_client_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    The stream client calls this once in __init__.
    Keys: events_received, events_dispatched, pings_received, events_dropped,
          reconnect_count, bytes_received, last_event_at, connected_at.
    """
    return {
        "events_received": 0,
        "events_dispatched": 0,
        "pings_received": 0,
        "events_dropped": 0,
        "reconnect_count": 0,
        "bytes_received": 0,
        "last_event_at": None,
        "connected_at": None,
    }


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def mask_secret(value: str | None) -> str:
    """Short, log-safe rendering of a credential."""
    if value is None:
        return "null"
    if not value:
        return "empty"
    return f"{value[:6]}... (length {len(value)})"


@dataclass
class ReconnectPolicy:
    """
    Fixed-delay retry budget for a long-lived connection.

    Every failed attempt calls `register_failure()`; once more than `max_attempts`
    consecutive failures pile up the caller must give up. Any healthy delivery calls
    `reset()`, so long stretches of good traffic never creep toward the limit.
    """

    max_attempts: int = 5
    delay_s: float = 2.0
    attempts: int = 0

    def register_failure(self) -> bool:
        """Count one failure. Returns False once the budget is exhausted."""
        self.attempts += 1
        return self.attempts <= self.max_attempts

    def reset(self) -> None:
        if self.attempts:
            logger.debug(f"Reconnect counter reset after {self.attempts} attempt(s)")
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts > self.max_attempts
