from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class NpcStreamError(Exception):
    """Base exception for client failures."""


class ConfigurationError(NpcStreamError):
    """Raised when a connection attempt is missing its base URL or credential."""


@dataclass(eq=False)
class StreamStatusError(NpcStreamError):
    """The stream endpoint answered with a non-success HTTP status."""

    status_code: int
    trace_id: Optional[str] = None

    def __str__(self) -> str:
        return f"HTTP {self.status_code} (trace_id={self.trace_id or 'none'})"


class StreamIdleTimeout(NpcStreamError):
    """No bytes arrived for the whole watchdog window."""


@dataclass(eq=False)
class ReconnectLimitExceeded(NpcStreamError):
    """Terminal: the stream gave up after exhausting its reconnection budget."""

    attempts: int
    last_event_id: Optional[str] = None

    def __str__(self) -> str:
        return (
            f"Max reconnection attempts ({self.attempts}) reached "
            f"(last_event_id={self.last_event_id or 'none'})"
        )


class AuthError(NpcStreamError):
    """Terminal failure of the device-authorization flow."""

    def __init__(
        self,
        reason: str,
        status_code: Optional[int] = None,
        trace_id: Optional[str] = None,
    ):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
        self.trace_id = trace_id


class AuthInitError(AuthError):
    """The service rejected or never answered the device-flow init request."""


class AuthTimeoutError(AuthError):
    """The device session expired before the user approved it."""


class AuthDeniedError(AuthError):
    """The user declined to authenticate."""
