import asyncio
from typing import AsyncGenerator, Iterable, Optional

from fastapi import HTTPException
from loguru import logger

from npc_stream.server.service_state import EmittedEvent, service
from npc_stream.shared.models import PING_EVENT


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Pull the key out of an `Authorization: Bearer <key>` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_key(authorization: Optional[str]) -> str:
    key = bearer_token(authorization)
    if not service.is_valid_key(key):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return key


def require_stream_access(authorization: Optional[str]) -> None:
    # Hosted mode trusts the edge, exactly like the real hosted service
    if not service.config.EMULATOR_HOSTED:
        require_key(authorization)


def log_connection(protocol: str, subscriber_id: int, extra: dict | None = None) -> None:
    """
    Single structured log entry for a stream connecting or disconnecting.
    Writes: protocol, subscriber id, and any extra fields.
    """
    log_str = f"protocol={protocol} subscriber={subscriber_id}"
    for k, v in (extra or {}).items():
        log_str += f" {k}={v}"
    logger.info(log_str)


async def run_event_loop(
    subscriber_id: int,
    queue: asyncio.Queue,
    backlog: Iterable[EmittedEvent] = (),
    ping_interval_s: float = 15.0,
) -> AsyncGenerator[dict, None]:
    """
    The server-side stream dispatch loop, yielding sse-starlette frames.

      1. Replays `backlog` (what a resuming client missed) first.
      2. Then waits on the subscriber's queue for live events.
      3. If `ping_interval_s` passes with no event, sends a `ping` frame carrying the
         latest event id so an idle client still advances its resumption point.
      4. Always unsubscribes on exit (client disconnect cancels the generator).
    """
    try:
        for event in backlog:
            yield event.as_sse()
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=ping_interval_s)
                yield event.as_sse()
            except asyncio.TimeoutError:
                ping = {"event": PING_EVENT, "data": ""}
                if service.latest_event_id:
                    ping["id"] = service.latest_event_id
                yield ping
    finally:
        service.unsubscribe(subscriber_id)
        log_connection("sse:disconnect", subscriber_id)
