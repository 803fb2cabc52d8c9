"""
MODULE OVERVIEW:
The NPC response stream, served with sse-starlette.

WHAT IS HAPPENING HERE:
We subscribe the connection *before* computing the replay backlog. Both happen without
an `await` in between, so an event published at that moment lands in exactly one of
the two and the client sees it exactly once.
"""
from typing import Optional

from fastapi import APIRouter, Header, Query
from sse_starlette.sse import EventSourceResponse

from npc_stream.server.route_utils import log_connection, require_stream_access, run_event_loop
from npc_stream.server.service_state import service

router = APIRouter(prefix="/v1")


@router.get("/npcs/responses")
async def stream_responses(
    tts_streaming: bool = Query(False, alias="tts-streaming"),
    authorization: Optional[str] = Header(None),
    last_event_id: Optional[str] = Header(None, alias="Last-Event-Id"),
):
    require_stream_access(authorization)

    subscriber_id, queue = service.subscribe(tts_streaming)
    backlog = service.replay_after(last_event_id, tts_streaming)
    log_connection("sse:connect", subscriber_id, {"last_event_id": last_event_id or "none", "replayed": len(backlog)})

    return EventSourceResponse(
        run_event_loop(subscriber_id, queue, backlog, service.config.SSE_PING_INTERVAL_S)
    )
