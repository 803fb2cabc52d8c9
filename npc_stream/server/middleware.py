"""
MODULE OVERVIEW:
FastAPI middleware that times every request and tags it with a trace id.
Where it fits: Middleware runs on *every* HTTP request, wrapping our endpoints.

WHAT IS HAPPENING HERE:
We add an `X-Process-Time-Ms` header so clients can observe the server-side overhead
of each request. We also echo the client's trace header back, or mint a new trace id
when the client did not send one. The stream client captures that id and repeats it on
every reconnect, which lets both sides correlate a flaky connection.
"""
import time
import uuid

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from npc_stream.shared.config import settings


class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        trace_id = request.headers.get(settings.TRACE_HEADER) or uuid.uuid4().hex
        request.state.trace_id = trace_id

        response = await call_next(request)

        process_time_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time_ms:.2f}"
        response.headers[settings.TRACE_HEADER] = trace_id

        # Token polling is chatty; keep it out of the debug log
        if not request.url.path.endswith("/login/device/token"):
            logger.debug(f"{request.method} {request.url.path} completed in {process_time_ms:.2f}ms trace_id={trace_id}")

        return response
