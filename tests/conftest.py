"""
Pytest configuration and fixtures for the npc_stream test suite.
"""

import asyncio
from typing import AsyncIterator, Iterable, List, Optional

import httpx
import pytest

from npc_stream.client.credentials import SessionCredentials
from npc_stream.shared.config import Settings

BASE_URL = "http://npc.test/v1"
STREAM_URL = f"{BASE_URL}/npcs/responses"


# ============================================================================
# Settings / Credentials
# ============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Fast timings, no .env, no local-app login."""
    return Settings(
        _env_file=None,
        BASE_URL=BASE_URL,
        RECONNECT_DELAY_S=0.0,
        MAX_RECONNECT_ATTEMPTS=2,
        IDLE_TIMEOUT_S=5.0,
        LOCAL_LOGIN_ENABLED=False,
        CLIENT_ID="test-client",
        API_KEY=None,
        TTS_STREAMING=False,
        DUMP_PAYLOADS_DIR=None,
    )


@pytest.fixture
def credentials() -> SessionCredentials:
    return SessionCredentials(BASE_URL, credential="key-123")


# ============================================================================
# SSE helpers
# ============================================================================

def sse_frame(data: Optional[str] = None, event: Optional[str] = None, id: Optional[str] = None) -> bytes:
    """Render one SSE event the way a server would."""
    lines = []
    if id is not None:
        lines.append(f"id: {id}")
    if event is not None:
        lines.append(f"event: {event}")
    if data is not None:
        for line in data.split("\n"):
            lines.append(f"data: {line}")
    return ("\n".join(lines) + "\n\n").encode("utf-8")


def chat_frame(npc_id: str, message: str, id: Optional[str] = None) -> bytes:
    return sse_frame(f'{{"npc_id": "{npc_id}", "message": "{message}"}}', id=id)


async def stream_body(chunks: Iterable[bytes], hang: bool = False) -> AsyncIterator[bytes]:
    """An async response body; `hang=True` keeps the connection open and silent afterwards."""
    for chunk in chunks:
        yield chunk
        await asyncio.sleep(0)
    if hang:
        await asyncio.sleep(3600)


class StreamServer:
    """
    Scripted fake of the stream endpoint for `httpx.MockTransport`.

    Each connection attempt consumes the next script entry: either a list of byte
    chunks to send (then close), or an int status code. When the script runs out the
    server answers 503, so the client burns through its retry budget and stops.
    """

    def __init__(self, script: List, hang_last: bool = False, headers: Optional[dict] = None):
        self.script = list(script)
        self.hang_last = hang_last
        self.headers = headers or {}
        self.requests: List[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.script:
            return httpx.Response(503, headers=self.headers)
        step = self.script.pop(0)
        if isinstance(step, int):
            return httpx.Response(step, headers=self.headers)
        hang = self.hang_last and not self.script
        return httpx.Response(
            200,
            headers={"Content-Type": "text/event-stream", **self.headers},
            content=stream_body(step, hang=hang),
        )

