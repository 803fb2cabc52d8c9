"""
MODULE OVERVIEW:
The long-lived, authenticated Server-Sent Events client for NPC responses.

WHAT IS HAPPENING HERE:
We use HTTPX `stream()` to keep the response body open and feed every chunk into the
incremental `SSEParser`. Completed events are routed by type:

  * `ping`            -> only bookkeeping: its id becomes our resumption point
  * `npc-audio-chunk` -> the per-NPC PCM stream (when audio streaming is enabled)
  * anything else     -> decoded as a `ChatResponse` and handed to the NPC's handler

There is no read timeout on the request: SSE holds the connection open indefinitely,
so a healthy but quiet stream must not be killed. Instead every chunk read is wrapped
in `asyncio.wait_for` with the idle watchdog window. Silence for that long means the
connection died without telling us, and we reconnect.

Every terminal outcome of an attempt (clean close, transport error, bad status,
watchdog) goes through the same fixed-delay reconnection policy. On the next attempt
we send `Last-Event-Id` so the server resumes where we left off, plus the trace id it
gave us so both sides can correlate the failure.
"""
import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import httpx
from loguru import logger
from pydantic import ValidationError

from npc_stream.client.audio_stream import AudioSink, AudioStreamRouter
from npc_stream.client.base_client import BaseConnectionClient, StreamState
from npc_stream.client.credentials import CredentialSupplier
from npc_stream.client.event_router import ResponseHandler, SubscriptionRegistry
from npc_stream.client.sse_parser import ServerSentEvent, SSEParser
from npc_stream.shared.client_utils import ReconnectPolicy, mask_secret, utc_now_iso
from npc_stream.shared.config import Settings, settings as default_settings
from npc_stream.shared.errors import (
    ConfigurationError,
    NpcStreamError,
    ReconnectLimitExceeded,
    StreamIdleTimeout,
    StreamStatusError,
)
from npc_stream.shared.events import EventHook
from npc_stream.shared.models import AUDIO_CHUNK_EVENTS, PING_EVENT, AudioChunk, ChatResponse

__all__ = ["EventStreamClient", "ResumptionState", "StreamState"]


@dataclass
class ResumptionState:
    last_event_id: Optional[str] = None
    trace_id: Optional[str] = None


class EventStreamClient(BaseConnectionClient):
    protocol_name: str = "sse"

    def __init__(
        self,
        credentials: CredentialSupplier,
        config: Optional[Settings] = None,
        audio_sink: Optional[AudioSink] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        self.config = config or default_settings
        self.credentials = credentials
        self.registry = SubscriptionRegistry()
        self.audio = AudioStreamRouter(audio_sink, prebuffer_s=self.config.AUDIO_PREBUFFER_S)
        self.policy = ReconnectPolicy(
            max_attempts=self.config.MAX_RECONNECT_ATTEMPTS,
            delay_s=self.config.RECONNECT_DELAY_S,
        )
        self.resumption = ResumptionState()
        self.stream_failed: EventHook[Exception] = EventHook("stream_failed")

        self.tts_streaming = self.config.TTS_STREAMING
        self.idle_timeout_s = self.config.IDLE_TIMEOUT_S
        self.max_event_size = self.config.MAX_EVENT_SIZE
        self.dump_payloads_dir: Optional[Path] = self.config.DUMP_PAYLOADS_DIR
        self.trace_header = self.config.TRACE_HEADER

        self._credential = credentials.get_credential()
        self._last_processed_id: Optional[str] = None
        self._listening = False
        self._parser: Optional[SSEParser] = None
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._owns_client = http_client is None
        # Connect is bounded, reads are not: the idle watchdog covers dead streams
        self.client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=self.config.CONNECT_TIMEOUT_S)
        )

    async def __aenter__(self) -> "EventStreamClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ==========================
    # PUBLIC STATE
    # ==========================
    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def last_event_id(self) -> Optional[str]:
        return self.resumption.last_event_id

    @property
    def trace_id(self) -> Optional[str]:
        return self.resumption.trace_id

    @property
    def reconnect_attempts(self) -> int:
        return self.policy.attempts

    @property
    def reconnection_settings(self) -> tuple[int, float]:
        return self.policy.max_attempts, self.policy.delay_s

    def configure_reconnection(self, max_attempts: int, delay_s: float) -> None:
        self.policy.max_attempts = max_attempts
        self.policy.delay_s = delay_s
        logger.info(f"Reconnection settings configured: {max_attempts} attempts, {delay_s}s delay")

    # ==========================
    # SUBSCRIPTIONS
    # ==========================
    def register(self, npc_id: str, handler: ResponseHandler) -> bool:
        return self.registry.register(npc_id, handler)

    def unregister(self, npc_id: str) -> bool:
        return self.registry.unregister(npc_id)

    def credential_changed(self, credential: Optional[str]) -> None:
        """Take a new credential. Only the first one ever received starts the stream."""
        first = self._credential is None
        self._credential = credential
        logger.debug(f"Stream credential updated: {mask_secret(credential)}")
        if first and credential is not None:
            self.start()

    # ==========================
    # LIFECYCLE
    # ==========================
    def start(self) -> bool:
        if self._listening:
            logger.warning("Already listening for responses")
            return True

        bypass = self.credentials.is_bypass_active()
        if not self._credential and not bypass:
            logger.error("Cannot start listening: user is not authenticated")
            return False
        if bypass:
            logger.info("Starting listener in hosted mode (no API key required)")
        else:
            logger.info("Starting listener with API key authentication")

        self._loop = asyncio.get_running_loop()
        self._listening = True
        self.policy.reset()
        logger.info(
            f"Starting NPC response listener... (Registered NPCs: {', '.join(self.registry.ids())}) "
            f"Current Last-Event-Id: {self.last_event_id or 'none'}"
        )
        previous = self._task
        self._task = self._loop.create_task(self._listen(previous))
        return True

    def stop(self) -> None:
        """Stop listening. Safe to call from any thread; keeps the resumption point."""
        if not self._listening:
            return
        self._listening = False
        task = self._task
        if self._on_loop_thread():
            self._teardown(task)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._teardown, task)
        logger.info(f"Stopped listening for NPC responses (Last-Event-Id: {self.last_event_id or 'none'})")

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.wait({self._task})

    async def run(self, duration_s: Optional[float] = None) -> None:
        """Listen until stopped, or for `duration_s` seconds, then close."""
        if not self.start():
            return
        try:
            if duration_s is None:
                await self.wait_closed()
            else:
                await asyncio.wait({self._task}, timeout=duration_s)
        finally:
            await self.aclose()

    async def disconnect(self) -> None:
        self.audio.close()
        if self._owns_client:
            await self.client.aclose()

    async def aclose(self) -> None:
        self.stop()
        await self.wait_closed()
        await self.disconnect()

    def _on_loop_thread(self) -> bool:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        return self._loop is None or running is self._loop

    def _teardown(self, task: Optional[asyncio.Task]) -> None:
        # Runs on the client loop. If start() ran since stop(), the new attempt owns parser and state
        if task is not None and not task.done():
            task.cancel()
        if self._listening:
            return
        if self._parser is not None:
            self._parser.reset()
        self._set_state(StreamState.IDLE)

    # ==========================
    # READ LOOP
    # ==========================
    async def _listen(self, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            # One attempt in flight at a time: let the cancelled loop unwind first
            await asyncio.wait({previous})

        while self._listening:
            try:
                logger.info("Starting streaming connection...")
                await self.connect()
                if self._listening:
                    logger.warning("Streaming connection ended unexpectedly, attempting to reconnect...")
                    await self._handle_reconnection()
            except (NpcStreamError, httpx.HTTPError, OSError) as e:
                logger.error(f"Error in response listener: {type(e).__name__}: {e}")
                if not self._listening:
                    break
                await self._handle_reconnection()
            except Exception as e:
                logger.exception(f"Unexpected error in response listener: {e}")
                if not self._listening:
                    break
                await self._handle_reconnection()

        logger.info("Response listener task ended")

    async def _handle_reconnection(self) -> None:
        self._set_state(StreamState.RECONNECTING)
        if not self.policy.register_failure():
            error = ReconnectLimitExceeded(self.policy.max_attempts, self.last_event_id)
            logger.error(f"{error}. Stopping listener.")
            self._listening = False
            self._set_state(StreamState.STOPPED)
            self.stream_failed.emit(error)
            return

        self.stats["reconnect_count"] += 1
        logger.info(
            f"Reconnection attempt {self.policy.attempts}/{self.policy.max_attempts} in {self.policy.delay_s} seconds "
            f"(Last-Event-Id: {self.last_event_id or 'none'}, {self.trace_header}: {self.trace_id or 'none'})..."
        )
        await asyncio.sleep(self.policy.delay_s)

    async def connect(self) -> None:
        base_url = self.credentials.get_base_url()
        if not base_url:
            raise ConfigurationError("Base URL is not configured")
        bypass = self.credentials.is_bypass_active()
        if not self._credential and not bypass:
            raise ConfigurationError("API key is not configured")

        self._set_state(StreamState.CONNECTING)
        url = f"{base_url.rstrip('/')}{self.config.STREAM_PATH}"
        params = {"tts-streaming": "true"} if self.tts_streaming else None
        headers = self._build_headers(bypass)

        if self.last_event_id or self.trace_id:
            logger.info(
                f"Connecting to response stream: {url} (reconnecting with Last-Event-Id: "
                f"{self.last_event_id or 'none'}, {self.trace_header}: {self.trace_id or 'none'})"
            )
        else:
            logger.info(f"Connecting to response stream: {url} (fresh connection)")

        parser = SSEParser(self.max_event_size)
        self._parser = parser

        async with self.client.stream("GET", url, headers=headers, params=params) as response:
            self._capture_trace_id(response)
            if not response.is_success:
                raise StreamStatusError(response.status_code, self.trace_id)

            self._set_state(StreamState.STREAMING)
            self.stats["connected_at"] = utc_now_iso()
            logger.info(f"protocol=sse event=connect status={response.status_code} trace_id={self.trace_id or 'none'}")
            await self._consume(response, parser)

        logger.info("Streaming loop ended")

    async def _consume(self, response: httpx.Response, parser: SSEParser) -> None:
        chunks = response.aiter_bytes()
        cancelled = False
        try:
            while self._listening:
                try:
                    chunk = await asyncio.wait_for(anext(chunks), timeout=self.idle_timeout_s)
                except StopAsyncIteration:
                    logger.info("Streaming request completed normally (server closed connection)")
                    break
                except asyncio.TimeoutError:
                    raise StreamIdleTimeout(
                        f"No data received for {self.idle_timeout_s} seconds, reconnecting with "
                        f"Last-Event-Id: {self.last_event_id or 'none'}"
                    )

                self.stats["bytes_received"] += len(chunk)
                for event in parser.feed(chunk):
                    if not self._listening:
                        break
                    self._handle_event(event)
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            if not cancelled and self._listening:
                for event in parser.flush():
                    self._handle_event(event)
            else:
                parser.reset()

    def _build_headers(self, bypass: bool) -> dict[str, str]:
        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
        if self._credential and not bypass:
            headers["Authorization"] = f"Bearer {self._credential}"
        if self.last_event_id:
            headers["Last-Event-Id"] = self.last_event_id
        if self.trace_id:
            headers[self.trace_header] = self.trace_id
        return headers

    def _capture_trace_id(self, response: httpx.Response) -> None:
        trace_id = response.headers.get(self.trace_header)
        if trace_id and trace_id != self.resumption.trace_id:
            self.resumption.trace_id = trace_id
            logger.info(f"Captured {self.trace_header}: {trace_id}")

    # ==========================
    # DISPATCH
    # ==========================
    def _handle_event(self, event: ServerSentEvent) -> None:
        self.stats["events_received"] += 1
        self.stats["last_event_at"] = utc_now_iso()

        # Pings move the resumption point too, so a reconnect never replays them
        if event.id:
            self.resumption.last_event_id = event.id

        if event.event == PING_EVENT:
            self.stats["pings_received"] += 1
            logger.debug(f"Updated Last-Event-Id from ping event: {event.id}")
            return

        if not event.data:
            return

        if event.id and event.id == self._last_processed_id:
            logger.debug(f"Skipping duplicate event (Event-Id: {event.id})")
            self.stats["events_dropped"] += 1
            return

        if event.event in AUDIO_CHUNK_EVENTS:
            self._dispatch_audio(event)
        else:
            self._dispatch_chat(event)

    def _dispatch_chat(self, event: ServerSentEvent) -> None:
        self._dump_payload(event.data, "npc_message_payload", event.id)
        try:
            response = ChatResponse.model_validate_json(event.data)
        except ValidationError as e:
            self.stats["events_dropped"] += 1
            dumped = self._dump_payload(event.data, "json_parse_error", event.id)
            logger.error(
                f"JSON parsing error in SSE event (Event-Id: {event.id}): {e.error_count()} error(s)"
                + (f". Data written to: {dumped}" if dumped else "")
            )
            return

        if not response.npc_id:
            self.stats["events_dropped"] += 1
            self._dump_payload(event.data, "invalid_npc_event", event.id)
            logger.warning("Received SSE event with invalid or missing npc_id.")
            return

        handler = self.registry.get(response.npc_id)
        if handler is None:
            self.stats["events_dropped"] += 1
            logger.warning(f"Received SSE response for unregistered NPC: {response.npc_id}")
            return

        logger.info(f"Received SSE response from NPC {response.npc_id}: {response.message} (Event-Id: {event.id})")
        try:
            result = handler(response)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                task.add_done_callback(self._report_handler_failure(response.npc_id))
        except Exception as e:
            logger.exception(f"Error in NPC response handler for {response.npc_id}: {e}")
            return

        self._mark_processed(event.id)
        self.stats["events_dispatched"] += 1

    def _dispatch_audio(self, event: ServerSentEvent) -> None:
        self._dump_payload(event.data, "npc_audio_chunk", event.id)
        try:
            chunk = AudioChunk.model_validate_json(event.data)
        except ValidationError as e:
            self.stats["events_dropped"] += 1
            logger.warning(f"npc-audio-chunk event missing npc_id or payload is invalid: {e.error_count()} error(s)")
            self._last_processed_id = event.id or self._last_processed_id
            return

        if not self.tts_streaming:
            logger.debug(f"Ignoring npc-audio-chunk for NPC {chunk.npc_id}: audio streaming disabled")
            self._last_processed_id = event.id or self._last_processed_id
            return

        if self.audio.handle_chunk(chunk):
            self._mark_processed(event.id)
            self.stats["events_dispatched"] += 1
        else:
            self.stats["events_dropped"] += 1
            self._last_processed_id = event.id or self._last_processed_id

    def _mark_processed(self, event_id: Optional[str]) -> None:
        # A clean delivery is evidence the connection is healthy
        self.policy.reset()
        if event_id:
            self._last_processed_id = event_id

    @staticmethod
    def _report_handler_failure(npc_id: str):
        def callback(task: asyncio.Future) -> None:
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.opt(exception=error).error(f"Error in NPC response handler for {npc_id}: {error}")
        return callback

    def _dump_payload(self, data: str, prefix: str, event_id: Optional[str]) -> Optional[str]:
        if self.dump_payloads_dir is None:
            return None
        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S-%f")
        path = Path(self.dump_payloads_dir) / f"{prefix}_{timestamp}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(data, encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to write payload to file: {e}")
            return None
        logger.debug(f"Payload (Event-Id: {event_id}) written to: {path.name}")
        return path.name
