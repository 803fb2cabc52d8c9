"""
MODULE OVERVIEW:
The emulator's central state registry and pub/sub implementation.

WHAT IS HAPPENING HERE:
One object holds everything the fake NPC service needs to remember:

  * the device-authorization grants waiting for a user to approve them
  * the API keys it has handed out
  * a rolling log of recently emitted stream events, so a reconnecting client that
    sends `Last-Event-Id` gets exactly the events it missed
  * one `asyncio.Queue` per open SSE stream for live fan-out

Event ids are a monotonically increasing counter rendered as strings, which makes
"everything after id N" a simple numeric comparison.
"""
import asyncio
import itertools
import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel

from npc_stream.shared.config import Settings, settings
from npc_stream.shared.models import AUDIO_CHUNK_EVENTS


class EmittedEvent(BaseModel):
    id: str
    event: Optional[str] = None
    data: str

    def as_sse(self) -> dict:
        frame = {"id": self.id, "data": self.data}
        if self.event:
            frame["event"] = self.event
        return frame


class ServiceStats(BaseModel):
    active_streams: int
    pending_device_grants: int
    issued_keys: int
    total_events_emitted: int
    latest_event_id: Optional[str]
    uptime_s: float
    server_time: datetime


@dataclass
class DeviceGrant:
    device_code: str
    user_code: str
    client_id: str
    interval: int
    expires_at: float
    approved: bool = False
    last_poll_at: Optional[float] = None


@dataclass
class StreamSubscriber:
    queue: asyncio.Queue
    tts_streaming: bool = False
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ServiceState:
    def __init__(self, config: Optional[Settings] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or settings
        self.clock = clock
        self.reset()

    def reset(self) -> None:
        self.event_log: deque[EmittedEvent] = deque(maxlen=self.config.EMULATOR_REPLAY_BUFFER)
        self.subscribers: Dict[int, StreamSubscriber] = {}
        self.device_grants: Dict[str, DeviceGrant] = {}
        self.api_keys: set[str] = set()
        self.total_events_emitted = 0
        self.startup_time = datetime.now(timezone.utc)
        self._event_ids = itertools.count(1)
        self._subscriber_ids = itertools.count(1)

    # ==========================
    # API KEYS
    # ==========================
    def issue_key(self) -> str:
        key = f"p2_{secrets.token_urlsafe(24)}"
        self.api_keys.add(key)
        return key

    def is_valid_key(self, key: Optional[str]) -> bool:
        return bool(key) and key in self.api_keys

    # ==========================
    # DEVICE AUTHORIZATION
    # ==========================
    def create_device_grant(self, client_id: str) -> DeviceGrant:
        grant = DeviceGrant(
            device_code=secrets.token_urlsafe(16),
            user_code=secrets.token_hex(3).upper(),
            client_id=client_id,
            interval=self.config.EMULATOR_DEVICE_INTERVAL_S,
            expires_at=self.clock() + self.config.EMULATOR_DEVICE_EXPIRES_S,
        )
        self.device_grants[grant.device_code] = grant
        logger.info(f"protocol=device_flow event=grant client_id={client_id} user_code={grant.user_code}")
        return grant

    def approve(self, user_code: str) -> bool:
        for grant in self.device_grants.values():
            if grant.user_code == user_code and grant.expires_at > self.clock():
                grant.approved = True
                logger.info(f"protocol=device_flow event=approved user_code={user_code}")
                return True
        return False

    def poll_token(self, client_id: str, device_code: str) -> Tuple[int, Optional[str]]:
        """
        One token poll. Returns (status_code, api_key):
        404 unknown or expired, 429 polled faster than half the interval,
        400 still pending, 200 with a freshly issued key once approved.
        """
        grant = self.device_grants.get(device_code)
        now = self.clock()
        if grant is None or grant.client_id != client_id:
            return 404, None
        if grant.expires_at <= now:
            del self.device_grants[device_code]
            return 404, None

        too_fast = grant.last_poll_at is not None and now - grant.last_poll_at < grant.interval / 2
        grant.last_poll_at = now
        if too_fast:
            return 429, None
        if not grant.approved:
            return 400, None

        del self.device_grants[device_code]
        key = self.issue_key()
        logger.info(f"protocol=device_flow event=token_issued client_id={client_id}")
        return 200, key

    def expire_grants(self) -> int:
        now = self.clock()
        expired = [code for code, grant in self.device_grants.items() if grant.expires_at <= now]
        for code in expired:
            del self.device_grants[code]
        if expired:
            logger.debug(f"protocol=device_flow event=expired count={len(expired)}")
        return len(expired)

    # ==========================
    # STREAM FAN-OUT
    # ==========================
    @property
    def latest_event_id(self) -> Optional[str]:
        return self.event_log[-1].id if self.event_log else None

    def subscribe(self, tts_streaming: bool = False) -> Tuple[int, asyncio.Queue]:
        # Bounded so one stalled client cannot grow memory without limit
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.EMULATOR_REPLAY_BUFFER)
        subscriber_id = next(self._subscriber_ids)
        self.subscribers[subscriber_id] = StreamSubscriber(queue=queue, tts_streaming=tts_streaming)
        logger.info(f"subscriber={subscriber_id} protocol=sse event=connect tts_streaming={tts_streaming}")
        return subscriber_id, queue

    def unsubscribe(self, subscriber_id: int) -> None:
        if self.subscribers.pop(subscriber_id, None) is not None:
            logger.info(f"subscriber={subscriber_id} protocol=sse event=disconnect reason=cleanup")

    def publish(self, data: str, event: Optional[str] = None) -> EmittedEvent:
        emitted = EmittedEvent(id=str(next(self._event_ids)), event=event, data=data)
        self.event_log.append(emitted)
        self.total_events_emitted += 1

        for subscriber_id, subscriber in self.subscribers.items():
            if self._is_audio(emitted) and not subscriber.tts_streaming:
                continue
            try:
                subscriber.queue.put_nowait(emitted)
            except asyncio.QueueFull:
                logger.warning(f"subscriber={subscriber_id} protocol=sse event=dropped reason=queue_full")
        return emitted

    def replay_after(self, last_event_id: Optional[str], tts_streaming: bool = False) -> List[EmittedEvent]:
        """Buffered events newer than `last_event_id`; nothing for a fresh connection."""
        if not last_event_id:
            return []
        try:
            after = int(last_event_id)
        except ValueError:
            logger.warning(f"Ignoring unparseable Last-Event-Id: {last_event_id}")
            return []
        return [
            e for e in self.event_log
            if int(e.id) > after and (tts_streaming or not self._is_audio(e))
        ]

    @staticmethod
    def _is_audio(event: EmittedEvent) -> bool:
        return event.event in AUDIO_CHUNK_EVENTS

    def get_stats(self) -> ServiceStats:
        return ServiceStats(
            active_streams=len(self.subscribers),
            pending_device_grants=len(self.device_grants),
            issued_keys=len(self.api_keys),
            total_events_emitted=self.total_events_emitted,
            latest_event_id=self.latest_event_id,
            uptime_s=(datetime.now(timezone.utc) - self.startup_time).total_seconds(),
            server_time=datetime.now(timezone.utc),
        )


# Global singleton instance
service = ServiceState()
