from abc import ABC, abstractmethod
from enum import Enum

from loguru import logger

from npc_stream.shared.client_utils import make_client_stats
from npc_stream.shared.events import EventHook


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class BaseConnectionClient(ABC):
    protocol_name: str = "unknown"

    def __init__(self):
        self.stats = make_client_stats()
        self.state_changed: EventHook[StreamState] = EventHook("state_changed")
        self._state = StreamState.IDLE

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def events_received(self): return self.stats["events_received"]

    @property
    def events_dispatched(self): return self.stats["events_dispatched"]

    @property
    def reconnect_count(self): return self.stats["reconnect_count"]

    def _set_state(self, state: StreamState) -> None:
        if state == self._state:
            return
        logger.debug(f"protocol={self.protocol_name} event=state from={self._state.value} to={state.value}")
        self._state = state
        self.state_changed.emit(state)

    @abstractmethod
    async def connect(self) -> None:
        """One connection attempt. Returns when the stream ends; raises on failure."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass
