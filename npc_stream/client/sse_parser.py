"""
MODULE OVERVIEW:
The incremental Server-Sent Events frame parser.

WHAT IS HAPPENING HERE:
Network buffers never line up with SSE frames, so the parser is fed raw bytes in
whatever chunks arrive and keeps everything it has not finished yet: a partial line,
and the id/event/data fields of the event in progress. A blank line closes an event.

We split on bytes and only decode complete lines, which keeps multi-byte UTF-8
characters intact even when a chunk boundary falls in the middle of one.

Size protection: a single event (or a single unterminated line) may not grow past
`max_event_size`. When it does we throw the event away and skip everything up to its
terminating blank line, so the next event parses cleanly.
"""
from dataclasses import dataclass
from typing import List, Optional

from loguru import logger

MAX_EVENT_SIZE = 2 * 1024 * 1024


@dataclass
class ServerSentEvent:
    id: Optional[str] = None
    event: Optional[str] = None
    data: str = ""


class SSEParser:
    def __init__(self, max_event_size: int = MAX_EVENT_SIZE):
        self.max_event_size = max_event_size
        self.events_discarded = 0

        self._line = bytearray()
        self._line_overflow = False
        self._skipping = False

        self._event_id: Optional[str] = None
        self._event_type: Optional[str] = None
        self._data: List[str] = []
        self._data_size = 0

    @property
    def has_pending_event(self) -> bool:
        return bool(self._data) or bool(self._event_id)

    def feed(self, chunk: bytes) -> List[ServerSentEvent]:
        """Consume a chunk of bytes and return every event it completed."""
        events: List[ServerSentEvent] = []
        start = 0
        while True:
            newline = chunk.find(b"\n", start)
            if newline == -1:
                self._append_partial(chunk[start:])
                break
            self._append_partial(chunk[start:newline])
            start = newline + 1

            if self._line_overflow:
                self._line_overflow = False
                self._line.clear()
                continue

            line = bytes(self._line)
            self._line.clear()
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[ServerSentEvent]:
        """
        Called on connection teardown. Processes a trailing unterminated line and
        finalizes a non-empty in-progress event, then resets all state.
        """
        events: List[ServerSentEvent] = []
        if self._line and not self._line_overflow:
            event = self._process_line(bytes(self._line))
            if event is not None:
                events.append(event)
        if not self._skipping and self.has_pending_event:
            logger.debug("Finalizing incomplete SSE event due to connection teardown")
            event = self._finish_event()
            if event is not None:
                events.append(event)
        self.reset()
        return events

    def reset(self) -> None:
        self._line.clear()
        self._line_overflow = False
        self._skipping = False
        self._reset_event()

    def _append_partial(self, piece: bytes) -> None:
        if not piece or self._line_overflow:
            return
        piece = piece.replace(b"\r", b"")
        if len(self._line) + len(piece) > self.max_event_size:
            logger.error(f"SSE line would exceed max size ({self.max_event_size} bytes), discarding event")
            self._line.clear()
            self._line_overflow = True
            self._discard_event()
            return
        self._line.extend(piece)

    def _process_line(self, raw: bytes) -> Optional[ServerSentEvent]:
        line = raw.decode("utf-8", errors="replace")

        if not line:
            if self._skipping:
                self._skipping = False
                self._reset_event()
                return None
            return self._finish_event()

        if self._skipping or line.startswith(":"):
            return None

        colon = line.find(":")
        if colon < 0:
            return None

        field = line[:colon]
        value = line[colon + 1:]
        if value.startswith(" "):
            value = value[1:]

        if field == "id":
            self._event_id = value.strip()
        elif field == "event":
            self._event_type = value
        elif field == "data":
            self._append_data(value)
        # Anything else (including "retry") is ignored
        return None

    def _append_data(self, value: str) -> None:
        new_size = self._data_size + len(value.encode("utf-8")) + 1
        if new_size > self.max_event_size:
            logger.error(f"SSE event would exceed max size ({self.max_event_size} bytes), discarding")
            self._discard_event()
            return
        self._data.append(value)
        self._data_size = new_size

    def _finish_event(self) -> Optional[ServerSentEvent]:
        if not (self._event_id or self._event_type or self._data):
            self._reset_event()
            return None
        event = ServerSentEvent(
            id=self._event_id or None,
            event=self._event_type,
            data="\n".join(self._data),
        )
        self._reset_event()
        return event

    def _discard_event(self) -> None:
        self.events_discarded += 1
        self._reset_event()
        self._skipping = True

    def _reset_event(self) -> None:
        self._event_id = None
        self._event_type = None
        self._data = []
        self._data_size = 0
