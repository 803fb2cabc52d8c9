"""
Tests for the incremental SSE frame parser.
"""

import pytest

from npc_stream.client.sse_parser import MAX_EVENT_SIZE, ServerSentEvent, SSEParser

STREAM = (
    b": connected\n\n"
    b"id: 1\n"
    b"data: {\"npc_id\": \"a\", \"message\": \"h\xc3\xa9llo\"}\n\n"
    b"event: ping\n"
    b"id: 2\n"
    b"data:\n\n"
    b"id: 3\n"
    b"event: npc-audio-chunk\n"
    b"data: line one\n"
    b"data: line two\n\n"
)

EXPECTED = [
    ServerSentEvent(id="1", event=None, data='{"npc_id": "a", "message": "héllo"}'),
    ServerSentEvent(id="2", event="ping", data=""),
    ServerSentEvent(id="3", event="npc-audio-chunk", data="line one\nline two"),
]


def feed_in_pieces(parser: SSEParser, payload: bytes, size: int):
    events = []
    for i in range(0, len(payload), size):
        events.extend(parser.feed(payload[i:i + size]))
    return events


class TestFraming:
    """Event boundaries survive any chunking of the byte stream."""

    def test_single_chunk(self):
        assert SSEParser().feed(STREAM) == EXPECTED

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 16, 64])
    def test_arbitrary_splits_give_identical_events(self, size):
        assert feed_in_pieces(SSEParser(), STREAM, size) == EXPECTED

    def test_split_inside_multibyte_character(self):
        parser = SSEParser()
        payload = "data: café\n\n".encode("utf-8")
        cut = payload.index(b"\xc3") + 1
        assert parser.feed(payload[:cut]) == []
        assert parser.feed(payload[cut:]) == [ServerSentEvent(data="café")]

    def test_crlf_line_endings(self):
        events = SSEParser().feed(b"id: 9\r\nevent: hello\r\ndata: x\r\n\r\n")
        assert events == [ServerSentEvent(id="9", event="hello", data="x")]

    def test_comments_and_unknown_fields_are_ignored(self):
        events = SSEParser().feed(b": keepalive\nretry: 1000\nfoo: bar\nnocolon\ndata: ok\n\n")
        assert events == [ServerSentEvent(data="ok")]

    def test_only_one_leading_space_is_stripped(self):
        events = SSEParser().feed(b"data:  two spaces\ndata:none\n\n")
        assert events[0].data == " two spaces\nnone"

    def test_empty_event_is_not_emitted(self):
        assert SSEParser().feed(b"\n\n\n") == []


class TestSizeLimit:
    """Oversized events are discarded without corrupting what follows."""

    def test_oversized_data_is_discarded(self):
        parser = SSEParser(max_event_size=64)
        big = b"data: " + b"x" * 40 + b"\n" + b"data: " + b"y" * 40 + b"\n\n"
        events = parser.feed(big + b"id: 5\ndata: small\n\n")
        assert events == [ServerSentEvent(id="5", data="small")]
        assert parser.events_discarded == 1

    def test_oversized_line_without_newline_is_discarded(self):
        parser = SSEParser(max_event_size=32)
        assert parser.feed(b"data: " + b"z" * 100) == []
        events = parser.feed(b"z" * 100 + b"\n\n" + b"data: after\n\n")
        assert events == [ServerSentEvent(data="after")]
        assert parser.events_discarded == 1

    def test_default_limit_is_two_mebibytes(self):
        assert MAX_EVENT_SIZE == 2 * 1024 * 1024
        parser = SSEParser()
        line = b"data: " + b"a" * (1024 * 1024 - 1) + b"\n"

        at_limit = parser.feed(b"id: 1\n" + line + line + b"\n")
        assert len(at_limit) == 1
        assert len(at_limit[0].data) == MAX_EVENT_SIZE - 1

        over = parser.feed(b"id: 2\n" + line + line + line + b"\n" + b"id: 3\ndata: small\n\n")
        assert over == [ServerSentEvent(id="3", data="small")]
        assert parser.events_discarded == 1

    def test_fields_of_a_discarded_event_do_not_leak(self):
        parser = SSEParser(max_event_size=32)
        payload = b"id: 7\ndata: " + b"q" * 40 + b"\nevent: late\ndata: tail\n\ndata: next\n\n"
        assert parser.feed(payload) == [ServerSentEvent(data="next")]


class TestTeardown:
    """Flushing on connection teardown."""

    def test_flush_finalizes_pending_event(self):
        parser = SSEParser()
        assert parser.feed(b"id: 11\ndata: partial\n") == []
        assert parser.has_pending_event
        assert parser.flush() == [ServerSentEvent(id="11", data="partial")]
        assert not parser.has_pending_event

    def test_flush_processes_trailing_line(self):
        parser = SSEParser()
        parser.feed(b"id: 12\ndata: no newline")
        assert parser.flush() == [ServerSentEvent(id="12", data="no newline")]

    def test_reset_drops_everything(self):
        parser = SSEParser()
        parser.feed(b"id: 13\ndata: gone")
        parser.reset()
        assert parser.flush() == []
        assert parser.feed(b"data: fresh\n\n") == [ServerSentEvent(data="fresh")]
