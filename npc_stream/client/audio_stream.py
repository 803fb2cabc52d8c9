"""
MODULE OVERVIEW:
Per-NPC streamed speech: PCM16LE chunks from the SSE stream into a playback buffer.

WHAT IS HAPPENING HERE:
Two sides touch each buffer. The network side appends samples as `npc-audio-chunk`
events arrive; the audio side pulls fixed-size blocks whenever the output device wants
more. The ring buffer cursors are therefore guarded by a lock.

Playback only starts once ~50ms of audio is buffered, which smooths over network
jitter. A "final" chunk just marks the end of the utterance; the audio side drains
whatever is left naturally.
"""
import math
import threading
from typing import Dict, Optional, Protocol

import numpy as np
from loguru import logger

from npc_stream.shared.models import AudioChunk

MIN_RING_CAPACITY = 8192
MAX_BUFFER_SECONDS = 120


class AudioOutput(Protocol):
    """A playback target owned by the embedding application."""

    def attach(self, stream: "PcmStream") -> None: ...

    def play(self) -> None: ...

    def stop(self) -> None: ...


class AudioSink(Protocol):
    def get_playback_target(self, npc_id: str) -> Optional[AudioOutput]: ...


class PcmStream:
    def __init__(self, npc_id: str, prebuffer_s: float = 0.05):
        self.npc_id = npc_id
        self.prebuffer_s = prebuffer_s
        self.sample_rate = 0
        self.channels = 1
        self.prebuffer_samples = 1
        self.samples_dropped = 0

        self._lock = threading.Lock()
        self._output: Optional[AudioOutput] = None
        self._ring = np.zeros(0, dtype=np.float32)
        self._capacity = 0
        self._max_capacity = 0
        self._read_pos = 0
        self._write_pos = 0
        self._count = 0
        self._final = False
        self._started = False

    def initialize(self, output: AudioOutput, sample_rate: int, channels: int = 1) -> None:
        self.sample_rate = sample_rate
        self.channels = max(1, channels)
        self.prebuffer_samples = max(1, math.ceil(sample_rate * self.prebuffer_s))

        with self._lock:
            # At least two seconds of audio up front
            self._capacity = max(sample_rate * self.channels * 2, MIN_RING_CAPACITY)
            self._max_capacity = max(self._capacity, sample_rate * self.channels * MAX_BUFFER_SECONDS)
            self._ring = np.zeros(self._capacity, dtype=np.float32)
            self._read_pos = 0
            self._write_pos = 0
            self._count = 0
            self._final = False
            self._started = False

        self._output = output
        output.stop()
        output.attach(self)

    @property
    def available(self) -> int:
        with self._lock:
            return self._count

    @property
    def started(self) -> bool:
        return self._started

    @property
    def is_final(self) -> bool:
        with self._lock:
            return self._final

    @property
    def drained(self) -> bool:
        with self._lock:
            return self._final and self._count == 0

    def enqueue_pcm16le(self, data: bytes) -> None:
        if len(data) < 2:
            return
        usable = len(data) - (len(data) % 2)
        samples = np.frombuffer(data[:usable], dtype="<i2").astype(np.float32) / 32768.0

        should_start = False
        with self._lock:
            self._ensure_capacity(self._count + len(samples))
            if len(samples) > self._capacity:
                self.samples_dropped += len(samples) - self._capacity
                samples = samples[-self._capacity:]

            overflow = self._count + len(samples) - self._capacity
            if overflow > 0:
                # Buffer is at its ceiling: overwrite the oldest audio
                self._read_pos = (self._read_pos + overflow) % self._capacity
                self._count -= overflow
                self.samples_dropped += overflow
                logger.warning(f"Audio buffer full for NPC {self.npc_id}, dropped {overflow} samples")

            n = len(samples)
            first = min(n, self._capacity - self._write_pos)
            self._ring[self._write_pos:self._write_pos + first] = samples[:first]
            if n > first:
                self._ring[:n - first] = samples[first:]
            self._write_pos = (self._write_pos + n) % self._capacity
            self._count += n

            if not self._started and self._output is not None and self._count >= self.prebuffer_samples:
                self._started = True
                should_start = True

        if should_start:
            self._output.play()

    def read(self, frames: int) -> np.ndarray:
        """Pull up to `frames` samples; the remainder is zero-filled."""
        out = np.zeros(frames, dtype=np.float32)
        with self._lock:
            to_copy = min(self._count, frames)
            if to_copy > 0:
                first = min(to_copy, self._capacity - self._read_pos)
                out[:first] = self._ring[self._read_pos:self._read_pos + first]
                if to_copy > first:
                    out[first:to_copy] = self._ring[:to_copy - first]
                self._read_pos = (self._read_pos + to_copy) % self._capacity
                self._count -= to_copy
        return out

    def mark_final(self) -> None:
        with self._lock:
            self._final = True

    def stop_and_dispose(self) -> None:
        if self._output is not None:
            try:
                self._output.stop()
            except Exception as e:
                logger.warning(f"Failed to stop audio output for NPC {self.npc_id}: {e}")
        with self._lock:
            self._count = 0
            self._read_pos = 0
            self._write_pos = 0
            self._started = False
        self._output = None

    def _ensure_capacity(self, required: int) -> None:
        if self._capacity >= required or self._capacity >= self._max_capacity:
            return
        new_capacity = self._capacity
        while new_capacity < required:
            new_capacity *= 2
        new_capacity = min(new_capacity, self._max_capacity)

        grown = np.zeros(new_capacity, dtype=np.float32)
        if self._count > 0:
            first = min(self._count, self._capacity - self._read_pos)
            grown[:first] = self._ring[self._read_pos:self._read_pos + first]
            if self._count > first:
                grown[first:self._count] = self._ring[:self._count - first]
        self._ring = grown
        self._capacity = new_capacity
        self._read_pos = 0
        self._write_pos = self._count % new_capacity


class AudioStreamRouter:
    """At most one active PCM stream per NPC, created from `npc-audio-chunk` events."""

    def __init__(self, sink: Optional[AudioSink] = None, prebuffer_s: float = 0.05):
        self.sink = sink
        self.prebuffer_s = prebuffer_s
        self._streams: Dict[str, PcmStream] = {}
        self._sample_rates: Dict[str, int] = {}

    def stream_for(self, npc_id: str) -> Optional[PcmStream]:
        return self._streams.get(npc_id)

    def handle_chunk(self, chunk: AudioChunk) -> bool:
        npc_id = chunk.npc_id
        if chunk.initial:
            if chunk.sample_rate <= 0:
                logger.error(f"npc-audio-chunk initial message missing/invalid sample_rate for NPC {npc_id}")
                return False
            self._sample_rates[npc_id] = chunk.sample_rate
            existing = self._streams.pop(npc_id, None)
            if existing is not None:
                existing.stop_and_dispose()
            if self._open_stream(npc_id, chunk.sample_rate) is None:
                return False

        stream = self._streams.get(npc_id)
        if stream is None:
            sample_rate = chunk.sample_rate if chunk.sample_rate > 0 else self._sample_rates.get(npc_id, 0)
            if sample_rate <= 0:
                logger.warning(
                    f"Received npc-audio-chunk for NPC {npc_id} without initialized stream and no sample_rate available"
                )
                return False
            stream = self._open_stream(npc_id, sample_rate)
            if stream is None:
                return False

        if chunk.sample_rate > 0:
            self._sample_rates[npc_id] = chunk.sample_rate

        pcm = chunk.pcm_bytes()
        if pcm:
            stream.enqueue_pcm16le(pcm)
        if chunk.final:
            stream.mark_final()
        return True

    def close(self) -> None:
        for stream in self._streams.values():
            stream.stop_and_dispose()
        self._streams.clear()

    def _open_stream(self, npc_id: str, sample_rate: int) -> Optional[PcmStream]:
        output = self.sink.get_playback_target(npc_id) if self.sink is not None else None
        if output is None:
            logger.warning(f"Audio output not found for NPC {npc_id}; cannot start TTS stream")
            return None
        logger.info(f"Starting streaming TTS playback for npc_id: {npc_id}")
        stream = PcmStream(npc_id, prebuffer_s=self.prebuffer_s)
        stream.initialize(output, sample_rate, 1)
        self._streams[npc_id] = stream
        return stream
