"""
MODULE OVERVIEW:
Fake NPC traffic for the emulator: idle chatter and synthetic speech.

WHAT IS HAPPENING HERE:
A real NPC service runs an LLM and a TTS engine. We only need traffic with the right
shape, so idle NPCs pick canned lines (sometimes with a command attached), and "speech"
is a short sine tone encoded exactly like streamed TTS: base64 PCM16LE split into
`npc-audio-chunk` events, the first flagged `initial` with its sample rate, the last
flagged `final`.
"""
import asyncio
import base64
import json
import random
from typing import AsyncGenerator, List, Sequence

import numpy as np

from npc_stream.shared.models import AudioChunk, ChatResponse, CommandCall

IDLE_LINES = [
    "Have you seen the weather out there?",
    "I could use a hand with the forge later.",
    "Strange noises from the mine again last night.",
    "Gold prices are up, or so they tell me.",
]

IDLE_COMMANDS = [
    CommandCall(name="wave", arguments="{}"),
    CommandCall(name="walk_to", arguments=json.dumps({"target": "tavern"})),
]


def echo_response(npc_id: str, sender_name: str, message: str) -> ChatResponse:
    return ChatResponse(npc_id=npc_id, message=f"{sender_name}, you said: {message}")


def synth_tone(duration_s: float, sample_rate: int, frequency_hz: float = 440.0) -> bytes:
    """A sine tone with short fades, as PCM16LE bytes."""
    n = max(1, int(duration_s * sample_rate))
    t = np.arange(n, dtype=np.float32) / sample_rate
    wave = 0.3 * np.sin(2 * np.pi * frequency_hz * t)
    fade = min(n // 2, int(0.01 * sample_rate))
    if fade > 0:
        ramp = np.linspace(0.0, 1.0, fade, dtype=np.float32)
        wave[:fade] *= ramp
        wave[-fade:] *= ramp[::-1]
    return (wave * 32767).astype("<i2").tobytes()


def tone_chunks(npc_id: str, text: str, sample_rate: int = 24000, chunk_ms: int = 100) -> List[AudioChunk]:
    """Streamed "speech" for `text`: longer text, longer tone."""
    duration_s = min(2.0, 0.2 + 0.04 * len(text))
    pcm = synth_tone(duration_s, sample_rate)
    step = max(2, int(sample_rate * chunk_ms / 1000) * 2)
    pieces = [pcm[i:i + step] for i in range(0, len(pcm), step)]

    chunks = []
    for index, piece in enumerate(pieces):
        initial = index == 0
        chunks.append(
            AudioChunk(
                npc_id=npc_id,
                initial=initial,
                final=index == len(pieces) - 1,
                sample_rate=sample_rate if initial else 0,
                data=base64.b64encode(piece).decode("ascii"),
            )
        )
    return chunks


async def ambient_chatter_generator(npc_ids: Sequence[str], interval_s: float) -> AsyncGenerator[ChatResponse, None]:
    """Idle NPCs say something every `interval_s`, jittered by up to 50%."""
    while True:
        await asyncio.sleep(interval_s * random.uniform(0.5, 1.5))
        response = ChatResponse(npc_id=random.choice(list(npc_ids)), message=random.choice(IDLE_LINES))
        if random.random() < 0.3:
            response.command = [random.choice(IDLE_COMMANDS)]
        yield response
