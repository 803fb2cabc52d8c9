"""
MODULE OVERVIEW:
The strictly typed wire contracts shared by the clients and the service emulator,
powered by Pydantic v2.

WHAT IS HAPPENING HERE:
Every SSE payload the service sends is validated into one of these models before it
reaches an NPC handler. A payload that does not fit raises `ValidationError`, which the
stream client logs and drops without touching the connection. Unknown fields are
ignored so the service can add fields without breaking older clients.
"""
import base64
import binascii
import json
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


AUDIO_CHUNK_EVENTS = ("npc-audio-chunk", "npc_audio_chunk")
PING_EVENT = "ping"


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# WHAT IS HAPPENING HERE:
# The device session is stamped with a monotonic `issued_at` by the client the moment
# the init response arrives. The server only tells us relative lifetimes.
class DeviceAuthSession(WireModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    device_code: str
    verification_uri_complete: str
    verification_uri: str | None = None
    user_code: str | None = None
    interval: float = 5.0
    expires_in: float = 300.0
    issued_at: float = 0.0

    @property
    def deadline(self) -> float:
        return self.issued_at + self.expires_in


class InitiateAuthFlow(WireModel):
    client_id: str


class TokenRequest(WireModel):
    client_id: str
    device_code: str


class TokenResponse(WireModel):
    p2_key: str | None = Field(default=None, validation_alias=AliasChoices("p2Key", "p2_key"))


class AudioPayload(WireModel):
    data: str


class CommandCall(WireModel):
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the JSON-encoded argument object."""
        if not self.arguments.strip():
            return {}
        return json.loads(self.arguments)


class ChatRequest(WireModel):
    sender_name: str = "Player"
    sender_message: str
    game_state_info: str | None = None
    # "server" asks for speech to be synthesized and streamed back
    tts: str | None = None


class ChatResponse(WireModel):
    npc_id: str
    message: str | None = None
    audio: AudioPayload | None = None
    command: list[CommandCall] | None = None


class AudioChunk(WireModel):
    npc_id: str
    initial: bool = False
    final: bool = False
    sample_rate: int = 0
    data: str | None = None

    def pcm_bytes(self) -> bytes:
        """Base64-decode the PCM16LE payload, repairing missing padding."""
        if not self.data:
            return b""
        encoded = self.data
        remainder = len(encoded) % 4
        if remainder:
            encoded += "=" * (4 - remainder)
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            return b""
