"""Device-flow authentication and resumable SSE streaming for NPC chat services."""
from npc_stream.client.auth_client import AuthState, DeviceAuthClient
from npc_stream.client.credentials import CredentialSupplier, SessionCredentials
from npc_stream.client.stream_client import EventStreamClient, StreamState
from npc_stream.shared.models import AudioChunk, ChatResponse, CommandCall, DeviceAuthSession

__all__ = [
    "AudioChunk",
    "AuthState",
    "ChatResponse",
    "CommandCall",
    "CredentialSupplier",
    "DeviceAuthClient",
    "DeviceAuthSession",
    "EventStreamClient",
    "SessionCredentials",
    "StreamState",
]
