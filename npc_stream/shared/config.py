"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.
Where it fits: every client, the CLI and the service emulator read their timings,
URLs and limits from here.

WHAT IS HAPPENING HERE:
Instead of hardcoding "2 seconds between reconnects" or "5 minutes of silence means
the stream is dead" deep inside the stream client, we declare them once. Every value
can be overridden from the environment or a `.env` file, and every client also accepts
an explicit `Settings` instance so tests can tune timings without touching globals.
"""
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        # Tolerate unrelated env vars so the CLI works out of the box
        extra="ignore",
    )

    LOG_LEVEL: str = "INFO"

    # Service endpoints
    BASE_URL: str = "https://api.player2.game/v1"
    HOSTED_BASE_URL: str = "https://games.player2.game/_api/v1"
    # Hosted mode: auth is handled by session cookies at the service edge
    HOSTED_MODE: bool = False
    CLIENT_ID: str = ""
    API_KEY: str | None = None
    LOCAL_LOGIN_URL: str = "http://localhost:4315/v1"
    LOCAL_LOGIN_ENABLED: bool = True
    STREAM_PATH: str = "/npcs/responses"
    TRACE_HEADER: str = "X-Player2-Trace-Id"

    # Stream connection
    RECONNECT_DELAY_S: float = 2.0
    MAX_RECONNECT_ATTEMPTS: int = 5
    IDLE_TIMEOUT_S: float = 300.0
    CONNECT_TIMEOUT_S: float = 10.0
    HTTP_TIMEOUT_S: float = 10.0
    MAX_EVENT_SIZE: int = 2 * 1024 * 1024

    # Streamed speech
    TTS_STREAMING: bool = False
    AUDIO_PREBUFFER_S: float = 0.05

    DUMP_PAYLOADS_DIR: Path | None = None

    # Device flow
    AUTH_RATE_LIMIT_BACKOFF_S: int = 5

    # Service emulator
    PORT: int = 8000
    SSE_PING_INTERVAL_S: float = 15.0
    EMULATOR_REPLAY_BUFFER: int = 500
    EMULATOR_DEVICE_INTERVAL_S: int = 5
    EMULATOR_DEVICE_EXPIRES_S: int = 300
    EMULATOR_LOCAL_LOGIN: bool = False
    EMULATOR_HOSTED: bool = False
    # JSON list of NPC ids that chat on their own, e.g. ["npc-1"]
    EMULATOR_AMBIENT_NPCS: list[str] = []
    EMULATOR_AMBIENT_INTERVAL_S: float = 10.0
    EMULATOR_TTS_SAMPLE_RATE: int = 24000


settings = Settings()
