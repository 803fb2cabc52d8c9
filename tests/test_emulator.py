"""
Tests for the NPC service emulator (FastAPI app + its state registry).
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from npc_stream.server.main import app
from npc_stream.server.route_utils import run_event_loop
from npc_stream.server.service_state import service
from npc_stream.shared.config import Settings
from npc_stream.shared.models import AudioChunk, ChatResponse


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def emulator(clock):
    service.config = Settings(_env_file=None, EMULATOR_DEVICE_INTERVAL_S=5, EMULATOR_DEVICE_EXPIRES_S=60)
    service.clock = clock
    service.reset()
    yield TestClient(app)
    service.reset()


def auth_header(key):
    return {"Authorization": f"Bearer {key}"}


# ============================================================================
# Auth endpoints
# ============================================================================

class TestAuthEndpoints:

    def test_health_requires_known_key(self, emulator):
        assert emulator.get("/v1/health").status_code == 401
        assert emulator.get("/v1/health", headers=auth_header("nope")).status_code == 401
        key = service.issue_key()
        assert emulator.get("/v1/health", headers=auth_header(key)).status_code == 200

    def test_device_new_requires_client_id(self, emulator):
        assert emulator.post("/v1/login/device/new", json={}).status_code == 400

    def test_full_device_flow(self, emulator, clock):
        resp = emulator.post("/v1/login/device/new", json={"client_id": "game-1"})
        assert resp.status_code == 200
        grant = resp.json()
        assert grant["interval"] == 5
        assert grant["expires_in"] == 60
        assert grant["verification_uri_complete"].endswith(f"?user_code={grant['user_code']}")

        body = {"client_id": "game-1", "device_code": grant["device_code"]}
        pending = emulator.post("/v1/login/device/token", json=body)
        assert pending.status_code == 400
        assert pending.json() == {"error": "authorization_pending"}

        assert emulator.get("/v1/login/device/verify", params={"user_code": grant["user_code"]}).status_code == 200

        # Polled again immediately: faster than half the interval
        assert emulator.post("/v1/login/device/token", json=body).status_code == 429

        clock.now += 5
        issued = emulator.post("/v1/login/device/token", json=body)
        assert issued.status_code == 200
        key = issued.json()["p2Key"]
        assert emulator.get("/v1/health", headers=auth_header(key)).status_code == 200

        # Grants are single-use
        clock.now += 5
        assert emulator.post("/v1/login/device/token", json=body).status_code == 404

    def test_expired_grant(self, emulator, clock):
        grant = emulator.post("/v1/login/device/new", json={"client_id": "game-1"}).json()
        clock.now += 61
        body = {"client_id": "game-1", "device_code": grant["device_code"]}
        assert emulator.post("/v1/login/device/token", json=body).status_code == 404
        assert service.device_grants == {}

    def test_verify_unknown_code(self, emulator):
        assert emulator.get("/v1/login/device/verify", params={"user_code": "NOPE"}).status_code == 404

    def test_local_login_toggle(self, emulator):
        assert emulator.post("/v1/login/web/game-1").status_code == 404
        service.config.EMULATOR_LOCAL_LOGIN = True
        resp = emulator.post("/v1/login/web/game-1")
        assert resp.status_code == 200
        assert service.is_valid_key(resp.json()["p2Key"])

    def test_expire_grants_sweep(self, emulator, clock):
        emulator.post("/v1/login/device/new", json={"client_id": "game-1"})
        assert service.expire_grants() == 0
        clock.now += 61
        assert service.expire_grants() == 1


# ============================================================================
# Middleware
# ============================================================================

class TestMiddleware:

    def test_trace_header_is_echoed(self, emulator):
        resp = emulator.get("/v1/health", headers={"X-Player2-Trace-Id": "trace-1"})
        assert resp.headers["X-Player2-Trace-Id"] == "trace-1"
        assert "X-Process-Time-Ms" in resp.headers

    def test_trace_header_is_minted(self, emulator):
        resp = emulator.get("/stats")
        assert resp.headers["X-Player2-Trace-Id"]


# ============================================================================
# Stream + chat
# ============================================================================

class TestStreamAndChat:

    def test_stream_requires_key(self, emulator):
        assert emulator.get("/v1/npcs/responses").status_code == 401

    def test_chat_publishes_echo(self, emulator):
        key = service.issue_key()
        resp = emulator.post(
            "/v1/npcs/npc-7/chat",
            json={"sender_name": "Ana", "sender_message": "hello"},
            headers=auth_header(key),
        )
        assert resp.status_code == 200
        assert resp.json() == {"event_id": "1", "audio_chunks": 0}

        emitted = service.event_log[-1]
        response = ChatResponse.model_validate_json(emitted.data)
        assert response.npc_id == "npc-7"
        assert "hello" in response.message
        assert emitted.event is None

    def test_chat_with_tts_streams_audio_chunks(self, emulator):
        key = service.issue_key()
        resp = emulator.post(
            "/v1/npcs/npc-7/chat",
            json={"sender_message": "hello there", "tts": "server"},
            headers=auth_header(key),
        )
        count = resp.json()["audio_chunks"]
        assert count > 1

        audio = [e for e in service.event_log if e.event == "npc-audio-chunk"]
        assert len(audio) == count
        chunks = [AudioChunk.model_validate_json(e.data) for e in audio]
        assert chunks[0].initial and chunks[0].sample_rate == service.config.EMULATOR_TTS_SAMPLE_RATE
        assert chunks[-1].final
        assert not any(c.initial for c in chunks[1:])
        assert all(len(c.pcm_bytes()) % 2 == 0 for c in chunks)

    def test_chat_requires_key(self, emulator):
        resp = emulator.post("/v1/npcs/npc-7/chat", json={"sender_message": "hi"})
        assert resp.status_code == 401

    def test_stats(self, emulator):
        service.publish(json.dumps({"npc_id": "a", "message": "x"}))
        stats = emulator.get("/stats").json()
        assert stats["total_events_emitted"] == 1
        assert stats["latest_event_id"] == "1"


# ============================================================================
# Replay / fan-out
# ============================================================================

class TestReplay:

    @pytest.fixture(autouse=True)
    def fresh_state(self):
        service.config = Settings(_env_file=None)
        service.reset()
        yield
        service.reset()

    def test_replay_after_last_event_id(self):
        for n in range(3):
            service.publish(json.dumps({"npc_id": "a", "message": str(n)}))
        assert [e.id for e in service.replay_after("1")] == ["2", "3"]
        assert service.replay_after(None) == []
        assert service.replay_after("garbage") == []

    def test_audio_is_replayed_only_to_tts_streams(self):
        service.publish("{}", event="npc-audio-chunk")
        service.publish(json.dumps({"npc_id": "a"}))
        assert [e.id for e in service.replay_after("0")] == ["2"]
        assert [e.id for e in service.replay_after("0", tts_streaming=True)] == ["1", "2"]

    async def test_event_loop_replays_then_streams_then_pings(self):
        service.publish(json.dumps({"npc_id": "a", "message": "old"}))
        subscriber_id, queue = service.subscribe()
        backlog = service.replay_after("0")
        frames = run_event_loop(subscriber_id, queue, backlog, ping_interval_s=0.01)

        assert (await anext(frames))["id"] == "1"
        service.publish(json.dumps({"npc_id": "a", "message": "new"}))
        assert (await anext(frames))["id"] == "2"
        ping = await anext(frames)
        assert ping["event"] == "ping"
        assert ping["id"] == "2"

        await frames.aclose()
        assert service.subscribers == {}

    async def test_audio_fan_out_respects_tts_flag(self):
        _, plain = service.subscribe(tts_streaming=False)
        _, tts = service.subscribe(tts_streaming=True)
        service.publish("{}", event="npc-audio-chunk")
        await asyncio.sleep(0)
        assert plain.qsize() == 0
        assert tts.qsize() == 1
