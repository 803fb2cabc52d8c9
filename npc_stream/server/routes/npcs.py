from typing import Optional

from fastapi import APIRouter, Header
from loguru import logger

from npc_stream.server.dummy_data import echo_response, tone_chunks
from npc_stream.server.route_utils import require_stream_access
from npc_stream.server.service_state import service
from npc_stream.shared.models import AUDIO_CHUNK_EVENTS, ChatRequest

router = APIRouter(prefix="/v1")


@router.post("/npcs/{npc_id}/chat")
async def chat(npc_id: str, body: ChatRequest, authorization: Optional[str] = Header(None)):
    """
    Echo the player's message back through every open response stream.
    With `tts: "server"` the reply is followed by streamed speech chunks, which only
    streams opened with `tts-streaming=true` receive.
    """
    require_stream_access(authorization)

    response = echo_response(npc_id, body.sender_name, body.sender_message)
    emitted = service.publish(response.model_dump_json(exclude_none=True))
    audio_chunks = 0
    if body.tts == "server":
        for chunk in tone_chunks(npc_id, body.sender_message, service.config.EMULATOR_TTS_SAMPLE_RATE):
            service.publish(chunk.model_dump_json(), event=AUDIO_CHUNK_EVENTS[0])
            audio_chunks += 1

    logger.info(f"protocol=chat npc_id={npc_id} event_id={emitted.id} audio_chunks={audio_chunks}")
    return {"event_id": emitted.id, "audio_chunks": audio_chunks}
