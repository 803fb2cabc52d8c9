"""
MODULE OVERVIEW:
The FastAPI application for the NPC service emulator.

WHAT IS HAPPENING HERE:
We use a `lifespan` context manager. When Uvicorn starts the server we spawn the
background loops as `asyncio.create_task`: one sweeps expired device grants, and, when
ambient NPCs are configured, one publishes their idle chatter into every open stream.
On shutdown the `finally` half of the lifespan cancels them all.
"""
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from npc_stream.server.dummy_data import ambient_chatter_generator
from npc_stream.server.middleware import TimingMiddleware
from npc_stream.server.routes import login, npcs, responses
from npc_stream.server.service_state import service

# We store our background tasks here so we can cancel them on shutdown.
background_tasks = set()

GRANT_SWEEP_INTERVAL_S = 30.0


async def chatter_runner(generator):
    """Consumes an NPC chatter generator and publishes every response to all streams."""
    try:
        async for response in generator:
            service.publish(response.model_dump_json(exclude_none=True))
    except asyncio.CancelledError:
        logger.debug("Ambient chatter cancelled")
    except Exception as e:
        logger.error(f"Ambient chatter error: {e}")


async def grant_sweeper():
    try:
        while True:
            await asyncio.sleep(GRANT_SWEEP_INTERVAL_S)
            service.expire_grants()
    except asyncio.CancelledError:
        logger.debug("Grant sweeper cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # STARTUP
    logger.info("NPC service emulator starting up...")
    background_tasks.add(asyncio.create_task(grant_sweeper()))

    ambient = service.config.EMULATOR_AMBIENT_NPCS
    if ambient:
        generator = ambient_chatter_generator(ambient, service.config.EMULATOR_AMBIENT_INTERVAL_S)
        background_tasks.add(asyncio.create_task(chatter_runner(generator)))
        logger.info(f"Ambient chatter enabled for NPCs: {', '.join(ambient)}")

    yield

    # SHUTDOWN
    logger.info("Emulator shutting down. Cancelling background tasks...")
    for task in background_tasks:
        task.cancel()
    if background_tasks:
        await asyncio.gather(*background_tasks, return_exceptions=True)
    background_tasks.clear()
    logger.info("Shutdown complete.")


app = FastAPI(
    title="NPC Service Emulator",
    description="Local stand-in for the NPC chat service: device login and response streaming",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(TimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(login.router, tags=["Auth"])
app.include_router(responses.router, tags=["Stream"])
app.include_router(npcs.router, tags=["NPCs"])


@app.get("/stats", tags=["Ops"])
async def get_stats():
    return service.get_stats()
