"""
CLI entrypoint for the NPC stream client and its local service emulator.
"""
import asyncio
import sys
from typing import List, Optional

import httpx
import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel

from npc_stream.client.auth_client import DeviceAuthClient
from npc_stream.client.credentials import SessionCredentials
from npc_stream.client.stream_client import EventStreamClient
from npc_stream.client.visualizer import Visualizer
from npc_stream.shared.client_utils import mask_secret
from npc_stream.shared.config import settings
from npc_stream.shared.errors import AuthError
from npc_stream.shared.models import ChatRequest, ChatResponse

app = typer.Typer(help="NPC stream: device login, response streaming and a local service emulator")
console = Console()


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


@app.callback()
def main(log_level: str = typer.Option(settings.LOG_LEVEL, help="Log level for stderr output")):
    configure_logging(log_level)


def _show_verification(uri: str) -> None:
    console.print(Panel(f"Open this URL to approve the login:\n[bold cyan]{uri}[/]", title="Device login"))
    if typer.confirm("Open it in your browser now?", default=True):
        typer.launch(uri)


async def _login(credentials: SessionCredentials) -> str:
    async with DeviceAuthClient(credentials) as auth:
        auth.state_changed.subscribe(lambda state: logger.debug(f"Auth state: {state.value}"))
        key = await auth.authenticate(open_uri=_show_verification)
    credentials.set_credential(key)
    return key


@app.command()
def login():
    """Run the device-authorization flow and print the (masked) API key."""
    credentials = SessionCredentials.from_settings()
    try:
        key = asyncio.run(_login(credentials))
    except AuthError as e:
        console.print(f"[red bold]Login failed:[/] {e.reason}")
        raise typer.Exit(1)
    if credentials.is_bypass_active():
        console.print("[green]Hosted mode: no API key needed.[/]")
    else:
        console.print(f"[green]Logged in.[/] API key: {mask_secret(key)}")
        console.print("Set API_KEY in your environment or .env to skip the login next time.")


async def _listen(npc_ids: List[str], duration: Optional[float], dashboard: bool) -> None:
    credentials = SessionCredentials.from_settings()
    if not credentials.get_credential() and not credentials.is_bypass_active():
        await _login(credentials)

    async with EventStreamClient(credentials) as stream:
        if dashboard:
            await Visualizer(stream, npc_ids).run(duration)
            return

        def print_response(response: ChatResponse):
            console.print(f"[magenta]{response.npc_id}[/]: {response.message or ''}")
            for command in response.command or []:
                console.print(f"  [yellow]command[/] {command.name}({command.arguments})")

        for npc_id in npc_ids:
            stream.register(npc_id, print_response)
        await stream.run(duration)


@app.command()
def listen(
    npc: List[str] = typer.Option(..., "--npc", help="NPC id to subscribe to (repeatable)"),
    duration: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    dashboard: bool = typer.Option(True, help="Show the live Rich dashboard instead of plain output"),
):
    """Open the response stream and show what the NPCs say."""
    try:
        asyncio.run(_listen(npc, duration, dashboard))
    except AuthError as e:
        console.print(f"[red bold]Login failed:[/] {e.reason}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass


@app.command()
def chat(
    npc_id: str = typer.Argument(..., help="NPC to talk to"),
    text: str = typer.Argument(..., help="What the player says"),
    sender: str = typer.Option("Player", help="Sender name"),
    tts: bool = typer.Option(False, help="Ask for streamed speech with the reply"),
):
    """Send a chat message to an NPC; the reply arrives on the response stream."""
    credentials = SessionCredentials.from_settings()
    request = ChatRequest(sender_name=sender, sender_message=text, tts="server" if tts else None)
    headers = {}
    if credentials.get_credential() and not credentials.is_bypass_active():
        headers["Authorization"] = f"Bearer {credentials.get_credential()}"

    try:
        resp = httpx.post(
            f"{credentials.get_base_url()}/npcs/{npc_id}/chat",
            json=request.model_dump(exclude_none=True),
            headers=headers,
            timeout=settings.HTTP_TIMEOUT_S,
        )
    except httpx.HTTPError as e:
        console.print(f"[red bold]Request failed:[/] {e}")
        raise typer.Exit(1)
    if not resp.is_success:
        console.print(f"[red bold]HTTP {resp.status_code}:[/] {resp.text}")
        raise typer.Exit(1)
    typer.echo(resp.json())


@app.command()
def server():
    """Start the service emulator using Uvicorn."""
    import uvicorn
    typer.echo(f"Starting emulator on port {settings.PORT}...")
    uvicorn.run("npc_stream.server.main:app", host="0.0.0.0", port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    app()
