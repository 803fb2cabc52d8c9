"""
MODULE OVERVIEW:
The Rich Terminal Dashboard for a listening NPC stream.

WHAT IS HAPPENING HERE:
The stream client runs in the background while we redraw a Rich `Layout` four times a
second. We subscribe to the client's `state_changed` and `stream_failed` hooks for the
timeline, and register a response handler per NPC so every delivered message shows up
in the feed next to the resumption point (`Last-Event-Id`) it advanced.
"""
import asyncio
from collections import deque
from datetime import datetime
from typing import Iterable, Optional

from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from npc_stream.client.base_client import StreamState
from npc_stream.client.stream_client import EventStreamClient
from npc_stream.shared.models import ChatResponse

STATE_COLORS = {
    StreamState.STREAMING: "green",
    StreamState.CONNECTING: "yellow",
    StreamState.RECONNECTING: "yellow",
    StreamState.IDLE: "blue",
    StreamState.STOPPED: "red",
}


class Visualizer:
    def __init__(self, client: EventStreamClient, npc_ids: Iterable[str]):
        self.client = client
        self.npc_ids = list(npc_ids)
        self.recent_messages = deque(maxlen=12)
        self.timeline = deque(maxlen=6)
        self.failure: Optional[str] = None

    def on_state_change(self, state: StreamState):
        ts = datetime.now().strftime("%H:%M:%S")
        self.timeline.appendleft(f"[{ts}] State: {state.value}")

    def on_failure(self, error: Exception):
        self.failure = str(error)
        ts = datetime.now().strftime("%H:%M:%S")
        self.timeline.appendleft(f"[{ts}] Failed: {error}")

    def on_response(self, response: ChatResponse):
        ts = datetime.now().strftime("%H:%M:%S")
        message = response.message or ""
        if len(message) > 60:
            message = message[:60] + "..."
        commands = ", ".join(c.name for c in response.command or [])
        self.recent_messages.appendleft((ts, response.npc_id, message, commands, self.client.last_event_id or "-"))

    def generate_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main"),
        )
        layout["main"].split_row(
            Layout(name="left", ratio=2),
            Layout(name="right", ratio=1),
        )
        layout["right"].split_column(
            Layout(name="stats"),
            Layout(name="timeline"),
        )

        state = self.client.state
        color = STATE_COLORS.get(state, "white")
        layout["header"].update(
            Panel(f"[{color} bold]NPC stream | State: {state.value} | NPCs: {', '.join(self.npc_ids)}[/]", style=color)
        )

        table = Table(title="NPC Responses", expand=True)
        table.add_column("Time", justify="left", style="cyan", no_wrap=True)
        table.add_column("NPC", style="magenta")
        table.add_column("Message", style="green")
        table.add_column("Commands", style="yellow")
        table.add_column("Event-Id", style="blue")
        for row in self.recent_messages:
            table.add_row(*row)
        layout["left"].update(Panel(table, title="Feed"))

        stats = self.client.stats
        max_attempts, _ = self.client.reconnection_settings
        stats_text = (
            f"Events Received: {stats['events_received']}\n"
            f"Dispatched: {stats['events_dispatched']}\n"
            f"Pings: {stats['pings_received']}\n"
            f"Dropped: {stats['events_dropped']}\n"
            f"Reconnects: {stats['reconnect_count']} (attempt {self.client.reconnect_attempts}/{max_attempts})\n"
            f"Last-Event-Id: {self.client.last_event_id or 'none'}\n"
            f"Trace-Id: {self.client.trace_id or 'none'}"
        )
        layout["stats"].update(Panel(stats_text, title="Connection Stats"))
        layout["timeline"].update(Panel("\n".join(self.timeline), title="Timeline"))
        return layout

    async def run(self, duration_s: Optional[float] = None):
        self.client.state_changed.subscribe(self.on_state_change)
        self.client.stream_failed.subscribe(self.on_failure)
        for npc_id in self.npc_ids:
            self.client.register(npc_id, self.on_response)

        client_task = asyncio.create_task(self.client.run(duration_s))

        with Live(self.generate_layout(), refresh_per_second=4) as live:
            while not client_task.done():
                live.update(self.generate_layout())
                await asyncio.sleep(0.25)
            live.update(self.generate_layout())
        await client_task
