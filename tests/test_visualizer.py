"""
Tests for the Rich dashboard wiring.
"""

from rich.console import Console
from rich.layout import Layout

from conftest import StreamServer, chat_frame
from npc_stream.client.stream_client import StreamState
from npc_stream.client.visualizer import Visualizer
from test_stream_client import make_client


class TestVisualizer:

    async def test_run_collects_responses_and_states(self, test_settings, credentials):
        server = StreamServer([[chat_frame("npc-1", "hello dashboard", id="1")]])
        client = make_client(test_settings, credentials, server)
        visualizer = Visualizer(client, ["npc-1"])

        await visualizer.run()

        assert visualizer.recent_messages[0][1] == "npc-1"
        assert visualizer.recent_messages[0][2] == "hello dashboard"
        assert visualizer.recent_messages[0][4] == "1"
        assert any("stopped" in line for line in visualizer.timeline)
        assert visualizer.failure is not None
        assert client.state is StreamState.STOPPED

    def test_layout_renders(self, test_settings, credentials):
        client = make_client(test_settings, credentials, StreamServer([]))
        visualizer = Visualizer(client, ["npc-1"])
        layout = visualizer.generate_layout()
        assert isinstance(layout, Layout)
        console = Console(record=True, width=120)
        console.print(layout)
        assert "Connection Stats" in console.export_text()
