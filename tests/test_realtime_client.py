"""
Loopback tests for the realtime inference channel.

Tests:
- realtime_channel() connects with the bearer credential and closes on exit
- A closed or unreachable service surfaces as TransportFailure
"""

import json

import pytest
from websockets.asyncio.server import serve

from voicerelay.config import RealtimeConfig
from voicerelay.core.errors import TransportFailure
from voicerelay.infrastructure.realtime_client import realtime_channel


def local_config(server) -> RealtimeConfig:
    port = server.sockets[0].getsockname()[1]
    return RealtimeConfig(url=f"ws://127.0.0.1:{port}", connect_timeout_seconds=2.0)


class TestRealtimeChannel:

    @pytest.mark.asyncio
    async def test_context_manager_connects_and_closes(self):
        headers = {}

        async def handler(connection):
            headers["auth"] = connection.request.headers["Authorization"]
            await connection.send(json.dumps({"type": "session.created"}))
            await connection.wait_closed()

        async with serve(handler, "127.0.0.1", 0) as server:
            async with realtime_channel(local_config(server), "sk-loopback") as channel:
                event = await channel.receive()
                assert channel.is_connected

            assert not channel.is_connected

        assert headers["auth"] == "Bearer sk-loopback"
        assert event == {"type": "session.created"}
        assert channel.total_bytes_received == len('{"type": "session.created"}')

    @pytest.mark.asyncio
    async def test_service_close_is_transport_failure(self):
        async def handler(connection):
            await connection.close()

        async with serve(handler, "127.0.0.1", 0) as server:
            async with realtime_channel(local_config(server), "sk-loopback") as channel:
                with pytest.raises(TransportFailure):
                    await channel.receive()

    @pytest.mark.asyncio
    async def test_unreachable_service(self):
        config = RealtimeConfig(url="ws://127.0.0.1:1", connect_timeout_seconds=1.0)
        with pytest.raises(TransportFailure):
            async with realtime_channel(config, "sk-loopback"):
                pass
