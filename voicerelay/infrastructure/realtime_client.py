"""
Realtime inference channel client.

A single persistent WebSocket to the streaming inference service carrying
JSON events in both directions. The bearer credential comes from the host
handshake. There is no reconnect: a closed or failed channel is a
TransportFailure and ends the device process.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..config import RealtimeConfig
from ..core.errors import TransportFailure
from ..core.formatting import format_bytes
from ..core.realtime_events import parse_event
from ..performance.metrics import get_metrics

logger = logging.getLogger(__name__)


class RealtimeChannel:
    """Interface of the inference channel used by the controller."""

    async def send(self, event: dict):
        raise NotImplementedError

    async def receive(self) -> dict:
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class WebSocketRealtimeChannel(RealtimeChannel):
    """
    Realtime channel over `websockets`.

    Tracks total bytes sent and received for debug output.
    """

    def __init__(self, config: RealtimeConfig, credential: str):
        self.config = config
        self._credential = credential
        self._ws: Optional[ClientConnection] = None
        self._metrics = get_metrics()

        self.total_bytes_sent: int = 0
        self.total_bytes_received: int = 0

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    async def connect(self):
        """
        Open the WebSocket.

        Raises:
            TransportFailure: if the connection or upgrade fails.
        """
        headers = {"Authorization": f"Bearer {self._credential}"}
        try:
            self._ws = await connect(
                self.config.url,
                additional_headers=headers,
                open_timeout=self.config.connect_timeout_seconds,
                max_size=None,
            )
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as e:
            raise TransportFailure(f"Failed to connect to inference service at {self.config.url}: {e}")

        self.total_bytes_sent = 0
        self.total_bytes_received = 0
        logger.info(f"Connected to inference service at {self.config.url}")

    async def send(self, event: dict):
        if self._ws is None:
            raise TransportFailure("WebSocket not connected - cannot send event")

        text = json.dumps(event)
        size = len(text.encode("utf-8"))
        event_type = event.get("type", "unknown")

        try:
            await self._ws.send(text)
        except ConnectionClosed as e:
            raise TransportFailure(f"Failed to send {event_type}: {e}")

        self.total_bytes_sent += size
        self._metrics.record_inference_bytes("sent", size)
        if event_type != "input_audio_buffer.append":
            logger.debug(
                f"Sent {event_type}: {format_bytes(size)} "
                f"(total: {format_bytes(self.total_bytes_sent)})"
            )

    async def receive(self) -> dict:
        """
        Wait for the next event.

        Raises:
            TransportFailure: when the channel closes (cleanly or not).
            ProtocolViolation: when the frame is not a typed JSON object.
        """
        if self._ws is None:
            raise TransportFailure("WebSocket not connected - cannot receive")

        try:
            frame = await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportFailure(f"WebSocket disconnected: {e}")

        size = len(frame) if isinstance(frame, bytes) else len(frame.encode("utf-8"))
        self.total_bytes_received += size
        self._metrics.record_inference_bytes("received", size)

        event = parse_event(frame)
        logger.debug(
            f"Received {event['type']}: {format_bytes(size)} "
            f"(total: {format_bytes(self.total_bytes_received)})"
        )
        return event

    async def close(self):
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
            logger.info(
                f"Inference channel closed (sent {format_bytes(self.total_bytes_sent)}, "
                f"received {format_bytes(self.total_bytes_received)})"
            )


@asynccontextmanager
async def realtime_channel(config: RealtimeConfig, credential: str):
    """
    Context manager for a connected realtime channel.

    Usage:
        async with realtime_channel(config, credential) as channel:
            await channel.send(event)
    """
    channel = WebSocketRealtimeChannel(config, credential)
    await channel.connect()
    try:
        yield channel
    finally:
        await channel.close()
