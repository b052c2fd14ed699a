"""
Host side of the device <-> host transport.

A TCP server that accepts one device connection at a time. Frames from that
connection are handled strictly in arrival order by a single reader: each
handler (including prompt injection + verification) completes before the next
frame is read. Acks are written only after the record is durably appended.

Any malformed frame, stream error or unexpected handler error is fatal: the
failure is surfaced from serve_forever() so the supervisor terminates the
host process.
"""

import asyncio
import logging
from typing import Optional

from ..config import TransportConfig
from ..core.errors import FatalError, ProtocolViolation, TransportFailure
from ..core.models import LogRecord, PromptEnvelope
from ..ledger.session_ledger import SessionLedger
from ..ledger.verifier import PromptRelay
from ..performance.metrics import get_metrics
from .protocol import Direction, ack_message, decode_message, encode_message

logger = logging.getLogger(__name__)


class TransportServer:
    """
    Single-connection newline-delimited JSON server.

    Usage:
        server = TransportServer(config, ledger, relay)
        await server.start()
        await server.serve_forever()   # raises on the first fatal error
    """

    def __init__(self, config: TransportConfig, ledger: SessionLedger, relay: PromptRelay):
        self._config = config
        self._ledger = ledger
        self._relay = relay
        self._metrics = get_metrics()

        self._server: Optional[asyncio.AbstractServer] = None
        self._failure: Optional[asyncio.Future] = None
        self._connection_active = False
        self._active_writer: Optional[asyncio.StreamWriter] = None
        self._connections_served = 0

    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""
        if self._server is None or not self._server.sockets:
            return self._config.port
        return self._server.sockets[0].getsockname()[1]

    @property
    def connections_served(self) -> int:
        return self._connections_served

    async def start(self):
        self._failure = asyncio.get_running_loop().create_future()
        self._server = await asyncio.start_server(
            self._handle_connection,
            host=self._config.bind_host,
            port=self._config.port,
            limit=self._config.max_line_bytes,
        )
        logger.info("Host server listening on %s:%d", self._config.bind_host, self.port)
        logger.info("Logs directory: %s", self._ledger.logs_dir)
        logger.info("Existing sessions: %d", self._ledger.session_count())

    async def serve_forever(self):
        """Wait until a fatal error occurs on a connection, then raise it."""
        if self._failure is None:
            raise RuntimeError("TransportServer.start() must be awaited first")
        await self._failure

    async def stop(self):
        if self._active_writer is not None:
            self._active_writer.close()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Host server stopped")
        if self._failure and not self._failure.done():
            self._failure.cancel()

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info("peername")

        if self._connection_active:
            logger.warning("Refusing second connection from %s: one device connection at a time", peer)
            writer.close()
            await writer.wait_closed()
            return

        self._connection_active = True
        self._active_writer = writer
        self._connections_served += 1
        logger.info("Device connected from %s", peer)

        try:
            await self._read_loop(reader, writer)
            logger.info("Device disconnected")
        except FatalError as e:
            logger.critical("Fatal error on device connection: %s", e)
            self._fail(e)
        except Exception as e:
            logger.critical("Unexpected error on device connection: %s", e, exc_info=True)
            self._fail(e)
        finally:
            self._connection_active = False
            self._active_writer = None
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    def _fail(self, error: BaseException):
        if self._failure and not self._failure.done():
            self._failure.set_exception(error)

    async def _read_loop(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        while True:
            try:
                line = await reader.readline()
            except (asyncio.LimitOverrunError, ValueError) as e:
                raise ProtocolViolation(f"Frame exceeds {self._config.max_line_bytes} bytes: {e}")
            except ConnectionError as e:
                raise TransportFailure(f"Connection error: {e}")

            if not line:
                return
            if not line.endswith(b"\n"):
                raise TransportFailure(f"Connection closed mid-frame: {line[:200]!r}")
            if not line.strip():
                continue

            message = decode_message(line, Direction.CLIENT_TO_SERVER)
            self._metrics.record_transport_message(message["type"], "in")
            await self._dispatch(message, writer)

    async def _dispatch(self, message: dict, writer: asyncio.StreamWriter):
        msg_type = message["type"]

        if msg_type == "start":
            await self._handle_start(writer)
        elif msg_type in ("log", "error"):
            await self._handle_record(message, writer)
        elif msg_type == "prompt":
            await self._handle_prompt(message, writer)
        else:
            # decode_message only lets client->server types through
            raise ProtocolViolation(f"No handler for message type {msg_type!r}")

    async def _handle_start(self, writer: asyncio.StreamWriter):
        # No session is allocated unless the handshake can be completed
        credential = self._ledger.read_credential()
        stats = self._ledger.start_session()
        await self._send(writer, stats.to_handshake(credential))
        logger.info(
            "Sent handshake with session number %d (total=%dms, today=%dms, logs=%d)",
            stats.session_number, stats.total_uptime_ms, stats.today_uptime_ms, stats.total_logs,
        )

    async def _handle_record(self, message: dict, writer: asyncio.StreamWriter):
        record = LogRecord.from_message(message)
        if record.is_error:
            logger.error(
                "ERROR: %s [%s:%s] - test will fail",
                record.message, record.origin_file, record.origin_function,
            )
        else:
            logger.info("Received log: %s", record.message)

        self._ledger.append(record.to_message())
        await self._send(writer, ack_message(record.id))

    async def _handle_prompt(self, message: dict, writer: asyncio.StreamWriter):
        envelope = PromptEnvelope.from_message(message)
        ack = await self._relay.handle(envelope)
        await self._send(writer, ack.to_message())
        logger.info("Sent %s acknowledgment for prompt", ack.status.value)

    async def _send(self, writer: asyncio.StreamWriter, message: dict):
        try:
            writer.write(encode_message(message))
            await writer.drain()
        except ConnectionError as e:
            raise TransportFailure(f"Failed to send {message['type']}: {e}")
        self._metrics.record_transport_message(message["type"], "out")
