"""
Device side of the device <-> host transport.

One persistent TCP stream to the host carrying newline-delimited JSON. The
client opens a session (start -> handshake), then runs two loops:

- writer: drains the outbound queue (telemetry records and prompts) in
  submission order; each record enters the TransmissionRecord when written
- reader: handles acks and prompt_acks from the host

Records submitted before the handshake wait in the outbound queue and are
flushed once the writer starts. Only one prompt may be outstanding at a time.

There is no reconnect. Any malformed frame, stream error, or EOF from the
host is fatal.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from ..config import TransportConfig
from ..core.errors import ProtocolViolation, TransportFailure
from ..core.models import LogRecord, PromptAck, PromptEnvelope, SessionStats, TransmissionRecord
from ..core.telemetry import Telemetry
from ..performance.metrics import get_metrics
from .protocol import Direction, decode_message, encode_message, start_message

logger = logging.getLogger(__name__)


class TransportClient:
    """
    Usage:
        client = TransportClient(config, telemetry)
        telemetry.attach(client.submit)
        await client.connect()
        stats = await client.start()
        await client.run()   # returns only by raising
    """

    def __init__(
        self,
        config: TransportConfig,
        telemetry: Optional[Telemetry] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._telemetry = telemetry
        self._clock = clock

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._outbound: asyncio.Queue = asyncio.Queue()

        self._stats: Optional[SessionStats] = None
        self._credential: Optional[str] = None
        self._transmission = TransmissionRecord()
        self._first_record_timestamp: Optional[float] = None

        self._pending_prompt: Optional[asyncio.Future] = None
        self._metrics = get_metrics()

    @property
    def stats(self) -> Optional[SessionStats]:
        return self._stats

    @property
    def credential(self) -> Optional[str]:
        return self._credential

    @property
    def transmission(self) -> TransmissionRecord:
        return self._transmission

    @property
    def prompt_outstanding(self) -> bool:
        return self._pending_prompt is not None and not self._pending_prompt.done()

    @property
    def session_elapsed_ms(self) -> int:
        """Time from the session's first record to the most recently acked one."""
        last = self._transmission.last_acked
        if last is None or self._first_record_timestamp is None:
            return 0
        return max(0, int((last.timestamp - self._first_record_timestamp) * 1000))

    @property
    def today_uptime_ms(self) -> int:
        base = self._stats.today_uptime_ms if self._stats else 0
        return base + self.session_elapsed_ms

    @property
    def total_uptime_ms(self) -> int:
        base = self._stats.total_uptime_ms if self._stats else 0
        return base + self.session_elapsed_ms

    async def connect(self):
        """
        Raises:
            TransportFailure: if the host cannot be reached.
        """
        host, port = self.config.host, self.config.port
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=self.config.max_line_bytes),
                timeout=self.config.connect_timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportFailure(f"Failed to connect to host at {host}:{port}: {e}")
        logger.info(f"Connected to host at {host}:{port}")

    async def start(self) -> SessionStats:
        """Open a session: send start and wait for the handshake."""
        await self._write(start_message())
        message = await self._read_message()
        if message["type"] != "handshake":
            raise ProtocolViolation(f"Expected handshake, got {message['type']!r}")

        self._stats = SessionStats.from_handshake(message)
        self._credential = message["credential"]
        logger.info(
            f"Session {self._stats.session_number} started "
            f"(total={self._stats.total_uptime_ms}ms, today={self._stats.today_uptime_ms}ms, "
            f"logs={self._stats.total_logs})"
        )
        if self._telemetry is not None:
            self._telemetry.log("Successful handshake")
        return self._stats

    def submit(self, record: LogRecord):
        """Queue a telemetry record for delivery."""
        self._outbound.put_nowait(record)

    def send_prompt(self, envelope: PromptEnvelope) -> asyncio.Future:
        """
        Queue a prompt for injection on the host.

        Returns:
            A future resolved with the host's PromptAck.
        """
        if self.prompt_outstanding:
            raise RuntimeError("A prompt is already awaiting its acknowledgment")
        self._pending_prompt = asyncio.get_running_loop().create_future()
        self._outbound.put_nowait(envelope)
        return self._pending_prompt

    async def run(self):
        """Run reader and writer until one of them fails, then raise that failure."""
        tasks = [
            asyncio.create_task(self.writer_loop(), name="transport-writer"),
            asyncio.create_task(self.reader_loop(), name="transport-reader"),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                task.result()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def writer_loop(self):
        while True:
            item = await self._outbound.get()
            if isinstance(item, LogRecord):
                self._transmission.mark_sent(item)
                if self._first_record_timestamp is None:
                    self._first_record_timestamp = item.timestamp
                await self._write(item.to_message())
                self._metrics.set_unacked_records(self._transmission.pending_count)
            else:
                await self._write(item.to_message())
                logger.info(f"Sent prompt to host ({len(item.text)} chars)")

    async def reader_loop(self):
        while True:
            message = await self._read_message()
            msg_type = message["type"]

            if msg_type == "ack":
                self._transmission.mark_acked(message["logId"])
                self._metrics.set_unacked_records(self._transmission.pending_count)
            elif msg_type == "prompt_ack":
                self._resolve_prompt(PromptAck.from_message(message))
            else:
                raise ProtocolViolation(f"Unexpected {msg_type!r} message after handshake")

    def _resolve_prompt(self, ack: PromptAck):
        if not self.prompt_outstanding:
            raise ProtocolViolation(f"prompt_ack with no outstanding prompt: {ack.original_prompt!r}")
        logger.info(f"Prompt acknowledged by host: {ack.status.value}")
        self._pending_prompt.set_result(ack)

    async def _read_message(self) -> dict:
        if self._reader is None:
            raise TransportFailure("Not connected to host")
        try:
            line = await self._reader.readline()
        except (asyncio.LimitOverrunError, ValueError) as e:
            raise ProtocolViolation(f"Frame exceeds {self.config.max_line_bytes} bytes: {e}")
        except ConnectionError as e:
            raise TransportFailure(f"Connection to host failed: {e}")

        if not line:
            raise TransportFailure("Host closed the connection")
        if not line.endswith(b"\n"):
            raise TransportFailure(f"Host closed the connection mid-frame: {line[:200]!r}")

        message = decode_message(line, Direction.SERVER_TO_CLIENT)
        self._metrics.record_transport_message(message["type"], "in")
        return message

    async def _write(self, message: dict):
        if self._writer is None:
            raise TransportFailure("Not connected to host")
        try:
            self._writer.write(encode_message(message))
            await self._writer.drain()
        except ConnectionError as e:
            raise TransportFailure(f"Failed to send {message['type']} to host: {e}")
        self._metrics.record_transport_message(message["type"], "out")

    async def close(self):
        if self.prompt_outstanding:
            self._pending_prompt.set_exception(TransportFailure("Transport closed with a prompt outstanding"))
            # Retrieve it so an unawaited future doesn't warn
            self._pending_prompt.exception()
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except ConnectionError:
                pass
            self._writer = None
            self._reader = None
            logger.info(
                f"Disconnected from host ({self._transmission.acked_count}/"
                f"{len(self._transmission)} records acknowledged)"
            )
