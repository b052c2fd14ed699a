"""
Test Fixtures for voicerelay

Fakes and helpers for unit and integration tests:
- Fake inference channel (scripted inbound events, recorded outbound events)
- Fake recorder / player (no audio hardware)
- Fake transport (prompt round trips resolved by the test)
- Recording injector and transcript writer (no Terminal, no osascript)
- Synthetic audio and session-log records
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import numpy as np

from ..core.audio_io import Player, Recorder
from ..core.models import LogRecord, LogType, PromptAck, PromptEnvelope
from ..infrastructure.realtime_client import RealtimeChannel
from ..ledger.injector import InjectionResult, TerminalInjector


# ── Synthetic audio ──

def sine_block(
    duration_ms: int,
    sample_rate: int = 48000,
    channels: int = 1,
    frequency_hz: float = 440.0,
    amplitude: float = 0.5,
) -> np.ndarray:
    """A float32 (frames, channels) block like a device input callback delivers."""
    frames = sample_rate * duration_ms // 1000
    t = np.arange(frames, dtype=np.float64) / sample_rate
    tone = (amplitude * np.sin(2 * np.pi * frequency_hz * t)).astype(np.float32)
    return np.repeat(tone[:, None], channels, axis=1)


def pcm16_tone(duration_ms: int, sample_rate: int = 24000, frequency_hz: float = 440.0) -> bytes:
    """Mono 16-bit PCM tone, the format of inbound audio deltas."""
    frames = sample_rate * duration_ms // 1000
    t = np.arange(frames, dtype=np.float64) / sample_rate
    return (0.5 * 32767 * np.sin(2 * np.pi * frequency_hz * t)).astype("<i2").tobytes()


# ── Inference channel ──

class FakeRealtimeChannel(RealtimeChannel):
    """Scripted inference channel. push() queues inbound events; sent keeps outbound ones."""

    def __init__(self):
        self.sent: List[dict] = []
        self._inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, event):
        """Queue an inbound event (or an exception to raise from receive())."""
        self._inbound.put_nowait(event)

    async def send(self, event: dict):
        self.sent.append(event)

    async def receive(self) -> dict:
        item = await self._inbound.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self):
        self.closed = True

    def sent_types(self, include_audio: bool = False) -> List[str]:
        return [
            e["type"] for e in self.sent
            if include_audio or e["type"] != "input_audio_buffer.append"
        ]

    def sent_of_type(self, event_type: str) -> List[dict]:
        return [e for e in self.sent if e["type"] == event_type]


# ── Audio hardware ──

class FakeRecorder(Recorder):
    def __init__(self, sample_rate: int = 48000):
        self.sample_rate = sample_rate
        self._on_block: Optional[Callable] = None
        self.start_count = 0

    @property
    def running(self) -> bool:
        return self._on_block is not None

    def start(self, on_block):
        self._on_block = on_block
        self.start_count += 1

    def stop(self):
        self._on_block = None

    def feed(self, block: np.ndarray):
        """Deliver a block as if from the device thread."""
        if self._on_block is not None:
            self._on_block(block)


class FakePlayer(Player):
    def __init__(self):
        self.scheduled: List[Tuple[bytes, Callable[[], None]]] = []
        self.played: List[bytes] = []
        self.playing = False
        self.stop_count = 0

    def schedule(self, pcm: bytes, on_complete: Callable[[], None]):
        self.scheduled.append((pcm, on_complete))

    def finish_all(self):
        """Play every scheduled buffer to completion."""
        scheduled, self.scheduled = self.scheduled, []
        for pcm, on_complete in scheduled:
            self.played.append(pcm)
            on_complete()

    def stop(self):
        self.playing = False
        self.stop_count += 1
        dropped, self.scheduled = self.scheduled, []
        for _, on_complete in dropped:
            on_complete()

    def resume(self):
        self.playing = True


# ── Transport ──

class FakeTransport:
    """Stands in for TransportClient.send_prompt; the test resolves each prompt."""

    def __init__(self):
        self.prompts: List[PromptEnvelope] = []
        self._futures: List[asyncio.Future] = []

    def send_prompt(self, envelope: PromptEnvelope) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self.prompts.append(envelope)
        self._futures.append(future)
        return future

    def resolve(self, ack: Optional[PromptAck] = None):
        """Resolve the oldest unresolved prompt (success by default)."""
        for envelope, future in zip(self.prompts, self._futures):
            if not future.done():
                future.set_result(ack or PromptAck.success(envelope.text))
                return
        raise AssertionError("No outstanding prompt to resolve")


# ── Host side ──

def transcript_line(text: str, role: str = "user") -> str:
    """One transcript record in the conversation-log layout the verifier reads."""
    return json.dumps({
        "type": role,
        "message": {"role": role, "content": text},
        "timestamp": time.time(),
    })


class TranscriptWriter:
    """Appends records to a transcript file under a transcript directory."""

    def __init__(self, directory: Path, name: str = "session.jsonl"):
        self.path = Path(directory) / name
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, text: str, role: str = "user"):
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(transcript_line(text, role) + "\n")


class RecordingInjector(TerminalInjector):
    """
    Records injected text. When given a TranscriptWriter it also appends the
    text to the transcript, like a terminal session that received it.
    """

    def __init__(self, writer: Optional[TranscriptWriter] = None, result: Optional[InjectionResult] = None):
        self.injected: List[str] = []
        self._writer = writer
        self._result = result or InjectionResult(success=True)

    async def inject(self, text: str) -> InjectionResult:
        self.injected.append(text)
        if self._writer is not None and self._result.success:
            # the terminal receives the text with escapes already interpreted
            self._writer.append(text.replace("\\\\", "\\"))
        return self._result


async def no_sleep(_seconds: float):
    """Drop-in for asyncio.sleep that returns at once."""


def make_record(message: str, timestamp: float, log_type: LogType = LogType.LOG) -> LogRecord:
    return LogRecord(
        type=log_type,
        message=message,
        origin_file="controller.py",
        origin_function="handle_event",
        timestamp=timestamp,
    )


def write_session_log(path: Path, records: List[LogRecord]):
    """Write records as a session log (one JSON object per line)."""
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record.to_message()) + "\n")
