"""
Audio pipeline.

Captures microphone audio, converts it to the inference wire format, and plays
back audio deltas received from the inference service.

Concurrency boundary:
- Recorder and Player callbacks run on the audio device's own thread
  (PortAudio/sounddevice)
- Each callback hops onto the event loop with loop.call_soon_threadsafe;
  all pipeline state is touched only on the loop

Audio formats:
- Capture: device native rate, float32, any channel count
  -> mono, 24 kHz, 16-bit signed little-endian PCM, base64
- Playback: base64 16-bit PCM @ 24 kHz mono, one scheduled buffer per delta

Capture and playback are mutually exclusive: starting capture stops playback.
"""

import asyncio
import base64
import logging
import threading
from collections import deque
from typing import Callable, Deque, Optional

import numpy as np

from ..config import AudioConfig
from ..debugging.logging_config import TRACE
from ..performance.metrics import get_metrics

logger = logging.getLogger(__name__)

BlockCallback = Callable[[np.ndarray], None]


def to_mono(block: np.ndarray) -> np.ndarray:
    """Mix a (frames, channels) block down to one channel."""
    block = np.asarray(block, dtype=np.float32)
    if block.ndim == 1:
        return block
    if block.shape[1] == 1:
        return block[:, 0]
    return block.mean(axis=1)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resampling of a mono signal."""
    if source_rate == target_rate or len(samples) == 0:
        return samples.astype(np.float32, copy=False)

    duration = len(samples) / source_rate
    target_length = max(1, int(round(duration * target_rate)))
    source_times = np.arange(len(samples)) / source_rate
    target_times = np.arange(target_length) / target_rate
    return np.interp(target_times, source_times, samples).astype(np.float32)


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Quantize [-1, 1] float samples to signed 16-bit little-endian PCM."""
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def pcm16_to_float(pcm: bytes) -> np.ndarray:
    return np.frombuffer(pcm, dtype="<i2").astype(np.float32) / 32768.0


def convert_capture_block(block: np.ndarray, source_rate: int, target_rate: int = 24000) -> bytes:
    """Device-native float32 block -> mono PCM16 at the target rate."""
    return float_to_pcm16(resample(to_mono(block), source_rate, target_rate))


def encode_audio(pcm: bytes) -> str:
    return base64.b64encode(pcm).decode("ascii")


def decode_audio(audio_base64: str) -> bytes:
    """
    Raises:
        ValueError: if the payload is not valid base64 or not whole 16-bit samples.
    """
    pcm = base64.b64decode(audio_base64, validate=True)
    if len(pcm) % 2:
        raise ValueError(f"Audio delta of {len(pcm)} bytes is not 16-bit PCM")
    return pcm


class Recorder:
    """Microphone boundary. Delivers float32 (frames, channels) blocks from a device thread."""

    sample_rate: int = 0

    def start(self, on_block: BlockCallback):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError


class Player:
    """
    Speaker boundary.

    schedule() queues one buffer; on_complete is called (from any thread)
    once the buffer has been played or discarded by stop().
    """

    def schedule(self, pcm: bytes, on_complete: Callable[[], None]):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError

    def resume(self):
        raise NotImplementedError


class SoundDeviceRecorder(Recorder):
    """Recorder on a sounddevice InputStream at the device's native format."""

    def __init__(self, device: Optional[int] = None, block_frames: int = 1024):
        self._device = device
        self._block_frames = block_frames
        self._stream = None
        self._status_count = 0

    def start(self, on_block: BlockCallback):
        import sounddevice as sd

        info = sd.query_devices(self._device, "input")
        self.sample_rate = int(info["default_samplerate"])
        channels = max(1, int(info["max_input_channels"]))

        def callback(indata, frames, time_info, status):
            if status:
                self._status_count += 1
            on_block(indata.copy())

        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            blocksize=self._block_frames,
            dtype="float32",
            channels=channels,
            device=self._device,
            callback=callback,
        )
        self._stream.start()
        logger.info(
            f"Capture started (device={self._device if self._device is not None else 'default'}, "
            f"rate={self.sample_rate}, channels={channels})"
        )

    def stop(self):
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
            logger.info("Capture stopped")


class SoundDevicePlayer(Player):
    """
    Player on a sounddevice OutputStream.

    Scheduled buffers are consumed in order by the output callback, which
    reports each finished buffer through its completion callback.
    """

    def __init__(self, sample_rate: int = 24000, channels: int = 1, device: Optional[int] = None):
        self._sample_rate = sample_rate
        self._channels = channels
        self._device = device
        self._stream = None

        self._lock = threading.Lock()
        self._buffers: Deque[list] = deque()  # [pcm, offset, on_complete]

    def _ensure_stream(self):
        if self._stream is not None:
            return
        import sounddevice as sd

        self._stream = sd.RawOutputStream(
            samplerate=self._sample_rate,
            dtype="int16",
            channels=self._channels,
            device=self._device,
            callback=self._callback,
        )
        self._stream.start()

    def _callback(self, outdata, frames, time_info, status):
        needed = len(outdata)
        written = 0
        finished = []

        with self._lock:
            while written < needed and self._buffers:
                entry = self._buffers[0]
                pcm, offset = entry[0], entry[1]
                take = min(needed - written, len(pcm) - offset)
                outdata[written:written + take] = pcm[offset:offset + take]
                written += take
                entry[1] = offset + take
                if entry[1] >= len(pcm):
                    finished.append(self._buffers.popleft()[2])

        if written < needed:
            # Underrun: silence
            outdata[written:needed] = bytes(needed - written)

        for on_complete in finished:
            on_complete()

    def schedule(self, pcm: bytes, on_complete: Callable[[], None]):
        self._ensure_stream()
        with self._lock:
            self._buffers.append([pcm, 0, on_complete])

    def stop(self):
        with self._lock:
            dropped = [entry[2] for entry in self._buffers]
            self._buffers.clear()
        if self._stream is not None:
            self._stream.stop()
        for on_complete in dropped:
            on_complete()

    def resume(self):
        if self._stream is None:
            self._ensure_stream()
        elif self._stream.stopped:
            self._stream.start()

    def close(self):
        if self._stream is not None:
            self._stream.close()
            self._stream = None


class AudioPipeline:
    """
    Capture -> wire-format conversion, and inbound deltas -> playback.

    Args:
        config: Audio format configuration
        recorder: Microphone boundary
        player: Speaker boundary
        on_capture: Called on the loop with each base64 PCM16 chunk
        on_playback_complete: Called on the loop when the scheduled-buffer
            count returns to zero
    """

    def __init__(
        self,
        config: AudioConfig,
        recorder: Recorder,
        player: Player,
        on_capture: Callable[[str], None],
        on_playback_complete: Optional[Callable[[], None]] = None,
    ):
        self.config = config
        self._recorder = recorder
        self._player = player
        self._on_capture = on_capture
        self._on_playback_complete = on_playback_complete
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._capturing = False
        self._playback_active = False
        self._scheduled_buffers = 0

        # Stats
        self._blocks_captured = 0
        self._bytes_captured = 0
        self._buffers_played = 0
        self._metrics = get_metrics()

    @property
    def capturing(self) -> bool:
        return self._capturing

    @property
    def playback_active(self) -> bool:
        return self._playback_active

    @property
    def scheduled_buffers(self) -> int:
        return self._scheduled_buffers

    def start_capture(self):
        """Start the microphone. Playback is stopped first."""
        if self._capturing:
            return
        self._loop = asyncio.get_running_loop()
        self.stop_playback()
        self._recorder.start(self._capture_from_device)
        self._capturing = True

    def stop_capture(self):
        if not self._capturing:
            return
        self._recorder.stop()
        self._capturing = False

    def _capture_from_device(self, block: np.ndarray):
        # Device thread
        self._loop.call_soon_threadsafe(self._handle_capture_block, block)

    def _handle_capture_block(self, block: np.ndarray):
        if not self._capturing:
            return
        pcm = convert_capture_block(
            block,
            source_rate=self._recorder.sample_rate,
            target_rate=self.config.target_sample_rate,
        )
        self._blocks_captured += 1
        self._bytes_captured += len(pcm)
        self._on_capture(encode_audio(pcm))

    def resume_playback(self):
        """Allow scheduled audio to play (never while capturing)."""
        if self._capturing:
            logger.warning("Refusing to resume playback while capturing")
            return
        self._playback_active = True
        self._player.resume()

    def stop_playback(self):
        """Stop playback and discard scheduled buffers."""
        self._playback_active = False
        self._player.stop()

    def schedule_playback(self, audio_base64: str) -> bool:
        """
        Decode one audio delta and schedule it.

        Returns:
            False when playback is not active and the delta was skipped.
        """
        if not self._playback_active:
            return False

        pcm = decode_audio(audio_base64)
        self._loop = self._loop or asyncio.get_running_loop()
        self._scheduled_buffers += 1
        self._metrics.set_playback_buffers(self._scheduled_buffers)
        self._player.schedule(pcm, self._buffer_finished_from_device)
        logger.log(TRACE, "Scheduled playback buffer: %d bytes, %d pending", len(pcm), self._scheduled_buffers)
        return True

    def _buffer_finished_from_device(self):
        # Device thread (or stop() on the loop thread)
        self._loop.call_soon_threadsafe(self._handle_buffer_finished)

    def _handle_buffer_finished(self):
        if self._scheduled_buffers == 0:
            return
        self._scheduled_buffers -= 1
        self._buffers_played += 1
        self._metrics.set_playback_buffers(self._scheduled_buffers)
        if self._scheduled_buffers == 0:
            logger.debug("Playback complete")
            if self._on_playback_complete is not None:
                self._on_playback_complete()

    def close(self):
        self.stop_capture()
        self.stop_playback()

    def get_stats(self) -> dict:
        return {
            "capturing": self._capturing,
            "playback_active": self._playback_active,
            "scheduled_buffers": self._scheduled_buffers,
            "blocks_captured": self._blocks_captured,
            "bytes_captured": self._bytes_captured,
            "buffers_played": self._buffers_played,
        }
