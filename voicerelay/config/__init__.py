"""
voicerelay Configuration Module

Manages all configuration settings for the relay processes including:
- Audio format settings (capture conversion target, playback format)
- Inference service (realtime channel) settings
- Device <-> host transport settings
- Host session ledger and prompt verification settings
- Verification harness settings
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple


@dataclass(frozen=True)
class AudioConfig:
    """Audio format configuration for capture and playback."""
    # Wire format towards the inference service (capture is converted to this)
    target_sample_rate: int = 24000  # Hz
    target_bit_depth: int = 16  # signed integer
    target_channels: int = 1  # mono

    # Playback format of inbound audio deltas
    playback_sample_rate: int = 24000  # Hz
    playback_channels: int = 1

    # Capture block size at the device's native rate
    capture_block_frames: int = 1024

    # Device selection (None = system default)
    capture_device: Optional[int] = None
    playback_device: Optional[int] = None

    @property
    def bytes_per_sample(self) -> int:
        return self.target_bit_depth // 8


@dataclass(frozen=True)
class RealtimeConfig:
    """Configuration for the streaming inference service channel."""
    url: str = "wss://api.openai.com/v1/realtime?model=gpt-realtime"
    connect_timeout_seconds: float = 60.0

    # Session configuration sent on session.created
    instructions: str = "You are a helpful assistant."
    voice: str = "alloy"
    speech_speed: float = 1.0

    # Server-side voice activity detection
    vad_threshold: float = 0.5
    vad_prefix_padding_ms: int = 300
    vad_silence_duration_ms: int = 200

    # Prompt extraction function tool
    prompt_tool_name: str = "createPrompt"
    prompt_tool_description: str = "Create prompt formatted as numbered task list"
    prompt_field_description: str = (
        "User's request formatted as numbered task list with no filler words"
    )
    extraction_instructions: str = (
        "The user just spoke. Extract what they said and call createPrompt function.\n"
        "Format as numbered task list:\n"
        "1. First task\n"
        "2. Second task\n"
        "3. Third task\n"
        "\n"
        "Keep it concise and action-oriented. Remove filler words."
    )
    outcome_instructions: str = (
        "Briefly tell the user whether their prompt reached the terminal, "
        "based on the latest function call result."
    )
    prompt_category: str = "general"

    # Playback toggle state at startup
    playback_enabled: bool = True


@dataclass(frozen=True)
class TransportConfig:
    """Device <-> host duplex stream settings."""
    host: str = "127.0.0.1"
    bind_host: str = "0.0.0.0"
    port: int = 8082
    max_line_bytes: int = 16 * 1024 * 1024  # audio-free JSON lines, generous limit
    connect_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class LedgerConfig:
    """Host-side session ledger and prompt verification settings."""
    logs_dir: Path = Path("private") / "logs"
    credential_path: Path = Path("private") / "secrets.txt"
    fsync_records: bool = True

    # Prompt verification against the external transcript source
    # Conversation folder of the terminal session started in the working directory
    transcript_dir: Path = Path.home() / ".claude" / "projects" / str(Path.cwd()).replace("/", "-")
    transcript_suffix: str = ".jsonl"
    verification_delay_seconds: float = 2.0
    verification_window: int = 50  # most recent records inspected

    # Terminal injector (AppleScript keystrokes)
    injector_app: str = "Terminal"
    injector_return_delay_seconds: float = 1.0


@dataclass(frozen=True)
class HarnessConfig:
    """Verification harness settings."""
    logs_dir: Path = Path("private") / "logs"
    results_dir: Path = Path("private") / "test"
    poll_interval_seconds: float = 0.1
    milestones: Tuple[str, ...] = ("Successful handshake", "Model responded")


@dataclass(frozen=True)
class RelayConfig:
    """Complete relay configuration."""
    audio: AudioConfig = field(default_factory=AudioConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    harness: HarnessConfig = field(default_factory=HarnessConfig)


# Default configuration instance
default_relay_config = RelayConfig()


def load_config_from_env() -> RelayConfig:
    """Load configuration from environment variables."""
    from .settings import load_config_from_env as _load
    return _load()
