"""
Environment-based configuration loader.

Loads configuration from environment variables with defaults from config module.
"""

import os
from pathlib import Path
from . import (
    RelayConfig,
    AudioConfig,
    RealtimeConfig,
    TransportConfig,
    LedgerConfig,
    HarnessConfig,
)


def _optional_int(name: str):
    value = os.getenv(name)
    return int(value) if value not in (None, "") else None


def load_config_from_env() -> RelayConfig:
    """
    Load relay configuration from environment variables.

    Environment variables:
        RELAY_HOST                  - Host address the device connects to (default: 127.0.0.1)
        RELAY_BIND_HOST             - Address the host server binds (default: 0.0.0.0)
        RELAY_PORT                  - Transport port (default: 8082)
        RELAY_LOGS_DIR              - Session log directory (default: private/logs)
        RELAY_RESULTS_DIR           - Harness result directory (default: private/test)
        RELAY_CREDENTIAL_PATH       - Credential file forwarded in the handshake
        RELAY_TRANSCRIPT_DIR        - Directory holding *.jsonl conversation transcripts
        RELAY_VERIFY_DELAY          - Seconds to wait after injection (default: 2.0)
        RELAY_VERIFY_WINDOW         - Transcript records inspected (default: 50)
        RELAY_POLL_INTERVAL         - Harness poll interval seconds (default: 0.1)
        RELAY_REALTIME_URL          - Inference service websocket URL
        RELAY_VOICE                 - Inference output voice (default: alloy)
        RELAY_CAPTURE_BLOCK         - Capture block size in frames (default: 1024)
        RELAY_CAPTURE_DEVICE        - Capture device index (default: system)
        RELAY_PLAYBACK_DEVICE       - Playback device index (default: system)
    """
    logs_dir = Path(os.getenv("RELAY_LOGS_DIR", str(LedgerConfig.logs_dir)))

    audio = AudioConfig(
        capture_block_frames=int(os.getenv("RELAY_CAPTURE_BLOCK", 1024)),
        capture_device=_optional_int("RELAY_CAPTURE_DEVICE"),
        playback_device=_optional_int("RELAY_PLAYBACK_DEVICE"),
    )

    realtime = RealtimeConfig(
        url=os.getenv("RELAY_REALTIME_URL", RealtimeConfig.url),
        voice=os.getenv("RELAY_VOICE", RealtimeConfig.voice),
        playback_enabled=os.getenv("RELAY_PLAYBACK", "1") == "1",
    )

    transport = TransportConfig(
        host=os.getenv("RELAY_HOST", TransportConfig.host),
        bind_host=os.getenv("RELAY_BIND_HOST", TransportConfig.bind_host),
        port=int(os.getenv("RELAY_PORT", 8082)),
    )

    ledger = LedgerConfig(
        logs_dir=logs_dir,
        credential_path=Path(os.getenv("RELAY_CREDENTIAL_PATH", str(LedgerConfig.credential_path))),
        transcript_dir=Path(os.getenv("RELAY_TRANSCRIPT_DIR", str(LedgerConfig.transcript_dir))),
        verification_delay_seconds=float(os.getenv("RELAY_VERIFY_DELAY", 2.0)),
        verification_window=int(os.getenv("RELAY_VERIFY_WINDOW", 50)),
    )

    harness = HarnessConfig(
        logs_dir=logs_dir,
        results_dir=Path(os.getenv("RELAY_RESULTS_DIR", str(HarnessConfig.results_dir))),
        poll_interval_seconds=float(os.getenv("RELAY_POLL_INTERVAL", 0.1)),
    )

    return RelayConfig(
        audio=audio,
        realtime=realtime,
        transport=transport,
        ledger=ledger,
        harness=harness,
    )
