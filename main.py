#!/usr/bin/env python3
"""
voicerelay - spoken prompts relayed into a terminal

Main entry point. Runs one of the three relay processes.

Usage:
    python main.py host                     # Host: session ledger + prompt injection
    python main.py device                   # Device: microphone, inference, transport client
    python main.py harness                  # Verification harness for new sessions
    python main.py device --host 10.0.0.5   # Connect to a remote host
    python main.py host --metrics           # Enable Prometheus metrics on :9090
    python main.py harness --debug          # Verbose, human-readable logs

Device console commands (stdin):
    m          toggle microphone
    mic on|off set microphone
    p on|off   set playback
    q          quit
"""

import argparse
import asyncio
import dataclasses
import logging
import os
import signal
import sys
from pathlib import Path

from voicerelay.config import RelayConfig, load_config_from_env
from voicerelay.core.controller import SpeechSessionController
from voicerelay.core.errors import FatalError
from voicerelay.core.formatting import format_duration_ms
from voicerelay.core.audio_io import SoundDevicePlayer, SoundDeviceRecorder
from voicerelay.core.supervisor import Supervisor
from voicerelay.core.telemetry import Telemetry
from voicerelay.debugging.logging_config import configure_logging
from voicerelay.harness.harness import TestHarness
from voicerelay.infrastructure.realtime_client import realtime_channel
from voicerelay.ledger.injector import AppleScriptInjector
from voicerelay.ledger.session_ledger import SessionLedger
from voicerelay.ledger.verifier import PromptRelay, TranscriptVerifier
from voicerelay.performance.metrics import get_metrics
from voicerelay.transport.client import TransportClient
from voicerelay.transport.server import TransportServer

logger = logging.getLogger("voicerelay.main")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="voicerelay - spoken prompts relayed into a terminal")
    parser.add_argument(
        "role",
        choices=("device", "host", "harness"),
        help="Which process to run",
    )
    parser.add_argument("--host", type=str, default=None, help="Host address the device connects to")
    parser.add_argument("--port", type=int, default=None, help="Transport port (default: 8082)")
    parser.add_argument("--logs-dir", type=str, default=None, help="Session log directory")
    parser.add_argument("--results-dir", type=str, default=None, help="Harness result directory")
    parser.add_argument("--transcript-dir", type=str, default=None, help="Conversation transcript directory")
    parser.add_argument(
        "--no-playback",
        action="store_true",
        help="Start with response audio playback disabled (device)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose, human-readable logging)",
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Enable Prometheus metrics server on :9090",
    )
    return parser.parse_args(argv)


def apply_overrides(config: RelayConfig, args: argparse.Namespace) -> RelayConfig:
    """CLI flags take precedence over environment configuration."""
    transport = config.transport
    if args.host:
        transport = dataclasses.replace(transport, host=args.host)
    if args.port:
        transport = dataclasses.replace(transport, port=args.port)

    ledger, harness = config.ledger, config.harness
    if args.logs_dir:
        ledger = dataclasses.replace(ledger, logs_dir=Path(args.logs_dir))
        harness = dataclasses.replace(harness, logs_dir=Path(args.logs_dir))
    if args.results_dir:
        harness = dataclasses.replace(harness, results_dir=Path(args.results_dir))
    if args.transcript_dir:
        ledger = dataclasses.replace(ledger, transcript_dir=Path(args.transcript_dir))

    realtime = config.realtime
    if args.no_playback:
        realtime = dataclasses.replace(realtime, playback_enabled=False)

    return dataclasses.replace(
        config, transport=transport, ledger=ledger, harness=harness, realtime=realtime,
    )


def install_signal_handlers(supervisor: Supervisor):
    def signal_handler():
        logger.info("Shutdown signal received")
        supervisor.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)


async def console_signals(controller: SpeechSessionController):
    """Stdin stands in for the on-screen microphone and playback toggles."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    while True:
        line = await reader.readline()
        if not line:
            logger.info("Console input closed; toggles unavailable")
            await asyncio.Event().wait()

        command = line.decode("utf-8", errors="replace").strip().lower()
        if command == "m":
            controller.signal_microphone(not controller.microphone_enabled)
        elif command in ("mic on", "mic off"):
            controller.signal_microphone(command == "mic on")
        elif command in ("p on", "p off"):
            controller.signal_playback(command == "p on")
        elif command == "q":
            controller.shutdown()
            return
        elif command:
            logger.warning("Unknown console command: %r (use m, mic on|off, p on|off, q)", command)


async def run_device(config: RelayConfig):
    telemetry = Telemetry()
    transport = TransportClient(config.transport, telemetry)
    telemetry.attach(transport.submit)

    await transport.connect()
    stats = await transport.start()
    logger.info(
        "Session %d | today %s | total %s | %d logs so far",
        stats.session_number,
        format_duration_ms(stats.today_uptime_ms),
        format_duration_ms(stats.total_uptime_ms),
        stats.total_logs,
    )

    player = SoundDevicePlayer(
        sample_rate=config.audio.playback_sample_rate,
        channels=config.audio.playback_channels,
        device=config.audio.playback_device,
    )
    recorder = SoundDeviceRecorder(
        device=config.audio.capture_device,
        block_frames=config.audio.capture_block_frames,
    )

    try:
        async with realtime_channel(config.realtime, transport.credential) as channel:
            controller = SpeechSessionController(config, channel, transport, telemetry, recorder, player)

            supervisor = Supervisor()
            supervisor.add("transport-writer", transport.writer_loop())
            supervisor.add("transport-reader", transport.reader_loop())
            supervisor.add("inference-receiver", controller.receive_loop())
            supervisor.add("audio-uplink", controller.uplink_loop())
            supervisor.add("controller", controller.run())
            supervisor.add("console", console_signals(controller))
            install_signal_handlers(supervisor)

            logger.info("Device running. Type 'm' + Enter to toggle the microphone, 'q' to quit.")
            await supervisor.run()
    finally:
        player.close()
        logger.info(
            "Session %d uptime: %s (today %s)",
            stats.session_number,
            format_duration_ms(transport.session_elapsed_ms),
            format_duration_ms(transport.today_uptime_ms),
        )
        await transport.close()


async def run_host(config: RelayConfig):
    ledger = SessionLedger(
        config.ledger.logs_dir,
        config.ledger.credential_path,
        fsync_records=config.ledger.fsync_records,
    )
    injector = AppleScriptInjector(
        app=config.ledger.injector_app,
        return_delay_seconds=config.ledger.injector_return_delay_seconds,
    )
    verifier = TranscriptVerifier(
        config.ledger.transcript_dir,
        suffix=config.ledger.transcript_suffix,
        window=config.ledger.verification_window,
    )
    relay = PromptRelay(injector, verifier, delay_seconds=config.ledger.verification_delay_seconds)
    server = TransportServer(config.transport, ledger, relay)

    await server.start()
    supervisor = Supervisor()
    supervisor.add("transport-server", server.serve_forever())
    install_signal_handlers(supervisor)

    try:
        await supervisor.run()
    finally:
        await server.stop()


async def run_harness(config: RelayConfig):
    harness = TestHarness(config.harness)
    harness.prepare()

    supervisor = Supervisor()
    supervisor.add("harness", harness.run())
    install_signal_handlers(supervisor)
    await supervisor.run()


ROLES = {
    "device": run_device,
    "host": run_host,
    "harness": run_harness,
}


def main(argv=None) -> int:
    args = parse_args(argv)

    if args.debug:
        os.environ["RELAY_DEBUG"] = "1"

    configure_logging(
        level="DEBUG" if args.debug else "INFO",
        json_format=not args.debug,  # Human-readable in debug mode
        non_blocking=True,
    )

    config = apply_overrides(load_config_from_env(), args)

    if args.metrics:
        get_metrics().start_server()

    logger.info("Python %s", sys.version)
    logger.info("voicerelay %s starting", args.role)

    try:
        asyncio.run(ROLES[args.role](config))
        logger.info("voicerelay %s stopped", args.role)
    except FatalError as e:
        logger.critical("%s: %s - exiting", type(e).__name__, e)
        return e.exit_code
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.critical("Unexpected error: %s", e, exc_info=True)
        return 1
    finally:
        logging.shutdown()

    return 0


if __name__ == "__main__":
    sys.exit(main())
