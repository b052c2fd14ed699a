"""
Prompt relay: inject, wait, verify.

The host handles a prompt in three steps, synchronously within the transport
reader, so only one injection is ever in flight:

1. Normalize the prompt and hand it to the terminal injector.
2. Wait a fixed delay.
3. Read the most recently modified transcript file, inspect only its most
   recent window of records, and check whether the normalized prompt text
   appears in the content of any of them.

A hit yields a success prompt_ack. Every miss yields a failure prompt_ack with
a discriminating reason. There is no retry.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Iterator, List, Optional

from ..core.errors import FailureReason, InjectionFailure
from ..core.models import PromptAck, PromptEnvelope
from ..performance.metrics import get_metrics
from .injector import TerminalInjector, normalize_prompt

logger = logging.getLogger(__name__)


def find_latest_transcript(directory: Path, suffix: str = ".jsonl") -> Optional[Path]:
    """Most recently modified transcript file directly in `directory`, or None."""
    directory = Path(directory)
    if not directory.is_dir():
        logger.info("Transcript directory doesn't exist: %s", directory)
        return None

    candidates = [p for p in directory.glob(f"*{suffix}") if p.is_file()]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def iter_text(content) -> Iterator[str]:
    """Yield every string value nested inside a transcript content payload."""
    if isinstance(content, str):
        yield content
    elif isinstance(content, list):
        for item in content:
            yield from iter_text(item)
    elif isinstance(content, dict):
        for value in content.values():
            yield from iter_text(value)


def record_contains(line: str, text: str) -> bool:
    """True when the record's message content contains `text`. Unparseable lines never match."""
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return False
    if not isinstance(record, dict):
        return False
    message = record.get("message")
    if not isinstance(message, dict) or "content" not in message:
        return False
    return any(text in chunk for chunk in iter_text(message["content"]))


class TranscriptVerifier:
    """Checks the external transcript source for an injected prompt."""

    def __init__(self, transcript_dir: Path, suffix: str = ".jsonl", window: int = 50):
        self._transcript_dir = Path(transcript_dir)
        self._suffix = suffix
        self._window = window

    def recent_records(self, path: Path) -> List[str]:
        with open(path, "r", encoding="utf-8") as f:
            lines = [line for line in f.read().split("\n") if line.strip()]
        return lines[-self._window:]

    def verify(self, text: str, original_prompt: str):
        """
        Raises:
            InjectionFailure: when the transcript is missing, unreadable, or
                does not contain `text` in its recent window.
        """
        try:
            path = find_latest_transcript(self._transcript_dir, self._suffix)
        except OSError as e:
            raise InjectionFailure(
                FailureReason.VERIFICATION_ERROR,
                f"Failed to inject prompt: '{original_prompt}' - Verification error: {e}",
            )
        if path is None:
            raise InjectionFailure(
                FailureReason.NO_CONVERSATION_SOURCE,
                f"Failed to inject prompt: '{original_prompt}' - No conversation file found",
            )
        logger.info("Verifying prompt against %s", path)

        try:
            records = self.recent_records(path)
        except (OSError, UnicodeDecodeError) as e:
            raise InjectionFailure(
                FailureReason.VERIFICATION_ERROR,
                f"Failed to inject prompt: '{original_prompt}' - Verification error: {e}",
            )

        if not any(record_contains(line, text) for line in records):
            raise InjectionFailure(
                FailureReason.PROMPT_NOT_FOUND,
                f"Failed to inject prompt: '{original_prompt}' - "
                f"Prompt not found in conversation after Terminal automation",
            )


class PromptRelay:
    """Runs one prompt through injection and verification and produces the prompt_ack."""

    def __init__(
        self,
        injector: TerminalInjector,
        verifier: TranscriptVerifier,
        delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._injector = injector
        self._verifier = verifier
        self._delay = delay_seconds
        self._sleep = sleep
        self._metrics = get_metrics()

    async def handle(self, envelope: PromptEnvelope) -> PromptAck:
        logger.info(
            "Received prompt (category=%s): %r",
            envelope.category, envelope.text,
        )
        normalized = normalize_prompt(envelope.text)

        try:
            await self._inject_and_verify(envelope.text, normalized.text, normalized.injector_text)
        except InjectionFailure as failure:
            logger.error("%s", failure.message)
            self._metrics.record_prompt_result("error", failure.reason.value)
            return PromptAck.failure(envelope.text, failure.reason, failure.message)

        logger.info("Verified: prompt found in conversation")
        self._metrics.record_prompt_result("success")
        return PromptAck.success(envelope.text)

    async def _inject_and_verify(self, original: str, text: str, injector_text: str):
        result = await self._injector.inject(injector_text)
        if not result.success:
            raise InjectionFailure(
                FailureReason.INJECTION_FAILED,
                f"Failed to inject prompt: '{original}' - Terminal automation failed: {result.error}",
            )

        await self._sleep(self._delay)
        self._verifier.verify(text, original)
