"""
Unit tests for prompt injection and transcript verification.

Tests:
- Prompt normalization (quotes stripped, line breaks folded, backslashes escaped)
- Verification hit / miss against the most recent transcript window
- Each failure mode maps to its own prompt_ack reason
"""

import os
import time

import pytest

from voicerelay.core.errors import FailureReason
from voicerelay.core.models import PromptEnvelope, PromptStatus
from voicerelay.ledger.injector import AppleScriptInjector, InjectionResult, normalize_prompt
from voicerelay.ledger.verifier import (
    PromptRelay,
    TranscriptVerifier,
    find_latest_transcript,
    record_contains,
)
from voicerelay.testing.fixtures import (
    RecordingInjector,
    TranscriptWriter,
    no_sleep,
    transcript_line,
)


@pytest.fixture
def transcript_dir(tmp_path):
    path = tmp_path / "projects"
    path.mkdir()
    return path


def make_relay(injector, transcript_dir, window=50):
    verifier = TranscriptVerifier(transcript_dir, window=window)
    return PromptRelay(injector, verifier, delay_seconds=2.0, sleep=no_sleep)


# ── Normalization ──

class TestNormalization:

    def test_quotes_are_stripped(self):
        assert normalize_prompt('Say "hi" to Bob\'s team').text == "Say hi to Bobs team"

    def test_line_breaks_fold_to_spaces(self):
        assert normalize_prompt("1. Build\n2. Test\r\n3. Ship").text == "1. Build 2. Test 3. Ship"

    def test_backslashes_escaped_for_injector(self):
        normalized = normalize_prompt(r"open C:\tmp")
        assert normalized.text == r"open C:\tmp"
        assert normalized.injector_text == r"open C:\\tmp"

    def test_build_script_embeds_text(self):
        script = AppleScriptInjector(app="Terminal", return_delay_seconds=1.0).build_script("1. Run tests")
        assert 'keystroke "1. Run tests"' in script
        assert 'tell application "Terminal"' in script
        assert "keystroke return" in script


# ── Transcript lookup ──

class TestTranscriptLookup:

    def test_latest_file_by_mtime(self, transcript_dir):
        old = TranscriptWriter(transcript_dir, "old.jsonl")
        new = TranscriptWriter(transcript_dir, "new.jsonl")
        old.append("x")
        new.append("y")
        past = time.time() - 100
        os.utime(old.path, (past, past))

        assert find_latest_transcript(transcript_dir) == new.path

    def test_nested_directories_are_not_searched(self, transcript_dir):
        TranscriptWriter(transcript_dir / "other-project", "nested.jsonl").append("x")

        assert find_latest_transcript(transcript_dir) is None

    def test_missing_directory(self, tmp_path):
        assert find_latest_transcript(tmp_path / "nope") is None

    def test_record_contains_nested_content(self):
        line = '{"message": {"content": [{"type": "text", "text": "1. Run tests now"}]}}'
        assert record_contains(line, "Run tests")

    def test_record_contains_ignores_other_fields(self):
        line = '{"summary": "Run tests", "message": {"content": "other"}}'
        assert not record_contains(line, "Run tests")

    def test_unparseable_line_never_matches(self):
        assert not record_contains("{oops", "oops")


# ── Relay ──

class TestPromptRelay:

    @pytest.mark.asyncio
    async def test_success_when_text_appears(self, transcript_dir):
        injector = RecordingInjector(writer=TranscriptWriter(transcript_dir))
        ack = await make_relay(injector, transcript_dir).handle(PromptEnvelope(text="1. Run the tests"))

        assert ack.status is PromptStatus.SUCCESS
        assert ack.original_prompt == "1. Run the tests"
        assert injector.injected == ["1. Run the tests"]

    @pytest.mark.asyncio
    async def test_verifies_normalized_text(self, transcript_dir):
        injector = RecordingInjector(writer=TranscriptWriter(transcript_dir))
        prompt = '1. Fix "the" bug\n2. Commit'
        ack = await make_relay(injector, transcript_dir).handle(PromptEnvelope(text=prompt))

        assert ack.succeeded
        assert ack.original_prompt == prompt
        assert injector.injected == ["1. Fix the bug 2. Commit"]

    @pytest.mark.asyncio
    async def test_backslash_prompt_verifies(self, transcript_dir):
        injector = RecordingInjector(writer=TranscriptWriter(transcript_dir))
        ack = await make_relay(injector, transcript_dir).handle(PromptEnvelope(text=r"cd C:\work"))

        assert ack.succeeded
        assert injector.injected == [r"cd C:\\work"]

    @pytest.mark.asyncio
    async def test_no_conversation_source(self, transcript_dir):
        ack = await make_relay(RecordingInjector(), transcript_dir).handle(PromptEnvelope(text="x"))

        assert ack.status is PromptStatus.ERROR
        assert ack.reason is FailureReason.NO_CONVERSATION_SOURCE
        assert "No conversation file found" in ack.error

    @pytest.mark.asyncio
    async def test_prompt_not_found(self, transcript_dir):
        TranscriptWriter(transcript_dir).append("something else entirely")
        ack = await make_relay(RecordingInjector(), transcript_dir).handle(PromptEnvelope(text="1. Deploy"))

        assert ack.reason is FailureReason.PROMPT_NOT_FOUND
        assert ack.error.startswith("Failed to inject prompt: '1. Deploy'")

    @pytest.mark.asyncio
    async def test_injection_failure(self, transcript_dir):
        injector = RecordingInjector(result=InjectionResult(success=False, error="not permitted"))
        ack = await make_relay(injector, transcript_dir).handle(PromptEnvelope(text="x"))

        assert ack.reason is FailureReason.INJECTION_FAILED
        assert "not permitted" in ack.error

    @pytest.mark.asyncio
    async def test_only_recent_window_is_inspected(self, transcript_dir):
        writer = TranscriptWriter(transcript_dir)
        writer.append("1. Old prompt")
        for i in range(5):
            writer.append(f"filler {i}")

        ack = await make_relay(RecordingInjector(), transcript_dir, window=3).handle(
            PromptEnvelope(text="1. Old prompt")
        )
        assert ack.reason is FailureReason.PROMPT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_waits_before_verifying(self, transcript_dir):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        injector = RecordingInjector(writer=TranscriptWriter(transcript_dir))
        relay = PromptRelay(injector, TranscriptVerifier(transcript_dir), delay_seconds=2.0, sleep=record_sleep)
        await relay.handle(PromptEnvelope(text="x"))

        assert delays == [2.0]

    def test_transcript_line_layout(self):
        assert '"content": "hello"' in transcript_line("hello")
