"""
Speech session controller.

Owns the device-side speech session: inference events, microphone and
playback toggles, the response scheduler, and the prompt round trip
(function call -> host injection -> function call result).

Concurrency model:
- One owner task (run) consumes the controller inbox one message at a time
- The inference receiver task posts every received event to the inbox
- Audio device threads reach the inbox through loop.call_soon_threadsafe
  (inside AudioPipeline)
- Prompt acknowledgments from the transport are posted back to the inbox

Everything that touches the scheduler, the pending prompt, or the state
machine runs on the owner task, so none of it needs locking.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..config import RelayConfig
from ..performance.metrics import get_metrics
from . import realtime_events as ev
from .audio_io import AudioPipeline, Player, Recorder
from .errors import InferenceServiceError
from .models import PromptAck, PromptEnvelope
from .response_queue import PendingResponseRequest, ResponseKind, ResponseScheduler
from .state_machine import ControllerState, SessionStateMachine, Trigger
from .telemetry import Telemetry

logger = logging.getLogger(__name__)

SUPERSEDED_ERROR = "Superseded by a newer prompt before it was sent"


class InboxMessageType(Enum):
    """Messages accepted by the controller inbox."""
    INFERENCE_EVENT = "inference_event"
    MICROPHONE_ON = "microphone_on"
    MICROPHONE_OFF = "microphone_off"
    PLAYBACK_ON = "playback_on"
    PLAYBACK_OFF = "playback_off"
    PLAYBACK_COMPLETE = "playback_complete"
    PROMPT_RESOLVED = "prompt_resolved"
    SHUTDOWN = "shutdown"


@dataclass
class InboxMessage:
    type: InboxMessageType
    payload: Any = None
    timestamp: float = field(default_factory=time.monotonic)

    def __repr__(self) -> str:
        return f"InboxMessage({self.type.value})"


class SpeechSessionController:
    """
    Device-side controller for one inference session.

    Args:
        config: Relay configuration (audio + realtime sections are used)
        channel: Connected inference channel (send/receive JSON events)
        transport: Host transport; only send_prompt() is used here
        telemetry: Record producer for milestones and errors
        recorder: Microphone boundary
        player: Speaker boundary
    """

    def __init__(
        self,
        config: RelayConfig,
        channel,
        transport,
        telemetry: Telemetry,
        recorder: Recorder,
        player: Player,
    ):
        self.config = config
        self._channel = channel
        self._transport = transport
        self._telemetry = telemetry

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._uplink: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._pipeline = AudioPipeline(
            config.audio,
            recorder,
            player,
            on_capture=self._uplink.put_nowait,
            on_playback_complete=lambda: self.post(InboxMessage(InboxMessageType.PLAYBACK_COMPLETE)),
        )
        self._scheduler = ResponseScheduler(self._send_response_request)
        self._state_machine = SessionStateMachine()

        # Toggles
        self._microphone_enabled = False
        self._playback_enabled = config.realtime.playback_enabled

        # Prompt round trip
        self._announced_call_id: Optional[str] = None
        self._pending_prompt: Optional[PromptEnvelope] = None
        self._in_flight: Optional[PromptEnvelope] = None
        self._last_ack: Optional[PromptAck] = None

        self._metrics = get_metrics()

    # -- Introspection -------------------------------------------------

    @property
    def state(self) -> ControllerState:
        return self._state_machine.state

    @property
    def scheduler(self) -> ResponseScheduler:
        return self._scheduler

    @property
    def pipeline(self) -> AudioPipeline:
        return self._pipeline

    @property
    def microphone_enabled(self) -> bool:
        return self._microphone_enabled

    @property
    def playback_enabled(self) -> bool:
        return self._playback_enabled

    @property
    def pending_prompt(self) -> Optional[PromptEnvelope]:
        return self._pending_prompt

    @property
    def in_flight_prompt(self) -> Optional[PromptEnvelope]:
        return self._in_flight

    @property
    def last_ack(self) -> Optional[PromptAck]:
        return self._last_ack

    def get_status(self) -> dict:
        return {
            "state": self.state.value,
            "microphone_enabled": self._microphone_enabled,
            "playback_enabled": self._playback_enabled,
            "response_active": self._scheduler.active,
            "response_queue_depth": self._scheduler.depth,
            "pending_prompt": self._pending_prompt is not None,
            "prompt_in_flight": self._in_flight is not None,
            "audio": self._pipeline.get_stats(),
        }

    # -- Inbox ---------------------------------------------------------

    def post(self, message: InboxMessage):
        """Post a message to the inbox. Safe to call from any thread once run() started."""
        if self._loop is None:
            self._inbox.put_nowait(message)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._inbox.put_nowait(message)
        else:
            self._loop.call_soon_threadsafe(self._inbox.put_nowait, message)

    def signal_microphone(self, enabled: bool):
        self.post(InboxMessage(InboxMessageType.MICROPHONE_ON if enabled else InboxMessageType.MICROPHONE_OFF))

    def signal_playback(self, enabled: bool):
        self.post(InboxMessage(InboxMessageType.PLAYBACK_ON if enabled else InboxMessageType.PLAYBACK_OFF))

    def shutdown(self):
        self.post(InboxMessage(InboxMessageType.SHUTDOWN))

    # -- Tasks ---------------------------------------------------------

    async def run(self):
        """Owner task: handle inbox messages strictly one at a time."""
        self._loop = asyncio.get_running_loop()
        if self.state is ControllerState.DISCONNECTED:
            self._state_machine.fire(Trigger.CONNECT)

        try:
            while True:
                message = await self._inbox.get()
                if message.type is InboxMessageType.SHUTDOWN:
                    logger.info("Controller shutting down")
                    return
                await self._handle(message)
        finally:
            self._pipeline.close()

    async def receive_loop(self):
        """Inference receiver task: forward every event to the inbox."""
        while True:
            event = await self._channel.receive()
            self.post(InboxMessage(InboxMessageType.INFERENCE_EVENT, event))

    async def uplink_loop(self):
        """Audio uplink task: send converted capture chunks to the inference service."""
        while True:
            chunk = await self._uplink.get()
            await self._channel.send(ev.audio_append(chunk))
            self._telemetry.debug("sendAudio", f"Sent {len(chunk)} base64 chars of audio")

    async def _handle(self, message: InboxMessage):
        handlers = {
            InboxMessageType.INFERENCE_EVENT: lambda: self.handle_event(message.payload),
            InboxMessageType.MICROPHONE_ON: self.enable_microphone,
            InboxMessageType.MICROPHONE_OFF: self.disable_microphone,
            InboxMessageType.PLAYBACK_ON: self.enable_playback,
            InboxMessageType.PLAYBACK_OFF: self.disable_playback,
            InboxMessageType.PLAYBACK_COMPLETE: self._on_playback_complete,
            InboxMessageType.PROMPT_RESOLVED: lambda: self._on_prompt_resolved(*message.payload),
        }
        await handlers[message.type]()

    # -- Inference events ----------------------------------------------

    async def handle_event(self, event: dict):
        event_type = event["type"]
        self._telemetry.debug("receivedFromRealtime", f"Received {event_type}")

        if event_type == ev.SESSION_CREATED:
            await self._on_session_created()
        elif event_type == ev.SPEECH_STARTED:
            self._telemetry.log("Voice activity detection started")
            self._state_machine.fire(Trigger.SPEECH_STARTED)
        elif event_type == ev.SPEECH_STOPPED:
            await self._on_speech_stopped()
        elif event_type == ev.BUFFER_COMMITTED:
            self._telemetry.log("Audio buffer committed")
        elif event_type == ev.RESPONSE_CREATED:
            self._telemetry.log("Response created")
        elif event_type == ev.RESPONSE_DONE:
            await self._on_response_done()
        elif event_type == ev.OUTPUT_ITEM_ADDED:
            self._on_output_item_added(event)
        elif event_type == ev.FUNCTION_CALL_ARGUMENTS_DONE:
            await self._on_function_call_arguments_done(event)
        elif event_type in ev.AUDIO_DELTA_EVENTS:
            self._on_audio_delta(event)
        elif event_type == ev.AUDIO_DONE:
            self._telemetry.log("Audio output completed")
        elif event_type == ev.TRANSCRIPT_DONE:
            transcript = event.get("transcript")
            if isinstance(transcript, str):
                self._telemetry.log(f"Final transcript: {transcript}")
        elif event_type == ev.OUTPUT_TEXT_DONE:
            await self._on_output_text_done(event)
        elif event_type == ev.ERROR:
            self._on_error_event(event)
        elif event_type in ev.QUIET_EVENTS:
            pass
        else:
            self._telemetry.log(f"Unknown event type: {event_type} - JSON: {event}")

    async def _on_session_created(self):
        self._telemetry.log("WebSocket connection established")
        self._state_machine.fire(Trigger.SESSION_CREATED)
        await self._channel.send(ev.session_update(self.config.realtime, self.config.audio))
        await self.enable_microphone()

    async def _on_speech_stopped(self):
        self._telemetry.log("Voice activity detection stopped")
        self._state_machine.fire(Trigger.SPEECH_STOPPED)
        await self._scheduler.request(
            ResponseKind.PROMPT_EXTRACTION,
            ev.extraction_response(self.config.realtime),
        )
        self._telemetry.log("Requesting createPrompt function call after speech stopped")

    async def _on_response_done(self):
        self._telemetry.log("Model responded")
        self._state_machine.fire(Trigger.RESPONSE_DONE)
        await self._scheduler.complete()

    def _on_output_item_added(self, event: dict):
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "function_call":
            self._announced_call_id = item.get("call_id")
            self._telemetry.debug("functionCallAnnounced", f"Function call announced: {self._announced_call_id}")

    async def _on_function_call_arguments_done(self, event: dict):
        call_id, prompt = ev.parse_prompt_arguments(event)
        if self._announced_call_id is not None and self._announced_call_id != call_id:
            logger.warning(f"Arguments for call {call_id} but {self._announced_call_id} was announced")
        self._announced_call_id = None

        self._telemetry.log(f"Function call {call_id} extracted prompt: {prompt}")
        await self._set_pending_prompt(PromptEnvelope(
            text=prompt,
            category=self.config.realtime.prompt_category,
            call_id=call_id,
        ))

    async def _on_output_text_done(self, event: dict):
        text = event.get("text")
        if not isinstance(text, str):
            self._telemetry.error("response.output_text.done missing 'text' field")
            return

        prompt = ev.extract_text_prompt(text)
        if prompt is None:
            self._telemetry.error(f"Failed to extract prompt from text output: {text}")
            return

        self._telemetry.log(f"Extracted prompt from text output: {prompt}")
        await self._set_pending_prompt(PromptEnvelope(
            text=prompt,
            category=self.config.realtime.prompt_category,
        ))

    def _on_audio_delta(self, event: dict):
        delta = event.get("delta")
        if not isinstance(delta, str):
            self._telemetry.error(f"{event['type']} missing 'delta' field")
            return
        if not self._pipeline.playback_active:
            self._telemetry.debug("scheduleAudio", "Playback disabled, skipping audio")
            return
        try:
            self._pipeline.schedule_playback(delta)
        except ValueError as e:
            self._telemetry.error(f"Failed to decode response audio data: {e}")

    def _on_error_event(self, event: dict):
        info = event.get("error")
        self._metrics.record_error("inference")
        if isinstance(info, dict):
            err = InferenceServiceError(
                str(info.get("type") or "unknown"),
                str(info.get("message") or "no message"),
            )
            self._telemetry.error(str(err))
        else:
            self._telemetry.error(f"Full error event: {event}")

    # -- Responses -----------------------------------------------------

    async def _send_response_request(self, request: PendingResponseRequest):
        await self._channel.send(request.payload)
        logger.info(f"Requested {request.kind.value} response (#{request.sequence})")

    async def _request_spoken_response(self, kind: ResponseKind, instructions: Optional[str] = None):
        await self._scheduler.request(kind, ev.spoken_response(instructions))
        if self.state is ControllerState.IDLE:
            self._state_machine.fire(Trigger.RESPONSE_REQUESTED)

    # -- Microphone / playback -----------------------------------------

    async def enable_microphone(self):
        if self._microphone_enabled:
            self._telemetry.debug("enableMicrophone", "Microphone already enabled, ignoring")
            return
        self._pipeline.start_capture()
        self._microphone_enabled = True
        self._state_machine.fire(Trigger.MIC_ENABLED)
        self._telemetry.log("Microphone enabled")

    async def disable_microphone(self):
        if not self._microphone_enabled:
            self._telemetry.debug("disableMicrophone", "Microphone already disabled, ignoring")
            return
        self._pipeline.stop_capture()
        self._microphone_enabled = False
        self._state_machine.fire(Trigger.MIC_RELEASED)

        await self._forward_pending_prompt()

        if self._playback_enabled:
            self._pipeline.resume_playback()
            await self._request_spoken_response(ResponseKind.ACKNOWLEDGMENT)
            self._telemetry.log("Response requested")
        self._telemetry.log("Microphone disabled")

    async def enable_playback(self):
        self._playback_enabled = True
        self._telemetry.log("Playback enabled")

    async def disable_playback(self):
        self._playback_enabled = False
        self._pipeline.stop_playback()
        self._telemetry.log("Playback disabled")

    async def _on_playback_complete(self):
        self._telemetry.debug("playbackComplete", "All scheduled audio played")

    # -- Prompt round trip ---------------------------------------------

    async def _set_pending_prompt(self, envelope: PromptEnvelope):
        previous = self._pending_prompt
        if previous is not None:
            logger.info(f"Replacing unsent prompt: {previous.text!r}")
            if previous.call_id is not None:
                await self._channel.send(ev.function_call_output(
                    previous.call_id, {"status": "error", "error": SUPERSEDED_ERROR},
                ))

        self._pending_prompt = envelope
        if not self._microphone_enabled:
            await self._forward_pending_prompt()

    async def _forward_pending_prompt(self):
        if self._pending_prompt is None or self._in_flight is not None:
            return

        envelope = self._pending_prompt
        self._pending_prompt = None
        self._in_flight = envelope

        self._telemetry.log(f"Sending prompt to host: {envelope.text}")
        future = self._transport.send_prompt(envelope)
        future.add_done_callback(
            lambda f: self.post(InboxMessage(InboxMessageType.PROMPT_RESOLVED, (envelope, f)))
        )

    async def _on_prompt_resolved(self, envelope: PromptEnvelope, future: asyncio.Future):
        # A transport failure surfaces here and ends the controller
        ack: PromptAck = future.result()
        self._in_flight = None
        self._last_ack = ack

        if ack.succeeded:
            self._telemetry.log(f"Prompt delivered to terminal: {ack.original_prompt}")
        else:
            self._telemetry.error(f"Prompt delivery failed ({ack.reason.value if ack.reason else 'unknown'}): {ack.error}")

        if envelope.call_id is not None:
            await self._channel.send(ev.function_call_output(envelope.call_id, ack.to_function_output()))
            self._telemetry.log(f"Sent function call result for call_id: {envelope.call_id}")
            await self._request_spoken_response(
                ResponseKind.PROMPT_OUTCOME,
                self.config.realtime.outcome_instructions,
            )

        if not self._microphone_enabled:
            await self._forward_pending_prompt()
