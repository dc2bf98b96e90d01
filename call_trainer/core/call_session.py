"""
Per-call state machine.

    CREATED -> DIALING -> STREAMING -> GRADING -> COMPLETED
    (any state) -> FAILED

A session dials the trainee, receives the carrier's start/media/stop events,
owns the one voice bridge for the call and grades the transcript exactly
once, on the first stop (or when the media stream closes without one).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set

from call_trainer.agents import select_agent_id
from call_trainer.analysis.grader import GradingOutcome, TranscriptGrader
from call_trainer.analysis.publisher import ResultPublisher
from call_trainer.analysis.schema import AnalysisResult
from call_trainer.config import VoiceAgentConfig
from call_trainer.core.analysis_store import AnalysisRecord, AnalysisStore
from call_trainer.core.models import CallState, ScenarioContext, SessionStats, Transcript
from call_trainer.errors import CallTrainerError, ValidationError
from call_trainer.logging_config import get_logger
from call_trainer.metrics import ACTIVE_SESSIONS, AUDIO_FRAMES_DROPPED, SESSIONS_FINISHED
from call_trainer.providers.elevenlabs_agent import SignedUrlRequester, VoiceBridge
from call_trainer.telephony.media_stream import (
    StreamConnected,
    StreamDtmf,
    StreamMark,
    StreamMedia,
    StreamStart,
    StreamStop,
    TelephonyEvent,
    TelephonyLeg,
)
from call_trainer.telephony.twilio_client import TwilioClient

logger = get_logger(__name__)

BridgeFactory = Callable[[TelephonyLeg, Transcript, Optional[str]], VoiceBridge]
Spawner = Callable[[Coroutine[Any, Any, None]], "asyncio.Task[None]"]

# Tasks started by spawn_tracked, held until they finish.
_pending_tasks: Set["asyncio.Task[None]"] = set()


def spawn_tracked(coro: Coroutine[Any, Any, None]) -> "asyncio.Task[None]":
    task = asyncio.create_task(coro)
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)
    return task


@dataclass
class SessionDeps:
    """Collaborators shared by every session, built once at start-up."""
    voice_config: VoiceAgentConfig
    signed_urls: SignedUrlRequester
    grader: TranscriptGrader
    publisher: ResultPublisher
    store: Optional[AnalysisStore] = None
    bridge_factory: Optional[BridgeFactory] = None
    spawn: Spawner = spawn_tracked

    def make_bridge(self, telephony: TelephonyLeg, transcript: Transcript, call_id: Optional[str]) -> VoiceBridge:
        if self.bridge_factory is not None:
            return self.bridge_factory(telephony, transcript, call_id)
        return VoiceBridge(self.voice_config, telephony, transcript, call_id=call_id)


class CallSession:
    def __init__(
        self,
        scenario: ScenarioContext,
        deps: SessionDeps,
        *,
        on_finished: Optional[Callable[["CallSession"], None]] = None,
    ):
        self.scenario = scenario
        self.deps = deps
        self._on_finished = on_finished

        self.call_id: Optional[str] = None
        self.stream_id: Optional[str] = None
        self.state = CallState.CREATED
        self.started_at: Optional[float] = None
        self.transcript: Optional[Transcript] = None
        self.telephony: Optional[TelephonyLeg] = None
        self.bridge: Optional[VoiceBridge] = None
        self.result: Optional[AnalysisResult] = None
        self.stats = SessionStats()

        self._bridge_task: Optional[asyncio.Task] = None
        self._finished = False
        self._done = asyncio.Event()

        self._handlers: Dict[type, Callable[[Any], Awaitable[None]]] = {
            StreamConnected: self._on_connected,
            StreamStart: self._on_start,
            StreamMedia: self._on_media,
            StreamMark: self._on_mark,
            StreamDtmf: self._on_dtmf,
            StreamStop: self._on_stop,
        }

    def __repr__(self) -> str:
        return f"CallSession(call_id={self.call_id!r}, stream_id={self.stream_id!r}, state={self.state.value})"

    @property
    def finished(self) -> bool:
        return self._finished

    def _set_state(self, new_state: CallState) -> None:
        if new_state == self.state:
            return
        logger.debug(
            "Call state transition",
            call_id=self.call_id,
            stream_id=self.stream_id,
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state

    async def dial(self, twilio: TwilioClient, twiml_url: str) -> str:
        """
        Place the outbound call.

        Raises:
            ValidationError: no destination number
            UpstreamAuthError, UpstreamUnavailableError: the carrier refused or failed
        """
        if self.state != CallState.CREATED:
            raise RuntimeError(f"Cannot dial from state {self.state.value}")
        if not self.scenario.destination_number:
            raise ValidationError("Phone number is required")

        self._set_state(CallState.DIALING)
        try:
            self.call_id = await twilio.create_call(self.scenario.destination_number, twiml_url)
        except CallTrainerError:
            self._set_state(CallState.FAILED)
            SESSIONS_FINISHED.labels(state=CallState.FAILED.value).inc()
            raise
        logger.info("Call initiated", call_id=self.call_id, scenario_id=self.scenario.scenario_id)
        return self.call_id

    def attach_telephony(self, leg: TelephonyLeg) -> None:
        self.telephony = leg

    async def handle_event(self, event: TelephonyEvent) -> None:
        """Dispatch one parsed media-stream event, in arrival order."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug("No handler for media stream event", event=type(event).__name__)
            return
        await handler(event)

    async def _on_connected(self, event: StreamConnected) -> None:
        logger.debug("Media stream connected", call_id=self.call_id, protocol=event.protocol)

    async def _on_start(self, event: StreamStart) -> None:
        if self.state not in (CallState.CREATED, CallState.DIALING):
            logger.warning("Duplicate start event ignored", call_id=self.call_id, stream_id=event.stream_sid)
            return
        if self.telephony is None:
            raise RuntimeError("Telephony leg must be attached before the stream starts")

        self.stream_id = event.stream_sid
        self.call_id = event.call_sid or self.call_id
        self.telephony.stream_id = event.stream_sid
        self.scenario = ScenarioContext.from_stream_parameters(event.custom_parameters, fallback=self.scenario)

        first_message = self.scenario.first_utterance or self.deps.voice_config.default_first_message
        self.transcript = Transcript(self.scenario.character_prompt, first_message)
        self.started_at = time.time()
        self._set_state(CallState.STREAMING)
        ACTIVE_SESSIONS.inc()

        logger.info(
            "Stream started",
            call_id=self.call_id,
            stream_id=self.stream_id,
            scenario_id=self.scenario.scenario_id,
        )
        self._bridge_task = asyncio.create_task(self._open_bridge(first_message))

    async def _open_bridge(self, first_message: str) -> None:
        agent_id = select_agent_id(self.scenario.scenario_id, self.deps.voice_config)
        logger.info("Selected voice agent", call_id=self.call_id, scenario_id=self.scenario.scenario_id, agent_id=agent_id)
        try:
            signed_url = await self.deps.signed_urls.request(agent_id, call_id=self.call_id)
            if self._finished:
                return
            self.bridge = self.deps.make_bridge(self.telephony, self.transcript, self.call_id)
            await self.bridge.open(signed_url, self.scenario.character_prompt, first_message)
        except CallTrainerError as e:
            # The call carries on without a voice; the transcript is still graded
            logger.error("Voice bridge setup failed", call_id=self.call_id, error=str(e))

    async def _on_media(self, event: StreamMedia) -> None:
        self.stats.media_frames_in += 1
        if self._finished or self.bridge is None:
            self.stats.media_frames_dropped += 1
            AUDIO_FRAMES_DROPPED.labels(direction="to_voice_ai").inc()
            return
        if await self.bridge.send_user_audio(event.payload):
            self.stats.media_frames_forwarded += 1
        else:
            self.stats.media_frames_dropped += 1

    async def _on_mark(self, event: StreamMark) -> None:
        logger.debug("Mark received", call_id=self.call_id, name=event.name)

    async def _on_dtmf(self, event: StreamDtmf) -> None:
        logger.info("DTMF received", call_id=self.call_id, digit=event.digit)

    async def _on_stop(self, event: StreamStop) -> None:
        logger.info("Stream stopped", call_id=self.call_id, stream_id=self.stream_id)
        await self.finish("stop")

    async def on_telephony_closed(self) -> None:
        """The carrier websocket went away; converge on the stop path."""
        if self.telephony is not None:
            self.telephony.mark_closed()
        if self.state == CallState.STREAMING and not self._finished:
            logger.warning("Media stream closed without stop", call_id=self.call_id, stream_id=self.stream_id)
            await self.finish("telephony_closed")

    async def finish(self, reason: str) -> bool:
        """
        Tear down the bridge and start grading. Only the first call counts.

        Returns:
            True if this call started grading, False for duplicates
        """
        if self._finished:
            logger.debug("Duplicate stop ignored", call_id=self.call_id, reason=reason)
            return False
        self._finished = True

        if self.state != CallState.STREAMING or self.transcript is None:
            logger.warning("Call ended before streaming", call_id=self.call_id, state=self.state.value)
            self._set_state(CallState.FAILED)
            SESSIONS_FINISHED.labels(state=CallState.FAILED.value).inc()
            self._complete()
            return False

        await self._teardown_bridge()
        self._set_state(CallState.GRADING)
        logger.info(
            "Call ended; grading transcript",
            call_id=self.call_id,
            reason=reason,
            turns=len(self.transcript),
            frames_in=self.stats.media_frames_in,
            frames_forwarded=self.stats.media_frames_forwarded,
            frames_dropped=self.stats.media_frames_dropped,
            agent_frames=self.stats.agent_audio_frames,
            agent_frames_dropped=self.stats.agent_audio_dropped,
        )
        self.deps.spawn(self._grade_and_publish())
        return True

    async def _teardown_bridge(self) -> None:
        if self._bridge_task and not self._bridge_task.done():
            self._bridge_task.cancel()
            try:
                await self._bridge_task
            except asyncio.CancelledError:
                pass
        if self.bridge is not None:
            await self.bridge.close()
            self.stats.agent_audio_frames = self.bridge.agent_frames
            self.stats.agent_audio_dropped = self.bridge.agent_frames_dropped

    async def _grade_and_publish(self) -> None:
        try:
            outcome = await self.deps.grader.grade(self.transcript, self.scenario.scenario_id, call_id=self.call_id)
            self.result = outcome.result
            self._set_state(CallState.COMPLETED)
            await self.deps.publisher.publish(outcome.result, call_id=self.call_id)
            if self.deps.store is not None:
                await self.deps.store.save(self._build_record(outcome))
        except Exception as e:
            logger.error("Post-call processing failed", call_id=self.call_id, error=str(e), exc_info=True)
            if self.state != CallState.COMPLETED:
                self._set_state(CallState.FAILED)
        finally:
            ACTIVE_SESSIONS.dec()
            SESSIONS_FINISHED.labels(state=self.state.value).inc()
            self._complete()

    def _build_record(self, outcome: GradingOutcome) -> AnalysisRecord:
        return AnalysisRecord(
            call_id=self.call_id or "",
            stream_id=self.stream_id,
            scenario_id=self.scenario.scenario_id,
            scenario_name=outcome.scenario_name,
            conversation_id=self.bridge.conversation_id if self.bridge else None,
            conversation=self.transcript.to_list(),
            formatted_transcript=outcome.formatted_transcript,
            analysis=outcome.result.to_payload(),
            outcome="graded" if outcome.graded else "fallback",
            error=outcome.error,
        )

    def _complete(self) -> None:
        self._done.set()
        if self._on_finished is not None:
            self._on_finished(self)

    async def wait_finished(self, timeout: Optional[float] = None) -> None:
        """Block until grading (and publishing) is done."""
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
