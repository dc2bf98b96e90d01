"""
ElevenLabs Conversational AI bridge.

Connects one carrier media stream to one ElevenLabs agent conversation.

WebSocket Protocol:
- Endpoint: signed URL from /v1/convai/conversation/get_signed_url
- Auth: xi-api-key header on the signed URL request only
- Audio: base64 μ-law 8kHz in both directions (the agent is configured for
  telephony output), so payloads pass through without transcoding
"""
import asyncio
import functools
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
import websockets
import websockets.exceptions

from call_trainer.config import VoiceAgentConfig
from call_trainer.core.models import Transcript
from call_trainer.errors import ProtocolError, UpstreamAuthError, UpstreamUnavailableError
from call_trainer.logging_config import get_logger
from call_trainer.metrics import AUDIO_FRAMES_DROPPED
from call_trainer.telephony.media_stream import TelephonyLeg

logger = get_logger(__name__)

SERVICE = "elevenlabs"

# Voice AI event types that carry nothing the bridge acts on
_SILENT_EVENT_TYPES = frozenset({
    "internal_vad_score",
    "internal_turn_probability",
    "internal_tentative_agent_response",
    "vad_score",
})


class SignedUrlRequester:
    """
    Obtains single-use signed websocket URLs for ElevenLabs agents.

    A fresh URL is requested for every call; nothing is cached.
    """

    def __init__(
        self,
        config: VoiceAgentConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def request(self, agent_id: str, call_id: Optional[str] = None) -> str:
        """
        Get a signed URL for connecting to an authenticated agent.

        Raises:
            UpstreamAuthError: ElevenLabs answered with a non-success status
            UpstreamUnavailableError: network failure, timeout, or no signed_url in the body
        """
        url = f"{self.config.api_base_url.rstrip('/')}/v1/convai/conversation/get_signed_url"
        headers = {"xi-api-key": self.config.api_key or ""}
        timeout = aiohttp.ClientTimeout(total=self.config.signed_url_timeout_sec)
        session = await self._ensure_session()

        try:
            async with session.get(url, params={"agent_id": agent_id}, headers=headers, timeout=timeout) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(
                        "Failed to get signed URL",
                        call_id=call_id,
                        agent_id=agent_id,
                        status=response.status,
                        body_preview=error_text[:200],
                    )
                    raise UpstreamAuthError(
                        f"Failed to get signed URL: {response.status}",
                        status=response.status,
                        service=SERVICE,
                    )
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            logger.error("HTTP error getting signed URL", call_id=call_id, error=str(e))
            raise UpstreamUnavailableError(f"HTTP error: {e}", service=SERVICE)
        except asyncio.TimeoutError:
            logger.error("Timed out getting signed URL", call_id=call_id)
            raise UpstreamUnavailableError("Signed URL request timed out", service=SERVICE)
        except ValueError:
            raise UpstreamUnavailableError("Signed URL response was not JSON", service=SERVICE)

        signed_url = data.get("signed_url") if isinstance(data, dict) else None
        if not signed_url:
            raise UpstreamUnavailableError("No signed_url in response", service=SERVICE)

        logger.info("Got signed URL for agent", call_id=call_id, agent_id=agent_id)
        return signed_url


def _default_connect(config: VoiceAgentConfig) -> Callable[[str], Awaitable[Any]]:
    return functools.partial(
        websockets.connect,
        max_size=16 * 1024 * 1024,
        ping_interval=20,
        ping_timeout=20,
        close_timeout=config.close_timeout_sec,
    )


class VoiceBridge:
    """
    One live ElevenLabs conversation for one call.

    Translates carrier media frames into ``user_audio_chunk`` events and agent
    events back into carrier frames, answers keepalive pings, and appends
    agent/user transcripts to the call's transcript. Audio in either
    direction is dropped, never buffered, while the other side is not ready.
    """

    def __init__(
        self,
        config: VoiceAgentConfig,
        telephony: TelephonyLeg,
        transcript: Transcript,
        *,
        call_id: Optional[str] = None,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.config = config
        self.telephony = telephony
        self.transcript = transcript
        self.call_id = call_id
        self._connect = connect or _default_connect(config)

        self._ws: Any = None
        self._receive_task: Optional[asyncio.Task] = None
        self._opened = False
        self._connected = False
        self._ready = False
        self._closing = False

        self.conversation_id: Optional[str] = None
        self.frames_forwarded = 0
        self.frames_dropped = 0
        self.agent_frames = 0
        self.agent_frames_dropped = 0

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "conversation_initiation_metadata": self._on_initiation_metadata,
            "audio": self._on_audio,
            "interruption": self._on_interruption,
            "ping": self._on_ping,
            "agent_response": self._on_agent_response,
            "user_transcript": self._on_user_transcript,
            "agent_response_correction": self._on_agent_correction,
            "error": self._on_error,
        }

    @property
    def is_open(self) -> bool:
        """True once the initiation handshake is sent and until close."""
        return self._connected and self._ready and not self._closing

    async def open(self, signed_url: str, prompt: str, first_message: str) -> None:
        """
        Connect and send the scenario override before anything else.

        Raises:
            UpstreamUnavailableError: connection failed or timed out
        """
        if self._opened:
            raise RuntimeError("VoiceBridge.open() called twice")
        self._opened = True

        logger.info("Connecting to ElevenLabs Conversational AI", call_id=self.call_id)
        try:
            ws = await asyncio.wait_for(self._connect(signed_url), timeout=self.config.connect_timeout_sec)
        except asyncio.TimeoutError:
            logger.error("ElevenLabs connection timeout", call_id=self.call_id)
            raise UpstreamUnavailableError("ElevenLabs connection timeout", service=SERVICE)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error("ElevenLabs connection failed", call_id=self.call_id, error=str(e))
            raise UpstreamUnavailableError(f"ElevenLabs connection failed: {e}", service=SERVICE)

        self._ws = ws
        if self._closing:
            # Call ended while we were connecting
            await self._close_ws()
            return
        self._connected = True

        init_message = {
            "type": "conversation_initiation_client_data",
            "conversation_config_override": {
                "agent": {
                    "prompt": {"prompt": prompt},
                    "first_message": first_message,
                },
            },
        }
        try:
            await self._ws.send(json.dumps(init_message))
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise UpstreamUnavailableError(f"ElevenLabs closed during handshake: {e}", service=SERVICE)
        self._ready = True
        logger.info(
            "Sent scenario config",
            call_id=self.call_id,
            first_message=first_message[:50],
        )

        self._receive_task = asyncio.create_task(self._receive_loop())

    async def send_user_audio(self, payload: str) -> bool:
        """Forward one carrier audio frame. Dropped unless the bridge is open."""
        if not self.is_open:
            self.frames_dropped += 1
            AUDIO_FRAMES_DROPPED.labels(direction="to_voice_ai").inc()
            return False
        try:
            await self._ws.send(json.dumps({"user_audio_chunk": payload}))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning("ElevenLabs connection lost while sending audio", call_id=self.call_id, error=str(e))
            self._connected = False
            self.frames_dropped += 1
            AUDIO_FRAMES_DROPPED.labels(direction="to_voice_ai").inc()
            return False
        self.frames_forwarded += 1
        return True

    async def close(self) -> None:
        """Tear down the connection. Safe to call more than once."""
        if self._closing:
            return
        self._closing = True
        logger.info("Stopping voice bridge", call_id=self.call_id)

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await asyncio.wait_for(self._receive_task, timeout=2.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        await self._close_ws()
        logger.info(
            "Voice bridge stopped",
            call_id=self.call_id,
            conversation_id=self.conversation_id,
            frames_forwarded=self.frames_forwarded,
            frames_dropped=self.frames_dropped,
            agent_frames=self.agent_frames,
        )

    async def _close_ws(self) -> None:
        self._connected = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.debug("WebSocket close error", call_id=self.call_id, error=str(e))
            self._ws = None

    async def _receive_loop(self) -> None:
        """Process incoming WebSocket messages from ElevenLabs."""
        try:
            async for message in self._ws:
                if self._closing:
                    break
                try:
                    await self.handle_message(message)
                except ProtocolError as e:
                    logger.debug("Ignoring voice AI event", call_id=self.call_id, reason=str(e))
                except Exception as e:
                    logger.error("Error handling voice AI event", call_id=self.call_id, error=str(e), exc_info=True)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info("ElevenLabs WebSocket closed", call_id=self.call_id, reason=str(e))
        except asyncio.CancelledError:
            logger.debug("Receive loop cancelled", call_id=self.call_id)
            raise
        finally:
            self._connected = False
            if not self._closing:
                logger.warning("ElevenLabs disconnected before the call ended", call_id=self.call_id)

    async def handle_message(self, raw_message: Any) -> None:
        """
        Dispatch one voice AI event.

        Raises:
            ProtocolError: invalid JSON or an event type the bridge does not know
        """
        try:
            data = json.loads(raw_message)
        except (TypeError, ValueError):
            raise ProtocolError("Invalid JSON message from voice AI")
        if not isinstance(data, dict):
            raise ProtocolError("Voice AI event must be a JSON object")

        msg_type = data.get("type", "")
        handler = self._handlers.get(msg_type)
        if handler is not None:
            await handler(data)
            return
        if msg_type in _SILENT_EVENT_TYPES:
            return
        raise ProtocolError(f"Unhandled message type: {msg_type!r}")

    async def _on_initiation_metadata(self, data: Dict[str, Any]) -> None:
        metadata = data.get("conversation_initiation_metadata_event") or {}
        self.conversation_id = metadata.get("conversation_id")
        logger.info("Conversation initialized", call_id=self.call_id, conversation_id=self.conversation_id)

    async def _on_audio(self, data: Dict[str, Any]) -> None:
        payload = (data.get("audio_event") or {}).get("audio_base_64")
        if not payload:
            audio = data.get("audio")
            payload = audio.get("chunk") if isinstance(audio, dict) else audio
        if not payload:
            logger.debug("Empty audio event", call_id=self.call_id, keys=list(data.keys()))
            return

        if self.agent_frames == 0:
            logger.info("First agent audio received", call_id=self.call_id)
        self.agent_frames += 1

        if not self.telephony.stream_id:
            self.agent_frames_dropped += 1
            AUDIO_FRAMES_DROPPED.labels(direction="to_telephony").inc()
            logger.info("Received agent audio but no stream SID yet", call_id=self.call_id)
            return
        if not await self.telephony.send_media(payload):
            self.agent_frames_dropped += 1
            AUDIO_FRAMES_DROPPED.labels(direction="to_telephony").inc()

    async def _on_interruption(self, data: Dict[str, Any]) -> None:
        logger.debug("Interruption detected", call_id=self.call_id)
        await self.telephony.send_clear()

    async def _on_ping(self, data: Dict[str, Any]) -> None:
        event_id = (data.get("ping_event") or {}).get("event_id")
        if event_id is None:
            return
        try:
            await self._ws.send(json.dumps({"type": "pong", "event_id": event_id}))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning("Failed to send pong", call_id=self.call_id, error=str(e))

    async def _on_agent_response(self, data: Dict[str, Any]) -> None:
        text = (data.get("agent_response_event") or {}).get("agent_response")
        if text:
            logger.info("Agent response", call_id=self.call_id, text=text[:100])
            self.transcript.append_ai_caller(text)

    async def _on_user_transcript(self, data: Dict[str, Any]) -> None:
        text = (data.get("user_transcription_event") or {}).get("user_transcript")
        if text:
            logger.info("User transcript", call_id=self.call_id, text=text[:100])
            self.transcript.append_trainee(text)

    async def _on_agent_correction(self, data: Dict[str, Any]) -> None:
        correction = data.get("agent_response_correction_event") or {}
        logger.debug(
            "Agent correction",
            call_id=self.call_id,
            original=(correction.get("original_agent_response") or "")[:30],
            corrected=(correction.get("corrected_agent_response") or "")[:30],
        )

    async def _on_error(self, data: Dict[str, Any]) -> None:
        error = data.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        logger.error(
            "ElevenLabs error",
            call_id=self.call_id,
            code=error.get("code", "unknown"),
            message=error.get("message", "Unknown error"),
        )
