"""
Twilio Media Streams frame codec.

Inbound frames are JSON objects tagged by ``event``; each tag is parsed into
its own frozen dataclass so the call session can dispatch on type instead of
poking at nested dicts. Outbound frames (media, clear) are built here
too, and TelephonyLeg wraps the websocket send side with the stream SID it
must be tagged with.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from call_trainer.errors import ProtocolError
from call_trainer.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StreamConnected:
    protocol: str = ""


@dataclass(frozen=True)
class StreamStart:
    stream_sid: str
    call_sid: Optional[str]
    custom_parameters: Dict[str, str] = field(default_factory=dict)
    media_format: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamMedia:
    payload: str
    stream_sid: Optional[str] = None
    track: Optional[str] = None


@dataclass(frozen=True)
class StreamMark:
    name: str
    stream_sid: Optional[str] = None


@dataclass(frozen=True)
class StreamDtmf:
    digit: str
    stream_sid: Optional[str] = None


@dataclass(frozen=True)
class StreamStop:
    stream_sid: Optional[str] = None
    call_sid: Optional[str] = None


TelephonyEvent = Union[StreamConnected, StreamStart, StreamMedia, StreamMark, StreamDtmf, StreamStop]


def _section(frame: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = frame.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(f"'{name}' must be an object")
    return value


def _parse_connected(frame: Dict[str, Any]) -> StreamConnected:
    return StreamConnected(protocol=str(frame.get("protocol") or ""))


def _parse_start(frame: Dict[str, Any]) -> StreamStart:
    start = _section(frame, "start")
    stream_sid = start.get("streamSid") or frame.get("streamSid")
    if not stream_sid:
        raise ProtocolError("start event without streamSid")
    params = start.get("customParameters") or {}
    if not isinstance(params, dict):
        raise ProtocolError("customParameters must be an object")
    return StreamStart(
        stream_sid=str(stream_sid),
        call_sid=start.get("callSid"),
        custom_parameters={str(k): "" if v is None else str(v) for k, v in params.items()},
        media_format=start.get("mediaFormat") or {},
    )


def _parse_media(frame: Dict[str, Any]) -> StreamMedia:
    media = _section(frame, "media")
    payload = media.get("payload")
    if not isinstance(payload, str):
        raise ProtocolError("media event without payload")
    return StreamMedia(payload=payload, stream_sid=frame.get("streamSid"), track=media.get("track"))


def _parse_mark(frame: Dict[str, Any]) -> StreamMark:
    mark = _section(frame, "mark")
    return StreamMark(name=str(mark.get("name") or ""), stream_sid=frame.get("streamSid"))


def _parse_dtmf(frame: Dict[str, Any]) -> StreamDtmf:
    dtmf = _section(frame, "dtmf")
    return StreamDtmf(digit=str(dtmf.get("digit") or ""), stream_sid=frame.get("streamSid"))


def _parse_stop(frame: Dict[str, Any]) -> StreamStop:
    stop = _section(frame, "stop")
    return StreamStop(stream_sid=frame.get("streamSid"), call_sid=stop.get("callSid"))


_PARSERS: Dict[str, Callable[[Dict[str, Any]], TelephonyEvent]] = {
    "connected": _parse_connected,
    "start": _parse_start,
    "media": _parse_media,
    "mark": _parse_mark,
    "dtmf": _parse_dtmf,
    "stop": _parse_stop,
}


def parse_frame(raw: Union[str, bytes, Dict[str, Any]]) -> TelephonyEvent:
    """
    Parse one media-stream frame.

    Raises:
        ProtocolError: invalid JSON, missing/unknown ``event`` tag, or a
            frame missing the fields its tag requires
    """
    if isinstance(raw, dict):
        frame = raw
    else:
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid JSON frame: {e}")
    if not isinstance(frame, dict):
        raise ProtocolError("Frame must be a JSON object")
    event = frame.get("event")
    parser = _PARSERS.get(event)
    if parser is None:
        raise ProtocolError(f"Unknown media stream event: {event!r}")
    return parser(frame)


def media_frame(stream_sid: str, payload: str) -> Dict[str, Any]:
    return {"event": "media", "streamSid": stream_sid, "media": {"payload": payload}}


def clear_frame(stream_sid: str) -> Dict[str, Any]:
    return {"event": "clear", "streamSid": stream_sid}


class TelephonyLeg:
    """
    Send side of one carrier media stream.

    ``stream_id`` stays None until the start event registers it; outbound
    frames are refused (not queued) while it is unknown or after close.
    """

    def __init__(self, send_json: Callable[[Dict[str, Any]], Awaitable[None]]):
        self._send_json = send_json
        self.stream_id: Optional[str] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_closed(self) -> None:
        self._closed = True

    async def send_media(self, payload: str) -> bool:
        """Forward caller audio to the trainee. False when the frame was dropped."""
        if not self.stream_id or self._closed:
            return False
        return await self._send(media_frame(self.stream_id, payload))

    async def send_clear(self) -> bool:
        """Flush audio Twilio has buffered for playback (barge-in)."""
        if not self.stream_id or self._closed:
            return False
        return await self._send(clear_frame(self.stream_id))

    async def _send(self, frame: Dict[str, Any]) -> bool:
        try:
            await self._send_json(frame)
            return True
        except (ConnectionError, RuntimeError) as e:
            # aiohttp raises these once the carrier has hung up
            logger.debug("Telephony send failed; leg closed", stream_id=self.stream_id, error=str(e))
            self._closed = True
            return False
