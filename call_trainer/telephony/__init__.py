"""Carrier integration: outbound call creation, TwiML and the media stream codec."""

from call_trainer.telephony.media_stream import (
    StreamConnected,
    StreamDtmf,
    StreamMark,
    StreamMedia,
    StreamStart,
    StreamStop,
    TelephonyEvent,
    TelephonyLeg,
    parse_frame,
)
from call_trainer.telephony.twilio_client import TwilioClient

__all__ = [
    "StreamConnected",
    "StreamDtmf",
    "StreamMark",
    "StreamMedia",
    "StreamStart",
    "StreamStop",
    "TelephonyEvent",
    "TelephonyLeg",
    "TwilioClient",
    "parse_frame",
]
