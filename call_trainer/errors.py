"""
Error taxonomy for the call trainer.

Start-call problems (bad input, carrier failures) surface to the HTTP caller.
Everything that goes wrong after a media stream has started is recovered inside
the call session, so those errors are raised and caught internally only.
"""

from typing import Optional


class CallTrainerError(Exception):
    """Base class for all call trainer errors."""


class ValidationError(CallTrainerError):
    """Caller input was rejected before any external call was made."""


class UpstreamAuthError(CallTrainerError):
    """
    An upstream service rejected our credentials or configuration.

    Attributes:
        status: HTTP status returned by the upstream service
        service: Short name of the upstream ("elevenlabs", "twilio", ...)
    """

    def __init__(self, message: str, status: Optional[int] = None, service: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.service = service


class UpstreamUnavailableError(CallTrainerError):
    """Network failure, timeout or 5xx from an upstream service."""

    def __init__(self, message: str, status: Optional[int] = None, service: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.service = service


class ParseError(CallTrainerError):
    """
    The grading model returned something that is not a valid analysis.

    Attributes:
        raw_response: The model output that failed to parse.
    """

    def __init__(self, message: str, raw_response: str = "") -> None:
        super().__init__(message)
        self.raw_response = raw_response


class ProtocolError(CallTrainerError):
    """A telephony frame or voice AI event had an unexpected shape or type."""
