"""TwiML and URL helpers for the outbound call flow."""

import re
from typing import Mapping, Optional
from urllib.parse import urlencode
from xml.sax.saxutils import quoteattr

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def _attr(value: str) -> str:
    return quoteattr(value, {'"': "&quot;"})


def http_base_url(public_base_url: Optional[str], host_header: str) -> str:
    """Externally reachable https base, without trailing slash."""
    if public_base_url:
        base = public_base_url.strip().rstrip("/")
        return base if _SCHEME_RE.match(base) else f"https://{base}"
    return f"https://{host_header}"


def websocket_base_url(public_base_url: Optional[str], host_header: str) -> str:
    """Same host as http_base_url, on the wss scheme."""
    base = http_base_url(public_base_url, host_header)
    return re.sub(r"^https?://", "wss://", base)


def twiml_callback_url(base_url: str, stream_parameters: Mapping[str, str], path: str = "/outbound-call-twiml") -> str:
    """URL Twilio fetches on answer; the scenario rides along in the query string."""
    return f"{base_url}{path}?{urlencode(dict(stream_parameters))}"


def build_stream_twiml(stream_url: str, parameters: Mapping[str, str]) -> str:
    """
    TwiML that connects the answered call to a bidirectional media stream.

    Each parameter is echoed back by Twilio in the stream's start event under
    ``customParameters``. Values are XML-escaped.
    """
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        "<Response>",
        "  <Connect>",
        f"    <Stream url={_attr(stream_url)}>",
    ]
    for name, value in parameters.items():
        lines.append(f"      <Parameter name={_attr(name)} value={_attr(value or '')} />")
    lines.extend([
        "    </Stream>",
        "  </Connect>",
        "</Response>",
    ])
    return "\n".join(lines)
