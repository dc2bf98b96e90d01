"""
Structured Logging Configuration

Configures structlog on top of stdlib logging. Events carry timestamps, log
level, the emitting component and a per-call correlation ID, and are rendered
as JSON (default) or colorized console output depending on LOG_FORMAT.
"""

import os
import logging
import sys
import contextvars
import uuid

import structlog
from structlog import dev as structlog_dev

# Context variable for correlation ID (one per call session)
correlation_id_var = contextvars.ContextVar('correlation_id', default=None)

SERVICE_NAME = 'call-trainer'

# Keys whose values never reach the logs (compared with separators removed)
SENSITIVE_KEYS = {
    'api_key', 'apikey', 'xi-api-key',
    'token', 'auth_token', 'access_token', 'bearer',
    'password', 'secret', 'authorization', 'auth',
    'credential', 'credentials',
    'signed_url',
}


def get_correlation_id():
    """Get the current correlation ID."""
    return correlation_id_var.get()


def set_correlation_id(value=None):
    """Set the correlation ID, generating one when no value is given."""
    if value is None:
        value = str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def add_correlation_id(logger, method_name, event_dict):
    """Add correlation ID to the log record."""
    correlation_id = get_correlation_id()
    if correlation_id:
        event_dict['correlation_id'] = correlation_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    """Add service and component names to the log record."""
    event_dict['service'] = SERVICE_NAME
    component = event_dict.get('logger')
    if not component:
        component = getattr(getattr(logger, 'logger', None), 'name', None) or 'unknown'
    event_dict['component'] = component
    return event_dict


def _is_sensitive(key) -> bool:
    normalized = str(key).lower().replace('_', '').replace('-', '')
    for pattern in SENSITIVE_KEYS:
        pattern_normalized = pattern.replace('_', '').replace('-', '')
        # Exact or suffix match, so "passthrough" does not match "pass"
        if normalized == pattern_normalized or normalized.endswith(pattern_normalized):
            return True
    return False


def _redact_value(value):
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        if not value:
            return ''
        # First 2 chars survive so operators can tell key families apart
        if len(value) > 4:
            return f"{value[:2]}***REDACTED***"
        return "***REDACTED***"
    if isinstance(value, (list, tuple)):
        return [_redact_value(v) for v in value]
    return "***REDACTED***"


def _sanitize(data):
    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if _is_sensitive(key):
                sanitized[key] = _redact_value(value)
            else:
                sanitized[key] = _sanitize(value)
        return sanitized
    if isinstance(data, (list, tuple)):
        return [_sanitize(v) for v in data]
    return data


def sanitize_secrets(logger, method_name, event_dict):
    """
    Redact credentials from log events.

    API keys, auth tokens, passwords and signed websocket URLs are replaced
    with '***REDACTED***' while the rest of the event is preserved. Nested
    dicts and lists are walked recursively.
    """
    return _sanitize(event_dict)


def configure_logging(log_level="INFO"):
    """
    Set up structured logging.

    Environment overrides (optional):
      - LOG_LEVEL: debug|info|warning|error|critical (default: INFO)
      - LOG_FORMAT: json|console (default: json)
      - LOG_COLOR:  0|1 (console only; default: 1)
      - LOG_SHOW_TRACEBACKS: auto|always|never (default: auto, debug only)
    """
    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        log_level = env_level
    log_level_upper = str(log_level).upper()
    log_format = os.getenv("LOG_FORMAT", "json").strip().lower()
    log_color = os.getenv("LOG_COLOR", "1").strip() not in ("0", "false", "False")

    tb_mode = os.getenv("LOG_SHOW_TRACEBACKS", "auto").strip().lower()
    if tb_mode == "always":
        show_tracebacks = True
    elif tb_mode == "never":
        show_tracebacks = False
    else:
        show_tracebacks = (log_level_upper == "DEBUG")

    def suppress_exc_info_if_disabled(logger, method_name, event_dict):
        """Remove exc_info from event when tracebacks are disabled by policy."""
        if not show_tracebacks and event_dict.get("exc_info"):
            event_dict.pop("exc_info", None)
        return event_dict

    level_value = getattr(logging, log_level_upper, logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            add_correlation_id,
            sanitize_secrets,
            suppress_exc_info_if_disabled,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog_dev.ConsoleRenderer(colors=log_color) if log_format == "console" else structlog.processors.JSONRenderer()

    # Same formatter for structlog events and foreign (aiohttp, websockets) records
    processor_formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_value)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(processor_formatter)
    root_logger.addHandler(console_handler)

    # Reduce noisy third-party loggers
    for name in ('websockets', 'websockets.client', 'aiohttp', 'aiohttp.access', 'asyncio'):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a structlog logger."""
    return structlog.get_logger(name)
