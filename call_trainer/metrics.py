"""Prometheus metrics for the call trainer (served at /metrics)."""

from prometheus_client import Counter, Gauge

ACTIVE_SESSIONS = Gauge(
    "call_trainer_active_sessions",
    "Call sessions with a live media stream or grading in progress",
)
SESSIONS_FINISHED = Counter(
    "call_trainer_sessions_total",
    "Call sessions by terminal state",
    ["state"],
)
GRADING_OUTCOMES = Counter(
    "call_trainer_gradings_total",
    "Transcript gradings by outcome (graded or fallback)",
    ["outcome"],
)
AUDIO_FRAMES_DROPPED = Counter(
    "call_trainer_audio_frames_dropped_total",
    "Audio frames dropped because the other leg was not ready",
    ["direction"],
)
PUBLISH_FAILURES = Counter(
    "call_trainer_publish_failures_total",
    "Analysis results the storage endpoint did not accept",
)
