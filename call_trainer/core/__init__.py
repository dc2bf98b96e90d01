"""Call session lifecycle: data models, state machine, registry and record store."""

from call_trainer.core.models import (
    CallState,
    ScenarioContext,
    SessionStats,
    Transcript,
    TranscriptRole,
    TranscriptTurn,
    normalize_scenario_id,
)

__all__ = [
    "CallState",
    "ScenarioContext",
    "SessionStats",
    "Transcript",
    "TranscriptRole",
    "TranscriptTurn",
    "normalize_scenario_id",
]
