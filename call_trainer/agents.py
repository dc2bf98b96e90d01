"""Voice agent selection per training scenario."""

from typing import Any

from call_trainer.config import VoiceAgentConfig


def select_agent_id(scenario_id: Any, config: VoiceAgentConfig) -> str:
    """
    Map a scenario identifier to the voice agent that plays its caller.

    Absent, empty or unmapped identifiers get the default agent. Never raises.
    """
    key = "" if scenario_id is None else str(scenario_id).strip()
    if not key:
        return config.default_agent_id
    mapped = (config.per_scenario_agent_ids.get(key) or "").strip()
    return mapped or config.default_agent_id
