"""
Security-critical configuration injection.

This module handles:
- Voice AI credentials and agent IDs (ElevenLabs)
- Carrier credentials (Twilio)
- Grading model credentials (OpenAI)
- Deployment overrides (public URL, results endpoint, port)

SECURITY POLICY:
- API keys and auth tokens MUST NEVER be in YAML files
- All credentials come from environment variables only and overwrite YAML
"""

import os
import re
from typing import Any, Dict, Mapping, Optional


# ELEVENLABS_AGENT_ID_<scenario> -> per-scenario agent
_SCENARIO_AGENT_ENV_RE = re.compile(r"^ELEVENLABS_AGENT_ID_(.+)$")


def _is_nonempty_string(val: Any) -> bool:
    """True if val is a string with non-whitespace content."""
    return isinstance(val, str) and val.strip() != ""


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config_data.get(name)
    if not isinstance(section, dict):
        section = {}
    config_data[name] = section
    return section


def _env(name: str, environ: Mapping[str, str]) -> Optional[str]:
    value = environ.get(name)
    return value.strip() if _is_nonempty_string(value) else None


def collect_scenario_agent_ids(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Collect per-scenario agent IDs from ELEVENLABS_AGENT_ID_<scenario> variables.

    Blank values are skipped so they fall through to the default agent.

    Args:
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Mapping of scenario identifier -> agent ID
    """
    environ = os.environ if environ is None else environ
    mapping: Dict[str, str] = {}
    for key, value in environ.items():
        match = _SCENARIO_AGENT_ENV_RE.match(key)
        if match and _is_nonempty_string(value):
            mapping[match.group(1)] = value.strip()
    return mapping


def inject_voice_agent_config(config_data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> None:
    """
    Populate the voice_agent block from the environment.

    Environment variables:
    - ELEVENLABS_API_KEY (required, overrides YAML)
    - ELEVENLABS_AGENT_ID: default agent (overrides YAML default_agent_id)
    - ELEVENLABS_AGENT_ID_<scenario>: per-scenario agents (merged over YAML)

    Args:
        config_data: Configuration dictionary to modify in-place
        environ: Environment mapping (defaults to os.environ)
    """
    environ = os.environ if environ is None else environ
    voice = _section(config_data, 'voice_agent')

    voice['api_key'] = _env("ELEVENLABS_API_KEY", environ)

    default_agent = _env("ELEVENLABS_AGENT_ID", environ)
    if default_agent:
        voice['default_agent_id'] = default_agent
    elif not _is_nonempty_string(voice.get('default_agent_id')):
        voice['default_agent_id'] = ""

    yaml_mapping = voice.get('per_scenario_agent_ids')
    mapping = {
        str(k): str(v).strip()
        for k, v in (yaml_mapping.items() if isinstance(yaml_mapping, dict) else [])
        if _is_nonempty_string(str(v) if v is not None else None)
    }
    mapping.update(collect_scenario_agent_ids(environ))
    voice['per_scenario_agent_ids'] = mapping


def inject_twilio_credentials(config_data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> None:
    """
    Inject carrier credentials from environment variables ONLY.

    Environment variables:
    - TWILIO_ACCOUNT_SID
    - TWILIO_AUTH_TOKEN
    - TWILIO_PHONE_NUMBER (caller ID for outbound calls)
    """
    environ = os.environ if environ is None else environ
    twilio = _section(config_data, 'twilio')
    twilio['account_sid'] = _env("TWILIO_ACCOUNT_SID", environ)
    twilio['auth_token'] = _env("TWILIO_AUTH_TOKEN", environ)
    twilio['phone_number'] = _env("TWILIO_PHONE_NUMBER", environ)


def inject_grading_credentials(config_data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> None:
    """
    Inject the grading model API key (OPENAI_API_KEY) from the environment.

    GRADING_MODEL optionally overrides the YAML model name.
    """
    environ = os.environ if environ is None else environ
    grading = _section(config_data, 'grading')
    grading['api_key'] = _env("OPENAI_API_KEY", environ)
    model = _env("GRADING_MODEL", environ)
    if model:
        grading['model'] = model


def inject_deployment_overrides(config_data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> None:
    """
    Apply deployment-specific overrides.

    Environment variables:
    - PUBLIC_BASE_URL: externally reachable base URL (e.g. an ngrok URL), trailing slash removed
    - FRONTEND_URL: base URL of the analysis storage endpoint
    - PORT: listen port
    """
    environ = os.environ if environ is None else environ

    server = _section(config_data, 'server')
    public_base_url = _env("PUBLIC_BASE_URL", environ)
    if public_base_url:
        server['public_base_url'] = public_base_url.rstrip('/')
    port = _env("PORT", environ)
    if port:
        try:
            server['port'] = int(port)
        except ValueError:
            raise ValueError(f"PORT must be an integer, got {port!r}")

    frontend_url = _env("FRONTEND_URL", environ)
    if frontend_url:
        results = _section(config_data, 'results')
        results['endpoint'] = frontend_url.rstrip('/')
