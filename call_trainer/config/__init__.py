"""
Configuration package for the call trainer.

This package contains:
- models: Pydantic configuration models and production validation
- loaders: YAML file loading and parsing
- security: Credential, agent ID and deployment override injection
"""

from call_trainer.config.loaders import resolve_config_path, load_yaml_with_env_expansion
from call_trainer.config.models import (
    AnalysisStoreConfig,
    AppConfig,
    GradingConfig,
    LoggingConfig,
    ResultsConfig,
    ServerConfig,
    SessionsConfig,
    TwilioConfig,
    VoiceAgentConfig,
    validate_production_config,
)
from call_trainer.config.security import (
    inject_deployment_overrides,
    inject_grading_credentials,
    inject_twilio_credentials,
    inject_voice_agent_config,
)

DEFAULT_CONFIG_PATH = "config/call-trainer.yaml"


def load_config(path: str = DEFAULT_CONFIG_PATH) -> AppConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        path: Path to YAML configuration file (absolute or relative to project root)

    Returns:
        Validated AppConfig instance

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
    """
    # Phase 1: Load YAML file with environment variable expansion
    path = resolve_config_path(path)
    config_data = load_yaml_with_env_expansion(path)

    # Phase 2: Security - credentials from environment variables only
    inject_voice_agent_config(config_data)
    inject_twilio_credentials(config_data)
    inject_grading_credentials(config_data)

    # Phase 3: Deployment overrides
    inject_deployment_overrides(config_data)

    # Phase 4: Validate and return
    return AppConfig(**config_data)


__all__ = [
    'AnalysisStoreConfig',
    'AppConfig',
    'GradingConfig',
    'LoggingConfig',
    'ResultsConfig',
    'ServerConfig',
    'SessionsConfig',
    'TwilioConfig',
    'VoiceAgentConfig',
    'DEFAULT_CONFIG_PATH',
    'load_config',
    'validate_production_config',
]
