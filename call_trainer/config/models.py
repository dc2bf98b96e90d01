"""
Configuration models for the call trainer service.

Pydantic v2 models validated once at process start and passed explicitly to
the components that need them. Nothing reads os.environ after load_config().
"""

import os
from typing import Dict, Optional, Tuple, List

from pydantic import BaseModel, Field

from call_trainer.logging_config import get_logger

logger = get_logger(__name__)


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    # Externally reachable URL the carrier uses for TwiML and the media stream.
    # When unset, the Host header of the incoming request is used.
    public_base_url: Optional[str] = None
    media_stream_path: str = Field(default="/outbound-media-stream")


class VoiceAgentConfig(BaseModel):
    """Voice AI agent selection and credentials (ElevenLabs Conversational AI)."""
    api_key: Optional[str] = None
    default_agent_id: str = Field(default="")
    per_scenario_agent_ids: Dict[str, str] = Field(default_factory=dict)
    api_base_url: str = Field(default="https://api.elevenlabs.io")
    signed_url_timeout_sec: float = Field(default=10.0)
    connect_timeout_sec: float = Field(default=10.0)
    close_timeout_sec: float = Field(default=5.0)
    # Spoken when a scenario arrives without a first message
    default_first_message: str = Field(default="Hello, I need help.")


class TwilioConfig(BaseModel):
    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    phone_number: Optional[str] = None
    api_base_url: str = Field(default="https://api.twilio.com/2010-04-01")
    request_timeout_sec: float = Field(default=15.0)


class GradingConfig(BaseModel):
    """Transcript grading via an OpenAI-compatible Chat Completions endpoint."""
    api_key: Optional[str] = None
    chat_base_url: str = Field(default="https://api.openai.com/v1")
    model: str = Field(default="gpt-4-turbo")
    temperature: float = Field(default=0.7)
    max_tokens: int = Field(default=1500)
    timeout_sec: float = Field(default=60.0)


class ResultsConfig(BaseModel):
    """Analysis storage endpoint that receives every graded result."""
    endpoint: str = Field(default="http://localhost:3000")
    timeout_sec: float = Field(default=10.0)


class AnalysisStoreConfig(BaseModel):
    """Local record of graded calls, served by GET /analysis/{call_id}."""
    enabled: bool = Field(default=True)
    db_path: str = Field(default="data/analysis.db")


class SessionsConfig(BaseModel):
    # Dialled calls whose media stream never started are forgotten after this
    pending_dial_ttl_sec: float = Field(default=600.0)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    voice_agent: VoiceAgentConfig = Field(default_factory=VoiceAgentConfig)
    twilio: TwilioConfig = Field(default_factory=TwilioConfig)
    grading: GradingConfig = Field(default_factory=GradingConfig)
    results: ResultsConfig = Field(default_factory=ResultsConfig)
    analysis_store: AnalysisStoreConfig = Field(default_factory=AnalysisStoreConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def validate_production_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Validate configuration before the service starts.

    Args:
        config: AppConfig instance to validate

    Returns:
        (errors, warnings): Errors block startup, warnings are logged only.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not config.voice_agent.api_key:
        errors.append("ELEVENLABS_API_KEY is not set")
    if not config.voice_agent.default_agent_id:
        errors.append("ELEVENLABS_AGENT_ID is not set")

    twilio = config.twilio
    if not twilio.account_sid or not twilio.auth_token or not twilio.phone_number:
        errors.append("TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER are required")
    elif not twilio.account_sid.startswith("AC"):
        errors.append('Invalid TWILIO_ACCOUNT_SID: must start with "AC"')

    if not config.grading.api_key:
        errors.append("OPENAI_API_KEY is not set")

    if not config.server.public_base_url:
        warnings.append("PUBLIC_BASE_URL not set; TwiML URLs will be derived from the request Host header")

    if str(os.getenv('LOG_LEVEL', config.logging.level)).lower() == 'debug':
        warnings.append("Debug logging enabled (transcripts will appear in logs)")

    if not config.analysis_store.enabled:
        warnings.append("Analysis store disabled; GET /analysis/{call_id} will always return 404")

    return errors, warnings
