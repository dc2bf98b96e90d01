"""Emergency-call training bridge: Twilio media streams to ElevenLabs agents, graded by OpenAI."""

__version__ = "0.1.0"
