"""Voice AI providers."""

from call_trainer.providers.elevenlabs_agent import SignedUrlRequester, VoiceBridge

__all__ = ["SignedUrlRequester", "VoiceBridge"]
