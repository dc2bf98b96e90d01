"""
Transcript grading via an OpenAI-compatible Chat Completions endpoint.

One request per call, no retries. Any failure (missing key, HTTP error,
timeout, output that is not a valid analysis) yields the fallback result, so
grading always produces something to publish.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import pydantic

from call_trainer.analysis.prompts import (
    build_grading_messages,
    fallback_analysis,
    render_transcript,
    scenario_label,
)
from call_trainer.analysis.schema import AnalysisResult
from call_trainer.config import GradingConfig
from call_trainer.core.models import Transcript, normalize_scenario_id
from call_trainer.errors import CallTrainerError, ParseError, UpstreamAuthError, UpstreamUnavailableError
from call_trainer.logging_config import get_logger
from call_trainer.metrics import GRADING_OUTCOMES

logger = get_logger(__name__)

SERVICE = "openai"


@dataclass
class GradingOutcome:
    result: AnalysisResult
    scenario_name: str
    formatted_transcript: str
    graded: bool
    error: Optional[str] = None


def extract_json_object(text: str) -> str:
    """
    Cut the outermost ``{...}`` out of model output.

    Models sometimes wrap the object in Markdown fences or a sentence of prose
    despite being told not to.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return text.strip()
    return text[start:end + 1]


def parse_analysis(raw: str, scenario_id: Any) -> AnalysisResult:
    """
    Parse and validate model output into an AnalysisResult.

    ``scenarioId`` is always overwritten with the caller-supplied identifier.

    Raises:
        ParseError: not JSON, not an object, or fails schema validation
    """
    if not raw or not raw.strip():
        raise ParseError("Empty grading response", raw_response=raw or "")
    try:
        data = json.loads(extract_json_object(raw))
    except ValueError as e:
        raise ParseError(f"Grading response is not JSON: {e}", raw_response=raw)
    if not isinstance(data, dict):
        raise ParseError("Grading response is not a JSON object", raw_response=raw)

    data["scenarioId"] = normalize_scenario_id(scenario_id)
    try:
        return AnalysisResult.model_validate(data)
    except pydantic.ValidationError as e:
        raise ParseError(f"Grading response failed validation: {e.error_count()} error(s)", raw_response=raw)


class TranscriptGrader:
    """Grades one call transcript per grade() call."""

    def __init__(
        self,
        config: GradingConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def grade(
        self,
        transcript: Transcript,
        scenario_id: Any,
        call_id: Optional[str] = None,
    ) -> GradingOutcome:
        """Grade a transcript. Never raises for upstream or parse failures."""
        scenario_id = normalize_scenario_id(scenario_id)
        scenario_name = scenario_label(scenario_id, transcript.character_prompt)
        formatted = render_transcript(transcript)

        logger.info(
            "Starting analysis",
            call_id=call_id,
            scenario=scenario_name,
            turns=len(transcript),
        )

        try:
            raw = await self._complete(build_grading_messages(formatted, scenario_name), call_id)
            result = parse_analysis(raw, scenario_id)
        except ParseError as e:
            logger.error(
                "Error parsing grading response",
                call_id=call_id,
                error=str(e),
                raw_preview=e.raw_response[:200],
            )
            return self._fallback(scenario_name, scenario_id, formatted, "the grading response could not be parsed")
        except CallTrainerError as e:
            logger.error("Grading request failed", call_id=call_id, error=str(e))
            return self._fallback(scenario_name, scenario_id, formatted, "the grading service was unavailable")

        if not result.scenario:
            result = result.model_copy(update={"scenario": scenario_name})
        GRADING_OUTCOMES.labels(outcome="graded").inc()
        logger.info(
            "Analysis completed",
            call_id=call_id,
            score=result.overall_score,
            pass_fail=result.pass_fail,
            passed=result.passed,
        )
        return GradingOutcome(
            result=result,
            scenario_name=scenario_name,
            formatted_transcript=formatted,
            graded=True,
        )

    def _fallback(self, scenario_name: str, scenario_id: Any, formatted: str, reason: str) -> GradingOutcome:
        GRADING_OUTCOMES.labels(outcome="fallback").inc()
        result = AnalysisResult.model_validate(fallback_analysis(scenario_name, scenario_id, reason))
        return GradingOutcome(
            result=result,
            scenario_name=scenario_name,
            formatted_transcript=formatted,
            graded=False,
            error=reason,
        )

    async def _complete(self, messages: List[Dict[str, str]], call_id: Optional[str]) -> str:
        """
        Single chat completion request.

        Raises:
            UpstreamAuthError: no API key, or 401/403 from the endpoint
            UpstreamUnavailableError: other HTTP errors, network failures, timeouts
            ParseError: the response envelope has no message content
        """
        if not self.config.api_key:
            raise UpstreamAuthError("Grading requires an API key", service=SERVICE)

        payload = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        url = self.config.chat_base_url.rstrip("/") + "/chat/completions"
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)
        session = await self._ensure_session()

        logger.debug(
            "Chat completion request",
            call_id=call_id,
            model=self.config.model,
            temperature=self.config.temperature,
        )
        try:
            async with session.post(url, json=payload, headers=headers, timeout=timeout) as response:
                body = await response.text()
                if response.status >= 400:
                    logger.error(
                        "Chat completion failed",
                        call_id=call_id,
                        status=response.status,
                        body_preview=body[:128],
                    )
                    if response.status in (401, 403):
                        raise UpstreamAuthError("Grading credentials rejected", status=response.status, service=SERVICE)
                    raise UpstreamUnavailableError(
                        f"Chat completion failed: {response.status}",
                        status=response.status,
                        service=SERVICE,
                    )
        except aiohttp.ClientError as e:
            raise UpstreamUnavailableError(f"Chat completion request failed: {e}", service=SERVICE)
        except asyncio.TimeoutError:
            raise UpstreamUnavailableError("Chat completion timed out", service=SERVICE)

        try:
            data = json.loads(body)
        except ValueError:
            raise ParseError("Chat completion envelope is not JSON", raw_response=body)
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices[0], dict):
            raise ParseError("Chat completion returned no choices", raw_response=body)
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise ParseError("Chat completion choice has no message", raw_response=body)
        return message.get("content") or ""
