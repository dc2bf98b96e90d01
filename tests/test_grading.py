"""
Tests for transcript grading and result delivery.

Covers transcript rendering, schema repair, the fallback result and the
single-shot chat completion request against an in-process fake endpoint.
"""

import json

import pytest

from call_trainer.analysis.grader import TranscriptGrader, extract_json_object, parse_analysis
from call_trainer.analysis.prompts import render_transcript, scenario_label
from call_trainer.analysis.publisher import ResultPublisher
from call_trainer.analysis.schema import AnalysisResult
from call_trainer.config import GradingConfig, ResultsConfig
from call_trainer.core.models import Transcript
from call_trainer.errors import ParseError


@pytest.fixture
def transcript():
    t = Transcript("You are Mary. Your husband has collapsed in the kitchen.", "Help me please")
    t.append_trainee("Ambulance, what is the address?")
    t.append_ai_caller("12 High Street.")
    return t


@pytest.fixture
def grading_config(upstream):
    return GradingConfig(api_key="sk-test", chat_base_url=f"{upstream.base_url}/v1", timeout_sec=5)


class TestRenderTranscript:
    """Transcript text the grading model reads."""

    def test_layout_and_role_labels(self, transcript):
        rendered = render_transcript(transcript)

        assert rendered == (
            "CALL TRANSCRIPT:\n"
            "\n"
            "SCENARIO DETAILS: You are Mary. Your husband has collapsed in the kitchen.\n"
            "\n"
            "CONVERSATION:\n"
            "[CALLER]: Help me please\n"
            "[RESPONDER]: Ambulance, what is the address?\n"
            "[CALLER]: 12 High Street.\n"
        )

    def test_scenario_label_from_id_and_first_sentence(self):
        assert scenario_label(1, "You are Mary. Your husband collapsed.") == "Scenario 1: You are Mary"

    def test_scenario_label_truncates_first_sentence(self):
        label = scenario_label(None, "x" * 80 + ". rest")
        assert label == "x" * 50

    def test_scenario_label_without_anything(self):
        assert scenario_label(None, "") == "Unknown scenario"
        assert scenario_label(4, "") == "Scenario 4"


class TestParseAnalysis:
    """Schema validation and repair."""

    def test_valid_json(self, passing_analysis):
        result = parse_analysis(json.dumps(passing_analysis), "1")

        assert result.scenario_id == 1
        assert result.overall_score == 8
        assert result.passed is True

    def test_scenario_id_overwritten(self, passing_analysis):
        payload = dict(passing_analysis, scenarioId=42)

        result = parse_analysis(json.dumps(payload), 7)

        assert result.scenario_id == 7

    def test_code_fences_and_prose_stripped(self, passing_analysis):
        raw = "Here is the analysis:\n```json\n" + json.dumps(passing_analysis) + "\n```\nThanks!"

        result = parse_analysis(raw, 1)

        assert result.pass_fail == "PASS"

    def test_sloppy_values_repaired(self, passing_analysis):
        payload = dict(
            passing_analysis,
            overall_rating={"score": "14", "summary": "x"},
            strengths=None,
            information_handling=None,
            efficiency={"response_time_rating": -3},
            pass_fail=" pass ",
        )

        result = parse_analysis(json.dumps(payload), 1)

        assert result.overall_score == 10
        assert result.strengths == []
        assert result.information_handling.gathered_correctly == []
        assert result.efficiency.response_time_rating == 0
        assert result.pass_fail == "PASS"

    def test_not_json_raises(self):
        with pytest.raises(ParseError) as exc_info:
            parse_analysis("I cannot grade this call.", 1)
        assert exc_info.value.raw_response == "I cannot grade this call."

    def test_schema_violation_raises(self, passing_analysis):
        payload = dict(passing_analysis, pass_fail="MAYBE")

        with pytest.raises(ParseError):
            parse_analysis(json.dumps(payload), 1)

    def test_missing_rating_raises(self, passing_analysis):
        payload = {k: v for k, v in passing_analysis.items() if k != "overall_rating"}

        with pytest.raises(ParseError):
            parse_analysis(json.dumps(payload), 1)

    def test_extract_json_object(self):
        assert extract_json_object('noise {"a": {"b": 1}} trailing') == '{"a": {"b": 1}}'
        assert extract_json_object("no braces") == "no braces"

    def test_wire_payload_uses_camel_case_id(self, passing_analysis):
        result = parse_analysis(json.dumps(passing_analysis), "3")

        payload = result.to_payload()

        assert payload["scenarioId"] == 3
        assert "scenario_id" not in payload
        assert payload["overall_rating"] == {"score": 8, "summary": "Calm and structured call handling"}


class TestTranscriptGrader:
    """Single-shot grading against a fake chat completions endpoint."""

    @pytest.mark.asyncio
    async def test_successful_grade(self, upstream, grading_config, transcript):
        grader = TranscriptGrader(grading_config)
        try:
            outcome = await grader.grade(transcript, "1", call_id="CA1")
        finally:
            await grader.close()

        assert outcome.graded is True
        assert outcome.error is None
        assert outcome.result.scenario_id == 1
        assert outcome.result.pass_fail == "PASS"

        assert len(upstream.grading_requests) == 1
        request = upstream.grading_requests[0]
        assert request["model"] == "gpt-4-turbo"
        assert request["temperature"] == 0.7
        assert request["max_tokens"] == 1500
        system, user = request["messages"]
        assert system["role"] == "system"
        assert "[RESPONDER]: Ambulance, what is the address?" in system["content"]
        assert "Scenario 1: You are Mary" in system["content"]
        assert user["role"] == "user"

    @pytest.mark.asyncio
    async def test_non_json_response_falls_back(self, upstream, grading_config, transcript):
        upstream.grading_content = "Sorry, I can't help with that."
        grader = TranscriptGrader(grading_config)
        try:
            outcome = await grader.grade(transcript, "2")
        finally:
            await grader.close()

        assert outcome.graded is False
        assert outcome.error == "the grading response could not be parsed"
        assert outcome.result.pass_fail == "FAIL"
        assert outcome.result.overall_score == 0
        assert outcome.result.efficiency.response_time_rating == 0
        assert outcome.result.scenario_id == 2
        assert "automated analysis failed" in outcome.result.final_recommendation.lower()

    @pytest.mark.asyncio
    async def test_upstream_error_falls_back_without_retry(self, upstream, grading_config, transcript):
        upstream.grading_status = 500
        grader = TranscriptGrader(grading_config)
        try:
            outcome = await grader.grade(transcript, 5)
        finally:
            await grader.close()

        assert len(upstream.grading_requests) == 1
        assert outcome.graded is False
        assert outcome.error == "the grading service was unavailable"
        assert outcome.result.pass_fail == "FAIL"
        assert outcome.result.scenario_id == 5

    @pytest.mark.asyncio
    async def test_missing_api_key_falls_back_without_request(self, upstream, transcript):
        grader = TranscriptGrader(GradingConfig(api_key=None, chat_base_url=f"{upstream.base_url}/v1"))
        try:
            outcome = await grader.grade(transcript, None)
        finally:
            await grader.close()

        assert upstream.grading_requests == []
        assert outcome.result.pass_fail == "FAIL"
        assert outcome.result.scenario_id is None

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_falls_back(self, transcript):
        grader = TranscriptGrader(GradingConfig(api_key="sk", chat_base_url="http://127.0.0.1:9/v1", timeout_sec=2))
        try:
            outcome = await grader.grade(transcript, 1)
        finally:
            await grader.close()

        assert outcome.graded is False
        assert outcome.result.final_recommendation


class TestResultPublisher:
    """Delivery to the storage endpoint."""

    @pytest.fixture
    def result(self, passing_analysis) -> AnalysisResult:
        return AnalysisResult.model_validate(dict(passing_analysis, scenarioId=1))

    @pytest.mark.asyncio
    async def test_publish_posts_wire_payload(self, upstream, result):
        publisher = ResultPublisher(ResultsConfig(endpoint=upstream.base_url + "/"))
        try:
            delivered = await publisher.publish(result, call_id="CA1")
        finally:
            await publisher.close()

        assert delivered is True
        assert upstream.published[0]["scenarioId"] == 1
        assert upstream.published[0]["pass_fail"] == "PASS"

    @pytest.mark.asyncio
    async def test_rejection_is_swallowed(self, upstream, result):
        upstream.publish_status = 500
        publisher = ResultPublisher(ResultsConfig(endpoint=upstream.base_url))
        try:
            delivered = await publisher.publish(result)
        finally:
            await publisher.close()

        assert delivered is False
        assert len(upstream.published) == 1

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_is_swallowed(self, result):
        publisher = ResultPublisher(ResultsConfig(endpoint="http://127.0.0.1:9", timeout_sec=2))
        try:
            delivered = await publisher.publish(result)
        finally:
            await publisher.close()

        assert delivered is False
