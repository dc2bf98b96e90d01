"""Tests for scenario, transcript and agent selection."""

import pytest

from call_trainer.agents import select_agent_id
from call_trainer.config import VoiceAgentConfig
from call_trainer.core.models import (
    ScenarioContext,
    Transcript,
    TranscriptRole,
    normalize_scenario_id,
)
from call_trainer.errors import ValidationError


@pytest.fixture
def voice_config():
    return VoiceAgentConfig(
        api_key="xi",
        default_agent_id="agent_default",
        per_scenario_agent_ids={"1": "agent_one", "2": "  ", "cardiac": " agent_cardiac "},
    )


class TestSelectAgentId:
    """Scenario -> voice agent mapping."""

    @pytest.mark.parametrize("scenario_id", [None, "", "   ", "99", 99])
    def test_absent_or_unmapped_uses_default(self, voice_config, scenario_id):
        assert select_agent_id(scenario_id, voice_config) == "agent_default"

    def test_mapped_numeric_id(self, voice_config):
        assert select_agent_id(1, voice_config) == "agent_one"
        assert select_agent_id("1", voice_config) == "agent_one"

    def test_blank_mapping_counts_as_unmapped(self, voice_config):
        assert select_agent_id(2, voice_config) == "agent_default"

    def test_mapping_is_trimmed(self, voice_config):
        assert select_agent_id(" cardiac ", voice_config) == "agent_cardiac"


class TestNormalizeScenarioId:
    """Carrier metadata turns ids into strings; these must compare equal downstream."""

    @pytest.mark.parametrize("raw,expected", [
        (1, 1),
        ("1", 1),
        (" 12 ", 12),
        (3.0, 3),
        ("-4", -4),
        ("cardiac", "cardiac"),
        ("--1", "--1"),
        ("1-2", "1-2"),
        ("²", "²"),
        ("١٢", "١٢"),
        ("", None),
        ("   ", None),
        (None, None),
        (True, None),
    ])
    def test_normalization(self, raw, expected):
        assert normalize_scenario_id(raw) == expected


class TestScenarioContext:
    """Tests for ScenarioContext construction."""

    def test_from_request(self):
        scenario = ScenarioContext.from_request({
            "number": " +447700900123 ",
            "prompt": "You are Mary.",
            "first_message": "Help!",
            "scenarioId": "1",
        })

        assert scenario.destination_number == "+447700900123"
        assert scenario.character_prompt == "You are Mary."
        assert scenario.first_utterance == "Help!"
        assert scenario.scenario_id == 1

    @pytest.mark.parametrize("raw", ["--1", "²"])
    def test_non_integer_ids_kept_as_text(self, raw):
        scenario = ScenarioContext.from_request({"number": "+447700900123", "scenarioId": raw})
        rebuilt = ScenarioContext.from_stream_parameters(scenario.to_stream_parameters())

        assert scenario.scenario_id == raw
        assert rebuilt.scenario_id == raw

    @pytest.mark.parametrize("body", [{}, {"number": ""}, {"number": "   "}, {"number": None}])
    def test_missing_number_rejected(self, body):
        with pytest.raises(ValidationError, match="Phone number is required"):
            ScenarioContext.from_request(body)

    def test_non_object_body_rejected(self):
        with pytest.raises(ValidationError):
            ScenarioContext.from_request(["+447700900123"])

    def test_stream_parameters_round_trip(self):
        scenario = ScenarioContext(scenario_id=3, character_prompt="p", first_utterance="f")

        params = scenario.to_stream_parameters()
        assert params == {"prompt": "p", "first_message": "f", "scenarioId": "3"}
        assert ScenarioContext.from_stream_parameters(params).scenario_id == 3

    def test_stream_parameters_fall_back_to_dialled_scenario(self):
        dialled = ScenarioContext(
            scenario_id=5,
            character_prompt="dialled prompt",
            first_utterance="dialled first",
            destination_number="+15550001111",
        )

        rebuilt = ScenarioContext.from_stream_parameters({"prompt": "echoed prompt"}, fallback=dialled)

        assert rebuilt.character_prompt == "echoed prompt"
        assert rebuilt.first_utterance == "dialled first"
        assert rebuilt.scenario_id == 5
        assert rebuilt.destination_number == "+15550001111"


class TestTranscript:
    """Tests for the append-only transcript."""

    def test_first_two_turns_fixed(self):
        transcript = Transcript("You are Mary.", "Help me please")

        turns = transcript.turns
        assert turns[0].role == TranscriptRole.NARRATION
        assert turns[0].text == "You are Mary."
        assert turns[1].role == TranscriptRole.AI_CALLER
        assert turns[1].text == "Help me please"

    def test_appends_in_order(self):
        transcript = Transcript("p", "f")
        transcript.append_ai_caller("one")
        transcript.append_trainee("two")
        transcript.append_ai_caller("three")

        assert [t.text for t in transcript] == ["p", "f", "one", "two", "three"]
        assert [t.role for t in transcript.conversation()] == [
            TranscriptRole.AI_CALLER,
            TranscriptRole.AI_CALLER,
            TranscriptRole.TRAINEE,
            TranscriptRole.AI_CALLER,
        ]

    def test_to_list(self):
        transcript = Transcript("p", "f")
        transcript.append_trainee("t")

        assert transcript.to_list() == [
            {"role": "narration", "text": "p"},
            {"role": "ai_caller", "text": "f"},
            {"role": "trainee", "text": "t"},
        ]

    def test_turns_snapshot_is_immutable(self):
        transcript = Transcript("p", "f")
        snapshot = transcript.turns
        transcript.append_trainee("later")

        assert len(snapshot) == 2
        assert len(transcript) == 3
