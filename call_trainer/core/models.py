"""
Core data models for the call trainer.

Typed structures shared by the call session, the voice bridge and the grading
pipeline: the immutable scenario handed in by the start-call request, the
append-only transcript, and the session lifecycle states.
"""

from dataclasses import dataclass
from enum import Enum
import re
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from call_trainer.errors import ValidationError

ScenarioId = Union[int, str]

_INTEGER_ID_RE = re.compile(r"-?[0-9]+")


def normalize_scenario_id(raw: Any) -> Optional[ScenarioId]:
    """
    Canonical form of a scenario identifier.

    Identifiers travel through carrier metadata as strings, so "1" and 1 must
    compare equal downstream. Integral values become ints, other non-empty
    values are kept as stripped strings, and empty values become None.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() else str(raw)
    text = str(raw).strip()
    if not text:
        return None
    if _INTEGER_ID_RE.fullmatch(text):
        return int(text)
    return text


@dataclass(frozen=True)
class ScenarioContext:
    """Immutable input to one training call."""
    scenario_id: Optional[ScenarioId]
    character_prompt: str = ""
    first_utterance: str = ""
    destination_number: Optional[str] = None

    @classmethod
    def from_request(cls, body: Any) -> "ScenarioContext":
        """Build a scenario from a start-call request body.

        Raises:
            ValidationError: body is not an object or has no destination number
        """
        if not isinstance(body, Mapping):
            raise ValidationError("Request body must be a JSON object")
        number = body.get("number")
        if not isinstance(number, str) or not number.strip():
            raise ValidationError("Phone number is required")
        return cls(
            scenario_id=normalize_scenario_id(body.get("scenarioId")),
            character_prompt=str(body.get("prompt") or ""),
            first_utterance=str(body.get("first_message") or ""),
            destination_number=number.strip(),
        )

    @classmethod
    def from_stream_parameters(
        cls,
        params: Optional[Mapping[str, Any]],
        fallback: Optional["ScenarioContext"] = None,
    ) -> "ScenarioContext":
        """Rebuild a scenario from media-stream custom parameters.

        Parameters echoed by the carrier win; a fallback (the scenario that was
        dialled) fills anything the carrier dropped.
        """
        params = params or {}
        fallback = fallback or cls(scenario_id=None)
        scenario_id = normalize_scenario_id(params.get("scenarioId"))
        return cls(
            scenario_id=scenario_id if scenario_id is not None else fallback.scenario_id,
            character_prompt=str(params.get("prompt") or fallback.character_prompt or ""),
            first_utterance=str(params.get("first_message") or fallback.first_utterance or ""),
            destination_number=fallback.destination_number,
        )

    def to_stream_parameters(self) -> Dict[str, str]:
        """Parameters carried through the carrier to the stream start event."""
        return {
            "prompt": self.character_prompt,
            "first_message": self.first_utterance,
            "scenarioId": "" if self.scenario_id is None else str(self.scenario_id),
        }


class TranscriptRole(str, Enum):
    NARRATION = "narration"
    AI_CALLER = "ai_caller"
    TRAINEE = "trainee"


@dataclass(frozen=True)
class TranscriptTurn:
    role: TranscriptRole
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "text": self.text}


class Transcript:
    """
    Append-only conversation record.

    The first two turns are fixed at construction: the character prompt as
    narration, then the scripted first utterance spoken by the AI caller.
    Later turns are appended in voice AI event order and never reordered.
    """

    def __init__(self, character_prompt: str, first_utterance: str):
        self._turns: List[TranscriptTurn] = [
            TranscriptTurn(TranscriptRole.NARRATION, character_prompt),
            TranscriptTurn(TranscriptRole.AI_CALLER, first_utterance),
        ]

    def append_ai_caller(self, text: str) -> None:
        self._turns.append(TranscriptTurn(TranscriptRole.AI_CALLER, text))

    def append_trainee(self, text: str) -> None:
        self._turns.append(TranscriptTurn(TranscriptRole.TRAINEE, text))

    @property
    def turns(self) -> Tuple[TranscriptTurn, ...]:
        return tuple(self._turns)

    @property
    def character_prompt(self) -> str:
        return self._turns[0].text

    def conversation(self) -> Tuple[TranscriptTurn, ...]:
        """Spoken turns only (everything after the narration turn)."""
        return tuple(self._turns[1:])

    def to_list(self) -> List[Dict[str, str]]:
        return [turn.to_dict() for turn in self._turns]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[TranscriptTurn]:
        return iter(tuple(self._turns))


class CallState(str, Enum):
    CREATED = "created"
    DIALING = "dialing"
    STREAMING = "streaming"
    GRADING = "grading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SessionStats:
    """Per-session counters, logged when the session ends."""
    media_frames_in: int = 0
    media_frames_forwarded: int = 0
    media_frames_dropped: int = 0
    agent_audio_frames: int = 0
    agent_audio_dropped: int = 0
