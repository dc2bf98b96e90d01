"""
Analysis Result schema.

Field names match the JSON the grading model is asked to produce and the
storage endpoint consumes (snake_case sections, camelCase ``scenarioId``).
The validators repair the usual model sloppiness (stringly numbers, lowercase
verdicts, nulls for empty lists) so that only structurally wrong output is
rejected.
"""

from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_SCORE = 0
MAX_SCORE = 10


def clamp_score(value: Any) -> Any:
    if value is None:
        return MIN_SCORE
    if isinstance(value, bool):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        # Let pydantic report the type error
        return value
    return int(max(MIN_SCORE, min(MAX_SCORE, round(number))))


def string_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [item if isinstance(item, str) else str(item) for item in value if item is not None]
    return value


class OverallRating(BaseModel):
    model_config = ConfigDict(extra="ignore")

    score: int = Field(ge=MIN_SCORE, le=MAX_SCORE)
    summary: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def repair_score(cls, value: Any) -> Any:
        return clamp_score(value)


class InformationHandling(BaseModel):
    model_config = ConfigDict(extra="ignore")

    gathered_correctly: List[str] = Field(default_factory=list)
    missed_or_incorrect: List[str] = Field(default_factory=list)

    @field_validator("gathered_correctly", "missed_or_incorrect", mode="before")
    @classmethod
    def repair_lists(cls, value: Any) -> Any:
        return string_list(value)


class ActionAssessment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    appropriate_actions: List[str] = Field(default_factory=list)
    inappropriate_actions: List[str] = Field(default_factory=list)

    @field_validator("appropriate_actions", "inappropriate_actions", mode="before")
    @classmethod
    def repair_lists(cls, value: Any) -> Any:
        return string_list(value)


class Efficiency(BaseModel):
    model_config = ConfigDict(extra="ignore")

    response_time_rating: int = Field(default=MIN_SCORE, ge=MIN_SCORE, le=MAX_SCORE)
    comments: str = ""

    @field_validator("response_time_rating", mode="before")
    @classmethod
    def repair_rating(cls, value: Any) -> Any:
        return clamp_score(value)


class AnalysisResult(BaseModel):
    """Graded outcome of one training call."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scenario_id: Optional[Union[int, str]] = Field(default=None, alias="scenarioId")
    scenario: str = ""
    overall_rating: OverallRating
    strengths: List[str] = Field(default_factory=list)
    areas_for_improvement: List[str] = Field(default_factory=list)
    information_handling: InformationHandling = Field(default_factory=InformationHandling)
    action_assessment: ActionAssessment = Field(default_factory=ActionAssessment)
    efficiency: Efficiency = Field(default_factory=Efficiency)
    final_recommendation: str = ""
    pass_fail: Literal["PASS", "FAIL"]

    @field_validator("strengths", "areas_for_improvement", mode="before")
    @classmethod
    def repair_lists(cls, value: Any) -> Any:
        return string_list(value)

    @field_validator("information_handling", "action_assessment", "efficiency", mode="before")
    @classmethod
    def repair_sections(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("final_recommendation", "scenario", mode="before")
    @classmethod
    def repair_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("pass_fail", mode="before")
    @classmethod
    def repair_verdict(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def overall_score(self) -> int:
        return self.overall_rating.score

    @property
    def passed(self) -> bool:
        return self.pass_fail == "PASS"

    def to_payload(self) -> dict:
        """JSON-ready dict in the wire format."""
        return self.model_dump(by_alias=True, mode="json")
