"""Transcript rendering and the grading prompt."""

from typing import Any, Dict, List, Optional

from call_trainer.core.models import Transcript, TranscriptRole

UNKNOWN_SCENARIO = "Unknown scenario"

_ROLE_LABELS = {
    TranscriptRole.AI_CALLER: "CALLER",
    TranscriptRole.TRAINEE: "RESPONDER",
}

GRADING_USER_MESSAGE = "Please provide your detailed analysis of this emergency training call."

_SCHEMA_TEMPLATE = """{{
  "scenario": "{scenario}",
  "overall_rating": {{
    "score": 1-10,
    "summary": "Brief explanation of the rating"
  }},
  "strengths": [
    "Specific strength 1",
    "Specific strength 2",
    "..."
  ],
  "areas_for_improvement": [
    "Specific area 1",
    "Specific area 2",
    "..."
  ],
  "information_handling": {{
    "gathered_correctly": ["Info item 1", "Info item 2"],
    "missed_or_incorrect": ["Info item 1", "Info item 2"]
  }},
  "action_assessment": {{
    "appropriate_actions": ["Action 1", "Action 2"],
    "inappropriate_actions": ["Action 1", "Action 2"]
  }},
  "efficiency": {{
    "response_time_rating": 1-10,
    "comments": "Comments on efficiency"
  }},
  "final_recommendation": "Detailed training recommendation paragraph",
  "pass_fail": "PASS" or "FAIL"
}}"""


def scenario_label(scenario_id: Any, character_prompt: str) -> str:
    """
    Human-readable scenario name for the grading prompt and stored record.

    Built from the scenario id and the first sentence of the character prompt
    (truncated to 50 characters).
    """
    first_sentence = (character_prompt or "").split(".")[0].strip()[:50]
    has_id = scenario_id is not None and str(scenario_id).strip() != ""
    if has_id and first_sentence:
        return f"Scenario {scenario_id}: {first_sentence}"
    if has_id:
        return f"Scenario {scenario_id}"
    return first_sentence or UNKNOWN_SCENARIO


def render_transcript(transcript: Transcript) -> str:
    """
    Plain-text transcript the grading model reads.

    The narration turn becomes the SCENARIO DETAILS header; spoken turns are
    labelled [CALLER] (the AI caller) and [RESPONDER] (the trainee).
    """
    lines = [
        "CALL TRANSCRIPT:",
        "",
        f"SCENARIO DETAILS: {transcript.character_prompt}",
        "",
        "CONVERSATION:",
    ]
    for turn in transcript.conversation():
        lines.append(f"[{_ROLE_LABELS[turn.role]}]: {turn.text}")
    return "\n".join(lines) + "\n"


def build_grading_messages(formatted_transcript: str, scenario_name: str) -> List[Dict[str, str]]:
    """Chat messages for one grading request."""
    system = (
        "You are a 999 emergency call evaluator analyzing training calls.\n\n"
        "TASK: Evaluate this emergency response training conversation and provide detailed feedback.\n\n"
        f'The scenario being simulated is: "{scenario_name}"\n\n'
        f"{formatted_transcript}\n"
        "Based on the above transcript, analyze how well the emergency responder handled the call.\n\n"
        "RETURN YOUR ANALYSIS AS A PROPERLY FORMATTED JSON OBJECT with the following structure:\n"
        f"{_SCHEMA_TEMPLATE.format(scenario=scenario_name.replace(chr(34), chr(39)))}\n\n"
        "DO NOT include any explanatory text, markdown formatting, or code blocks - "
        "return ONLY the valid JSON object."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": GRADING_USER_MESSAGE},
    ]


def fallback_analysis(scenario_name: str, scenario_id: Optional[Any], reason: str) -> Dict[str, Any]:
    """Wire-format result recorded when the model output cannot be used."""
    return {
        "scenarioId": scenario_id,
        "scenario": scenario_name,
        "overall_rating": {
            "score": 0,
            "summary": f"Analysis could not be completed: {reason}",
        },
        "strengths": [],
        "areas_for_improvement": ["Automated analysis unavailable for this call"],
        "information_handling": {"gathered_correctly": [], "missed_or_incorrect": []},
        "action_assessment": {"appropriate_actions": [], "inappropriate_actions": []},
        "efficiency": {
            "response_time_rating": 0,
            "comments": "Unable to assess - analysis failed",
        },
        "final_recommendation": (
            "Automated analysis failed for this call. "
            "Please review the raw conversation transcript manually."
        ),
        "pass_fail": "FAIL",
    }
