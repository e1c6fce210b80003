"""Parsing of untrusted model output into validated part evaluations."""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

import json_repair
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

CRITERIA = (
    "fluency_coherence",
    "lexical_resource",
    "grammatical_range",
    "pronunciation",
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


class CriterionScore(BaseModel):
    """Band and feedback for one scoring criterion."""

    model_config = ConfigDict(extra="ignore")

    band: float = Field(..., ge=0, le=9)
    feedback: str = ""
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)

    @field_validator("strengths", "weaknesses", "suggestions", mode="before")
    @classmethod
    def coerce_list(cls, v: Any) -> Any:
        return _as_list(v)


class SegmentTranscript(BaseModel):
    """What the candidate said for one question."""

    model_config = ConfigDict(extra="ignore")

    segment_key: str
    question_number: Optional[int] = None
    question_text: str = ""
    transcript: str = ""


class ModelAnswer(BaseModel):
    """Example higher-band answer for one question."""

    model_config = ConfigDict(extra="allow")

    segment_key: Optional[str] = None
    question_number: Optional[int] = None
    question: str = ""
    candidate_response: str = ""
    model_answer: str = ""


class PartEvaluation(BaseModel):
    """Validated evaluation of one exam part."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    part_number: int = Field(..., ge=1, le=3)
    part_band: Optional[float] = Field(None, ge=0, le=9)
    criteria: dict[str, CriterionScore]
    part_summary: str = ""
    transcripts: list[SegmentTranscript] = Field(default_factory=list)
    model_answers: list[ModelAnswer] = Field(default_factory=list, alias="modelAnswers")
    lexical_upgrades: list[dict] = Field(default_factory=list)

    @field_validator("criteria")
    @classmethod
    def require_all_criteria(cls, v: dict[str, CriterionScore]) -> dict[str, CriterionScore]:
        missing = [name for name in CRITERIA if name not in v]
        if missing:
            raise ValueError(f"missing criteria: {', '.join(missing)}")
        return {name: v[name] for name in CRITERIA}


@dataclass(frozen=True)
class ParsedEvaluation:
    evaluation: PartEvaluation
    ok: bool = True


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    raw_excerpt: str = ""
    ok: bool = False


ParseOutcome = Union[ParsedEvaluation, ParseFailure]


def extract_json(text: str) -> Optional[Any]:
    """Find a JSON document in model output.

    Tries the whole text, a fenced ```json block, the outermost braces,
    and finally a lenient repair of the outermost braces.
    """
    candidates = [text.strip()]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue

    if start != -1:
        repaired = json_repair.loads(text[start:end + 1] if end > start else text[start:])
        if repaired:
            return repaired
    return None


def normalize_evaluation(data: dict, expected_part: int) -> dict:
    """Map known alternative spellings onto the expected field names."""
    data = dict(data)
    if "modelAnswers" not in data and "model_answers" in data:
        data["modelAnswers"] = data.pop("model_answers")

    criteria = data.get("criteria")
    if isinstance(criteria, dict):
        normalized = {}
        for name, value in criteria.items():
            if isinstance(value, (int, float)):
                value = {"band": value}
            elif isinstance(value, dict) and "band" not in value and "score" in value:
                value = {**value, "band": value["score"]}
            normalized[name] = value
        data["criteria"] = normalized

    if "part_band" not in data and "overall_band" in data:
        data["part_band"] = data["overall_band"]

    if data.get("part_number") != expected_part:
        if data.get("part_number") is not None:
            logger.warning(
                f"Model labelled part {data.get('part_number')} as part {expected_part}; relabelling"
            )
        data["part_number"] = expected_part
    return data


def parse_part_evaluation(text: str, expected_part: int) -> ParseOutcome:
    """Parse raw model text into a PartEvaluation or a ParseFailure."""
    excerpt = (text or "")[:200]
    data = extract_json(text or "")
    if data is None:
        return ParseFailure(reason="no JSON object found in model output", raw_excerpt=excerpt)
    if isinstance(data, list) and len(data) == 1 and isinstance(data[0], dict):
        data = data[0]
    if not isinstance(data, dict):
        return ParseFailure(reason=f"expected a JSON object, got {type(data).__name__}", raw_excerpt=excerpt)

    try:
        evaluation = PartEvaluation.model_validate(normalize_evaluation(data, expected_part))
    except ValidationError as e:
        return ParseFailure(reason=f"invalid evaluation: {e.error_count()} error(s): {e.errors()[0]['msg']}", raw_excerpt=excerpt)
    return ParsedEvaluation(evaluation=evaluation)
