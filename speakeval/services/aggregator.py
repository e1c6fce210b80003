"""Combine per-part evaluations into the final score record."""

import json
import logging
import math
from typing import Optional

from speakeval.services.evaluation_parser import CRITERIA, PartEvaluation

logger = logging.getLogger(__name__)

PART_WEIGHTS = {1: 0.25, 2: 0.40, 3: 0.35}
MIN_WEIGHT_FOR_WEIGHTED_BAND = 0.5
MAX_LIST_ITEMS = 4
MAX_LEXICAL_UPGRADES = 10


def round_half(value: float) -> float:
    """Round to the nearest 0.5, halves rounding up."""
    return math.floor(value * 2 + 0.5) / 2


def round_ielts_band(value: float) -> float:
    """IELTS rounding: below .25 down, below .75 to .5, otherwise up; clamped to 0-9."""
    if not math.isfinite(value):
        return 0.0
    value = max(0.0, min(9.0, value))
    whole = math.floor(value)
    fraction = value - whole
    if fraction < 0.25:
        return float(whole)
    if fraction < 0.75:
        return whole + 0.5
    return float(whole + 1)


def _dedupe(items: list, limit: int) -> list:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen[:limit]


def weighted_part_band(part_scores: dict[int, float], weights: Optional[dict[int, float]] = None) -> Optional[float]:
    """Weighted overall band, or None when too little of the exam was scored."""
    weights = weights or PART_WEIGHTS
    total = 0.0
    total_weight = 0.0
    for part, band in sorted(part_scores.items()):
        if part in weights and 0 <= band <= 9:
            total += band * weights[part]
            total_weight += weights[part]
    if total_weight < MIN_WEIGHT_FOR_WEIGHTED_BAND:
        return None
    return round_ielts_band(total / total_weight)


class ResultAggregator:
    """Builds the final result payload from a job's partial results."""

    def __init__(self, weights: Optional[dict[int, float]] = None):
        self.weights = weights or PART_WEIGHTS

    def load_parts(self, partial_results: dict) -> dict[int, PartEvaluation]:
        parts = {}
        for key, raw in partial_results.items():
            parts[int(key)] = PartEvaluation.model_validate(raw)
        return dict(sorted(parts.items()))

    def aggregate(self, partial_results: dict, evaluation_mode: str = "audio") -> dict:
        """
        Aggregate stored part evaluations.

        Args:
            partial_results: Part number (str or int) -> stored part evaluation
            evaluation_mode: Mode the final parts were evaluated in

        Returns:
            The final result payload, including "overall_band"
        """
        parts = self.load_parts(partial_results)

        criteria = {name: self._aggregate_criterion(name, parts) for name in CRITERIA}

        part_scores = {}
        for number, part in parts.items():
            if part.part_band is not None:
                part_scores[number] = part.part_band
            else:
                bands = [c.band for c in part.criteria.values()]
                part_scores[number] = round_half(sum(bands) / len(bands))

        criteria_bands = [c["band"] for c in criteria.values() if c["band"] is not None]
        criteria_average = round_half(sum(criteria_bands) / len(criteria_bands)) if criteria_bands else 0.0
        weighted = weighted_part_band(part_scores, self.weights)
        overall = weighted if weighted is not None else criteria_average

        transcripts_by_part = {}
        transcripts_by_question = {}
        model_answers = []
        lexical_upgrades = []
        summaries = []
        for number, part in parts.items():
            transcripts_by_question[str(number)] = [t.model_dump() for t in part.transcripts]
            transcripts_by_part[str(number)] = " ".join(
                t.transcript for t in part.transcripts if t.transcript
            )
            model_answers.extend(a.model_dump() for a in part.model_answers)
            lexical_upgrades.extend(part.lexical_upgrades)
            if part.part_summary:
                summaries.append(f"Part {number}: {part.part_summary}")

        unique_upgrades = {}
        for upgrade in lexical_upgrades:
            unique_upgrades.setdefault(json.dumps(upgrade, sort_keys=True), upgrade)

        return {
            "overall_band": overall,
            "weighted_band": weighted,
            "criteria_average": criteria_average,
            "criteria": criteria,
            "part_scores": {str(k): v for k, v in part_scores.items()},
            "summary": " ".join(summaries) or "Evaluation complete.",
            "transcripts_by_part": transcripts_by_part,
            "transcripts_by_question": transcripts_by_question,
            "model_answers": model_answers,
            "lexical_upgrades": list(unique_upgrades.values())[:MAX_LEXICAL_UPGRADES],
            "evaluation_mode": evaluation_mode,
            "parts_evaluated": list(parts),
        }

    def _aggregate_criterion(self, name: str, parts: dict[int, PartEvaluation]) -> dict:
        bands, feedback, strengths, weaknesses, suggestions = [], [], [], [], []
        for part in parts.values():
            score = part.criteria.get(name)
            if score is None:
                continue
            bands.append(score.band)
            if score.feedback:
                feedback.append(score.feedback)
            strengths.extend(score.strengths)
            weaknesses.extend(score.weaknesses)
            suggestions.extend(score.suggestions)

        return {
            "band": round_half(sum(bands) / len(bands)) if bands else None,
            "feedback": " ".join(feedback),
            "strengths": _dedupe(strengths, MAX_LIST_ITEMS),
            "weaknesses": _dedupe(weaknesses, MAX_LIST_ITEMS),
            "suggestions": _dedupe(suggestions, MAX_LIST_ITEMS),
        }
