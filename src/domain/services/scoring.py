"""
Weighted checklist scoring.

Every question is scored 0, 1 or 2 (or "n/a") and multiplied by the weight
(fScore) of its form field. "n/a" and unanswered questions are left out of
both the numerator and the denominator. These functions are pure and never
raise: malformed input degrades to 0 or to the default weight.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace

from src.domain.models import NOT_APPLICABLE, Answer, FormField, RiskLevel

MAX_SCORE_PER_QUESTION = 2.0
DEFAULT_WEIGHT = 1.0


@dataclass(slots=True, frozen=True)
class ScoreTotals:
    total: float
    average: float
    max: float

    @property
    def percentage(self) -> float:
        """Total as a share of the attainable maximum, 0-100."""
        if self.max <= 0:
            return 0.0
        return round(self.total / self.max * 100, 2)


@dataclass(slots=True, frozen=True)
class AssessmentStats:
    total_questions: int
    answered_questions: int
    na_questions: int
    scored_questions: int
    totals: ScoreTotals


def _to_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_weight(raw: object) -> float:
    """fScore of a field; missing, malformed or non-positive weights count as 1."""
    weight = _to_float(raw)
    if weight is None or weight <= 0:
        return DEFAULT_WEIGHT
    return weight


def weight_map(fields: Iterable[FormField]) -> dict[str, float]:
    return {f.ck_item: parse_weight(f.f_score) for f in fields}


def _score_text(answer: Answer) -> str:
    return "" if answer.score is None else str(answer.score).strip().lower()


def is_counted(answer: Answer) -> bool:
    """True when the answer takes part in scoring (non-empty and not n/a)."""
    score = _score_text(answer)
    return bool(score) and score != NOT_APPLICABLE


def numeric_score(value: object) -> float:
    """Numeric value of a score string, clamped to 0..2; malformed values are 0."""
    number = _to_float(value)
    if number is None:
        return 0.0
    return min(max(number, 0.0), MAX_SCORE_PER_QUESTION)


def compute_totals(answers: Iterable[Answer], weights: Mapping[str, float]) -> ScoreTotals:
    total = 0.0
    weight_sum = 0.0
    for answer in answers:
        if answer is None or not is_counted(answer):
            continue
        weight = parse_weight(weights.get(answer.ck_item, DEFAULT_WEIGHT))
        total += numeric_score(answer.score) * weight
        weight_sum += weight

    if weight_sum == 0:
        return ScoreTotals(total=0.0, average=0.0, max=0.0)
    return ScoreTotals(
        total=total,
        average=total / weight_sum,
        max=MAX_SCORE_PER_QUESTION * weight_sum,
    )


def classify_risk(average: float) -> RiskLevel:
    avg = _to_float(average) or 0.0
    if avg >= 1.5:
        return "Low"
    if avg >= 1.0:
        return "Moderate"
    if avg > 0:
        return "High"
    return ""


def weighted_answers(answers: Iterable[Answer], weights: Mapping[str, float]) -> list[Answer]:
    """Copies of ``answers`` with ``weighted_score`` filled in (None when not counted)."""
    result: list[Answer] = []
    for answer in answers:
        if not is_counted(answer):
            result.append(replace(answer, weighted_score=None))
            continue
        weight = parse_weight(weights.get(answer.ck_item, DEFAULT_WEIGHT))
        result.append(replace(answer, weighted_score=numeric_score(answer.score) * weight))
    return result


def assessment_stats(answers: list[Answer], fields: list[FormField]) -> AssessmentStats:
    answered = [a for a in answers if _score_text(a)]
    na = [a for a in answered if _score_text(a) == NOT_APPLICABLE]
    return AssessmentStats(
        total_questions=len(fields),
        answered_questions=len(answered),
        na_questions=len(na),
        scored_questions=len(answered) - len(na),
        totals=compute_totals(answers, weight_map(fields)),
    )
