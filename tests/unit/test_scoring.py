from __future__ import annotations

import itertools

import pytest
from src.domain.models import Answer, FormField
from src.domain.services.scoring import (
    assessment_stats,
    classify_risk,
    compute_totals,
    numeric_score,
    parse_weight,
    weight_map,
    weighted_answers,
)


def _answers(scores: dict[str, str]) -> list[Answer]:
    return [Answer(ck_item=item, score=score) for item, score in scores.items()]


class TestComputeTotals:
    def test_vendor_example_excludes_not_applicable(self) -> None:
        answers = _answers({"1.1": "2", "1.2": "1", "1.3": "n/a"})
        weights = {"1.1": 1.0, "1.2": 1.0, "1.3": 1.0}

        totals = compute_totals(answers, weights)

        assert totals.total == 3
        assert totals.max == 4
        assert totals.average == 1.5
        assert classify_risk(totals.average) == "Low"

    def test_weights_multiply_scores(self) -> None:
        answers = _answers({"a": "2", "b": "1"})

        totals = compute_totals(answers, {"a": 2.0, "b": 1.0})

        assert totals.total == 5
        assert totals.max == 6
        assert totals.average == pytest.approx(5 / 3)

    def test_empty_and_unanswered_give_zero(self) -> None:
        totals = compute_totals(_answers({"a": "", "b": "n/a"}), {})

        assert (totals.total, totals.average, totals.max) == (0.0, 0.0, 0.0)
        assert totals.percentage == 0.0

    def test_malformed_score_counts_as_zero_but_keeps_weight(self) -> None:
        totals = compute_totals(_answers({"a": "2", "b": "abc"}), {})

        assert totals.total == 2
        assert totals.max == 4
        assert totals.average == 1.0

    def test_out_of_range_scores_are_clamped(self) -> None:
        totals = compute_totals(_answers({"a": "7", "b": "-3"}), {})

        assert totals.total == 2
        assert totals.average == 1.0

    def test_average_within_bounds_and_total_not_above_max(self) -> None:
        values = ["0", "1", "2", "n/a", "", "9", "x"]
        weights = {"a": 0.5, "b": 3.0, "c": 1.0}
        for combo in itertools.product(values, repeat=3):
            answers = _answers(dict(zip("abc", combo, strict=True)))
            totals = compute_totals(answers, weights)
            assert 0.0 <= totals.average <= 2.0
            assert totals.total <= totals.max


class TestWeights:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("2", 2.0), (1.5, 1.5), (None, 1.0), ("", 1.0), ("abc", 1.0), ("0", 1.0), (-2, 1.0)],
    )
    def test_parse_weight(self, raw: object, expected: float) -> None:
        assert parse_weight(raw) == expected

    def test_weight_map_uses_field_scores(self) -> None:
        fields = [FormField(ck_item="a", f_score="3"), FormField(ck_item="b")]

        assert weight_map(fields) == {"a": 3.0, "b": 1.0}

    def test_numeric_score(self) -> None:
        assert numeric_score("1") == 1.0
        assert numeric_score(None) == 0.0
        assert numeric_score("2.5") == 2.0


class TestClassifyRisk:
    @pytest.mark.parametrize(
        ("average", "expected"),
        [(0, ""), (0.5, "High"), (0.99, "High"), (1.0, "Moderate"), (1.49, "Moderate"),
         (1.5, "Low"), (2.0, "Low")],
    )
    def test_boundaries(self, average: float, expected: str) -> None:
        assert classify_risk(average) == expected


def test_weighted_answers_fill_weighted_score_without_mutating_input() -> None:
    answers = _answers({"a": "2", "b": "n/a"})

    result = weighted_answers(answers, {"a": 2.0})

    assert result[0].weighted_score == 4.0
    assert result[1].weighted_score is None
    assert answers[0].weighted_score is None


def test_assessment_stats_counts_answer_kinds() -> None:
    fields = [FormField(ck_item=item) for item in ("a", "b", "c", "d")]
    answers = _answers({"a": "2", "b": "n/a", "c": "0"})

    stats = assessment_stats(answers, fields)

    assert stats.total_questions == 4
    assert stats.answered_questions == 3
    assert stats.na_questions == 1
    assert stats.scored_questions == 2
    assert stats.totals.total == 2
