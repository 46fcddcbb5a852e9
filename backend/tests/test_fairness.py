from dataclasses import replace

import pytest

from grouptrip.core.fairness import (
    analyze_fairness_distribution, evaluate_fairness, fairness_from_satisfaction, gini_coefficient,
)
from grouptrip.core.normalization import normalize_preferences
from conftest import build_trip, destinations_along


class TestGini:
    """Gini coefficient and the derived fairness score."""

    def test_equal_distribution(self):
        assert gini_coefficient([0.5, 0.5, 0.5]) == pytest.approx(0.0)
        assert fairness_from_satisfaction([0.5, 0.5, 0.5]) == pytest.approx(1.0)

    def test_concentrated_distribution(self):
        assert gini_coefficient([0.0, 0.0, 0.0, 1.0]) == pytest.approx(0.75)
        assert fairness_from_satisfaction([1.0, 0.0, 0.0, 0.0]) == pytest.approx(0.25)

    def test_degenerate_inputs(self):
        assert gini_coefficient([]) == 0.0
        assert gini_coefficient([0.7]) == 0.0
        assert gini_coefficient([0.0, 0.0]) == 0.0
        assert fairness_from_satisfaction([0.2]) == 1.0

    def test_score_is_bounded(self):
        for values in ([0.0, 1.0], [0.1, 0.9, 0.4], [1.0, 1.0, 0.0, 0.3]):
            assert 0.0 <= fairness_from_satisfaction(values) <= 1.0


class TestEvaluateFairness:
    """Fairness of a candidate destination set."""

    def test_member_relabelling_does_not_change_score(self, settings):
        dests = destinations_along(4)
        data = build_trip(dests, member_count=3)
        reversed_data = replace(data, members=list(reversed(data.members)))

        selection = ["d0", "d2"]
        a = evaluate_fairness(normalize_preferences(data, settings).matrix, selection)
        b = evaluate_fairness(normalize_preferences(reversed_data, settings).matrix, selection)

        assert a.score == pytest.approx(b.score)
        assert a.member_satisfaction == pytest.approx(b.member_satisfaction)

    def test_full_selection_is_perfectly_fair(self, settings):
        data = build_trip(destinations_along(3))
        report = evaluate_fairness(normalize_preferences(data, settings).matrix, ["d0", "d1", "d2"])
        assert report.score == pytest.approx(1.0)
        assert all(s == pytest.approx(1.0) for s in report.member_satisfaction.values())


class TestFairnessAnalysis:
    """Distribution summary returned with each result."""

    def test_balanced_group(self):
        analysis = analyze_fairness_distribution({"a": 1.0, "b": 1.0})
        assert analysis.balanced
        assert analysis.disparity == "low"
        assert analysis.least_satisfied == ["a", "b"]

    def test_unbalanced_group(self):
        analysis = analyze_fairness_distribution({"a": 1.0, "b": 0.0})
        assert analysis.fairness_score == pytest.approx(0.5)
        assert not analysis.balanced
        assert analysis.disparity == "high"
        assert analysis.least_satisfied == ["b"]

    def test_as_dict_keys(self):
        payload = analyze_fairness_distribution({"a": 0.5, "b": 0.4}).as_dict()
        assert set(payload) == {"mean", "min", "max", "std", "fairnessScore", "balanced", "disparity", "leastSatisfied"}

    def test_empty_group(self):
        analysis = analyze_fairness_distribution({})
        assert analysis.fairness_score == 1.0
