import numpy as np
import pytest

from grouptrip.core.clustering import build_clusters, normalize_and_cluster, stay_minutes
from grouptrip.core.errors import ErrorKind
from grouptrip.core.models import Destination, PreferenceRecord
from grouptrip.core.normalization import (
    aggregate_preferences, mean_destination_scores, normalize_preferences, validate_trip_data,
)
from conftest import BASE, KM_PER_DEGREE, build_trip, destinations_along


class TestNormalization:
    """Preference aggregation and per-member standardization."""

    def test_duplicate_records_are_averaged_and_clamped(self):
        records = [
            PreferenceRecord("m0", "d0", 7.0, 60),
            PreferenceRecord("m0", "d0", 3.0, 120),
        ]
        aggregated = aggregate_preferences(records)
        pref = aggregated[("m0", "d0")]
        assert pref.score == pytest.approx(4.0)
        assert pref.preferred_duration_minutes == pytest.approx(90.0)
        assert pref.count == 2

    def test_member_scores_are_z_scored(self, settings):
        dests = destinations_along(3)
        ratings = [PreferenceRecord("m0", d.id, s) for d, s in zip(dests, (1.0, 3.0, 5.0))]
        ratings += [PreferenceRecord("m1", d.id, 4.0) for d in dests]
        result = normalize_preferences(build_trip(dests, member_count=2, ratings=ratings), settings)

        row = result.matrix.standardized[0]
        assert row.mean() == pytest.approx(0.0)
        assert row[0] == pytest.approx(-2.0 / np.sqrt(8.0 / 3.0))
        # constant ratings have zero spread and standardize to zero
        assert np.allclose(result.matrix.standardized[1], 0.0)
        assert any("same score" in w for w in result.warnings)

    def test_absolute_mode_centres_on_neutral(self, settings):
        dests = destinations_along(2)
        ratings = [PreferenceRecord("m0", dests[0].id, 5.0), PreferenceRecord("m0", dests[1].id, 2.0)]
        result = normalize_preferences(build_trip(dests, member_count=1, ratings=ratings), settings, absolute=True)
        assert list(result.matrix.standardized[0]) == pytest.approx([2.0, -1.0])

    def test_unrated_pairs_count_as_neutral(self, settings):
        dests = destinations_along(2)
        ratings = [PreferenceRecord("m0", dests[0].id, 5.0)]
        means = mean_destination_scores(build_trip(dests, member_count=2, ratings=ratings), 3.0)
        assert means == {"d0": pytest.approx(4.0), "d1": pytest.approx(3.0)}

    def test_satisfaction_is_share_of_rating_mass(self, settings):
        dests = destinations_along(2)
        ratings = [PreferenceRecord("m0", dests[0].id, 3.0), PreferenceRecord("m0", dests[1].id, 1.0)]
        matrix = normalize_preferences(build_trip(dests, member_count=1, ratings=ratings), settings).matrix
        assert matrix.satisfaction(["d0"])[0] == pytest.approx(0.75)
        assert matrix.satisfaction([])[0] == 0.0

    def test_validation_issues(self, settings):
        issues, _ = validate_trip_data(build_trip(destinations_along(2), ratings=None), settings)
        assert [i.code for i in issues] == ["NO_PREFERENCES"]
        assert issues[0].kind == ErrorKind.MISSING_PREFERENCES

        issues, _ = validate_trip_data(build_trip([], member_count=0), settings)
        assert {i.code for i in issues} == {"NO_DESTINATIONS", "NO_MEMBERS", "NO_PREFERENCES"}

    def test_sparse_coverage_is_a_warning(self, settings):
        dests = destinations_along(4)
        ratings = [PreferenceRecord("m0", dests[0].id, 4.0)]
        issues, warnings = validate_trip_data(build_trip(dests, member_count=2, ratings=ratings), settings)
        assert issues == []
        assert warnings and "Sparse" in warnings[0]


class TestClustering:
    """Greedy radius clustering."""

    def _nearby_and_far(self):
        near = 0.5 / KM_PER_DEGREE
        return [
            Destination("a", "A", BASE.latitude + 0.1, BASE.longitude),
            Destination("b", "B", BASE.latitude + 0.1 + near, BASE.longitude),
            Destination("c", "C", BASE.latitude + 0.3, BASE.longitude),
        ]

    def test_every_destination_in_exactly_one_cluster(self, settings):
        data = build_trip(self._nearby_and_far())
        matrix = normalize_preferences(data, settings).matrix
        clusters = build_clusters(data, matrix, settings)

        assigned = [d for c in clusters for d in c.destination_ids]
        assert sorted(assigned) == ["a", "b", "c"]
        assert len(clusters) == 2
        assert {frozenset(c.destination_ids) for c in clusters} == {frozenset({"a", "b"}), frozenset({"c"})}

    def test_cluster_ids_are_sequential(self, settings):
        data = build_trip(self._nearby_and_far())
        matrix = normalize_preferences(data, settings).matrix
        clusters = build_clusters(data, matrix, settings)
        assert [c.id for c in clusters] == ["cluster-1", "cluster-2"]

    def test_walking_only_groups_cluster_first(self, settings):
        data = build_trip(self._nearby_and_far())
        matrix = normalize_preferences(data, settings).matrix
        clusters = build_clusters(data, matrix, settings, walking_only_groups=[("a", "c")])

        assert clusters[0].destination_ids == ("a", "c")
        assert clusters[0].walking_only
        assert not any(c.walking_only for c in clusters[1:])

    def test_normalize_and_cluster_stops_on_hard_issues(self, settings):
        result = normalize_and_cluster(build_trip(destinations_along(2), ratings=None), settings)
        assert not result.ok
        assert result.clusters == []
        assert result.matrix is None

    def test_normalize_and_cluster(self, settings):
        result = normalize_and_cluster(build_trip(destinations_along(3)), settings)
        assert result.ok
        assert result.matrix.shape == (3, 3)
        assert len(result.clusters) == 3

    def test_stay_minutes_resolution(self, settings):
        dest = Destination("a", "A", 0.0, 0.0, min_stay_minutes=60, preferred_stay_minutes=120)
        data = build_trip([dest], member_count=1, ratings=[PreferenceRecord("m0", "a", 4.0, 30)])
        matrix = normalize_preferences(data, settings).matrix

        assert stay_minutes(dest, None) == 120.0
        # members asked for less than the minimum
        assert stay_minutes(dest, matrix) == 60.0
        assert stay_minutes(dest, matrix, {"a": 200}) == 200.0
