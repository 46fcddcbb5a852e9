import pytest

from grouptrip.core.clustering import normalize_and_cluster
from grouptrip.core.errors import NoFeasibleSolutionError, OptimizationTimeoutError
from grouptrip.core.governor import Deadline
from grouptrip.core.models import Coordinates, Destination, PreferenceRecord, RouteSolution
from grouptrip.core.route_optimizer import (
    OptimizerConfig, RouteBuilder, RouteOptimizer, composite_score, solution_rank_key,
)
from grouptrip.core.settings import Settings
from conftest import BASE, KM_PER_DEGREE, build_trip, destinations_along


def _solution(feasible=True, composite=0.5, distance=10.0, clusters=("c1",)):
    return RouteSolution(
        cluster_ids=tuple(clusters),
        destination_ids=tuple(f"d-{c}" for c in clusters),
        segments=(),
        fairness_score=composite,
        quantity_score=composite,
        composite_score=composite,
        feasible=feasible,
        total_distance_km=distance,
    )


def _optimizer(data, settings, **kwargs):
    clustering = normalize_and_cluster(data, settings)
    return RouteOptimizer(data, clustering.matrix, clustering.clusters, settings, **kwargs)


class TestScoring:
    """Composite scoring and deterministic ranking."""

    def test_composite_is_monotone(self):
        base = composite_score(0.5, 0.5, 0.6, 0.4)
        assert composite_score(0.6, 0.5, 0.6, 0.4) > base
        assert composite_score(0.5, 0.6, 0.6, 0.4) > base
        assert base == pytest.approx(0.5)

    def test_feasible_ranks_first(self):
        infeasible = _solution(feasible=False, composite=0.99)
        feasible = _solution(feasible=True, composite=0.1)
        assert sorted([infeasible, feasible], key=solution_rank_key)[0] is feasible

    def test_ties_prefer_shorter_then_fewer_clusters(self):
        long_route = _solution(distance=20.0)
        short_route = _solution(distance=5.0)
        assert sorted([long_route, short_route], key=solution_rank_key)[0] is short_route

        many = _solution(clusters=("c1", "c2"))
        few = _solution(clusters=("c3",))
        assert sorted([many, few], key=solution_rank_key)[0] is few

    def test_config_overrides(self, settings):
        config = OptimizerConfig.from_settings(settings, max_iterations=7, seed=None)
        assert config.max_iterations == 7
        assert config.seed == settings.OPTIMIZER_SEED
        with pytest.raises(TypeError):
            OptimizerConfig.from_settings(settings, unknown_knob=1)


class TestRouteBuilder:
    """Scoring a concrete destination order."""

    def test_round_trip_adds_return_leg(self, settings):
        data = build_trip(destinations_along(2), return_location=BASE)
        route = RouteBuilder(data, None, settings, 0.6, 0.4).build(["d0", "d1"])
        assert [(s.from_id, s.to_id) for s in route.segments] == [
            ("departure", "d0"), ("d0", "d1"), ("d1", "return"),
        ]
        assert route.fairness_score == 1.0

    def test_over_budget_route_is_infeasible(self, settings):
        data = build_trip(destinations_along(3, stay=300))
        route = RouteBuilder(data, None, settings, 0.6, 0.4).build(["d0", "d1", "d2"])
        assert not route.feasible
        assert any("minutes" in issue for issue in route.issues)


class TestRouteOptimizer:
    """Search over cluster orders."""

    def test_three_members_three_destinations(self):
        settings = Settings(_env_file=None, DAILY_BUDGET_MINUTES=480)
        data = build_trip(destinations_along(3, spacing_km=3.0, stay=90), member_count=3, days=2)
        run = _optimizer(data, settings, config=OptimizerConfig.from_settings(settings, seed=7)).optimize()

        best = run.best
        assert best.feasible
        assert set(best.destination_ids) == {"d0", "d1", "d2"}
        assert best.composite_score == pytest.approx(1.0)
        assert run.terminated_by == "converged"
        assert 0.0 <= best.fairness_score <= 1.0

    def test_route_is_trimmed_to_the_trip_window(self, settings):
        data = build_trip(destinations_along(6, spacing_km=1.5, stay=240), days=1)
        optimizer = _optimizer(data, settings, config=OptimizerConfig.from_settings(settings, seed=1))
        best = optimizer.optimize().best

        assert best.feasible
        assert 1 <= len(best.destination_ids) <= 2
        assert best.total_minutes <= optimizer.builder.available_minutes

    def test_same_seed_same_result(self, settings):
        data = build_trip(destinations_along(8, spacing_km=4.0, stay=120), days=2)
        first = _optimizer(data, settings, config=OptimizerConfig.from_settings(settings, seed=42)).optimize()
        second = _optimizer(data, settings, config=OptimizerConfig.from_settings(settings, seed=42)).optimize()
        assert first.best.destination_ids == second.best.destination_ids
        assert first.best.composite_score == second.best.composite_score

    def test_deadline_returns_best_so_far(self, settings):
        ticks = iter(range(0, 10_000))

        def clock():
            # every reading advances 10 ms
            return next(ticks) / 100

        data = build_trip(destinations_along(4, spacing_km=5.0), days=2)
        deadline = Deadline(100, clock=clock)
        optimizer = _optimizer(data, settings, deadline=deadline)

        with pytest.raises(OptimizationTimeoutError) as exc_info:
            optimizer.optimize()

        partial = exc_info.value.partial
        assert partial is not None
        assert partial.terminated_by == "deadline"
        assert partial.best is not None
        assert partial.evaluated

    def test_no_clusters(self, settings):
        data = build_trip(destinations_along(2))
        clustering = normalize_and_cluster(data, settings)
        with pytest.raises(NoFeasibleSolutionError):
            RouteOptimizer(data, clustering.matrix, [], settings).optimize()

    def test_cluster_is_entered_from_the_nearest_side(self, settings):
        def north(km):
            return BASE.latitude + km / KM_PER_DEGREE

        dests = [
            Destination("S", "Seed", north(0.0), BASE.longitude),
            Destination("A", "South stop", north(-0.8), BASE.longitude),
            Destination("B", "North stop", north(0.9), BASE.longitude),
        ]
        ratings = [
            PreferenceRecord("m0", "S", 5.0),
            PreferenceRecord("m0", "A", 4.0),
            PreferenceRecord("m0", "B", 3.0),
        ]
        data = build_trip(
            dests, member_count=1, ratings=ratings,
            departure=Coordinates(north(-5.0), BASE.longitude),
        )
        optimizer = _optimizer(data, settings, config=OptimizerConfig.from_settings(settings, seed=3))
        assert len(optimizer.clusters) == 1

        best = optimizer.optimize().best
        assert best.destination_ids == ("A", "S", "B")
        assert best.total_distance_km == pytest.approx(5.9, abs=0.01)
