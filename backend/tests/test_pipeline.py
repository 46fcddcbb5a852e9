import asyncio
import json
from unittest.mock import AsyncMock, Mock, patch

import pytest

from grouptrip.core.errors import ErrorKind, RouteCalculationError
from grouptrip.core.models import Coordinates, Destination, ResultStatus, TransportMode
from grouptrip.core.pipeline import TripOptimizationService
from grouptrip.core.route_optimizer import RouteOptimizer
from grouptrip.core.settings import Settings
from grouptrip.db.locks import GroupLockRegistry
from grouptrip.db.progress import ProgressChannel
from grouptrip.db.repository import InMemoryTripRepository
from conftest import BASE, build_trip, destinations_along


def _fast_retry_settings(**overrides):
    return Settings(_env_file=None, RETRY_BASE_DELAY_MS=1, RETRY_MAX_DELAY_MS=2, **overrides)


def _service(data, settings=None, progress=None, **kwargs):
    repository = InMemoryTripRepository({data.group_id: data})
    service = TripOptimizationService(
        repository, repository, progress, settings=settings or _fast_retry_settings(), **kwargs
    )
    return service, repository


class TestOptimizeSuccess:
    """Primary pipeline outcomes."""

    @pytest.mark.asyncio
    async def test_three_members_three_destinations(self):
        settings = _fast_retry_settings(DAILY_BUDGET_MINUTES=480)
        dests = destinations_along(3, spacing_km=3.0, stay=90)
        departure = Coordinates(dests[0].latitude, dests[0].longitude)
        data = build_trip(dests, member_count=3, days=2, departure=departure)
        channel = ProgressChannel()
        service, repository = _service(data, settings, channel)

        result = await service.optimize(data.group_id, "m0", {"seed": 11})

        assert result.status == ResultStatus.SUCCESS
        assert result.error is None
        assert result.warnings == []
        outcome = result.data
        assert set(outcome.route.destination_ids) == {"d0", "d1", "d2"}
        assert outcome.strategy == "primary"
        assert outcome.days
        assert outcome.session["status"] == "success"
        assert outcome.fairness["fairnessScore"] == pytest.approx(outcome.route.fairness_score)
        assert repository.saved_schedule(data.group_id) is not None

        stages = [event.stage for event in channel.drain()]
        assert stages[0] == "preprocessing"
        assert stages[-1] == "completed"
        assert {"clustering", "optimizing", "scheduling", "saving"} <= set(stages)

    @pytest.mark.asyncio
    async def test_single_destination_round_trip(self):
        dest = destinations_along(1)[0]
        data = build_trip([dest], member_count=2, return_location=BASE)
        service, _ = _service(data)

        result = await service.optimize(data.group_id, "m1")

        assert result.status == ResultStatus.SUCCESS
        route = result.data.route
        assert route.destination_ids == (dest.id,)
        assert route.fairness_score == pytest.approx(1.0)
        assert [(s.from_id, s.to_id) for s in route.segments] == [("departure", dest.id), (dest.id, "return")]
        assert "single_destination" in result.data.edge_cases

    @pytest.mark.asyncio
    async def test_single_destination_single_member(self):
        dest = destinations_along(1)[0]
        data = build_trip([dest], member_count=1, return_location=BASE)
        service, _ = _service(data)

        result = await service.optimize(data.group_id, "m0")

        assert result.status == ResultStatus.SUCCESS
        assert {"single_member", "single_destination"} <= set(result.data.edge_cases)
        assert result.data.route.destination_ids == (dest.id,)
        assert result.data.route.fairness_score == pytest.approx(1.0)
        assert [v.destination_id for day in result.data.days for v in day.visits] == [dest.id]

    @pytest.mark.asyncio
    async def test_colocated_destinations_are_walked(self):
        dests = [
            Destination(f"c{i}", f"Stall {i}", BASE.latitude, BASE.longitude, preferred_stay_minutes=60)
            for i in range(3)
        ]
        data = build_trip(dests)
        service, _ = _service(data)

        result = await service.optimize(data.group_id, "m0")

        assert result.status == ResultStatus.SUCCESS
        segments = result.data.route.segments
        assert all(s.mode == TransportMode.WALKING for s in segments)
        assert sum(s.distance_km for s in segments) == pytest.approx(0.0)
        assert any("same location" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_without_multi_day_scheduling(self):
        data = build_trip(destinations_along(3))
        service, repository = _service(data)

        result = await service.optimize(data.group_id, "m0", {"enableMultiDayScheduling": False})

        assert result.status == ResultStatus.SUCCESS
        assert result.data.days == []
        assert repository.saved_route(data.group_id) is not None

    @pytest.mark.asyncio
    async def test_stage_statistics_are_recorded(self):
        data = build_trip(destinations_along(3))
        service, _ = _service(data)
        await service.optimize(data.group_id, "m0")

        snapshot = service.stats_store.snapshot()
        assert {"edge_cases", "clustering", "optimizing", "scheduling"} <= set(snapshot)

    @pytest.mark.asyncio
    async def test_result_serializes_to_json(self):
        data = build_trip(destinations_along(4), days=2)
        service, _ = _service(data)
        result = await service.optimize(data.group_id, "m0")

        body = result.to_dict()
        assert body["status"] == "success"
        assert "processingTimeMs" in body
        assert json.loads(json.dumps(body))["data"]["route"]["destination_ids"]


class TestOptimizeDegraded:
    """Fallbacks and partial results."""

    @pytest.mark.asyncio
    async def test_timeout_gives_partial_success(self):
        dests = destinations_along(10, spacing_km=20.0, stay=240)
        data = build_trip(dests, member_count=3, days=1)
        service, _ = _service(data)

        result = await service.optimize(data.group_id, "m0", {"timeoutMs": 1, "maxIterations": 1_000_000_000})

        assert result.status == ResultStatus.PARTIAL_SUCCESS
        assert result.warnings
        assert result.data.route.destination_ids

    @pytest.mark.asyncio
    async def test_missing_preferences_fall_back_to_distance(self):
        data = build_trip(destinations_along(3), ratings=None)
        service, _ = _service(data)

        result = await service.optimize(data.group_id, "m0")

        assert result.status == ResultStatus.PARTIAL_SUCCESS
        assert result.data.strategy == "distance_ordering"
        assert result.data.route.destination_ids == ("d0", "d1", "d2")
        assert any("distance_ordering" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_infeasible_destination_is_shortened_by_fallback(self):
        data = build_trip(destinations_along(1, stay=800, min_stay=60), member_count=2)
        service, _ = _service(data)

        result = await service.optimize(data.group_id, "m0")

        assert result.status == ResultStatus.PARTIAL_SUCCESS
        assert result.data.strategy == "preference_ordering"
        assert any("Shortened" in issue for issue in result.data.issues)

    @pytest.mark.asyncio
    @pytest.mark.asyncio
    async def test_route_calculation_failure_falls_back_to_greedy(self):
        data = build_trip(destinations_along(3))
        service, _ = _service(data)

        failure = RouteCalculationError("Distance from d0 to d1 could not be calculated")
        with patch.object(RouteOptimizer, "optimize", side_effect=failure):
            result = await service.optimize(data.group_id, "m0")

        assert result.status == ResultStatus.PARTIAL_SUCCESS
        assert result.data.strategy == "greedy"
        assert result.data.route.destination_ids

    @pytest.mark.asyncio
    async def test_no_destinations_is_an_error(self):
        data = build_trip([])
        service, _ = _service(data)

        result = await service.optimize(data.group_id, "m0")

        assert result.status == ResultStatus.ERROR
        assert result.data is None
        assert result.error.kind == ErrorKind.INSUFFICIENT_DATA
        assert result.error.details["attempted_strategies"] == ["distance_ordering", "input_order"]


class TestOptimizeErrors:
    """Terminal failures and collaborator problems."""

    @pytest.mark.asyncio
    async def test_non_member_is_denied(self):
        data = build_trip(destinations_along(3))
        channel = ProgressChannel()
        service, repository = _service(data, progress=channel)

        result = await service.optimize(data.group_id, "stranger")

        assert result.status == ResultStatus.ERROR
        assert result.error.kind == ErrorKind.PERMISSION_DENIED
        assert not result.error.retryable
        assert repository.saved_route(data.group_id) is None
        assert repository.get_stats()["denied"] == 1
        assert channel.drain()[-1].stage == "error"

    @pytest.mark.asyncio
    async def test_unknown_group(self):
        data = build_trip(destinations_along(3))
        service, _ = _service(data)
        result = await service.optimize("missing-group", "m0")
        assert result.error.kind == ErrorKind.VALIDATION_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("options", [{"timeoutMs": 0}, {"accommodationQuality": "luxury"}, {"bogus": True}])
    async def test_invalid_options(self, options):
        data = build_trip(destinations_along(3))
        service, _ = _service(data)
        result = await service.optimize(data.group_id, "m0", options)
        assert result.status == ResultStatus.ERROR
        assert result.error.kind == ErrorKind.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_upstream_failure_without_cache(self):
        source = Mock()
        source.fetch = AsyncMock(side_effect=ConnectionError("database unavailable"))
        service = TripOptimizationService(source, settings=_fast_retry_settings())

        result = await service.optimize("group-1", "m0")

        assert result.status == ResultStatus.ERROR
        assert result.error.kind == ErrorKind.UPSTREAM_DATA_ERROR
        assert source.fetch.await_count == 3

    @pytest.mark.asyncio
    async def test_upstream_failure_uses_cached_data(self):
        data = build_trip(destinations_along(3))
        service, _ = _service(data)
        first = await service.optimize(data.group_id, "m0")
        assert first.status == ResultStatus.SUCCESS

        failing = Mock()
        failing.fetch = AsyncMock(side_effect=ConnectionError("database unavailable"))
        service.data_source = failing
        second = await service.optimize(data.group_id, "m0")

        assert second.status == ResultStatus.SUCCESS
        assert any("last known version" in w for w in second.warnings)

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_result(self):
        data = build_trip(destinations_along(3))
        persistence = Mock()
        persistence.save = AsyncMock(side_effect=ConnectionError("disk full"))
        service = TripOptimizationService(
            InMemoryTripRepository({data.group_id: data}), persistence, settings=_fast_retry_settings(),
        )

        result = await service.optimize(data.group_id, "m0")

        assert result.status == ResultStatus.SUCCESS
        assert any("could not be saved" in w for w in result.warnings)
        assert persistence.save.await_count == 3

    @pytest.mark.asyncio
    async def test_closed_progress_channel_is_ignored(self):
        data = build_trip(destinations_along(3))
        channel = ProgressChannel()
        channel.close()
        service, _ = _service(data, progress=channel)

        result = await service.optimize(data.group_id, "m0")

        assert result.status == ResultStatus.SUCCESS
        assert channel.dropped > 0

    @pytest.mark.asyncio
    async def test_failing_progress_sink_is_ignored(self):
        data = build_trip(destinations_along(3))
        sink = Mock()
        sink.report.side_effect = RuntimeError("socket closed")
        service, _ = _service(data, progress=sink)

        result = await service.optimize(data.group_id, "m0")

        assert result.status == ResultStatus.SUCCESS
        assert sink.report.called


class TestConcurrency:
    """Per-group mutual exclusion."""

    @pytest.mark.asyncio
    async def test_same_group_runs_one_at_a_time(self):
        data = build_trip(destinations_along(3))
        locks = GroupLockRegistry()
        service, _ = _service(data, locks=locks)

        results = await asyncio.gather(
            service.optimize(data.group_id, "m0"),
            service.optimize(data.group_id, "m1"),
        )

        assert [r.status for r in results] == [ResultStatus.SUCCESS, ResultStatus.SUCCESS]
        assert len(locks) == 0
