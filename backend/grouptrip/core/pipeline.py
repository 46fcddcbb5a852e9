"""
Trip optimization pipeline.

``TripOptimizationService.optimize`` fetches the group's data, then runs edge
case handling, normalization and clustering, route optimization and multi-day
scheduling in order, each under the governor's deadline. Any non-terminal
failure hands the preserved upstream results to the fallback chain, so callers
always receive a classified ``OptimizationResult``.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import structlog
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError

from grouptrip.api.schemas import OptimizeOptions
from grouptrip.core.clustering import ClusteringResult, normalize_and_cluster, stay_minutes
from grouptrip.core.edge_cases import EdgeCaseReport, handle_edge_cases
from grouptrip.core.errors import (
    ErrorKind, ErrorPayload, InsufficientDataError, InvalidCoordinatesError,
    MissingPreferencesError, NoFeasibleSolutionError, UpstreamDataError, classify_error,
)
from grouptrip.core.fairness import analyze_fairness_distribution
from grouptrip.core.fallback import FallbackChain, FallbackContext
from grouptrip.core.governor import Deadline, Governor, StageStatisticsStore
from grouptrip.core.models import (
    AccommodationQuality, OptimizationOutcome, OptimizationResult, ResultStatus,
    RouteSolution, TripData,
)
from grouptrip.core.normalization import PreferenceMatrix
from grouptrip.core.route_optimizer import OptimizerConfig, RouteOptimizer
from grouptrip.core.scheduler import MultiDayScheduler
from grouptrip.core.session import OptimizationSession
from grouptrip.core.settings import Settings
from grouptrip.db.interfaces import DataSource, PersistenceSink, ProgressSink, TripDataCache
from grouptrip.db.locks import GroupLockRegistry
from grouptrip.db.progress import PROGRESS_STAGES
from grouptrip.db.repository import InMemoryTripDataCache

logger = structlog.get_logger(__name__)

PRIMARY_STAGES = ("edge_cases", "clustering", "optimizing", "scheduling")

ISSUE_ERRORS = {
    ErrorKind.INSUFFICIENT_DATA: InsufficientDataError,
    ErrorKind.MISSING_PREFERENCES: MissingPreferencesError,
    ErrorKind.INVALID_COORDINATES: InvalidCoordinatesError,
}


@dataclass
class _PipelineState:
    """Stage outputs kept so a fallback can reuse them without recomputation"""
    data: TripData
    edge_report: Optional[EdgeCaseReport] = None
    clustering: Optional[ClusteringResult] = None
    partial: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def matrix(self) -> Optional[PreferenceMatrix]:
        return self.clustering.matrix if self.clustering is not None else None

    @property
    def stay_overrides(self) -> Dict[str, int]:
        return self.edge_report.stay_overrides if self.edge_report is not None else {}


def _dedupe(messages: List[str]) -> List[str]:
    seen = set()
    unique = []
    for message in messages:
        if message not in seen:
            seen.add(message)
            unique.append(message)
    return unique


class TripOptimizationService:
    def __init__(
        self,
        data_source: DataSource,
        persistence: Optional[PersistenceSink] = None,
        progress: Optional[ProgressSink] = None,
        *,
        settings: Optional[Settings] = None,
        stats_store: Optional[StageStatisticsStore] = None,
        cache: Optional[TripDataCache] = None,
        locks: Optional[GroupLockRegistry] = None,
        fallback_chain: Optional[FallbackChain] = None,
    ):
        self.data_source = data_source
        self.persistence = persistence
        self.progress = progress
        self.settings = settings or Settings()
        self.stats_store = stats_store if stats_store is not None else StageStatisticsStore(
            self.settings.TIMING_HISTORY_LIMIT
        )
        self.governor = Governor(self.settings, self.stats_store)
        self.cache = cache if cache is not None else InMemoryTripDataCache()
        self.locks = locks or GroupLockRegistry()
        self.fallback_chain = fallback_chain or FallbackChain()

    # ---- public entry point -----------------------------------------------

    async def optimize(
        self,
        group_id: str,
        requester: str,
        options: Union[OptimizeOptions, Dict[str, Any], None] = None,
    ) -> OptimizationResult:
        started = time.perf_counter()
        structlog.contextvars.bind_contextvars(group_id=group_id, requester=requester)
        try:
            try:
                opts = self._parse_options(options)
            except PydanticValidationError as exc:
                return self._error_result(classify_error(exc), started)

            async with self.locks.hold(group_id):
                return await self._optimize_locked(group_id, requester, opts, started)
        except Exception as exc:
            logger.exception("optimization_crashed")
            return self._error_result(classify_error(exc), started)
        finally:
            structlog.contextvars.unbind_contextvars("group_id", "requester")

    # ---- orchestration -----------------------------------------------------

    @staticmethod
    def _parse_options(options) -> OptimizeOptions:
        if options is None:
            return OptimizeOptions()
        if isinstance(options, OptimizeOptions):
            return options
        return OptimizeOptions.model_validate(options)

    async def _optimize_locked(
        self,
        group_id: str,
        requester: str,
        opts: OptimizeOptions,
        started: float,
    ) -> OptimizationResult:
        self._report("preprocessing")
        try:
            data, warnings = await self._fetch(group_id, requester)
        except Exception as exc:
            payload = classify_error(exc)
            logger.warning("trip_data_unavailable", error_kind=payload.kind.value, error=payload.message)
            return self._error_result(payload, started)

        session = OptimizationSession(group_id, self.stats_store, len(data.destinations), len(data.members))
        estimate = self.governor.adaptive_timeout(data, opts.timeout_ms)
        deadline = self.governor.new_deadline(estimate.timeout_ms)
        quality = opts.accommodation_quality or AccommodationQuality(self.settings.DEFAULT_ACCOMMODATION_QUALITY)
        state = _PipelineState(data=data)

        logger.info(
            "optimization_started",
            destinations=len(data.destinations),
            members=len(data.members),
            timeout_ms=round(estimate.timeout_ms, 1),
            eta_ms=self.stats_store.estimate_remaining_ms(PRIMARY_STAGES, self.settings.TIMING_WINDOW),
        )

        try:
            outcome = await self._run_primary(state, session, opts, deadline, quality)
            status = ResultStatus.PARTIAL_SUCCESS if state.partial else ResultStatus.SUCCESS
            if state.partial:
                warnings.append("Optimization reached its time limit; showing the best route found so far")
        except Exception as exc:
            payload = classify_error(exc)
            logger.warning("primary_pipeline_failed", error_kind=payload.kind.value, error=payload.message)
            if payload.terminal:
                session.finish(ResultStatus.ERROR.value)
                return self._error_result(payload, started, state.warnings + warnings)

            outcome, fallback_warnings, error = await self._run_fallback(payload, state, session, opts, quality)
            if outcome is None:
                session.finish(ResultStatus.ERROR.value)
                return self._error_result(error, started, state.warnings + warnings)
            status = ResultStatus.PARTIAL_SUCCESS
            warnings.extend(fallback_warnings)

        warnings.extend(await self._persist(group_id, outcome))

        session.finish(status.value, outcome.strategy)
        outcome.session = session.summary()
        self._report("completed")

        processing_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "optimization_completed",
            status=status.value,
            strategy=outcome.strategy,
            destinations=len(outcome.route.destination_ids),
            days=len(outcome.days),
            processing_time_ms=round(processing_ms, 2),
        )
        return OptimizationResult(
            status=status,
            data=outcome,
            warnings=_dedupe(state.warnings + warnings),
            processing_time_ms=processing_ms,
        )

    async def _fetch(self, group_id: str, requester: str):
        try:
            data = await self.governor.retry_with_backoff(
                lambda: self.data_source.fetch(group_id, requester), stage="fetch"
            )
        except Exception as exc:
            if classify_error(exc).terminal:
                raise
            cached = self.cache.get(group_id)
            if cached is None:
                raise UpstreamDataError(f"Could not load trip data for group {group_id}: {exc}") from exc
            logger.warning("using_cached_trip_data", error=str(exc))
            return cached, ["Trip data could not be refreshed; planned with the last known version"]

        self.cache.put(group_id, data)
        return data, []

    async def _run_primary(
        self,
        state: _PipelineState,
        session: OptimizationSession,
        opts: OptimizeOptions,
        deadline: Deadline,
        quality: AccommodationQuality,
    ) -> OptimizationOutcome:
        report = self.governor.run_stage(
            session, "edge_cases", handle_edge_cases, state.data, self.settings, deadline=deadline,
        ).value
        state.edge_report = report
        state.data = report.data
        state.warnings.extend(report.warnings)

        self._report("clustering")
        clustering = self.governor.run_stage(
            session, "clustering", normalize_and_cluster, report.data, self.settings,
            walking_only_groups=report.walking_only_groups,
            absolute=report.absolute_preferences,
            stay_overrides=report.stay_overrides,
            deadline=deadline,
        ).value
        state.clustering = clustering
        state.warnings.extend(clustering.warnings)
        if not clustering.ok:
            kinds = [issue.kind for issue in clustering.issues]
            kind = ErrorKind.INSUFFICIENT_DATA if ErrorKind.INSUFFICIENT_DATA in kinds else kinds[0]
            raise ISSUE_ERRORS[kind](
                "; ".join(issue.message for issue in clustering.issues),
                details={"issues": [issue.code for issue in clustering.issues]},
            )

        self._report("optimizing")
        config = OptimizerConfig.from_settings(
            self.settings,
            max_iterations=opts.max_iterations,
            early_termination_threshold=opts.early_termination_threshold,
            seed=opts.seed,
        )
        monitor = self.governor.resource_monitor().start(len(report.data.destinations), len(report.data.members))
        optimizer = RouteOptimizer(
            report.data, clustering.matrix, clustering.clusters, self.settings, config,
            deadline=deadline, monitor=monitor, stay_overrides=report.stay_overrides,
        )
        def run_optimizer():
            try:
                return optimizer.optimize()
            finally:
                session.iterations = optimizer.iterations
                session.resource_usage = monitor.usage()

        stage = await run_in_threadpool(
            self.governor.run_stage, session, "optimizing", run_optimizer,
            deadline=deadline, allow_partial=True,
        )

        run = stage.value
        state.partial = stage.partial
        best = run.best
        if not best.feasible:
            raise NoFeasibleSolutionError(
                "No candidate route fits the trip window", details={"issues": list(best.issues)},
            )

        outcome = OptimizationOutcome(
            route=best,
            strategy="primary",
            edge_cases=report.types,
            evaluated_solutions=len(run.evaluated),
            iterations=run.iterations,
        )

        if opts.enable_multi_day_scheduling:
            self._report("scheduling")
            scheduler = MultiDayScheduler(
                report.data, self.settings, self._stays(report.data, clustering.matrix, report.stay_overrides), quality,
            )
            scheduled = self.governor.run_stage(
                session, "scheduling", scheduler.schedule, best, deadline=deadline, allow_partial=True,
            )
            state.partial = state.partial or scheduled.partial
            self._apply_schedule(outcome, scheduled.value)

        outcome.issues = list(best.issues)
        outcome.fairness = analyze_fairness_distribution(best.member_satisfaction).as_dict()
        return outcome

    async def _run_fallback(
        self,
        payload: ErrorPayload,
        state: _PipelineState,
        session: OptimizationSession,
        opts: OptimizeOptions,
        quality: AccommodationQuality,
    ):
        self._report("fallback")
        report = state.edge_report or handle_edge_cases(state.data, self.settings)
        clustering = state.clustering
        context = FallbackContext(
            data=report.data,
            settings=self.settings,
            matrix=state.matrix,
            clusters=clustering.clusters if clustering is not None and clustering.clusters else None,
            walking_only_groups=report.walking_only_groups,
            stay_overrides=report.stay_overrides,
            seed=opts.seed,
        )
        if state.edge_report is None:
            state.warnings.extend(report.warnings)

        with session.track("fallback"):
            result = await run_in_threadpool(self.fallback_chain.run, payload.kind, context, payload)
        if not result.success:
            return None, [], result.error

        output = result.output
        route = output.route
        outcome = OptimizationOutcome(
            route=route,
            strategy=result.strategy,
            edge_cases=report.types,
        )

        if opts.enable_multi_day_scheduling and output.enable_multi_day:
            self._report("scheduling")
            stays = self._stays(report.data, context.matrix, report.stay_overrides, output.default_stay_minutes)
            scheduler = MultiDayScheduler(report.data, self.settings, stays, quality)
            with session.track("scheduling"):
                schedule = scheduler.schedule(route)
            self._apply_schedule(outcome, schedule)

        outcome.issues = list(route.issues)
        outcome.fairness = analyze_fairness_distribution(route.member_satisfaction).as_dict()

        warnings = [f"Used the '{result.strategy}' fallback because: {payload.user_message}"] + result.warnings
        return outcome, warnings, None

    # ---- helpers -------------------------------------------------------------

    def _stays(self, data: TripData, matrix, overrides, default: Optional[float] = None) -> Dict[str, float]:
        if default:
            return {d.id: float(default) for d in data.destinations}
        return {d.id: stay_minutes(d, matrix, overrides) for d in data.destinations}

    @staticmethod
    def _apply_schedule(outcome: OptimizationOutcome, schedule) -> None:
        outcome.days = schedule.days
        outcome.dropped_destination_ids = list(schedule.dropped_destination_ids)
        outcome.accommodation_cost = schedule.accommodation_cost
        outcome.route.issues.extend(schedule.issues)

    async def _persist(self, group_id: str, outcome: OptimizationOutcome) -> List[str]:
        if self.persistence is None:
            return []
        self._report("saving")
        result: Union[RouteSolution, list] = outcome.days if outcome.days else outcome.route
        try:
            await self.governor.retry_with_backoff(
                lambda: self.persistence.save(group_id, result), stage="saving"
            )
        except Exception as exc:
            logger.error("optimization_result_not_saved", error=str(exc), error_type=type(exc).__name__)
            return ["The itinerary was created but could not be saved"]
        return []

    def _report(self, stage: str) -> None:
        if self.progress is None:
            return
        percent, message = PROGRESS_STAGES[stage]
        try:
            self.progress.report(stage, percent, message)
        except Exception as exc:
            logger.warning("progress_report_failed", stage=stage, error=str(exc))

    def _error_result(
        self,
        payload: ErrorPayload,
        started: float,
        warnings: Optional[List[str]] = None,
    ) -> OptimizationResult:
        self._report("error")
        return OptimizationResult(
            status=ResultStatus.ERROR,
            error=payload,
            warnings=_dedupe(list(warnings or [])),
            processing_time_ms=(time.perf_counter() - started) * 1000,
        )
