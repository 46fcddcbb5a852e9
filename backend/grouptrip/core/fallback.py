"""
Degraded strategies used when the primary pipeline fails or times out.

``FallbackChain.run`` is a plain dispatcher: it filters the registered
strategies to those applicable to the originating error kind, tries them in
priority order and returns the first one that yields a route. When all of them
fail the outcome carries a final structured error with remediation steps.
"""
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence

import structlog

from grouptrip.core.clustering import singleton_clusters
from grouptrip.core.errors import (
    ErrorKind, ErrorPayload, InsufficientDataError, NoFeasibleSolutionError,
    OptimizationTimeoutError, USER_MESSAGES, classify_error,
)
from grouptrip.core.geo import distance_km, nearest_neighbor_order
from grouptrip.core.governor import Deadline, ResourceMonitor
from grouptrip.core.models import Cluster, RouteSolution, TripData
from grouptrip.core.normalization import PreferenceMatrix, mean_destination_scores, normalize_preferences
from grouptrip.core.route_optimizer import OptimizerConfig, RouteBuilder, RouteOptimizer
from grouptrip.core.settings import Settings

logger = structlog.get_logger(__name__)

FINAL_SUGGESTIONS = [
    "Try reducing the number of destinations",
    "Ensure all destinations have valid coordinates",
    "Add more user preferences for better optimization",
    "Consider splitting into multiple shorter trips",
    "Contact support if the issue persists",
]

GREEDY_TOP_K = 10
PREFERENCE_TOP_K = 12
DISTANCE_MAX_STOPS = 15
INPUT_ORDER_MAX_STOPS = 10
INPUT_ORDER_STAY_MINUTES = 240
MIN_DISTANCE_KM = 0.1


@dataclass
class FallbackContext:
    """Upstream results preserved from the failed primary run"""
    data: TripData
    settings: Settings
    matrix: Optional[PreferenceMatrix] = None
    clusters: Optional[List[Cluster]] = None
    walking_only_groups: Sequence[Sequence[str]] = ()
    stay_overrides: Dict[str, int] = field(default_factory=dict)
    seed: Optional[int] = None

    def preference_matrix(self) -> Optional[PreferenceMatrix]:
        if self.matrix is None and self.data.members and self.data.destinations:
            self.matrix = normalize_preferences(self.data, self.settings).matrix
        return self.matrix

    def builder(self, default_stay_minutes: Optional[float] = None) -> RouteBuilder:
        return RouteBuilder(
            self.data,
            self.preference_matrix(),
            self.settings,
            self.settings.FAIRNESS_WEIGHT,
            self.settings.QUANTITY_WEIGHT,
            stay_overrides=self.stay_overrides,
            walking_only_ids=self.walking_only_groups,
            default_stay_minutes=default_stay_minutes,
        )


@dataclass
class StrategyOutput:
    route: RouteSolution
    enable_multi_day: bool = True
    default_stay_minutes: Optional[float] = None
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class FallbackStrategy:
    name: str
    priority: int
    applicable_kinds: FrozenSet[ErrorKind]
    run: Callable[[FallbackContext], StrategyOutput]
    warning: str

    def applies_to(self, kind: ErrorKind) -> bool:
        if kind == ErrorKind.UNKNOWN:
            return True
        if kind == ErrorKind.RESOURCE_EXCEEDED:
            kind = ErrorKind.OPTIMIZATION_TIMEOUT
        return kind in self.applicable_kinds


@dataclass
class FallbackAttempt:
    strategy: str
    success: bool
    duration_ms: float
    error: Optional[str] = None


@dataclass
class FallbackOutcome:
    success: bool
    strategy: Optional[str] = None
    output: Optional[StrategyOutput] = None
    warnings: List[str] = field(default_factory=list)
    attempts: List[FallbackAttempt] = field(default_factory=list)
    error: Optional[ErrorPayload] = None


def _fit_prefix(builder: RouteBuilder, destination_ids: Sequence[str], strategy: str) -> RouteSolution:
    """Longest prefix of the ordering that fits the trip's time budget"""
    if not destination_ids:
        raise InsufficientDataError(f"Strategy {strategy} produced no destinations")
    best = builder.build(destination_ids[:1], strategy=strategy)
    for k in range(2, len(destination_ids) + 1):
        candidate = builder.build(destination_ids[:k], strategy=strategy)
        if not candidate.feasible:
            break
        best = candidate
    return best


def relaxed_optimization(ctx: FallbackContext) -> StrategyOutput:
    matrix = ctx.preference_matrix()
    if matrix is None:
        raise InsufficientDataError("No members or destinations to optimize")

    clusters = ctx.clusters or singleton_clusters(ctx.data, matrix)
    config = OptimizerConfig.from_settings(
        ctx.settings,
        max_iterations=50,
        fairness_weight=0.0,
        quantity_weight=1.0,
        early_termination_threshold=0.5,
        seed=ctx.seed,
    )
    monitor = ResourceMonitor(ctx.settings).start(len(ctx.data.destinations), len(ctx.data.members))
    optimizer = RouteOptimizer(
        ctx.data, matrix, clusters, ctx.settings, config,
        deadline=Deadline(ctx.settings.FALLBACK_TIMEOUT_MS),
        monitor=monitor,
        stay_overrides=ctx.stay_overrides,
        strategy="relaxed_optimization",
    )
    try:
        route = optimizer.optimize().best
    except OptimizationTimeoutError as exc:
        if exc.partial is None:
            raise
        route = exc.partial.best

    if not route.feasible:
        raise NoFeasibleSolutionError("Relaxed optimization found no route within the trip window")
    return StrategyOutput(route=route, enable_multi_day=False)


def greedy_selection(ctx: FallbackContext) -> StrategyOutput:
    means = mean_destination_scores(ctx.data, ctx.settings.NEUTRAL_PREFERENCE_SCORE)
    departure = ctx.data.departure

    def value(dest):
        return means[dest.id] / max(distance_km(departure, dest.coordinates), MIN_DISTANCE_KM)

    ranked = sorted(enumerate(ctx.data.destinations), key=lambda pair: (-value(pair[1]), pair[0]))
    ids = [dest.id for _, dest in ranked[:GREEDY_TOP_K]]
    return StrategyOutput(route=_fit_prefix(ctx.builder(), ids, "greedy"))


def preference_ordering(ctx: FallbackContext) -> StrategyOutput:
    means = mean_destination_scores(ctx.data, ctx.settings.NEUTRAL_PREFERENCE_SCORE)
    ranked = sorted(enumerate(ctx.data.destinations), key=lambda pair: (-means[pair[1].id], pair[0]))
    ids = [dest.id for _, dest in ranked[:PREFERENCE_TOP_K]]
    return StrategyOutput(route=_fit_prefix(ctx.builder(), ids, "preference_ordering"))


def distance_ordering(ctx: FallbackContext) -> StrategyOutput:
    ordered = nearest_neighbor_order(ctx.data.departure, ctx.data.destinations, lambda d: d.coordinates)
    ids = [dest.id for dest in ordered[:DISTANCE_MAX_STOPS]]
    return StrategyOutput(route=_fit_prefix(ctx.builder(), ids, "distance_ordering"))


def input_order(ctx: FallbackContext) -> StrategyOutput:
    ids = [dest.id for dest in ctx.data.destinations[:INPUT_ORDER_MAX_STOPS]]
    builder = ctx.builder(default_stay_minutes=INPUT_ORDER_STAY_MINUTES)
    return StrategyOutput(
        route=_fit_prefix(builder, ids, "input_order"),
        default_stay_minutes=INPUT_ORDER_STAY_MINUTES,
    )


DEFAULT_STRATEGIES = (
    FallbackStrategy(
        name="relaxed_optimization",
        priority=1,
        applicable_kinds=frozenset({
            ErrorKind.OPTIMIZATION_TIMEOUT, ErrorKind.NO_FEASIBLE_SOLUTION, ErrorKind.CLUSTERING_FAILED,
        }),
        run=relaxed_optimization,
        warning="Used a simplified optimization: fairness between members was not balanced "
                "and the route was not split into days",
    ),
    FallbackStrategy(
        name="greedy",
        priority=2,
        applicable_kinds=frozenset({
            ErrorKind.OPTIMIZATION_TIMEOUT, ErrorKind.ROUTE_CALCULATION_FAILED, ErrorKind.CLUSTERING_FAILED,
        }),
        run=greedy_selection,
        warning="Destinations were picked greedily by rating and distance from the start",
    ),
    FallbackStrategy(
        name="preference_ordering",
        priority=3,
        applicable_kinds=frozenset({
            ErrorKind.OPTIMIZATION_TIMEOUT, ErrorKind.NO_FEASIBLE_SOLUTION, ErrorKind.ROUTE_CALCULATION_FAILED,
        }),
        run=preference_ordering,
        warning="Destinations were ordered by group rating only",
    ),
    FallbackStrategy(
        name="distance_ordering",
        priority=4,
        applicable_kinds=frozenset({
            ErrorKind.INSUFFICIENT_DATA, ErrorKind.MISSING_PREFERENCES, ErrorKind.OPTIMIZATION_TIMEOUT,
        }),
        run=distance_ordering,
        warning="Destinations were ordered by distance from the departure point",
    ),
    FallbackStrategy(
        name="input_order",
        priority=5,
        applicable_kinds=frozenset({
            ErrorKind.INSUFFICIENT_DATA, ErrorKind.INVALID_COORDINATES, ErrorKind.CLUSTERING_FAILED,
        }),
        run=input_order,
        warning=f"Destinations are listed in their original order with "
                f"{INPUT_ORDER_STAY_MINUTES // 60} hours at each stop",
    ),
)


class FallbackChain:
    def __init__(self, strategies: Optional[Sequence[FallbackStrategy]] = None):
        self.strategies = sorted(strategies or DEFAULT_STRATEGIES, key=lambda s: s.priority)

    def applicable(self, kind: ErrorKind) -> List[FallbackStrategy]:
        return [s for s in self.strategies if s.applies_to(kind)]

    def _attempt(self, strategy: FallbackStrategy, context: FallbackContext):
        start = time.perf_counter()
        try:
            output = strategy.run(context)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            payload = classify_error(exc)
            logger.warning(
                "fallback_strategy_failed",
                strategy=strategy.name,
                error_kind=payload.kind.value,
                error=payload.message,
                duration_ms=round(duration_ms, 2),
            )
            return FallbackAttempt(strategy.name, False, duration_ms, payload.message), None

        duration_ms = (time.perf_counter() - start) * 1000
        if not output.route.destination_ids:
            return FallbackAttempt(strategy.name, False, duration_ms, "No destinations selected"), None
        return FallbackAttempt(strategy.name, True, duration_ms), output

    def run(
        self,
        kind: ErrorKind,
        context: FallbackContext,
        original_error: Optional[ErrorPayload] = None,
    ) -> FallbackOutcome:
        attempts = []
        for strategy in self.applicable(kind):
            attempt, output = self._attempt(strategy, context)
            attempts.append(attempt)
            if output is None:
                continue

            logger.info(
                "fallback_strategy_succeeded",
                strategy=strategy.name,
                original_error=kind.value,
                attempts=len(attempts),
                destinations=len(output.route.destination_ids),
            )
            return FallbackOutcome(
                success=True,
                strategy=strategy.name,
                output=output,
                warnings=[strategy.warning] + output.warnings,
                attempts=attempts,
            )

        logger.error("fallback_chain_exhausted", original_error=kind.value, attempts=len(attempts))
        return FallbackOutcome(
            success=False,
            attempts=attempts,
            error=self._final_error(kind, attempts, original_error),
        )

    @staticmethod
    def _final_error(
        kind: ErrorKind,
        attempts: List[FallbackAttempt],
        original_error: Optional[ErrorPayload],
    ) -> ErrorPayload:
        details = {
            "fallback_attempts": len(attempts),
            "attempted_strategies": [a.strategy for a in attempts],
        }
        if original_error is not None:
            details["original_error"] = original_error.message
        return ErrorPayload(
            kind=kind,
            message=f"Optimization failed and {len(attempts)} fallback strategies could not recover",
            retryable=False,
            suggested_actions=list(FINAL_SUGGESTIONS),
            severity="high",
            user_message=USER_MESSAGES[kind],
            details=details,
        )
