"""
Multi-objective route search over clusters.

The optimizer seeds a pool of candidate cluster orders (desirability greedy,
quantity first, nearest neighbour and random explorations), then repeatedly
improves the best few with 2-opt, missing-cluster insertion and random
perturbation. Every candidate is trimmed to the trip's time budget and scored as
``fairness_weight * fairness + quantity_weight * quantity``.

Ranking is deterministic: feasible before infeasible, then higher composite
score, lower total distance, fewer clusters and finally the lexical order key.
"""
import heapq
import logging
import time
from dataclasses import dataclass, field, fields
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from grouptrip.core.clustering import stay_minutes
from grouptrip.core.errors import NoFeasibleSolutionError, OptimizationTimeoutError
from grouptrip.core.fairness import evaluate_fairness
from grouptrip.core.geo import build_segment, distance_km, nearest_neighbor_order
from grouptrip.core.models import (
    DEPARTURE_ID, RETURN_ID, Cluster, Coordinates, RouteSolution, Segment, TransportMode, TripData,
)
from grouptrip.core.normalization import PreferenceMatrix
from grouptrip.core.scheduler import available_trip_minutes
from grouptrip.core.settings import Settings

logger = logging.getLogger(__name__)

GREEDY_SEED_CLUSTERS = 3
GREEDY_DISTANCE_SCALE_KM = 50.0
MAX_TWO_OPT_SWEEPS = 10


@dataclass
class OptimizerConfig:
    max_iterations: int = 50
    fairness_weight: float = 0.6
    quantity_weight: float = 0.4
    early_termination_threshold: float = 0.95
    random_explorations: int = 15
    top_candidates_to_improve: int = 5
    stall_limit: int = 50
    seed: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "OptimizerConfig":
        config = cls(
            max_iterations=settings.OPTIMIZER_MAX_ITERATIONS,
            fairness_weight=settings.FAIRNESS_WEIGHT,
            quantity_weight=settings.QUANTITY_WEIGHT,
            early_termination_threshold=settings.EARLY_TERMINATION_THRESHOLD,
            random_explorations=settings.RANDOM_EXPLORATIONS,
            top_candidates_to_improve=settings.TOP_CANDIDATES_TO_IMPROVE,
            stall_limit=settings.STALL_ITERATION_LIMIT,
            seed=settings.OPTIMIZER_SEED,
        )
        known = {f.name for f in fields(cls)}
        for key, value in overrides.items():
            if key not in known:
                raise TypeError(f"Unknown optimizer option: {key}")
            if value is not None:
                setattr(config, key, value)
        return config


def composite_score(fairness: float, quantity: float, fairness_weight: float, quantity_weight: float) -> float:
    return fairness_weight * fairness + quantity_weight * quantity


def solution_rank_key(solution: RouteSolution) -> tuple:
    """Sort key: best solution first, ties broken deterministically"""
    return (
        not solution.feasible,
        -round(solution.composite_score, 12),
        round(solution.total_distance_km, 9),
        len(solution.cluster_ids),
        solution.cluster_ids or solution.destination_ids,
    )


class RouteBuilder:
    """Turns an ordered list of destinations into a scored ``RouteSolution``"""

    def __init__(
        self,
        data: TripData,
        matrix: Optional[PreferenceMatrix],
        settings: Settings,
        fairness_weight: float,
        quantity_weight: float,
        stay_overrides: Optional[Dict[str, int]] = None,
        walking_only_ids: Iterable[Iterable[str]] = (),
        default_stay_minutes: Optional[float] = None,
    ):
        self.data = data
        self.matrix = matrix
        self.settings = settings
        self.fairness_weight = fairness_weight
        self.quantity_weight = quantity_weight
        self.destinations = data.destination_index
        self.available_minutes = available_trip_minutes(data.window, settings)
        self._stays = {
            d.id: float(default_stay_minutes) if default_stay_minutes else stay_minutes(d, matrix, stay_overrides)
            for d in data.destinations
        }
        self._walking_group = {}
        for idx, group in enumerate(walking_only_ids):
            for dest_id in group:
                self._walking_group[dest_id] = idx

    def stay(self, destination_id: str) -> float:
        return self._stays[destination_id]

    def leg(self, from_id: str, to_id: str) -> Segment:
        origin = self.data.departure if from_id == DEPARTURE_ID else self.destinations[from_id].coordinates
        target = (
            self.data.return_location if to_id == RETURN_ID else self.destinations[to_id].coordinates
        )
        mode = None
        group = self._walking_group.get(from_id)
        if group is not None and self._walking_group.get(to_id) == group:
            mode = TransportMode.WALKING
        return build_segment(from_id, origin, to_id, target, self.settings, mode=mode)

    def legs(self, destination_ids: Sequence[str]) -> List[Segment]:
        if not destination_ids:
            return []
        stops = [DEPARTURE_ID] + list(destination_ids)
        if self.data.return_location is not None:
            stops.append(RETURN_ID)
        return [self.leg(a, b) for a, b in zip(stops, stops[1:])]

    def route_minutes(self, destination_ids: Sequence[str], segments: Sequence[Segment]) -> float:
        buffers = max(0, len(destination_ids) - 1) * self.settings.VISIT_BUFFER_MINUTES
        return sum(self.stay(d) for d in destination_ids) + sum(s.duration_minutes for s in segments) + buffers

    def build(
        self,
        destination_ids: Sequence[str],
        cluster_ids: Sequence[str] = (),
        strategy: str = "primary",
    ) -> RouteSolution:
        destination_ids = tuple(destination_ids)
        segments = tuple(self.legs(destination_ids))
        total_minutes = self.route_minutes(destination_ids, segments)
        total_distance = sum(s.distance_km for s in segments)

        if self.matrix is not None and self.matrix.member_ids:
            report = evaluate_fairness(self.matrix, destination_ids)
            fairness, satisfaction = report.score, report.member_satisfaction
        else:
            fairness, satisfaction = 1.0, {}

        quantity = len(destination_ids) / len(self.destinations) if self.destinations else 0.0

        issues = []
        if not destination_ids:
            issues.append("Route contains no destinations")
        if total_minutes > self.available_minutes:
            issues.append(
                f"Route needs {total_minutes:.0f} minutes but only "
                f"{self.available_minutes:.0f} are available"
            )
        modes = {s.mode for s in segments}
        if TransportMode.FLYING in modes and len(modes) > 2:
            issues.append(f"Route mixes flights with {len(modes)} transport modes")

        return RouteSolution(
            cluster_ids=tuple(cluster_ids),
            destination_ids=destination_ids,
            segments=segments,
            fairness_score=fairness,
            quantity_score=quantity,
            composite_score=composite_score(fairness, quantity, self.fairness_weight, self.quantity_weight),
            feasible=bool(destination_ids) and total_minutes <= self.available_minutes,
            member_satisfaction=satisfaction,
            issues=issues,
            total_distance_km=total_distance,
            total_minutes=total_minutes,
            strategy=strategy,
        )


@dataclass
class OptimizationRun:
    best: RouteSolution
    evaluated: List[RouteSolution] = field(default_factory=list)
    iterations: int = 0
    elapsed_ms: float = 0.0
    terminated_by: str = "max_iterations"


class RouteOptimizer:
    def __init__(
        self,
        data: TripData,
        matrix: PreferenceMatrix,
        clusters: Sequence[Cluster],
        settings: Settings,
        config: Optional[OptimizerConfig] = None,
        deadline=None,
        monitor=None,
        stay_overrides: Optional[Dict[str, int]] = None,
        strategy: str = "primary",
    ):
        self.data = data
        self.settings = settings
        self.config = config or OptimizerConfig.from_settings(settings)
        self.deadline = deadline
        self.monitor = monitor
        self.strategy = strategy
        self.clusters: Dict[str, Cluster] = {c.id: c for c in clusters}
        self.cluster_ids: List[str] = [c.id for c in clusters]
        self.builder = RouteBuilder(
            data, matrix, settings,
            self.config.fairness_weight, self.config.quantity_weight,
            stay_overrides=stay_overrides,
            walking_only_ids=[c.destination_ids for c in clusters if c.walking_only],
        )
        self.rng = np.random.default_rng(self.config.seed)
        self.iterations = 0
        self._evaluated: Dict[Tuple[str, ...], RouteSolution] = {}
        self._started = 0.0

        desirability = [c.desirability for c in clusters]
        low, high = (min(desirability), max(desirability)) if desirability else (0.0, 0.0)
        spread = (high - low) or 1.0
        self._norm_desirability = {c.id: (c.desirability - low) / spread for c in clusters}

    # ---- evaluation -------------------------------------------------------

    def _point(self, stop_id: str) -> Coordinates:
        if stop_id == DEPARTURE_ID:
            return self.data.departure
        return self.builder.destinations[stop_id].coordinates

    def _cluster_path(self, cluster_id: str, previous: str) -> List[str]:
        """Stops of one cluster as a nearest-neighbour walk from where the route enters it"""
        members = self.clusters[cluster_id].destination_ids
        if len(members) < 2:
            return list(members)
        return nearest_neighbor_order(self._point(previous), members, self._point)

    def _destinations_for(self, order: Sequence[str]) -> List[str]:
        ids = []
        previous = DEPARTURE_ID
        for cluster_id in order:
            path = self._cluster_path(cluster_id, previous)
            ids.extend(path)
            if path:
                previous = path[-1]
        return ids

    def _trim(self, order: Sequence[str]) -> Tuple[str, ...]:
        """Longest prefix of ``order`` that fits the available trip minutes"""
        if not order:
            return ()
        budget = self.builder.available_minutes
        buffer = self.settings.VISIT_BUFFER_MINUTES
        has_return = self.data.return_location is not None

        elapsed = 0.0
        previous = DEPARTURE_ID
        visited = 0
        fits = 0
        for k, cluster_id in enumerate(order, start=1):
            for dest_id in self._cluster_path(cluster_id, previous):
                elapsed += self.builder.leg(previous, dest_id).duration_minutes
                elapsed += self.builder.stay(dest_id) + (buffer if visited else 0)
                visited += 1
                previous = dest_id
            closing = self.builder.leg(previous, RETURN_ID).duration_minutes if has_return else 0.0
            if elapsed + closing > budget:
                break
            fits = k

        # keep at least one cluster so infeasibility is reported rather than hidden
        return tuple(order[:max(fits, 1)])

    def _evaluate(self, order: Sequence[str]) -> Tuple[RouteSolution, bool]:
        key = self._trim(order)
        cached = self._evaluated.get(key)
        if cached is not None:
            return cached, False
        solution = self.builder.build(self._destinations_for(key), key, strategy=self.strategy)
        self._evaluated[key] = solution
        return solution, True

    def _ranked(self, limit: Optional[int] = None) -> List[RouteSolution]:
        if limit is None:
            return sorted(self._evaluated.values(), key=solution_rank_key)
        return heapq.nsmallest(limit, self._evaluated.values(), key=solution_rank_key)

    def _best(self) -> Optional[RouteSolution]:
        ranked = self._ranked(1)
        return ranked[0] if ranked else None

    def _snapshot(self, terminated_by: str) -> OptimizationRun:
        return OptimizationRun(
            best=self._best(),
            evaluated=self._ranked(),
            iterations=self.iterations,
            elapsed_ms=(time.perf_counter() - self._started) * 1000,
            terminated_by=terminated_by,
        )

    def _check_deadline(self) -> None:
        if self.deadline is not None and self.deadline.expired:
            partial = self._snapshot("deadline") if self._evaluated else None
            raise OptimizationTimeoutError(
                "optimizing", self.deadline.elapsed_ms, self.deadline.timeout_ms, partial=partial
            )

    # ---- seed candidates --------------------------------------------------

    def _centroid(self, cluster_id: str):
        return self.clusters[cluster_id].centroid

    def _nearest_neighbor(self, candidates: Sequence[str]) -> List[str]:
        remaining = list(candidates)
        ordered = []
        current = self.data.departure
        while remaining:
            best = min(
                range(len(remaining)),
                key=lambda i: (distance_km(current, self._centroid(remaining[i])), i),
            )
            cluster_id = remaining.pop(best)
            ordered.append(cluster_id)
            current = self._centroid(cluster_id)
        return ordered

    def _desirability_greedy(self, start: str) -> List[str]:
        order = [start]
        remaining = [c for c in self.cluster_ids if c != start]
        current = self._centroid(start)
        while remaining:
            def attraction(i):
                cluster_id = remaining[i]
                dist = distance_km(current, self._centroid(cluster_id))
                return (self._norm_desirability[cluster_id] + 0.1) / (1 + dist / GREEDY_DISTANCE_SCALE_KM)
            best = max(range(len(remaining)), key=lambda i: (attraction(i), -i))
            cluster_id = remaining.pop(best)
            order.append(cluster_id)
            current = self._centroid(cluster_id)
        return order

    def _quantity_first(self) -> List[str]:
        by_stay = sorted(
            self.cluster_ids,
            key=lambda c: (self.clusters[c].average_stay_minutes * len(self.clusters[c].destination_ids), c),
        )
        chosen = []
        used = 0.0
        for cluster_id in by_stay:
            cost = sum(self.builder.stay(d) for d in self.clusters[cluster_id].destination_ids)
            if chosen and used + cost > self.builder.available_minutes:
                break
            chosen.append(cluster_id)
            used += cost
        return self._nearest_neighbor(chosen)

    def _random_order(self) -> List[str]:
        n = len(self.cluster_ids)
        size = int(self.rng.integers(1, n + 1))
        picks = self.rng.permutation(n)[:size]
        return [self.cluster_ids[i] for i in picks]

    def _seed_candidates(self) -> None:
        by_desirability = sorted(self.cluster_ids, key=lambda c: (-self.clusters[c].desirability, c))
        seeds = [self._desirability_greedy(c) for c in by_desirability[:GREEDY_SEED_CLUSTERS]]
        seeds.append(self._quantity_first())
        seeds.append(self._nearest_neighbor(self.cluster_ids))

        for order in seeds:
            self._check_deadline()
            self._evaluate(order)
        for _ in range(self.config.random_explorations):
            self._check_deadline()
            self._evaluate(self._random_order())

    # ---- neighbourhood moves ----------------------------------------------

    def _path_length(self, order: Sequence[str]) -> float:
        total = 0.0
        current = self.data.departure
        for cluster_id in order:
            point = self._centroid(cluster_id)
            total += distance_km(current, point)
            current = point
        return total

    def _two_opt(self, order: Sequence[str]) -> List[str]:
        best = list(order)
        best_length = self._path_length(best)
        for _ in range(MAX_TWO_OPT_SWEEPS):
            improved = False
            for i in range(len(best) - 1):
                for j in range(i + 2, len(best) + 1):
                    candidate = best[:i] + best[i:j][::-1] + best[j:]
                    length = self._path_length(candidate)
                    if length + 1e-9 < best_length:
                        best, best_length = candidate, length
                        improved = True
            if not improved:
                break
        return best

    def _insert_missing(self, order: Sequence[str]) -> Optional[List[str]]:
        missing = [c for c in self.cluster_ids if c not in order]
        if not missing:
            return None
        target = max(missing, key=lambda c: (self.clusters[c].desirability, c))
        options = []
        for pos in range(len(order) + 1):
            candidate = list(order[:pos]) + [target] + list(order[pos:])
            options.append((self._path_length(candidate), pos, candidate))
        return min(options, key=lambda o: (o[0], o[1]))[2]

    def _perturb(self, order: Sequence[str]) -> List[str]:
        order = list(order)
        missing = [c for c in self.cluster_ids if c not in order]
        if missing and self.rng.random() < 0.5:
            pos = int(self.rng.integers(0, len(order)))
            order[pos] = missing[int(self.rng.integers(0, len(missing)))]
        elif len(order) > 1:
            i, j = self.rng.choice(len(order), size=2, replace=False)
            order[i], order[j] = order[j], order[i]
        return order

    # ---- main loop ---------------------------------------------------------

    def optimize(self) -> OptimizationRun:
        if not self.cluster_ids:
            raise NoFeasibleSolutionError("There are no clusters to route")

        self._started = time.perf_counter()
        self._seed_candidates()

        terminated_by = "max_iterations"
        stall = 0
        for _ in range(self.config.max_iterations):
            self._check_deadline()
            best = self._best()
            if best.feasible and best.composite_score >= self.config.early_termination_threshold:
                terminated_by = "converged"
                break

            if self.monitor is not None:
                self.monitor.tick()
            self.iterations += 1

            new_candidates = 0
            for candidate in self._ranked(self.config.top_candidates_to_improve):
                order = candidate.cluster_ids
                for move in (self._two_opt, self._insert_missing, self._perturb):
                    self._check_deadline()
                    neighbour = move(order)
                    if neighbour:
                        _, is_new = self._evaluate(neighbour)
                        new_candidates += int(is_new)

            stall = 0 if new_candidates else stall + 1
            if stall >= self.config.stall_limit:
                terminated_by = "exhausted"
                break
        else:
            best = self._best()
            if best.feasible and best.composite_score >= self.config.early_termination_threshold:
                terminated_by = "converged"

        run = self._snapshot(terminated_by)
        logger.info(
            f"Optimizer finished after {run.iterations} iterations ({terminated_by}): "
            f"composite={run.best.composite_score:.3f}, {len(run.evaluated)} candidates"
        )
        return run
