"""
Deadline, resource and retry governance for pipeline stages.

The ``Governor`` is the only component that cancels work: stages receive a
``Deadline`` and a ``ResourceMonitor`` and stop cooperatively when either trips.
Historical stage timings live in an injected ``StageStatisticsStore`` rather than
module state so concurrent requests never share mutable domain data.
"""
import asyncio
import threading
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

import psutil
import structlog

from grouptrip.core.errors import OptimizationTimeoutError, ResourceExceededError, classify_error
from grouptrip.core.geo import geographic_spread_km
from grouptrip.core.models import TripData
from grouptrip.core.settings import Settings

logger = structlog.get_logger(__name__)

RETRY_TIMEOUT_GROWTH = 1.5


@dataclass(frozen=True)
class StageRecord:
    stage: str
    duration_ms: float
    destination_count: int = 0
    member_count: int = 0
    iterations: int = 0
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class StageStatisticsStore:
    """Thread-safe, append-only history of stage timings with bounded retention"""

    def __init__(self, history_limit: int = 100):
        self._history_limit = history_limit
        self._records: Dict[str, Deque[StageRecord]] = {}
        self._lock = threading.Lock()

    def record(self, stage: str, duration_ms: float, **context) -> StageRecord:
        entry = StageRecord(stage=stage, duration_ms=duration_ms, **context)
        with self._lock:
            history = self._records.get(stage)
            if history is None:
                history = deque(maxlen=self._history_limit)
                self._records[stage] = history
            history.append(entry)
        return entry

    def recent(self, stage: str, window: int = 10) -> List[StageRecord]:
        with self._lock:
            history = list(self._records.get(stage, ()))
        return history[-window:]

    def mean_duration_ms(self, stage: str, window: int = 10) -> Optional[float]:
        records = self.recent(stage, window)
        if not records:
            return None
        return sum(r.duration_ms for r in records) / len(records)

    def estimate_remaining_ms(self, stages: Iterable[str], window: int = 10) -> Optional[float]:
        """Moving-average ETA for the given stages; None without any history"""
        means = [self.mean_duration_ms(stage, window) for stage in stages]
        known = [m for m in means if m is not None]
        return sum(known) if known else None

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            stages = {stage: list(history) for stage, history in self._records.items()}
        return {
            stage: {
                "count": len(records),
                "mean_ms": sum(r.duration_ms for r in records) / len(records),
            }
            for stage, records in stages.items() if records
        }

    def __len__(self) -> int:
        with self._lock:
            return sum(len(h) for h in self._records.values())


class Deadline:
    """Wall-clock budget for one pipeline run, plus an optional grace window"""

    def __init__(self, timeout_ms: float, grace_ms: float = 0, clock: Callable[[], float] = time.monotonic):
        self.timeout_ms = timeout_ms
        self.grace_ms = grace_ms
        self._clock = clock
        self._started = clock()

    @property
    def elapsed_ms(self) -> float:
        return (self._clock() - self._started) * 1000

    @property
    def remaining_ms(self) -> float:
        return max(0.0, self.timeout_ms - self.elapsed_ms)

    @property
    def expired(self) -> bool:
        return self.elapsed_ms >= self.timeout_ms

    @property
    def within_grace(self) -> bool:
        return self.elapsed_ms < self.timeout_ms + self.grace_ms

    def check(self, stage: str, partial: Any = None) -> None:
        elapsed = self.elapsed_ms
        if elapsed >= self.timeout_ms:
            raise OptimizationTimeoutError(stage, elapsed, self.timeout_ms, partial=partial)


@dataclass
class TimeoutEstimate:
    timeout_ms: float
    base_ms: float
    factors: Dict[str, float] = field(default_factory=dict)
    explicit: bool = False


def calculate_adaptive_timeout(
    data: TripData,
    settings: Settings,
    stats: Optional[StageStatisticsStore] = None,
    explicit_ms: Optional[float] = None,
) -> TimeoutEstimate:
    """
    Scale the default timeout by problem size.

    An explicit caller timeout wins outright and is only capped at the maximum.
    """
    if explicit_ms is not None:
        return TimeoutEstimate(
            timeout_ms=min(float(explicit_ms), settings.MAX_TIMEOUT_MS),
            base_ms=float(explicit_ms),
            explicit=True,
        )

    base = float(settings.DEFAULT_TIMEOUT_MS)
    factors = {}

    dest_count = len(data.destinations)
    if dest_count > 20:
        factors["destinations"] = 2.0
    elif dest_count > 10:
        factors["destinations"] = 1.5

    group_size = len(data.members)
    if group_size > 10:
        factors["group_size"] = 1.8
    elif group_size > 5:
        factors["group_size"] = 1.3

    spread = geographic_spread_km([d.coordinates for d in data.destinations])
    if spread > 5000:
        factors["geographic_spread"] = 2.0
    elif spread > 1000:
        factors["geographic_spread"] = 1.4

    pairs = dest_count * group_size
    if pairs:
        rated = {(p.member_id, p.destination_id) for p in data.preferences}
        density = len(rated) / pairs
        if density < 0.3:
            factors["preference_density"] = 0.8
        elif density > 0.8:
            factors["preference_density"] = 1.2

    timeout = base
    for factor in factors.values():
        timeout *= factor

    if stats is not None:
        historical = stats.mean_duration_ms("optimizing", settings.TIMING_WINDOW)
        if historical is not None and historical * 1.5 > timeout:
            factors["history"] = historical * 1.5 / timeout
            timeout = historical * 1.5

    timeout = min(settings.MAX_TIMEOUT_MS, max(settings.MIN_TIMEOUT_MS, timeout))
    return TimeoutEstimate(timeout_ms=timeout, base_ms=base, factors=factors)


def calculate_backoff_ms(attempt: int, base_ms: float = 1000, cap_ms: float = 5000) -> float:
    """Exponential backoff before retry ``attempt + 1`` (attempts start at 1)"""
    return min(base_ms * 2 ** (attempt - 1), cap_ms)


def attempt_timeout_ms(base_ms: float, attempt: int, cap_ms: float) -> float:
    return min(base_ms * RETRY_TIMEOUT_GROWTH ** (attempt - 1), cap_ms)


class ResourceMonitor:
    """Iteration, CPU-time and memory ceilings checked periodically by long stages"""

    def __init__(self, settings: Settings, max_iterations: Optional[int] = None, process: Optional[psutil.Process] = None):
        self.settings = settings
        self.max_iterations = max_iterations or settings.MAX_RESOURCE_ITERATIONS
        self.check_interval = max(1, settings.RESOURCE_CHECK_INTERVAL)
        self.iterations = 0
        self.peak_memory_mb = 0.0
        self._process = process
        self._cpu_start = 0.0
        self._memory_start = 0.0

    def _rss_mb(self) -> float:
        if self._process is None:
            self._process = psutil.Process()
        return self._process.memory_info().rss / (1024 * 1024)

    def start(self, destination_count: int = 0, member_count: int = 0) -> "ResourceMonitor":
        if destination_count > self.settings.MAX_DESTINATIONS:
            raise ResourceExceededError("destinations", destination_count, self.settings.MAX_DESTINATIONS)
        if member_count > self.settings.MAX_GROUP_MEMBERS:
            raise ResourceExceededError("group_members", member_count, self.settings.MAX_GROUP_MEMBERS)
        self.iterations = 0
        self._cpu_start = time.process_time()
        self._memory_start = self._rss_mb()
        self.peak_memory_mb = 0.0
        return self

    @property
    def cpu_time_ms(self) -> float:
        return (time.process_time() - self._cpu_start) * 1000

    def tick(self, count: int = 1) -> None:
        self.iterations += count
        if self.iterations > self.max_iterations:
            raise ResourceExceededError("iterations", self.iterations, self.max_iterations)
        if self.iterations % self.check_interval == 0:
            self.check()

    def check(self) -> None:
        cpu_ms = self.cpu_time_ms
        if cpu_ms > self.settings.MAX_CPU_TIME_MS:
            raise ResourceExceededError("cpu_time_ms", cpu_ms, self.settings.MAX_CPU_TIME_MS)
        memory_mb = self._rss_mb() - self._memory_start
        self.peak_memory_mb = max(self.peak_memory_mb, memory_mb)
        if memory_mb > self.settings.MAX_MEMORY_MB:
            raise ResourceExceededError("memory_mb", memory_mb, self.settings.MAX_MEMORY_MB)

    def usage(self) -> Dict[str, float]:
        return {
            "iterations": self.iterations,
            "cpu_time_ms": round(self.cpu_time_ms, 2),
            "peak_memory_mb": round(self.peak_memory_mb, 2),
        }


@dataclass
class StageResult:
    value: Any
    partial: bool = False


class Governor:
    """Runs stages under deadlines and ceilings, retries transient upstream calls"""

    def __init__(self, settings: Settings, stats_store: Optional[StageStatisticsStore] = None):
        self.settings = settings
        self.stats = stats_store if stats_store is not None else StageStatisticsStore(settings.TIMING_HISTORY_LIMIT)

    def new_deadline(self, timeout_ms: float, grace: bool = True) -> Deadline:
        return Deadline(timeout_ms, self.settings.GRACE_PERIOD_MS if grace else 0)

    def adaptive_timeout(self, data: TripData, explicit_ms: Optional[float] = None) -> TimeoutEstimate:
        estimate = calculate_adaptive_timeout(data, self.settings, self.stats, explicit_ms)
        logger.info(
            "timeout_calculated",
            timeout_ms=round(estimate.timeout_ms, 1),
            explicit=estimate.explicit,
            factors=estimate.factors,
        )
        return estimate

    def resource_monitor(self, max_iterations: Optional[int] = None) -> ResourceMonitor:
        return ResourceMonitor(self.settings, max_iterations=max_iterations)

    def run_stage(
        self,
        session,
        stage: str,
        fn: Callable[..., Any],
        *args,
        deadline: Optional[Deadline] = None,
        allow_partial: bool = False,
        **kwargs,
    ) -> StageResult:
        """
        Run ``fn`` as ``stage`` under ``deadline``.

        With ``allow_partial`` a timeout that still carries a best-so-far result is
        turned into a partial ``StageResult`` as long as the grace period lasts.
        """
        if deadline is not None and deadline.expired and not (allow_partial and deadline.within_grace):
            raise OptimizationTimeoutError(stage, deadline.elapsed_ms, deadline.timeout_ms)

        with session.track(stage):
            try:
                value = fn(*args, **kwargs)
            except OptimizationTimeoutError as exc:
                if allow_partial and exc.partial is not None and deadline is not None and deadline.within_grace:
                    logger.warning(
                        "stage_partial_result",
                        stage=stage,
                        elapsed_ms=round(exc.elapsed_ms, 2),
                        timeout_ms=exc.timeout_ms,
                    )
                    session.mark_partial(stage)
                    return StageResult(exc.partial, partial=True)
                logger.warning("stage_timed_out", stage=stage, elapsed_ms=round(exc.elapsed_ms, 2))
                raise

        if deadline is not None and deadline.expired:
            if allow_partial and deadline.within_grace:
                session.mark_partial(stage)
                return StageResult(value, partial=True)
            raise OptimizationTimeoutError(stage, deadline.elapsed_ms, deadline.timeout_ms)

        return StageResult(value)

    async def retry_with_backoff(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        stage: str,
        max_attempts: Optional[int] = None,
        base_timeout_ms: Optional[float] = None,
    ) -> Any:
        """Retry transient failures; validation and permission errors propagate at once"""
        attempts = max_attempts or self.settings.RETRY_MAX_ATTEMPTS
        base_timeout = base_timeout_ms or self.settings.DEFAULT_TIMEOUT_MS
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            timeout = attempt_timeout_ms(base_timeout, attempt, self.settings.MAX_TIMEOUT_MS)
            try:
                return await asyncio.wait_for(operation(), timeout=timeout / 1000)
            except Exception as exc:
                payload = classify_error(exc)
                if payload.terminal:
                    raise
                last_error = exc
                logger.warning(
                    "stage_attempt_failed",
                    stage=stage,
                    attempt=attempt,
                    max_attempts=attempts,
                    error_kind=payload.kind.value,
                    error=str(exc),
                )
                if attempt < attempts:
                    delay = calculate_backoff_ms(
                        attempt, self.settings.RETRY_BASE_DELAY_MS, self.settings.RETRY_MAX_DELAY_MS
                    )
                    await asyncio.sleep(delay / 1000)

        raise last_error


@asynccontextmanager
async def performance_timer(operation: str):
    """Context manager for timing operations"""
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info("operation_timed", operation=operation, duration_ms=round(duration_ms, 2))
