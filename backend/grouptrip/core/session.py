import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from grouptrip.core.governor import StageStatisticsStore


class OptimizationSession:
    """
    Transient record of one optimization request: stage timings, iterations,
    resource usage and final status. Finished stages are appended to the shared
    statistics store; the session itself is discarded after the response.
    """

    def __init__(
        self,
        group_id: str,
        stats_store: Optional[StageStatisticsStore] = None,
        destination_count: int = 0,
        member_count: int = 0,
    ):
        self.group_id = group_id
        self.stats_store = stats_store
        self.destination_count = destination_count
        self.member_count = member_count
        self.stage_timings: Dict[str, float] = {}
        self.partial_stages: List[str] = []
        self.iterations = 0
        self.resource_usage: Dict[str, Any] = {}
        self.status: Optional[str] = None
        self.strategy: Optional[str] = None
        self._started = time.perf_counter()

    @contextmanager
    def track(self, stage: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.stage_timings[stage] = self.stage_timings.get(stage, 0.0) + duration_ms
            if self.stats_store is not None:
                self.stats_store.record(
                    stage,
                    duration_ms,
                    destination_count=self.destination_count,
                    member_count=self.member_count,
                    iterations=self.iterations if stage == "optimizing" else 0,
                )

    def mark_partial(self, stage: str) -> None:
        if stage not in self.partial_stages:
            self.partial_stages.append(stage)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000

    def finish(self, status: str, strategy: Optional[str] = None) -> None:
        self.status = status
        self.strategy = strategy

    def summary(self) -> Dict[str, Any]:
        return {
            "groupId": self.group_id,
            "status": self.status,
            "strategy": self.strategy,
            "stageTimingsMs": {k: round(v, 2) for k, v in self.stage_timings.items()},
            "partialStages": list(self.partial_stages),
            "iterations": self.iterations,
            "resourceUsage": dict(self.resource_usage),
            "elapsedMs": round(self.elapsed_ms, 2),
        }
