import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

logger = structlog.get_logger(__name__)

# stage -> (percent complete, user-facing message)
PROGRESS_STAGES = {
    "preprocessing": (10, "Gathering trip data and preferences..."),
    "clustering": (30, "Creating geographical clusters..."),
    "optimizing": (60, "Finding optimal route..."),
    "fallback": (70, "Trying a simpler planning approach..."),
    "scheduling": (80, "Creating daily schedules..."),
    "saving": (95, "Saving optimization results..."),
    "completed": (100, "Optimization completed successfully!"),
    "error": (100, "An error occurred during optimization"),
}


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    percent: int
    message: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ProgressChannel:
    """
    Send-only, non-blocking progress channel.

    Events are dropped when the queue is full or the channel has been closed,
    so a slow or absent consumer can never stall an optimization.
    """

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def report(self, stage: str, percent: int, message: str) -> None:
        if self._closed:
            self.dropped += 1
            return
        try:
            self._queue.put_nowait(ProgressEvent(stage, percent, message))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("progress_event_dropped", stage=stage)

    def close(self) -> None:
        self._closed = True

    def drain(self) -> list:
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events
