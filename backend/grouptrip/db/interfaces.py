"""
Contracts for the collaborators the optimization pipeline talks to.

Only the shape matters to the pipeline; ``grouptrip.db.repository`` and
``grouptrip.db.progress`` provide in-memory implementations.
"""
from typing import List, Optional, Protocol, Union, runtime_checkable

from grouptrip.core.models import DaySchedule, RouteSolution, TripData


@runtime_checkable
class DataSource(Protocol):
    async def fetch(self, group_id: str, requester: str) -> TripData:
        """Load destinations, members, preferences and the trip window.

        Raises ``PermissionDeniedError`` when ``requester`` may not read the group.
        """
        ...


@runtime_checkable
class PersistenceSink(Protocol):
    async def save(self, group_id: str, result: Union[RouteSolution, List[DaySchedule]]) -> None:
        ...


@runtime_checkable
class ProgressSink(Protocol):
    def report(self, stage: str, percent: int, message: str) -> None:
        """Fire-and-forget; implementations must never block the caller"""
        ...


@runtime_checkable
class TripDataCache(Protocol):
    def get(self, group_id: str) -> Optional[TripData]:
        ...

    def put(self, group_id: str, data: TripData) -> None:
        ...
