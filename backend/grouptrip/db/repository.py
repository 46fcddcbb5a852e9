import asyncio
import threading
from typing import Dict, List, Optional, Union

import structlog

from grouptrip.core.errors import InputValidationError, PermissionDeniedError
from grouptrip.core.models import DaySchedule, RouteSolution, TripData

logger = structlog.get_logger(__name__)


class InMemoryTripRepository:
    """Data source and persistence sink backed by plain dictionaries"""

    def __init__(self, trips: Optional[Dict[str, TripData]] = None):
        self._trips: Dict[str, TripData] = dict(trips or {})
        self._routes: Dict[str, RouteSolution] = {}
        self._schedules: Dict[str, List[DaySchedule]] = {}
        self._lock = asyncio.Lock()
        self._stats = {
            "fetches": 0,
            "saves": 0,
            "denied": 0,
        }

    def add_trip(self, data: TripData) -> None:
        self._trips[data.group_id] = data

    async def fetch(self, group_id: str, requester: str) -> TripData:
        async with self._lock:
            data = self._trips.get(group_id)
            if data is None:
                raise InputValidationError(f"Trip group {group_id} does not exist")
            if requester not in {m.id for m in data.members}:
                self._stats["denied"] += 1
                raise PermissionDeniedError(f"{requester} is not a member of group {group_id}")
            self._stats["fetches"] += 1
            return data

    async def save(self, group_id: str, result: Union[RouteSolution, List[DaySchedule]]) -> None:
        async with self._lock:
            if isinstance(result, RouteSolution):
                self._routes[group_id] = result
            else:
                self._schedules[group_id] = list(result)
            self._stats["saves"] += 1
        logger.info("optimization_result_saved", group_id=group_id, kind=type(result).__name__)

    def saved_route(self, group_id: str) -> Optional[RouteSolution]:
        return self._routes.get(group_id)

    def saved_schedule(self, group_id: str) -> Optional[List[DaySchedule]]:
        return self._schedules.get(group_id)

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)


class InMemoryTripDataCache:
    """Last successfully fetched data per group; used when the data source is down"""

    def __init__(self):
        self._entries: Dict[str, TripData] = {}
        self._lock = threading.Lock()

    def get(self, group_id: str) -> Optional[TripData]:
        with self._lock:
            return self._entries.get(group_id)

    def put(self, group_id: str, data: TripData) -> None:
        with self._lock:
            self._entries[group_id] = data
