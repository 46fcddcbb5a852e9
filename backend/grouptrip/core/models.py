import math
from collections import namedtuple
from dataclasses import dataclass, field, asdict
from datetime import datetime, date, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Plain lat/lon pair; departure, return and cluster centroids use it too
Coordinates = namedtuple("Coordinates", ["latitude", "longitude"])

DEPARTURE_ID = "departure"
RETURN_ID = "return"

# Enums
class TransportMode(str, Enum):
    WALKING = "walking"
    DRIVING = "driving"
    FLYING = "flying"

class Pace(str, Enum):
    RELAXED = "relaxed"
    MODERATE = "moderate"
    PACKED = "packed"

class ResultStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    ERROR = "error"

class AccommodationQuality(str, Enum):
    BUDGET = "budget"
    STANDARD = "standard"
    PREMIUM = "premium"


@dataclass(frozen=True)
class Destination:
    id: str
    name: str
    latitude: float
    longitude: float
    category: str = "attraction"
    min_stay_minutes: int = 60
    preferred_stay_minutes: int = 120

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)


@dataclass(frozen=True)
class GroupMember:
    id: str
    display_name: str = ""
    weight: float = 1.0


@dataclass(frozen=True)
class PreferenceRecord:
    member_id: str
    destination_id: str
    score: float
    preferred_duration_minutes: Optional[int] = None


@dataclass(frozen=True)
class TripWindow:
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def days(self) -> int:
        """Number of calendar days the trip spans, never less than one"""
        seconds = self.duration.total_seconds()
        if seconds <= 0:
            return 1
        return max(1, math.ceil(seconds / 86400))


@dataclass
class TripData:
    """Everything one optimization pass reads; treated as immutable input"""
    group_id: str
    destinations: List[Destination]
    members: List[GroupMember]
    preferences: List[PreferenceRecord]
    departure: Coordinates
    window: TripWindow
    return_location: Optional[Coordinates] = None

    @property
    def destination_index(self) -> Dict[str, Destination]:
        return {d.id: d for d in self.destinations}


@dataclass(frozen=True)
class Cluster:
    id: str
    destination_ids: Tuple[str, ...]
    centroid: Coordinates
    desirability: float
    average_stay_minutes: float
    member_scores: Dict[str, float] = field(default_factory=dict)
    walking_only: bool = False


@dataclass(frozen=True)
class Segment:
    from_id: str
    to_id: str
    mode: TransportMode
    distance_km: float
    duration_minutes: float


@dataclass
class RouteSolution:
    cluster_ids: Tuple[str, ...]
    destination_ids: Tuple[str, ...]
    segments: Tuple[Segment, ...]
    fairness_score: float
    quantity_score: float
    composite_score: float
    feasible: bool
    member_satisfaction: Dict[str, float] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)
    total_distance_km: float = 0.0
    total_minutes: float = 0.0
    strategy: str = "primary"


@dataclass
class Visit:
    destination_id: str
    name: str
    arrival: datetime
    departure: datetime
    travel_minutes: float
    mode: TransportMode
    distance_km: float


@dataclass
class MealBreak:
    kind: str  # breakfast / lunch / dinner
    start: datetime
    end: datetime


@dataclass
class AccommodationSlot:
    location: Coordinates
    check_in: datetime
    check_out: datetime
    quality: AccommodationQuality
    nightly_cost: float
    cost_range: Tuple[float, float]
    search_radius_km: float
    near_destination_id: str


@dataclass
class DaySchedule:
    day_index: int
    date: date
    visits: List[Visit] = field(default_factory=list)
    meals: List[MealBreak] = field(default_factory=list)
    accommodation: Optional[AccommodationSlot] = None
    pace: Pace = Pace.RELAXED
    active_minutes: float = 0.0
    travel_minutes: float = 0.0
    walking_km: float = 0.0
    warnings: List[str] = field(default_factory=list)


@dataclass
class ScheduleResult:
    days: List[DaySchedule]
    dropped_destination_ids: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    accommodation_cost: float = 0.0


@dataclass
class OptimizationOutcome:
    route: RouteSolution
    days: List[DaySchedule] = field(default_factory=list)
    strategy: str = "primary"
    dropped_destination_ids: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    edge_cases: List[str] = field(default_factory=list)
    fairness: Dict[str, Any] = field(default_factory=dict)
    accommodation_cost: float = 0.0
    evaluated_solutions: int = 0
    iterations: int = 0
    session: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OptimizationResult:
    status: ResultStatus
    data: Optional[OptimizationOutcome] = None
    error: Optional[Any] = None  # ErrorPayload
    warnings: List[str] = field(default_factory=list)
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "data": _jsonable(asdict(self.data)) if self.data is not None else None,
            "error": self.error.to_dict() if self.error is not None else None,
            "warnings": list(self.warnings),
            "processingTimeMs": round(self.processing_time_ms, 2),
        }


def _jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value
