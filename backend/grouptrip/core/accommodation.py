from datetime import datetime, time as TimeOfDay
from typing import Dict, Iterable, List, Optional

from grouptrip.core.geo import distance_km, interpolate
from grouptrip.core.models import (
    AccommodationQuality, AccommodationSlot, Coordinates, DaySchedule, Destination,
)
from grouptrip.core.settings import Settings

# Nightly base cost per tier (USD)
BASE_COST = {
    AccommodationQuality.BUDGET: 65,
    AccommodationQuality.STANDARD: 115,
    AccommodationQuality.PREMIUM: 200,
}

# Price range per tier as multiples of the location-adjusted base cost
COST_RANGE = {
    AccommodationQuality.BUDGET: (0.7, 1.2),
    AccommodationQuality.STANDARD: (0.8, 1.5),
    AccommodationQuality.PREMIUM: (1.2, 2.5),
}

TOURIST_AREA_MULTIPLIER = 1.4
RURAL_AREA_MULTIPLIER = 0.7
TOURIST_AREA_MIN_DESTINATIONS = 3
TODAY_WEIGHT = 0.7  # remaining weight pulls toward tomorrow's first stop
EARLIEST_CHECK_IN = TimeOfDay(15, 0)


def optimal_location(last_visit: Coordinates, next_first_visit: Optional[Coordinates]) -> Coordinates:
    if next_first_visit is None:
        return last_visit
    return interpolate(last_visit, next_first_visit, TODAY_WEIGHT)


def estimate_nightly_cost(
    location: Coordinates,
    quality: AccommodationQuality,
    destinations: Iterable[Destination],
    radius_km: float,
) -> float:
    """Base tier cost adjusted by how touristy the surroundings are"""
    nearby = sum(1 for d in destinations if distance_km(location, d.coordinates) <= radius_km)
    multiplier = 1.0
    if nearby >= TOURIST_AREA_MIN_DESTINATIONS:
        multiplier = TOURIST_AREA_MULTIPLIER
    elif nearby == 0:
        multiplier = RURAL_AREA_MULTIPLIER
    return float(round(BASE_COST[quality] * multiplier))


def suggest_accommodation(
    day: DaySchedule,
    next_day: Optional[DaySchedule],
    destinations: Dict[str, Destination],
    quality: AccommodationQuality,
    settings: Settings,
    check_out: datetime,
) -> Optional[AccommodationSlot]:
    if not day.visits:
        return None

    last_visit = day.visits[-1]
    last_point = destinations[last_visit.destination_id].coordinates
    next_point = None
    if next_day is not None and next_day.visits:
        next_point = destinations[next_day.visits[0].destination_id].coordinates

    location = optimal_location(last_point, next_point)
    nightly = estimate_nightly_cost(
        location, quality, destinations.values(), settings.ACCOMMODATION_SEARCH_RADIUS_KM
    )
    low, high = COST_RANGE[quality]

    day_end = max([v.departure for v in day.visits] + [m.end for m in day.meals])
    earliest = datetime.combine(day.date, EARLIEST_CHECK_IN, tzinfo=day_end.tzinfo)

    return AccommodationSlot(
        location=location,
        check_in=max(day_end, earliest),
        check_out=check_out,
        quality=quality,
        nightly_cost=nightly,
        cost_range=(round(nightly * low, 2), round(nightly * high, 2)),
        search_radius_km=settings.ACCOMMODATION_SEARCH_RADIUS_KM,
        near_destination_id=last_visit.destination_id,
    )


def total_accommodation_cost(slots: Iterable[Optional[AccommodationSlot]]) -> float:
    """Sum of the midpoints of each night's price range"""
    return round(sum((s.cost_range[0] + s.cost_range[1]) / 2 for s in slots if s is not None), 2)
