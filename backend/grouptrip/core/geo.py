import math
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

from geopy.distance import great_circle

from grouptrip.core.errors import RouteCalculationError
from grouptrip.core.models import Coordinates, Segment, TransportMode
from grouptrip.core.settings import Settings

T = TypeVar("T")


def is_valid_coordinate(latitude, longitude) -> bool:
    """True when both values are finite numbers inside the lat/lon ranges"""
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points"""
    if a == b:
        return 0.0
    return great_circle(
        (a.latitude, a.longitude),
        (b.latitude, b.longitude)
    ).km


def infer_transport_mode(dist_km: float, settings: Settings) -> TransportMode:
    if dist_km <= settings.WALKING_MAX_KM:
        return TransportMode.WALKING
    if dist_km <= settings.DRIVING_MAX_KM:
        return TransportMode.DRIVING
    return TransportMode.FLYING


def travel_time_minutes(dist_km: float, mode: TransportMode, settings: Settings) -> float:
    if mode == TransportMode.WALKING:
        return dist_km / settings.WALKING_SPEED_KMH * 60
    if mode == TransportMode.DRIVING:
        return dist_km / settings.DRIVING_SPEED_KMH * 60 * settings.DRIVING_TIME_BUFFER
    # flights carry a fixed check-in / security / transfer overhead
    return dist_km / settings.FLYING_SPEED_KMH * 60 + settings.AIRPORT_OVERHEAD_MINUTES


def build_segment(
    from_id: str,
    from_point: Coordinates,
    to_id: str,
    to_point: Coordinates,
    settings: Settings,
    mode: Optional[TransportMode] = None,
) -> Segment:
    """Leg between two points; mode is inferred from distance bands unless given"""
    dist = distance_km(from_point, to_point)
    if not math.isfinite(dist):
        raise RouteCalculationError(
            f"Distance from {from_id} to {to_id} could not be calculated",
            details={"from_id": from_id, "to_id": to_id},
        )
    mode = mode or infer_transport_mode(dist, settings)
    return Segment(
        from_id=from_id,
        to_id=to_id,
        mode=mode,
        distance_km=dist,
        duration_minutes=travel_time_minutes(dist, mode, settings),
    )


def centroid(points: Iterable[Coordinates]) -> Coordinates:
    points = list(points)
    if not points:
        raise ValueError("Cannot compute the centroid of no points")
    lat = sum(p.latitude for p in points) / len(points)
    lon = sum(p.longitude for p in points) / len(points)
    return Coordinates(lat, lon)


def interpolate(a: Coordinates, b: Coordinates, weight_a: float) -> Coordinates:
    """Point weighted ``weight_a`` toward ``a`` and the rest toward ``b``"""
    weight_b = 1.0 - weight_a
    return Coordinates(
        a.latitude * weight_a + b.latitude * weight_b,
        a.longitude * weight_a + b.longitude * weight_b,
    )


def geographic_spread_km(points: Sequence[Coordinates]) -> float:
    """Largest pairwise distance among the points"""
    spread = 0.0
    for i in range(len(points)):
        for j in range(i + 1, len(points)):
            spread = max(spread, distance_km(points[i], points[j]))
    return spread


def nearest_neighbor_order(
    start: Coordinates,
    items: Sequence[T],
    location: Callable[[T], Coordinates],
) -> List[T]:
    """
    Greedy tour: from ``start`` repeatedly visit the closest remaining item.
    Ties keep input order so the result is deterministic.
    """
    remaining = list(items)
    ordered = []
    current = start

    while remaining:
        best = min(
            range(len(remaining)),
            key=lambda idx: (distance_km(current, location(remaining[idx])), idx),
        )
        item = remaining.pop(best)
        ordered.append(item)
        current = location(item)

    return ordered
