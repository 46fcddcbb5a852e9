from datetime import datetime, timedelta

import pytest

from grouptrip.core.models import (
    Coordinates, Destination, GroupMember, PreferenceRecord, TripData, TripWindow,
)
from grouptrip.core.settings import Settings

# Lisbon; one degree of latitude is ~111.2 km on the great circle
BASE = Coordinates(38.7223, -9.1393)
KM_PER_DEGREE = 111.195
TRIP_START = datetime(2025, 6, 1, 8, 0)


def destinations_along(count, spacing_km=3.0, stay=90, min_stay=60, prefix="d"):
    """Destinations on a north-south line starting ``spacing_km`` north of the base"""
    return [
        Destination(
            id=f"{prefix}{i}",
            name=f"Destination {i}",
            latitude=BASE.latitude + (i + 1) * spacing_km / KM_PER_DEGREE,
            longitude=BASE.longitude,
            min_stay_minutes=min_stay,
            preferred_stay_minutes=stay,
        )
        for i in range(count)
    ]


def build_trip(
    destinations,
    member_count=3,
    ratings="all",
    days=1,
    group_id="group-1",
    departure=BASE,
    return_location=None,
):
    """
    Trip data for tests. ``ratings`` is "all" (every member rates every
    destination, scores varying by member), a list of PreferenceRecord, or None.
    """
    members = [GroupMember(id=f"m{i}", display_name=f"Member {i}") for i in range(member_count)]
    if ratings == "all":
        preferences = [
            PreferenceRecord(m.id, d.id, float(1 + (i + j) % 5))
            for i, m in enumerate(members)
            for j, d in enumerate(destinations)
        ]
    else:
        preferences = list(ratings or [])

    return TripData(
        group_id=group_id,
        destinations=list(destinations),
        members=members,
        preferences=preferences,
        departure=departure,
        window=TripWindow(TRIP_START, TRIP_START + timedelta(days=days) - timedelta(hours=12)),
        return_location=return_location,
    )


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def trip_factory():
    return build_trip


@pytest.fixture
def destination_factory():
    return destinations_along
