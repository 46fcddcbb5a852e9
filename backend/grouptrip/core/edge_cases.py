"""
Detection and rewriting of degenerate trip inputs.

``handle_edge_cases`` inspects freshly fetched trip data, records every edge case
it finds and returns a transformed copy the rest of the pipeline can work with:
invalid coordinates are dropped, an empty trip window becomes one day, an
oversized destination list is truncated to the best rated ones, sparse
preference coverage is filled with neutral scores and colocated destinations are
marked for walking-only visits.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Tuple

from grouptrip.core.geo import distance_km, is_valid_coordinate
from grouptrip.core.models import PreferenceRecord, TripData, TripWindow
from grouptrip.core.normalization import aggregate_preferences, mean_destination_scores
from grouptrip.core.settings import Settings

logger = logging.getLogger(__name__)


class EdgeCaseType(str, Enum):
    NO_DESTINATIONS = "no_destinations"
    NO_MEMBERS = "no_members"
    SINGLE_DESTINATION = "single_destination"
    SINGLE_MEMBER = "single_member"
    COLOCATED_DESTINATIONS = "colocated_destinations"
    INSUFFICIENT_PREFERENCES = "insufficient_preferences"
    SPARSE_PREFERENCES = "sparse_preferences"
    INVALID_COORDINATES = "invalid_coordinates"
    EXCESSIVE_DESTINATIONS = "excessive_destinations"
    INVALID_TRIP_DURATION = "invalid_trip_duration"


@dataclass
class EdgeCase:
    type: EdgeCaseType
    severity: str  # info / warning / error
    message: str
    affected_ids: List[str] = field(default_factory=list)


@dataclass
class EdgeCaseReport:
    data: TripData
    cases: List[EdgeCase] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    walking_only_groups: List[Tuple[str, ...]] = field(default_factory=list)
    absolute_preferences: bool = False
    stay_overrides: Dict[str, int] = field(default_factory=dict)

    def has(self, case_type: EdgeCaseType) -> bool:
        return any(case.type == case_type for case in self.cases)

    @property
    def types(self) -> List[str]:
        return [case.type.value for case in self.cases]


def preference_coverage(data: TripData) -> float:
    """Fraction of (member, destination) pairs that carry at least one rating"""
    total = len(data.members) * len(data.destinations)
    if total == 0:
        return 0.0
    member_ids = {m.id for m in data.members}
    dest_ids = {d.id for d in data.destinations}
    rated = {
        (p.member_id, p.destination_id)
        for p in data.preferences
        if p.member_id in member_ids and p.destination_id in dest_ids
    }
    return len(rated) / total


def all_colocated(data: TripData, threshold_km: float) -> bool:
    points = [d.coordinates for d in data.destinations]
    if len(points) < 2:
        return False
    for i in range(len(points)):
        for j in range(i + 1, len(points)):
            if distance_km(points[i], points[j]) >= threshold_km:
                return False
    return True


def handle_edge_cases(data: TripData, settings: Settings) -> EdgeCaseReport:
    """Detect edge cases and rewrite the data into a tractable form. Never raises."""
    try:
        report = _handle(data, settings)
    except Exception as e:
        logger.exception(f"Edge case handling failed for group {data.group_id}")
        return EdgeCaseReport(
            data=data,
            warnings=[f"Input checks could not be completed ({type(e).__name__}); using data as provided"],
        )

    report.warnings = [
        case.message for case in report.cases if case.severity in ("warning", "error")
    ]
    if report.cases:
        logger.info(f"Edge cases for group {data.group_id}: {', '.join(report.types)}")
    return report


def _handle(data: TripData, settings: Settings) -> EdgeCaseReport:
    report = EdgeCaseReport(data=data)

    _drop_invalid_coordinates(report)
    _fix_trip_window(report)

    current = report.data
    if not current.destinations:
        report.cases.append(EdgeCase(
            EdgeCaseType.NO_DESTINATIONS, "error", "The trip has no destinations with a usable location",
        ))
    if not current.members:
        report.cases.append(EdgeCase(
            EdgeCaseType.NO_MEMBERS, "error", "The trip group has no members",
        ))
    if not current.destinations or not current.members:
        return report

    _truncate_excessive(report, settings)
    _fill_preference_gaps(report, settings)
    current = report.data

    if len(current.destinations) == 1:
        dest = current.destinations[0]
        durations = [
            p.preferred_duration_minutes for p in current.preferences
            if p.destination_id == dest.id and p.preferred_duration_minutes
        ]
        stay = round(sum(durations) / len(durations)) if durations else dest.preferred_stay_minutes
        report.stay_overrides[dest.id] = stay
        report.cases.append(EdgeCase(
            EdgeCaseType.SINGLE_DESTINATION, "info",
            f"Only one destination; it will be scheduled for {stay} minutes",
            [dest.id],
        ))

    if len(current.members) == 1:
        report.absolute_preferences = True
        report.cases.append(EdgeCase(
            EdgeCaseType.SINGLE_MEMBER, "info",
            "Single traveller; preferences are used as absolute scores",
            [current.members[0].id],
        ))

    if all_colocated(current, settings.COLOCATION_THRESHOLD_KM):
        ids = tuple(d.id for d in current.destinations)
        report.walking_only_groups.append(ids)
        report.cases.append(EdgeCase(
            EdgeCaseType.COLOCATED_DESTINATIONS, "warning",
            "All destinations share the same location and will be visited on foot",
            list(ids),
        ))

    return report


def _drop_invalid_coordinates(report: EdgeCaseReport) -> None:
    data = report.data
    invalid = [d.id for d in data.destinations if not is_valid_coordinate(d.latitude, d.longitude)]
    if not invalid:
        return

    bad = set(invalid)
    report.data = replace(
        data,
        destinations=[d for d in data.destinations if d.id not in bad],
        preferences=[p for p in data.preferences if p.destination_id not in bad],
    )
    report.cases.append(EdgeCase(
        EdgeCaseType.INVALID_COORDINATES, "warning",
        f"Removed {len(invalid)} destination(s) with invalid coordinates",
        invalid,
    ))


def _fix_trip_window(report: EdgeCaseReport) -> None:
    window = report.data.window
    if window.end > window.start:
        return
    report.data = replace(
        report.data, window=TripWindow(window.start, window.start + timedelta(days=1))
    )
    report.cases.append(EdgeCase(
        EdgeCaseType.INVALID_TRIP_DURATION, "warning",
        "Trip end is not after its start; planning a single day instead",
    ))


def _truncate_excessive(report: EdgeCaseReport, settings: Settings) -> None:
    data = report.data
    if len(data.destinations) <= settings.MAX_DESTINATIONS:
        return

    means = mean_destination_scores(data, settings.NEUTRAL_PREFERENCE_SCORE)
    ranked = sorted(
        enumerate(data.destinations),
        key=lambda pair: (-means[pair[1].id], pair[0]),
    )
    keep = {dest.id for _, dest in ranked[:settings.TRUNCATED_DESTINATIONS]}
    dropped = [d.id for d in data.destinations if d.id not in keep]

    report.data = replace(
        data,
        destinations=[d for d in data.destinations if d.id in keep],
        preferences=[p for p in data.preferences if p.destination_id in keep],
    )
    report.cases.append(EdgeCase(
        EdgeCaseType.EXCESSIVE_DESTINATIONS, "warning",
        f"Trip had {len(data.destinations)} destinations; kept the "
        f"{settings.TRUNCATED_DESTINATIONS} best rated",
        dropped,
    ))


def _fill_preference_gaps(report: EdgeCaseReport, settings: Settings) -> None:
    data = report.data
    coverage = preference_coverage(data)

    if not data.preferences:
        report.cases.append(EdgeCase(
            EdgeCaseType.INSUFFICIENT_PREFERENCES, "error",
            "No group member has rated any destination yet",
        ))
        return

    if coverage >= settings.PREFERENCE_COVERAGE_WARNING:
        return

    if coverage < settings.PREFERENCE_COVERAGE_ERROR:
        case = EdgeCase(
            EdgeCaseType.INSUFFICIENT_PREFERENCES, "error",
            f"Only {coverage:.0%} of destinations are rated; unrated ones count as neutral",
        )
    else:
        case = EdgeCase(
            EdgeCaseType.SPARSE_PREFERENCES, "warning",
            f"{coverage:.0%} of destinations are rated; unrated ones count as neutral",
        )

    rated = aggregate_preferences(data.preferences)
    injected = [
        PreferenceRecord(member.id, dest.id, settings.NEUTRAL_PREFERENCE_SCORE)
        for member in data.members
        for dest in data.destinations
        if (member.id, dest.id) not in rated
    ]
    case.affected_ids = sorted({p.member_id for p in injected})
    report.data = replace(data, preferences=list(data.preferences) + injected)
    report.cases.append(case)
