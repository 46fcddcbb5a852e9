import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from grouptrip.core.errors import ClusteringFailedError
from grouptrip.core.geo import centroid, distance_km
from grouptrip.core.models import Cluster, Destination, TripData
from grouptrip.core.normalization import (
    NormalizedPreferences, PreferenceMatrix, ValidationIssue,
    normalize_preferences, validate_trip_data,
)
from grouptrip.core.settings import Settings

logger = logging.getLogger(__name__)


def stay_minutes(dest: Destination, matrix: Optional[PreferenceMatrix], overrides: Optional[Dict[str, int]] = None) -> float:
    """Planned time at a destination: explicit override, then members' wish, then the destination default"""
    if overrides and dest.id in overrides:
        return float(overrides[dest.id])
    if matrix is not None:
        preferred = matrix.preferred_stay(dest.id)
        if preferred:
            return float(max(preferred, dest.min_stay_minutes))
    return float(dest.preferred_stay_minutes)


def _make_cluster(
    index: int,
    members: Sequence[Destination],
    matrix: PreferenceMatrix,
    overrides: Optional[Dict[str, int]],
    walking_only: bool,
) -> Cluster:
    ids = tuple(d.id for d in members)
    desirability = sum(matrix.desirability(d) for d in ids) / len(ids)
    stays = [stay_minutes(d, matrix, overrides) for d in members]
    return Cluster(
        id=f"cluster-{index}",
        destination_ids=ids,
        centroid=centroid(d.coordinates for d in members),
        desirability=desirability,
        average_stay_minutes=sum(stays) / len(stays),
        member_scores={m: matrix.member_score(m, ids) for m in matrix.member_ids},
        walking_only=walking_only,
    )


def build_clusters(
    data: TripData,
    matrix: PreferenceMatrix,
    settings: Settings,
    walking_only_groups: Sequence[Sequence[str]] = (),
    stay_overrides: Optional[Dict[str, int]] = None,
) -> List[Cluster]:
    """
    Greedy radius clustering.

    Seeds are taken in descending desirability; each seed absorbs every
    unassigned destination within ``CLUSTER_RADIUS_KM``. Destinations listed in
    ``walking_only_groups`` always form their own walking-only cluster.
    """
    by_id = data.destination_index
    assigned = set()
    clusters = []

    for group in walking_only_groups:
        members = [by_id[d] for d in group if d in by_id and d not in assigned]
        if not members:
            continue
        assigned.update(d.id for d in members)
        clusters.append(_make_cluster(len(clusters) + 1, members, matrix, stay_overrides, True))

    seeds = sorted(
        enumerate(data.destinations),
        key=lambda pair: (-matrix.desirability(pair[1].id), pair[0]),
    )
    for _, seed in seeds:
        if seed.id in assigned:
            continue
        nearby = [
            d for d in data.destinations
            if d.id not in assigned and d.id != seed.id
            and distance_km(seed.coordinates, d.coordinates) <= settings.CLUSTER_RADIUS_KM
        ]
        nearby.sort(key=lambda d: distance_km(seed.coordinates, d.coordinates))
        members = [seed] + nearby
        assigned.update(d.id for d in members)
        clusters.append(_make_cluster(len(clusters) + 1, members, matrix, stay_overrides, False))

    if data.destinations and len(assigned) != len(by_id):
        raise ClusteringFailedError(
            f"Clustered {len(assigned)} of {len(by_id)} destinations",
            details={"unassigned": sorted(set(by_id) - assigned)},
        )

    logger.info(f"Grouped {len(data.destinations)} destinations into {len(clusters)} clusters")
    return clusters


def singleton_clusters(data: TripData, matrix: PreferenceMatrix) -> List[Cluster]:
    """One cluster per destination; used when geographic grouping is unavailable"""
    return [
        _make_cluster(i + 1, [dest], matrix, None, False)
        for i, dest in enumerate(data.destinations)
    ]


@dataclass
class ClusteringResult:
    preferences: Optional[NormalizedPreferences]
    clusters: List[Cluster] = field(default_factory=list)
    issues: List[ValidationIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def matrix(self) -> Optional[PreferenceMatrix]:
        return self.preferences.matrix if self.preferences else None

    @property
    def ok(self) -> bool:
        return not self.issues


def normalize_and_cluster(
    data: TripData,
    settings: Settings,
    walking_only_groups: Sequence[Sequence[str]] = (),
    absolute: bool = False,
    stay_overrides: Optional[Dict[str, int]] = None,
) -> ClusteringResult:
    """Validate, standardize preferences and cluster; hard issues stop before clustering"""
    issues, warnings = validate_trip_data(data, settings)
    if issues:
        for issue in issues:
            logger.warning(f"Validation issue {issue.code}: {issue.message}")
        return ClusteringResult(preferences=None, issues=issues, warnings=warnings)

    preferences = normalize_preferences(data, settings, absolute=absolute)
    clusters = build_clusters(data, preferences.matrix, settings, walking_only_groups, stay_overrides)
    return ClusteringResult(
        preferences=preferences,
        clusters=clusters,
        warnings=warnings + preferences.warnings,
    )
