"""
Preference aggregation, per-member z-score normalization and input validation.

Absent ratings are filled explicitly with the neutral score here so that later
stages can index a dense member x destination matrix without null checks.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from grouptrip.core.errors import ErrorKind
from grouptrip.core.geo import is_valid_coordinate
from grouptrip.core.models import PreferenceRecord, TripData
from grouptrip.core.settings import Settings

logger = logging.getLogger(__name__)

MIN_SCORE = 1.0
MAX_SCORE = 5.0


@dataclass
class AggregatedPreference:
    score: float
    preferred_duration_minutes: Optional[float] = None
    count: int = 1


def aggregate_preferences(
    records: Iterable[PreferenceRecord],
) -> Dict[Tuple[str, str], AggregatedPreference]:
    """Average multiple records for the same (member, destination) pair"""
    scores: Dict[Tuple[str, str], List[float]] = {}
    durations: Dict[Tuple[str, str], List[float]] = {}

    for record in records:
        key = (record.member_id, record.destination_id)
        score = min(MAX_SCORE, max(MIN_SCORE, float(record.score)))
        scores.setdefault(key, []).append(score)
        if record.preferred_duration_minutes:
            durations.setdefault(key, []).append(float(record.preferred_duration_minutes))

    aggregated = {}
    for key, values in scores.items():
        stays = durations.get(key)
        aggregated[key] = AggregatedPreference(
            score=sum(values) / len(values),
            preferred_duration_minutes=sum(stays) / len(stays) if stays else None,
            count=len(values),
        )
    return aggregated


def mean_destination_scores(data: TripData, neutral: float = 3.0) -> Dict[str, float]:
    """Mean rating per destination across all members; unrated pairs count as neutral"""
    aggregated = aggregate_preferences(data.preferences)
    member_ids = [m.id for m in data.members] or sorted({p.member_id for p in data.preferences})
    means = {}
    for dest in data.destinations:
        if not member_ids:
            means[dest.id] = neutral
            continue
        values = [
            aggregated[(m, dest.id)].score if (m, dest.id) in aggregated else neutral
            for m in member_ids
        ]
        means[dest.id] = sum(values) / len(values)
    return means


class PreferenceMatrix:
    """Dense member x destination view of the group's ratings"""

    def __init__(
        self,
        member_ids: Sequence[str],
        destination_ids: Sequence[str],
        raw: np.ndarray,
        standardized: np.ndarray,
        weights: np.ndarray,
        durations: Optional[Dict[str, float]] = None,
    ):
        self.member_ids = list(member_ids)
        self.destination_ids = list(destination_ids)
        self.member_index = {m: i for i, m in enumerate(self.member_ids)}
        self.destination_index = {d: j for j, d in enumerate(self.destination_ids)}
        self.raw = raw
        self.standardized = standardized
        self.weights = weights
        self.durations = durations or {}
        # precomputed once so satisfaction lookups stay O(members x selected)
        self.row_totals = raw.sum(axis=1) if raw.size else np.zeros(len(self.member_ids))

    @property
    def shape(self) -> Tuple[int, int]:
        return len(self.member_ids), len(self.destination_ids)

    def desirability(self, destination_id: str) -> float:
        """Member-weighted mean standardized score"""
        j = self.destination_index[destination_id]
        total_weight = float(self.weights.sum())
        if not self.member_ids or total_weight == 0:
            return 0.0
        return float((self.standardized[:, j] * self.weights).sum() / total_weight)

    def member_score(self, member_id: str, destination_ids: Sequence[str]) -> float:
        i = self.member_index[member_id]
        cols = [self.destination_index[d] for d in destination_ids if d in self.destination_index]
        return float(self.standardized[i, cols].mean()) if cols else 0.0

    def preferred_stay(self, destination_id: str) -> Optional[float]:
        return self.durations.get(destination_id)

    def satisfaction(self, destination_ids: Sequence[str]) -> np.ndarray:
        """Per-member share of their total rating mass covered by the selection"""
        cols = [self.destination_index[d] for d in destination_ids if d in self.destination_index]
        if not cols or not self.member_ids:
            return np.zeros(len(self.member_ids))
        covered = self.raw[:, cols].sum(axis=1)
        totals = np.where(self.row_totals > 0, self.row_totals, 1.0)
        return covered / totals


@dataclass
class NormalizedPreferences:
    matrix: PreferenceMatrix
    member_stats: Dict[str, Dict[str, float]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def normalize_preferences(
    data: TripData,
    settings: Settings,
    absolute: bool = False,
) -> NormalizedPreferences:
    """
    Build the preference matrix and standardize each member's ratings.

    With ``absolute`` (single traveller) scores are only centred on the neutral
    value; otherwise each member row is z-scored over the ratings they gave.
    """
    neutral = settings.NEUTRAL_PREFERENCE_SCORE
    aggregated = aggregate_preferences(data.preferences)
    member_ids = [m.id for m in data.members]
    dest_ids = [d.id for d in data.destinations]

    raw = np.full((len(member_ids), len(dest_ids)), neutral, dtype=float)
    rated = np.zeros_like(raw, dtype=bool)
    for i, member_id in enumerate(member_ids):
        for j, dest_id in enumerate(dest_ids):
            pref = aggregated.get((member_id, dest_id))
            if pref is not None:
                raw[i, j] = pref.score
                rated[i, j] = True

    standardized = np.zeros_like(raw)
    member_stats = {}
    warnings = []

    for i, member_id in enumerate(member_ids):
        given = raw[i, rated[i]]
        if absolute:
            standardized[i] = raw[i] - neutral
            member_stats[member_id] = {"mean": neutral, "std": 1.0, "count": int(given.size)}
            continue

        if given.size:
            mean = float(given.mean())
            std = float(given.std())
        else:
            mean, std = neutral, 0.0

        if given.size < settings.MIN_RATINGS_FOR_NORMALIZATION:
            warnings.append(f"Member {member_id} rated only {given.size} destination(s)")
        if std == 0:
            if given.size:
                warnings.append(f"Member {member_id} gave every destination the same score")
            std = 1.0

        standardized[i] = (raw[i] - mean) / std
        member_stats[member_id] = {"mean": mean, "std": std, "count": int(given.size)}

    durations = {}
    for dest_id in dest_ids:
        stays = [
            pref.preferred_duration_minutes
            for (member_id, d), pref in aggregated.items()
            if d == dest_id and pref.preferred_duration_minutes
        ]
        if stays:
            durations[dest_id] = sum(stays) / len(stays)

    weights = np.array([max(0.0, float(m.weight)) for m in data.members], dtype=float)
    matrix = PreferenceMatrix(member_ids, dest_ids, raw, standardized, weights, durations)

    logger.debug(f"Normalized {int(rated.sum())} ratings for {len(member_ids)} members")
    return NormalizedPreferences(matrix=matrix, member_stats=member_stats, warnings=warnings)


@dataclass
class ValidationIssue:
    code: str
    message: str
    kind: ErrorKind


def validate_trip_data(data: TripData, settings: Settings) -> Tuple[List[ValidationIssue], List[str]]:
    """Split problems into hard issues (stop before optimizing) and warnings"""
    issues = []
    warnings = []

    if not data.destinations:
        issues.append(ValidationIssue(
            "NO_DESTINATIONS", "Trip has no destinations", ErrorKind.INSUFFICIENT_DATA,
        ))
    if not data.members:
        issues.append(ValidationIssue(
            "NO_MEMBERS", "Trip group has no members", ErrorKind.INSUFFICIENT_DATA,
        ))
    if not data.preferences:
        issues.append(ValidationIssue(
            "NO_PREFERENCES", "No destination has been rated", ErrorKind.MISSING_PREFERENCES,
        ))

    invalid = [d.id for d in data.destinations if not is_valid_coordinate(d.latitude, d.longitude)]
    if invalid:
        issues.append(ValidationIssue(
            "INVALID_COORDINATES",
            f"Destinations with invalid coordinates: {', '.join(invalid)}",
            ErrorKind.INVALID_COORDINATES,
        ))

    if data.destinations and data.members and data.preferences:
        member_ids = {m.id for m in data.members}
        rated = {(p.member_id, p.destination_id) for p in data.preferences if p.member_id in member_ids}
        coverage = len(rated) / (len(data.members) * len(data.destinations))
        if coverage < settings.PREFERENCE_COVERAGE_WARNING:
            warnings.append(f"Sparse preference coverage ({coverage:.0%})")

    return issues, warnings
