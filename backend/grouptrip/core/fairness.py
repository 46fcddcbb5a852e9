"""
Fairness scoring for candidate routes.

Satisfaction for a member is the share of their total rating mass that the
selected destinations cover. Fairness is ``1 - |Gini|`` of those satisfactions,
so relabelling members never changes the score.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

import numpy as np

from grouptrip.core.normalization import PreferenceMatrix

BALANCED_THRESHOLD = 0.7
LOW_DISPARITY_THRESHOLD = 0.8
MEDIUM_DISPARITY_THRESHOLD = 0.6


def gini_coefficient(values: Sequence[float]) -> float:
    """Gini of a distribution, clamped to [-1, 1]; 0 for one value or zero total"""
    arr = np.sort(np.asarray(values, dtype=float))
    n = arr.size
    if n <= 1:
        return 0.0
    total = arr.sum()
    if total == 0:
        return 0.0
    ranks = np.arange(1, n + 1)
    gini = 2.0 * float((ranks * arr).sum()) / (n * total) - (n + 1) / n
    return float(min(1.0, max(-1.0, gini)))


def fairness_from_satisfaction(values: Sequence[float]) -> float:
    if len(values) <= 1:
        return 1.0
    return 1.0 - abs(gini_coefficient(values))


@dataclass
class FairnessReport:
    member_satisfaction: Dict[str, float]
    gini: float
    score: float


def evaluate_fairness(matrix: PreferenceMatrix, destination_ids: Sequence[str]) -> FairnessReport:
    """Pure scoring oracle used for every candidate the optimizer considers"""
    satisfaction = matrix.satisfaction(destination_ids)
    gini = gini_coefficient(satisfaction) if satisfaction.size > 1 else 0.0
    return FairnessReport(
        member_satisfaction={m: float(s) for m, s in zip(matrix.member_ids, satisfaction)},
        gini=gini,
        score=fairness_from_satisfaction(satisfaction),
    )


@dataclass
class FairnessAnalysis:
    mean: float
    minimum: float
    maximum: float
    std: float
    fairness_score: float
    balanced: bool
    disparity: str  # low / medium / high
    least_satisfied: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "mean": self.mean,
            "min": self.minimum,
            "max": self.maximum,
            "std": self.std,
            "fairnessScore": self.fairness_score,
            "balanced": self.balanced,
            "disparity": self.disparity,
            "leastSatisfied": list(self.least_satisfied),
        }


def analyze_fairness_distribution(member_satisfaction: Mapping[str, float]) -> FairnessAnalysis:
    values = np.array(list(member_satisfaction.values()), dtype=float)
    if values.size == 0:
        return FairnessAnalysis(0.0, 0.0, 0.0, 0.0, 1.0, True, "low", [])

    score = fairness_from_satisfaction(values)
    if score >= LOW_DISPARITY_THRESHOLD:
        disparity = "low"
    elif score >= MEDIUM_DISPARITY_THRESHOLD:
        disparity = "medium"
    else:
        disparity = "high"

    lowest = float(values.min())
    least = sorted(m for m, s in member_satisfaction.items() if np.isclose(s, lowest))

    return FairnessAnalysis(
        mean=float(values.mean()),
        minimum=lowest,
        maximum=float(values.max()),
        std=float(values.std()),
        fairness_score=score,
        balanced=score >= BALANCED_THRESHOLD,
        disparity=disparity,
        least_satisfied=least,
    )
