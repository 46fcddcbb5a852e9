"""
Error taxonomy for trip optimization.

Every failure that leaves the pipeline is expressed as an ``ErrorPayload`` with a
typed ``kind``; ``classify_error`` turns arbitrary exceptions into one so nothing
reaches the caller unclassified.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    INVALID_COORDINATES = "invalid_coordinates"
    MISSING_PREFERENCES = "missing_preferences"
    NO_FEASIBLE_SOLUTION = "no_feasible_solution"
    OPTIMIZATION_TIMEOUT = "optimization_timeout"
    CLUSTERING_FAILED = "clustering_failed"
    ROUTE_CALCULATION_FAILED = "route_calculation_failed"
    RESOURCE_EXCEEDED = "resource_exceeded"
    UPSTREAM_DATA_ERROR = "upstream_data_error"
    PERMISSION_DENIED = "permission_denied"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


# Never retried and never degraded to a fallback strategy
TERMINAL_KINDS = frozenset({ErrorKind.VALIDATION_ERROR, ErrorKind.PERMISSION_DENIED})

RETRYABLE_KINDS = frozenset({
    ErrorKind.OPTIMIZATION_TIMEOUT,
    ErrorKind.CLUSTERING_FAILED,
    ErrorKind.ROUTE_CALCULATION_FAILED,
    ErrorKind.NO_FEASIBLE_SOLUTION,
    ErrorKind.RESOURCE_EXCEEDED,
    ErrorKind.UPSTREAM_DATA_ERROR,
})

USER_MESSAGES = {
    ErrorKind.INSUFFICIENT_DATA: "Not enough trip data to build an itinerary.",
    ErrorKind.INVALID_COORDINATES: "Some destinations have invalid locations.",
    ErrorKind.MISSING_PREFERENCES: "Group members have not rated any destinations yet.",
    ErrorKind.NO_FEASIBLE_SOLUTION: "No itinerary fits the available trip time.",
    ErrorKind.OPTIMIZATION_TIMEOUT: "Route optimization took too long.",
    ErrorKind.CLUSTERING_FAILED: "Destinations could not be grouped by location.",
    ErrorKind.ROUTE_CALCULATION_FAILED: "Travel routes between destinations could not be calculated.",
    ErrorKind.RESOURCE_EXCEEDED: "The optimization used more resources than allowed.",
    ErrorKind.UPSTREAM_DATA_ERROR: "Trip data could not be loaded or saved.",
    ErrorKind.PERMISSION_DENIED: "You do not have access to this trip group.",
    ErrorKind.VALIDATION_ERROR: "The optimization request is invalid.",
    ErrorKind.UNKNOWN: "An unexpected error occurred during optimization.",
}

SUGGESTED_ACTIONS = {
    ErrorKind.INSUFFICIENT_DATA: ["Add at least one destination to the trip"],
    ErrorKind.INVALID_COORDINATES: ["Ensure all destinations have valid coordinates"],
    ErrorKind.MISSING_PREFERENCES: ["Ask group members to rate destinations"],
    ErrorKind.NO_FEASIBLE_SOLUTION: [
        "Extend the trip duration",
        "Try reducing the number of destinations",
    ],
    ErrorKind.OPTIMIZATION_TIMEOUT: [
        "Try reducing the number of destinations",
        "Consider splitting into multiple shorter trips",
    ],
    ErrorKind.CLUSTERING_FAILED: ["Ensure all destinations have valid coordinates"],
    ErrorKind.ROUTE_CALCULATION_FAILED: ["Check destination locations and try again"],
    ErrorKind.RESOURCE_EXCEEDED: [
        "Try reducing the number of destinations",
        "Reduce the number of group members taking part",
    ],
    ErrorKind.UPSTREAM_DATA_ERROR: ["Try again in a few moments"],
    ErrorKind.PERMISSION_DENIED: ["Ask the group owner to invite you"],
    ErrorKind.VALIDATION_ERROR: ["Check the request options and try again"],
    ErrorKind.UNKNOWN: ["Contact support if the issue persists"],
}

SEVERITY = {
    ErrorKind.INSUFFICIENT_DATA: "medium",
    ErrorKind.INVALID_COORDINATES: "medium",
    ErrorKind.MISSING_PREFERENCES: "medium",
    ErrorKind.NO_FEASIBLE_SOLUTION: "medium",
    ErrorKind.OPTIMIZATION_TIMEOUT: "medium",
    ErrorKind.CLUSTERING_FAILED: "high",
    ErrorKind.ROUTE_CALCULATION_FAILED: "high",
    ErrorKind.RESOURCE_EXCEEDED: "high",
    ErrorKind.UPSTREAM_DATA_ERROR: "high",
    ErrorKind.PERMISSION_DENIED: "low",
    ErrorKind.VALIDATION_ERROR: "low",
    ErrorKind.UNKNOWN: "critical",
}


@dataclass
class ErrorPayload:
    kind: ErrorKind
    message: str
    retryable: bool
    suggested_actions: List[str] = field(default_factory=list)
    severity: str = "medium"
    user_message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "userMessage": self.user_message,
            "retryable": self.retryable,
            "suggestedActions": list(self.suggested_actions),
            "severity": self.severity,
            "details": dict(self.details),
        }


class TripOptimizationError(Exception):
    """Base class for every failure the optimization pipeline raises"""

    kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        suggested_actions: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.suggested_actions = suggested_actions or list(SUGGESTED_ACTIONS[self.kind])
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def severity(self) -> str:
        return SEVERITY[self.kind]

    def to_payload(self) -> ErrorPayload:
        return ErrorPayload(
            kind=self.kind,
            message=self.message,
            retryable=self.retryable,
            suggested_actions=list(self.suggested_actions),
            severity=self.severity,
            user_message=USER_MESSAGES[self.kind],
            details=dict(self.details),
        )


class InsufficientDataError(TripOptimizationError):
    kind = ErrorKind.INSUFFICIENT_DATA

class InvalidCoordinatesError(TripOptimizationError):
    kind = ErrorKind.INVALID_COORDINATES

class MissingPreferencesError(TripOptimizationError):
    kind = ErrorKind.MISSING_PREFERENCES

class NoFeasibleSolutionError(TripOptimizationError):
    kind = ErrorKind.NO_FEASIBLE_SOLUTION

class ClusteringFailedError(TripOptimizationError):
    kind = ErrorKind.CLUSTERING_FAILED

class RouteCalculationError(TripOptimizationError):
    kind = ErrorKind.ROUTE_CALCULATION_FAILED

class UpstreamDataError(TripOptimizationError):
    kind = ErrorKind.UPSTREAM_DATA_ERROR

class PermissionDeniedError(TripOptimizationError):
    kind = ErrorKind.PERMISSION_DENIED

class InputValidationError(TripOptimizationError):
    kind = ErrorKind.VALIDATION_ERROR


class OptimizationTimeoutError(TripOptimizationError):
    """Raised when a stage overruns its deadline.

    ``partial`` carries the best result produced before the deadline fired, if any,
    so the governor can still surface it during the grace period.
    """

    kind = ErrorKind.OPTIMIZATION_TIMEOUT

    def __init__(self, stage: str, elapsed_ms: float, timeout_ms: float, partial: Any = None):
        super().__init__(
            f"Stage '{stage}' exceeded its {timeout_ms:.0f}ms deadline after {elapsed_ms:.1f}ms",
            details={
                "stage": stage,
                "elapsed_ms": round(elapsed_ms, 2),
                "timeout_ms": timeout_ms,
            },
        )
        self.stage = stage
        self.elapsed_ms = elapsed_ms
        self.timeout_ms = timeout_ms
        self.partial = partial


class ResourceExceededError(TripOptimizationError):
    kind = ErrorKind.RESOURCE_EXCEEDED

    def __init__(self, resource: str, used: float, limit: float):
        super().__init__(
            f"Resource limit exceeded for {resource}: {used:.1f} > {limit:.1f}",
            details={"resource": resource, "used": round(used, 2), "limit": limit},
        )
        self.resource = resource
        self.used = used
        self.limit = limit


def _payload_for(kind: ErrorKind, message: str, **details) -> ErrorPayload:
    return ErrorPayload(
        kind=kind,
        message=message,
        retryable=kind in RETRYABLE_KINDS,
        suggested_actions=list(SUGGESTED_ACTIONS[kind]),
        severity=SEVERITY[kind],
        user_message=USER_MESSAGES[kind],
        details=details,
    )


def classify_error(exc: BaseException) -> ErrorPayload:
    """Map any exception onto the error taxonomy. Never raises."""
    if isinstance(exc, TripOptimizationError):
        return exc.to_payload()

    message = str(exc) or type(exc).__name__
    error_type = type(exc).__name__

    # TimeoutError and asyncio.TimeoutError are aliases on 3.11+, distinct before
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        kind = ErrorKind.OPTIMIZATION_TIMEOUT
    elif isinstance(exc, MemoryError):
        kind = ErrorKind.RESOURCE_EXCEEDED
    elif isinstance(exc, PermissionError):
        kind = ErrorKind.PERMISSION_DENIED
    elif isinstance(exc, (ConnectionError, OSError)):
        kind = ErrorKind.UPSTREAM_DATA_ERROR
    elif isinstance(exc, PydanticValidationError):
        kind = ErrorKind.VALIDATION_ERROR
    elif isinstance(exc, ArithmeticError):
        kind = ErrorKind.ROUTE_CALCULATION_FAILED
    else:
        kind = ErrorKind.UNKNOWN
        logger.warning(f"Unclassified error {error_type}: {message}")

    return _payload_for(kind, message, error_type=error_type)
