from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from grouptrip.core.models import AccommodationQuality, OptimizationResult


class OptimizeOptions(BaseModel):
    """Caller-tunable knobs for a single optimization run"""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    timeout_ms: Optional[int] = Field(
        None, alias="timeoutMs", ge=1, le=600_000,
        description="Hard deadline for the optimization; adaptive when omitted",
    )
    max_iterations: Optional[int] = Field(
        None, alias="maxIterations", ge=1, le=1_000_000_000,
        description="Upper bound on optimizer iterations",
    )
    enable_multi_day_scheduling: bool = Field(
        True, alias="enableMultiDayScheduling",
        description="Split the route into daily schedules with meals and accommodation",
    )
    accommodation_quality: Optional[AccommodationQuality] = Field(
        None, alias="accommodationQuality",
        description="Accommodation tier: budget, standard or premium",
    )
    early_termination_threshold: Optional[float] = Field(
        None, alias="earlyTerminationThreshold", ge=0.0, le=1.0,
        description="Stop searching once a route reaches this composite score",
    )
    seed: Optional[int] = Field(None, description="Seed for the optimizer's random explorations")

    @field_validator('accommodation_quality', mode='before')
    @classmethod
    def parse_accommodation_quality(cls, v):
        """Accept tier names in any case"""
        if isinstance(v, str):
            return v.strip().lower()
        return v


class OptimizeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    requester_id: str = Field(..., alias="requesterId", description="Member asking for the optimization")
    options: OptimizeOptions = Field(default_factory=OptimizeOptions)

    @field_validator('requester_id')
    @classmethod
    def validate_requester(cls, v):
        """Requester id must be non-blank"""
        if not v or not v.strip():
            raise ValueError("Requester id cannot be empty")
        return v.strip()


class OptimizationResultResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    warnings: List[str] = Field(default_factory=list)
    processing_time_ms: float = Field(0.0, alias="processingTimeMs")

    @classmethod
    def from_result(cls, result: OptimizationResult) -> "OptimizationResultResponse":
        return cls.model_validate(result.to_dict())
