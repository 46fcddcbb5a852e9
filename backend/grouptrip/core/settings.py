from pathlib import Path
from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ACCOMMODATION_TIERS = ("budget", "standard", "premium")

class Settings(BaseSettings):
    # Route optimizer
    OPTIMIZER_MAX_ITERATIONS: int = 50
    FAIRNESS_WEIGHT: float = 0.6
    QUANTITY_WEIGHT: float = 0.4
    EARLY_TERMINATION_THRESHOLD: float = 0.95
    RANDOM_EXPLORATIONS: int = 15
    TOP_CANDIDATES_TO_IMPROVE: int = 5
    OPTIMIZER_SEED: Optional[int] = None
    STALL_ITERATION_LIMIT: int = 50  # iterations without a new candidate order

    # Clustering & edge cases
    CLUSTER_RADIUS_KM: float = 1.0
    COLOCATION_THRESHOLD_KM: float = 0.01
    MAX_DESTINATIONS: int = 50
    TRUNCATED_DESTINATIONS: int = 30
    PREFERENCE_COVERAGE_ERROR: float = 0.3
    PREFERENCE_COVERAGE_WARNING: float = 0.5
    NEUTRAL_PREFERENCE_SCORE: float = 3.0
    MIN_RATINGS_FOR_NORMALIZATION: int = 3

    # Transport bands
    WALKING_MAX_KM: float = 2.0
    DRIVING_MAX_KM: float = 300.0
    WALKING_SPEED_KMH: float = 5.0
    DRIVING_SPEED_KMH: float = 60.0
    DRIVING_TIME_BUFFER: float = 1.2  # traffic / parking
    FLYING_SPEED_KMH: float = 500.0
    AIRPORT_OVERHEAD_MINUTES: int = 180

    # Daily scheduling
    DAY_START_HOUR: int = 8
    DAILY_BUDGET_MINUTES: int = 720  # 12 hours of active time
    VISIT_BUFFER_MINUTES: int = 15
    MAX_TRAVEL_MINUTES_PER_DAY: int = 240
    MAX_DESTINATIONS_PER_DAY: int = 6
    EXCESSIVE_WALKING_KM: float = 10.0
    LATE_FINISH_HOUR: int = 20
    RELAXED_PACE_UTILIZATION: float = 0.6
    MODERATE_PACE_UTILIZATION: float = 0.85

    # Accommodation
    DEFAULT_ACCOMMODATION_QUALITY: str = "standard"
    ACCOMMODATION_SEARCH_RADIUS_KM: float = 10.0

    # Timeouts
    DEFAULT_TIMEOUT_MS: int = 5000
    MIN_TIMEOUT_MS: int = 1000
    MAX_TIMEOUT_MS: int = 30000
    GRACE_PERIOD_MS: int = 1000
    FALLBACK_TIMEOUT_MS: int = 2000

    # Resource ceilings
    MAX_MEMORY_MB: float = 100.0
    MAX_CPU_TIME_MS: int = 30000
    MAX_RESOURCE_ITERATIONS: int = 1000
    MAX_GROUP_MEMBERS: int = 20
    RESOURCE_CHECK_INTERVAL: int = 10

    # Retry / backoff
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 5000

    # Timing history used for adaptive timeouts
    TIMING_HISTORY_LIMIT: int = 100
    TIMING_WINDOW: int = 10

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    @field_validator('FAIRNESS_WEIGHT', 'QUANTITY_WEIGHT')
    @classmethod
    def validate_weight(cls, v):
        """Objective weights must be non-negative"""
        if v < 0:
            raise ValueError("Objective weights must be non-negative")
        return v

    @field_validator('DEFAULT_ACCOMMODATION_QUALITY', mode='before')
    @classmethod
    def parse_accommodation_quality(cls, v):
        """Normalise tier names like 'Premium ' to 'premium'"""
        if isinstance(v, str):
            v = v.strip().lower()
        if v not in ACCOMMODATION_TIERS:
            raise ValueError(f"Accommodation quality must be one of {', '.join(ACCOMMODATION_TIERS)}")
        return v

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).parents[3] / ".env"),
        env_file_encoding="utf-8",
    )
