"""
Configuration management for the Infrastructure Project Coordination Service.

Every tunable used by conflict detection and the schedule optimizer lives
here so it can be overridden from the environment or a `.env` file.
"""
from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Infrastructure Project Coordination Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SEED_DEMO_DATA: bool = True

    # Conflict detection (planar degrees; 0.01 is roughly 1 km at mid-latitudes)
    CONFLICT_PROXIMITY_DEGREES: float = Field(default=0.01, gt=0)

    # Cost optimization
    SAVINGS_RATE: float = Field(default=0.15, ge=0.0, le=1.0)

    # Resource utilization policy
    PEAK_UTILIZATION_PCT: float = Field(default=78.0, ge=0.0, le=100.0)
    AVERAGE_UTILIZATION_PCT: float = Field(default=65.0, ge=0.0, le=100.0)
    CRITICAL_RESOURCES: List[str] = ["Excavators", "Concrete Mixers", "Skilled Labor"]

    # Risk scoring
    RISK_CONFLICT_WEIGHT: float = 1.0
    RISK_COST_STEP: int = Field(default=50_000_000, gt=0)
    RISK_COST_WEIGHT: float = 1.0
    RISK_PRIORITY_WEIGHTS: Dict[str, float] = {
        "low": 0.0,
        "medium": 1.0,
        "high": 2.0,
        "critical": 3.0,
    }
    RISK_MEDIUM_THRESHOLD: float = 2.0
    RISK_HIGH_THRESHOLD: float = 5.0

    # Attached to new projects that arrive without recommendations
    DEFAULT_RECOMMENDATIONS: List[str] = [
        "Resource availability check recommended before final approval",
        "Environmental impact assessment may be required",
    ]

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
