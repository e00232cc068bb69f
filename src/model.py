"""
model.py

Domain models for the Infrastructure Project Coordination Service.

Entities
--------
- Project
- Location / Point

Value objects produced by the optimizer
---------------------------------------
- ScheduleEntry
- CostOptimization
- ResourceUtilization
- RiskAssessment
- OptimizationReport

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProjectType(str, Enum):
    """Kind of civil work a project carries out."""
    HIGHWAY = "highway"
    PIPELINE = "pipeline"
    SPEEDBREAKER = "speedbreaker"
    DRAINAGE = "drainage"
    UTILITY = "utility"
    OTHER = "other"


class ProjectStatus(str, Enum):
    """
    Lifecycle status of a project.

    PENDING      – Newly registered; the only status eligible for optimization.
    APPROVED     – Cleared to start; its window blocks conflicting pending work.
    IN_PROGRESS  – Work on site; its window blocks conflicting pending work.
    COMPLETED    – Finished.
    ON_HOLD      – Suspended.
    """
    PENDING = "pending"
    APPROVED = "approved"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ON_HOLD = "on-hold"


class ProjectPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    """Qualitative risk grade attached to an optimization report."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


# ---------------------------------------------------------------------------
# Geography
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Point:
    """A bare (latitude, longitude) pair in decimal degrees."""
    lat: float
    lng: float


@dataclass
class Location:
    """A project site: a point plus the address shown to users."""
    lat: float = 0.0
    lng: float = 0.0
    address: str = ""

    @property
    def point(self) -> Point:
        return Point(lat=self.lat, lng=self.lng)


# ---------------------------------------------------------------------------
# Core Project Entity
# ---------------------------------------------------------------------------


@dataclass
class Project:
    """
    A single infrastructure construction project.

    `conflicts` is a derived cache of human-readable descriptions written by
    the application layer after conflict detection; it is never edited by
    hand.  `id` and `created_at` are assigned once by the store.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    title: str = ""
    description: str = ""
    type: ProjectType = ProjectType.OTHER
    status: ProjectStatus = ProjectStatus.PENDING
    priority: ProjectPriority = ProjectPriority.MEDIUM
    location: Location = field(default_factory=Location)

    estimated_cost: int = 0          # smallest currency unit
    estimated_duration: int = 1      # days

    # Schedule
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    contractor: Optional[str] = None
    department: str = ""

    # Derived / advisory
    conflicts: List[str] = field(default_factory=list)
    ai_recommendations: List[str] = field(default_factory=list)

    # Metadata
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def date_window(self) -> Optional[Tuple[date, date]]:
        """
        Inclusive [start, end] window of the project, or None when unknown.

        Without an explicit end date the window covers estimated_duration
        days counting the start day, so it closes on start + duration - 1.
        """
        if self.start_date is None:
            return None
        end = self.end_date or self.start_date + timedelta(days=max(self.estimated_duration, 1) - 1)
        return self.start_date, end


# ---------------------------------------------------------------------------
# Optimization results
# ---------------------------------------------------------------------------


@dataclass
class ScheduleEntry:
    """
    One project's slot in an optimized schedule.

    Entries are scoped to a single optimization run and are not written back
    to the project unless the run is explicitly applied.

    estimated_completion_date is the first day after the work, i.e. the
    earliest day a conflicting project may start.
    """
    project_id: uuid.UUID
    phase: int                              # 1-based
    recommended_start_date: date
    reasoning: str = ""
    estimated_duration: int = 1

    @property
    def estimated_completion_date(self) -> date:
        return self.recommended_start_date + timedelta(days=self.estimated_duration)


@dataclass
class CostOptimization:
    individual_cost: int
    optimized_cost: int
    savings: int
    savings_percentage: float


@dataclass
class ResourceUtilization:
    peak_utilization_pct: float
    average_utilization_pct: float
    critical_resources: List[str] = field(default_factory=list)


@dataclass
class RiskAssessment:
    level: RiskLevel
    score: float
    factors: List[str] = field(default_factory=list)


@dataclass
class OptimizationReport:
    """Everything a single optimization run produces."""
    optimal_schedule: List[ScheduleEntry]
    cost_optimization: CostOptimization
    resource_utilization: ResourceUtilization
    risk_assessment: RiskAssessment
    recommendations: List[str] = field(default_factory=list)
    conflict_count: int = 0
