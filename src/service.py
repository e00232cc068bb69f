"""
service.py

Service layer for the Infrastructure Project Coordination Service.

Responsibilities
----------------
Each service class encapsulates the business logic for its domain.
Services receive and return domain model instances (from model.py).
No persistence is handled here; callers are responsible for storing
and retrieving models via a repository of their choosing.

Services
--------
- ProjectService              – Project creation, partial updates, validation
- ConflictDetector            – Spatial/temporal conflict detection and radius search
- AbstractScheduleOptimizer   – Interface every schedule optimizer implements
- HeuristicScheduleOptimizer  – Default phase-by-conflict-precedence optimizer

Optimizer policies
------------------
- SavingsRateCostPolicy   – fixed-fraction cost reduction
- StaticResourcePolicy    – configured utilization figures
- WeightedRiskPolicy      – weighted score over conflicts, cost and priorities

Design notes
------------
- UTC datetimes are used throughout.
- Business rule violations raise a ValueError with a descriptive message;
  the application layer translates them into its own error types.
- Conflict detection is pure: it never mutates the projects it inspects.
- Methods that would normally persist data return the mutated object(s)
  so the caller can hand them to a repository.
"""

from __future__ import annotations

import abc
import math
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set

from model import (
    CostOptimization,
    Location,
    OptimizationReport,
    Point,
    Project,
    ProjectPriority,
    ProjectStatus,
    ProjectType,
    ResourceUtilization,
    RiskAssessment,
    RiskLevel,
    ScheduleEntry,
)

ConflictPair = FrozenSet[uuid.UUID]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def pair(a: uuid.UUID, b: uuid.UUID) -> ConflictPair:
    """Unordered key for a conflict between two projects."""
    return frozenset((a, b))


# ---------------------------------------------------------------------------
# ProjectService
# ---------------------------------------------------------------------------

class ProjectService:
    """
    Manages project creation and field-level updates.

    The same validation rules apply on create and after every merge so the
    store never holds a record that could not have been created.
    """

    UPDATABLE_FIELDS = frozenset({
        "title",
        "description",
        "type",
        "status",
        "priority",
        "location",
        "estimated_cost",
        "estimated_duration",
        "start_date",
        "end_date",
        "contractor",
        "department",
        "ai_recommendations",
    })

    # Changing any of these invalidates cached conflict annotations, either
    # the detection result or the text written onto neighbouring projects.
    CONFLICT_FIELDS = frozenset({
        "location", "start_date", "end_date", "estimated_duration",
        "title", "type",
    })

    def create_project(
        self,
        title: str,
        description: str,
        project_type: ProjectType,
        priority: ProjectPriority,
        location: Location,
        estimated_cost: int,
        estimated_duration: int,
        department: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        contractor: Optional[str] = None,
        ai_recommendations: Optional[List[str]] = None,
    ) -> Project:
        """Create and return a new pending Project instance (unsaved)."""
        now = _utcnow()
        project = Project(
            title=title,
            description=description,
            type=ProjectType(project_type),
            status=ProjectStatus.PENDING,
            priority=ProjectPriority(priority),
            location=Location(lat=location.lat, lng=location.lng, address=location.address),
            estimated_cost=estimated_cost,
            estimated_duration=estimated_duration,
            start_date=start_date,
            end_date=end_date,
            contractor=contractor,
            department=department,
            conflicts=[],
            ai_recommendations=list(ai_recommendations or []),
            created_at=now,
            updated_at=now,
        )
        self.validate(project)
        return project

    def update_project(self, project: Project, changes: Dict[str, Any]) -> Project:
        """
        Merge `changes` into the project, leaving unspecified fields intact.

        `location` may be given as a Location or as a dict holding any of
        lat / lng / address.  Raises ValueError for unknown or immutable
        fields and for a merged record that fails validation.
        """
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}.")

        for name, value in changes.items():
            if name == "location":
                value = self._merge_location(project.location, value)
            elif name == "type":
                value = ProjectType(value)
            elif name == "status":
                value = ProjectStatus(value)
            elif name == "priority":
                value = ProjectPriority(value)
            elif name == "ai_recommendations":
                value = list(value or [])
            setattr(project, name, value)

        self.validate(project)
        project.updated_at = _utcnow()
        return project

    def validate(self, project: Project) -> None:
        """Raise ValueError listing every rule the project breaks."""
        errors: List[str] = []
        if _blank(project.title):
            errors.append("title is required")
        if _blank(project.description):
            errors.append("description is required")
        if _blank(project.location.address):
            errors.append("location.address is required")
        if _blank(project.department):
            errors.append("department is required")
        if project.estimated_cost is None or project.estimated_cost < 0:
            errors.append("estimated_cost must be zero or greater")
        if project.estimated_duration is None or project.estimated_duration <= 0:
            errors.append("estimated_duration must be a positive number of days")
        if project.location.lat is None:
            errors.append("location.lat is required")
        elif not -90.0 <= project.location.lat <= 90.0:
            errors.append("location.lat must be between -90 and 90")
        if project.location.lng is None:
            errors.append("location.lng is required")
        elif not -180.0 <= project.location.lng <= 180.0:
            errors.append("location.lng must be between -180 and 180")
        if project.start_date and project.end_date and project.end_date < project.start_date:
            errors.append("end_date must not be before start_date")
        if errors:
            raise ValueError("; ".join(errors) + ".")

    @staticmethod
    def _merge_location(current: Location, value: Any) -> Location:
        if isinstance(value, Location):
            return Location(lat=value.lat, lng=value.lng, address=value.address)
        if not isinstance(value, dict):
            raise ValueError("location must be an object with lat, lng and address.")
        # None means "not supplied", same as a missing key.
        merged = {k: v for k, v in value.items() if v is not None}
        return Location(
            lat=merged.get("lat", current.lat),
            lng=merged.get("lng", current.lng),
            address=merged.get("address", current.address),
        )


# ---------------------------------------------------------------------------
# ConflictDetector
# ---------------------------------------------------------------------------

class ConflictDetector:
    """
    Decides which projects represent a real-world scheduling conflict.

    Two projects conflict when they are distinct, their sites lie closer
    than `proximity_threshold` degrees (planar Euclidean distance over
    lat/lng, a deliberately crude approximation), and their date windows
    intersect.  A project without a date window is assumed to overlap
    everything.

    detect_all() compares every pair, O(n²); that is acceptable for the
    hundreds of concurrent projects this service targets and is the first
    thing to replace with a spatial index beyond that.
    """

    def __init__(self, proximity_threshold: float = 0.01):
        if proximity_threshold <= 0:
            raise ValueError("proximity_threshold must be positive.")
        self.proximity_threshold = proximity_threshold

    # --- primitives ---------------------------------------------------------

    @staticmethod
    def distance(a: Point, b: Point) -> float:
        return math.hypot(a.lat - b.lat, a.lng - b.lng)

    def within_proximity(self, a: Project, b: Project) -> bool:
        return self.distance(a.location.point, b.location.point) < self.proximity_threshold

    @staticmethod
    def overlaps_in_time(a: Project, b: Project) -> bool:
        window_a = a.date_window()
        window_b = b.date_window()
        if window_a is None or window_b is None:
            return True
        return window_a[0] <= window_b[1] and window_b[0] <= window_a[1]

    def conflicts(self, a: Project, b: Project) -> bool:
        return (
            a.id != b.id
            and self.within_proximity(a, b)
            and self.overlaps_in_time(a, b)
        )

    # --- bulk operations ----------------------------------------------------

    def detect_all(self, projects: Sequence[Project]) -> Set[ConflictPair]:
        """Return every conflicting pair as an unordered id pair."""
        pairs: Set[ConflictPair] = set()
        for i, a in enumerate(projects):
            for b in projects[i + 1:]:
                if self.conflicts(a, b):
                    pairs.add(pair(a.id, b.id))
        return pairs

    def conflicts_for(
        self, project_id: uuid.UUID, projects: Sequence[Project]
    ) -> List[Project]:
        """All projects conflicting with `project_id`, in the given order."""
        target = next((p for p in projects if p.id == project_id), None)
        if target is None:
            return []
        return [p for p in projects if self.conflicts(target, p)]

    def within_radius(
        self, center: Point, radius: float, projects: Iterable[Project]
    ) -> List[Project]:
        """Projects whose site lies within `radius` degrees of `center`."""
        if radius < 0:
            raise ValueError("radius must not be negative.")
        return [
            p for p in projects
            if self.distance(center, p.location.point) <= radius
        ]

    # --- annotation text ----------------------------------------------------

    @staticmethod
    def describe(other: Project) -> str:
        return (
            f"Overlaps with '{other.title}' ({other.type.value}) "
            f"at {other.location.address}"
        )

    def annotations(self, projects: Sequence[Project]) -> Dict[uuid.UUID, List[str]]:
        """
        Conflict descriptions for every project, keyed by id.

        Descriptions are listed in store order of the conflicting project.
        """
        pairs = self.detect_all(projects)
        result: Dict[uuid.UUID, List[str]] = {p.id: [] for p in projects}
        for a in projects:
            for b in projects:
                if a.id != b.id and pair(a.id, b.id) in pairs:
                    result[a.id].append(self.describe(b))
        return result


# ---------------------------------------------------------------------------
# Optimizer policies
# ---------------------------------------------------------------------------

class CostPolicy(abc.ABC):
    @abc.abstractmethod
    def evaluate(self, projects: Sequence[Project]) -> CostOptimization: ...


class SavingsRateCostPolicy(CostPolicy):
    """
    Assumes coordinated execution saves a fixed fraction of the combined
    budget through shared machinery and crews.

    Amounts are whole units of the smallest currency unit; the optimized
    cost is rounded half-up and savings is the exact difference.
    """

    def __init__(self, savings_rate: float = 0.15):
        if not 0.0 <= savings_rate <= 1.0:
            raise ValueError("savings_rate must be between 0 and 1.")
        self.savings_rate = savings_rate

    def evaluate(self, projects: Sequence[Project]) -> CostOptimization:
        individual = sum(p.estimated_cost for p in projects)
        rate = Decimal(str(self.savings_rate))
        optimized = int(
            (Decimal(individual) * (Decimal(1) - rate)).quantize(
                Decimal(1), rounding=ROUND_HALF_UP
            )
        )
        return CostOptimization(
            individual_cost=individual,
            optimized_cost=optimized,
            savings=individual - optimized,
            savings_percentage=float(rate * 100),
        )


class ResourcePolicy(abc.ABC):
    @abc.abstractmethod
    def evaluate(
        self, projects: Sequence[Project], schedule: Sequence[ScheduleEntry]
    ) -> ResourceUtilization: ...


class StaticResourcePolicy(ResourcePolicy):
    """Reports configured utilization figures; no machinery data is modelled."""

    def __init__(
        self,
        peak_utilization_pct: float = 78.0,
        average_utilization_pct: float = 65.0,
        critical_resources: Optional[List[str]] = None,
    ):
        self.peak_utilization_pct = peak_utilization_pct
        self.average_utilization_pct = average_utilization_pct
        self.critical_resources = list(critical_resources or [])

    def evaluate(
        self, projects: Sequence[Project], schedule: Sequence[ScheduleEntry]
    ) -> ResourceUtilization:
        return ResourceUtilization(
            peak_utilization_pct=self.peak_utilization_pct,
            average_utilization_pct=self.average_utilization_pct,
            critical_resources=list(self.critical_resources),
        )


class RiskPolicy(abc.ABC):
    @abc.abstractmethod
    def evaluate(
        self, projects: Sequence[Project], conflict_count: int
    ) -> RiskAssessment: ...


_DEFAULT_PRIORITY_WEIGHTS = {
    ProjectPriority.LOW.value: 0.0,
    ProjectPriority.MEDIUM.value: 1.0,
    ProjectPriority.HIGH.value: 2.0,
    ProjectPriority.CRITICAL.value: 3.0,
}


class WeightedRiskPolicy(RiskPolicy):
    """
    Scores risk as

        conflicts * conflict_weight
        + floor(total_cost / cost_step) * cost_weight
        + mean priority weight

    and grades the score against two thresholds.
    """

    def __init__(
        self,
        conflict_weight: float = 1.0,
        cost_step: int = 50_000_000,
        cost_weight: float = 1.0,
        priority_weights: Optional[Dict[str, float]] = None,
        medium_threshold: float = 2.0,
        high_threshold: float = 5.0,
    ):
        if cost_step <= 0:
            raise ValueError("cost_step must be positive.")
        if high_threshold < medium_threshold:
            raise ValueError("high_threshold must not be below medium_threshold.")
        self.conflict_weight = conflict_weight
        self.cost_step = cost_step
        self.cost_weight = cost_weight
        self.priority_weights = dict(priority_weights or _DEFAULT_PRIORITY_WEIGHTS)
        self.medium_threshold = medium_threshold
        self.high_threshold = high_threshold

    def evaluate(
        self, projects: Sequence[Project], conflict_count: int
    ) -> RiskAssessment:
        factors: List[str] = []

        conflict_term = conflict_count * self.conflict_weight
        if conflict_count:
            factors.append(
                f"{conflict_count} site/schedule conflict(s) among the selected projects"
            )

        total_cost = sum(p.estimated_cost for p in projects)
        cost_steps = total_cost // self.cost_step
        cost_term = cost_steps * self.cost_weight
        if cost_steps:
            factors.append(
                f"Combined budget of {total_cost} is at least "
                f"{cost_steps}x the {self.cost_step} review threshold"
            )

        weights = [self.priority_weights.get(p.priority.value, 0.0) for p in projects]
        priority_term = sum(weights) / len(weights) if weights else 0.0
        urgent = [
            p for p in projects
            if p.priority in (ProjectPriority.HIGH, ProjectPriority.CRITICAL)
        ]
        if urgent:
            factors.append(f"{len(urgent)} high or critical priority project(s)")

        score = conflict_term + cost_term + priority_term
        if score >= self.high_threshold:
            level = RiskLevel.HIGH
        elif score >= self.medium_threshold:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.LOW

        if not factors:
            factors.append("No significant risk factors identified")
        return RiskAssessment(level=level, score=round(score, 2), factors=factors)


# ---------------------------------------------------------------------------
# Schedule optimizers
# ---------------------------------------------------------------------------

class AbstractScheduleOptimizer(abc.ABC):
    """
    Turns a selection of pending projects plus their conflicts into an
    OptimizationReport.

    The work is split in two steps so asynchronous callers can yield between
    them; optimize() runs both back to back.

    `projects` is the selection in caller order.  `conflict_pairs` holds the
    conflicts among the selection.  `blockers` maps a selected project id to
    the active projects outside the selection it conflicts with.
    """

    @abc.abstractmethod
    def build_schedule(
        self,
        projects: Sequence[Project],
        conflict_pairs: Set[ConflictPair],
        plan_start: date,
        blockers: Optional[Dict[uuid.UUID, List[Project]]] = None,
    ) -> List[ScheduleEntry]: ...

    @abc.abstractmethod
    def assemble_report(
        self,
        projects: Sequence[Project],
        schedule: List[ScheduleEntry],
        conflict_pairs: Set[ConflictPair],
        blockers: Optional[Dict[uuid.UUID, List[Project]]] = None,
    ) -> OptimizationReport: ...

    def optimize(
        self,
        projects: Sequence[Project],
        conflict_pairs: Set[ConflictPair],
        plan_start: date,
        blockers: Optional[Dict[uuid.UUID, List[Project]]] = None,
    ) -> OptimizationReport:
        schedule = self.build_schedule(projects, conflict_pairs, plan_start, blockers)
        return self.assemble_report(projects, schedule, conflict_pairs, blockers)


class HeuristicScheduleOptimizer(AbstractScheduleOptimizer):
    """
    Sequences conflicting projects into successive phases.

    Projects are placed in selection order.  Each one lands one phase after
    the latest earlier project it conflicts with (phase 1 when it conflicts
    with none) and may not start before any of those projects' estimated
    completion, nor before an active blocker's window has closed.  Projects
    with no conflicts share phase 1.  This is a heuristic, not a
    combinatorial scheduler.
    """

    def __init__(
        self,
        cost_policy: Optional[CostPolicy] = None,
        resource_policy: Optional[ResourcePolicy] = None,
        risk_policy: Optional[RiskPolicy] = None,
    ):
        self.cost_policy = cost_policy or SavingsRateCostPolicy()
        self.resource_policy = resource_policy or StaticResourcePolicy()
        self.risk_policy = risk_policy or WeightedRiskPolicy()

    def build_schedule(
        self,
        projects: Sequence[Project],
        conflict_pairs: Set[ConflictPair],
        plan_start: date,
        blockers: Optional[Dict[uuid.UUID, List[Project]]] = None,
    ) -> List[ScheduleEntry]:
        blockers = blockers or {}
        placed: Dict[uuid.UUID, ScheduleEntry] = {}
        positions: Dict[uuid.UUID, int] = {}

        for index, project in enumerate(projects):
            earlier = [
                q for q in projects[:index]
                if pair(project.id, q.id) in conflict_pairs
            ]
            phase = 1 + max((placed[q.id].phase for q in earlier), default=0)

            start = plan_start
            if project.start_date and project.start_date > start:
                start = project.start_date

            reasons: List[str] = []
            for q in earlier:
                completion = placed[q.id].estimated_completion_date
                if completion > start:
                    start = completion
                reasons.append(
                    f"Follows completion of '{q.title}' on {completion.isoformat()} "
                    "to avoid overlapping work at the same site."
                )
            for blocker in blockers.get(project.id, []):
                window = blocker.date_window()
                if window is None:
                    reasons.append(
                        f"Coordinate with active project '{blocker.title}', "
                        "which has no scheduled dates."
                    )
                    continue
                free_from = window[1] + timedelta(days=1)
                if free_from > start:
                    start = free_from
                reasons.append(
                    f"Waits for active project '{blocker.title}' to finish on "
                    f"{window[1].isoformat()}."
                )
            if not reasons:
                reasons.append("No conflicts with other selected projects.")

            placed[project.id] = ScheduleEntry(
                project_id=project.id,
                phase=phase,
                recommended_start_date=start,
                reasoning=" ".join(reasons),
                estimated_duration=project.estimated_duration,
            )
            positions[project.id] = index

        return sorted(
            placed.values(), key=lambda e: (e.phase, positions[e.project_id])
        )

    def assemble_report(
        self,
        projects: Sequence[Project],
        schedule: List[ScheduleEntry],
        conflict_pairs: Set[ConflictPair],
        blockers: Optional[Dict[uuid.UUID, List[Project]]] = None,
    ) -> OptimizationReport:
        blockers = blockers or {}
        return OptimizationReport(
            optimal_schedule=list(schedule),
            cost_optimization=self.cost_policy.evaluate(projects),
            resource_utilization=self.resource_policy.evaluate(projects, schedule),
            risk_assessment=self.risk_policy.evaluate(projects, len(conflict_pairs)),
            recommendations=self._recommendations(
                projects, schedule, conflict_pairs, blockers
            ),
            conflict_count=len(conflict_pairs),
        )

    @staticmethod
    def _recommendations(
        projects: Sequence[Project],
        schedule: List[ScheduleEntry],
        conflict_pairs: Set[ConflictPair],
        blockers: Dict[uuid.UUID, List[Project]],
    ) -> List[str]:
        titles = {p.id: p.title for p in projects}
        by_phase: Dict[int, List[ScheduleEntry]] = {}
        for entry in schedule:
            by_phase.setdefault(entry.phase, []).append(entry)

        lines: List[str] = []
        for phase in sorted(by_phase):
            entries = by_phase[phase]
            first_start = min(e.recommended_start_date for e in entries)
            names = ", ".join(titles[e.project_id] for e in entries)
            lines.append(f"Phase {phase}: start {names} from {first_start.isoformat()}")
        if conflict_pairs:
            lines.append("Coordinate contractor schedules to share heavy machinery")
        if any(blockers.values()):
            lines.append(
                "Sequence pending work after active projects at the same sites "
                "to avoid re-excavation"
            )
        return lines
