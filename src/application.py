"""
application.py

Application layer for the Infrastructure Project Coordination Service.

Overview
--------
The application layer sits between the presentation layer (API / UI) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data the
     presentation layer needs; no raw domain objects are leaked upward.
  2. Declaring the abstract Repository interface so that the application
     layer remains persistence-agnostic (implementations live in
     infrastructure.py).
  3. Declaring the UnitOfWork abstraction that guards every read and write.
  4. Implementing Use Case handlers, one class per user-facing operation,
     that orchestrate service calls, repository reads/writes and the
     conflict-annotation refresh in the correct order.
  5. Running schedule optimizations as cancellable asyncio tasks.

Structure
---------
DTOs
    LocationDTO, ProjectDTO, DashboardDTO
    ScheduleEntryDTO, CostOptimizationDTO, ResourceUtilizationDTO,
    RiskAssessmentDTO, OptimizationReportDTO, OptimizationRunDTO

Repository interfaces
    AbstractProjectRepository

Unit of Work
    AbstractUnitOfWork

Optimization runs
    RunStatus, OptimizationHandle, OptimizationRunner

Use Cases
    --- Project store ---
    CreateProjectUseCase
    UpdateProjectUseCase
    GetProjectUseCase
    ListProjectsUseCase
    SeedProjectsUseCase

    --- Queries ---
    SearchProjectsUseCase
    ProjectsNearUseCase
    GetConflictingProjectsUseCase
    GetDashboardUseCase

    --- Optimization ---
    RunOptimizationUseCase
    GetOptimizationRunUseCase
    CancelOptimizationRunUseCase
    ApplyOptimizationRunUseCase

Design notes
------------
- Use cases receive commands / ids and return DTOs; no domain objects cross
  the application boundary.
- Each use case accepts a UnitOfWork as its dependency.
- Conflict annotations (Project.conflicts) are a cache: they are recomputed
  from a snapshot after every create or update that touches location,
  dates, title or type, and written back only if the store has not changed
  meanwhile (otherwise recomputed from a fresh snapshot).
- All timestamps flowing out are ISO-8601 strings (UTC) for easy JSON
  serialisation.
- Errors bubble up as ApplicationError subclasses; service-level
  ValueErrors are re-raised as ValidationError.
"""

from __future__ import annotations

import abc
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from config import get_settings
from logger import get_logger
from model import (
    Location,
    OptimizationReport,
    Point,
    Project,
    ProjectPriority,
    ProjectStatus,
    ProjectType,
    ScheduleEntry,
)
from service import (
    AbstractScheduleOptimizer,
    ConflictDetector,
    ConflictPair,
    HeuristicScheduleOptimizer,
    ProjectService,
    SavingsRateCostPolicy,
    StaticResourcePolicy,
    WeightedRiskPolicy,
    pair,
)

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class ValidationError(ApplicationError):
    """Raised when a project is missing a required field or holds an out-of-range value."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class InvalidInputError(ApplicationError):
    """Raised when an optimization is requested over an empty or ineligible selection."""


class StoreIntegrityError(RuntimeError):
    """Raised when the store detects a broken internal invariant, e.g. a duplicate id."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _today() -> date:
    return datetime.now(timezone.utc).date()


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Project DTOs
# ---------------------------------------------------------------------------

@dataclass
class LocationDTO:
    lat: float
    lng: float
    address: str


@dataclass
class ProjectDTO:
    id: str
    title: str
    description: str
    type: str
    status: str
    priority: str
    location: LocationDTO
    estimated_cost: int
    estimated_duration: int
    start_date: Optional[str]
    end_date: Optional[str]
    contractor: Optional[str]
    department: str
    conflicts: List[str]
    ai_recommendations: List[str]
    created_at: str
    updated_at: str


@dataclass
class DashboardDTO:
    total: int
    pending: int
    approved: int
    in_progress: int
    completed: int
    on_hold: int
    with_conflicts: int
    total_cost: int
    recent_projects: List[ProjectDTO]
    critical_projects: List[ProjectDTO]


# ---------------------------------------------------------------------------
# Optimization DTOs
# ---------------------------------------------------------------------------

@dataclass
class ScheduleEntryDTO:
    project_id: str
    project_title: str
    phase: int
    recommended_start_date: str
    estimated_completion_date: str
    reasoning: str


@dataclass
class CostOptimizationDTO:
    individual_cost: int
    optimized_cost: int
    savings: int
    savings_percentage: float


@dataclass
class ResourceUtilizationDTO:
    peak_utilization_pct: float
    average_utilization_pct: float
    critical_resources: List[str]


@dataclass
class RiskAssessmentDTO:
    level: str
    score: float
    factors: List[str]


@dataclass
class OptimizationReportDTO:
    optimal_schedule: List[ScheduleEntryDTO]
    cost_optimization: CostOptimizationDTO
    resource_utilization: ResourceUtilizationDTO
    risk_assessment: RiskAssessmentDTO
    recommendations: List[str]
    conflict_count: int


@dataclass
class OptimizationRunDTO:
    id: str
    status: str
    project_ids: List[str]
    plan_start_date: str
    submitted_at: str
    applied: bool
    report: Optional[OptimizationReportDTO]
    error: Optional[str]


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=str(p.id),
            title=p.title,
            description=p.description,
            type=p.type.value,
            status=p.status.value,
            priority=p.priority.value,
            location=LocationDTO(
                lat=p.location.lat,
                lng=p.location.lng,
                address=p.location.address,
            ),
            estimated_cost=p.estimated_cost,
            estimated_duration=p.estimated_duration,
            start_date=_fmt_date(p.start_date),
            end_date=_fmt_date(p.end_date),
            contractor=p.contractor,
            department=p.department,
            conflicts=list(p.conflicts),
            ai_recommendations=list(p.ai_recommendations),
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def schedule_entry(e: ScheduleEntry, titles: Dict[uuid.UUID, str]) -> ScheduleEntryDTO:
        return ScheduleEntryDTO(
            project_id=str(e.project_id),
            project_title=titles.get(e.project_id, ""),
            phase=e.phase,
            recommended_start_date=_fmt_date(e.recommended_start_date),
            estimated_completion_date=_fmt_date(e.estimated_completion_date),
            reasoning=e.reasoning,
        )

    @staticmethod
    def report(r: OptimizationReport, titles: Dict[uuid.UUID, str]) -> OptimizationReportDTO:
        cost = r.cost_optimization
        resources = r.resource_utilization
        risk = r.risk_assessment
        return OptimizationReportDTO(
            optimal_schedule=[_Assembler.schedule_entry(e, titles) for e in r.optimal_schedule],
            cost_optimization=CostOptimizationDTO(
                individual_cost=cost.individual_cost,
                optimized_cost=cost.optimized_cost,
                savings=cost.savings,
                savings_percentage=cost.savings_percentage,
            ),
            resource_utilization=ResourceUtilizationDTO(
                peak_utilization_pct=resources.peak_utilization_pct,
                average_utilization_pct=resources.average_utilization_pct,
                critical_resources=list(resources.critical_resources),
            ),
            risk_assessment=RiskAssessmentDTO(
                level=risk.level.value,
                score=risk.score,
                factors=list(risk.factors),
            ),
            recommendations=list(r.recommendations),
            conflict_count=r.conflict_count,
        )

    @staticmethod
    def run(h: "OptimizationHandle") -> OptimizationRunDTO:
        report = h.report
        return OptimizationRunDTO(
            id=str(h.id),
            status=h.status.value,
            project_ids=[str(p.id) for p in h.selection],
            plan_start_date=_fmt_date(h.plan_start),
            submitted_at=_fmt(h.submitted_at),
            applied=h.applied,
            report=_Assembler.report(report, h.titles) if report is not None else None,
            error=h.error,
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractProjectRepository(abc.ABC):
    """
    Canonical, insertion-ordered project registry.

    get() and list_all() return copies: mutating them never touches the
    store.  Changes go through add() / save().
    """

    @abc.abstractmethod
    def get(self, project_id: uuid.UUID) -> Optional[Project]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Project]: ...
    @abc.abstractmethod
    def add(self, project: Project) -> None: ...
    @abc.abstractmethod
    def save(self, project: Project) -> None: ...
    @abc.abstractmethod
    def revision(self) -> int: ...
    @abc.abstractmethod
    def annotate_conflicts(
        self, annotations: Dict[uuid.UUID, List[str]], expected_revision: int
    ) -> bool: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups the repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.projects.add(project)
            uow.commit()
    """
    projects: AbstractProjectRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

def build_detector() -> ConflictDetector:
    return ConflictDetector(proximity_threshold=get_settings().CONFLICT_PROXIMITY_DEGREES)


def build_optimizer() -> AbstractScheduleOptimizer:
    """Heuristic optimizer wired from configuration."""
    settings = get_settings()
    return HeuristicScheduleOptimizer(
        cost_policy=SavingsRateCostPolicy(savings_rate=settings.SAVINGS_RATE),
        resource_policy=StaticResourcePolicy(
            peak_utilization_pct=settings.PEAK_UTILIZATION_PCT,
            average_utilization_pct=settings.AVERAGE_UTILIZATION_PCT,
            critical_resources=settings.CRITICAL_RESOURCES,
        ),
        risk_policy=WeightedRiskPolicy(
            conflict_weight=settings.RISK_CONFLICT_WEIGHT,
            cost_step=settings.RISK_COST_STEP,
            cost_weight=settings.RISK_COST_WEIGHT,
            priority_weights=settings.RISK_PRIORITY_WEIGHTS,
            medium_threshold=settings.RISK_MEDIUM_THRESHOLD,
            high_threshold=settings.RISK_HIGH_THRESHOLD,
        ),
    )


_project_svc = ProjectService()
_detector = build_detector()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: uuid.UUID) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _refresh_conflict_annotations(
    uow: AbstractUnitOfWork, detector: ConflictDetector
) -> int:
    """
    Recompute every project's conflict descriptions from a snapshot.

    Detection runs outside the lock.  If the store changed meanwhile the
    result is discarded and detection runs again on a fresh snapshot, so
    the annotations written always match the store at write time.
    Returns the revision the annotations were written at.
    """
    while True:
        with uow:
            revision = uow.projects.revision()
            projects = uow.projects.list_all()
        annotations = detector.annotations(projects)
        with uow:
            if uow.projects.annotate_conflicts(annotations, revision):
                return revision
        logger.debug("Conflict annotations at revision %s superseded, retrying", revision)


# ===========================================================================
# USE CASES - PROJECT STORE
# ===========================================================================

@dataclass
class CreateProjectCommand:
    title: str
    description: str
    type: ProjectType
    priority: ProjectPriority
    location: Location
    estimated_cost: int
    estimated_duration: int
    department: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    contractor: Optional[str] = None
    ai_recommendations: List[str] = field(default_factory=list)


class CreateProjectUseCase:
    """
    Register a new pending project and refresh conflict annotations.

    When the command carries no recommendations the configured defaults
    are attached.
    """

    def __init__(self, detector: Optional[ConflictDetector] = None):
        self._detector = detector or _detector

    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        recommendations = cmd.ai_recommendations or list(get_settings().DEFAULT_RECOMMENDATIONS)
        with uow:
            try:
                project = _project_svc.create_project(
                    title=cmd.title,
                    description=cmd.description,
                    project_type=cmd.type,
                    priority=cmd.priority,
                    location=cmd.location,
                    estimated_cost=cmd.estimated_cost,
                    estimated_duration=cmd.estimated_duration,
                    department=cmd.department,
                    start_date=cmd.start_date,
                    end_date=cmd.end_date,
                    contractor=cmd.contractor,
                    ai_recommendations=recommendations,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.projects.add(project)
            uow.commit()
        logger.info("Project %s created: %s", project.id, project.title)

        _refresh_conflict_annotations(uow, self._detector)
        with uow:
            return _Assembler.project(_get_project_or_raise(uow, project.id))


@dataclass
class UpdateProjectCommand:
    project_id: uuid.UUID
    changes: Dict[str, Any] = field(default_factory=dict)


class UpdateProjectUseCase:
    """
    Merge a partial set of fields into an existing project.

    The merged record is validated with the same rules as on create.
    Conflict annotations are refreshed when location or dates change.
    """

    def __init__(self, detector: Optional[ConflictDetector] = None):
        self._detector = detector or _detector

    def execute(self, cmd: UpdateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            try:
                project = _project_svc.update_project(project, cmd.changes)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.projects.save(project)
            uow.commit()
        logger.info("Project %s updated: %s", project.id, sorted(cmd.changes))

        if ProjectService.CONFLICT_FIELDS.intersection(cmd.changes):
            _refresh_conflict_annotations(uow, self._detector)
        with uow:
            return _Assembler.project(_get_project_or_raise(uow, project.id))


class GetProjectUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            return _Assembler.project(project)


class ListProjectsUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[ProjectDTO]:
        with uow:
            return [_Assembler.project(p) for p in uow.projects.list_all()]


class SeedProjectsUseCase:
    """Load fixture projects into an empty store; no-op otherwise."""

    def __init__(self, detector: Optional[ConflictDetector] = None):
        self._detector = detector or _detector

    def execute(self, projects: List[Project], uow: AbstractUnitOfWork) -> int:
        with uow:
            if uow.projects.list_all():
                return 0
            for project in projects:
                uow.projects.add(project)
            uow.commit()
        _refresh_conflict_annotations(uow, self._detector)
        logger.info("Seeded %d demo projects", len(projects))
        return len(projects)


# ===========================================================================
# USE CASES - QUERIES
# ===========================================================================

class SearchProjectsUseCase:
    """Filter by status and/or a case-insensitive match on title or address."""

    def execute(
        self,
        uow: AbstractUnitOfWork,
        status: Optional[ProjectStatus] = None,
        text: Optional[str] = None,
    ) -> List[ProjectDTO]:
        with uow:
            projects = uow.projects.list_all()
        needle = (text or "").strip().lower()
        result = []
        for p in projects:
            if status is not None and p.status != ProjectStatus(status):
                continue
            if needle and needle not in p.title.lower() and needle not in p.location.address.lower():
                continue
            result.append(_Assembler.project(p))
        return result


class ProjectsNearUseCase:
    def __init__(self, detector: Optional[ConflictDetector] = None):
        self._detector = detector or _detector

    def execute(
        self, lat: float, lng: float, radius: float, uow: AbstractUnitOfWork
    ) -> List[ProjectDTO]:
        with uow:
            projects = uow.projects.list_all()
        try:
            nearby = self._detector.within_radius(Point(lat=lat, lng=lng), radius, projects)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return [_Assembler.project(p) for p in nearby]


class GetConflictingProjectsUseCase:
    def __init__(self, detector: Optional[ConflictDetector] = None):
        self._detector = detector or _detector

    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[ProjectDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            projects = uow.projects.list_all()
        return [
            _Assembler.project(p)
            for p in self._detector.conflicts_for(project_id, projects)
        ]


class GetDashboardUseCase:
    RECENT_LIMIT = 5

    def execute(self, uow: AbstractUnitOfWork) -> DashboardDTO:
        with uow:
            projects = uow.projects.list_all()

        def count(status: ProjectStatus) -> int:
            return sum(1 for p in projects if p.status == status)

        recent = sorted(projects, key=lambda p: p.created_at, reverse=True)[: self.RECENT_LIMIT]
        critical = [
            p for p in projects
            if p.priority == ProjectPriority.CRITICAL or p.conflicts
        ]
        return DashboardDTO(
            total=len(projects),
            pending=count(ProjectStatus.PENDING),
            approved=count(ProjectStatus.APPROVED),
            in_progress=count(ProjectStatus.IN_PROGRESS),
            completed=count(ProjectStatus.COMPLETED),
            on_hold=count(ProjectStatus.ON_HOLD),
            with_conflicts=sum(1 for p in projects if p.conflicts),
            total_cost=sum(p.estimated_cost for p in projects),
            recent_projects=[_Assembler.project(p) for p in recent],
            critical_projects=[_Assembler.project(p) for p in critical],
        )


# ===========================================================================
# OPTIMIZATION RUNS
# ===========================================================================

# Statuses whose windows block conflicting pending work.
_ACTIVE_STATUSES = frozenset({ProjectStatus.APPROVED, ProjectStatus.IN_PROGRESS})


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class OptimizationHandle:
    """
    Caller-side handle on one optimization run.

    cancel() stops a run that has not finished yet; on a finished run it is
    a no-op and returns False.
    """

    def __init__(
        self,
        run_id: uuid.UUID,
        selection: List[Project],
        plan_start: date,
        task: "asyncio.Task[OptimizationReport]",
    ):
        self.id = run_id
        self.selection = selection
        self.plan_start = plan_start
        self.submitted_at = datetime.now(timezone.utc)
        self.applied = False
        self._task = task
        self._cancel_requested = False

    @property
    def titles(self) -> Dict[uuid.UUID, str]:
        return {p.id: p.title for p in self.selection}

    @property
    def status(self) -> RunStatus:
        if self._cancel_requested or self._task.cancelled():
            return RunStatus.CANCELLED
        if not self._task.done():
            return RunStatus.RUNNING
        if self._task.exception() is not None:
            return RunStatus.FAILED
        return RunStatus.COMPLETED

    @property
    def report(self) -> Optional[OptimizationReport]:
        if self.status is RunStatus.COMPLETED:
            return self._task.result()
        return None

    @property
    def error(self) -> Optional[str]:
        if self.status is RunStatus.FAILED:
            return str(self._task.exception())
        return None

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        if self._task.done():
            return False
        self._cancel_requested = self._task.cancel()
        return self._cancel_requested

    async def wait(self) -> Optional[OptimizationReport]:
        """Wait for the run to settle and return its report, if any."""
        await asyncio.wait({self._task})
        return self.report


class OptimizationRunner:
    """
    Starts optimization runs as asyncio tasks and keeps their handles.

    submit() must be called from a running event loop.  The task yields to
    the loop after conflict detection and again before report assembly so
    other requests keep being served.
    """

    def __init__(
        self,
        optimizer: Optional[AbstractScheduleOptimizer] = None,
        detector: Optional[ConflictDetector] = None,
    ):
        self._optimizer = optimizer or build_optimizer()
        self._detector = detector or _detector
        self._runs: Dict[uuid.UUID, OptimizationHandle] = {}

    def submit(
        self, selection: List[Project], snapshot: List[Project], plan_start: date
    ) -> OptimizationHandle:
        loop = asyncio.get_running_loop()
        run_id = uuid.uuid4()
        task = loop.create_task(self._run(selection, snapshot, plan_start))
        handle = OptimizationHandle(run_id, selection, plan_start, task)
        self._runs[run_id] = handle
        task.add_done_callback(lambda t: self._log_outcome(run_id, t))
        logger.info(
            "Optimization %s submitted for %d project(s)", run_id, len(selection)
        )
        return handle

    def get(self, run_id: uuid.UUID) -> Optional[OptimizationHandle]:
        return self._runs.get(run_id)

    async def _run(
        self, selection: List[Project], snapshot: List[Project], plan_start: date
    ) -> OptimizationReport:
        all_pairs = self._detector.detect_all(snapshot)
        await asyncio.sleep(0)

        selected_ids = {p.id for p in selection}
        conflict_pairs: Set[ConflictPair] = {c for c in all_pairs if c <= selected_ids}
        blockers: Dict[uuid.UUID, List[Project]] = {}
        for project in selection:
            blocking = [
                other for other in snapshot
                if other.id not in selected_ids
                and other.status in _ACTIVE_STATUSES
                and pair(project.id, other.id) in all_pairs
            ]
            if blocking:
                blockers[project.id] = blocking

        schedule = self._optimizer.build_schedule(
            selection, conflict_pairs, plan_start, blockers
        )
        await asyncio.sleep(0)
        return self._optimizer.assemble_report(
            selection, schedule, conflict_pairs, blockers
        )

    @staticmethod
    def _log_outcome(run_id: uuid.UUID, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Optimization %s cancelled", run_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Optimization %s failed", run_id, exc_info=exc)
        else:
            logger.info("Optimization %s completed", run_id)


# ===========================================================================
# USE CASES - OPTIMIZATION
# ===========================================================================

def _get_run_or_raise(runner: OptimizationRunner, run_id: uuid.UUID) -> OptimizationHandle:
    handle = runner.get(run_id)
    if handle is None:
        raise NotFoundError(f"Optimization run {run_id} not found.")
    return handle


@dataclass
class RunOptimizationCommand:
    project_ids: List[uuid.UUID]
    plan_start: Optional[date] = None


@dataclass
class PreparedOptimization:
    selection: List[Project]
    snapshot: List[Project]
    plan_start: date


class RunOptimizationUseCase:
    """
    Validate the selection and start an optimization run.

    The selection must be non-empty and reference only existing pending
    projects; repeated ids collapse onto their first occurrence.  The run
    works on a snapshot of the store taken by prepare().

    prepare() takes the store lock and may block, so async callers run it
    in a worker thread; start() only schedules the task and must be called
    on the event loop.
    """

    def execute(
        self,
        cmd: RunOptimizationCommand,
        uow: AbstractUnitOfWork,
        runner: OptimizationRunner,
    ) -> OptimizationRunDTO:
        return self.start(self.prepare(cmd, uow), runner)

    def start(
        self, prepared: PreparedOptimization, runner: OptimizationRunner
    ) -> OptimizationRunDTO:
        handle = runner.submit(prepared.selection, prepared.snapshot, prepared.plan_start)
        return _Assembler.run(handle)

    def prepare(
        self, cmd: RunOptimizationCommand, uow: AbstractUnitOfWork
    ) -> PreparedOptimization:
        ids = list(dict.fromkeys(cmd.project_ids))
        if not ids:
            raise InvalidInputError("Select at least one project to optimize.")

        with uow:
            snapshot = uow.projects.list_all()
        by_id = {p.id: p for p in snapshot}

        unknown = [str(i) for i in ids if i not in by_id]
        if unknown:
            raise InvalidInputError(f"Unknown project ids: {unknown}.")
        ineligible = [str(i) for i in ids if by_id[i].status != ProjectStatus.PENDING]
        if ineligible:
            raise InvalidInputError(f"Only pending projects can be optimized: {ineligible}.")

        return PreparedOptimization(
            selection=[by_id[i] for i in ids],
            snapshot=snapshot,
            plan_start=cmd.plan_start or _today(),
        )


class GetOptimizationRunUseCase:
    def execute(self, run_id: uuid.UUID, runner: OptimizationRunner) -> OptimizationRunDTO:
        return _Assembler.run(_get_run_or_raise(runner, run_id))


class CancelOptimizationRunUseCase:
    """Cancel a running optimization; cancelling a finished run changes nothing."""

    def execute(self, run_id: uuid.UUID, runner: OptimizationRunner) -> OptimizationRunDTO:
        handle = _get_run_or_raise(runner, run_id)
        handle.cancel()
        return _Assembler.run(handle)


class ApplyOptimizationRunUseCase:
    """
    Write a completed run's schedule back onto its projects.

    Each project receives the recommended start date, the last working day
    before the estimated completion as end date, and the entry's reasoning
    as an extra recommendation.  Every project must still exist and be
    pending; a run can be applied once.  All updates are validated before
    any is saved.
    """

    def __init__(self, detector: Optional[ConflictDetector] = None):
        self._detector = detector or _detector

    def execute(
        self,
        run_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        runner: OptimizationRunner,
    ) -> List[ProjectDTO]:
        handle = _get_run_or_raise(runner, run_id)
        report = handle.report
        if report is None:
            raise InvalidInputError(
                f"Optimization run {run_id} is {handle.status.value}, not completed."
            )

        updated: List[Project] = []
        with uow:
            if handle.applied:
                raise InvalidInputError(f"Optimization run {run_id} was already applied.")
            projects = [
                _get_project_or_raise(uow, e.project_id) for e in report.optimal_schedule
            ]
            stale = [str(p.id) for p in projects if p.status != ProjectStatus.PENDING]
            if stale:
                raise InvalidInputError(f"Projects are no longer pending: {stale}.")
            for project, entry in zip(projects, report.optimal_schedule):
                try:
                    updated.append(_project_svc.update_project(project, {
                        "start_date": entry.recommended_start_date,
                        "end_date": entry.estimated_completion_date - timedelta(days=1),
                        "ai_recommendations": project.ai_recommendations + [entry.reasoning],
                    }))
                except ValueError as exc:
                    raise ValidationError(str(exc)) from exc
            for project in updated:
                uow.projects.save(project)
            handle.applied = True
            uow.commit()
        logger.info("Optimization %s applied to %d project(s)", run_id, len(updated))

        _refresh_conflict_annotations(uow, self._detector)
        with uow:
            return [_Assembler.project(_get_project_or_raise(uow, p.id)) for p in updated]
