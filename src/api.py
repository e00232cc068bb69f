"""
api.py

REST API layer for the Infrastructure Project Coordination Service.

Framework : FastAPI
Auth      : none, the service is consumed by a trusted dashboard front end.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /projects                     — project registry
  │   ├── /near                     — radius search
  │   ├── /{project_id}             — read / partial update
  │   └── /{project_id}/conflicts   — conflicting projects
  ├── /dashboard                    — portfolio summary
  └── /optimizations                — schedule optimization runs
      ├── /{run_id}                 — poll / cancel
      └── /{run_id}/apply           — write the schedule back

Error handling
--------------
  NotFoundError      → 404
  ValidationError    → 422
  InvalidInputError  → 422
  ApplicationError   → 422
  ValueError         → 422
  Unhandled          → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn api:app --reload
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from config import get_settings
from infrastructure import InMemoryUnitOfWork, demo_projects
from logger import get_logger
from application import (
    # Exceptions
    ApplicationError,
    NotFoundError,
    # Runner
    OptimizationRunner,
    # Use-case commands
    CreateProjectCommand,
    RunOptimizationCommand,
    UpdateProjectCommand,
    # Use-case classes
    ApplyOptimizationRunUseCase,
    CancelOptimizationRunUseCase,
    CreateProjectUseCase,
    GetConflictingProjectsUseCase,
    GetDashboardUseCase,
    GetOptimizationRunUseCase,
    GetProjectUseCase,
    ProjectsNearUseCase,
    RunOptimizationUseCase,
    SearchProjectsUseCase,
    SeedProjectsUseCase,
    UpdateProjectUseCase,
    AbstractUnitOfWork,
)
from model import Location, ProjectPriority, ProjectStatus, ProjectType

logger = get_logger(__name__)
settings = get_settings()


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Infrastructure Project Coordination API",
    version=settings.APP_VERSION,
    description=(
        "REST API for coordinating infrastructure construction projects: "
        "project registry, spatial/temporal conflict detection, radius search, "
        "and schedule optimization across conflicting work sites."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def seed_demo_data():
    """
    Load the NH-44 demo projects into an empty in-memory store so the
    dashboard has something to show on first start.
    """
    if not settings.SEED_DEMO_DATA:
        return
    seeded = SeedProjectsUseCase().execute(demo_projects(), InMemoryUnitOfWork())
    if seeded:
        logger.info("[startup] %d demo projects seeded", seeded)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


_runner: Optional[OptimizationRunner] = None


def get_runner() -> OptimizationRunner:
    """Process-wide optimization runner, created on first use."""
    global _runner
    if _runner is None:
        _runner = OptimizationRunner()
    return _runner


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

def _check_enum(enum_cls, v: Optional[str], name: str) -> Optional[str]:
    if v is None:
        return v
    valid = {e.value for e in enum_cls}
    if v not in valid:
        raise ValueError(f"{name} must be one of: {sorted(valid)}")
    return v


# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------

class LocationRequest(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    address: str = Field(..., min_length=1, max_length=300)


class CreateProjectRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    type: str = Field(
        default=ProjectType.OTHER.value,
        description="One of: highway, pipeline, speedbreaker, drainage, utility, other",
    )
    priority: str = Field(
        default=ProjectPriority.MEDIUM.value,
        description="One of: low, medium, high, critical",
    )
    location: LocationRequest
    estimated_cost: int = Field(..., ge=0, description="Smallest currency unit.")
    estimated_duration: int = Field(..., gt=0, description="Days.")
    department: str = Field(..., min_length=1, max_length=200)
    contractor: Optional[str] = Field(default=None, max_length=200)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    ai_recommendations: List[str] = Field(default_factory=list)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        return _check_enum(ProjectType, v, "type")

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: str) -> str:
        return _check_enum(ProjectPriority, v, "priority")


class UpdateLocationRequest(BaseModel):
    lat: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    lng: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    address: Optional[str] = Field(default=None, min_length=1, max_length=300)


class UpdateProjectRequest(BaseModel):
    """Only the fields present in the request body are changed."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = Field(
        default=None,
        description="One of: pending, approved, in-progress, completed, on-hold",
    )
    priority: Optional[str] = None
    location: Optional[UpdateLocationRequest] = None
    estimated_cost: Optional[int] = Field(default=None, ge=0)
    estimated_duration: Optional[int] = Field(default=None, gt=0)
    department: Optional[str] = Field(default=None, min_length=1, max_length=200)
    contractor: Optional[str] = Field(default=None, max_length=200)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    ai_recommendations: Optional[List[str]] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: Optional[str]) -> Optional[str]:
        return _check_enum(ProjectType, v, "type")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return _check_enum(ProjectStatus, v, "status")

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: Optional[str]) -> Optional[str]:
        return _check_enum(ProjectPriority, v, "priority")


# ---------------------------------------------------------------------------
# Optimization schemas
# ---------------------------------------------------------------------------

class RunOptimizationRequest(BaseModel):
    project_ids: List[uuid.UUID] = Field(
        ..., description="Pending project IDs, in order of preference."
    )
    plan_start_date: Optional[date] = Field(
        default=None, description="Earliest start for any project; defaults to today (UTC)."
    )


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a new infrastructure project",
)
def create_project(
    body: CreateProjectRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Creates the project with status `pending` and recomputes conflict
    annotations for the whole registry.
    """
    cmd = CreateProjectCommand(
        title=body.title,
        description=body.description,
        type=ProjectType(body.type),
        priority=ProjectPriority(body.priority),
        location=Location(
            lat=body.location.lat,
            lng=body.location.lng,
            address=body.location.address,
        ),
        estimated_cost=body.estimated_cost,
        estimated_duration=body.estimated_duration,
        department=body.department,
        contractor=body.contractor,
        start_date=body.start_date,
        end_date=body.end_date,
        ai_recommendations=body.ai_recommendations,
    )
    result = CreateProjectUseCase().execute(cmd, uow)
    return _ok(result)


@project_router.get(
    "",
    summary="List projects, optionally filtered by status or search text",
)
def list_projects(
    status_filter: Optional[str] = Query(None, alias="status"),
    q: Optional[str] = Query(None, description="Matches title or address."),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    _check_enum(ProjectStatus, status_filter, "status")
    result = SearchProjectsUseCase().execute(
        uow,
        status=ProjectStatus(status_filter) if status_filter else None,
        text=q,
    )
    return _ok(result)


@project_router.get(
    "/near",
    summary="Projects within a radius (degrees) of a point",
)
def projects_near(
    lat: float = Query(..., ge=-90.0, le=90.0),
    lng: float = Query(..., ge=-180.0, le=180.0),
    radius: float = Query(..., ge=0.0, description="Planar radius in degrees."),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = ProjectsNearUseCase().execute(lat, lng, radius, uow)
    return _ok(result)


@project_router.get(
    "/{project_id}",
    summary="Get a project by ID",
)
def get_project(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = GetProjectUseCase().execute(project_id, uow)
    return _ok(result)


@project_router.patch(
    "/{project_id}",
    summary="Update selected project fields",
)
def update_project(
    body: UpdateProjectRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateProjectCommand(
        project_id=project_id,
        changes=body.model_dump(exclude_unset=True),
    )
    result = UpdateProjectUseCase().execute(cmd, uow)
    return _ok(result)


@project_router.get(
    "/{project_id}/conflicts",
    summary="Projects that conflict with this one",
)
def get_project_conflicts(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Projects whose site lies within the proximity threshold and whose date
    window overlaps this project's, in registry order.
    """
    result = GetConflictingProjectsUseCase().execute(project_id, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

dashboard_router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


@dashboard_router.get(
    "",
    summary="Portfolio summary: counts, total cost, recent and critical projects",
)
def get_dashboard(
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = GetDashboardUseCase().execute(uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Optimizations
# ---------------------------------------------------------------------------

optimization_router = APIRouter(prefix="/optimizations", tags=["Schedule Optimization"])


@optimization_router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a schedule optimization over pending projects",
)
async def run_optimization(
    body: RunOptimizationRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    runner: OptimizationRunner = Depends(get_runner),
):
    """
    Validates the selection and returns the run handle immediately; poll
    `GET /optimizations/{run_id}` for the report.
    """
    cmd = RunOptimizationCommand(
        project_ids=body.project_ids,
        plan_start=body.plan_start_date,
    )
    use_case = RunOptimizationUseCase()
    # Snapshot under the store lock off the event loop; the task itself is
    # scheduled on the loop.
    prepared = await run_in_threadpool(use_case.prepare, cmd, uow)
    result = use_case.start(prepared, runner)
    return _ok(result)


@optimization_router.get(
    "/{run_id}",
    summary="Get the status and report of an optimization run",
)
async def get_optimization(
    run_id: uuid.UUID = Path(...),
    runner: OptimizationRunner = Depends(get_runner),
):
    result = GetOptimizationRunUseCase().execute(run_id, runner)
    return _ok(result)


@optimization_router.delete(
    "/{run_id}",
    summary="Cancel an optimization run",
)
async def cancel_optimization(
    run_id: uuid.UUID = Path(...),
    runner: OptimizationRunner = Depends(get_runner),
):
    """Cancelling a run that has already finished leaves it unchanged."""
    result = CancelOptimizationRunUseCase().execute(run_id, runner)
    return _ok(result)


@optimization_router.post(
    "/{run_id}/apply",
    summary="Write a completed run's schedule onto its projects",
)
def apply_optimization(
    run_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    runner: OptimizationRunner = Depends(get_runner),
):
    """Runs in the thread pool; it takes the store lock and refreshes conflict annotations."""
    result = ApplyOptimizationRunUseCase().execute(run_id, uow, runner)
    return _ok(result)


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(project_router)
api_v1.include_router(dashboard_router)
api_v1.include_router(optimization_router)

app.include_router(api_v1)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# MCP Server - exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# OPENAPI CUSTOMISATION - tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Projects",
        "description": (
            "Register, update and search infrastructure projects.  Every create or "
            "update touching location or dates refreshes the conflict annotations."
        ),
    },
    {
        "name": "Dashboard",
        "description": "Counts per status, total estimated cost, recent and critical projects.",
    },
    {
        "name": "Schedule Optimization",
        "description": (
            "Asynchronous, cancellable optimization runs that sequence conflicting "
            "pending projects into phases and project cost, resource and risk figures."
        ),
    },
]
app.openapi_tags = tags_metadata
