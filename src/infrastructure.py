"""
infrastructure.py

In-memory implementation of the project repository and the Unit of Work.

This is a self-contained backend that stores every project in a plain
Python dict keyed by UUID.  Dicts keep insertion order, so listing the
store returns projects in creation order regardless of later updates.

Thread safety
-------------
FastAPI serves synchronous endpoints from a thread pool, so the database
carries one re-entrant lock.  Entering a unit of work acquires it; every
read hands out deep copies, which lets conflict detection and optimization
run over a snapshot without holding the lock for the whole scan.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import date, datetime, timezone
from typing import List

from application import (
    AbstractProjectRepository,
    AbstractUnitOfWork,
    NotFoundError,
    StoreIntegrityError,
)
from model import (
    Location,
    Project,
    ProjectPriority,
    ProjectStatus,
    ProjectType,
)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed fetch/put helpers."""

    def fetch(self, key: uuid.UUID):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def all(self) -> list:
        return list(self.values())


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process - restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.projects: _Store = _Store()
        self.lock = threading.RLock()
        # Bumped on every project mutation; conflict annotations are a cache
        # and do not count as mutations.
        self.revision: int = 0


# Module-level singleton - shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementation
# ---------------------------------------------------------------------------

class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, db: InMemoryDatabase):
        self._db = db
        self._s = db.projects

    def get(self, project_id):
        with self._db.lock:
            project = self._s.fetch(project_id)
            return copy.deepcopy(project) if project is not None else None

    def list_all(self):
        with self._db.lock:
            return [copy.deepcopy(p) for p in self._s.all()]

    def add(self, project):
        with self._db.lock:
            if project.id in self._s:
                raise StoreIntegrityError(f"Duplicate project id {project.id}.")
            self._s.put(copy.deepcopy(project))
            self._db.revision += 1

    def save(self, project):
        with self._db.lock:
            if project.id not in self._s:
                raise NotFoundError(f"Project {project.id} not found.")
            self._s.put(copy.deepcopy(project))
            self._db.revision += 1

    def revision(self):
        with self._db.lock:
            return self._db.revision

    def annotate_conflicts(self, annotations, expected_revision):
        with self._db.lock:
            if self._db.revision != expected_revision:
                return False
            for project_id, descriptions in annotations.items():
                project = self._s.fetch(project_id)
                if project is not None:
                    project.conflicts = list(descriptions)
            return True


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps the in-memory repository.  Entering the unit of work takes the
    database lock; commit() and rollback() are no-ops because dict mutations
    are immediate and every write is validated before it is made.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self.projects = InMemoryProjectRepository(db)

    def __enter__(self) -> "InMemoryUnitOfWork":
        self._db.lock.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            super().__exit__(exc_type, exc_val, exc_tb)
        finally:
            self._db.lock.release()

    def commit(self)   -> None: pass   # no-op for in-memory
    def rollback(self) -> None: pass   # no-op for in-memory


# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------

def _utc(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


def demo_projects() -> List[Project]:
    """
    Three projects along NH-44, New Delhi.  The highway expansion and the
    gas pipeline sit about 0.001° apart; the speed breakers are slightly
    further north-west.
    """
    return [
        Project(
            title="NH-44 Highway Expansion",
            type=ProjectType.HIGHWAY,
            status=ProjectStatus.IN_PROGRESS,
            priority=ProjectPriority.HIGH,
            location=Location(lat=28.6139, lng=77.2090, address="NH-44, New Delhi"),
            description="Expansion of National Highway 44 from 4 to 6 lanes",
            estimated_cost=50_000_000,
            estimated_duration=365,
            start_date=date(2024, 1, 15),
            contractor="ABC Construction Ltd.",
            department="National Highways Authority",
            ai_recommendations=[
                "Coordinate with gas pipeline team to avoid conflicts",
                "Consider phased construction to minimize traffic disruption",
            ],
            created_at=_utc(2024, 1, 1),
            updated_at=_utc(2024, 1, 1),
        ),
        Project(
            title="Underground Gas Pipeline",
            type=ProjectType.PIPELINE,
            status=ProjectStatus.PENDING,
            priority=ProjectPriority.MEDIUM,
            location=Location(lat=28.6129, lng=77.2095, address="NH-44, New Delhi"),
            description="Installation of underground gas pipeline network",
            estimated_cost=25_000_000,
            estimated_duration=180,
            department="Gas Authority of India",
            ai_recommendations=[
                "Schedule after highway expansion completion",
                "Coordinate with highway team for combined excavation",
            ],
            created_at=_utc(2024, 1, 10),
            updated_at=_utc(2024, 1, 10),
        ),
        Project(
            title="Smart Traffic Speed Breakers",
            type=ProjectType.SPEEDBREAKER,
            status=ProjectStatus.APPROVED,
            priority=ProjectPriority.LOW,
            location=Location(lat=28.6149, lng=77.2080, address="NH-44, New Delhi"),
            description="Installation of smart speed breakers with LED indicators",
            estimated_cost=2_000_000,
            estimated_duration=30,
            start_date=date(2024, 3, 1),
            contractor="Smart Roads Pvt. Ltd.",
            department="Municipal Corporation",
            ai_recommendations=[
                "Install after highway construction is complete",
                "Use solar-powered LED systems for sustainability",
            ],
            created_at=_utc(2024, 1, 20),
            updated_at=_utc(2024, 1, 20),
        ),
    ]
