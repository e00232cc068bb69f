"""
Test fixtures - fresh in-memory database per test + HTTP client bound to the app
"""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from api import app, get_runner, get_uow
from application import CreateProjectCommand, OptimizationRunner, SeedProjectsUseCase
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork, demo_projects
from model import Location, ProjectPriority, ProjectType


@pytest.fixture()
def db():
    """An empty database, isolated from the process-wide singleton"""
    return InMemoryDatabase()


@pytest.fixture()
def uow(db):
    return InMemoryUnitOfWork(db)


@pytest.fixture()
def seeded_uow(uow):
    """Unit of work over a store holding the three NH-44 demo projects"""
    SeedProjectsUseCase().execute(demo_projects(), uow)
    return uow


@pytest.fixture()
def runner():
    return OptimizationRunner()


@pytest.fixture()
def make_command():
    """Factory for a valid CreateProjectCommand; keyword overrides win"""

    def _make(**overrides):
        fields = dict(
            title="Storm Drain Upgrade",
            description="Replace collapsed storm drain under the service road",
            type=ProjectType.DRAINAGE,
            priority=ProjectPriority.MEDIUM,
            location=Location(lat=28.70, lng=77.10, address="Ring Road, New Delhi"),
            estimated_cost=1_000_000,
            estimated_duration=60,
            department="Public Works Department",
        )
        fields.update(overrides)
        return CreateProjectCommand(**fields)

    return _make


@pytest.fixture()
def project_payload():
    """Factory for a valid POST /projects body"""

    def _make(**overrides):
        body = {
            "title": "Storm Drain Upgrade",
            "description": "Replace collapsed storm drain under the service road",
            "type": "drainage",
            "priority": "medium",
            "location": {"lat": 28.70, "lng": 77.10, "address": "Ring Road, New Delhi"},
            "estimated_cost": 1_000_000,
            "estimated_duration": 60,
            "department": "Public Works Department",
        }
        body.update(overrides)
        return body

    return _make


@pytest_asyncio.fixture()
async def client(db, runner):
    """httpx AsyncClient bound to the FastAPI app, over the test database"""
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db)
    app.dependency_overrides[get_runner] = lambda: runner

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
