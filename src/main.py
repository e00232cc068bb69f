"""
main.py

Entry point for the Infrastructure Project Coordination API.

Wires the in-memory infrastructure into the FastAPI app and starts uvicorn.

Usage
-----
    # Option 1 - run directly
    python main.py

    # Option 2 - run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  GET   /api/v1/projects              — the three NH-44 demo projects
2.  POST  /api/v1/projects              — register a project (status: pending)
3.  GET   /api/v1/projects/{id}/conflicts — projects sharing its site and dates
4.  GET   /api/v1/projects/near?lat=28.614&lng=77.209&radius=0.01
5.  POST  /api/v1/optimizations         — {"project_ids": [...]}; copy the run "id"
6.  GET   /api/v1/optimizations/{run_id} — phased schedule, cost, resources, risk
7.  POST  /api/v1/optimizations/{run_id}/apply — write the schedule back

Set SEED_DEMO_DATA=false to start with an empty registry.
"""

import uvicorn

from api import app, get_uow
from infrastructure import InMemoryUnitOfWork


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,          # auto-reload on file changes during development
        log_level="info",
    )
