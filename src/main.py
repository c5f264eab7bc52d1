"""
main.py

Entry point for the Project Scheduling & Cost-Baseline Engine API.

Wires the in-memory infrastructure into the FastAPI app and starts uvicorn.

Usage
-----
    # Option 1 — run directly (host/port from SCHEDULE_ENGINE_HOST / _PORT)
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check
    http://localhost:8000/mcp       ← MCP endpoint (when SCHEDULE_ENGINE_ENABLE_MCP is true)

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST  /api/v1/projects                               — create a project
2.  POST  /api/v1/templates                              — register a work template
3.  POST  /api/v1/projects/{id}/templates/apply          — preview_only=true first, then apply
4.  POST  /api/v1/projects/{id}/conditional-tags/process — hide tasks that do not apply
5.  POST  /api/v1/tasks/{task_id}/assignments            — split work between users
6.  GET   /api/v1/projects/{id}/schedule                 — slack and critical path
7.  POST  /api/v1/projects/{id}/schedule/calculate       — write dates onto tasks
8.  POST  /api/v1/projects/{id}/baselines                — freeze a contract/execution baseline
9.  PATCH /api/v1/tasks/{task_id}                        — record progress and actual cost
10. GET   /api/v1/projects/{id}/variance                 — compare live state with the baseline

Pass `X-User-Id: <uuid>` to record who performed a change.
"""

import uvicorn

from api import app, get_uow
from app_logger import get_logger
from infrastructure import InMemoryUnitOfWork
from settings import get_settings

logger = get_logger()


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    settings = get_settings()
    logger.info("Starting %s on %s:%d", settings.api_title, settings.host, settings.port)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
