"""
main.py

Entry point for the CFS Receive-Plan Scheduling & Execution API.

Configures logging, wires the in-memory infrastructure into the FastAPI app
and starts uvicorn.

Usage
-----
    # Option 1 — run directly (host/port/reload from RECEIVE_PLAN_* settings)
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST /api/v1/containers                 — register a few containers
2.  GET  /api/v1/containers/unplanned       — see them ranked by urgency
3.  POST /api/v1/receive-plans/validate     — try a window, read errors/warnings
4.  POST /api/v1/receive-plans              — save the plan (equipment_booked and
                                              port_notified must be true to start)
5.  POST /api/v1/receive-plans/{id}/status  — {"status": "IN_PROGRESS"}
6.  POST /api/v1/receive-plans/{id}/containers/{cid}/receive   (or reject / defer)
7.  POST /api/v1/receive-plans/{id}/status  — {"status": "PENDING"}
8.  POST /api/v1/receive-plans/{id}/containers/{cid}/reconcile — settle leftovers
9.  POST /api/v1/receive-plans/{id}/status  — {"status": "DONE"}
"""

import logging

import uvicorn

from api import app, get_uow
from infrastructure import InMemoryUnitOfWork
from settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
