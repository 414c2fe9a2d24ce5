"""
main.py

Entry point for the Maintenance Request Lifecycle & Dispatch Engine API.

Configures logging, wires the in-memory infrastructure into the FastAPI
app and starts uvicorn.

Usage
-----
    # Option 1 - run directly
    python main.py

    # Option 2 - run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Settings are read from DISPATCH_* environment variables or a .env file
(see config.py), e.g.

    DISPATCH_LOG_LEVEL=debug
    DISPATCH_TRANSITION_TABLE_PATH=./tenant_workflow.json

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (headers: X-Actor-Role, X-Company-Id, optional
X-Actor-Id / X-Branch-Id)
-------------------------------------------------
1.  PUT   /api/v1/sla-policies                       - as admin, add a policy row
2.  POST  /api/v1/providers                          - register a technician with a location
3.  POST  /api/v1/requests                           - create a request (starts SLA clocks)
4.  POST  /api/v1/requests/{id}/transitions          - under_review → approved → assigned ...
5.  GET   /api/v1/requests/{id}/provider-matches     - nearest available providers
6.  GET   /api/v1/requests/{id}/sla                  - due times and breach flags
7.  GET   /api/v1/requests/{id}/history              - full ledger
8.  POST  /api/v1/sla/scan                           - record overdue windows
"""

import logging

import uvicorn

from api import app, get_uow
from config import settings
from infrastructure import InMemoryUnitOfWork

logging.basicConfig(
    level=settings.log_level,
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
        host="127.0.0.1",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
