"""
main.py

Entry point for the Construction Site Tracker progress timeline API.

Wires the in-memory infrastructure into the FastAPI app and starts uvicorn.

Usage
-----
    # Option 1: run directly
    python main.py

    # Option 2: run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Option 3: with demo plots and timelines preloaded
    SITE_TRACKER_SEED_DEMO=true uvicorn main:app --reload

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  GET   /api/v1/plots                                    pick a plot id
2.  POST  /api/v1/plots/{id}/timeline                      schedule its stages from a start date
3.  GET   /api/v1/plots/{id}/progress                      programme / planned / actual per stage
4.  POST  /api/v1/construction-progress                    record a completion percentage
5.  POST  /api/v1/construction-progress/{pid}/plan-revisions   replan a stage
6.  GET   /api/v1/construction-progress/{pid}/plan-history     see every plan version
"""

import logging

import uvicorn

from api import app, get_uow
from config import Settings, configure_logging
from infrastructure import InMemoryUnitOfWork

settings = Settings.from_env()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    logger.info("Starting site tracker API on %s:%d", settings.host, settings.port)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,          # auto-reload on file changes during development
        log_level=settings.log_level.lower(),
    )
