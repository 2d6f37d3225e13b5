"""
api.py

REST API layer for the Construction Site Tracker.

Framework : FastAPI
Auth      : none in this service; the site gate sits in front of it.
            `changed_by` on plan revisions is free text supplied by the caller.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /construction-types              stage catalog (read-only)
  ├── /plots                           plots
  │   ├── /{plot_id}/progress          live progress + plan history
  │   ├── /{plot_id}/schedule          derived schedule preview
  │   └── /{plot_id}/timeline          schedule untouched stages
  └── /construction-progress           record / update / delete progress
      ├── /timeline                    replace live dates + history wholesale
      └── /{progress_id}/plan-revisions, /plan-history

Error handling
--------------
  NotFoundError      → 404
  ConflictError      → 409
  ApplicationError   → 422
  ValueError         → 422
  Unhandled          → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Dates are exchanged as ISO-8601 calendar dates (YYYY-MM-DD).

Running
-------
  uvicorn api:app --reload
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Path, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, ConfigDict, Field, model_validator

from application import (
    # Exceptions
    ApplicationError,
    ConflictError,
    NotFoundError,
    # Commands
    InitialisePlotTimelineCommand,
    PlanHistoryInput,
    PreviewPlotScheduleCommand,
    RecordStageProgressCommand,
    ReplaceStageTimelineCommand,
    RevisePlanCommand,
    UpdateStageProgressCommand,
    # Use cases
    DeleteProgressUseCase,
    GetPlanHistoryUseCase,
    GetPlotProgressUseCase,
    InitialisePlotTimelineUseCase,
    ListConstructionTypesUseCase,
    ListPlotsUseCase,
    PreviewPlotScheduleUseCase,
    RecordStageProgressUseCase,
    ReplaceStageTimelineUseCase,
    RevisePlanUseCase,
    UpdateStageProgressUseCase,
    AbstractUnitOfWork,
)
from config import Settings
from infrastructure import InMemoryUnitOfWork
from model import SYSTEM_ACTOR
from service import DEFAULT_STAGE_DAYS

logger = logging.getLogger(__name__)


# ===========================================================================
# OPENAPI CUSTOMISATION: tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Catalog",
        "description": (
            "Construction types and their ordered stages.  Reference data; the "
            "timeline engine only reads it."
        ),
    },
    {
        "name": "Plots",
        "description": (
            "Building plots, their stage-by-stage progress with plan history, and "
            "derived programme / planned / actual schedules."
        ),
    },
    {
        "name": "Construction Progress",
        "description": (
            "Record completion percentages per stage.  The first submission for a "
            "stage creates its progress record."
        ),
    },
    {
        "name": "Plan History",
        "description": (
            "Append-only log of planned-date revisions.  Every revision adds exactly "
            "one version; the latest version always matches the live planned dates."
        ),
    },
]


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Construction Site Tracker: Progress Timeline API",
    version="1.0.0",
    description=(
        "REST API for tracking construction stage progress on residential plots: "
        "programme, planned and actual dates, completion percentage and "
        "plan-revision history."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def seed_demo_site():
    """
    Optionally fill the in-memory store with the demo catalog, plots and
    timelines so the dashboard has something to show.
    """
    settings = Settings.from_env()
    if not settings.seed_demo:
        return
    from seed import seed_demo_data
    summary = seed_demo_data(InMemoryUnitOfWork(), today=date.today())
    logger.info("Demo site seeded: %s", summary)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


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

class RecordProgressRequest(BaseModel):
    """Wire shape used by the plot dialog: camelCase, recordedAt optional."""
    model_config = ConfigDict(populate_by_name=True)

    plot_id: uuid.UUID = Field(..., alias="plotId")
    stage_id: uuid.UUID = Field(..., alias="stageId")
    completion_percentage: int = Field(..., alias="completionPercentage", ge=0, le=100)
    recorded_at: Optional[date] = Field(default=None, alias="recordedAt")


class UpdateProgressRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    completion_percentage: int = Field(..., alias="completionPercentage", ge=0, le=100)
    recorded_at: Optional[date] = Field(default=None, alias="recordedAt")


class InitialiseTimelineRequest(BaseModel):
    start_date: date
    today: Optional[date] = None
    base_days: int = Field(default=DEFAULT_STAGE_DAYS, ge=1, le=365)
    speed: float = Field(default=1.0, gt=0.0, le=10.0)
    seed: Optional[str] = Field(
        default=None, description="Seed for bounded random jitter; omit for none."
    )
    changed_by: str = Field(default=SYSTEM_ACTOR, min_length=1, max_length=200)


class RevisePlanRequest(BaseModel):
    planned_start_date: date
    planned_end_date: date
    reason: str = Field(..., min_length=1, max_length=2000)
    changed_by: str = Field(default=SYSTEM_ACTOR, min_length=1, max_length=200)

    @model_validator(mode="after")
    def check_window(self) -> "RevisePlanRequest":
        if self.planned_end_date < self.planned_start_date:
            raise ValueError("planned_end_date must not be before planned_start_date.")
        return self


class PlanHistoryEntryRequest(BaseModel):
    version_number: int = Field(..., ge=1)
    planned_start_date: date
    planned_end_date: date
    reason: str = Field(..., min_length=1, max_length=2000)
    changed_by: str = Field(default=SYSTEM_ACTOR, min_length=1, max_length=200)
    created_at: Optional[datetime] = None


class ReplaceTimelineRequest(BaseModel):
    plot_id: uuid.UUID
    stage_id: uuid.UUID
    programme_start_date: Optional[date] = None
    programme_end_date: Optional[date] = None
    planned_start_date: Optional[date] = None
    planned_end_date: Optional[date] = None
    actual_start_date: Optional[date] = None
    actual_end_date: Optional[date] = None
    completion_percentage: int = Field(..., ge=0, le=100)
    plan_history: List[PlanHistoryEntryRequest] = Field(default_factory=list)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

catalog_router = APIRouter(prefix="/construction-types", tags=["Catalog"])


@catalog_router.get("", summary="List construction types with their ordered stages")
def list_construction_types(uow: AbstractUnitOfWork = Depends(get_uow)):
    return _ok(ListConstructionTypesUseCase().execute(uow))


# ---------------------------------------------------------------------------
# Plots
# ---------------------------------------------------------------------------

plot_router = APIRouter(prefix="/plots", tags=["Plots"])


@plot_router.get("", summary="List all plots")
def list_plots(uow: AbstractUnitOfWork = Depends(get_uow)):
    return _ok(ListPlotsUseCase().execute(uow))


@plot_router.get(
    "/{plot_id}/progress",
    summary="Get every stage of a plot with its progress record and plan history",
)
def get_plot_progress(
    plot_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetPlotProgressUseCase().execute(plot_id, uow))


@plot_router.get(
    "/{plot_id}/schedule",
    summary="Preview the derived stage schedule for a plot start date (nothing is saved)",
)
def preview_plot_schedule(
    plot_id: uuid.UUID = Path(...),
    start_date: date = Query(..., description="Plot start date (YYYY-MM-DD)"),
    today: Optional[date] = Query(default=None, description="Reference date; defaults to today"),
    base_days: int = Query(default=DEFAULT_STAGE_DAYS, ge=1, le=365),
    speed: float = Query(default=1.0, gt=0.0, le=10.0),
    seed: Optional[str] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = PreviewPlotScheduleCommand(
        plot_id=plot_id,
        start_date=start_date,
        today=today or date.today(),
        base_days=base_days,
        speed=speed,
        seed=seed,
    )
    return _ok(PreviewPlotScheduleUseCase().execute(cmd, uow))


@plot_router.post(
    "/{plot_id}/timeline",
    summary="Schedule every stage of a plot that has no plan yet",
)
def initialise_plot_timeline(
    body: InitialiseTimelineRequest,
    plot_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = InitialisePlotTimelineCommand(
        plot_id=plot_id,
        start_date=body.start_date,
        today=body.today or date.today(),
        base_days=body.base_days,
        speed=body.speed,
        seed=body.seed,
        changed_by=body.changed_by,
    )
    return _ok(InitialisePlotTimelineUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Construction progress
# ---------------------------------------------------------------------------

progress_router = APIRouter(prefix="/construction-progress", tags=["Construction Progress"])


@progress_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Record a stage's completion percentage (creates the record on first touch)",
)
def record_progress(
    body: RecordProgressRequest,
    response: Response,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = RecordStageProgressCommand(
        plot_id=body.plot_id,
        stage_id=body.stage_id,
        completion_percentage=body.completion_percentage,
        recorded_at=body.recorded_at,
        today=date.today(),
    )
    result = RecordStageProgressUseCase().execute(cmd, uow)
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return _ok(result)


@progress_router.put(
    "/timeline",
    tags=["Plan History"],
    summary="Replace a stage's live dates and plan history wholesale",
)
def replace_timeline(
    body: ReplaceTimelineRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = ReplaceStageTimelineCommand(
        plot_id=body.plot_id,
        stage_id=body.stage_id,
        programme_start_date=body.programme_start_date,
        programme_end_date=body.programme_end_date,
        planned_start_date=body.planned_start_date,
        planned_end_date=body.planned_end_date,
        actual_start_date=body.actual_start_date,
        actual_end_date=body.actual_end_date,
        completion_percentage=body.completion_percentage,
        plan_history=[
            PlanHistoryInput(
                version_number=h.version_number,
                planned_start_date=h.planned_start_date,
                planned_end_date=h.planned_end_date,
                reason=h.reason,
                changed_by=h.changed_by,
                created_at=h.created_at,
            )
            for h in body.plan_history
        ],
    )
    return _ok(ReplaceStageTimelineUseCase().execute(cmd, uow))


@progress_router.put(
    "/{progress_id}",
    summary="Update the completion percentage of an existing progress record",
)
def update_progress(
    body: UpdateProgressRequest,
    progress_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateStageProgressCommand(
        progress_id=progress_id,
        completion_percentage=body.completion_percentage,
        recorded_at=body.recorded_at,
        today=date.today(),
    )
    return _ok(UpdateStageProgressUseCase().execute(cmd, uow))


@progress_router.delete(
    "/{progress_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a progress record, its plan history and its update log",
)
def delete_progress(
    progress_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    DeleteProgressUseCase().execute(progress_id, uow)


@progress_router.post(
    "/{progress_id}/plan-revisions",
    status_code=status.HTTP_201_CREATED,
    tags=["Plan History"],
    summary="Revise the planned dates, appending one plan-history version",
)
def revise_plan(
    body: RevisePlanRequest,
    progress_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = RevisePlanCommand(
        progress_id=progress_id,
        planned_start_date=body.planned_start_date,
        planned_end_date=body.planned_end_date,
        reason=body.reason,
        changed_by=body.changed_by,
    )
    return _ok(RevisePlanUseCase().execute(cmd, uow))


@progress_router.get(
    "/{progress_id}/plan-history",
    tags=["Plan History"],
    summary="Get a progress record with its plan history and update log",
)
def get_plan_history(
    progress_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetPlanHistoryUseCase().execute(progress_id, uow))


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(catalog_router)
api_v1.include_router(plot_router)
api_v1.include_router(progress_router)

app.include_router(api_v1)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# MCP server: exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount_http()
