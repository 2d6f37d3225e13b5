"""
model.py

Domain models for the Construction Site Tracker.

Entities
--------
- ConstructionType
- ConstructionStage
- Plot
- ConstructionProgress
- ConstructionPlanHistory
- ProgressUpdate

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Scheduling fields are calendar dates (day granularity); audit timestamps are
always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional


INITIAL_PLAN_REASON = "Initial plan"
SYSTEM_ACTOR = "System"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class StageState(str, Enum):
    """Where a stage sits on its timeline, derived from its actual dates."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class DeviationStatus(str, Enum):
    """Current planned end vs. the programme end of a stage."""
    ON_PROGRAMME = "on_programme"
    SLIPPED = "slipped"     # Planned end is later than programme end


# ---------------------------------------------------------------------------
# Catalog Entities (reference data, read-only to the timeline engine)
# ---------------------------------------------------------------------------


@dataclass
class ConstructionStage:
    """
    An ordered phase of construction within a construction type
    (e.g. foundations, superstructure).

    `sort_order` defines strict stage ordering; `color` is display only.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    construction_type_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → ConstructionType.id
    name: str = ""
    sort_order: int = 0
    color: str = "#9ca3af"


@dataclass
class ConstructionType:
    """A build method (timber frame, masonry, ...) owning an ordered list of stages."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    description: str = ""
    stages: List[ConstructionStage] = field(default_factory=list)

    def ordered_stages(self) -> List[ConstructionStage]:
        return sorted(self.stages, key=lambda s: s.sort_order)


@dataclass
class Plot:
    """A residential building plot on site."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    street_address: str = ""
    construction_type_id: Optional[uuid.UUID] = None    # FK → ConstructionType.id
    contractor: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Progress Timeline Entities
# ---------------------------------------------------------------------------


@dataclass
class ConstructionProgress:
    """
    The live timeline of one stage on one plot.

    At most one record exists per (plot, stage) pair.

    Programme dates are the baseline, written once when the stage is first
    scheduled.  Planned dates are the current target and only move through
    a plan revision, which appends a ConstructionPlanHistory row.  Actual
    dates stay None until the stage really starts / finishes.

    Invariants:
    - actual_end_date set ⇒ completion_percentage == 100
    - actual_start_date None ⇒ completion_percentage == 0 and actual_end_date None
    - current_plan_version == number of history rows
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    plot_id: uuid.UUID = field(default_factory=uuid.uuid4)                  # FK → Plot.id
    construction_stage_id: uuid.UUID = field(default_factory=uuid.uuid4)    # FK → ConstructionStage.id

    # Baseline (set once)
    programme_start_date: Optional[date] = None
    programme_end_date: Optional[date] = None

    # Current target (revised through plan history)
    planned_start_date: Optional[date] = None
    planned_end_date: Optional[date] = None

    # Observed
    actual_start_date: Optional[date] = None
    actual_end_date: Optional[date] = None

    completion_percentage: int = 0      # 0 – 100
    current_plan_version: int = 0

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def state(self) -> StageState:
        if self.actual_end_date is not None:
            return StageState.COMPLETED
        if self.actual_start_date is not None:
            return StageState.IN_PROGRESS
        return StageState.NOT_STARTED


@dataclass
class ConstructionPlanHistory:
    """
    Append-only audit record of one planned-date revision.

    Rows are numbered 1..N without gaps per progress record; row 1 always
    carries the reason "Initial plan" and row N always matches the live
    planned dates.  Rows are never edited; they are only removed by a
    wholesale replace or by deleting the owning progress record.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    construction_progress_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → ConstructionProgress.id
    version_number: int = 1
    planned_start_date: Optional[date] = None
    planned_end_date: Optional[date] = None
    reason: str = INITIAL_PLAN_REASON
    changed_by: str = SYSTEM_ACTOR
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ProgressUpdate:
    """
    Immutable log of every completion-percentage submission for a stage.

    `recorded_at` is the site date the observation applies to, which may
    be earlier than the moment it was submitted.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    construction_progress_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → ConstructionProgress.id
    previous_percentage: Optional[int] = None
    new_percentage: int = 0
    recorded_at: Optional[date] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
