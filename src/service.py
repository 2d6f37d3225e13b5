"""
service.py

Service layer for the Construction Site Tracker.

Responsibilities
----------------
Each service class encapsulates all business logic for its domain.
Services receive and return domain model instances (from model.py).
No persistence is handled here; callers are responsible for storing
and retrieving models via a repository layer of their choosing.

Services
--------
- TimelineService      – Programme / planned / actual derivation for the
                         ordered stages of a plot
- PlanHistoryService   – Initial plan, plan revisions, seeded and replaced
                         plan histories
- ProgressService      – Progress record creation, completion updates,
                         invariant checks and slip computation

Design notes
------------
- "Today" is always an explicit argument; nothing here reads the clock
  except for audit timestamps, and those can be passed in as `now`.
- Variability (slip, duration jitter, ...) comes from a jitter policy that
  is drawn per stage index up front, so every derivation is a pure
  function of its inputs.
- Business rule violations raise a ValueError with a descriptive message.
- Methods that would normally persist data return the mutated object(s)
  so the caller can hand them to a repository.
"""

from __future__ import annotations

import math
import random
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from model import (
    INITIAL_PLAN_REASON,
    SYSTEM_ACTOR,
    ConstructionPlanHistory,
    ConstructionProgress,
    ConstructionStage,
    DeviationStatus,
    ProgressUpdate,
    StageState,
)


DEFAULT_STAGE_DAYS = 14
MIN_IN_PROGRESS_PCT = 10
MAX_IN_PROGRESS_PCT = 94    # 95 – 100 is reserved for finished work

REPLAN_CAUSES = ("weather", "materials", "labor", "design change")


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _days(n: int) -> timedelta:
    return timedelta(days=n)


def _require_window(start: Optional[date], end: Optional[date], label: str) -> None:
    if start is not None and end is not None and end < start:
        raise ValueError(f"{label}_end_date must not be before {label}_start_date.")


def _require_no_acceleration(
    progress: ConstructionProgress,
    planned_start: date,
    planned_end: date,
) -> None:
    """Planned dates may slip behind programme but never move ahead of it."""
    if progress.programme_start_date and planned_start < progress.programme_start_date:
        raise ValueError(
            f"planned_start_date {planned_start.isoformat()} is before programme start "
            f"{progress.programme_start_date.isoformat()}."
        )
    if progress.programme_end_date and planned_end < progress.programme_end_date:
        raise ValueError(
            f"planned_end_date {planned_end.isoformat()} is before programme end "
            f"{progress.programme_end_date.isoformat()}."
        )


# ---------------------------------------------------------------------------
# Jitter & duration policies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StageJitter:
    """All the variability applied to one stage, drawn once."""
    slip_days: int = 0
    duration_delta_days: int = 0
    actual_start_offset_days: int = 0
    actual_end_offset_days: int = 0
    progress_offset: int = 0


class ZeroJitter:
    """No variability: planned == programme, actual == planned."""

    def for_stage(self, stage_index: int) -> StageJitter:
        return StageJitter()


class FixedJitter:
    """The same offsets for every stage."""

    def __init__(self, jitter: StageJitter):
        if jitter.slip_days < 0:
            raise ValueError("slip_days must not be negative.")
        self.jitter = jitter

    def for_stage(self, stage_index: int) -> StageJitter:
        return self.jitter


class SeededJitter:
    """
    Bounded pseudo-random offsets, reproducible per (seed, stage index).

    Each stage gets its own generator seeded from both values, so the draw
    for stage 3 is the same whether or not stages 0-2 were derived first.
    """

    SLIP_DAYS = (0, 4)
    DURATION_DELTA_DAYS = (-3, 3)
    ACTUAL_START_OFFSET_DAYS = (-1, 1)
    ACTUAL_END_OFFSET_DAYS = (-1, 2)
    PROGRESS_OFFSET = (-5, 4)

    def __init__(self, seed: object = 0):
        self.seed = seed

    def for_stage(self, stage_index: int) -> StageJitter:
        rng = random.Random(f"{self.seed}:{stage_index}")
        return StageJitter(
            slip_days=rng.randint(*self.SLIP_DAYS),
            duration_delta_days=rng.randint(*self.DURATION_DELTA_DAYS),
            actual_start_offset_days=rng.randint(*self.ACTUAL_START_OFFSET_DAYS),
            actual_end_offset_days=rng.randint(*self.ACTUAL_END_OFFSET_DAYS),
            progress_offset=rng.randint(*self.PROGRESS_OFFSET),
        )


@dataclass
class DurationPolicy:
    """
    How long stages take.

    `base_days` is the programme length of every stage.  Planned length is
    `floor(base_days * speed)` plus the stage's duration jitter, never less
    than one day.
    """
    base_days: int = DEFAULT_STAGE_DAYS
    speed: float = 1.0
    jitter: object = field(default_factory=ZeroJitter)

    def __post_init__(self):
        if self.base_days < 1:
            raise ValueError("base_days must be at least 1.")
        if self.speed <= 0:
            raise ValueError("speed must be positive.")

    def planned_duration_days(self, jitter: StageJitter) -> int:
        return max(1, math.floor(self.base_days * self.speed) + jitter.duration_delta_days)


# ---------------------------------------------------------------------------
# TimelineService
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StageSchedule:
    stage_index: int
    programme_start_date: date
    programme_end_date: date
    planned_start_date: date
    planned_end_date: date
    actual_start_date: Optional[date]
    actual_end_date: Optional[date]
    completion_percentage: int

    @property
    def state(self) -> StageState:
        if self.actual_end_date is not None:
            return StageState.COMPLETED
        if self.actual_start_date is not None:
            return StageState.IN_PROGRESS
        return StageState.NOT_STARTED


def completion_percentage(
    planned_start: date,
    planned_end: date,
    today: date,
    offset: int = 0,
) -> int:
    """
    Completion implied by elapsed time in the planned window.

    0 on or before the planned start, 100 from the planned end onwards and
    otherwise the elapsed fraction (plus a fixed offset) held inside
    [MIN_IN_PROGRESS_PCT, MAX_IN_PROGRESS_PCT].  Non-decreasing in `today`.
    """
    if today <= planned_start:
        return 0
    if today >= planned_end:
        return 100
    total = (planned_end - planned_start).days
    elapsed = (today - planned_start).days
    raw = (elapsed * 100) // total + offset
    return max(MIN_IN_PROGRESS_PCT, min(MAX_IN_PROGRESS_PCT, raw))


class TimelineService:
    """
    Derives stage timelines from a plot start date.

    Stages run strictly back to back on programme: stage n starts the day
    after stage n-1's programme window ends.
    """

    def programme_window(
        self, plot_start: date, stage_index: int, policy: DurationPolicy
    ) -> Tuple[date, date]:
        if stage_index < 0:
            raise ValueError("stage_index must not be negative.")
        start = plot_start + _days(stage_index * (policy.base_days + 1))
        return start, start + _days(policy.base_days)

    def derive_stage_schedule(
        self,
        plot_start: date,
        stage_index: int,
        policy: DurationPolicy,
        today: date,
    ) -> StageSchedule:
        """Derive programme, planned and actual dates plus completion for one stage."""
        jitter = policy.jitter.for_stage(stage_index)
        if jitter.slip_days < 0:
            raise ValueError("Jitter policy produced a negative slip.")

        programme_start, programme_end = self.programme_window(plot_start, stage_index, policy)
        planned_start = programme_start + _days(jitter.slip_days)
        planned_end = max(
            planned_start + _days(policy.planned_duration_days(jitter)),
            programme_end,
        )

        actual_start: Optional[date] = None
        actual_end: Optional[date] = None
        if today > planned_start:
            actual_start = min(planned_start + _days(jitter.actual_start_offset_days), today)
            if today >= planned_end:
                actual_end = planned_end + _days(jitter.actual_end_offset_days)
                actual_end = min(max(actual_end, actual_start), today)

        return StageSchedule(
            stage_index=stage_index,
            programme_start_date=programme_start,
            programme_end_date=programme_end,
            planned_start_date=planned_start,
            planned_end_date=planned_end,
            actual_start_date=actual_start,
            actual_end_date=actual_end,
            completion_percentage=completion_percentage(
                planned_start, planned_end, today, jitter.progress_offset
            ),
        )

    def derive_plot_schedule(
        self,
        plot_start: date,
        stages: Iterable[ConstructionStage],
        policy: DurationPolicy,
        today: date,
    ) -> List[Tuple[ConstructionStage, StageSchedule]]:
        """Derive every stage of a plot in sort order."""
        ordered = sorted(stages, key=lambda s: s.sort_order)
        return [
            (stage, self.derive_stage_schedule(plot_start, i, policy, today))
            for i, stage in enumerate(ordered)
        ]


# ---------------------------------------------------------------------------
# PlanHistoryService
# ---------------------------------------------------------------------------

class PlanHistoryService:
    """
    Maintains the append-only plan history of a progress record.

    The highest version always mirrors the record's live planned dates and
    `current_plan_version` always equals the number of rows.
    """

    def initial_plan(
        self,
        progress: ConstructionProgress,
        changed_by: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None,
    ) -> ConstructionPlanHistory:
        """Record version 1 from the record's current planned dates."""
        if progress.current_plan_version != 0:
            raise ValueError("Progress record already has a plan history.")
        if progress.planned_start_date is None or progress.planned_end_date is None:
            raise ValueError("An initial plan needs planned start and end dates.")
        _require_window(progress.planned_start_date, progress.planned_end_date, "planned")

        entry = ConstructionPlanHistory(
            construction_progress_id=progress.id,
            version_number=1,
            planned_start_date=progress.planned_start_date,
            planned_end_date=progress.planned_end_date,
            reason=INITIAL_PLAN_REASON,
            changed_by=changed_by,
            created_at=now or _utcnow(),
        )
        progress.current_plan_version = 1
        return entry

    def revise_plan(
        self,
        progress: ConstructionProgress,
        new_planned_start: date,
        new_planned_end: date,
        reason: str,
        changed_by: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None,
    ) -> Tuple[ConstructionProgress, ConstructionPlanHistory]:
        """
        Move the planned window and append the matching history row.

        A revision to the same dates still appends a row: the history records
        each decision to replan, not only changed values.

        The first plan on an unscheduled record becomes the "Initial plan"
        and also fixes the programme dates if they are still empty.
        """
        _require_window(new_planned_start, new_planned_end, "planned")
        now = now or _utcnow()

        if progress.current_plan_version == 0:
            if progress.programme_start_date is None and progress.programme_end_date is None:
                progress.programme_start_date = new_planned_start
                progress.programme_end_date = new_planned_end
            _require_no_acceleration(progress, new_planned_start, new_planned_end)
            progress.planned_start_date = new_planned_start
            progress.planned_end_date = new_planned_end
            progress.updated_at = now
            return progress, self.initial_plan(progress, changed_by=changed_by, now=now)

        if not reason or not reason.strip():
            raise ValueError("A reason must be provided for a plan revision.")
        _require_no_acceleration(progress, new_planned_start, new_planned_end)

        entry = ConstructionPlanHistory(
            construction_progress_id=progress.id,
            version_number=progress.current_plan_version + 1,
            planned_start_date=new_planned_start,
            planned_end_date=new_planned_end,
            reason=reason.strip(),
            changed_by=changed_by,
            created_at=now,
        )
        progress.planned_start_date = new_planned_start
        progress.planned_end_date = new_planned_end
        progress.current_plan_version = entry.version_number
        progress.updated_at = now
        return progress, entry

    def seed_history(
        self,
        progress: ConstructionProgress,
        num_versions: int,
        now: Optional[datetime] = None,
        rng: Optional[random.Random] = None,
        changed_by: str = SYSTEM_ACTOR,
    ) -> List[ConstructionPlanHistory]:
        """
        Generate a believable history of `num_versions` rows for fixtures.

        Rows are a week apart ending at `now`; intermediate rows drift
        forward from programme and the final row equals the live planned
        dates.  Sets `current_plan_version` to `num_versions`.
        """
        if num_versions < 1:
            raise ValueError("num_versions must be at least 1.")
        if progress.planned_start_date is None or progress.planned_end_date is None:
            raise ValueError("Cannot seed a history without planned dates.")
        now = now or _utcnow()
        rng = rng or random.Random(str(progress.id))

        base_start = progress.programme_start_date or progress.planned_start_date
        base_end = progress.programme_end_date or progress.planned_end_date
        duration = (progress.planned_end_date - progress.planned_start_date).days

        entries: List[ConstructionPlanHistory] = []
        for version in range(1, num_versions + 1):
            if version == num_versions:
                start, end = progress.planned_start_date, progress.planned_end_date
            else:
                start = base_start + _days((version - 1) * rng.randint(2, 6))
                end = max(start + _days(duration + (version - 1) * 2), base_end)
            reason = (
                INITIAL_PLAN_REASON
                if version == 1
                else f"Replan due to {rng.choice(REPLAN_CAUSES)}"
            )
            entries.append(
                ConstructionPlanHistory(
                    construction_progress_id=progress.id,
                    version_number=version,
                    planned_start_date=start,
                    planned_end_date=end,
                    reason=reason,
                    changed_by=changed_by,
                    created_at=now - _days(7 * (num_versions - version)),
                )
            )
        progress.current_plan_version = num_versions
        return entries

    def validate_history(
        self,
        progress: ConstructionProgress,
        entries: Sequence[ConstructionPlanHistory],
    ) -> List[ConstructionPlanHistory]:
        """
        Check a complete history against its live record and return it
        sorted by version.  Raises ValueError on the first problem found.
        """
        ordered = sorted(entries, key=lambda e: e.version_number)
        if not ordered:
            if progress.planned_start_date is not None:
                raise ValueError("A scheduled progress record needs at least one plan version.")
            return ordered

        versions = [e.version_number for e in ordered]
        if versions != list(range(1, len(ordered) + 1)):
            raise ValueError(f"Plan versions must run 1..{len(ordered)} without gaps, got {versions}.")
        if ordered[0].reason != INITIAL_PLAN_REASON:
            raise ValueError(f"Plan version 1 must have reason '{INITIAL_PLAN_REASON}'.")
        for entry in ordered:
            if entry.planned_start_date is None or entry.planned_end_date is None:
                raise ValueError(f"Plan version {entry.version_number} is missing dates.")
            _require_window(entry.planned_start_date, entry.planned_end_date, "planned")
        for earlier, later in zip(ordered, ordered[1:]):
            if later.created_at < earlier.created_at:
                raise ValueError(
                    f"Plan version {later.version_number} is dated before version "
                    f"{earlier.version_number}."
                )

        latest = ordered[-1]
        if (latest.planned_start_date, latest.planned_end_date) != (
            progress.planned_start_date,
            progress.planned_end_date,
        ):
            raise ValueError(
                f"Latest plan version {latest.version_number} does not match the live planned dates."
            )
        return ordered


# ---------------------------------------------------------------------------
# ProgressService
# ---------------------------------------------------------------------------

class ProgressService:
    """
    Manages the live progress record of a stage on a plot.
    """

    def create_progress(
        self,
        plot_id: uuid.UUID,
        stage_id: uuid.UUID,
        existing: Optional[ConstructionProgress] = None,
    ) -> ConstructionProgress:
        """Create and return an empty progress record (unsaved)."""
        if existing is not None:
            raise ValueError(
                f"Plot {plot_id} already has a progress record for stage {stage_id}."
            )
        now = _utcnow()
        return ConstructionProgress(
            plot_id=plot_id,
            construction_stage_id=stage_id,
            created_at=now,
            updated_at=now,
        )

    def apply_schedule(
        self,
        progress: ConstructionProgress,
        schedule: StageSchedule,
        include_actuals: bool = True,
    ) -> ConstructionProgress:
        """
        Write a derived schedule onto a record that has never been planned.
        With include_actuals=False the recorded actuals and percentage are kept.
        """
        if progress.current_plan_version != 0 or progress.programme_start_date is not None:
            raise ValueError("Progress record is already scheduled.")
        progress.programme_start_date = schedule.programme_start_date
        progress.programme_end_date = schedule.programme_end_date
        progress.planned_start_date = schedule.planned_start_date
        progress.planned_end_date = schedule.planned_end_date
        if include_actuals:
            progress.actual_start_date = schedule.actual_start_date
            progress.actual_end_date = schedule.actual_end_date
            progress.completion_percentage = schedule.completion_percentage
        progress.updated_at = _utcnow()
        self.check_invariants(progress)
        return progress

    def record_completion(
        self,
        progress: ConstructionProgress,
        percentage: int,
        recorded_at: date,
    ) -> Tuple[ConstructionProgress, ProgressUpdate]:
        """
        Apply a completion percentage observed on `recorded_at`.

        Business rules enforced:
        - percentage must be in [0, 100].
        - Any progress starts the stage (actual start = recorded_at if unset).
        - 100 finishes it (actual end = recorded_at if unset); less than 100
          reopens it; 0 resets both actual dates.
        """
        if not (0 <= percentage <= 100):
            raise ValueError("completion_percentage must be between 0 and 100.")

        update = ProgressUpdate(
            construction_progress_id=progress.id,
            previous_percentage=progress.completion_percentage,
            new_percentage=percentage,
            recorded_at=recorded_at,
            submitted_at=_utcnow(),
        )

        if percentage == 0:
            progress.actual_start_date = None
            progress.actual_end_date = None
        else:
            if progress.actual_start_date is None:
                progress.actual_start_date = recorded_at
            if percentage == 100:
                if progress.actual_end_date is None:
                    progress.actual_end_date = max(recorded_at, progress.actual_start_date)
            else:
                progress.actual_end_date = None
        progress.completion_percentage = percentage
        progress.updated_at = update.submitted_at
        return progress, update

    def check_invariants(self, progress: ConstructionProgress) -> None:
        """Raise ValueError if the record's dates and percentage disagree."""
        pct = progress.completion_percentage
        if not (0 <= pct <= 100):
            raise ValueError("completion_percentage must be between 0 and 100.")
        _require_window(progress.programme_start_date, progress.programme_end_date, "programme")
        _require_window(progress.planned_start_date, progress.planned_end_date, "planned")
        _require_window(progress.actual_start_date, progress.actual_end_date, "actual")
        if progress.actual_end_date is not None and pct != 100:
            raise ValueError("A stage with an actual_end_date must be 100% complete.")
        if progress.actual_start_date is None:
            if progress.actual_end_date is not None:
                raise ValueError("actual_end_date cannot be set without actual_start_date.")
            if pct != 0:
                raise ValueError("A stage without an actual_start_date must be 0% complete.")
        if progress.planned_start_date is not None and progress.planned_end_date is not None:
            _require_no_acceleration(progress, progress.planned_start_date, progress.planned_end_date)

    # --- Deviation ----------------------------------------------------------

    def compute_deviation(
        self, progress: ConstructionProgress
    ) -> Tuple[Optional[int], Optional[DeviationStatus]]:
        """Slip in days of planned end vs. programme end, and its status."""
        if progress.planned_end_date is None or progress.programme_end_date is None:
            return None, None
        slip = (progress.planned_end_date - progress.programme_end_date).days
        status = DeviationStatus.SLIPPED if slip > 0 else DeviationStatus.ON_PROGRAMME
        return slip, status

    def overall_completion(
        self, records: Sequence[ConstructionProgress], stage_count: int
    ) -> float:
        """
        Mean completion across all stages of a plot; stages with no record
        count as 0%.
        """
        if stage_count <= 0:
            return 0.0
        return sum(r.completion_percentage for r in records) / stage_count
