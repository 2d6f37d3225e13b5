"""
application.py

Application layer for the Construction Site Tracker.

Overview
--------
The application layer sits between the presentation layer (API / seed
tooling) and the domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data
     the presentation layer needs; no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces so that the application layer
     remains fully persistence-agnostic (implementations live in infrastructure).
  3. Declaring the UnitOfWork abstraction so that multiple repository mutations
     inside a single use case are applied as one unit: a plan revision and its
     history row are either both stored or neither is.
  4. Implementing Use Case handlers, one class per operation, that
     orchestrate service calls and repository reads/writes in the correct order.

Structure
---------
DTOs
    ConstructionStageDTO, ConstructionTypeDTO, PlotDTO
    ProgressDTO, PlanHistoryDTO, ProgressUpdateDTO, StageTimelineDTO
    RecordProgressResultDTO, StageProgressRowDTO, PlotProgressDTO
    StageScheduleDTO, PlotScheduleDTO

Repository interfaces
    AbstractConstructionTypeRepository
    AbstractPlotRepository
    AbstractProgressRepository
    AbstractPlanHistoryRepository
    AbstractProgressUpdateRepository

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Catalog & plots ---
    RegisterConstructionTypeUseCase
    ListConstructionTypesUseCase
    RegisterPlotUseCase
    ListPlotsUseCase

    --- Timeline ---
    PreviewPlotScheduleUseCase
    InitialisePlotTimelineUseCase
    GetPlotProgressUseCase

    --- Progress ---
    RecordStageProgressUseCase
    UpdateStageProgressUseCase
    DeleteProgressUseCase

    --- Plan history ---
    RevisePlanUseCase
    GetPlanHistoryUseCase
    ReplaceStageTimelineUseCase

Design notes
------------
- Use cases receive commands and return DTOs only.
- Each use case accepts a UnitOfWork as its sole dependency.
- Dates flowing out are ISO-8601 calendar dates; audit timestamps are
  ISO-8601 strings (UTC).
- Errors bubble up as ApplicationError (business), NotFoundError or
  ConflictError; service ValueErrors are wrapped as ApplicationError.
"""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from model import (
    SYSTEM_ACTOR,
    ConstructionPlanHistory,
    ConstructionProgress,
    ConstructionStage,
    ConstructionType,
    Plot,
    ProgressUpdate,
)
from service import (
    DurationPolicy,
    PlanHistoryService,
    ProgressService,
    SeededJitter,
    StageSchedule,
    TimelineService,
    ZeroJitter,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class ConflictError(ApplicationError):
    """Raised when a write would break a uniqueness rule."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps from callers are taken to be UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Catalog DTOs
# ---------------------------------------------------------------------------

@dataclass
class ConstructionStageDTO:
    id: str
    construction_type_id: str
    name: str
    sort_order: int
    color: str


@dataclass
class ConstructionTypeDTO:
    id: str
    name: str
    description: str
    stages: List[ConstructionStageDTO]


@dataclass
class PlotDTO:
    id: str
    name: str
    street_address: str
    construction_type_id: Optional[str]
    contractor: str
    created_at: str


# ---------------------------------------------------------------------------
# Progress DTOs
# ---------------------------------------------------------------------------

@dataclass
class ProgressDTO:
    id: str
    plot_id: str
    construction_stage_id: str
    programme_start_date: Optional[str]
    programme_end_date: Optional[str]
    planned_start_date: Optional[str]
    planned_end_date: Optional[str]
    actual_start_date: Optional[str]
    actual_end_date: Optional[str]
    completion_percentage: int
    current_plan_version: int
    state: str
    slip_days: Optional[int]
    deviation_status: Optional[str]
    last_recorded_at: Optional[str]
    updated_at: str


@dataclass
class PlanHistoryDTO:
    id: str
    construction_progress_id: str
    version_number: int
    planned_start_date: Optional[str]
    planned_end_date: Optional[str]
    reason: str
    changed_by: str
    created_at: str


@dataclass
class ProgressUpdateDTO:
    id: str
    construction_progress_id: str
    previous_percentage: Optional[int]
    new_percentage: int
    recorded_at: Optional[str]
    submitted_at: str


@dataclass
class StageTimelineDTO:
    """A progress record together with its full plan history and update log."""
    progress: ProgressDTO
    plan_history: List[PlanHistoryDTO]
    progress_updates: List[ProgressUpdateDTO] = field(default_factory=list)


@dataclass
class RecordProgressResultDTO:
    progress: ProgressDTO
    created: bool


@dataclass
class StageProgressRowDTO:
    """One catalog stage of a plot; `progress` is None until the stage is touched."""
    stage: ConstructionStageDTO
    progress: Optional[ProgressDTO]
    plan_history: List[PlanHistoryDTO]


@dataclass
class PlotProgressDTO:
    plot: PlotDTO
    construction_type_name: Optional[str]
    overall_completion_pct: float
    stages: List[StageProgressRowDTO]


# ---------------------------------------------------------------------------
# Schedule preview DTOs
# ---------------------------------------------------------------------------

@dataclass
class StageScheduleDTO:
    stage_id: str
    stage_name: str
    sort_order: int
    programme_start_date: str
    programme_end_date: str
    planned_start_date: str
    planned_end_date: str
    actual_start_date: Optional[str]
    actual_end_date: Optional[str]
    completion_percentage: int
    state: str


@dataclass
class PlotScheduleDTO:
    plot_id: str
    start_date: str
    today: str
    stages: List[StageScheduleDTO]


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain objects → DTOs."""

    @staticmethod
    def stage(s: ConstructionStage) -> ConstructionStageDTO:
        return ConstructionStageDTO(
            id=str(s.id),
            construction_type_id=str(s.construction_type_id),
            name=s.name,
            sort_order=s.sort_order,
            color=s.color,
        )

    @staticmethod
    def construction_type(ct: ConstructionType) -> ConstructionTypeDTO:
        return ConstructionTypeDTO(
            id=str(ct.id),
            name=ct.name,
            description=ct.description,
            stages=[_Assembler.stage(s) for s in ct.ordered_stages()],
        )

    @staticmethod
    def plot(p: Plot) -> PlotDTO:
        return PlotDTO(
            id=str(p.id),
            name=p.name,
            street_address=p.street_address,
            construction_type_id=str(p.construction_type_id) if p.construction_type_id else None,
            contractor=p.contractor,
            created_at=_fmt(p.created_at),
        )

    @staticmethod
    def progress(
        p: ConstructionProgress, updates: Sequence[ProgressUpdate] = ()
    ) -> ProgressDTO:
        slip, status = _progress_svc.compute_deviation(p)
        ordered = sorted(updates, key=lambda u: u.submitted_at)
        latest = ordered[-1] if ordered else None
        return ProgressDTO(
            id=str(p.id),
            plot_id=str(p.plot_id),
            construction_stage_id=str(p.construction_stage_id),
            programme_start_date=_fmt_date(p.programme_start_date),
            programme_end_date=_fmt_date(p.programme_end_date),
            planned_start_date=_fmt_date(p.planned_start_date),
            planned_end_date=_fmt_date(p.planned_end_date),
            actual_start_date=_fmt_date(p.actual_start_date),
            actual_end_date=_fmt_date(p.actual_end_date),
            completion_percentage=p.completion_percentage,
            current_plan_version=p.current_plan_version,
            state=p.state.value,
            slip_days=slip,
            deviation_status=status.value if status else None,
            last_recorded_at=_fmt_date(latest.recorded_at) if latest else None,
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def plan_entry(e: ConstructionPlanHistory) -> PlanHistoryDTO:
        return PlanHistoryDTO(
            id=str(e.id),
            construction_progress_id=str(e.construction_progress_id),
            version_number=e.version_number,
            planned_start_date=_fmt_date(e.planned_start_date),
            planned_end_date=_fmt_date(e.planned_end_date),
            reason=e.reason,
            changed_by=e.changed_by,
            created_at=_fmt(e.created_at),
        )

    @staticmethod
    def progress_update(u: ProgressUpdate) -> ProgressUpdateDTO:
        return ProgressUpdateDTO(
            id=str(u.id),
            construction_progress_id=str(u.construction_progress_id),
            previous_percentage=u.previous_percentage,
            new_percentage=u.new_percentage,
            recorded_at=_fmt_date(u.recorded_at),
            submitted_at=_fmt(u.submitted_at),
        )

    @staticmethod
    def timeline(
        p: ConstructionProgress,
        entries: List[ConstructionPlanHistory],
        updates: Sequence[ProgressUpdate] = (),
    ) -> StageTimelineDTO:
        return StageTimelineDTO(
            progress=_Assembler.progress(p, updates),
            plan_history=[
                _Assembler.plan_entry(e)
                for e in sorted(entries, key=lambda e: e.version_number)
            ],
            progress_updates=[
                _Assembler.progress_update(u)
                for u in sorted(updates, key=lambda u: u.submitted_at)
            ],
        )

    @staticmethod
    def schedule(stage: ConstructionStage, s: StageSchedule) -> StageScheduleDTO:
        return StageScheduleDTO(
            stage_id=str(stage.id),
            stage_name=stage.name,
            sort_order=stage.sort_order,
            programme_start_date=s.programme_start_date.isoformat(),
            programme_end_date=s.programme_end_date.isoformat(),
            planned_start_date=s.planned_start_date.isoformat(),
            planned_end_date=s.planned_end_date.isoformat(),
            actual_start_date=_fmt_date(s.actual_start_date),
            actual_end_date=_fmt_date(s.actual_end_date),
            completion_percentage=s.completion_percentage,
            state=s.state.value,
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractConstructionTypeRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, type_id: uuid.UUID) -> Optional[ConstructionType]: ...
    @abc.abstractmethod
    def list_all(self) -> List[ConstructionType]: ...
    @abc.abstractmethod
    def save(self, construction_type: ConstructionType) -> None: ...


class AbstractPlotRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, plot_id: uuid.UUID) -> Optional[Plot]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Plot]: ...
    @abc.abstractmethod
    def save(self, plot: Plot) -> None: ...


class AbstractProgressRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, progress_id: uuid.UUID) -> Optional[ConstructionProgress]: ...
    @abc.abstractmethod
    def get_for_plot_stage(
        self, plot_id: uuid.UUID, stage_id: uuid.UUID
    ) -> Optional[ConstructionProgress]: ...
    @abc.abstractmethod
    def list_for_plot(self, plot_id: uuid.UUID) -> List[ConstructionProgress]: ...
    @abc.abstractmethod
    def save(self, progress: ConstructionProgress) -> None: ...
    @abc.abstractmethod
    def delete(self, progress_id: uuid.UUID) -> None: ...


class AbstractPlanHistoryRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_progress(self, progress_id: uuid.UUID) -> List[ConstructionPlanHistory]: ...
    @abc.abstractmethod
    def save(self, entry: ConstructionPlanHistory) -> None: ...
    @abc.abstractmethod
    def delete_for_progress(self, progress_id: uuid.UUID) -> None: ...


class AbstractProgressUpdateRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_progress(self, progress_id: uuid.UUID) -> List[ProgressUpdate]: ...
    @abc.abstractmethod
    def save(self, update: ProgressUpdate) -> None: ...
    @abc.abstractmethod
    def delete_for_progress(self, progress_id: uuid.UUID) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.progress.save(progress)
            uow.plan_history.save(entry)
            uow.commit()
    """
    construction_types: AbstractConstructionTypeRepository
    plots: AbstractPlotRepository
    progress: AbstractProgressRepository
    plan_history: AbstractPlanHistoryRepository
    progress_updates: AbstractProgressUpdateRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_timeline_svc = TimelineService()
_history_svc = PlanHistoryService()
_progress_svc = ProgressService()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_plot_or_raise(uow: AbstractUnitOfWork, plot_id: uuid.UUID) -> Plot:
    plot = uow.plots.get(plot_id)
    if plot is None:
        raise NotFoundError(f"Plot {plot_id} not found.")
    return plot


def _get_progress_or_raise(
    uow: AbstractUnitOfWork, progress_id: uuid.UUID
) -> ConstructionProgress:
    progress = uow.progress.get(progress_id)
    if progress is None:
        raise NotFoundError(f"Construction progress {progress_id} not found.")
    return progress


def _get_plot_stages(uow: AbstractUnitOfWork, plot: Plot) -> Tuple[Optional[ConstructionType], List[ConstructionStage]]:
    if plot.construction_type_id is None:
        return None, []
    construction_type = uow.construction_types.get(plot.construction_type_id)
    if construction_type is None:
        raise NotFoundError(f"Construction type {plot.construction_type_id} not found.")
    return construction_type, construction_type.ordered_stages()


def _get_plot_stage_or_raise(
    uow: AbstractUnitOfWork, plot: Plot, stage_id: uuid.UUID
) -> ConstructionStage:
    _, stages = _get_plot_stages(uow, plot)
    for stage in stages:
        if stage.id == stage_id:
            return stage
    raise NotFoundError(f"Stage {stage_id} is not a stage of plot {plot.id}'s construction type.")


def _policy(base_days: int, speed: float, seed: Optional[str]) -> DurationPolicy:
    try:
        return DurationPolicy(
            base_days=base_days,
            speed=speed,
            jitter=SeededJitter(seed) if seed is not None else ZeroJitter(),
        )
    except ValueError as exc:
        raise ApplicationError(str(exc)) from exc


# ===========================================================================
# USE CASES: CATALOG & PLOTS
# ===========================================================================

@dataclass
class StageDefinition:
    name: str
    color: str = "#9ca3af"


@dataclass
class RegisterConstructionTypeCommand:
    name: str
    description: str = ""
    stages: List[StageDefinition] = field(default_factory=list)


class RegisterConstructionTypeUseCase:
    """Add a construction type to the catalog; stage order follows the list."""

    def execute(
        self, cmd: RegisterConstructionTypeCommand, uow: AbstractUnitOfWork
    ) -> ConstructionTypeDTO:
        if not cmd.name.strip():
            raise ApplicationError("Construction type name must not be empty.")
        with uow:
            construction_type = ConstructionType(name=cmd.name, description=cmd.description)
            construction_type.stages = [
                ConstructionStage(
                    construction_type_id=construction_type.id,
                    name=definition.name,
                    sort_order=i,
                    color=definition.color,
                )
                for i, definition in enumerate(cmd.stages, start=1)
            ]
            uow.construction_types.save(construction_type)
            uow.commit()
            return _Assembler.construction_type(construction_type)


class ListConstructionTypesUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[ConstructionTypeDTO]:
        with uow:
            return [
                _Assembler.construction_type(ct)
                for ct in sorted(uow.construction_types.list_all(), key=lambda ct: ct.name)
            ]


@dataclass
class RegisterPlotCommand:
    name: str
    construction_type_id: Optional[uuid.UUID] = None
    street_address: str = ""
    contractor: str = ""


class RegisterPlotUseCase:
    def execute(self, cmd: RegisterPlotCommand, uow: AbstractUnitOfWork) -> PlotDTO:
        if not cmd.name.strip():
            raise ApplicationError("Plot name must not be empty.")
        with uow:
            if cmd.construction_type_id is not None:
                if uow.construction_types.get(cmd.construction_type_id) is None:
                    raise NotFoundError(f"Construction type {cmd.construction_type_id} not found.")
            plot = Plot(
                name=cmd.name,
                street_address=cmd.street_address,
                construction_type_id=cmd.construction_type_id,
                contractor=cmd.contractor,
            )
            uow.plots.save(plot)
            uow.commit()
            return _Assembler.plot(plot)


class ListPlotsUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[PlotDTO]:
        with uow:
            return [
                _Assembler.plot(p)
                for p in sorted(uow.plots.list_all(), key=lambda p: p.created_at)
            ]


# ===========================================================================
# USE CASES: TIMELINE
# ===========================================================================

@dataclass
class PreviewPlotScheduleCommand:
    plot_id: uuid.UUID
    start_date: date
    today: date
    base_days: int = 14
    speed: float = 1.0
    seed: Optional[str] = None


class PreviewPlotScheduleUseCase:
    """Derive a plot's stage timeline without persisting anything."""

    def execute(self, cmd: PreviewPlotScheduleCommand, uow: AbstractUnitOfWork) -> PlotScheduleDTO:
        policy = _policy(cmd.base_days, cmd.speed, cmd.seed)
        with uow:
            plot = _get_plot_or_raise(uow, cmd.plot_id)
            _, stages = _get_plot_stages(uow, plot)
            rows = _timeline_svc.derive_plot_schedule(cmd.start_date, stages, policy, cmd.today)
            return PlotScheduleDTO(
                plot_id=str(plot.id),
                start_date=cmd.start_date.isoformat(),
                today=cmd.today.isoformat(),
                stages=[_Assembler.schedule(stage, s) for stage, s in rows],
            )


@dataclass
class InitialisePlotTimelineCommand:
    plot_id: uuid.UUID
    start_date: date
    today: date
    base_days: int = 14
    speed: float = 1.0
    seed: Optional[str] = None
    changed_by: str = SYSTEM_ACTOR


class InitialisePlotTimelineUseCase:
    """
    Schedule every stage of a plot that has no plan yet.

    Stages that already have a plan keep their programme dates.  Records
    created earlier by a completion update receive programme and planned
    dates but keep their recorded actuals.
    """

    def execute(
        self, cmd: InitialisePlotTimelineCommand, uow: AbstractUnitOfWork
    ) -> PlotProgressDTO:
        policy = _policy(cmd.base_days, cmd.speed, cmd.seed)
        with uow:
            plot = _get_plot_or_raise(uow, cmd.plot_id)
            _, stages = _get_plot_stages(uow, plot)
            rows = _timeline_svc.derive_plot_schedule(cmd.start_date, stages, policy, cmd.today)
            scheduled = 0
            for stage, schedule in rows:
                progress = uow.progress.get_for_plot_stage(plot.id, stage.id)
                if progress is not None and progress.current_plan_version > 0:
                    continue
                try:
                    if progress is None:
                        progress = _progress_svc.create_progress(plot.id, stage.id)
                        _progress_svc.apply_schedule(progress, schedule)
                    else:
                        _progress_svc.apply_schedule(progress, schedule, include_actuals=False)
                    entry = _history_svc.initial_plan(progress, changed_by=cmd.changed_by)
                except ValueError as exc:
                    raise ApplicationError(str(exc)) from exc
                uow.progress.save(progress)
                uow.plan_history.save(entry)
                scheduled += 1
            uow.commit()
            logger.info("Scheduled %d of %d stages for plot %s", scheduled, len(rows), plot.id)
            return _plot_progress(uow, plot)


def _plot_progress(uow: AbstractUnitOfWork, plot: Plot) -> PlotProgressDTO:
    construction_type, stages = _get_plot_stages(uow, plot)
    records: Dict[uuid.UUID, ConstructionProgress] = {
        p.construction_stage_id: p for p in uow.progress.list_for_plot(plot.id)
    }
    rows: List[StageProgressRowDTO] = []
    for stage in stages:
        progress = records.get(stage.id)
        rows.append(
            StageProgressRowDTO(
                stage=_Assembler.stage(stage),
                progress=(
                    _Assembler.progress(
                        progress, uow.progress_updates.list_for_progress(progress.id)
                    )
                    if progress
                    else None
                ),
                plan_history=[
                    _Assembler.plan_entry(e)
                    for e in sorted(
                        uow.plan_history.list_for_progress(progress.id),
                        key=lambda e: e.version_number,
                    )
                ]
                if progress
                else [],
            )
        )
    stage_ids = {s.id for s in stages}
    return PlotProgressDTO(
        plot=_Assembler.plot(plot),
        construction_type_name=construction_type.name if construction_type else None,
        overall_completion_pct=_progress_svc.overall_completion(
            [p for sid, p in records.items() if sid in stage_ids], len(stages)
        ),
        stages=rows,
    )


class GetPlotProgressUseCase:
    def execute(self, plot_id: uuid.UUID, uow: AbstractUnitOfWork) -> PlotProgressDTO:
        with uow:
            plot = _get_plot_or_raise(uow, plot_id)
            return _plot_progress(uow, plot)


# ===========================================================================
# USE CASES: PROGRESS
# ===========================================================================

@dataclass
class RecordStageProgressCommand:
    plot_id: uuid.UUID
    stage_id: uuid.UUID
    completion_percentage: int
    today: date
    recorded_at: Optional[date] = None


class RecordStageProgressUseCase:
    """
    Record a completion percentage for a stage on a plot, creating the
    progress record the first time the stage is touched.
    """

    def execute(
        self, cmd: RecordStageProgressCommand, uow: AbstractUnitOfWork
    ) -> RecordProgressResultDTO:
        with uow:
            plot = _get_plot_or_raise(uow, cmd.plot_id)
            _get_plot_stage_or_raise(uow, plot, cmd.stage_id)
            progress = uow.progress.get_for_plot_stage(cmd.plot_id, cmd.stage_id)
            created = progress is None
            if created:
                progress = _progress_svc.create_progress(cmd.plot_id, cmd.stage_id)
            try:
                progress, update = _progress_svc.record_completion(
                    progress, cmd.completion_percentage, cmd.recorded_at or cmd.today
                )
            except ValueError as exc:
                logger.warning("Rejected progress for plot %s stage %s: %s", cmd.plot_id, cmd.stage_id, exc)
                raise ApplicationError(str(exc)) from exc
            uow.progress.save(progress)
            uow.progress_updates.save(update)
            uow.commit()
            return RecordProgressResultDTO(
                progress=_Assembler.progress(
                    progress, uow.progress_updates.list_for_progress(progress.id)
                ),
                created=created,
            )


@dataclass
class UpdateStageProgressCommand:
    progress_id: uuid.UUID
    completion_percentage: int
    today: date
    recorded_at: Optional[date] = None


class UpdateStageProgressUseCase:
    def execute(self, cmd: UpdateStageProgressCommand, uow: AbstractUnitOfWork) -> ProgressDTO:
        with uow:
            progress = _get_progress_or_raise(uow, cmd.progress_id)
            try:
                progress, update = _progress_svc.record_completion(
                    progress, cmd.completion_percentage, cmd.recorded_at or cmd.today
                )
            except ValueError as exc:
                logger.warning("Rejected progress for record %s: %s", cmd.progress_id, exc)
                raise ApplicationError(str(exc)) from exc
            uow.progress.save(progress)
            uow.progress_updates.save(update)
            uow.commit()
            return _Assembler.progress(
                progress, uow.progress_updates.list_for_progress(progress.id)
            )


class DeleteProgressUseCase:
    """Delete a progress record together with its plan history and update log."""

    def execute(self, progress_id: uuid.UUID, uow: AbstractUnitOfWork) -> None:
        with uow:
            progress = _get_progress_or_raise(uow, progress_id)
            uow.plan_history.delete_for_progress(progress.id)
            uow.progress_updates.delete_for_progress(progress.id)
            uow.progress.delete(progress.id)
            uow.commit()
            logger.info("Deleted construction progress %s", progress_id)


# ===========================================================================
# USE CASES: PLAN HISTORY
# ===========================================================================

@dataclass
class RevisePlanCommand:
    progress_id: uuid.UUID
    planned_start_date: date
    planned_end_date: date
    reason: str
    changed_by: str = SYSTEM_ACTOR
    now: Optional[datetime] = None


class RevisePlanUseCase:
    def execute(self, cmd: RevisePlanCommand, uow: AbstractUnitOfWork) -> StageTimelineDTO:
        with uow:
            progress = _get_progress_or_raise(uow, cmd.progress_id)
            try:
                progress, entry = _history_svc.revise_plan(
                    progress,
                    cmd.planned_start_date,
                    cmd.planned_end_date,
                    reason=cmd.reason,
                    changed_by=cmd.changed_by,
                    now=cmd.now,
                )
            except ValueError as exc:
                logger.warning("Rejected plan revision for %s: %s", cmd.progress_id, exc)
                raise ApplicationError(str(exc)) from exc
            uow.plan_history.save(entry)
            uow.progress.save(progress)
            uow.commit()
            logger.info(
                "Plan for progress %s revised to version %d (%s)",
                progress.id, entry.version_number, entry.reason,
            )
            return _Assembler.timeline(
                progress,
                uow.plan_history.list_for_progress(progress.id),
                uow.progress_updates.list_for_progress(progress.id),
            )


class GetPlanHistoryUseCase:
    def execute(self, progress_id: uuid.UUID, uow: AbstractUnitOfWork) -> StageTimelineDTO:
        with uow:
            progress = _get_progress_or_raise(uow, progress_id)
            return _Assembler.timeline(
                progress,
                uow.plan_history.list_for_progress(progress.id),
                uow.progress_updates.list_for_progress(progress.id),
            )


@dataclass
class PlanHistoryInput:
    version_number: int
    planned_start_date: date
    planned_end_date: date
    reason: str
    changed_by: str = SYSTEM_ACTOR
    created_at: Optional[datetime] = None


@dataclass
class ReplaceStageTimelineCommand:
    plot_id: uuid.UUID
    stage_id: uuid.UUID
    programme_start_date: Optional[date]
    programme_end_date: Optional[date]
    planned_start_date: Optional[date]
    planned_end_date: Optional[date]
    actual_start_date: Optional[date]
    actual_end_date: Optional[date]
    completion_percentage: int
    plan_history: List[PlanHistoryInput] = field(default_factory=list)


class ReplaceStageTimelineUseCase:
    """
    Overwrite a stage's live dates and replace its plan history wholesale.

    Everything is validated before the old history is removed, and the whole
    replacement happens inside one unit of work so no reader ever sees the
    record without a history.
    """

    def execute(
        self, cmd: ReplaceStageTimelineCommand, uow: AbstractUnitOfWork
    ) -> StageTimelineDTO:
        with uow:
            plot = _get_plot_or_raise(uow, cmd.plot_id)
            _get_plot_stage_or_raise(uow, plot, cmd.stage_id)
            progress = uow.progress.get_for_plot_stage(cmd.plot_id, cmd.stage_id)
            if progress is None:
                progress = _progress_svc.create_progress(cmd.plot_id, cmd.stage_id)

            progress.programme_start_date = cmd.programme_start_date
            progress.programme_end_date = cmd.programme_end_date
            progress.planned_start_date = cmd.planned_start_date
            progress.planned_end_date = cmd.planned_end_date
            progress.actual_start_date = cmd.actual_start_date
            progress.actual_end_date = cmd.actual_end_date
            progress.completion_percentage = cmd.completion_percentage
            progress.updated_at = datetime.now(timezone.utc)

            now = datetime.now(timezone.utc)
            entries = [
                ConstructionPlanHistory(
                    construction_progress_id=progress.id,
                    version_number=h.version_number,
                    planned_start_date=h.planned_start_date,
                    planned_end_date=h.planned_end_date,
                    reason=h.reason,
                    changed_by=h.changed_by,
                    created_at=_aware(h.created_at) or now,
                )
                for h in cmd.plan_history
            ]
            try:
                _progress_svc.check_invariants(progress)
                entries = _history_svc.validate_history(progress, entries)
            except ValueError as exc:
                logger.warning(
                    "Rejected timeline for plot %s stage %s: %s", cmd.plot_id, cmd.stage_id, exc
                )
                raise ApplicationError(str(exc)) from exc
            progress.current_plan_version = len(entries)

            uow.plan_history.delete_for_progress(progress.id)
            for entry in entries:
                uow.plan_history.save(entry)
            uow.progress.save(progress)
            uow.commit()
            logger.info(
                "Replaced timeline of progress %s with %d plan versions", progress.id, len(entries)
            )
            return _Assembler.timeline(
                progress, entries, uow.progress_updates.list_for_progress(progress.id)
            )
