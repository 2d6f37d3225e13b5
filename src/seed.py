"""
seed.py

Demo data for the Construction Site Tracker.

Two ways in:

    # In-process, at API startup (SITE_TRACKER_SEED_DEMO=true)
    seed_demo_data(InMemoryUnitOfWork(), today=date.today())

    # Against a running server: re-plan every plot around today
    site-tracker-seed --base-url http://127.0.0.1:8000 --today 2025-11-26

Every plot is given one of six profiles (round-robin) that fixes how far
its start date sits from today and how fast its stages run, so a demo
site shows finished, active, late and not-yet-started plots side by side.
Timelines are derived with a seeded jitter policy: the same seed, plot and
date always produce the same site.
"""

from __future__ import annotations

import dataclasses
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import typer

from application import (
    AbstractUnitOfWork,
    ListPlotsUseCase,
    PlanHistoryInput,
    RegisterConstructionTypeCommand,
    RegisterConstructionTypeUseCase,
    RegisterPlotCommand,
    RegisterPlotUseCase,
    ReplaceStageTimelineCommand,
    ReplaceStageTimelineUseCase,
    StageDefinition,
)
from client import ProgressClient, ProgressClientError
from config import Settings, configure_logging
from model import ConstructionPlanHistory, ConstructionProgress, ConstructionStage
from service import (
    DEFAULT_STAGE_DAYS,
    DurationPolicy,
    PlanHistoryService,
    ProgressService,
    SeededJitter,
    TimelineService,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Demo catalog & plots
# ---------------------------------------------------------------------------

DEMO_CONSTRUCTION_TYPES = [
    (
        "Timber Frame",
        "Closed-panel timber frame detached house",
        [
            ("Foundations", "#78716c"),
            ("Superstructure", "#f59e0b"),
            ("Roof", "#ef4444"),
            ("First Fix", "#3b82f6"),
            ("Plastering", "#a855f7"),
            ("Second Fix", "#06b6d4"),
            ("Finishes", "#22c55e"),
        ],
    ),
    (
        "Masonry",
        "Brick and block semi-detached house",
        [
            ("Foundations", "#78716c"),
            ("Blockwork", "#f97316"),
            ("Roof", "#ef4444"),
            ("First Fix", "#3b82f6"),
            ("Second Fix", "#06b6d4"),
            ("Finishes", "#22c55e"),
        ],
    ),
]

# (name, street address, construction type name, contractor)
DEMO_PLOTS = [
    ("Plot 1", "1 Meadow Lane", "Timber Frame", "Northfield Homes"),
    ("Plot 2", "3 Meadow Lane", "Timber Frame", "Northfield Homes"),
    ("Plot 3", "5 Meadow Lane", "Masonry", "Hartley Build"),
    ("Plot 4", "7 Meadow Lane", "Masonry", "Hartley Build"),
    ("Plot 5", "2 Orchard Close", "Timber Frame", "Northfield Homes"),
    ("Plot 6", "4 Orchard Close", "Masonry", "Hartley Build"),
    ("Plot 7", "6 Orchard Close", "Timber Frame", "Northfield Homes"),
    ("Plot 8", "8 Orchard Close", "Masonry", "Hartley Build"),
]


# ---------------------------------------------------------------------------
# Plot profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlotProfile:
    type: str
    description: str
    start_offset_days: int   # plot start relative to today
    speed: float             # planned duration multiplier


PROFILES = (
    PlotProfile("completed", "Nearly complete", -70, 0.8),
    PlotProfile("active", "In active construction", -45, 1.0),
    PlotProfile("midway", "Halfway through", -30, 1.1),
    PlotProfile("starting", "Just starting", -10, 1.0),
    PlotProfile("upcoming", "Starting soon", 5, 1.0),
    PlotProfile("delayed", "Running behind", -50, 1.5),
)


def profile_for(plot_index: int) -> PlotProfile:
    return PROFILES[plot_index % len(PROFILES)]


# ---------------------------------------------------------------------------
# Timeline building
# ---------------------------------------------------------------------------

@dataclass
class StagePlan:
    """A derived live record for one stage plus the history that explains it."""
    stage: ConstructionStage
    progress: ConstructionProgress
    plan_history: List[ConstructionPlanHistory]


_timeline_svc = TimelineService()
_history_svc = PlanHistoryService()
_progress_svc = ProgressService()


def stages_from_dicts(rows: Sequence[Dict[str, Any]]) -> List[ConstructionStage]:
    """Stage records as returned by the API (or asdict'd DTOs) back into models."""
    return [
        ConstructionStage(
            id=uuid.UUID(str(row["id"])),
            construction_type_id=uuid.UUID(str(row["construction_type_id"])),
            name=row["name"],
            sort_order=row["sort_order"],
            color=row.get("color", "#9ca3af"),
        )
        for row in rows
    ]


def build_plot_timeline(
    plot_id: uuid.UUID,
    stages: Sequence[ConstructionStage],
    profile: PlotProfile,
    today: date,
    seed: object = 0,
    base_days: int = DEFAULT_STAGE_DAYS,
    now: Optional[datetime] = None,
) -> List[StagePlan]:
    """
    Derive programme / planned / actual dates and a plan history for every
    stage of a plot under `profile`.

    Delayed plots get 2-4 plan versions per stage, the rest 1-2.  History
    rows are a week apart and end at `now` (noon UTC on `today` by default).
    """
    policy = DurationPolicy(
        base_days=base_days,
        speed=profile.speed,
        jitter=SeededJitter(f"{seed}:{plot_id}"),
    )
    plot_start = today + timedelta(days=profile.start_offset_days)
    now = now or datetime.combine(today, time(12, 0), tzinfo=timezone.utc)
    rng = random.Random(f"{seed}:{plot_id}:history")

    plans: List[StagePlan] = []
    for stage, schedule in _timeline_svc.derive_plot_schedule(plot_start, stages, policy, today):
        progress = _progress_svc.create_progress(plot_id, stage.id)
        _progress_svc.apply_schedule(progress, schedule)
        if profile.type == "delayed":
            versions = rng.randint(2, 4)
        else:
            versions = rng.randint(1, 2)
        history = _history_svc.seed_history(progress, versions, now=now, rng=rng)
        plans.append(StagePlan(stage=stage, progress=progress, plan_history=history))
    return plans


def to_replace_command(plan: StagePlan) -> ReplaceStageTimelineCommand:
    p = plan.progress
    return ReplaceStageTimelineCommand(
        plot_id=p.plot_id,
        stage_id=p.construction_stage_id,
        programme_start_date=p.programme_start_date,
        programme_end_date=p.programme_end_date,
        planned_start_date=p.planned_start_date,
        planned_end_date=p.planned_end_date,
        actual_start_date=p.actual_start_date,
        actual_end_date=p.actual_end_date,
        completion_percentage=p.completion_percentage,
        plan_history=[
            PlanHistoryInput(
                version_number=e.version_number,
                planned_start_date=e.planned_start_date,
                planned_end_date=e.planned_end_date,
                reason=e.reason,
                changed_by=e.changed_by,
                created_at=e.created_at,
            )
            for e in plan.plan_history
        ],
    )


def to_payload(plan: StagePlan) -> Dict[str, Any]:
    """JSON body for PUT /api/v1/construction-progress/timeline."""
    cmd = to_replace_command(plan)
    payload = dataclasses.asdict(cmd)
    payload["plot_id"] = str(cmd.plot_id)
    payload["stage_id"] = str(cmd.stage_id)
    for key, value in payload.items():
        if isinstance(value, date):
            payload[key] = value.isoformat()
    for entry in payload["plan_history"]:
        for key, value in entry.items():
            if isinstance(value, (date, datetime)):
                entry[key] = value.isoformat()
    return payload


# ---------------------------------------------------------------------------
# In-process seeding
# ---------------------------------------------------------------------------

def seed_demo_data(uow: AbstractUnitOfWork, today: date, seed: object = 0) -> Dict[str, int]:
    """
    Register the demo catalog and plots and give every plot a timeline.
    Does nothing if the store already has plots.
    """
    summary = {"construction_types": 0, "plots": 0, "stages": 0, "plan_versions": 0}
    if ListPlotsUseCase().execute(uow):
        logger.info("Store already has plots; demo data not seeded")
        return summary

    types_by_name = {}
    for name, description, stages in DEMO_CONSTRUCTION_TYPES:
        dto = RegisterConstructionTypeUseCase().execute(
            RegisterConstructionTypeCommand(
                name=name,
                description=description,
                stages=[StageDefinition(name=s, color=c) for s, c in stages],
            ),
            uow,
        )
        types_by_name[name] = dto
        summary["construction_types"] += 1

    replace = ReplaceStageTimelineUseCase()
    for i, (name, address, type_name, contractor) in enumerate(DEMO_PLOTS):
        construction_type = types_by_name[type_name]
        plot = RegisterPlotUseCase().execute(
            RegisterPlotCommand(
                name=name,
                construction_type_id=uuid.UUID(construction_type.id),
                street_address=address,
                contractor=contractor,
            ),
            uow,
        )
        summary["plots"] += 1
        stages = stages_from_dicts([dataclasses.asdict(s) for s in construction_type.stages])
        for plan in build_plot_timeline(uuid.UUID(plot.id), stages, profile_for(i), today, seed):
            replace.execute(to_replace_command(plan), uow)
            summary["stages"] += 1
            summary["plan_versions"] += len(plan.plan_history)
    return summary


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="site-tracker-seed",
    help="Re-plan every plot on a running site tracker around a reference date.",
    add_completion=False,
)


@app.command()
def main(
    base_url: Optional[str] = typer.Option(
        None, "--base-url", help="API root; defaults to SITE_TRACKER_API_URL"
    ),
    today: Optional[datetime] = typer.Option(
        None, "--today", formats=["%Y-%m-%d"], help="Reference date; defaults to today"
    ),
    seed: str = typer.Option("0", "--seed", help="Jitter seed"),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Derive and print timelines without sending them"
    ),
) -> None:
    """Push a demo timeline for every plot to the API."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    reference = today.date() if today else date.today()
    typer.echo(f"Reference date: {reference.isoformat()}")

    try:
        with ProgressClient(base_url=base_url) as client:
            types = {t["id"]: t for t in client.list_construction_types()}
            plots = client.list_plots()
            typer.echo(f"Found {len(plots)} plots to update")
            for i, plot in enumerate(plots):
                profile = profile_for(i)
                typer.echo(f"\n{plot['name']}: {profile.description}")
                construction_type = types.get(plot.get("construction_type_id"))
                stages = stages_from_dicts(construction_type["stages"]) if construction_type else []
                if not stages:
                    typer.echo("  no construction stages, skipping")
                    continue
                plans = build_plot_timeline(
                    uuid.UUID(plot["id"]), stages, profile, reference, seed
                )
                for plan in plans:
                    if not dry_run:
                        client.replace_timeline(to_payload(plan))
                    typer.echo(
                        f"  {plan.stage.name}: {plan.progress.completion_percentage}% "
                        f"({len(plan.plan_history)} plan versions)"
                    )
    except ProgressClientError as exc:
        logger.error("Seeding failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo("\nDone." if not dry_run else "\nDry run, nothing sent.")


if __name__ == "__main__":
    app()
