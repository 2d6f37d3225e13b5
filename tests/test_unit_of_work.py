"""Tests for the transactional in-memory unit of work."""
from __future__ import annotations

import threading
import uuid
from datetime import date, timedelta

import pytest

from application import (
    ApplicationError,
    ConflictError,
    RevisePlanCommand,
    RevisePlanUseCase,
)
from infrastructure import InMemoryUnitOfWork
from model import ConstructionPlanHistory, ConstructionProgress, Plot

T = date(2025, 11, 26)


def test_exception_rolls_back_every_store(uow, db):
    with pytest.raises(RuntimeError):
        with uow:
            uow.plots.save(Plot(name="Plot 9"))
            progress = ConstructionProgress()
            uow.progress.save(progress)
            uow.plan_history.save(ConstructionPlanHistory(construction_progress_id=progress.id))
            raise RuntimeError("boom")
    assert not db.plots and not db.progress and not db.plan_history


def test_commit_survives_a_later_rollback(uow, db):
    with pytest.raises(RuntimeError):
        with uow:
            uow.plots.save(Plot(name="kept"))
            uow.commit()
            uow.plots.save(Plot(name="dropped"))
            raise RuntimeError("boom")
    assert [p.name for p in db.plots.values()] == ["kept"]


def test_rollback_restores_mutated_objects(uow, db):
    plot = Plot(name="before")
    with uow:
        uow.plots.save(plot)
    with pytest.raises(RuntimeError):
        with uow:
            uow.plots.get(plot.id).name = "after"
            raise RuntimeError("boom")
    assert db.plots[plot.id].name == "before"


def test_reads_hand_out_copies(uow, db):
    plot = Plot(name="Plot 1")
    with uow:
        uow.plots.save(plot)
        plot.name = "changed after save"
        fetched = uow.plots.get(plot.id)
        fetched.name = "changed without save"
        listed = uow.plots.list_all()
    assert fetched is not db.plots[plot.id]
    assert listed[0] is not db.plots[plot.id]
    assert db.plots[plot.id].name == "Plot 1"


def test_rollback_undoes_puts_and_removes_newest_first(uow, db):
    progress = ConstructionProgress(completion_percentage=10)
    history = ConstructionPlanHistory(construction_progress_id=progress.id)
    with uow:
        uow.progress.save(progress)
        uow.plan_history.save(history)

    with pytest.raises(RuntimeError):
        with uow:
            progress.completion_percentage = 50
            uow.progress.save(progress)
            progress.completion_percentage = 80
            uow.progress.save(progress)
            uow.plan_history.delete_for_progress(progress.id)
            uow.plots.save(Plot(name="new"))
            raise RuntimeError("boom")

    assert db.progress[progress.id].completion_percentage == 10
    assert list(db.plan_history) == [history.id]
    assert not db.plots
    assert db.journal is None


def test_read_only_unit_leaves_stored_objects_alone(uow, db):
    plot = Plot(name="Plot 1")
    with uow:
        uow.plots.save(plot)
    stored = db.plots[plot.id]

    with pytest.raises(RuntimeError):
        with uow:
            uow.plots.list_all()
            assert db.journal == []
            raise RuntimeError("boom")
    assert db.plots[plot.id] is stored


def test_nested_commit_is_undone_by_outer_rollback(db):
    with pytest.raises(RuntimeError):
        with InMemoryUnitOfWork(db) as outer:
            outer.plots.save(Plot(name="outer"))
            with InMemoryUnitOfWork(db) as inner:
                inner.plots.save(Plot(name="inner"))
            raise RuntimeError("boom")
    assert not db.plots


def test_second_record_for_same_stage_conflicts(uow):
    plot_id, stage_id = uuid.uuid4(), uuid.uuid4()
    with uow:
        uow.progress.save(ConstructionProgress(plot_id=plot_id, construction_stage_id=stage_id))
    with pytest.raises(ConflictError):
        with uow:
            uow.progress.save(ConstructionProgress(plot_id=plot_id, construction_stage_id=stage_id))


def test_rejected_revision_leaves_no_trace(db):
    progress = ConstructionProgress(
        programme_start_date=T,
        programme_end_date=T + timedelta(days=14),
        planned_start_date=T,
        planned_end_date=T + timedelta(days=14),
        current_plan_version=1,
    )
    entry = ConstructionPlanHistory(
        construction_progress_id=progress.id,
        planned_start_date=T,
        planned_end_date=T + timedelta(days=14),
    )
    with InMemoryUnitOfWork(db) as uow:
        uow.progress.save(progress)
        uow.plan_history.save(entry)

    with pytest.raises(ApplicationError):
        RevisePlanUseCase().execute(
            RevisePlanCommand(
                progress_id=progress.id,
                planned_start_date=T - timedelta(days=3),
                planned_end_date=T + timedelta(days=14),
                reason="Pull forward",
            ),
            InMemoryUnitOfWork(db),
        )
    stored = db.progress[progress.id]
    assert stored.current_plan_version == 1
    assert stored.planned_start_date == T
    assert len(db.plan_history) == 1


def test_lock_is_released_after_each_unit(uow, db):
    with pytest.raises(RuntimeError):
        with uow:
            raise RuntimeError("boom")

    acquired = []

    def other_thread():
        got = db.lock.acquire(blocking=False)
        acquired.append(got)
        if got:
            db.lock.release()

    worker = threading.Thread(target=other_thread)
    worker.start()
    worker.join()
    assert acquired == [True]
