"""Tests for completion updates, record invariants and slip."""
from __future__ import annotations

import uuid
from datetime import date, timedelta

import pytest

from model import ConstructionProgress, DeviationStatus, StageState
from service import ProgressService

T = date(2025, 11, 26)
svc = ProgressService()


@pytest.fixture()
def progress():
    return svc.create_progress(uuid.uuid4(), uuid.uuid4())


def test_create_progress_rejects_existing(progress):
    with pytest.raises(ValueError, match="already has a progress record"):
        svc.create_progress(progress.plot_id, progress.construction_stage_id, existing=progress)


def test_first_progress_starts_the_stage(progress):
    progress, update = svc.record_completion(progress, 25, T)
    assert progress.actual_start_date == T
    assert progress.actual_end_date is None
    assert progress.state is StageState.IN_PROGRESS
    assert (update.previous_percentage, update.new_percentage) == (0, 25)
    assert update.recorded_at == T
    svc.check_invariants(progress)


def test_later_progress_keeps_original_start(progress):
    svc.record_completion(progress, 25, T)
    svc.record_completion(progress, 60, T + timedelta(days=4))
    assert progress.actual_start_date == T
    assert progress.completion_percentage == 60


def test_hundred_finishes_and_lower_reopens(progress):
    svc.record_completion(progress, 40, T)
    svc.record_completion(progress, 100, T + timedelta(days=9))
    assert progress.actual_end_date == T + timedelta(days=9)
    assert progress.state is StageState.COMPLETED
    svc.check_invariants(progress)

    svc.record_completion(progress, 90, T + timedelta(days=10))
    assert progress.actual_end_date is None
    assert progress.actual_start_date == T
    svc.check_invariants(progress)


def test_straight_to_hundred_sets_both_dates(progress):
    svc.record_completion(progress, 100, T)
    assert progress.actual_start_date == progress.actual_end_date == T


def test_zero_clears_actuals(progress):
    svc.record_completion(progress, 100, T)
    svc.record_completion(progress, 0, T + timedelta(days=1))
    assert progress.actual_start_date is None
    assert progress.actual_end_date is None
    assert progress.state is StageState.NOT_STARTED
    svc.check_invariants(progress)


def test_end_is_never_before_start(progress):
    svc.record_completion(progress, 50, T)
    svc.record_completion(progress, 100, T - timedelta(days=3))
    assert progress.actual_end_date == T


@pytest.mark.parametrize("pct", [-1, 101, 250])
def test_out_of_range_is_rejected_without_mutation(progress, pct):
    with pytest.raises(ValueError, match="between 0 and 100"):
        svc.record_completion(progress, pct, T)
    assert progress.completion_percentage == 0
    assert progress.actual_start_date is None


@pytest.mark.parametrize(
    "fields",
    [
        {"actual_start_date": T, "actual_end_date": T, "completion_percentage": 90},
        {"completion_percentage": 30},
        {"actual_end_date": T, "completion_percentage": 100},
        {"actual_start_date": T, "actual_end_date": T - timedelta(days=1), "completion_percentage": 100},
        {"planned_start_date": T, "planned_end_date": T - timedelta(days=1)},
        {
            "programme_start_date": T,
            "programme_end_date": T + timedelta(days=14),
            "planned_start_date": T - timedelta(days=2),
            "planned_end_date": T + timedelta(days=14),
        },
    ],
)
def test_check_invariants_rejects(fields):
    with pytest.raises(ValueError):
        svc.check_invariants(ConstructionProgress(**fields))


def test_deviation():
    p = ConstructionProgress(
        programme_end_date=T + timedelta(days=14),
        planned_end_date=T + timedelta(days=18),
    )
    assert svc.compute_deviation(p) == (4, DeviationStatus.SLIPPED)
    p.planned_end_date = p.programme_end_date
    assert svc.compute_deviation(p) == (0, DeviationStatus.ON_PROGRAMME)
    assert svc.compute_deviation(ConstructionProgress()) == (None, None)


def test_overall_completion_counts_untouched_stages_as_zero():
    records = [
        ConstructionProgress(completion_percentage=100),
        ConstructionProgress(completion_percentage=50),
    ]
    assert svc.overall_completion(records, stage_count=5) == 30.0
    assert svc.overall_completion([], stage_count=0) == 0.0
