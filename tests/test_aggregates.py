from datetime import date

import pytest
from sqlalchemy import select

from taskwarehouse.aggregates import AggregateBuilder
from taskwarehouse.db_models import (
    UNKNOWN_MEMBER_KEY,
    AggDailyTaskMetrics,
    AggUserWorkload,
    DimTime,
    DimUser,
    FactTask,
)
from taskwarehouse.errors import StructuralError

from warehouse_support import BATCH_TIME


@pytest.fixture()
def loaded(orchestrator, seeded_source, warehouse):
    orchestrator.run_full_workflow()
    return warehouse


@pytest.fixture()
def builder(warehouse, clock) -> AggregateBuilder:
    return AggregateBuilder(warehouse, workday_hours=8.0, clock=clock)


def batch_date_key(warehouse) -> int:
    with warehouse() as db:
        return db.execute(select(DimTime.time_key).where(DimTime.full_date == date(2024, 6, 15))).scalar_one()


def test_daily_metrics_group_by_project_status_priority(loaded) -> None:
    date_key = batch_date_key(loaded)
    with loaded() as db:
        rows = db.execute(select(AggDailyTaskMetrics)).scalars().all()
        t1 = db.execute(select(FactTask).where(FactTask.task_id == "T1")).scalar_one()

    assert {row.date_key for row in rows} == {date_key}
    assert sum(row.task_count for row in rows) == 3

    in_progress = next(row for row in rows if row.status_key == t1.status_key)
    assert in_progress.project_key == t1.project_key
    assert in_progress.in_progress_tasks == 1
    assert in_progress.overdue_tasks == 1
    assert in_progress.total_story_points == 5.0
    assert in_progress.completion_ratio == 50.0

    completed = next(row for row in rows if row.completed_tasks)
    assert completed.completed_story_points == 2.0
    assert completed.avg_days_to_complete == 8.0

    orphan = next(row for row in rows if row.project_key == UNKNOWN_MEMBER_KEY)
    assert orphan.open_tasks == 1


def test_user_workload_combines_tasks_and_logged_hours(loaded) -> None:
    with loaded() as db:
        grace = db.execute(
            select(DimUser.user_key).where(DimUser.user_id == "U2", DimUser.is_current.is_(True))
        ).scalar_one()
        row = db.execute(select(AggUserWorkload).where(AggUserWorkload.user_key == grace)).scalar_one()

    assert row.assigned_tasks == 2
    assert row.completed_tasks == 1
    assert row.in_progress_tasks == 1
    assert row.overdue_tasks == 1
    assert row.total_hours_logged == 1.75
    assert row.billable_hours == 1.5
    assert row.non_billable_hours == 0.25
    assert row.avg_hours_per_task == pytest.approx(0.875, abs=0.01)
    assert row.utilization_percentage == pytest.approx(21.875, abs=0.01)


def test_rebuild_replaces_rows_instead_of_accumulating(loaded, builder) -> None:
    with loaded() as db:
        before = sorted((r.user_key, r.project_key, r.total_hours_logged) for r in db.execute(select(AggUserWorkload)).scalars())

    first = builder.rebuild_user_workload(batch_id="BATCH-rebuild-1", batch_time=BATCH_TIME)
    second = builder.rebuild_user_workload(batch_id="BATCH-rebuild-2", batch_time=BATCH_TIME)

    assert first.ok and second.ok
    assert first.inserted == second.inserted == len(before)
    with loaded() as db:
        rows = db.execute(select(AggUserWorkload)).scalars().all()
    assert sorted((r.user_key, r.project_key, r.total_hours_logged) for r in rows) == before
    assert {r.etl_batch_id for r in rows} == {"BATCH-rebuild-2"}


def test_utilization_is_capped_at_full_day(loaded, warehouse, clock) -> None:
    builder = AggregateBuilder(warehouse, workday_hours=1.0, clock=clock)

    builder.rebuild_user_workload(batch_id="BATCH-short-day", batch_time=BATCH_TIME)

    with warehouse() as db:
        peak = max(r.utilization_percentage for r in db.execute(select(AggUserWorkload)).scalars())
    assert peak == 100.0


def test_rebuild_without_a_calendar_row_fails_instead_of_using_unknown_date(warehouse, builder) -> None:
    outcome = builder.rebuild_daily_task_metrics(batch_id="BATCH-no-calendar", batch_time=BATCH_TIME)

    assert not outcome.ok
    assert isinstance(outcome.error, StructuralError)
    with warehouse() as db:
        assert db.execute(select(AggDailyTaskMetrics)).scalars().all() == []
