from dataclasses import replace
from datetime import date, timedelta
import logging
import threading

import pytest
from sqlalchemy import func, select

from taskwarehouse.db_models import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    AggDailyTaskMetrics,
    DimTime,
    DimUser,
    EtlAuditEntry,
    EtlBatch,
    EtlErrorEntry,
    FactTask,
)
from taskwarehouse.errors import (
    BatchCancelledError,
    BatchFailedError,
    ConcurrencyError,
    PersistenceError,
    StructuralError,
)
from taskwarehouse.pipeline import EtlOrchestrator
from taskwarehouse.source_models import User

from warehouse_support import BATCH_TIME, ORG_ID, OTHER_ORG_ID


STEP_ORDER = [
    "dim_time",
    "dim_users",
    "dim_projects",
    "dim_task_status",
    "dim_priority",
    "fact_tasks",
    "fact_time_logs",
    "agg_daily_task_metrics",
    "agg_user_workload",
]


def audits_for(warehouse, batch_id: str) -> list[EtlAuditEntry]:
    with warehouse() as db:
        stmt = select(EtlAuditEntry).where(EtlAuditEntry.batch_id == batch_id).order_by(EtlAuditEntry.audit_id)
        return list(db.execute(stmt).scalars().all())


def test_full_run_completes_and_audits_every_step(orchestrator, seeded_source, warehouse) -> None:
    result = orchestrator.run_full_workflow()

    assert result.status == BATCH_COMPLETED
    assert [outcome.step_name for outcome in result.outcomes] == STEP_ORDER
    assert result.counts.failed == 0
    assert result.counts.inserted > 0

    batch = orchestrator.ledger.get_batch(result.batch_id)
    assert batch.status == BATCH_COMPLETED
    assert batch.records_inserted == result.counts.inserted
    assert batch.records_processed == result.counts.processed

    audits = audits_for(warehouse, result.batch_id)
    assert [audit.table_name for audit in audits] == STEP_ORDER
    assert {audit.status for audit in audits} == {"COMPLETED"}


def test_second_run_against_same_source_changes_nothing(orchestrator, seeded_source, clock) -> None:
    orchestrator.run_full_workflow()
    clock.now = BATCH_TIME + timedelta(minutes=30)

    second = orchestrator.run_full_workflow()

    by_step = {outcome.step_name: outcome for outcome in second.outcomes}
    for step in STEP_ORDER[:7]:
        assert by_step[step].inserted == 0, step
        assert by_step[step].updated == 0, step
        assert by_step[step].expired == 0, step
    assert by_step["fact_tasks"].unchanged == 3


def test_user_change_between_runs_creates_new_version(orchestrator, seeded_source, oltp, warehouse, clock) -> None:
    orchestrator.run_full_workflow()
    with oltp() as db:
        db.get(User, "U1").email = "b@x.com"
        db.commit()
    later = BATCH_TIME + timedelta(days=1)
    clock.now = later

    result = orchestrator.run_full_workflow()

    users = next(outcome for outcome in result.outcomes if outcome.step_name == "dim_users")
    assert users.expired == 1
    assert users.inserted == 1
    with warehouse() as db:
        versions = db.execute(select(DimUser).where(DimUser.user_id == "U1").order_by(DimUser.version_number)).scalars().all()
    assert [(v.email, v.is_current, v.version_number) for v in versions] == [("a@x.com", False, 1), ("b@x.com", True, 2)]
    assert versions[1].effective_date == later
    assert versions[0].expiry_date <= later


def test_fact_step_failure_fails_batch_and_skips_aggregates(orchestrator, seeded_source, warehouse, monkeypatch) -> None:
    def unreachable(tenant_id=None):
        raise StructuralError("failed to read source table tasks: connection refused")

    monkeypatch.setattr(seeded_source, "fetch_tasks", unreachable)

    with pytest.raises(BatchFailedError) as excinfo:
        orchestrator.run_full_workflow()

    batch_id = excinfo.value.batch_id
    assert isinstance(excinfo.value.__cause__, StructuralError)
    assert excinfo.value.outcome.step_name == "fact_tasks"

    batch = orchestrator.ledger.get_batch(batch_id)
    assert batch.status == BATCH_FAILED
    assert "connection refused" in batch.error_message

    with warehouse() as db:
        error = db.execute(select(EtlErrorEntry).where(EtlErrorEntry.batch_id == batch_id)).scalar_one()
        aggregate_rows = db.execute(select(func.count()).select_from(AggDailyTaskMetrics)).scalar_one()
    assert error.error_severity == "CRITICAL"
    assert error.error_code == "StructuralError"
    assert error.source_table == "fact_tasks"
    assert aggregate_rows == 0

    audits = audits_for(warehouse, batch_id)
    assert [audit.table_name for audit in audits] == STEP_ORDER[:6]
    assert audits[-1].status == "FAILED"
    assert audits[-1].operation_type == "INCREMENTAL_LOAD"
    assert audits[1].operation_type == "SCD2_LOAD"


def test_running_batch_blocks_a_new_one(orchestrator, seeded_source, warehouse) -> None:
    stuck = orchestrator.ledger.begin("OLTP")

    with pytest.raises(ConcurrencyError):
        orchestrator.run_full_workflow()

    with warehouse() as db:
        assert db.execute(select(func.count()).select_from(EtlBatch)).scalar_one() == 1
        assert db.execute(select(func.count()).select_from(DimUser)).scalar_one() == 0

    orchestrator.ledger.mark_abandoned(stuck, "killed")
    assert orchestrator.run_full_workflow().status == BATCH_COMPLETED


def test_cancellation_between_steps(orchestrator, seeded_source, warehouse, monkeypatch) -> None:
    cancel = threading.Event()
    original_run = orchestrator.versioner.run

    def run_then_cancel(spec, rows, **kwargs):
        outcome = original_run(spec, rows, **kwargs)
        if spec.name == "dim_users":
            cancel.set()
        return outcome

    monkeypatch.setattr(orchestrator.versioner, "run", run_then_cancel)

    with pytest.raises(BatchCancelledError) as excinfo:
        orchestrator.run_full_workflow(cancel_event=cancel)

    batch = orchestrator.ledger.get_batch(excinfo.value.batch_id)
    assert batch.status == BATCH_FAILED
    assert batch.error_message == "cancelled before step dim_projects"
    assert [audit.table_name for audit in audits_for(warehouse, batch.batch_id)] == STEP_ORDER[:2]


def test_tenant_run_only_loads_that_tenant(orchestrator, seeded_source, warehouse) -> None:
    result = orchestrator.run_full_workflow(tenant_id=ORG_ID)

    assert result.tenant_id == ORG_ID
    with warehouse() as db:
        batch = db.get(EtlBatch, result.batch_id)
        task_ids = set(db.execute(select(FactTask.task_id)).scalars())
        user_ids = set(db.execute(select(DimUser.user_id).where(DimUser.user_key != -1)).scalars())
    assert batch.tenant_id == ORG_ID
    assert task_ids == {"T1", "T2"}
    assert user_ids == {"U1", "U2"}


def test_ledger_failure_does_not_mask_step_error(orchestrator, seeded_source, monkeypatch, caplog) -> None:
    def unreachable(tenant_id=None):
        raise StructuralError("source gone")

    def broken_end(*args, **kwargs):
        raise PersistenceError("warehouse is read-only")

    monkeypatch.setattr(seeded_source, "fetch_projects", unreachable)
    monkeypatch.setattr(orchestrator.ledger, "end", broken_end)

    with caplog.at_level(logging.ERROR, logger="taskwarehouse.fallback"):
        with pytest.raises(BatchFailedError) as excinfo:
            orchestrator.run_full_workflow()

    assert isinstance(excinfo.value.__cause__, StructuralError)
    assert any(r.getMessage() == "failed to finalize batch" for r in caplog.records)


def test_monitoring_reads(orchestrator, seeded_source, clock) -> None:
    assert orchestrator.latest_batch() is None

    first = orchestrator.run_full_workflow()
    clock.now = BATCH_TIME + timedelta(hours=30)
    second = orchestrator.run_full_workflow()

    assert orchestrator.latest_batch().batch_id == second.batch_id
    assert [b.batch_id for b in orchestrator.batch_history()] == [second.batch_id]
    assert [b.batch_id for b in orchestrator.batch_history(48)] == [second.batch_id, first.batch_id]


def test_user_moving_organization_between_runs(orchestrator, seeded_source, oltp, warehouse, clock) -> None:
    orchestrator.run_full_workflow()
    with oltp() as db:
        db.get(User, "U1").organization_id = OTHER_ORG_ID
        db.commit()
    clock.now = BATCH_TIME + timedelta(days=1)
    orchestrator.run_full_workflow()
    clock.now = BATCH_TIME + timedelta(days=2)

    result = orchestrator.run_full_workflow(tenant_id=OTHER_ORG_ID)

    assert result.status == BATCH_COMPLETED
    with warehouse() as db:
        versions = db.execute(select(DimUser).where(DimUser.user_id == "U1").order_by(DimUser.version_number)).scalars().all()
    assert [(v.organization_id, v.version_number, v.is_current) for v in versions] == [
        (ORG_ID, 1, False),
        (OTHER_ORG_ID, 2, True),
    ]


def test_batch_date_outside_configured_calendar_gets_its_own_date_key(
    test_settings, warehouse, seeded_source, clock
) -> None:
    settings = replace(test_settings, calendar_start=date(2024, 1, 1), calendar_end=date(2024, 3, 31))
    orchestrator = EtlOrchestrator(settings, warehouse, seeded_source, clock=clock, holidays={})

    result = orchestrator.run_full_workflow()

    by_step = {outcome.step_name: outcome for outcome in result.outcomes}
    assert by_step["dim_time"].inserted == 167
    with warehouse() as db:
        june_15 = db.execute(select(DimTime.time_key).where(DimTime.full_date == date(2024, 6, 15))).scalar_one()
        date_keys = set(db.execute(select(AggDailyTaskMetrics.date_key)).scalars())
    assert date_keys == {june_15}
