from datetime import date, datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from taskwarehouse.config import Settings
from taskwarehouse.database import build_session_factory, build_source_session_factory
from taskwarehouse.pipeline import EtlOrchestrator
from taskwarehouse.recorder import AuditRecorder
from taskwarehouse.source import OperationalSource
from taskwarehouse.source_models import Organization, Project, SourceBase, Task, TimeLog, User

from warehouse_support import BATCH_TIME, ORG_ID, OTHER_ORG_ID, FixedClock


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(BATCH_TIME)


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_name="taskwarehouse",
        warehouse_database_url=f"sqlite:///{tmp_path / 'warehouse.db'}",
        source_database_url=f"sqlite:///{tmp_path / 'oltp.db'}",
        log_level="INFO",
        source_system="OLTP",
        created_by="ETL_TEST",
        calendar_start=date(2024, 1, 1),
        calendar_end=date(2024, 12, 31),
        workday_hours=8.0,
        history_hours=24,
        max_batch_retries=1,
        retry_backoff_seconds=0,
        schedule_hour_utc=1,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def warehouse(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.warehouse_database_url)


@pytest.fixture()
def oltp(test_settings: Settings) -> sessionmaker[Session]:
    engine = create_engine(test_settings.source_database_url)
    SourceBase.metadata.create_all(engine)
    engine.dispose()
    return build_source_session_factory(test_settings.source_database_url)


@pytest.fixture()
def source(oltp: sessionmaker[Session]) -> OperationalSource:
    return OperationalSource(oltp)


@pytest.fixture()
def recorder(warehouse: sessionmaker[Session], clock: FixedClock) -> AuditRecorder:
    return AuditRecorder(warehouse, clock)


@pytest.fixture()
def orchestrator(
    test_settings: Settings,
    warehouse: sessionmaker[Session],
    source: OperationalSource,
    clock: FixedClock,
) -> EtlOrchestrator:
    return EtlOrchestrator(test_settings, warehouse, source, clock=clock, holidays={})


def seed_operational_data(oltp: sessionmaker[Session]) -> None:
    with oltp() as db:
        db.add_all(
            [
                Organization(organization_id=ORG_ID, name="Acme", subdomain="acme", status="active"),
                Organization(organization_id=OTHER_ORG_ID, name="Globex", subdomain="globex", status="active"),
            ]
        )
        db.add_all(
            [
                User(
                    user_id="U1",
                    organization_id=ORG_ID,
                    email="a@x.com",
                    first_name="Ada",
                    last_name="Lovelace",
                    role="admin",
                    status="active",
                ),
                User(
                    user_id="U2",
                    organization_id=ORG_ID,
                    email="grace@x.com",
                    first_name="Grace",
                    last_name="Hopper",
                    role="member",
                    status="active",
                ),
                User(
                    user_id="U9",
                    organization_id=OTHER_ORG_ID,
                    email="hank@globex.com",
                    first_name="Hank",
                    last_name="Scorpio",
                    role="owner",
                    status="active",
                ),
            ]
        )
        db.add(
            Project(
                project_id="P1",
                organization_id=ORG_ID,
                name="Warehouse",
                status="active",
                start_date=date(2024, 1, 2),
                due_date=date(2024, 9, 30),
                budget=15000.0,
                created_by="U1",
            )
        )
        db.add_all(
            [
                Task(
                    task_id="T1",
                    organization_id=ORG_ID,
                    project_id="P1",
                    title="Model the fact tables",
                    status="in_progress",
                    priority="high",
                    due_date=datetime(2024, 6, 10),
                    estimated_hours=10.0,
                    actual_hours=5.0,
                    story_points=5.0,
                    created_by="U1",
                    assigned_to="U2",
                    created_at=datetime(2024, 6, 1, 9, 0),
                    updated_at=datetime(2024, 6, 5, 9, 0),
                    status_changed_at=datetime(2024, 6, 5, 9, 0),
                ),
                Task(
                    task_id="T2",
                    organization_id=ORG_ID,
                    project_id="P1",
                    title="Write the runbook",
                    status="done",
                    priority="low",
                    due_date=datetime(2024, 6, 12),
                    estimated_hours=4.0,
                    actual_hours=6.0,
                    story_points=2.0,
                    created_by="U1",
                    assigned_to="U2",
                    created_at=datetime(2024, 6, 3, 9, 0),
                    updated_at=datetime(2024, 6, 11, 9, 0),
                    status_changed_at=datetime(2024, 6, 11, 9, 0),
                    completed_at=datetime(2024, 6, 11, 9, 0),
                ),
                Task(
                    task_id="T9",
                    organization_id=OTHER_ORG_ID,
                    title="Unrelated tenant work",
                    status="todo",
                    priority="medium",
                    created_by="U9",
                    assigned_to="U9",
                    created_at=datetime(2024, 6, 14, 9, 0),
                ),
            ]
        )
        db.add_all(
            [
                TimeLog(
                    log_id="L1",
                    organization_id=ORG_ID,
                    task_id="T1",
                    user_id="U2",
                    start_time=datetime(2024, 6, 15, 0, 0),
                    end_time=datetime(2024, 6, 15, 1, 30),
                    billable=True,
                    hourly_rate=100.0,
                ),
                TimeLog(
                    log_id="L2",
                    organization_id=ORG_ID,
                    task_id="T2",
                    user_id="U2",
                    start_time=datetime(2024, 6, 15, 1, 30),
                    end_time=datetime(2024, 6, 15, 1, 45),
                    billable=False,
                ),
                TimeLog(
                    log_id="L3",
                    organization_id=ORG_ID,
                    task_id="T1",
                    user_id="U2",
                    start_time=datetime(2024, 6, 15, 1, 50),
                    end_time=None,
                    billable=True,
                ),
            ]
        )
        db.commit()


@pytest.fixture()
def seeded_source(oltp: sessionmaker[Session], source: OperationalSource) -> OperationalSource:
    seed_operational_data(oltp)
    return source
