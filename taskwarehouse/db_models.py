from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


UNKNOWN_MEMBER_KEY = -1
UNKNOWN_BUSINESS_KEY = "UNKNOWN"

BATCH_RUNNING = "RUNNING"
BATCH_COMPLETED = "COMPLETED"
BATCH_FAILED = "FAILED"
TERMINAL_BATCH_STATUSES = frozenset({BATCH_COMPLETED, BATCH_FAILED})

OP_LOAD = "LOAD"
OP_INCREMENTAL_LOAD = "INCREMENTAL_LOAD"
OP_SCD2_LOAD = "SCD2_LOAD"
OP_AGGREGATE = "AGGREGATE"


class WarehouseBase(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class EtlBatch(WarehouseBase):
    __tablename__ = "etl_batch_log"

    batch_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    batch_start_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    batch_end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=BATCH_RUNNING, index=True)
    source_system: Mapped[str] = mapped_column(String(50))
    tenant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    records_inserted: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    audits: Mapped[list["EtlAuditEntry"]] = relationship(back_populates="batch")
    errors: Mapped[list["EtlErrorEntry"]] = relationship(back_populates="batch")


class EtlAuditEntry(WarehouseBase):
    __tablename__ = "etl_audit_log"

    audit_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(ForeignKey("etl_batch_log.batch_id"), index=True)
    table_name: Mapped[str] = mapped_column(String(100))
    operation_type: Mapped[str] = mapped_column(String(20))
    records_affected: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20))
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_time_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    batch: Mapped[EtlBatch] = relationship(back_populates="audits")


class EtlErrorEntry(WarehouseBase):
    __tablename__ = "etl_error_log"

    error_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(ForeignKey("etl_batch_log.batch_id"), index=True)
    error_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    error_severity: Mapped[str] = mapped_column(String(20))
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str] = mapped_column(Text)
    source_table: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    batch: Mapped[EtlBatch] = relationship(back_populates="errors")


class VersionedDimension:
    effective_date: Mapped[datetime] = mapped_column(DateTime)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    version_number: Mapped[int] = mapped_column(Integer, default=1)
    source_system: Mapped[str | None] = mapped_column(String(50), nullable=True)
    etl_batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    etl_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class DimTime(VersionedDimension, WarehouseBase):
    __tablename__ = "dim_time"
    __table_args__ = (UniqueConstraint("full_date", "effective_date", name="uq_dim_time_version"),)

    time_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_date: Mapped[date] = mapped_column(Date, index=True)
    day_of_week: Mapped[int] = mapped_column(SmallInteger)
    day_name: Mapped[str] = mapped_column(String(9))
    day_of_month: Mapped[int] = mapped_column(SmallInteger)
    day_of_year: Mapped[int] = mapped_column(SmallInteger)
    week_of_year: Mapped[int] = mapped_column(SmallInteger)
    month_number: Mapped[int] = mapped_column(SmallInteger)
    month_name: Mapped[str] = mapped_column(String(9))
    quarter_number: Mapped[int] = mapped_column(SmallInteger)
    year_number: Mapped[int] = mapped_column(Integer)
    is_weekend: Mapped[bool] = mapped_column(Boolean)
    is_holiday: Mapped[bool] = mapped_column(Boolean, default=False)
    holiday_name: Mapped[str | None] = mapped_column(String(50), nullable=True)


class DimUser(VersionedDimension, WarehouseBase):
    __tablename__ = "dim_users"

    user_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)


class DimProject(VersionedDimension, WarehouseBase):
    __tablename__ = "dim_projects"

    project_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(36), index=True)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    project_name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50))
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    budget: Mapped[float | None] = mapped_column(Float, nullable=True)
    manager_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


class DimTaskStatus(VersionedDimension, WarehouseBase):
    __tablename__ = "dim_task_status"
    __table_args__ = (UniqueConstraint("status_id", "effective_date", name="uq_dim_task_status_version"),)

    status_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status_id: Mapped[str] = mapped_column(String(50), index=True)
    status_name: Mapped[str] = mapped_column(String(100))
    status_category: Mapped[str] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class DimPriority(VersionedDimension, WarehouseBase):
    __tablename__ = "dim_priority"
    __table_args__ = (UniqueConstraint("priority_id", "effective_date", name="uq_dim_priority_version"),)

    priority_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    priority_id: Mapped[str] = mapped_column(String(50), index=True)
    priority_name: Mapped[str] = mapped_column(String(100))
    priority_level: Mapped[int] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class FactTask(WarehouseBase):
    __tablename__ = "fact_tasks"

    task_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    project_key: Mapped[int] = mapped_column(Integer, index=True)
    assigned_to_key: Mapped[int] = mapped_column(Integer, index=True)
    reporter_key: Mapped[int] = mapped_column(Integer)
    status_key: Mapped[int] = mapped_column(Integer, index=True)
    priority_key: Mapped[int] = mapped_column(Integer)
    created_date_key: Mapped[int] = mapped_column(Integer, index=True)
    due_date_key: Mapped[int] = mapped_column(Integer, index=True)
    completed_date_key: Mapped[int] = mapped_column(Integer, index=True)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    estimated_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    story_points: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    block_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    task_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    days_open: Mapped[int] = mapped_column(Integer, default=0)
    days_in_progress: Mapped[int] = mapped_column(Integer, default=0)
    days_in_review: Mapped[int] = mapped_column(Integer, default=0)
    days_completed: Mapped[int] = mapped_column(Integer, default=0)
    days_in_status: Mapped[int] = mapped_column(Integer, default=0)
    is_overdue: Mapped[bool] = mapped_column(Boolean, default=False)
    days_overdue: Mapped[int] = mapped_column(Integer, default=0)
    completion_ratio: Mapped[float] = mapped_column(Float, default=0.0)
    etl_batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    etl_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class FactTimeLog(WarehouseBase):
    __tablename__ = "fact_time_logs"

    time_log_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    time_log_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    task_key: Mapped[int] = mapped_column(Integer, index=True)
    user_key: Mapped[int] = mapped_column(Integer, index=True)
    project_key: Mapped[int] = mapped_column(Integer, index=True)
    date_key: Mapped[int] = mapped_column(Integer, index=True)
    start_timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_minutes: Mapped[float] = mapped_column(Float)
    duration_hours: Mapped[float] = mapped_column(Float)
    billable_hours: Mapped[float] = mapped_column(Float, default=0.0)
    billing_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    billing_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_billable: Mapped[bool] = mapped_column(Boolean, default=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    etl_batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    etl_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class AggDailyTaskMetrics(WarehouseBase):
    __tablename__ = "agg_daily_task_metrics"

    date_key: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_key: Mapped[int] = mapped_column(Integer, primary_key=True)
    status_key: Mapped[int] = mapped_column(Integer, primary_key=True)
    priority_key: Mapped[int] = mapped_column(Integer, primary_key=True)
    task_count: Mapped[int] = mapped_column(Integer, default=0)
    open_tasks: Mapped[int] = mapped_column(Integer, default=0)
    in_progress_tasks: Mapped[int] = mapped_column(Integer, default=0)
    completed_tasks: Mapped[int] = mapped_column(Integer, default=0)
    blocked_tasks: Mapped[int] = mapped_column(Integer, default=0)
    overdue_tasks: Mapped[int] = mapped_column(Integer, default=0)
    avg_days_open: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_days_to_complete: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_story_points: Mapped[float] = mapped_column(Float, default=0.0)
    completed_story_points: Mapped[float] = mapped_column(Float, default=0.0)
    completion_ratio: Mapped[float | None] = mapped_column(Float, nullable=True)
    etl_batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    etl_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class AggUserWorkload(WarehouseBase):
    __tablename__ = "agg_user_workload"
    __table_args__ = (Index("idx_agg_user_workload_date_user", "date_key", "user_key"),)

    date_key: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_key: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_key: Mapped[int] = mapped_column(Integer, primary_key=True)
    assigned_tasks: Mapped[int] = mapped_column(Integer, default=0)
    completed_tasks: Mapped[int] = mapped_column(Integer, default=0)
    open_tasks: Mapped[int] = mapped_column(Integer, default=0)
    in_progress_tasks: Mapped[int] = mapped_column(Integer, default=0)
    overdue_tasks: Mapped[int] = mapped_column(Integer, default=0)
    total_hours_logged: Mapped[float] = mapped_column(Float, default=0.0)
    avg_hours_per_task: Mapped[float | None] = mapped_column(Float, nullable=True)
    billable_hours: Mapped[float] = mapped_column(Float, default=0.0)
    non_billable_hours: Mapped[float] = mapped_column(Float, default=0.0)
    utilization_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    etl_batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    etl_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


def touch(row: object, *, batch_id: str, at: datetime) -> None:
    setattr(row, "etl_batch_id", batch_id)
    setattr(row, "etl_timestamp", at)
