from collections.abc import Callable, Iterable
from datetime import date, datetime
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from taskwarehouse.db_models import OP_INCREMENTAL_LOAD, UNKNOWN_MEMBER_KEY, FactTask, FactTimeLog, touch, utc_now
from taskwarehouse.derivations import derive_task_metrics, derive_time_log_metrics, non_negative_number
from taskwarehouse.dimensions import (
    PRIORITY_DIMENSION,
    PROJECT_DIMENSION,
    TASK_STATUS_DIMENSION,
    TIME_DIMENSION,
    USER_DIMENSION,
    current_keys,
    values_differ,
)
from taskwarehouse.errors import RowTransformError
from taskwarehouse.recorder import SEVERITY_ERROR, AuditRecorder, error_code_for
from taskwarehouse.schemas import STEP_COMPLETED, STEP_FAILED, StepOutcome
from taskwarehouse.source import SourceRow


logger = logging.getLogger(__name__)

# Returned by a value builder when a row is not ready to load yet.
DEFERRED = None


def resolve_key(keys: dict[Any, int], business_key: Any) -> int:
    # Unresolved references point at the unknown member instead of failing the row.
    if business_key is None:
        return UNKNOWN_MEMBER_KEY
    return keys.get(business_key, UNKNOWN_MEMBER_KEY)


def resolve_date_key(keys: dict[date, int], value: date | datetime | None) -> int:
    if isinstance(value, datetime):
        value = value.date()
    return resolve_key(keys, value)


class KeyResolver:

    def __init__(self, db: Session) -> None:
        self.users = current_keys(db, USER_DIMENSION)
        self.projects = current_keys(db, PROJECT_DIMENSION)
        self.statuses = current_keys(db, TASK_STATUS_DIMENSION)
        self.priorities = current_keys(db, PRIORITY_DIMENSION)
        self.dates = current_keys(db, TIME_DIMENSION)

    def user(self, user_id: str | None) -> int:
        return resolve_key(self.users, user_id)

    def project(self, project_id: str | None) -> int:
        return resolve_key(self.projects, project_id)

    def status(self, status_id: str | None) -> int:
        return resolve_key(self.statuses, status_id)

    def priority(self, priority_id: str | None) -> int:
        return resolve_key(self.priorities, priority_id)

    def day(self, value: date | datetime | None) -> int:
        return resolve_date_key(self.dates, value)


class FactSynchronizer:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        recorder: AuditRecorder,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.recorder = recorder
        self.clock = clock

    def sync_tasks(
        self,
        source_rows: Iterable[SourceRow],
        *,
        batch_id: str,
        batch_time: datetime,
        tenant_id: str | None = None,
    ) -> StepOutcome:
        def build(row: SourceRow, db: Session, resolver: KeyResolver) -> dict[str, Any]:
            return task_values(row, resolver, batch_time)

        return self._synchronize(
            table_name="fact_tasks",
            model=FactTask,
            business_key="task_id",
            source_key="task_id",
            source_rows=source_rows,
            build_values=build,
            batch_id=batch_id,
            batch_time=batch_time,
            tenant_id=tenant_id,
        )

    def sync_time_logs(
        self,
        source_rows: Iterable[SourceRow],
        *,
        batch_id: str,
        batch_time: datetime,
        tenant_id: str | None = None,
    ) -> StepOutcome:
        task_links: dict[str, tuple[int, int]] | None = None

        def build(row: SourceRow, db: Session, resolver: KeyResolver) -> dict[str, Any] | None:
            nonlocal task_links
            if task_links is None:
                stmt = select(FactTask.task_id, FactTask.task_key, FactTask.project_key)
                task_links = {task_id: (task_key, project_key) for task_id, task_key, project_key in db.execute(stmt)}
            return time_log_values(row, resolver, task_links)

        return self._synchronize(
            table_name="fact_time_logs",
            model=FactTimeLog,
            business_key="time_log_id",
            source_key="log_id",
            source_rows=source_rows,
            build_values=build,
            batch_id=batch_id,
            batch_time=batch_time,
            tenant_id=tenant_id,
        )

    def _synchronize(
        self,
        *,
        table_name: str,
        model: type,
        business_key: str,
        source_key: str,
        source_rows: Iterable[SourceRow],
        build_values: Callable[[SourceRow, Session, KeyResolver], dict[str, Any] | None],
        batch_id: str,
        batch_time: datetime,
        tenant_id: str | None,
    ) -> StepOutcome:
        started_at = self.clock()
        counts = {"inserted": 0, "updated": 0, "unchanged": 0, "failed": 0, "skipped": 0}
        row_errors: list[tuple[str | None, RowTransformError]] = []

        with self.session_factory() as db:
            try:
                resolver = KeyResolver(db)
                # Facts are matched across tenants so a row that moved organization is updated in place.
                existing = {getattr(fact, business_key): fact for fact in db.execute(select(model)).scalars().all()}

                for row in source_rows:
                    key = row.get(source_key)
                    try:
                        values = build_values(row, db, resolver)
                    except RowTransformError as exc:
                        counts["failed"] += 1
                        row_errors.append((None if key is None else str(key), exc))
                        continue

                    if values is DEFERRED:
                        counts["skipped"] += 1
                        continue

                    fact = existing.get(key)
                    if fact is None:
                        fact = model(**{business_key: key}, **values)
                        touch(fact, batch_id=batch_id, at=batch_time)
                        db.add(fact)
                        existing[key] = fact
                        counts["inserted"] += 1
                    elif any(values_differ(getattr(fact, name), value) for name, value in values.items()):
                        for name, value in values.items():
                            setattr(fact, name, value)
                        touch(fact, batch_id=batch_id, at=batch_time)
                        counts["updated"] += 1
                    else:
                        counts["unchanged"] += 1

                db.commit()
            except Exception as exc:
                db.rollback()
                logger.exception("fact synchronization failed", extra={"table_name": table_name, "batch_id": batch_id})
                outcome = StepOutcome(
                    step_name=table_name,
                    table_name=table_name,
                    operation=OP_INCREMENTAL_LOAD,
                    status=STEP_FAILED,
                    started_at=started_at,
                    finished_at=self.clock(),
                    error=exc,
                )
                self._record_row_errors(batch_id, table_name, row_errors)
                return outcome

        # Row errors are written after the data transaction so the two never contend.
        self._record_row_errors(batch_id, table_name, row_errors)
        logger.info(
            "facts synchronized",
            extra={"table_name": table_name, "batch_id": batch_id, "tenant_id": tenant_id, **counts},
        )
        return StepOutcome(
            step_name=table_name,
            table_name=table_name,
            operation=OP_INCREMENTAL_LOAD,
            status=STEP_COMPLETED,
            started_at=started_at,
            finished_at=self.clock(),
            **counts,
        )

    def _record_row_errors(
        self,
        batch_id: str,
        table_name: str,
        row_errors: list[tuple[str | None, RowTransformError]],
    ) -> None:
        for key, exc in row_errors:
            logger.warning(
                "row skipped",
                extra={"table_name": table_name, "batch_id": batch_id, "source_key": exc.source_key or key},
            )
            self.recorder.record_error(
                batch_id,
                SEVERITY_ERROR,
                error_code_for(exc),
                str(exc),
                source_table=table_name,
                source_key=exc.source_key or key,
                context={"error_context": f"row transform in {table_name}"},
            )


def task_values(row: SourceRow, resolver: KeyResolver, as_of: datetime) -> dict[str, Any]:
    source_key = str(row.get("task_id"))
    if not row.get("title"):
        raise RowTransformError("title is required", source_key=source_key)

    metrics = derive_task_metrics(row, as_of)
    return {
        "organization_id": row.get("organization_id"),
        "project_key": resolver.project(row.get("project_id")),
        "assigned_to_key": resolver.user(row.get("assigned_to")),
        "reporter_key": resolver.user(row.get("created_by")),
        "status_key": resolver.status(row.get("status")),
        "priority_key": resolver.priority(row.get("priority")),
        "created_date_key": resolver.day(row.get("created_at")),
        "due_date_key": resolver.day(row.get("due_date")),
        "completed_date_key": resolver.day(row.get("completed_at")),
        "title": row["title"],
        "description": row.get("description"),
        "estimated_hours": non_negative_number(row.get("estimated_hours"), "estimated_hours", source_key),
        "actual_hours": non_negative_number(row.get("actual_hours"), "actual_hours", source_key),
        "story_points": non_negative_number(row.get("story_points"), "story_points", source_key),
        "is_blocked": bool(row.get("is_blocked")),
        "block_reason": row.get("block_reason"),
        "parent_task_id": row.get("parent_task_id"),
        "task_type": row.get("task_type"),
        "created_timestamp": row.get("created_at"),
        "updated_timestamp": row.get("updated_at"),
        "completed_timestamp": row.get("completed_at"),
        **metrics.as_dict(),
    }


def time_log_values(
    row: SourceRow,
    resolver: KeyResolver,
    task_links: dict[str, tuple[int, int]],
) -> dict[str, Any] | None:
    # Running timers are picked up once they are stopped.
    if row.get("end_time") is None:
        return DEFERRED

    metrics = derive_time_log_metrics(row)
    task_key, project_key = task_links.get(row.get("task_id"), (UNKNOWN_MEMBER_KEY, UNKNOWN_MEMBER_KEY))
    return {
        "organization_id": row.get("organization_id"),
        "task_key": task_key,
        "user_key": resolver.user(row.get("user_id")),
        "project_key": project_key,
        "date_key": resolver.day(row.get("start_time")),
        "start_timestamp": row.get("start_time"),
        "end_timestamp": row.get("end_time"),
        "description": row.get("description"),
        **metrics,
    }
