from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from taskwarehouse.catalogs import STATUS_CATEGORY_DONE, STATUS_CATEGORY_IN_PROGRESS, STATUS_CATEGORY_OPEN
from taskwarehouse.db_models import (
    OP_AGGREGATE,
    UNKNOWN_MEMBER_KEY,
    AggDailyTaskMetrics,
    AggUserWorkload,
    DimTaskStatus,
    FactTask,
    FactTimeLog,
    touch,
    utc_now,
)
from taskwarehouse.dimensions import TIME_DIMENSION, current_keys
from taskwarehouse.errors import StructuralError
from taskwarehouse.facts import resolve_date_key
from taskwarehouse.schemas import STEP_COMPLETED, STEP_FAILED, StepOutcome


logger = logging.getLogger(__name__)


def _mean(values: list[float]) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), 2)


def status_categories(db: Session) -> dict[int, str]:
    # Every version of a status shares one surrogate-key lookup, current or not.
    stmt = select(DimTaskStatus.status_key, DimTaskStatus.status_category)
    return {status_key: category for status_key, category in db.execute(stmt).all()}


def daily_task_metrics(tasks: list[FactTask], categories: dict[int, str], date_key: int) -> list[AggDailyTaskMetrics]:
    groups: dict[tuple[int, int, int], list[FactTask]] = defaultdict(list)
    for task in tasks:
        groups[(task.project_key, task.status_key, task.priority_key)].append(task)

    rows = []
    for (project_key, status_key, priority_key), members in sorted(groups.items()):
        category = categories.get(status_key)
        completed = [task for task in members if category == STATUS_CATEGORY_DONE]
        days_to_complete = [
            float((task.completed_timestamp - task.created_timestamp).days)
            for task in completed
            if task.completed_timestamp is not None and task.created_timestamp is not None
        ]
        rows.append(
            AggDailyTaskMetrics(
                date_key=date_key,
                project_key=project_key,
                status_key=status_key,
                priority_key=priority_key,
                task_count=len(members),
                open_tasks=len(members) if category == STATUS_CATEGORY_OPEN else 0,
                in_progress_tasks=len(members) if category == STATUS_CATEGORY_IN_PROGRESS else 0,
                completed_tasks=len(completed),
                blocked_tasks=sum(1 for task in members if task.is_blocked),
                overdue_tasks=sum(1 for task in members if task.is_overdue),
                avg_days_open=_mean([float(task.days_open) for task in members]),
                avg_days_to_complete=_mean(days_to_complete),
                total_story_points=sum(task.story_points or 0.0 for task in members),
                completed_story_points=sum(task.story_points or 0.0 for task in completed),
                completion_ratio=_mean([task.completion_ratio for task in members]),
            )
        )
    return rows


def user_workload(
    tasks: list[FactTask],
    time_logs: list[FactTimeLog],
    categories: dict[int, str],
    date_key: int,
    workday_hours: float,
) -> list[AggUserWorkload]:
    assigned: dict[tuple[int, int], list[FactTask]] = defaultdict(list)
    for task in tasks:
        assigned[(task.assigned_to_key, task.project_key)].append(task)

    logged: dict[tuple[int, int], list[FactTimeLog]] = defaultdict(list)
    for time_log in time_logs:
        logged[(time_log.user_key, time_log.project_key)].append(time_log)

    rows = []
    for user_key, project_key in sorted(set(assigned) | set(logged)):
        members = assigned.get((user_key, project_key), [])
        logs = logged.get((user_key, project_key), [])
        total_hours = round(sum(log.duration_hours for log in logs), 2)
        billable_hours = round(sum(log.billable_hours for log in logs), 2)
        utilization = min(100.0, total_hours / workday_hours * 100) if workday_hours > 0 else 0.0
        rows.append(
            AggUserWorkload(
                date_key=date_key,
                user_key=user_key,
                project_key=project_key,
                assigned_tasks=len(members),
                completed_tasks=sum(1 for task in members if categories.get(task.status_key) == STATUS_CATEGORY_DONE),
                open_tasks=sum(1 for task in members if categories.get(task.status_key) == STATUS_CATEGORY_OPEN),
                in_progress_tasks=sum(
                    1 for task in members if categories.get(task.status_key) == STATUS_CATEGORY_IN_PROGRESS
                ),
                overdue_tasks=sum(1 for task in members if task.is_overdue),
                total_hours_logged=total_hours,
                avg_hours_per_task=round(total_hours / len(members), 2) if members else None,
                billable_hours=billable_hours,
                non_billable_hours=round(total_hours - billable_hours, 2),
                utilization_percentage=round(utilization, 2),
            )
        )
    return rows


# Rows for the batch date are deleted and regrouped from scratch.
class AggregateBuilder:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        workday_hours: float = 8.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.workday_hours = workday_hours
        self.clock = clock

    def rebuild_daily_task_metrics(self, *, batch_id: str, batch_time: datetime) -> StepOutcome:
        def build(db: Session, date_key: int) -> list[AggDailyTaskMetrics]:
            tasks = list(db.execute(select(FactTask)).scalars().all())
            return daily_task_metrics(tasks, status_categories(db), date_key)

        return self._replace(AggDailyTaskMetrics, "agg_daily_task_metrics", build, batch_id, batch_time)

    def rebuild_user_workload(self, *, batch_id: str, batch_time: datetime) -> StepOutcome:
        def build(db: Session, date_key: int) -> list[AggUserWorkload]:
            tasks = list(db.execute(select(FactTask)).scalars().all())
            time_logs = list(db.execute(select(FactTimeLog).where(FactTimeLog.date_key == date_key)).scalars().all())
            return user_workload(tasks, time_logs, status_categories(db), date_key, self.workday_hours)

        return self._replace(AggUserWorkload, "agg_user_workload", build, batch_id, batch_time)

    def _replace(
        self,
        model: type,
        table_name: str,
        build: Callable[[Session, int], list],
        batch_id: str,
        batch_time: datetime,
    ) -> StepOutcome:
        started_at = self.clock()
        with self.session_factory() as db:
            try:
                date_key = resolve_date_key(current_keys(db, TIME_DIMENSION), batch_time)
                if date_key == UNKNOWN_MEMBER_KEY:
                    raise StructuralError(f"dim_time has no row for batch date {batch_time.date()}")
                removed = db.execute(
                    delete(model).where(model.date_key == date_key).execution_options(synchronize_session=False)
                ).rowcount
                rows = build(db, date_key)
                for row in rows:
                    touch(row, batch_id=batch_id, at=batch_time)
                db.add_all(rows)
                db.commit()
            except Exception as exc:
                db.rollback()
                logger.exception("aggregate rebuild failed", extra={"table_name": table_name, "batch_id": batch_id})
                return StepOutcome(
                    step_name=table_name,
                    table_name=table_name,
                    operation=OP_AGGREGATE,
                    status=STEP_FAILED,
                    started_at=started_at,
                    finished_at=self.clock(),
                    error=exc,
                )

        logger.info(
            "aggregate rebuilt",
            extra={"table_name": table_name, "batch_id": batch_id, "date_key": date_key, "rows": len(rows), "removed": removed},
        )
        return StepOutcome(
            step_name=table_name,
            table_name=table_name,
            operation=OP_AGGREGATE,
            status=STEP_COMPLETED,
            started_at=started_at,
            finished_at=self.clock(),
            inserted=len(rows),
        )
