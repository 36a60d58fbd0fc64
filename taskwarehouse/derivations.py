from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any

from taskwarehouse.catalogs import TERMINAL_STATUSES
from taskwarehouse.errors import RowTransformError


COMPLETED_RATIO = 100.0
# Unfinished work never reports as fully complete, however many hours were logged.
MAX_OPEN_RATIO = 99.9


@dataclass(frozen=True)
class TaskMetrics:
    days_open: int
    days_in_progress: int
    days_in_review: int
    days_completed: int
    days_in_status: int
    is_overdue: bool
    days_overdue: int
    completion_ratio: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def whole_days(as_of: date | datetime, since: date | datetime | None) -> int:
    if since is None:
        return 0
    return max(0, (_as_date(as_of) - _as_date(since)).days)


def non_negative_number(value: Any, field_name: str, source_key: str | None = None) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise RowTransformError(f"{field_name} must be numeric, got {value!r}", source_key=source_key) from exc
    if number < 0:
        raise RowTransformError(f"{field_name} must not be negative, got {number}", source_key=source_key)
    return number


def completion_ratio(status: str | None, estimated_hours: float | None, actual_hours: float | None) -> float:
    if status in TERMINAL_STATUSES:
        return COMPLETED_RATIO
    if estimated_hours and actual_hours and estimated_hours > 0 and actual_hours > 0:
        return round(min(MAX_OPEN_RATIO, actual_hours / estimated_hours * 100), 2)
    return 0.0


def overdue(due_date: date | datetime | None, status: str | None, as_of: date | datetime) -> tuple[bool, int]:
    if due_date is None or status in TERMINAL_STATUSES:
        return False, 0
    if _as_date(due_date) >= _as_date(as_of):
        return False, 0
    return True, whole_days(as_of, due_date)


def derive_task_metrics(task: dict[str, Any], as_of: datetime) -> TaskMetrics:
    source_key = str(task.get("task_id"))
    status = task.get("status")
    created_at = task.get("created_at")
    completed_at = task.get("completed_at")

    estimated_hours = non_negative_number(task.get("estimated_hours"), "estimated_hours", source_key)
    actual_hours = non_negative_number(task.get("actual_hours"), "actual_hours", source_key)

    if created_at is not None and completed_at is not None and completed_at < created_at:
        raise RowTransformError(
            f"completed_at {completed_at} is before created_at {created_at}",
            source_key=source_key,
        )

    entered_status_at = task.get("status_changed_at") or task.get("updated_at") or created_at
    days_in_status = whole_days(as_of, entered_status_at)
    is_overdue, days_overdue = overdue(task.get("due_date"), status, as_of)

    return TaskMetrics(
        days_open=whole_days(as_of, created_at),
        days_in_progress=days_in_status if status == "in_progress" else 0,
        days_in_review=days_in_status if status == "in_review" else 0,
        days_completed=whole_days(as_of, completed_at) if status in TERMINAL_STATUSES else 0,
        days_in_status=days_in_status,
        is_overdue=is_overdue,
        days_overdue=days_overdue,
        completion_ratio=completion_ratio(status, estimated_hours, actual_hours),
    )


def derive_time_log_metrics(time_log: dict[str, Any]) -> dict[str, Any]:
    source_key = str(time_log.get("log_id"))
    start_time = time_log.get("start_time")
    end_time = time_log.get("end_time")

    if start_time is None:
        raise RowTransformError("start_time is required", source_key=source_key)
    if end_time is not None and end_time < start_time:
        raise RowTransformError(f"end_time {end_time} is before start_time {start_time}", source_key=source_key)

    duration_minutes = round((end_time - start_time).total_seconds() / 60.0, 2) if end_time is not None else 0.0
    duration_hours = round(duration_minutes / 60.0, 2)
    is_billable = bool(time_log.get("billable"))
    billable_hours = duration_hours if is_billable else 0.0
    billing_rate = non_negative_number(time_log.get("hourly_rate"), "hourly_rate", source_key)
    billing_amount = round(billable_hours * billing_rate, 2) if billing_rate is not None else None

    return {
        "duration_minutes": duration_minutes,
        "duration_hours": duration_hours,
        "billable_hours": billable_hours,
        "billing_rate": billing_rate,
        "billing_amount": billing_amount,
        "is_billable": is_billable,
    }
