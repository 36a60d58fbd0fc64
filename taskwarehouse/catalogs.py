from datetime import date, timedelta


STATUS_CATEGORY_OPEN = "open"
STATUS_CATEGORY_IN_PROGRESS = "in_progress"
STATUS_CATEGORY_DONE = "done"

# The operational schema encodes status and priority as CHECK-constrained enums,
# so their reference rows live here.
TASK_STATUS_CATALOG: tuple[dict[str, object], ...] = (
    {"status_id": "backlog", "status_name": "Backlog", "status_category": STATUS_CATEGORY_OPEN, "is_active": True},
    {"status_id": "todo", "status_name": "To Do", "status_category": STATUS_CATEGORY_OPEN, "is_active": True},
    {
        "status_id": "in_progress",
        "status_name": "In Progress",
        "status_category": STATUS_CATEGORY_IN_PROGRESS,
        "is_active": True,
    },
    {
        "status_id": "in_review",
        "status_name": "In Review",
        "status_category": STATUS_CATEGORY_IN_PROGRESS,
        "is_active": True,
    },
    {"status_id": "done", "status_name": "Done", "status_category": STATUS_CATEGORY_DONE, "is_active": True},
)

PRIORITY_CATALOG: tuple[dict[str, object], ...] = (
    {"priority_id": "critical", "priority_name": "Critical", "priority_level": 1, "is_active": True},
    {"priority_id": "high", "priority_name": "High", "priority_level": 2, "is_active": True},
    {"priority_id": "medium", "priority_name": "Medium", "priority_level": 3, "is_active": True},
    {"priority_id": "low", "priority_name": "Low", "priority_level": 4, "is_active": True},
)

TERMINAL_STATUSES = frozenset(
    str(row["status_id"]) for row in TASK_STATUS_CATALOG if row["status_category"] == STATUS_CATEGORY_DONE
)

US_HOLIDAYS: dict[date, str] = {
    date(2023, 1, 1): "New Year's Day",
    date(2023, 1, 16): "Martin Luther King Jr. Day",
    date(2023, 2, 20): "Presidents' Day",
    date(2023, 5, 29): "Memorial Day",
    date(2023, 7, 4): "Independence Day",
    date(2023, 9, 4): "Labor Day",
    date(2023, 10, 9): "Columbus Day",
    date(2023, 11, 10): "Veterans Day",
    date(2023, 11, 23): "Thanksgiving Day",
    date(2023, 12, 25): "Christmas Day",
}

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


def calendar_row(day: date, holidays: dict[date, str]) -> dict[str, object]:
    # Sunday is 0, matching the warehouse's day-of-week convention.
    day_of_week = day.isoweekday() % 7
    holiday_name = holidays.get(day)
    return {
        "full_date": day,
        "day_of_week": day_of_week,
        "day_name": DAY_NAMES[day_of_week],
        "day_of_month": day.day,
        "day_of_year": day.timetuple().tm_yday,
        "week_of_year": day.isocalendar().week,
        "month_number": day.month,
        "month_name": MONTH_NAMES[day.month - 1],
        "quarter_number": (day.month - 1) // 3 + 1,
        "year_number": day.year,
        "is_weekend": day_of_week in (0, 6),
        "is_holiday": holiday_name is not None,
        "holiday_name": holiday_name,
    }


def calendar_rows(start: date, end: date, holidays: dict[date, str] | None = None) -> list[dict[str, object]]:
    if end < start:
        raise ValueError(f"calendar end {end} is before start {start}")

    holidays = US_HOLIDAYS if holidays is None else holidays
    rows: list[dict[str, object]] = []
    day = start
    while day <= end:
        rows.append(calendar_row(day, holidays))
        day += timedelta(days=1)
    return rows
