from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from taskwarehouse.catalogs import calendar_row
from taskwarehouse.db_models import (
    OP_LOAD,
    OP_SCD2_LOAD,
    UNKNOWN_BUSINESS_KEY,
    UNKNOWN_MEMBER_KEY,
    DimPriority,
    DimProject,
    DimTaskStatus,
    DimTime,
    DimUser,
    utc_now,
)
from taskwarehouse.errors import ConcurrencyError, StructuralError
from taskwarehouse.schemas import STEP_COMPLETED, STEP_FAILED, StepOutcome
from taskwarehouse.source import SourceRow, normalize_value


logger = logging.getLogger(__name__)

# Expired rows end one tick before their successor becomes effective.
EXPIRY_OFFSET = timedelta(microseconds=1)
UNKNOWN_MEMBER_EFFECTIVE = datetime(1900, 1, 1)
UNKNOWN_DATE = date(1900, 1, 1)


@dataclass(frozen=True)
class DimensionSpec:
    name: str
    model: type
    surrogate_key: str
    business_key: str
    source_key: str
    attribute_map: Mapping[str, str]
    tracked: tuple[str, ...]
    unknown_member: Mapping[str, Any]
    operation: str = OP_SCD2_LOAD
    tenant_column: str | None = None

    def column(self, name: str):
        return getattr(self.model, name)


TIME_ATTRIBUTES = (
    "day_of_week",
    "day_name",
    "day_of_month",
    "day_of_year",
    "week_of_year",
    "month_number",
    "month_name",
    "quarter_number",
    "year_number",
    "is_weekend",
    "is_holiday",
    "holiday_name",
)

TIME_DIMENSION = DimensionSpec(
    name="dim_time",
    model=DimTime,
    surrogate_key="time_key",
    business_key="full_date",
    source_key="full_date",
    attribute_map={name: name for name in TIME_ATTRIBUTES},
    tracked=TIME_ATTRIBUTES,
    unknown_member={**calendar_row(UNKNOWN_DATE, {}), "day_name": "Unknown", "month_name": "Unknown"},
    operation=OP_LOAD,
)

USER_DIMENSION = DimensionSpec(
    name="dim_users",
    model=DimUser,
    surrogate_key="user_key",
    business_key="user_id",
    source_key="user_id",
    attribute_map={
        "organization_id": "organization_id",
        "email": "email",
        "first_name": "first_name",
        "last_name": "last_name",
        "role": "role",
        "status": "status",
    },
    tracked=("organization_id", "email", "first_name", "last_name", "role", "status"),
    unknown_member={"user_id": UNKNOWN_BUSINESS_KEY},
    tenant_column="organization_id",
)

PROJECT_DIMENSION = DimensionSpec(
    name="dim_projects",
    model=DimProject,
    surrogate_key="project_key",
    business_key="project_id",
    source_key="project_id",
    attribute_map={
        "organization_id": "organization_id",
        "project_name": "name",
        "description": "description",
        "status": "status",
        "start_date": "start_date",
        "end_date": "due_date",
        "budget": "budget",
        "manager_id": "created_by",
    },
    tracked=(
        "organization_id",
        "project_name",
        "description",
        "status",
        "start_date",
        "end_date",
        "budget",
        "manager_id",
    ),
    unknown_member={"project_id": UNKNOWN_BUSINESS_KEY, "project_name": "Unknown", "status": "unknown"},
    tenant_column="organization_id",
)

TASK_STATUS_DIMENSION = DimensionSpec(
    name="dim_task_status",
    model=DimTaskStatus,
    surrogate_key="status_key",
    business_key="status_id",
    source_key="status_id",
    attribute_map={"status_name": "status_name", "status_category": "status_category", "is_active": "is_active"},
    tracked=("status_name", "status_category", "is_active"),
    unknown_member={"status_id": UNKNOWN_BUSINESS_KEY, "status_name": "Unknown", "status_category": "unknown"},
)

PRIORITY_DIMENSION = DimensionSpec(
    name="dim_priority",
    model=DimPriority,
    surrogate_key="priority_key",
    business_key="priority_id",
    source_key="priority_id",
    attribute_map={"priority_name": "priority_name", "priority_level": "priority_level", "is_active": "is_active"},
    tracked=("priority_name", "priority_level", "is_active"),
    unknown_member={"priority_id": UNKNOWN_BUSINESS_KEY, "priority_name": "Unknown", "priority_level": 0},
)

DIMENSIONS: tuple[DimensionSpec, ...] = (
    TIME_DIMENSION,
    USER_DIMENSION,
    PROJECT_DIMENSION,
    TASK_STATUS_DIMENSION,
    PRIORITY_DIMENSION,
)


def comparable(value: Any) -> Any:
    value = normalize_value(value)
    if isinstance(value, float):
        return round(value, 2)
    return value


def values_differ(current: Any, incoming: Any) -> bool:
    # None compares equal only to None, so a change to or from null is drift.
    return comparable(current) != comparable(incoming)


def has_drift(row: object, incoming: Mapping[str, Any], tracked: Iterable[str]) -> bool:
    return any(values_differ(getattr(row, name), incoming.get(name)) for name in tracked)


def ensure_unknown_member(db: Session, spec: DimensionSpec) -> bool:
    if db.get(spec.model, UNKNOWN_MEMBER_KEY) is not None:
        return False

    db.add(
        spec.model(
            **{spec.surrogate_key: UNKNOWN_MEMBER_KEY},
            **spec.unknown_member,
            effective_date=UNKNOWN_MEMBER_EFFECTIVE,
            expiry_date=None,
            is_current=True,
            version_number=1,
            source_system="ETL",
            etl_timestamp=UNKNOWN_MEMBER_EFFECTIVE,
        )
    )
    db.flush()
    return True


def current_keys(db: Session, spec: DimensionSpec) -> dict[Any, int]:
    stmt = select(spec.column(spec.business_key), spec.column(spec.surrogate_key)).where(
        spec.model.is_current.is_(True),
        spec.column(spec.surrogate_key) != UNKNOWN_MEMBER_KEY,
    )
    return {business_key: surrogate for business_key, surrogate in db.execute(stmt).all()}


def _project_source_rows(spec: DimensionSpec, source_rows: Iterable[SourceRow]) -> dict[Any, dict[str, Any]]:
    projected: dict[Any, dict[str, Any]] = {}
    for row in source_rows:
        try:
            business_key = row[spec.source_key]
            attributes = {attr: normalize_value(row[column]) for attr, column in spec.attribute_map.items()}
        except KeyError as exc:
            raise StructuralError(f"source rows for {spec.name} are missing column {exc.args[0]!r}") from exc

        if business_key is None:
            raise StructuralError(f"source row for {spec.name} has no {spec.source_key}")
        if business_key in projected:
            logger.warning(
                "duplicate business key in source snapshot",
                extra={"dimension": spec.name, "business_key": str(business_key)},
            )
        projected[business_key] = attributes
    return projected


class DimensionVersioner:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        source_system: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.source_system = source_system
        self.clock = clock

    def run(
        self,
        spec: DimensionSpec,
        source_rows: Iterable[SourceRow],
        *,
        batch_id: str,
        batch_time: datetime,
        tenant_id: str | None = None,
    ) -> StepOutcome:
        started_at = self.clock()
        counts = {"inserted": 0, "expired": 0, "tombstoned": 0, "unchanged": 0}

        with self.session_factory() as db:
            try:
                incoming_by_key = _project_source_rows(spec, source_rows)
                ensure_unknown_member(db, spec)
                self._reconcile(db, spec, incoming_by_key, counts, batch_id, batch_time, tenant_id)
                db.commit()
            except Exception as exc:
                db.rollback()
                logger.exception("dimension reconciliation failed", extra={"dimension": spec.name, "batch_id": batch_id})
                return StepOutcome(
                    step_name=spec.name,
                    table_name=spec.name,
                    operation=spec.operation,
                    status=STEP_FAILED,
                    started_at=started_at,
                    finished_at=self.clock(),
                    error=exc,
                )

        logger.info("dimension reconciled", extra={"dimension": spec.name, "batch_id": batch_id, **counts})
        return StepOutcome(
            step_name=spec.name,
            table_name=spec.name,
            operation=spec.operation,
            status=STEP_COMPLETED,
            started_at=started_at,
            finished_at=self.clock(),
            **counts,
        )

    def _in_scope(self, row: object, spec: DimensionSpec, tenant_id: str | None) -> bool:
        if tenant_id is None or spec.tenant_column is None:
            return True
        return getattr(row, spec.tenant_column) == tenant_id

    def _reconcile(
        self,
        db: Session,
        spec: DimensionSpec,
        incoming_by_key: dict[Any, dict[str, Any]],
        counts: dict[str, int],
        batch_id: str,
        batch_time: datetime,
        tenant_id: str | None,
    ) -> None:
        business_key = spec.column(spec.business_key)
        surrogate_key = spec.column(spec.surrogate_key)
        expire_at = batch_time - EXPIRY_OFFSET

        # A tenant run owns its tenant's current rows plus any key in its snapshot,
        # wherever that key currently lives.
        current_stmt = select(spec.model).where(spec.model.is_current.is_(True), surrogate_key != UNKNOWN_MEMBER_KEY)
        current_by_key = {
            getattr(row, spec.business_key): row
            for row in db.execute(current_stmt).scalars().all()
            if getattr(row, spec.business_key) in incoming_by_key or self._in_scope(row, spec, tenant_id)
        }

        for key, row in current_by_key.items():
            incoming = incoming_by_key.get(key)
            if incoming is not None and not has_drift(row, incoming, spec.tracked):
                counts["unchanged"] += 1
                continue

            version = row.version_number
            self._expire(db, spec, key, version, expire_at, batch_time)
            counts["expired"] += 1
            if incoming is None:
                counts["tombstoned"] += 1
                continue

            db.add(self._new_version(spec, key, incoming, version + 1, batch_id, batch_time))
            db.flush()
            counts["inserted"] += 1

        new_keys = [key for key in incoming_by_key if key not in current_by_key]
        if not new_keys:
            return

        # Tombstoned keys that reappear continue their version chain.
        prior_stmt = (
            select(business_key, func.max(spec.model.version_number))
            .where(surrogate_key != UNKNOWN_MEMBER_KEY)
            .group_by(business_key)
        )
        prior_versions = dict(db.execute(prior_stmt).all())

        for key in new_keys:
            version = prior_versions.get(key, 0) + 1
            db.add(self._new_version(spec, key, incoming_by_key[key], version, batch_id, batch_time))
            counts["inserted"] += 1
        db.flush()

    def _expire(
        self,
        db: Session,
        spec: DimensionSpec,
        key: Any,
        version: int,
        expire_at: datetime,
        batch_time: datetime,
    ) -> None:
        result = db.execute(
            update(spec.model)
            .where(
                spec.column(spec.business_key) == key,
                spec.model.version_number == version,
                spec.model.is_current.is_(True),
            )
            .values(expiry_date=expire_at, is_current=False, etl_timestamp=batch_time)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyError(
                f"{spec.name} key {key!r} version {version} was changed by another writer during expiry"
            )

    def _new_version(
        self,
        spec: DimensionSpec,
        key: Any,
        attributes: dict[str, Any],
        version: int,
        batch_id: str,
        batch_time: datetime,
    ) -> object:
        return spec.model(
            **{spec.business_key: key},
            **attributes,
            effective_date=batch_time,
            expiry_date=None,
            is_current=True,
            version_number=version,
            source_system=self.source_system,
            etl_batch_id=batch_id,
            etl_timestamp=batch_time,
        )
