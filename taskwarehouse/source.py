from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from decimal import Decimal
import logging
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from taskwarehouse.catalogs import PRIORITY_CATALOG, TASK_STATUS_CATALOG
from taskwarehouse.errors import StructuralError
from taskwarehouse.source_models import Project, Task, TimeLog, User


logger = logging.getLogger(__name__)

SourceRow = dict[str, Any]


def normalize_value(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _row_to_dict(obj: object, columns: Iterable[str]) -> SourceRow:
    return {name: normalize_value(getattr(obj, name)) for name in columns}


class OperationalSource:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        status_catalog: Sequence[dict[str, object]] = TASK_STATUS_CATALOG,
        priority_catalog: Sequence[dict[str, object]] = PRIORITY_CATALOG,
    ) -> None:
        self.session_factory = session_factory
        self.status_catalog = status_catalog
        self.priority_catalog = priority_catalog

    def _fetch(self, stmt: Select, model: type, table_name: str) -> list[SourceRow]:
        columns = [column.key for column in model.__table__.columns]
        try:
            with self.session_factory() as db:
                rows = [_row_to_dict(obj, columns) for obj in db.execute(stmt).scalars().all()]
        except SQLAlchemyError as exc:
            raise StructuralError(f"failed to read source table {table_name}: {exc}") from exc

        logger.debug("source rows fetched", extra={"source_table": table_name, "row_count": len(rows)})
        return rows

    def fetch_users(self, tenant_id: str | None = None) -> list[SourceRow]:
        stmt = select(User)
        if tenant_id is not None:
            stmt = stmt.where(User.organization_id == tenant_id)
        return self._fetch(stmt, User, "users")

    def fetch_projects(self, tenant_id: str | None = None) -> list[SourceRow]:
        # Soft-deleted projects count as deleted upstream.
        stmt = select(Project).where(Project.deleted_at.is_(None))
        if tenant_id is not None:
            stmt = stmt.where(Project.organization_id == tenant_id)
        return self._fetch(stmt, Project, "projects")

    def fetch_tasks(self, tenant_id: str | None = None) -> list[SourceRow]:
        stmt = select(Task).order_by(Task.created_at, Task.task_id)
        if tenant_id is not None:
            stmt = stmt.where(Task.organization_id == tenant_id)
        return self._fetch(stmt, Task, "tasks")

    def fetch_time_logs(self, tenant_id: str | None = None) -> list[SourceRow]:
        stmt = select(TimeLog).order_by(TimeLog.start_time, TimeLog.log_id)
        if tenant_id is not None:
            stmt = stmt.where(TimeLog.organization_id == tenant_id)
        return self._fetch(stmt, TimeLog, "time_logs")

    def fetch_task_statuses(self, tenant_id: str | None = None) -> list[SourceRow]:
        return [dict(row) for row in self.status_catalog]

    def fetch_priorities(self, tenant_id: str | None = None) -> list[SourceRow]:
        return [dict(row) for row in self.priority_catalog]
