from collections.abc import Callable
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from taskwarehouse.db_models import EtlAuditEntry, EtlErrorEntry, utc_now
from taskwarehouse.errors import NotFoundError
from taskwarehouse.schemas import StepOutcome


logger = logging.getLogger(__name__)
# Last-resort sink when the audit/error tables themselves cannot be written.
fallback_logger = logging.getLogger("taskwarehouse.fallback")

SEVERITY_INFO = "INFO"
SEVERITY_WARNING = "WARNING"
SEVERITY_ERROR = "ERROR"
SEVERITY_CRITICAL = "CRITICAL"


def error_code_for(exc: BaseException) -> str:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        return str(sqlstate)
    return type(exc).__name__


class AuditRecorder:
    def __init__(self, session_factory: sessionmaker[Session], clock: Callable[[], datetime] = utc_now) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def record_audit(
        self,
        batch_id: str,
        table_name: str,
        operation: str,
        status: str,
        records_affected: int | None,
        start_time: datetime,
        end_time: datetime | None = None,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> int | None:
        end_time = end_time or self.clock()
        entry = EtlAuditEntry(
            batch_id=batch_id,
            table_name=table_name,
            operation_type=operation,
            records_affected=records_affected,
            start_time=start_time,
            end_time=end_time,
            status=status,
            error_message=error_message,
            execution_time_seconds=round((end_time - start_time).total_seconds(), 2),
            details=details,
        )
        with self.session_factory() as db:
            db.add(entry)
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                fallback_logger.error(
                    "failed to write audit entry",
                    extra={
                        "batch_id": batch_id,
                        "table_name": table_name,
                        "operation": operation,
                        "status": status,
                        "records_affected": records_affected,
                        "audit_error": str(exc),
                    },
                )
                return None
            return entry.audit_id

    def record_outcome(self, batch_id: str, outcome: StepOutcome) -> int | None:
        return self.record_audit(
            batch_id,
            outcome.table_name,
            outcome.operation,
            outcome.status,
            outcome.records_affected if outcome.ok else None,
            outcome.started_at,
            outcome.finished_at,
            error_message=str(outcome.error) if outcome.error is not None else None,
            details=outcome.details(),
        )

    def record_error(
        self,
        batch_id: str,
        severity: str,
        code: str | None,
        message: str,
        source_table: str | None = None,
        source_key: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> int | None:
        entry = EtlErrorEntry(
            batch_id=batch_id,
            error_timestamp=self.clock(),
            error_severity=severity,
            error_code=code,
            error_message=message,
            source_table=source_table,
            source_key=source_key,
            error_data=context,
        )
        with self.session_factory() as db:
            db.add(entry)
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                fallback_logger.error(
                    "failed to write error entry",
                    extra={
                        "batch_id": batch_id,
                        "severity": severity,
                        "error_code": code,
                        "error_message": message,
                        "source_table": source_table,
                        "source_key": source_key,
                        "audit_error": str(exc),
                    },
                )
                return None
            return entry.error_id

    def resolve_error(self, error_id: int, *, resolved_by: str, notes: str | None = None) -> None:
        with self.session_factory() as db:
            entry = db.get(EtlErrorEntry, error_id)
            if entry is None:
                raise NotFoundError(f"error entry {error_id} not found")
            entry.resolved = True
            entry.resolved_by = resolved_by
            entry.resolved_timestamp = self.clock()
            entry.resolution_notes = notes
            db.commit()
