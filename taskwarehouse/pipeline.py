from collections.abc import Callable
from datetime import date, datetime
import logging
import threading

from sqlalchemy.orm import Session, sessionmaker

from taskwarehouse.aggregates import AggregateBuilder
from taskwarehouse.catalogs import calendar_rows
from taskwarehouse.config import Settings
from taskwarehouse.db_models import BATCH_COMPLETED, BATCH_FAILED, OP_AGGREGATE, OP_INCREMENTAL_LOAD, utc_now
from taskwarehouse.dimensions import (
    PRIORITY_DIMENSION,
    PROJECT_DIMENSION,
    TASK_STATUS_DIMENSION,
    TIME_DIMENSION,
    USER_DIMENSION,
    DimensionVersioner,
)
from taskwarehouse.errors import (
    BatchCancelledError,
    BatchFailedError,
    ConcurrencyError,
    InvalidStateError,
    PersistenceError,
)
from taskwarehouse.facts import FactSynchronizer
from taskwarehouse.ledger import BatchLedger
from taskwarehouse.recorder import (
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    AuditRecorder,
    error_code_for,
    fallback_logger,
)
from taskwarehouse.schemas import STEP_FAILED, BatchCounts, BatchResult, BatchStatus, StepOutcome
from taskwarehouse.source import OperationalSource


logger = logging.getLogger(__name__)

Step = tuple[str, str, str, Callable[[], StepOutcome]]


# A batch is never resumed. A failed or cancelled batch is finalized as FAILED
# and a retry starts a fresh one.
class EtlOrchestrator:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        source: OperationalSource,
        *,
        clock: Callable[[], datetime] = utc_now,
        holidays: dict[date, str] | None = None,
    ) -> None:
        self.settings = settings
        self.source = source
        self.clock = clock
        self.holidays = holidays
        self.ledger = BatchLedger(session_factory, clock)
        self.recorder = AuditRecorder(session_factory, clock)
        self.versioner = DimensionVersioner(session_factory, source_system=settings.source_system, clock=clock)
        self.facts = FactSynchronizer(session_factory, self.recorder, clock=clock)
        self.aggregates = AggregateBuilder(session_factory, workday_hours=settings.workday_hours, clock=clock)

    def run_full_workflow(
        self,
        *,
        tenant_id: str | None = None,
        source_system: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        running = self.ledger.running_batches()
        if running:
            raise ConcurrencyError(f"batch {running[0]} is still running; concurrent batches are not supported")

        source_system = source_system or self.settings.source_system
        batch_id = self.ledger.begin(source_system, created_by=self.settings.created_by, tenant_id=tenant_id)
        batch_time = self.ledger.get_batch(batch_id).batch_start_time
        logger.info("etl workflow started", extra={"batch_id": batch_id, "tenant_id": tenant_id})

        outcomes: list[StepOutcome] = []
        for step_name, table_name, operation, fn in self._steps(batch_id, batch_time, tenant_id):
            if cancel_event is not None and cancel_event.is_set():
                self._cancel(batch_id, step_name, outcomes)

            outcome = self._run_step(batch_id, step_name, table_name, operation, fn)
            outcomes.append(outcome)
            if not outcome.ok:
                self._fail(batch_id, outcome, outcomes)

        counts = BatchCounts.from_outcomes(outcomes)
        self._finalize(batch_id, BATCH_COMPLETED, counts)
        logger.info(
            "etl workflow completed",
            extra={"batch_id": batch_id, "records_processed": counts.processed, "records_failed": counts.failed},
        )
        return BatchResult(
            batch_id=batch_id,
            status=BATCH_COMPLETED,
            started_at=batch_time,
            finished_at=self.clock(),
            tenant_id=tenant_id,
            counts=counts,
            outcomes=tuple(outcomes),
        )

    def latest_batch(self) -> BatchStatus | None:
        return self.ledger.latest_batch()

    def batch_history(self, hours_back: int | None = None) -> list[BatchStatus]:
        return self.ledger.batch_history(hours_back if hours_back is not None else self.settings.history_hours)

    def _steps(self, batch_id: str, batch_time: datetime, tenant_id: str | None) -> list[Step]:
        scope = {"batch_id": batch_id, "batch_time": batch_time, "tenant_id": tenant_id}
        # The batch date always gets a calendar row so aggregates have a date to key on.
        calendar_start = min(self.settings.calendar_start, batch_time.date())
        calendar_end = max(self.settings.calendar_end, batch_time.date())

        def dimension(spec, fetch) -> Step:
            return spec.name, spec.name, spec.operation, lambda: self.versioner.run(spec, fetch(), **scope)

        # Rows are fetched inside each step so a source failure fails that step.
        return [
            dimension(TIME_DIMENSION, lambda: calendar_rows(calendar_start, calendar_end, self.holidays)),
            dimension(USER_DIMENSION, lambda: self.source.fetch_users(tenant_id)),
            dimension(PROJECT_DIMENSION, lambda: self.source.fetch_projects(tenant_id)),
            dimension(TASK_STATUS_DIMENSION, lambda: self.source.fetch_task_statuses(tenant_id)),
            dimension(PRIORITY_DIMENSION, lambda: self.source.fetch_priorities(tenant_id)),
            (
                "fact_tasks",
                "fact_tasks",
                OP_INCREMENTAL_LOAD,
                lambda: self.facts.sync_tasks(self.source.fetch_tasks(tenant_id), **scope),
            ),
            (
                "fact_time_logs",
                "fact_time_logs",
                OP_INCREMENTAL_LOAD,
                lambda: self.facts.sync_time_logs(self.source.fetch_time_logs(tenant_id), **scope),
            ),
            (
                "agg_daily_task_metrics",
                "agg_daily_task_metrics",
                OP_AGGREGATE,
                lambda: self.aggregates.rebuild_daily_task_metrics(batch_id=batch_id, batch_time=batch_time),
            ),
            (
                "agg_user_workload",
                "agg_user_workload",
                OP_AGGREGATE,
                lambda: self.aggregates.rebuild_user_workload(batch_id=batch_id, batch_time=batch_time),
            ),
        ]

    def _run_step(
        self,
        batch_id: str,
        step_name: str,
        table_name: str,
        operation: str,
        fn: Callable[[], StepOutcome],
    ) -> StepOutcome:
        started_at = self.clock()
        try:
            outcome = fn()
        except Exception as exc:
            # Source reads raise before the step gets to build its own outcome.
            logger.exception("etl step raised", extra={"batch_id": batch_id, "step_name": step_name})
            outcome = StepOutcome(
                step_name=step_name,
                table_name=table_name,
                operation=operation,
                status=STEP_FAILED,
                started_at=started_at,
                finished_at=self.clock(),
                error=exc,
            )

        self.recorder.record_outcome(batch_id, outcome)
        logger.info(
            "etl step finished",
            extra={"batch_id": batch_id, "step_name": step_name, "status": outcome.status, **outcome.details()},
        )
        return outcome

    def _fail(self, batch_id: str, outcome: StepOutcome, outcomes: list[StepOutcome]) -> None:
        error = outcome.error
        message = f"step {outcome.step_name} failed: {error}"
        self.recorder.record_error(
            batch_id,
            SEVERITY_CRITICAL,
            error_code_for(error) if error is not None else None,
            message,
            source_table=outcome.table_name,
            context={"step_name": outcome.step_name, "error_type": type(error).__name__},
        )
        self._finalize(batch_id, BATCH_FAILED, BatchCounts.from_outcomes(outcomes), message)
        logger.error("etl workflow failed", extra={"batch_id": batch_id, "step_name": outcome.step_name})
        raise BatchFailedError(batch_id, message, outcome) from error

    def _cancel(self, batch_id: str, next_step: str, outcomes: list[StepOutcome]) -> None:
        message = f"cancelled before step {next_step}"
        self.recorder.record_error(
            batch_id,
            SEVERITY_WARNING,
            "CANCELLED",
            message,
            context={"next_step": next_step, "completed_steps": [o.step_name for o in outcomes]},
        )
        self._finalize(batch_id, BATCH_FAILED, BatchCounts.from_outcomes(outcomes), message)
        logger.warning("etl workflow cancelled", extra={"batch_id": batch_id, "next_step": next_step})
        raise BatchCancelledError(batch_id, message)

    def _finalize(self, batch_id: str, status: str, counts: BatchCounts, error_message: str | None = None) -> None:
        try:
            self.ledger.end(batch_id, status, counts, error_message)
        except (PersistenceError, InvalidStateError) as exc:
            # The batch outcome still reaches the caller; the ledger row needs manual reconciliation.
            fallback_logger.error(
                "failed to finalize batch",
                extra={"batch_id": batch_id, "status": status, "audit_error": str(exc)},
            )
