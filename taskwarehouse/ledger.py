from collections.abc import Callable
from datetime import datetime, timedelta
import logging
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from taskwarehouse.db_models import (
    BATCH_FAILED,
    BATCH_RUNNING,
    TERMINAL_BATCH_STATUSES,
    EtlBatch,
    utc_now,
)
from taskwarehouse.errors import InvalidStateError, NotFoundError, PersistenceError
from taskwarehouse.schemas import BatchCounts, BatchStatus


logger = logging.getLogger(__name__)


def generate_batch_id(at: datetime) -> str:
    return f"BATCH-{at:%Y%m%d-%H%M%S}-{uuid4().hex[:8]}"


def _to_status(batch: EtlBatch) -> BatchStatus:
    return BatchStatus(
        batch_id=batch.batch_id,
        source_system=batch.source_system,
        status=batch.status,
        batch_start_time=batch.batch_start_time,
        batch_end_time=batch.batch_end_time,
        records_processed=batch.records_processed,
        records_inserted=batch.records_inserted,
        records_updated=batch.records_updated,
        records_failed=batch.records_failed,
        error_message=batch.error_message,
    )


class BatchLedger:
    def __init__(self, session_factory: sessionmaker[Session], clock: Callable[[], datetime] = utc_now) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def begin(self, source_system: str, *, created_by: str | None = None, tenant_id: str | None = None) -> str:
        started_at = self.clock()
        batch_id = generate_batch_id(started_at)
        with self.session_factory() as db:
            db.add(
                EtlBatch(
                    batch_id=batch_id,
                    batch_start_time=started_at,
                    status=BATCH_RUNNING,
                    source_system=source_system,
                    tenant_id=tenant_id,
                    created_by=created_by,
                    created_timestamp=started_at,
                )
            )
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(f"could not start batch for {source_system}: {exc}") from exc

        logger.info("batch started", extra={"batch_id": batch_id, "source_system": source_system})
        return batch_id

    def end(
        self,
        batch_id: str,
        status: str,
        counts: BatchCounts,
        error_message: str | None = None,
    ) -> None:
        if status not in TERMINAL_BATCH_STATUSES:
            raise ValueError(f"batch can only end as one of {sorted(TERMINAL_BATCH_STATUSES)}, got {status!r}")

        with self.session_factory() as db:
            batch = db.get(EtlBatch, batch_id)
            if batch is None:
                raise NotFoundError(f"batch {batch_id} not found")
            if batch.status != BATCH_RUNNING:
                raise InvalidStateError(f"batch {batch_id} already finalized as {batch.status}")

            batch.status = status
            batch.batch_end_time = self.clock()
            batch.records_processed = counts.processed
            batch.records_inserted = counts.inserted
            batch.records_updated = counts.updated
            batch.records_failed = counts.failed
            batch.error_message = error_message
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(f"could not finalize batch {batch_id}: {exc}") from exc

        logger.info("batch finished", extra={"batch_id": batch_id, "status": status})

    def mark_abandoned(self, batch_id: str, reason: str) -> None:
        # Manual reconciliation for runs killed by the scheduler mid-flight.
        self.end(batch_id, BATCH_FAILED, BatchCounts(), error_message=f"abandoned: {reason}")

    def get_batch(self, batch_id: str) -> BatchStatus:
        with self.session_factory() as db:
            batch = db.get(EtlBatch, batch_id)
            if batch is None:
                raise NotFoundError(f"batch {batch_id} not found")
            return _to_status(batch)

    def running_batches(self) -> list[str]:
        stmt = select(EtlBatch.batch_id).where(EtlBatch.status == BATCH_RUNNING).order_by(EtlBatch.batch_start_time)
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def latest_batch(self) -> BatchStatus | None:
        stmt = select(EtlBatch).order_by(EtlBatch.batch_start_time.desc(), EtlBatch.batch_id.desc()).limit(1)
        with self.session_factory() as db:
            batch = db.execute(stmt).scalar_one_or_none()
            return _to_status(batch) if batch is not None else None

    def batch_history(self, hours_back: int = 24) -> list[BatchStatus]:
        since = self.clock() - timedelta(hours=hours_back)
        stmt = (
            select(EtlBatch)
            .where(EtlBatch.batch_start_time >= since)
            .order_by(EtlBatch.batch_start_time.desc(), EtlBatch.batch_id.desc())
        )
        with self.session_factory() as db:
            return [_to_status(batch) for batch in db.execute(stmt).scalars().all()]
