from collections.abc import Callable
import logging
import time

from apscheduler.schedulers.blocking import BlockingScheduler

from taskwarehouse.config import Settings
from taskwarehouse.errors import ConcurrencyError
from taskwarehouse.pipeline import EtlOrchestrator
from taskwarehouse.schemas import BatchResult


logger = logging.getLogger(__name__)


class RetryExhaustedError(RuntimeError):
    pass


def retry_batches(
    run_batch: Callable[[], BatchResult],
    *,
    max_retries: int,
    backoff_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchResult:
    # Every attempt is a whole new batch; the wait grows by backoff_seconds per attempt.
    attempt = 0
    while True:
        attempt += 1
        try:
            return run_batch()
        except ConcurrencyError as exc:
            # Another batch still owns the warehouse; a new attempt would collide with it.
            logger.warning("scheduled batch skipped", extra={"attempt": attempt, "error": str(exc)})
            raise RetryExhaustedError(str(exc)) from exc
        except Exception as exc:
            logger.warning(
                "scheduled batch attempt failed",
                extra={"attempt": attempt, "error_type": type(exc).__name__, "error": str(exc)},
            )
            if attempt > max_retries:
                raise RetryExhaustedError(str(exc)) from exc

        logger.info("retrying batch", extra={"attempt": attempt, "max_retries": max_retries})
        sleep(backoff_seconds * attempt)


def run_scheduled_batch(settings: Settings, orchestrator: EtlOrchestrator, *, sleep=None) -> BatchResult | None:
    retry_options = {} if sleep is None else {"sleep": sleep}
    try:
        result = retry_batches(
            orchestrator.run_full_workflow,
            max_retries=settings.max_batch_retries,
            backoff_seconds=settings.retry_backoff_seconds,
            **retry_options,
        )
    except RetryExhaustedError as exc:
        logger.error("scheduled batch failed", extra={"error": str(exc)})
        return None

    logger.info(
        "scheduled batch completed",
        extra={
            "batch_id": result.batch_id,
            "status": result.status,
            "records_processed": result.counts.processed,
            "records_failed": result.counts.failed,
        },
    )
    return result


def start_scheduler(settings: Settings, orchestrator: EtlOrchestrator, *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        run_scheduled_batch,
        "cron",
        args=[settings, orchestrator],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_etl",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        run_scheduled_batch(settings, orchestrator)

    scheduler.start()
