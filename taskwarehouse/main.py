import argparse
import logging

from taskwarehouse.config import Settings, get_settings
from taskwarehouse.database import build_session_factory, build_source_session_factory
from taskwarehouse.errors import EtlError
from taskwarehouse.pipeline import EtlOrchestrator
from taskwarehouse.scheduler import start_scheduler
from taskwarehouse.schemas import BatchStatus
from taskwarehouse.source import OperationalSource


logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Load the task-management warehouse")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one full ETL batch")
    run_parser.add_argument("--tenant-id", required=False, help="Restrict the batch to one organization")
    run_parser.add_argument("--source-system", required=False, help="Label recorded on the batch ledger row")

    schedule_parser = subparsers.add_parser("schedule", help="start the daily scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    subparsers.add_parser("status", help="show the most recent batch")

    history_parser = subparsers.add_parser("history", help="list recent batches")
    history_parser.add_argument("--hours", type=int, required=False, help="How far back to look")

    resolve_parser = subparsers.add_parser("resolve-error", help="mark an error entry as resolved")
    resolve_parser.add_argument("error_id", type=int)
    resolve_parser.add_argument("--resolved-by", required=True)
    resolve_parser.add_argument("--notes", required=False)

    abandon_parser = subparsers.add_parser("abandon", help="finalize a stuck RUNNING batch as FAILED")
    abandon_parser.add_argument("batch_id")
    abandon_parser.add_argument("--reason", required=True)

    return parser.parse_args()


def format_batch(batch: BatchStatus) -> str:
    return (
        "batch_id={batch_id} status={status} source={source} started={started} ended={ended} "
        "processed={processed} inserted={inserted} updated={updated} failed={failed} error={error}".format(
            batch_id=batch.batch_id,
            status=batch.status,
            source=batch.source_system,
            started=batch.batch_start_time.isoformat(),
            ended=batch.batch_end_time.isoformat() if batch.batch_end_time else "-",
            processed=batch.records_processed,
            inserted=batch.records_inserted,
            updated=batch.records_updated,
            failed=batch.records_failed,
            error=batch.error_message or "-",
        )
    )


def build_orchestrator(settings: Settings) -> EtlOrchestrator:
    session_factory = build_session_factory(settings.warehouse_database_url)
    source = OperationalSource(build_source_session_factory(settings.source_database_url))
    return EtlOrchestrator(settings, session_factory, source)


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    orchestrator = build_orchestrator(settings)
    if args.command == "schedule":
        start_scheduler(settings, orchestrator, run_now=args.run_now)
        return

    if args.command == "status":
        batch = orchestrator.latest_batch()
        print(format_batch(batch) if batch is not None else "no batches recorded")
        return

    if args.command == "history":
        for batch in orchestrator.batch_history(args.hours):
            print(format_batch(batch))
        return

    if args.command == "resolve-error":
        try:
            orchestrator.recorder.resolve_error(args.error_id, resolved_by=args.resolved_by, notes=args.notes)
        except EtlError as exc:
            print(f"error: {exc}")
            raise SystemExit(1) from exc
        print(f"error_id={args.error_id} resolved_by={args.resolved_by}")
        return

    if args.command == "abandon":
        try:
            orchestrator.ledger.mark_abandoned(args.batch_id, args.reason)
        except EtlError as exc:
            print(f"error: {exc}")
            raise SystemExit(1) from exc
        print(format_batch(orchestrator.ledger.get_batch(args.batch_id)))
        return

    try:
        result = orchestrator.run_full_workflow(tenant_id=args.tenant_id, source_system=args.source_system)
    except EtlError as exc:
        logger.error("batch did not complete", extra={"error": str(exc)})
        print(f"status=FAILED error={exc}")
        raise SystemExit(1) from exc

    print(
        "batch_id={batch_id} status={status} tenant={tenant} processed={processed} inserted={inserted} updated={updated} failed={failed}".format(
            batch_id=result.batch_id,
            status=result.status,
            tenant=result.tenant_id or "-",
            processed=result.counts.processed,
            inserted=result.counts.inserted,
            updated=result.counts.updated,
            failed=result.counts.failed,
        )
    )


if __name__ == "__main__":
    main()
