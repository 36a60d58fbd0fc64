from datetime import timedelta
import re

import pytest

from taskwarehouse.db_models import BATCH_COMPLETED, BATCH_FAILED, BATCH_RUNNING, EtlBatch
from taskwarehouse.errors import InvalidStateError, NotFoundError
from taskwarehouse.ledger import BatchLedger, generate_batch_id
from taskwarehouse.schemas import BatchCounts

from warehouse_support import BATCH_TIME


@pytest.fixture()
def ledger(warehouse, clock) -> BatchLedger:
    return BatchLedger(warehouse, clock)


def test_generate_batch_id_embeds_start_time() -> None:
    batch_id = generate_batch_id(BATCH_TIME)
    assert re.fullmatch(r"BATCH-20240615-020000-[0-9a-f]{8}", batch_id)
    assert generate_batch_id(BATCH_TIME) != batch_id


def test_begin_records_running_batch(ledger, warehouse) -> None:
    batch_id = ledger.begin("OLTP", created_by="ETL_TEST", tenant_id="org-1")

    with warehouse() as db:
        batch = db.get(EtlBatch, batch_id)
        assert batch.status == BATCH_RUNNING
        assert batch.batch_start_time == BATCH_TIME
        assert batch.batch_end_time is None
        assert batch.tenant_id == "org-1"
        assert batch.created_by == "ETL_TEST"

    assert ledger.running_batches() == [batch_id]


def test_end_finalizes_once(ledger, clock) -> None:
    batch_id = ledger.begin("OLTP")
    clock.now = BATCH_TIME + timedelta(minutes=3)

    ledger.end(batch_id, BATCH_COMPLETED, BatchCounts(processed=10, inserted=6, updated=2, failed=1))

    status = ledger.get_batch(batch_id)
    assert status.status == BATCH_COMPLETED
    assert status.records_processed == 10
    assert status.records_inserted == 6
    assert status.records_updated == 2
    assert status.records_failed == 1
    assert status.duration_seconds == 180.0
    assert status.duration_minutes == 3.0
    assert ledger.running_batches() == []

    with pytest.raises(InvalidStateError):
        ledger.end(batch_id, BATCH_FAILED, BatchCounts(), "late failure")
    assert ledger.get_batch(batch_id).status == BATCH_COMPLETED


def test_end_rejects_non_terminal_status(ledger) -> None:
    batch_id = ledger.begin("OLTP")
    with pytest.raises(ValueError):
        ledger.end(batch_id, BATCH_RUNNING, BatchCounts())


def test_unknown_batch_raises_not_found(ledger) -> None:
    with pytest.raises(NotFoundError):
        ledger.end("BATCH-missing", BATCH_COMPLETED, BatchCounts())
    with pytest.raises(NotFoundError):
        ledger.get_batch("BATCH-missing")


def test_mark_abandoned_fails_stuck_batch(ledger) -> None:
    batch_id = ledger.begin("OLTP")

    ledger.mark_abandoned(batch_id, "worker killed by scheduler timeout")

    status = ledger.get_batch(batch_id)
    assert status.status == BATCH_FAILED
    assert status.error_message == "abandoned: worker killed by scheduler timeout"
    assert ledger.running_batches() == []


def test_latest_batch_and_history_window(ledger, clock) -> None:
    assert ledger.latest_batch() is None

    clock.now = BATCH_TIME - timedelta(hours=30)
    old_batch = ledger.begin("OLTP")
    ledger.end(old_batch, BATCH_COMPLETED, BatchCounts())

    clock.now = BATCH_TIME - timedelta(hours=2)
    recent_batch = ledger.begin("OLTP")
    ledger.end(recent_batch, BATCH_FAILED, BatchCounts(), "boom")

    clock.now = BATCH_TIME
    assert ledger.latest_batch().batch_id == recent_batch
    assert [b.batch_id for b in ledger.batch_history(24)] == [recent_batch]
    assert [b.batch_id for b in ledger.batch_history(48)] == [recent_batch, old_batch]
