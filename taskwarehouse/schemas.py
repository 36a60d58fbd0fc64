from dataclasses import dataclass, field
from datetime import datetime


STEP_COMPLETED = "COMPLETED"
STEP_FAILED = "FAILED"


@dataclass(frozen=True)
class StepOutcome:
    step_name: str
    table_name: str
    operation: str
    status: str
    started_at: datetime
    finished_at: datetime
    inserted: int = 0
    updated: int = 0
    expired: int = 0
    tombstoned: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0
    error: Exception | None = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.status == STEP_COMPLETED

    @property
    def records_affected(self) -> int:
        return self.inserted + self.updated + self.expired

    @property
    def records_processed(self) -> int:
        return self.inserted + self.updated + self.expired + self.unchanged + self.failed + self.skipped

    def details(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "expired": self.expired,
            "tombstoned": self.tombstoned,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class BatchCounts:
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    failed: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: list[StepOutcome]) -> "BatchCounts":
        return cls(
            processed=sum(o.records_processed for o in outcomes),
            inserted=sum(o.inserted for o in outcomes),
            updated=sum(o.updated + o.expired for o in outcomes),
            failed=sum(o.failed for o in outcomes),
        )


@dataclass(frozen=True)
class BatchResult:
    batch_id: str
    status: str
    started_at: datetime
    finished_at: datetime
    tenant_id: str | None
    counts: BatchCounts
    outcomes: tuple[StepOutcome, ...]


@dataclass(frozen=True)
class BatchStatus:
    batch_id: str
    source_system: str
    status: str
    batch_start_time: datetime
    batch_end_time: datetime | None
    records_processed: int
    records_inserted: int
    records_updated: int
    records_failed: int
    error_message: str | None

    @property
    def duration_seconds(self) -> float | None:
        if self.batch_end_time is None:
            return None
        return round((self.batch_end_time - self.batch_start_time).total_seconds(), 2)

    @property
    def duration_minutes(self) -> float | None:
        seconds = self.duration_seconds
        if seconds is None:
            return None
        return round(seconds / 60.0, 2)
