from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskwarehouse.schemas import StepOutcome


class EtlError(RuntimeError):
    pass


class StructuralError(EtlError):
    pass


class RowTransformError(EtlError):
    def __init__(self, message: str, *, source_key: str | None = None) -> None:
        super().__init__(message)
        self.source_key = source_key


class ConcurrencyError(EtlError):
    pass


class PersistenceError(EtlError):
    pass


class NotFoundError(EtlError):
    pass


class InvalidStateError(EtlError):
    pass


class BatchFailedError(EtlError):
    def __init__(self, batch_id: str, message: str, outcome: "StepOutcome | None" = None) -> None:
        super().__init__(f"batch {batch_id} failed: {message}")
        self.batch_id = batch_id
        self.outcome = outcome


class BatchCancelledError(BatchFailedError):
    pass
