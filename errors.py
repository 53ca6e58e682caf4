"""Error taxonomy shared by the resolver, the services and the HTTP layer."""

from typing import Sequence


class MalformedInput(ValueError):
    """A date, cycle string or paging argument that cannot be interpreted."""


class InvalidCycleFormat(MalformedInput):
    pass


class NotFound(ValueError):
    """An id that does not resolve inside the caller's household."""


class ConflictViolation(ValueError):
    """A unique-key collision the store does not settle on its own.

    Budget and expense writes resolve theirs with ``ON CONFLICT`` clauses
    (last write wins / no-op) and never raise this; duplicate category or
    payment source names do.
    """


class StoreUnavailable(RuntimeError):
    """The ledger store or blob storage failed or timed out. Retryable."""


class PartialBatchFailure(RuntimeError):
    def __init__(self, success_count: int, failed_ids: Sequence[str]) -> None:
        self.success_count = success_count
        self.failed_ids = list(failed_ids)
        super().__init__(
            f"{len(self.failed_ids)} of {success_count + len(self.failed_ids)} "
            "entries failed to sync"
        )
