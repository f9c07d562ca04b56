"""Exception hierarchy shared by the ingestion and enrichment pipelines."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from beverage_sync.schemas.run import LockInfo


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    pass


class RecordError(PipelineError):
    """A single record could not be reconciled; counted against the error budget."""

    pass


class FatalRunError(PipelineError):
    """Aborts the whole run. The checkpoint is preserved for resume."""

    pass


class FetchExhaustedError(FatalRunError):
    """The fetch client gave up after its final attempt."""

    pass


class ErrorBudgetExceededError(FatalRunError):
    """Too many record-level failures in one run."""

    pass


class EmptyStoreError(FatalRunError):
    """Backfill needs existing data to anchor its window."""

    pass


class FinalizationError(FatalRunError):
    """The staging copy could not be swapped into production."""

    pass


class LockConflictError(PipelineError):
    """Another live process holds the lock for this run kind."""

    def __init__(self, holder: LockInfo):
        self.holder = holder
        super().__init__(
            f"Already running since {holder.started_at} (pid {holder.pid})"
        )


class RemoteCommandError(PipelineError):
    """The orchestrator host could not be reached or returned garbage."""

    pass
