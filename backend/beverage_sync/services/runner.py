"""Shared lifecycle for lock-guarded, checkpointed background runs."""

import logging
from abc import ABC, abstractmethod
from enum import StrEnum

from beverage_sync.config import RunKind, Settings
from beverage_sync.errors import FatalRunError, LockConflictError
from beverage_sync.schemas.run import RunOutcome, RunReport
from beverage_sync.services.checkpoint import CheckpointStore
from beverage_sync.services.locking import LockManager, pid_alive

logger = logging.getLogger(__name__)


class RunState(StrEnum):
    STARTING = "starting"
    ACQUIRING_LOCK = "acquiring_lock"
    RESTORING_CHECKPOINT = "restoring_checkpoint"
    DETERMINING_WINDOW = "determining_window"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    CHECKPOINT_SAVED = "checkpoint_saved"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTING = "aborting"


class ShutdownFlag:
    """Set from a signal handler; polled between pages and between records."""

    def __init__(self):
        self.requested = False
        self.reason: str | None = None

    def set(self, reason: str = "shutdown requested") -> None:
        if not self.requested:
            logger.warning(f"Graceful shutdown: {reason}")
        self.requested = True
        self.reason = reason

    def __bool__(self) -> bool:
        return self.requested


def exclusive_kinds(kind: RunKind) -> list[RunKind]:
    """Run kinds that may not overlap with ``kind``.

    Backfill swaps the whole store file at the end, so no other writer may
    run against production while it is in flight.
    """
    if kind == RunKind.BACKFILL:
        return [k for k in RunKind if k != RunKind.BACKFILL]
    return [RunKind.BACKFILL]


class PipelineRun(ABC):
    """
    Base class for a background run of one ``RunKind``.

    ``run()`` takes the kind's lock, delegates to ``execute`` and converts
    every outcome into a ``RunReport``. Fatal errors become ``aborted``
    reports with the checkpoint left in place for resume. State changes
    are logged and kept in ``history``.
    """

    kind: RunKind

    def __init__(self, settings: Settings, shutdown: ShutdownFlag | None = None):
        self.settings = settings
        # An unset flag is falsy, so compare against None
        self.shutdown = shutdown if shutdown is not None else ShutdownFlag()
        self.checkpoints = CheckpointStore(settings.checkpoint_path(self.kind))
        self.lock = LockManager(settings.lock_path(self.kind))
        self.state = RunState.STARTING
        self.history: list[RunState] = [RunState.STARTING]

    def _transition(self, state: RunState) -> None:
        if state != self.state:
            logger.debug(f"{self.kind}: {self.state} -> {state}")
            self.state = state
            self.history.append(state)

    def _check_exclusive(self) -> None:
        for other in exclusive_kinds(self.kind):
            holder = LockManager(self.settings.lock_path(other)).read()
            if holder is not None and pid_alive(holder.pid):
                logger.error(f"{self.kind} cannot run while {other} is running")
                raise LockConflictError(holder)

    def report(self, outcome: RunOutcome, message: str | None = None, **counts) -> RunReport:
        return RunReport(kind=self.kind.value, outcome=outcome, message=message, **counts)

    async def run(self) -> RunReport:
        self._transition(RunState.ACQUIRING_LOCK)
        try:
            self._check_exclusive()
            self.lock.acquire()
        except LockConflictError as e:
            logger.error(str(e))
            self._transition(RunState.ABORTING)
            return self.report(RunOutcome.CONFLICT, message=str(e))

        try:
            report = await self.execute()
        except FatalRunError as e:
            self._transition(RunState.ABORTING)
            logger.error(f"{self.kind} run aborted: {e}")
            report = self.report(RunOutcome.ABORTED, message=str(e), **self.partial_counts())
        finally:
            self.lock.release()

        if report.outcome != RunOutcome.ABORTED:
            self._transition(RunState.DONE)
        logger.info(f"{self.kind} run finished: {report.outcome} {report.message or ''}".rstrip())
        return report

    def partial_counts(self) -> dict[str, int]:
        """Counters to include in an aborted report."""
        return {}

    @abstractmethod
    async def execute(self) -> RunReport:
        """Do the work while holding the lock."""
