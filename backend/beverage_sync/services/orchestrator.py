"""Ingestion orchestrator: paged fetch, per-record reconcile, checkpoint, resume."""

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

from beverage_sync.config import RunKind, Settings
from beverage_sync.database import Store
from beverage_sync.errors import (
    EmptyStoreError,
    ErrorBudgetExceededError,
    FetchExhaustedError,
    FinalizationError,
    RecordError,
)
from beverage_sync.schemas.run import Checkpoint, RunOutcome, RunReport
from beverage_sync.services.parsing import first_of_month_back
from beverage_sync.services.reconciler import ReceiptReconciler, RunCounts
from beverage_sync.services.runner import PipelineRun, RunState, ShutdownFlag
from beverage_sync.services.soda_client import SODAClient, SODAClientError

logger = logging.getLogger(__name__)


def swap_into_production(staging: Path, production: Path) -> None:
    """
    Replace ``production`` with ``staging`` by rename.

    The old production file is kept as ``<name>.bak`` until the new one is
    in place, and restored if the second rename fails.
    """
    backup = production.with_name(f"{production.name}.bak")
    try:
        if production.exists():
            production.replace(backup)
        staging.replace(production)
    except OSError as e:
        if not production.exists() and backup.exists():
            backup.replace(production)
        raise FinalizationError(
            f"Could not swap {staging} into {production}: {e} (staging copy preserved)"
        ) from e
    backup.unlink(missing_ok=True)


class IngestionOrchestrator(PipelineRun):
    """
    Drive one forward or backfill ingestion run.

    Forward runs read newest first, optionally limited to a lookback
    window, and write straight to the production store. Backfill runs read
    oldest first inside a pinned half-open window ending at the store's
    earliest date, write into a staging copy, and swap it in on success.
    """

    def __init__(
        self,
        settings: Settings,
        mode: RunKind = RunKind.FORWARD,
        client: SODAClient | None = None,
        shutdown: ShutdownFlag | None = None,
        months: int | None = None,
        fresh: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        today: Callable[[], date] | None = None,
    ):
        if mode not in (RunKind.FORWARD, RunKind.BACKFILL):
            raise ValueError(f"Not an ingestion run kind: {mode}")
        self.kind = mode
        super().__init__(settings, shutdown)
        self.client = client or SODAClient.from_settings(settings)
        self.months = months
        self.fresh = fresh
        self._sleep = sleep
        self._today = today or (lambda: datetime.now(UTC).date())
        self.counts = RunCounts()

    @property
    def is_backfill(self) -> bool:
        return self.kind == RunKind.BACKFILL

    @property
    def batch_size(self) -> int:
        if self.is_backfill:
            return self.settings.backfill_batch_size
        return self.settings.forward_batch_size

    def partial_counts(self) -> dict[str, int]:
        return {**self.counts.as_dict(), "processed": self.counts.processed}

    def _forward_start(self, checkpoint: Checkpoint | None) -> date | None:
        """Lookback start, pinned by the checkpoint so a resume reads the same result set."""
        if checkpoint is not None:
            if checkpoint.window_start:
                return date.fromisoformat(checkpoint.window_start)
            return None
        if self.settings.forward_lookback_months > 0:
            return first_of_month_back(self._today(), self.settings.forward_lookback_months)
        return None

    async def _earliest_date(self) -> date | None:
        if not self.settings.store_path.exists():
            return None
        store = Store.from_path(self.settings.store_path)
        try:
            value = await store.scalar(
                "SELECT MIN(obligation_end_date) FROM mixed_beverage_receipts"
            )
        finally:
            await store.dispose()
        if value is None:
            return None
        return value if isinstance(value, date) else date.fromisoformat(str(value)[:10])

    async def _backfill_window(self, checkpoint: Checkpoint | None) -> tuple[date, date]:
        if checkpoint and checkpoint.window_start and checkpoint.window_end:
            return (
                date.fromisoformat(checkpoint.window_start),
                date.fromisoformat(checkpoint.window_end),
            )
        earliest = await self._earliest_date()
        if earliest is None:
            raise EmptyStoreError(
                "Store has no receipts; run forward ingestion before backfilling"
            )
        months = self.months or self.settings.backfill_default_months
        return first_of_month_back(earliest, months), earliest

    def _prepare_staging(self, checkpoint: Checkpoint | None) -> Checkpoint | None:
        staging = self.settings.staging_store_path
        if checkpoint and staging.exists():
            logger.info(f"Resuming with existing staging copy {staging}")
            return checkpoint
        if checkpoint:
            logger.warning(
                f"Checkpoint found but staging copy {staging} is missing; "
                "restarting the window from offset 0"
            )
            checkpoint = checkpoint.model_copy(
                update={
                    "offset": 0,
                    "total_inserted": 0,
                    "total_modified": 0,
                    "total_unchanged": 0,
                    "total_skipped": 0,
                    "error_count": 0,
                }
            )
        logger.info(f"Copying {self.settings.store_path} to staging {staging}")
        shutil.copy2(self.settings.store_path, staging)
        return checkpoint

    def _discard_previous(self) -> None:
        logger.info("Fresh run requested; discarding checkpoint")
        self.checkpoints.clear()
        if self.is_backfill:
            self.settings.staging_store_path.unlink(missing_ok=True)

    def _save(self, checkpoint: Checkpoint, offset: int) -> None:
        checkpoint.offset = offset
        checkpoint.total_inserted = self.counts.inserted
        checkpoint.total_modified = self.counts.modified
        checkpoint.total_unchanged = self.counts.unchanged
        checkpoint.total_skipped = self.counts.skipped
        checkpoint.error_count = self.counts.errors
        self.checkpoints.save(checkpoint)
        self._transition(RunState.CHECKPOINT_SAVED)

    def _final_report(self, outcome: RunOutcome, checkpoint: Checkpoint, message: str) -> RunReport:
        return self.report(
            outcome,
            message=message,
            window_start=checkpoint.window_start,
            window_end=checkpoint.window_end,
            **self.partial_counts(),
        )

    async def execute(self) -> RunReport:
        self._transition(RunState.RESTORING_CHECKPOINT)
        if self.fresh:
            self._discard_previous()
        checkpoint = self.checkpoints.load()

        self._transition(RunState.DETERMINING_WINDOW)
        start: date | None = None
        end: date | None = None
        if self.is_backfill:
            start, end = await self._backfill_window(checkpoint)
            checkpoint = self._prepare_staging(checkpoint)
            store_path = self.settings.staging_store_path
            order = "ASC"
        else:
            start = self._forward_start(checkpoint)
            store_path = self.settings.store_path
            order = "DESC"

        if checkpoint is None:
            checkpoint = Checkpoint(
                window_start=start.isoformat() if start else None,
                window_end=end.isoformat() if end else None,
            )
        else:
            logger.info(
                f"Resuming {self.kind} from offset {checkpoint.offset} "
                f"(started {checkpoint.started_at})"
            )
        self.counts = RunCounts(
            inserted=checkpoint.total_inserted,
            modified=checkpoint.total_modified,
            unchanged=checkpoint.total_unchanged,
            skipped=checkpoint.total_skipped,
            errors=checkpoint.error_count,
        )
        logger.info(f"Starting {self.kind} ingestion: window=[{start}, {end}), order={order}")

        store = Store.from_path(store_path)
        try:
            outcome = await self._ingest(store, checkpoint, order, start, end)
        finally:
            await store.dispose()

        if outcome == RunOutcome.INTERRUPTED:
            return self._final_report(
                outcome, checkpoint, f"Interrupted at offset {checkpoint.offset}; resumable"
            )

        if self.is_backfill:
            self._transition(RunState.FINALIZING)
            swap_into_production(self.settings.staging_store_path, self.settings.store_path)
            logger.info("Staging copy swapped into production")

        self.checkpoints.clear()
        self._transition(RunState.DONE)
        c = self.counts
        return self._final_report(
            RunOutcome.COMPLETED,
            checkpoint,
            f"{c.inserted} inserted, {c.modified} modified, {c.unchanged} unchanged, "
            f"{c.skipped} skipped, {c.errors} errors",
        )

    async def _ingest(
        self,
        store: Store,
        checkpoint: Checkpoint,
        order: str,
        start: date | None,
        end: date | None,
    ) -> RunOutcome:
        reconciler = ReceiptReconciler(store, epsilon=self.settings.monetary_epsilon)
        offset = checkpoint.offset
        limit = self.batch_size

        while True:
            if self.shutdown:
                self._save(checkpoint, offset)
                return RunOutcome.INTERRUPTED

            self._transition(RunState.FETCHING)
            try:
                page = await self.client.fetch_page(offset, limit, order=order, start=start, end=end)
            except SODAClientError as e:
                self._save(checkpoint, offset)
                raise FetchExhaustedError(f"Fetch failed at offset {offset}: {e}") from e

            self._transition(RunState.RECONCILING)
            for i, raw in enumerate(page):
                if self.shutdown:
                    self._save(checkpoint, offset + i)
                    return RunOutcome.INTERRUPTED
                try:
                    self.counts.add(await reconciler.reconcile(raw))
                except RecordError as e:
                    self.counts.errors += 1
                    logger.error(f"Record {offset + i} failed: {e}")
                    if self.counts.errors > self.settings.max_record_errors:
                        self._save(checkpoint, offset + i + 1)
                        raise ErrorBudgetExceededError(
                            f"More than {self.settings.max_record_errors} record errors"
                        ) from e

            offset += len(page)
            self._save(checkpoint, offset)
            c = self.counts
            logger.info(
                f"Batch done at offset {offset}: +{c.inserted} new, ~{c.modified} modified, "
                f"={c.unchanged} unchanged, {c.skipped} skipped, {c.errors} errors"
            )

            if len(page) < limit:
                return RunOutcome.COMPLETED

            await self._sleep(self.settings.batch_pacing_seconds)
