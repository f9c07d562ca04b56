"""Sync reviewed location classifications from the operational database into the store."""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from beverage_sync.config import RunKind, Settings
from beverage_sync.database import Store
from beverage_sync.errors import ErrorBudgetExceededError, FatalRunError
from beverage_sync.models import EnrichmentSubmission, LocationEnrichment
from beverage_sync.schemas.run import Checkpoint, RunOutcome, RunReport
from beverage_sync.services.reconciler import Outcome, ReconcileResult, RunCounts
from beverage_sync.services.runner import PipelineRun, ShutdownFlag

logger = logging.getLogger(__name__)

MARK_CHUNK_SIZE = 100

ENRICHMENT_FIELDS = ("clean_dba_name", "ownership_group", "industry_segment", "clean_up_notes")


def resolve_enrichment(row: EnrichmentSubmission) -> dict[str, Any]:
    """Committed values win; AI suggestions fill the gaps."""
    return {
        "tabc_permit_number": row.tabc_permit_number,
        "clean_dba_name": row.clean_dba_name or row.ai_suggested_dba_name,
        "ownership_group": row.ownership_group or row.ai_suggested_ownership,
        "industry_segment": row.industry_segment or row.ai_suggested_segment,
        "clean_up_notes": row.clean_up_notes,
    }


class EnrichmentSync(PipelineRun):
    """
    Copy ``location_enrichments_pg`` rows into the store's ``location_enrichments``.

    Only rows not yet flagged ``synced_to_store`` are read unless ``full``
    is set. Rows are reconciled like receipts (no write when unchanged) and
    flagged as synced in the source in chunks of 100.
    """

    kind = RunKind.ENRICHMENT_SYNC

    def __init__(
        self,
        settings: Settings,
        source_sessionmaker: async_sessionmaker[AsyncSession] | None = None,
        shutdown: ShutdownFlag | None = None,
        full: bool = False,
        fresh: bool = False,
    ):
        super().__init__(settings, shutdown)
        self._source_sessionmaker = source_sessionmaker
        self._source_engine: AsyncEngine | None = None
        self.full = full
        self.fresh = fresh
        self.counts = RunCounts()

    def partial_counts(self) -> dict[str, int]:
        return {**self.counts.as_dict(), "processed": self.counts.processed}

    def _sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        if self._source_sessionmaker is None:
            self._source_engine = create_async_engine(
                self.settings.enrichment_source_url, pool_pre_ping=True
            )
            self._source_sessionmaker = async_sessionmaker(
                self._source_engine, class_=AsyncSession, expire_on_commit=False
            )
        return self._source_sessionmaker

    async def _fetch_pending(self) -> list[EnrichmentSubmission]:
        query = select(EnrichmentSubmission).order_by(EnrichmentSubmission.tabc_permit_number)
        if not self.full:
            query = query.where(EnrichmentSubmission.synced_to_store.is_(False))
        try:
            async with self._sessionmaker()() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise FatalRunError(f"Enrichment source unavailable: {e}") from e

    async def _mark_synced(self, permits: list[str]) -> None:
        if not permits:
            return
        try:
            async with self._sessionmaker()() as session:
                await session.execute(
                    update(EnrichmentSubmission)
                    .where(EnrichmentSubmission.tabc_permit_number.in_(permits))
                    .values(synced_to_store=True)
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            # Unmarked rows are simply re-synced next run
            logger.error(f"Error marking {len(permits)} enrichments as synced: {e}")

    async def _reconcile(self, store: Store, values: dict[str, Any]) -> Outcome:
        table = LocationEnrichment.__table__
        permit = values["tabc_permit_number"]
        async with store.transaction() as conn:
            result = await conn.execute(
                select(table).where(table.c.tabc_permit_number == permit)
            )
            existing = result.mappings().first()
            now = datetime.now(UTC)
            if existing is None:
                await conn.execute(insert(table).values(**values, last_updated=now))
                return Outcome.INSERTED
            if all(existing[name] == values[name] for name in ENRICHMENT_FIELDS):
                return Outcome.UNCHANGED
            await conn.execute(
                update(table)
                .where(table.c.tabc_permit_number == permit)
                .values(**{name: values[name] for name in ENRICHMENT_FIELDS}, last_updated=now)
            )
            return Outcome.MODIFIED

    async def execute(self) -> RunReport:
        try:
            return await self._sync()
        finally:
            if self._source_engine is not None:
                await self._source_engine.dispose()

    async def _sync(self) -> RunReport:
        if self.fresh:
            self.checkpoints.clear()
        checkpoint = self.checkpoints.load() or Checkpoint()
        self.counts = RunCounts(
            inserted=checkpoint.total_inserted,
            modified=checkpoint.total_modified,
            unchanged=checkpoint.total_unchanged,
            errors=checkpoint.error_count,
        )

        logger.info(
            f"Enrichment sync: {'full' if self.full else 'incremental (unsynced only)'}"
        )
        pending = await self._fetch_pending()
        logger.info(f"Found {len(pending)} enrichments to sync")

        store = Store.from_path(self.settings.store_path)
        try:
            for i in range(0, len(pending), MARK_CHUNK_SIZE):
                if self.shutdown:
                    self.checkpoints.save(checkpoint)
                    return self.report(
                        RunOutcome.INTERRUPTED,
                        message=f"Interrupted after {self.counts.processed} enrichments",
                        **self.partial_counts(),
                    )

                synced: list[str] = []
                for row in pending[i : i + MARK_CHUNK_SIZE]:
                    values = resolve_enrichment(row)
                    try:
                        outcome = await self._reconcile(store, values)
                    except SQLAlchemyError as e:
                        self.counts.errors += 1
                        logger.error(f"Enrichment {row.tabc_permit_number} failed: {e}")
                        if self.counts.errors > self.settings.max_record_errors:
                            self.checkpoints.save(checkpoint)
                            raise ErrorBudgetExceededError(
                                f"More than {self.settings.max_record_errors} enrichment errors"
                            ) from e
                        continue
                    self.counts.add(ReconcileResult(outcome, key=row.tabc_permit_number))
                    synced.append(row.tabc_permit_number)

                await self._mark_synced(synced)
                checkpoint.offset += len(pending[i : i + MARK_CHUNK_SIZE])
                checkpoint.total_inserted = self.counts.inserted
                checkpoint.total_modified = self.counts.modified
                checkpoint.total_unchanged = self.counts.unchanged
                checkpoint.error_count = self.counts.errors
                self.checkpoints.save(checkpoint)
        finally:
            await store.dispose()

        self.checkpoints.clear()
        c = self.counts
        return self.report(
            RunOutcome.COMPLETED,
            message=f"{c.inserted} inserted, {c.modified} modified, {c.unchanged} unchanged, "
            f"{c.errors} errors",
            **self.partial_counts(),
        )
