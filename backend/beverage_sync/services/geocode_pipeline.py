"""Batch geocoding of permit locations that have no coordinates yet."""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.dialects.sqlite import insert

from beverage_sync.config import RunKind, Settings
from beverage_sync.database import Store
from beverage_sync.models import LocationCoordinates
from beverage_sync.schemas.run import Checkpoint, RunOutcome, RunReport
from beverage_sync.services.geocoding import GeocodeCache, Geocoder, build_providers
from beverage_sync.services.runner import PipelineRun, ShutdownFlag

logger = logging.getLogger(__name__)

PENDING_LOCATIONS_SQL = """
    SELECT
        m.tabc_permit_number,
        MAX(m.location_address) AS location_address,
        MAX(m.location_city) AS location_city,
        MAX(m.location_state) AS location_state,
        MAX(m.location_zip) AS location_zip
    FROM mixed_beverage_receipts m
    LEFT JOIN location_coordinates c ON m.tabc_permit_number = c.tabc_permit_number
    WHERE m.location_address IS NOT NULL
      AND m.location_city IS NOT NULL
      AND c.tabc_permit_number IS NULL
    GROUP BY m.tabc_permit_number
    ORDER BY m.tabc_permit_number
"""


def build_full_address(row: Any) -> str:
    """``address, city, state, zip`` with the state defaulting to TX."""
    parts = [
        row.location_address,
        row.location_city,
        row.location_state or "TX",
        row.location_zip,
    ]
    return ", ".join(str(p).strip() for p in parts if p and str(p).strip())


class GeocodePipeline(PipelineRun):
    """
    Geocode every permit lacking a ``location_coordinates`` row.

    Work is chunked; each chunk is one ``geocode_many`` call followed by one
    coordinates write and a checkpoint. Resuming simply re-queries the
    pending permits, so the checkpoint only carries running totals.
    """

    kind = RunKind.GEOCODE

    def __init__(
        self,
        settings: Settings,
        geocoder: Geocoder | None = None,
        shutdown: ShutdownFlag | None = None,
        limit: int | None = None,
        fresh: bool = False,
    ):
        super().__init__(settings, shutdown)
        self.geocoder = geocoder
        self.limit = limit
        self.fresh = fresh
        self.geocoded = 0
        self.failed = 0

    def partial_counts(self) -> dict[str, int]:
        return {
            "inserted": self.geocoded,
            "errors": self.failed,
            "processed": self.geocoded + self.failed,
        }

    async def _write_coordinates(self, store: Store, rows: list[dict[str, Any]]) -> None:
        table = LocationCoordinates.__table__
        stmt = insert(table)
        stmt = stmt.on_conflict_do_update(
            index_elements=["tabc_permit_number"],
            set_={
                name: stmt.excluded[name]
                for name in (
                    "latitude",
                    "longitude",
                    "geocoded_at",
                    "geocode_source",
                    "geocode_quality",
                )
            },
        )
        async with store.transaction() as conn:
            await conn.execute(stmt, rows)

    async def execute(self) -> RunReport:
        if self.fresh:
            self.checkpoints.clear()
        checkpoint = self.checkpoints.load() or Checkpoint()
        if checkpoint.offset:
            logger.info(
                f"Resuming geocoding: {checkpoint.total_inserted} geocoded, "
                f"{checkpoint.error_count} failed so far"
            )
        self.geocoded = checkpoint.total_inserted
        self.failed = checkpoint.error_count

        store = Store.from_path(self.settings.store_path)
        try:
            geocoder = self.geocoder or Geocoder(
                GeocodeCache(store), build_providers(self.settings)
            )
            pending = await store.query(PENDING_LOCATIONS_SQL)
            if self.limit:
                pending = pending[: self.limit]
            logger.info(f"Found {len(pending)} locations needing geocoding")

            chunk_size = self.settings.geocode_chunk_size
            for i in range(0, len(pending), chunk_size):
                if self.shutdown:
                    self.checkpoints.save(checkpoint)
                    return self.report(
                        RunOutcome.INTERRUPTED,
                        message=f"Interrupted after {self.geocoded + self.failed} locations",
                        **self.partial_counts(),
                    )

                chunk = pending[i : i + chunk_size]
                addresses = {row.tabc_permit_number: build_full_address(row) for row in chunk}
                results = await geocoder.geocode_many(addresses.values())

                now = datetime.now(UTC)
                rows = []
                for permit, address in addresses.items():
                    result = results[address]
                    if result.failed:
                        self.failed += 1
                    else:
                        self.geocoded += 1
                    rows.append(
                        {
                            "tabc_permit_number": permit,
                            "latitude": result.latitude,
                            "longitude": result.longitude,
                            "geocoded_at": now,
                            "geocode_source": result.provider,
                            "geocode_quality": result.quality,
                        }
                    )
                await self._write_coordinates(store, rows)

                checkpoint.offset += len(chunk)
                checkpoint.total_inserted = self.geocoded
                checkpoint.error_count = self.failed
                self.checkpoints.save(checkpoint)
                logger.info(
                    f"Geocoded {min(i + chunk_size, len(pending))}/{len(pending)}: "
                    f"{self.geocoded} ok, {self.failed} failed"
                )
        finally:
            await store.dispose()

        self.checkpoints.clear()
        return self.report(
            RunOutcome.COMPLETED,
            message=f"{self.geocoded} geocoded, {self.failed} failed",
            **self.partial_counts(),
        )
