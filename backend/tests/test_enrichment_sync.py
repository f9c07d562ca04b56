"""Tests for the enrichment sync run."""

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from beverage_sync.models import EnrichmentSubmission, SourceBase
from beverage_sync.schemas.run import RunOutcome
from beverage_sync.services.enrichment_sync import EnrichmentSync, resolve_enrichment
from beverage_sync.services.runner import ShutdownFlag


@pytest_asyncio.fixture
async def source(tmp_path):
    """Operational database stand-in backed by a separate SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'source.sqlite'}")
    async with engine.begin() as conn:
        await conn.run_sync(SourceBase.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


async def add_submissions(sessionmaker, *submissions):
    async with sessionmaker() as session:
        session.add_all(submissions)
        await session.commit()


async def synced_flags(sessionmaker) -> dict[str, bool]:
    async with sessionmaker() as session:
        result = await session.execute(select(EnrichmentSubmission))
        return {row.tabc_permit_number: row.synced_to_store for row in result.scalars()}


async def enrichments(store):
    rows = await store.query("SELECT * FROM location_enrichments ORDER BY tabc_permit_number")
    return {row.tabc_permit_number: row for row in rows}


def test_committed_values_win_over_suggestions():
    row = EnrichmentSubmission(
        tabc_permit_number="MB000001",
        clean_dba_name="The Tipsy Cow",
        ai_suggested_dba_name="Tipsy Cow Bar",
        ai_suggested_ownership="Cow Holdings",
        industry_segment=None,
        ai_suggested_segment="Bar",
    )

    values = resolve_enrichment(row)

    assert values["clean_dba_name"] == "The Tipsy Cow"
    assert values["ownership_group"] == "Cow Holdings"
    assert values["industry_segment"] == "Bar"


class TestEnrichmentSync:
    @pytest.mark.asyncio
    async def test_inserts_and_marks_synced(self, test_settings, store, source):
        await add_submissions(
            source,
            EnrichmentSubmission(
                tabc_permit_number="MB000001",
                clean_dba_name="The Tipsy Cow",
                ownership_group="Cow Holdings",
                industry_segment="Bar",
                synced_to_store=False,
            ),
            EnrichmentSubmission(
                tabc_permit_number="MB000002",
                ai_suggested_dba_name="Lone Star Grill",
                ai_suggested_segment="Restaurant",
                ai_confidence=0.82,
                synced_to_store=False,
            ),
        )

        report = await EnrichmentSync(test_settings, source_sessionmaker=source).run()

        assert report.outcome == RunOutcome.COMPLETED
        assert report.inserted == 2
        rows = await enrichments(store)
        assert rows["MB000001"].clean_dba_name == "The Tipsy Cow"
        assert rows["MB000002"].clean_dba_name == "Lone Star Grill"
        assert rows["MB000002"].industry_segment == "Restaurant"
        assert rows["MB000002"].last_updated is not None
        assert await synced_flags(source) == {"MB000001": True, "MB000002": True}

    @pytest.mark.asyncio
    async def test_incremental_skips_synced_rows(self, test_settings, store, source):
        await add_submissions(
            source,
            EnrichmentSubmission(
                tabc_permit_number="MB000001", clean_dba_name="A", synced_to_store=False
            ),
        )
        await EnrichmentSync(test_settings, source_sessionmaker=source).run()

        report = await EnrichmentSync(test_settings, source_sessionmaker=source).run()

        assert report.processed == 0

    @pytest.mark.asyncio
    async def test_full_resync_is_unchanged(self, test_settings, store, source):
        await add_submissions(
            source,
            EnrichmentSubmission(
                tabc_permit_number="MB000001", clean_dba_name="A", synced_to_store=False
            ),
        )
        await EnrichmentSync(test_settings, source_sessionmaker=source).run()

        report = await EnrichmentSync(test_settings, source_sessionmaker=source, full=True).run()

        assert (report.inserted, report.modified, report.unchanged) == (0, 0, 1)

    @pytest.mark.asyncio
    async def test_changed_submission_is_modified(self, test_settings, store, source):
        await add_submissions(
            source,
            EnrichmentSubmission(
                tabc_permit_number="MB000001", clean_dba_name="A", synced_to_store=False
            ),
        )
        await EnrichmentSync(test_settings, source_sessionmaker=source).run()

        async with source() as session:
            row = await session.get(EnrichmentSubmission, "MB000001")
            row.clean_dba_name = "B"
            row.synced_to_store = False
            await session.commit()

        report = await EnrichmentSync(test_settings, source_sessionmaker=source).run()

        assert report.modified == 1
        assert (await enrichments(store))["MB000001"].clean_dba_name == "B"

    @pytest.mark.asyncio
    async def test_unreachable_source_aborts(self, test_settings, store, tmp_path):
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'missing-dir' / 'source.sqlite'}"
        )
        sessionmaker = async_sessionmaker(engine, class_=AsyncSession)

        report = await EnrichmentSync(test_settings, source_sessionmaker=sessionmaker).run()

        assert report.outcome == RunOutcome.ABORTED
        assert report.exit_code == 1
        assert "Enrichment source unavailable" in report.message
        await engine.dispose()

    def test_keeps_caller_shutdown_flag(self, test_settings):
        shutdown = ShutdownFlag()

        assert EnrichmentSync(test_settings, shutdown=shutdown).shutdown is shutdown

    @pytest.mark.asyncio
    async def test_disposes_engine_built_from_settings(
        self, test_settings, store, source, tmp_path, monkeypatch
    ):
        await add_submissions(
            source,
            EnrichmentSubmission(
                tabc_permit_number="MB000001", clean_dba_name="A", synced_to_store=False
            ),
        )
        test_settings.enrichment_source_url = f"sqlite+aiosqlite:///{tmp_path / 'source.sqlite'}"
        disposed = []
        original = AsyncEngine.dispose

        async def tracking_dispose(self, close=True):
            disposed.append(self)
            await original(self, close)

        monkeypatch.setattr(AsyncEngine, "dispose", tracking_dispose)
        sync = EnrichmentSync(test_settings)

        report = await sync.run()

        assert report.outcome == RunOutcome.COMPLETED
        assert report.inserted == 1
        assert sync._source_engine is not None
        assert sync._source_engine in disposed
