"""Pytest fixtures for beverage-sync tests."""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from beverage_sync.config import Settings
from beverage_sync.database import Store, init_store
from beverage_sync.services.soda_client import SODAClientError


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing every file at a temporary directory."""
    return Settings(
        data_dir=tmp_path,
        store_path=tmp_path / "analytics.sqlite",
        soda_app_token="test_token",
        forward_batch_size=2,
        backfill_batch_size=2,
        forward_lookback_months=0,
        batch_pacing_seconds=0,
        max_record_errors=100,
        geocode_chunk_size=2,
        launcher="subprocess",
        python_executable="python",
    )


@pytest_asyncio.fixture
async def store(test_settings: Settings) -> AsyncGenerator[Store, None]:
    """Production store with the schema created."""
    store = Store.from_path(test_settings.store_path)
    await init_store(store)
    yield store
    await store.dispose()


def make_receipt(
    permit: str = "MB000001",
    obligation_end: str = "2024-03-31T00:00:00.000",
    name: str = "THE TIPSY COW",
    address: str = "123 MAIN ST",
    city: str = "AUSTIN",
    total: str | None = "1000.00",
    **overrides: Any,
) -> dict[str, Any]:
    """Raw record shaped like the Texas.gov naix-2893 dataset."""
    record = {
        "tabc_permit_number": permit,
        "location_name": name,
        "location_address": address,
        "location_city": city,
        "location_state": "TX",
        "location_zip": "78701",
        "location_county": "227",
        "obligation_end_date_yyyymmdd": obligation_end,
        "responsibility_begin_date_yyyymmdd": "2019-05-01T00:00:00.000",
        "liquor_receipts": "600.00",
        "wine_receipts": "150.00",
        "beer_receipts": "250.00",
        "cover_charge_receipts": "0.00",
        "total_receipts": total,
    }
    record.update(overrides)
    return record


@pytest.fixture
def receipt_factory():
    return make_receipt


class FakeSODAClient:
    """Serves a fixed record list page by page, like a stable SODA dataset."""

    def __init__(self, records: list[dict[str, Any]], fail_on_call: int | None = None):
        self.records = records
        self.fail_on_call = fail_on_call
        self.calls: list[dict[str, Any]] = []
        self.on_fetch = None
        self.latest: list[dict[str, Any]] | Exception = []

    async def fetch_page(self, offset, limit, order="DESC", start=None, end=None):
        self.calls.append(
            {"offset": offset, "limit": limit, "order": order, "start": start, "end": end}
        )
        if self.on_fetch:
            self.on_fetch(len(self.calls))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise SODAClientError("Failed after 3 attempts: ReadTimeout")
        return self.records[offset : offset + limit]

    async def fetch_latest(self, limit: int = 100):
        if isinstance(self.latest, Exception):
            raise self.latest
        return self.latest[:limit]


@pytest.fixture
def fake_client_factory():
    return FakeSODAClient


class FakeClock:
    """Monotonic clock advanced only by the paired fake sleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
