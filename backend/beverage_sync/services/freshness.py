"""Store boundaries and new-data discovery against the SODA API."""

import logging
from datetime import date

from beverage_sync.config import Settings
from beverage_sync.database import Store
from beverage_sync.schemas.admin import FreshnessReport, StoreBoundaries
from beverage_sync.services.parsing import parse_date, to_year_month
from beverage_sync.services.soda_client import SODAClient, SODAClientError

logger = logging.getLogger(__name__)

DISCOVERY_LIMIT = 100


def _as_date(value) -> date | None:
    if value is None:
        return None
    return value if isinstance(value, date) else parse_date(str(value))


async def store_boundaries(store: Store) -> StoreBoundaries:
    """Earliest and latest reporting dates plus the receipt count."""
    row = await store.query_one(
        """
        SELECT MIN(obligation_end_date) AS earliest,
               MAX(obligation_end_date) AS latest,
               COUNT(*) AS total
        FROM mixed_beverage_receipts
        """
    )
    if row is None:
        return StoreBoundaries()
    return StoreBoundaries(
        earliest_date=_as_date(row.earliest),
        latest_date=_as_date(row.latest),
        total_records=row.total or 0,
    )


def describe_new_months(new_months: list[str], estimate: int) -> str:
    if not new_months:
        return "Database is up to date. No new months of data found in the Texas API."
    if len(new_months) == 1:
        return (
            f"1 new month of data available ({new_months[0]}), "
            f"estimated ~{estimate:,} new records."
        )
    return (
        f"{len(new_months)} new months of data available ({', '.join(new_months)}), "
        f"estimated ~{estimate:,} new records."
    )


async def check_new_data(
    store: Store, client: SODAClient, settings: Settings
) -> FreshnessReport:
    """
    Compare the months in the store with those in the API's newest records.

    An unreachable API yields ``has_new_data=False`` with an explanatory
    message rather than an error.
    """
    boundaries = await store_boundaries(store)
    rows = await store.query(
        "SELECT DISTINCT substr(obligation_end_date, 1, 7) AS month "
        "FROM mixed_beverage_receipts"
    )
    existing_months = {row.month for row in rows if row.month}

    try:
        records = await client.fetch_latest(DISCOVERY_LIMIT)
    except SODAClientError as e:
        logger.warning(f"Freshness check could not reach the API: {e}")
        return FreshnessReport(
            has_new_data=False,
            latest_in_store=boundaries.latest_date,
            message=f"Unable to reach the Texas API: {e}",
        )

    api_dates = [
        d for d in (parse_date(r.get(settings.receipts_date_field)) for r in records) if d
    ]
    api_months = {to_year_month(d) for d in api_dates}
    new_months = sorted(api_months - existing_months, reverse=True)
    estimate = len(new_months) * settings.typical_records_per_month

    return FreshnessReport(
        has_new_data=bool(new_months),
        latest_in_store=boundaries.latest_date,
        latest_in_api=max(api_dates) if api_dates else None,
        new_months=new_months,
        estimated_new_records=estimate,
        message=describe_new_months(new_months, estimate),
    )
