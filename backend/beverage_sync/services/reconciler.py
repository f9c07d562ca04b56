"""Per-record insert/update/unchanged decision against the analytical store."""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from beverage_sync.database import Store
from beverage_sync.errors import RecordError
from beverage_sync.models import MONETARY_FIELDS, ReceiptRecord
from beverage_sync.services.parsing import (
    clean_text,
    county_code,
    month_key,
    parse_date,
    parse_money,
)

logger = logging.getLogger(__name__)

# Non-monetary columns compared for exact equality
COMPARED_FIELDS = (
    "tabc_permit_number",
    "location_name",
    "location_address",
    "location_city",
    "location_state",
    "location_zip",
    "location_county",
    "location_county_code",
    "obligation_end_date",
    "responsibility_begin_date",
    "responsibility_end_date",
)


class Outcome(StrEnum):
    INSERTED = "inserted"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


@dataclass
class ReconcileResult:
    outcome: Outcome
    key: str | None = None
    reason: str | None = None


@dataclass
class RunCounts:
    """Running totals for one run (or one batch)."""

    inserted: int = 0
    modified: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)

    def add(self, result: ReconcileResult) -> None:
        if result.outcome == Outcome.INSERTED:
            self.inserted += 1
        elif result.outcome == Outcome.MODIFIED:
            self.modified += 1
        elif result.outcome == Outcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.skipped += 1
            reason = result.reason or "unknown"
            self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1

    @property
    def processed(self) -> int:
        return self.inserted + self.modified + self.unchanged + self.skipped + self.errors

    def as_dict(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "modified": self.modified,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def transform_receipt(raw: dict[str, Any]) -> tuple[dict[str, Any] | None, str | None]:
    """
    Map a raw SODA record to store columns.

    Returns:
        Tuple of (row values, None) or (None, skip reason)
    """
    permit = clean_text(raw.get("tabc_permit_number"))
    if not permit:
        return None, "missing permit number"

    obligation_end = parse_date(raw.get("obligation_end_date_yyyymmdd"))
    if not obligation_end:
        return None, "missing or unparseable obligation end date"

    row = {
        "location_month_key": month_key(permit, obligation_end),
        "tabc_permit_number": permit,
        "location_name": clean_text(raw.get("location_name")),
        "location_address": clean_text(raw.get("location_address")),
        "location_city": clean_text(raw.get("location_city")),
        "location_state": clean_text(raw.get("location_state")),
        "location_zip": clean_text(raw.get("location_zip")),
        "location_county": clean_text(raw.get("location_county")),
        "location_county_code": county_code(raw.get("location_county")),
        "obligation_end_date": obligation_end,
        "responsibility_begin_date": parse_date(raw.get("responsibility_begin_date_yyyymmdd")),
        "responsibility_end_date": parse_date(raw.get("responsibility_end_date_yyyymmdd")),
    }
    for name in MONETARY_FIELDS:
        row[name] = parse_money(raw.get(name))
    return row, None


def rows_match(existing: dict[str, Any], incoming: dict[str, Any], epsilon: float) -> bool:
    """True when every compared field matches; monetary fields within ``epsilon`` (None as 0)."""
    for name in COMPARED_FIELDS:
        if existing.get(name) != incoming.get(name):
            return False
    for name in MONETARY_FIELDS:
        if abs((existing.get(name) or 0.0) - (incoming.get(name) or 0.0)) >= epsilon:
            return False
    return True


class ReceiptReconciler:
    """
    Decide insert / modify / unchanged for each incoming receipt.

    Each record is one short transaction: a keyed read, then at most one
    write. Unchanged rows are never rewritten.
    """

    def __init__(self, store: Store, epsilon: float = 0.005):
        self.store = store
        self.epsilon = epsilon
        self.table = ReceiptRecord.__table__

    async def reconcile(self, raw: dict[str, Any]) -> ReconcileResult:
        """
        Reconcile one raw record.

        Raises:
            RecordError: the store rejected the read or write
        """
        row, reason = transform_receipt(raw)
        if row is None:
            logger.debug(f"Skipping record: {reason}")
            return ReconcileResult(Outcome.SKIPPED, reason=reason)

        key = row["location_month_key"]
        try:
            async with self.store.transaction() as conn:
                result = await conn.execute(
                    select(self.table).where(self.table.c.location_month_key == key)
                )
                existing = result.mappings().first()

                if existing is None:
                    await conn.execute(insert(self.table).values(**row))
                    return ReconcileResult(Outcome.INSERTED, key=key)

                if rows_match(dict(existing), row, self.epsilon):
                    return ReconcileResult(Outcome.UNCHANGED, key=key)

                await conn.execute(
                    update(self.table)
                    .where(self.table.c.location_month_key == key)
                    .values(**{k: v for k, v in row.items() if k != "location_month_key"})
                )
                return ReconcileResult(Outcome.MODIFIED, key=key)

        except SQLAlchemyError as e:
            raise RecordError(f"Store write failed for {key}: {e}") from e
