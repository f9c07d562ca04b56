"""Pydantic schemas for the admin data endpoints."""

from datetime import date

from pydantic import BaseModel


class StoreBoundaries(BaseModel):
    """Date range currently covered by the analytical store."""

    earliest_date: date | None = None
    latest_date: date | None = None
    total_records: int = 0


class FreshnessReport(BaseModel):
    """Result of comparing the store against the newest API records."""

    has_new_data: bool
    latest_in_store: date | None = None
    latest_in_api: date | None = None
    new_months: list[str] = []
    estimated_new_records: int = 0
    message: str
