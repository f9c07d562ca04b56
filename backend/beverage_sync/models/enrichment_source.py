"""Enrichment source table living in the operational (CRM) database."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class SourceBase(DeclarativeBase):
    """Base for tables owned by the operational database, not the store."""

    pass


class EnrichmentSubmission(SourceBase):
    """
    Admin-reviewed enrichment with the AI suggestions it started from.

    Committed fields win over ``ai_suggested_*`` when both are present.
    """

    __tablename__ = "location_enrichments_pg"

    tabc_permit_number: Mapped[str] = mapped_column(String(20), primary_key=True)
    clean_dba_name: Mapped[str | None] = mapped_column(String(255))
    ownership_group: Mapped[str | None] = mapped_column(String(255))
    industry_segment: Mapped[str | None] = mapped_column(String(100))
    clean_up_notes: Mapped[str | None] = mapped_column(Text)
    ai_suggested_dba_name: Mapped[str | None] = mapped_column(String(255))
    ai_suggested_ownership: Mapped[str | None] = mapped_column(String(255))
    ai_suggested_segment: Mapped[str | None] = mapped_column(String(100))
    ai_confidence: Mapped[float | None] = mapped_column(Float)
    synced_to_store: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<EnrichmentSubmission {self.tabc_permit_number}: synced={self.synced_to_store}>"
