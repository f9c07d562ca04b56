"""LocationEnrichment model: clean names and classification per permit."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from beverage_sync.database import Base


class LocationEnrichment(Base):
    """Reviewed (or AI-suggested) classification of a permit location."""

    __tablename__ = "location_enrichments"

    tabc_permit_number: Mapped[str] = mapped_column(String(20), primary_key=True)
    clean_dba_name: Mapped[str | None] = mapped_column(String(255))
    ownership_group: Mapped[str | None] = mapped_column(String(255), index=True)
    industry_segment: Mapped[str | None] = mapped_column(String(100), index=True)
    clean_up_notes: Mapped[str | None] = mapped_column(Text)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<LocationEnrichment {self.tabc_permit_number}: {self.clean_dba_name}>"
