"""LocationCoordinates model: one geocoded point per permit (for maps)."""

from datetime import datetime

from sqlalchemy import DateTime, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from beverage_sync.database import Base


class LocationCoordinates(Base):
    """Geocoded coordinates for a permit location."""

    __tablename__ = "location_coordinates"

    tabc_permit_number: Mapped[str] = mapped_column(String(20), primary_key=True)
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)
    geocoded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    geocode_source: Mapped[str | None] = mapped_column(String(20))  # census, nominatim, mapbox, none
    geocode_quality: Mapped[str | None] = mapped_column(String(20), index=True)  # exact, approximate, failed

    def __repr__(self) -> str:
        return f"<LocationCoordinates {self.tabc_permit_number}: {self.geocode_quality}>"
