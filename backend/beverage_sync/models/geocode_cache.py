"""GeocodeCacheEntry model keyed by normalized-address hash."""

from datetime import datetime

from sqlalchemy import DateTime, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from beverage_sync.database import Base


class GeocodeCacheEntry(Base):
    """
    Cached geocoding outcome for one normalized address.

    A ``failed`` entry is a cached negative result and is not retried
    unless the caller bypasses the cache.
    """

    __tablename__ = "geocode_cache"

    address_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    normalized_address: Mapped[str] = mapped_column(Text, nullable=False)
    formatted_address: Mapped[str | None] = mapped_column(Text)
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    quality: Mapped[str] = mapped_column(String(20), nullable=False)
    geocoded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<GeocodeCacheEntry {self.address_hash[:12]}: {self.quality}>"
