"""ReceiptRecord model for mixed beverage receipts (naix-2893 dataset)."""

from datetime import date

from sqlalchemy import Date, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from beverage_sync.database import Base

MONETARY_FIELDS = (
    "liquor_receipts",
    "wine_receipts",
    "beer_receipts",
    "cover_charge_receipts",
    "total_receipts",
)


def _money():
    return mapped_column(Numeric(15, 2, asdecimal=False))


class ReceiptRecord(Base):
    """
    One permit's mixed beverage receipts for one reporting month.

    Keyed by ``location_month_key`` = ``{tabc_permit_number}_{YYYYMM}``.
    """

    __tablename__ = "mixed_beverage_receipts"

    location_month_key: Mapped[str] = mapped_column(String(30), primary_key=True)
    tabc_permit_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Identity / address
    location_name: Mapped[str | None] = mapped_column(String(255))
    location_address: Mapped[str | None] = mapped_column(String(255))
    location_city: Mapped[str | None] = mapped_column(String(100))
    location_state: Mapped[str | None] = mapped_column(String(2))
    location_zip: Mapped[str | None] = mapped_column(String(10), index=True)
    location_county: Mapped[str | None] = mapped_column(String(100))
    location_county_code: Mapped[str | None] = mapped_column(String(3), index=True)

    # Reporting period
    obligation_end_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Monetary categories (NULL means "no data", not zero)
    liquor_receipts: Mapped[float | None] = _money()
    wine_receipts: Mapped[float | None] = _money()
    beer_receipts: Mapped[float | None] = _money()
    cover_charge_receipts: Mapped[float | None] = _money()
    total_receipts: Mapped[float | None] = _money()

    responsibility_begin_date: Mapped[date | None] = mapped_column(Date)
    responsibility_end_date: Mapped[date | None] = mapped_column(Date)

    __table_args__ = (
        Index("idx_receipts_date", obligation_end_date.desc()),
        Index("idx_receipts_history", tabc_permit_number, obligation_end_date.desc()),
    )

    def __repr__(self) -> str:
        return f"<ReceiptRecord {self.location_month_key}: {self.total_receipts}>"
