"""Field normalization for raw receipt records from the SODA API."""

import re
from datetime import date, datetime

_COMPACT_DATE = re.compile(r"^\d{8}$")
_MONEY_STRIP = re.compile(r"[$,\s]")


def parse_date(value: str | None) -> date | None:
    """
    Parse a SODA date value.

    Accepts ISO timestamps (``2024-01-31T00:00:00.000``), ISO dates
    (``2024-01-31``) and compact ``YYYYMMDD`` strings.
    """
    if not value:
        return None
    value = str(value).strip()
    try:
        if _COMPACT_DATE.match(value):
            return datetime.strptime(value, "%Y%m%d").date()
        if "T" in value:
            return datetime.fromisoformat(value.rstrip("Z")).date()
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def format_date_from_api(value: str | None) -> str | None:
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def to_year_month(value: date) -> str:
    return value.strftime("%Y-%m")


def parse_money(value: str | float | int | None) -> float | None:
    """Parse a monetary amount; absent or unparseable means no data (None), not zero."""
    if value is None:
        return None
    if isinstance(value, int | float):
        return float(value)
    cleaned = _MONEY_STRIP.sub("", value)
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def county_code(value: str | int | None) -> str | None:
    """Zero-padded three digit county code (``"1"`` -> ``"001"``)."""
    if value is None or value == "":
        return None
    try:
        return f"{int(str(value).strip()):03d}"
    except ValueError:
        return None


def month_key(permit: str, obligation_end: date) -> str:
    """Composite record key: ``<permit>_<YYYYMM>``."""
    return f"{permit}_{obligation_end.strftime('%Y%m')}"


def clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def first_of_month_back(value: date, months: int) -> date:
    """First day of the month ``months`` months before ``value``'s month."""
    index = value.year * 12 + (value.month - 1) - months
    return date(index // 12, index % 12 + 1, 1)
