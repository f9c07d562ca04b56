"""Database models."""

from beverage_sync.models.enrichment_source import EnrichmentSubmission, SourceBase
from beverage_sync.models.geocode_cache import GeocodeCacheEntry
from beverage_sync.models.location_coordinates import LocationCoordinates
from beverage_sync.models.location_enrichment import LocationEnrichment
from beverage_sync.models.receipt import MONETARY_FIELDS, ReceiptRecord

__all__ = [
    "EnrichmentSubmission",
    "GeocodeCacheEntry",
    "LocationCoordinates",
    "LocationEnrichment",
    "MONETARY_FIELDS",
    "ReceiptRecord",
    "SourceBase",
]
