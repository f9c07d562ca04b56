"""
Address geocoding with a persistent cache and a rate-limited provider chain.

Providers are tried in order (Census, then Nominatim, optionally Mapbox).
Every provider call goes through that provider's own RateLimiter. Results,
including failures, are cached by the SHA-256 of the normalized address.
"""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert

from beverage_sync.config import Settings
from beverage_sync.database import Store
from beverage_sync.models import GeocodeCacheEntry
from beverage_sync.services.rate_limit import RateLimiter, parse_retry_after

logger = logging.getLogger(__name__)

QUALITY_EXACT = "exact"
QUALITY_APPROXIMATE = "approximate"
QUALITY_FAILED = "failed"

_WHITESPACE = re.compile(r"\s+")


def normalize_address(address: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    return _WHITESPACE.sub(" ", address.strip().lower())


def hash_address(address: str) -> str:
    return hashlib.sha256(normalize_address(address).encode("utf-8")).hexdigest()


@dataclass
class GeocodeResult:
    latitude: float | None
    longitude: float | None
    quality: str
    provider: str
    formatted_address: str | None = None
    cached: bool = False

    @property
    def failed(self) -> bool:
        return self.quality == QUALITY_FAILED


class RateLimitedError(Exception):
    """Provider answered 429."""

    def __init__(self, provider: str, retry_after: float | None = None):
        self.provider = provider
        self.retry_after = retry_after
        super().__init__(f"{provider} rate limited (retry after {retry_after}s)")


class GeocodeProvider(ABC):
    """One external geocoder. Returns None when it has no usable match."""

    name: str

    def __init__(
        self,
        limiter: RateLimiter,
        user_agent: str,
        timeout: float = 30.0,
        max_rate_limit_retries: int = 2,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.limiter = limiter
        self.headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self.timeout = timeout
        self.max_rate_limit_retries = max_rate_limit_retries
        self.http_client = http_client

    async def _get_json(self, url: str, params: dict[str, Any]) -> Any:
        if self.http_client is not None:
            response = await self.http_client.get(url, headers=self.headers, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=self.headers, params=params)
        if response.status_code == 429:
            raise RateLimitedError(self.name, parse_retry_after(response.headers.get("Retry-After")))
        response.raise_for_status()
        return response.json()

    @abstractmethod
    async def _lookup(self, address: str) -> GeocodeResult | None:
        """Query the provider once."""

    async def geocode(self, address: str) -> GeocodeResult | None:
        for attempt in range(self.max_rate_limit_retries + 1):
            await self.limiter.acquire()
            try:
                return await self._lookup(address)
            except RateLimitedError as e:
                delay = e.retry_after if e.retry_after is not None else self.limiter.window_seconds
                self.limiter.defer(delay)
                logger.warning(f"{e} (attempt {attempt + 1})")
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"{self.name} geocode failed for '{address}': {e}")
                return None
        return None


class CensusProvider(GeocodeProvider):
    """US Census Bureau one-line address geocoder. Free, no key."""

    name = "census"

    def __init__(self, limiter: RateLimiter, url: str, **kwargs):
        super().__init__(limiter, **kwargs)
        self.url = url

    async def _lookup(self, address: str) -> GeocodeResult | None:
        data = await self._get_json(
            self.url,
            {"address": address, "benchmark": "Public_AR_Current", "format": "json"},
        )
        matches = (data or {}).get("result", {}).get("addressMatches") or []
        if not matches:
            return None
        match = matches[0]
        coords = match.get("coordinates") or {}
        if not coords.get("x") or not coords.get("y"):
            return None
        # Census returns x=longitude, y=latitude
        return GeocodeResult(
            latitude=float(coords["y"]),
            longitude=float(coords["x"]),
            quality=QUALITY_EXACT if match.get("tigerLine") else QUALITY_APPROXIMATE,
            provider=self.name,
            formatted_address=match.get("matchedAddress"),
        )


class NominatimProvider(GeocodeProvider):
    """OpenStreetMap Nominatim. Requires a User-Agent and 1 req/sec."""

    name = "nominatim"

    def __init__(self, limiter: RateLimiter, url: str, **kwargs):
        super().__init__(limiter, **kwargs)
        self.url = url

    async def _lookup(self, address: str) -> GeocodeResult | None:
        data = await self._get_json(
            self.url,
            {"q": address, "format": "json", "countrycodes": "us", "limit": "1"},
        )
        if not data:
            return None
        result = data[0]
        return GeocodeResult(
            latitude=float(result["lat"]),
            longitude=float(result["lon"]),
            quality=QUALITY_APPROXIMATE,
            provider=self.name,
            formatted_address=result.get("display_name"),
        )


class MapboxProvider(GeocodeProvider):
    """Mapbox Geocoding API v6 forward search (needs an access token)."""

    name = "mapbox"

    def __init__(self, limiter: RateLimiter, url: str, token: str, **kwargs):
        super().__init__(limiter, **kwargs)
        self.url = url
        self.token = token

    async def _lookup(self, address: str) -> GeocodeResult | None:
        data = await self._get_json(
            self.url,
            {"q": address, "access_token": self.token, "country": "US", "limit": "1"},
        )
        features = (data or {}).get("features") or []
        if not features:
            return None
        feature = features[0]
        lng, lat = feature["geometry"]["coordinates"]
        props = feature.get("properties", {})
        accuracy = props.get("coordinates", {}).get("accuracy")
        return GeocodeResult(
            latitude=float(lat),
            longitude=float(lng),
            quality=QUALITY_EXACT if accuracy == "rooftop" else QUALITY_APPROXIMATE,
            provider=self.name,
            formatted_address=props.get("full_address"),
        )


def build_providers(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> list[GeocodeProvider]:
    """Instantiate the configured provider chain, each with its own limiter."""
    common = {
        "user_agent": settings.geocode_user_agent,
        "timeout": settings.geocode_timeout_seconds,
        "http_client": http_client,
    }
    providers: list[GeocodeProvider] = []
    for name in settings.geocode_providers:
        if name == "census":
            limiter = RateLimiter(
                settings.census_requests_per_window, settings.census_window_seconds, name=name
            )
            providers.append(CensusProvider(limiter, settings.census_geocode_url, **common))
        elif name == "nominatim":
            limiter = RateLimiter(
                settings.nominatim_requests_per_window,
                settings.nominatim_window_seconds,
                name=name,
            )
            providers.append(NominatimProvider(limiter, settings.nominatim_url, **common))
        elif name == "mapbox":
            if not settings.mapbox_token:
                logger.warning("Mapbox provider configured without MAPBOX_TOKEN; skipping")
                continue
            limiter = RateLimiter(
                settings.mapbox_requests_per_window, settings.mapbox_window_seconds, name=name
            )
            providers.append(
                MapboxProvider(
                    limiter, settings.mapbox_geocode_url, settings.mapbox_token, **common
                )
            )
        else:
            raise ValueError(f"Unknown geocode provider: {name}")
    return providers


class GeocodeCache:
    """Persistent geocode results keyed by address hash."""

    # Keeps IN (...) lists well under SQLite's bound-parameter limit
    READ_CHUNK = 500

    def __init__(self, store: Store):
        self.store = store
        self.table = GeocodeCacheEntry.__table__

    @staticmethod
    def _to_result(row) -> GeocodeResult:
        return GeocodeResult(
            latitude=row.latitude,
            longitude=row.longitude,
            quality=row.quality,
            provider=row.provider,
            formatted_address=row.formatted_address,
            cached=True,
        )

    async def get(self, address: str) -> GeocodeResult | None:
        results = await self.get_many([hash_address(address)])
        return next(iter(results.values()), None)

    async def get_many(self, hashes: Iterable[str]) -> dict[str, GeocodeResult]:
        hashes = list(dict.fromkeys(hashes))
        found: dict[str, GeocodeResult] = {}
        for i in range(0, len(hashes), self.READ_CHUNK):
            chunk = hashes[i : i + self.READ_CHUNK]
            rows = await self.store.query(
                select(self.table).where(self.table.c.address_hash.in_(chunk))
            )
            for row in rows:
                found[row.address_hash] = self._to_result(row)
        return found

    async def put(self, address: str, result: GeocodeResult) -> None:
        await self.put_many([(address, result)])

    async def put_many(self, entries: list[tuple[str, GeocodeResult]]) -> int:
        """Upsert all entries in one statement."""
        if not entries:
            return 0
        now = datetime.now(UTC)
        values = [
            {
                "address_hash": hash_address(address),
                "normalized_address": normalize_address(address),
                "formatted_address": result.formatted_address,
                "latitude": result.latitude,
                "longitude": result.longitude,
                "provider": result.provider,
                "quality": result.quality,
                "geocoded_at": now,
            }
            for address, result in entries
        ]
        stmt = insert(self.table)
        stmt = stmt.on_conflict_do_update(
            index_elements=["address_hash"],
            set_={
                name: stmt.excluded[name]
                for name in (
                    "normalized_address",
                    "formatted_address",
                    "latitude",
                    "longitude",
                    "provider",
                    "quality",
                    "geocoded_at",
                )
            },
        )
        async with self.store.transaction() as conn:
            await conn.execute(stmt, values)
        return len(values)


def failed_result() -> GeocodeResult:
    return GeocodeResult(latitude=None, longitude=None, quality=QUALITY_FAILED, provider="none")


class Geocoder:
    """
    Cache-first geocoding over a provider chain.

    Usage::

        geocoder = Geocoder(GeocodeCache(store), build_providers(settings))
        results = await geocoder.geocode_many(addresses)
    """

    def __init__(self, cache: GeocodeCache, providers: list[GeocodeProvider]):
        self.cache = cache
        self.providers = providers
        self.provider_calls = 0

    async def _lookup(self, address: str) -> GeocodeResult:
        for provider in self.providers:
            self.provider_calls += 1
            result = await provider.geocode(address)
            if result is not None:
                return result
            logger.debug(f"{provider.name} had no match for '{address}'")
        logger.info(f"No provider could geocode '{address}'")
        return failed_result()

    async def geocode(self, address: str, force: bool = False) -> GeocodeResult:
        results = await self.geocode_many([address], force=force)
        return results[address]

    async def geocode_many(
        self, addresses: Iterable[str], force: bool = False
    ) -> dict[str, GeocodeResult]:
        """
        Geocode many addresses.

        Addresses that normalize identically are looked up once. The cache is
        read in bulk up front and written in one batch at the end. A cached
        failure is returned as is unless ``force`` is set.

        Returns:
            Mapping of each input address to its result
        """
        addresses = list(addresses)
        by_hash: dict[str, str] = {}
        for address in addresses:
            by_hash.setdefault(hash_address(address), address)

        cached = {} if force else await self.cache.get_many(by_hash)
        resolved: dict[str, GeocodeResult] = dict(cached)
        fresh: list[tuple[str, GeocodeResult]] = []

        for address_hash, address in by_hash.items():
            if address_hash in resolved:
                continue
            result = await self._lookup(address)
            resolved[address_hash] = result
            fresh.append((address, result))

        if fresh:
            await self.cache.put_many(fresh)
        logger.info(
            f"Geocoded {len(by_hash)} unique addresses: "
            f"{len(cached)} cached, {len(fresh)} looked up"
        )
        return {address: resolved[hash_address(address)] for address in addresses}
