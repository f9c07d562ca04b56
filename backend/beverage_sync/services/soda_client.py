"""SODA client for the Texas.gov receipts dataset with retry logic and app token support."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any

import httpx

from beverage_sync.config import Settings, get_settings
from beverage_sync.errors import PipelineError
from beverage_sync.services.rate_limit import parse_retry_after

logger = logging.getLogger(__name__)


class SODAClientError(PipelineError):
    """Base exception for SODA client errors."""

    pass


def _soda_timestamp(value: date) -> str:
    return f"{value.isoformat()}T00:00:00.000"


class SODAClient:
    """
    Client for the Texas.gov Socrata Open Data API (SODA).

    Features:
    - App token support for higher rate limits
    - Hard per-request timeout
    - Exponential backoff retry on timeouts, network errors, 429 and 5xx
    - Deterministic paging (date order plus ``:id`` tiebreak)
    - Half-open date windows via $where
    """

    def __init__(
        self,
        base_url: str | None = None,
        dataset_id: str | None = None,
        app_token: str | None = None,
        max_attempts: int | None = None,
        timeout: float | None = None,
        backoff_base: float | None = None,
        backoff_multiplier: float | None = None,
        date_field: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.base_url = base_url or settings.soda_base_url
        self.dataset_id = dataset_id or settings.receipts_dataset_id
        self.app_token = app_token if app_token is not None else settings.soda_app_token
        self.max_attempts = max_attempts or settings.fetch_max_attempts
        self.timeout = timeout or settings.fetch_timeout_seconds
        self.backoff_base = settings.backoff_base_seconds if backoff_base is None else backoff_base
        self.backoff_multiplier = backoff_multiplier or settings.backoff_multiplier
        self.date_field = date_field or settings.receipts_date_field
        self._sleep = sleep

        # Build headers
        self.headers: dict[str, str] = {
            "Accept": "application/json",
        }
        if self.app_token:
            self.headers["X-App-Token"] = self.app_token

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "SODAClient":
        return cls(
            base_url=settings.soda_base_url,
            dataset_id=settings.receipts_dataset_id,
            app_token=settings.soda_app_token,
            max_attempts=settings.fetch_max_attempts,
            timeout=settings.fetch_timeout_seconds,
            backoff_base=settings.backoff_base_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            date_field=settings.receipts_date_field,
            **kwargs,
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.dataset_id}.json"

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return self.backoff_base * self.backoff_multiplier ** (attempt - 1)

    async def _request_with_retry(
        self,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Make HTTP request with exponential backoff retry."""
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            wait_time = self.backoff_delay(attempt)
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers=self.headers, params=params)
                    response.raise_for_status()
                    return response.json()

            except httpx.HTTPStatusError as e:
                last_error = e
                status = e.response.status_code
                if status == 429:  # Rate limited
                    retry_after = parse_retry_after(e.response.headers.get("Retry-After"))
                    if retry_after is not None:
                        wait_time = max(wait_time, retry_after)
                    logger.warning(f"Rate limited (attempt {attempt}/{self.max_attempts})")
                elif status >= 500:  # Server error
                    logger.warning(
                        f"Server error {status} (attempt {attempt}/{self.max_attempts})"
                    )
                else:
                    raise SODAClientError(f"HTTP error: {e}") from e

            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(
                    f"Request timed out after {self.timeout}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"Request error: {e} (attempt {attempt}/{self.max_attempts})")

            except ValueError as e:
                # Body was not JSON; treat like a transient server fault.
                last_error = e
                logger.warning(f"Malformed response body (attempt {attempt}/{self.max_attempts})")

            if attempt < self.max_attempts:
                logger.info(f"Retrying in {wait_time}s")
                await self._sleep(wait_time)

        raise SODAClientError(f"Failed after {self.max_attempts} attempts: {last_error}")

    def build_params(
        self,
        offset: int,
        limit: int,
        order: str = "DESC",
        start: date | None = None,
        end: date | None = None,
    ) -> dict[str, Any]:
        """
        Build SODA query parameters for one page.

        Args:
            offset: Index of the first record in the ordering
            limit: Page size
            order: "ASC" or "DESC" on the reporting date
            start: Inclusive lower date bound
            end: Exclusive upper date bound

        Returns:
            Query parameters
        """
        order = order.upper()
        if order not in ("ASC", "DESC"):
            raise ValueError(f"Invalid order: {order}")

        params: dict[str, Any] = {
            "$limit": limit,
            "$offset": offset,
            # :id breaks ties so offsets stay stable across pages
            "$order": f"{self.date_field} {order}, :id",
        }

        clauses = []
        if start:
            clauses.append(f"{self.date_field} >= '{_soda_timestamp(start)}'")
        if end:
            clauses.append(f"{self.date_field} < '{_soda_timestamp(end)}'")
        if clauses:
            params["$where"] = " AND ".join(clauses)

        return params

    async def fetch_page(
        self,
        offset: int,
        limit: int,
        order: str = "DESC",
        start: date | None = None,
        end: date | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch one page of receipt records. An empty list means the end of the result set."""
        params = self.build_params(offset, limit, order=order, start=start, end=end)

        logger.info(
            f"Fetching receipts: offset={offset}, limit={limit}, order={order}, "
            f"window=[{start}, {end})"
        )
        records = await self._request_with_retry(self.url, params=params)
        logger.info(f"Fetched {len(records)} receipt records")

        return records

    async def fetch_latest(self, limit: int = 100) -> list[dict[str, Any]]:
        """Fetch the newest records, used to discover months not yet in the store."""
        params = {
            "$limit": limit,
            "$order": f"{self.date_field} DESC",
        }
        return await self._request_with_retry(self.url, params=params)
