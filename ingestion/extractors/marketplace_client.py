"""
Marketplace API client with rate limiting and retry logic.

This module provides robust page fetching with:
- Exponential backoff retry for transient failures (timeouts, 5xx, 403/429)
- Retry-After support for rate limit responses
- A shared, injected sliding-window rate limiter
- Bounded outbound concurrency
- Per-record tolerance: malformed records are reported and skipped
"""

import httpx
import asyncio
from typing import Dict, Any, List, Optional, Callable, Awaitable, Tuple
from urllib.parse import urlparse
from ingestion.base import MarketplaceSource, Page, RecordFailure
from ingestion.rate_limiter import SlidingWindowRateLimiter
from models.base import ResourceType
from schemas.marketplace import PlayerRecord, SaleRecord, ListingRecord
from core.config import settings
from core.exceptions import (
    SourceAPIError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
)
import logging

logger = logging.getLogger(__name__)


class MarketplaceClient(MarketplaceSource):
    """
    Read players, sales and listings from the marketplace REST API.

    Features:
    - Keyset pagination (beforePlayerId / beforeListingId)
    - Retry logic with capped exponential backoff
    - Rate limiting shared by every stage using the same limiter instance
    - Semaphore-bounded concurrency for parallel segment fetches

    Attributes:
        max_retries: Retries after the first attempt (default: 5)
        base_delay: Initial retry delay in seconds (default: 2.0)
        max_delay: Upper bound on any single backoff sleep (default: 60)
        timeout: Request timeout in seconds (default: 30.0)
    """

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        concurrency: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.base_url = (base_url or settings.MARKETPLACE_API_URL).rstrip("/")
        self.rate_limiter = rate_limiter
        self.rate_key = urlparse(self.base_url).netloc or self.base_url
        self.timeout = timeout if timeout is not None else settings.MARKETPLACE_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else settings.MAX_RETRIES
        self.base_delay = base_delay if base_delay is not None else settings.RETRY_BASE_DELAY
        self.max_delay = max_delay if max_delay is not None else settings.RETRY_MAX_DELAY
        self._semaphore = asyncio.Semaphore(concurrency or settings.FETCH_CONCURRENCY)
        self._sleep = sleep

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def _backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if retry_after:
            return min(retry_after, self.max_delay)
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    @staticmethod
    def _parse_retry_after(response: httpx.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    async def _request_with_retry(self, path: str, params: Dict[str, Any]) -> httpx.Response:
        """
        Make HTTP request with retry logic and exponential backoff.

        Raises:
            AuthenticationError / ResourceNotFoundError: Immediately, never retried
            NetworkError / RateLimitError: After max_retries retries
            SourceAPIError: Other 4xx responses
        """
        url = f"{self.base_url}{path}"
        last_error: Optional[SourceAPIError] = None

        for attempt in range(self.max_retries + 1):
            retry_after = None
            await self.rate_limiter.acquire(self.rate_key)

            try:
                async with self._semaphore:
                    logger.debug(f"Request attempt {attempt + 1}/{self.max_retries + 1} to {url}")
                    response = await self._client.get(url, params=params, timeout=self.timeout)

            except httpx.TimeoutException as e:
                last_error = NetworkError(
                    f"Request timeout for {url}",
                    context={"api_url": url, "timeout": self.timeout, "retry_count": attempt},
                    original_exception=e
                )

            except httpx.TransportError as e:
                last_error = NetworkError(
                    f"Network error for {url}",
                    context={"api_url": url, "retry_count": attempt},
                    original_exception=e
                )

            else:
                status = response.status_code

                if status == 401:
                    raise AuthenticationError(
                        f"Authentication failed for {url}",
                        context={"status_code": status, "api_url": url}
                    )

                if status == 404:
                    raise ResourceNotFoundError(
                        f"Resource not found: {url}",
                        context={"status_code": status, "api_url": url}
                    )

                if status in (403, 429):
                    # The marketplace gateway answers 403 when throttling
                    retry_after = self._parse_retry_after(response)
                    self.rate_limiter.penalize(self.rate_key, self._backoff(attempt, retry_after))
                    last_error = RateLimitError(
                        f"Rate limited by {url}",
                        context={"status_code": status, "api_url": url, "retry_count": attempt},
                        retry_after=retry_after
                    )

                elif status >= 500:
                    last_error = NetworkError(
                        f"Server error {status} from {url}",
                        context={
                            "status_code": status,
                            "api_url": url,
                            "retry_count": attempt,
                            "response_body": response.text[:500]
                        }
                    )

                elif status >= 400:
                    raise SourceAPIError(
                        f"Request rejected with {status}: {url}",
                        context={
                            "status_code": status,
                            "api_url": url,
                            "response_body": response.text[:500]
                        }
                    )

                else:
                    return response

            if attempt < self.max_retries:
                delay = self._backoff(attempt, retry_after)
                logger.warning(
                    f"{last_error.message}. Retrying in {delay} seconds "
                    f"(attempt {attempt + 1}/{self.max_retries + 1})"
                )
                await self._sleep(delay)

        last_error.context["retry_count"] = self.max_retries + 1
        logger.error(f"Giving up on {url} after {self.max_retries + 1} attempts")
        raise last_error

    def _build_request(
        self,
        resource: ResourceType,
        cursor: Optional[str],
        page_size: int,
        filters: Dict[str, Any]
    ) -> Tuple[str, Dict[str, Any]]:
        order = filters.get("order", "ASC")

        if resource == ResourceType.PLAYERS:
            params = {"limit": page_size, "sorts": "id", "sortsOrders": order}
            if filters.get("is_retired") is not None:
                params["isRetired"] = "true" if filters["is_retired"] else "false"
            if cursor:
                params["beforePlayerId"] = cursor
            return "/players", params

        if resource == ResourceType.SALES:
            params = {
                "status": "BOUGHT",
                "type": "PLAYER",
                "limit": page_size,
                "sorts": "listing.purchaseDateTime",
                "sortsOrders": order,
                "marketplace": "all",
            }
        else:
            params = {
                "status": "AVAILABLE",
                "type": "PLAYER",
                "limit": page_size,
                "sorts": "listing.createdDateTime",
                "sortsOrders": order,
                "marketplace": "all",
            }
        if cursor:
            params["beforeListingId"] = cursor
        return "/listings", params

    def _parse_record(self, resource: ResourceType, raw: Dict[str, Any], filters: Dict[str, Any]):
        if resource == ResourceType.PLAYERS:
            return PlayerRecord.from_api(raw, is_retired=bool(filters.get("is_retired", False)))
        if resource == ResourceType.SALES:
            return SaleRecord.from_api(raw)
        return ListingRecord.from_api(raw)

    @staticmethod
    def _raw_id(resource: ResourceType, raw: Any) -> Optional[str]:
        if not isinstance(raw, dict):
            return None
        key = "id" if resource == ResourceType.PLAYERS else "listingResourceId"
        value = raw.get(key)
        return str(value) if value is not None else None

    async def fetch_page(
        self,
        resource: ResourceType,
        cursor: Optional[str],
        page_size: int,
        **filters
    ) -> Page:
        path, params = self._build_request(resource, cursor, page_size, filters)
        response = await self._request_with_retry(path, params)

        try:
            data = response.json()
        except ValueError as e:
            raise SourceAPIError(
                "Failed to parse JSON response",
                context={
                    "api_url": f"{self.base_url}{path}",
                    "resource": resource.value,
                    "response_body": response.text[:500]
                },
                original_exception=e
            )

        if isinstance(data, dict):
            raw_records = data.get("data", data.get(resource.value, []))
        elif isinstance(data, list):
            raw_records = data
        else:
            raw_records = []

        records: List[Any] = []
        failures: List[RecordFailure] = []

        for raw in raw_records:
            try:
                if not isinstance(raw, dict):
                    raise TypeError(f"expected object, got {type(raw).__name__}")
                records.append(self._parse_record(resource, raw, filters))
            except (ValueError, TypeError, AttributeError, KeyError) as e:
                failure = RecordFailure(record_id=self._raw_id(resource, raw), reason=" ".join(str(e).split())[:200])
                failures.append(failure)
                logger.warning(f"Skipping malformed {resource.value} {failure}")

        next_cursor = None
        if raw_records and len(raw_records) >= page_size:
            for raw in reversed(raw_records):
                next_cursor = self._raw_id(resource, raw)
                if next_cursor:
                    break

        logger.debug(
            f"Fetched {len(records)} {resource.value} "
            f"({len(failures)} malformed, next cursor: {next_cursor})"
        )

        return Page(
            records=records,
            next_cursor=next_cursor,
            failures=failures,
            raw_count=len(raw_records)
        )

    async def fetch_player(self, player_id: int) -> Optional[PlayerRecord]:
        path = f"/players/{player_id}"
        try:
            response = await self._request_with_retry(path, {})
        except ResourceNotFoundError:
            logger.info(f"Player {player_id} not found in the marketplace")
            return None

        try:
            raw = response.json()
            if not isinstance(raw, dict):
                raise TypeError(f"expected object, got {type(raw).__name__}")
            # Players referenced by sales and listings are assumed active
            return PlayerRecord.from_api(raw, is_retired=False)
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            raise SourceAPIError(
                f"Malformed player {player_id}",
                context={
                    "api_url": f"{self.base_url}{path}",
                    "player_id": player_id,
                    "response_body": response.text[:500]
                },
                original_exception=e
            )
