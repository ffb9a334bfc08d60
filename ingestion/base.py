"""
Abstract base class for marketplace data sources
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Any
from models.base import ResourceType


@dataclass
class RecordFailure:
    """A record that could not be parsed and was skipped"""
    record_id: Optional[str]
    reason: str

    def __str__(self) -> str:
        return f"record {self.record_id or '?'}: {self.reason}"


@dataclass
class Page:
    """
    One page fetched from the marketplace.

    Attributes:
        records: Parsed records (PlayerRecord, SaleRecord or ListingRecord)
        next_cursor: Keyset cursor for the next page, None when exhausted
        failures: Records in this page that were malformed and skipped
        raw_count: Number of raw records the upstream returned
    """
    records: List[Any] = field(default_factory=list)
    next_cursor: Optional[str] = None
    failures: List[RecordFailure] = field(default_factory=list)
    raw_count: int = 0

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


class MarketplaceSource(ABC):
    """
    Abstract base class for marketplace readers.

    Responsibilities:
    - Keyset pagination over players, sales and listings
    - Rate limiting and retry of transient failures
    - Per-record tolerance (malformed records become failures, not errors)
    """

    @abstractmethod
    async def fetch_page(
        self,
        resource: ResourceType,
        cursor: Optional[str],
        page_size: int,
        **filters
    ) -> Page:
        """
        Fetch one page of `resource`.

        Args:
            resource: players, sales or listings
            cursor: Cursor returned by the previous page (None for the first)
            page_size: Records per page
            filters: Resource specific filters (is_retired, order)

        Returns:
            Page with parsed records and the next cursor

        Raises:
            SourceAPIError: After retries are exhausted or on non-retryable errors
        """
        pass

    @abstractmethod
    async def fetch_player(self, player_id: int) -> Optional[Any]:
        """
        Fetch one player by id.

        Returns:
            PlayerRecord, or None when the marketplace does not know the player

        Raises:
            SourceAPIError: After retries are exhausted, or when the payload is malformed
        """
        pass

    async def aclose(self):
        """Release network resources"""
        return None
