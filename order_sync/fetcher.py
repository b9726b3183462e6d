"""Paginated fetching of raw orders from Linnworks.

Both order endpoints are paged by page number. A page that still fails
after the client's retry schedule is logged and skipped so one bad page
does not cost the whole run; the open orders view stats call is required,
so its failure propagates.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .config import Settings
from .linnworks_client import AuthenticationError, LinnworksAPIError, LinnworksClient
from .models import ProcessedOrderFilters, SessionToken
from .normalizer import normalize_order

logger = logging.getLogger(__name__)

# Give up on a window after this many failed pages in a row
MAX_CONSECUTIVE_FAILED_PAGES = 3


class OrderEndpoint(str, Enum):
    """Upstream order listings."""
    OPEN = "open_orders"
    PROCESSED = "processed_orders"


@dataclass
class FetchResult:
    """Raw orders gathered across the pages of one window."""
    orders: List[Dict[str, Any]] = field(default_factory=list)
    pages_fetched: int = 0
    failed_pages: List[int] = field(default_factory=list)
    total_available: Optional[int] = None
    truncated: bool = False

    @property
    def complete(self) -> bool:
        return not self.failed_pages and not self.truncated


class PaginatedFetcher:
    """Pages through an order endpoint for one date window."""

    def __init__(
        self,
        client: LinnworksClient,
        session: SessionToken,
        settings: Settings,
        filters: Optional[ProcessedOrderFilters] = None,
    ):
        """Initialize fetcher.

        Args:
            client: Linnworks API client (inside its context manager)
            session: Valid session for the account being synced
            settings: Application settings (page size, limits, view)
            filters: Search options for processed orders
        """
        self.client = client
        self.session = session
        self.settings = settings
        self.filters = filters or ProcessedOrderFilters()

    def _max_orders(self, endpoint: OrderEndpoint) -> int:
        if endpoint is OrderEndpoint.OPEN:
            return self.settings.max_open_orders
        return self.settings.max_processed_orders

    async def _fetch_raw_page(
        self,
        endpoint: OrderEndpoint,
        window_start: datetime,
        window_end: datetime,
        page_number: int,
        page_size: int,
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """One unfiltered page and, for processed orders, the total page count."""
        if endpoint is OrderEndpoint.OPEN:
            orders = await self.client.get_open_orders(
                self.session,
                view_id=self.settings.open_orders_view_id,
                location_id=self.settings.open_orders_location_id,
                page_number=page_number,
                page_size=page_size,
                date_from=window_start,
                date_to=window_end,
            )
            return orders, None

        result = await self.client.search_processed_orders(
            self.session,
            from_date=window_start,
            to_date=window_end,
            page_number=page_number,
            page_size=page_size,
            filters=self.filters,
        )
        total_pages = result.get("TotalPages")
        return result["Data"], int(total_pages) if total_pages is not None else None

    def _apply_client_filters(self, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Status and value bounds are not searchable upstream, so filter here."""
        if self.filters.status is None and not self.filters.has_value_bounds:
            return orders

        kept = []
        for raw in orders:
            order = normalize_order(raw)
            if self.filters.status is not None and order.status != self.filters.status:
                continue
            if self.filters.min_value is not None and order.total_charge < self.filters.min_value:
                continue
            if self.filters.max_value is not None and order.total_charge > self.filters.max_value:
                continue
            kept.append(raw)
        return kept

    async def fetch_page(
        self,
        endpoint: OrderEndpoint,
        window_start: datetime,
        window_end: datetime,
        page_number: int,
        page_size: int,
    ) -> List[Dict[str, Any]]:
        """Fetch one page of raw orders.

        Returns:
            Raw order payloads (empty when the window holds no more orders)

        Raises:
            TransientFetchError: When the page fails through every retry
            LinnworksAPIError: On a non-retryable API error
        """
        orders, _ = await self._fetch_raw_page(
            endpoint, window_start, window_end, page_number, page_size
        )
        if endpoint is OrderEndpoint.PROCESSED:
            orders = self._apply_client_filters(orders)
        return orders

    async def fetch_all(
        self,
        endpoint: OrderEndpoint,
        window_start: datetime,
        window_end: datetime,
        page_size: Optional[int] = None,
        max_orders: Optional[int] = None,
    ) -> FetchResult:
        """Fetch every page of a window.

        Paging stops at the first page shorter than `page_size`, once
        `max_orders` orders are collected, or when the known page count is
        reached. Failed pages are recorded in the result and skipped.

        Raises:
            AuthenticationError: If the session is refused
            TransientFetchError: If the open orders view stats call fails
        """
        page_size = page_size or self.settings.page_size
        max_orders = max_orders or self._max_orders(endpoint)
        result = FetchResult()

        max_pages = math.ceil(max_orders / page_size)
        if endpoint is OrderEndpoint.OPEN:
            stats = await self.client.get_view_stats(
                self.session,
                self.settings.open_orders_view_id,
                self.settings.open_orders_location_id,
            )
            if stats is not None and stats.get("TotalOrders") is not None:
                result.total_available = int(stats["TotalOrders"])
                logger.info(f"Open orders view reports {result.total_available} orders")
                if result.total_available == 0:
                    return result
                max_pages = min(max_pages, math.ceil(result.total_available / page_size))

        logger.info(
            f"Fetching {endpoint.value} from {window_start.isoformat()} "
            f"to {window_end.isoformat()} ({page_size} per page)"
        )

        page_number = 1
        consecutive_failures = 0
        while page_number <= max_pages:
            try:
                raw_page, total_pages = await self._fetch_raw_page(
                    endpoint, window_start, window_end, page_number, page_size
                )
            except AuthenticationError:
                raise
            except LinnworksAPIError as e:
                logger.error(f"Failed to fetch {endpoint.value} page {page_number}: {e}")
                result.failed_pages.append(page_number)
                consecutive_failures += 1
                if consecutive_failures >= MAX_CONSECUTIVE_FAILED_PAGES:
                    logger.error(
                        f"Giving up on {endpoint.value} after "
                        f"{consecutive_failures} failed pages in a row"
                    )
                    break
                page_number += 1
                continue

            consecutive_failures = 0
            result.pages_fetched += 1
            if total_pages is not None:
                max_pages = min(max_pages, total_pages)

            if not raw_page:
                break

            page_orders = raw_page
            if endpoint is OrderEndpoint.PROCESSED:
                page_orders = self._apply_client_filters(raw_page)
            result.orders.extend(page_orders)
            logger.debug(f"Page {page_number}: {len(raw_page)} orders")

            if len(result.orders) >= max_orders:
                if len(result.orders) > max_orders or len(raw_page) == page_size:
                    result.truncated = True
                result.orders = result.orders[:max_orders]
                logger.warning(f"Reached the limit of {max_orders} {endpoint.value}")
                break
            if len(raw_page) < page_size:
                break
            page_number += 1

        logger.info(
            f"Fetched {len(result.orders)} {endpoint.value} in {result.pages_fetched} pages"
            + (f", {len(result.failed_pages)} pages failed" if result.failed_pages else "")
        )
        return result
