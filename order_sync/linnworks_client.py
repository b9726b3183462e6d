"""Linnworks API client.

Handles the application authorization exchange, rate limiting, and the
retry policy for the order endpoints. Transient failures (timeouts,
connection errors, 408, 429 and 5xx responses) are retried on a fixed
schedule; everything else surfaces immediately.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from .config import Settings
from .constants import RETRYABLE_STATUS_CODES
from .models import ProcessedOrderFilters, SessionToken

logger = logging.getLogger(__name__)


class LinnworksAPIError(Exception):
    """Base exception for Linnworks API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(LinnworksAPIError):
    """Raised when no valid session can be obtained or a session is refused."""
    pass


class TransientFetchError(LinnworksAPIError):
    """Raised when a retryable failure persists through the whole retry schedule."""
    pass


def _format_date(value: datetime) -> str:
    """Linnworks accepts ISO 8601 timestamps in UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


class LinnworksClient:
    """Async client for the Linnworks REST API."""

    def __init__(self, settings: Settings):
        """Initialize Linnworks client.

        Args:
            settings: Application settings with timeouts and retry schedule
        """
        self.settings = settings
        self.retry_schedule: List[float] = list(settings.retry_schedule)
        self.rate_limit_delay = settings.rate_limit_delay
        self._last_request_time: Optional[float] = None
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "LinnworksClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=self.settings.request_timeout,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _respect_rate_limit(self) -> None:
        """Space out consecutive requests by the configured delay."""
        loop = asyncio.get_running_loop()
        if self._last_request_time is not None:
            elapsed = loop.time() - self._last_request_time
            if elapsed < self.rate_limit_delay:
                await asyncio.sleep(self.rate_limit_delay - elapsed)
        self._last_request_time = loop.time()

    def _retry_after(self, response: httpx.Response, default: float) -> float:
        """Seconds to wait after a 429, honouring Retry-After up to the cap."""
        header = response.headers.get("Retry-After")
        if header is None:
            return default
        try:
            return min(max(float(header), 0.0), self.settings.max_retry_after)
        except ValueError:
            return default

    async def _request(
        self,
        method: str,
        url: str,
        json_data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Make an API request with rate limiting and retries.

        Args:
            method: HTTP method
            url: Absolute URL
            json_data: JSON body
            headers: Extra headers (the session Authorization header)

        Returns:
            Decoded JSON response (None for an empty body)

        Raises:
            AuthenticationError: On 401/403
            TransientFetchError: When the retry schedule is exhausted
            LinnworksAPIError: On any other error response
        """
        if not self._client:
            raise LinnworksAPIError("Client not initialized. Use async context manager.")

        attempts = len(self.retry_schedule) + 1
        last_error = ""

        for attempt in range(attempts):
            await self._respect_rate_limit()
            delay = self.retry_schedule[attempt] if attempt < len(self.retry_schedule) else 0.0

            try:
                response = await self._client.request(
                    method=method,
                    url=url,
                    json=json_data,
                    headers=headers,
                )
            except httpx.TimeoutException:
                last_error = "request timed out"
                logger.warning(f"Request timeout {url} (attempt {attempt + 1}/{attempts})")
            except httpx.RequestError as e:
                last_error = f"request failed: {e}"
                logger.warning(f"Request error {url} (attempt {attempt + 1}/{attempts}): {e}")
            else:
                status = response.status_code
                logger.debug(f"Linnworks API call: {method} {url} -> {status}")

                if 200 <= status < 300:
                    if not response.content:
                        return None
                    try:
                        return response.json()
                    except ValueError:
                        raise LinnworksAPIError(
                            f"Invalid JSON from {url}: {response.text[:200]}", status
                        )
                elif status in (401, 403):
                    raise AuthenticationError(
                        f"Linnworks refused the session ({status}): {response.text[:200]}",
                        status,
                    )
                elif status in RETRYABLE_STATUS_CODES or status >= 500:
                    last_error = f"API error {status}: {response.text[:200]}"
                    if status == 429:
                        delay = self._retry_after(response, delay)
                        logger.warning(f"Rate limit hit on {url}")
                    else:
                        logger.warning(
                            f"Retryable error {status} from {url} "
                            f"(attempt {attempt + 1}/{attempts})"
                        )
                else:
                    raise LinnworksAPIError(
                        f"API error {status}: {response.text[:500]}", status
                    )

            if attempt < attempts - 1:
                logger.info(f"Retrying in {delay}s")
                await asyncio.sleep(delay)

        raise TransientFetchError(f"{url} failed after {attempts} attempts: {last_error}")

    async def _post(self, session: SessionToken, endpoint: str, payload: Any) -> Any:
        """POST to an endpoint on the session's server."""
        url = f"{session.base_url}{endpoint.lstrip('/')}"
        return await self._request("POST", url, json_data=payload, headers=session.auth_headers)

    # =========================================================================
    # AUTHORIZATION
    # =========================================================================

    async def authorize_by_application(
        self,
        application_id: str,
        application_secret: str,
        installation_token: str,
    ) -> Dict[str, Any]:
        """Exchange application credentials for a session.

        Returns:
            Raw auth response (Token, Server, optional ExpiresAt)
        """
        payload = {
            "ApplicationId": application_id,
            "ApplicationSecret": application_secret,
            "Token": installation_token,
        }
        data = await self._request("POST", self.settings.authorize_url, json_data=payload)
        if not isinstance(data, dict):
            raise AuthenticationError("Unexpected AuthorizeByApplication response")
        return data

    # =========================================================================
    # OPEN ORDERS
    # =========================================================================

    async def get_view_stats(
        self,
        session: SessionToken,
        view_id: int,
        location_id: str,
    ) -> Optional[Dict[str, Any]]:
        """Get the stats entry of one open orders view.

        Returns:
            The entry whose ViewId matches, or None
        """
        data = await self._post(
            session,
            "OpenOrders/GetViewStats",
            {"ViewId": view_id, "LocationId": location_id},
        )
        entries = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
        for entry in entries:
            if isinstance(entry, dict) and entry.get("ViewId") == view_id:
                return entry
        return None

    async def get_open_orders(
        self,
        session: SessionToken,
        view_id: int,
        location_id: str,
        page_number: int,
        page_size: int,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch one page of open orders, optionally limited to a received date range."""
        payload: Dict[str, Any] = {
            "ViewId": view_id,
            "LocationId": location_id,
            "EntriesPerPage": page_size,
            "PageNumber": page_number,
        }
        if date_from and date_to:
            payload["Filters"] = {
                "DateFields": [{
                    "FieldCode": "GENERAL_INFO_DATE",
                    "Type": "Range",
                    "DateFrom": _format_date(date_from),
                    "DateTo": _format_date(date_to),
                }]
            }

        data = await self._post(session, "OpenOrders/GetOpenOrders", payload)
        if isinstance(data, dict):
            data = data.get("Data") or []
        return [order for order in data or [] if isinstance(order, dict)]

    # =========================================================================
    # PROCESSED ORDERS
    # =========================================================================

    async def search_processed_orders(
        self,
        session: SessionToken,
        from_date: datetime,
        to_date: datetime,
        page_number: int,
        page_size: int,
        filters: Optional[ProcessedOrderFilters] = None,
    ) -> Dict[str, Any]:
        """Fetch one page of processed orders.

        Returns:
            Dict with "Data" (orders), "TotalEntries" and "TotalPages"
        """
        filters = filters or ProcessedOrderFilters()
        request: Dict[str, Any] = {
            "FromDate": _format_date(from_date),
            "ToDate": _format_date(to_date),
            "DateField": filters.date_field,
            "PageNumber": page_number,
            "ResultsPerPage": page_size,
        }

        search_filters = []
        for field_name, value in (
            ("Source", filters.channel),
            ("ReferenceNum", filters.reference),
            ("SKU", filters.sku),
            ("Tag", filters.tag),
        ):
            if value:
                search_filters.append({"SearchField": field_name, "SearchTerm": value})
        if search_filters:
            request["SearchFilters"] = search_filters

        data = await self._post(
            session,
            "ProcessedOrders/SearchProcessedOrders",
            {"request": request},
        )
        if not isinstance(data, dict):
            return {"Data": [], "TotalEntries": 0, "TotalPages": 0}

        result = data.get("ProcessedOrders", data)
        if not isinstance(result, dict):
            return {"Data": [], "TotalEntries": 0, "TotalPages": 0}
        orders = [order for order in result.get("Data") or [] if isinstance(order, dict)]
        return {
            "Data": orders,
            "TotalEntries": result.get("TotalEntries", len(orders)),
            "TotalPages": result.get("TotalPages", 1),
        }

    async def check_connection(self, session: SessionToken) -> bool:
        """Check that the session is accepted by its server."""
        try:
            await self.get_view_stats(
                session,
                self.settings.open_orders_view_id,
                self.settings.open_orders_location_id,
            )
            return True
        except LinnworksAPIError as e:
            logger.error(f"Linnworks connection check failed: {e}")
            return False
