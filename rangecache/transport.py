"""
Transports for the analytics traffic endpoint.

Transport is the seam the orchestrator fetches through; tests substitute a
scripted fake. AnalyticsClient is the production implementation over httpx.

Features:
- Connection pooling with httpx
- Rate-limit responses surfaced as RateLimitedError with the Retry-After hint
- Request correlation IDs for tracing
"""
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from rangecache.config import APIConfig, config
from rangecache.exceptions import (
    AnalyticsAPIError,
    AnalyticsDataError,
    ConfigurationError,
    RateLimitedError,
    TransportError,
)
from rangecache.models import ChunkRequest, FetchRequest, TransportPage, iso
from rangecache.observability import get_logger, get_correlation_id, Timer
from rangecache.pagination import page_from_payload
from rangecache.resilience import parse_retry_after

logger = get_logger(__name__)

TRAFFIC_ENDPOINT = "traffic/"


class Transport(ABC):
    """Fetches one page of rows for one chunk of a request."""

    @abstractmethod
    async def fetch(self, request: FetchRequest, chunk: ChunkRequest, page: int = 1) -> TransportPage:
        """
        Raises:
            RateLimitedError: Upstream throttled the call (retryable)
            TransportError: Any other failure
        """


class AnalyticsClient(Transport):
    """
    Async HTTP client for the analytics traffic API.

    Usage:
        async with AnalyticsClient() as client:
            page = await client.fetch(request, chunk)

        # Or with manual lifecycle:
        client = AnalyticsClient()
        await client.connect()
        try:
            page = await client.fetch(request, chunk, page=2)
        finally:
            await client.close()
    """

    def __init__(
        self,
        api_config: APIConfig = None,
        api_key: str = None,
        property_id: str = None,
        base_url: str = None,
        timeout: float = None,
        page_size: int = None,
    ):
        """
        Initialize analytics client.

        Args:
            api_config: API settings (defaults to the global config)
            api_key: API key (defaults to SENTINELPRO_API_KEY)
            property_id: Property to query (defaults to SENTINELPRO_PROPERTY_ID)
            base_url: API root (defaults to the account-specific URL)
            timeout: Request timeout in seconds
            page_size: Rows per page
        """
        api_config = api_config or config.api
        self.api_key = api_key or api_config.key
        self.property_id = property_id or api_config.property_id
        self.base_url = base_url or api_config.base_url
        self.timeout = timeout or api_config.request_timeout
        self.page_size = page_size or api_config.page_size
        self._client: Optional[httpx.AsyncClient] = None

        if not self.api_key:
            raise ConfigurationError("SENTINELPRO_API_KEY is required")
        if not self.property_id:
            raise ConfigurationError("SENTINELPRO_PROPERTY_ID is required")

    @property
    def headers(self) -> Dict[str, str]:
        """Request headers with auth."""
        return {
            "SENTINEL-API-KEY": self.api_key,
            "Accept": "application/json",
        }

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                )
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AnalyticsClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def build_query(self, request: FetchRequest, chunk: ChunkRequest, page: int = 1) -> Dict[str, Any]:
        """Traffic query document for one page of one chunk."""
        query: Dict[str, Any] = {
            "propertyId": self.property_id,
            "dateRange": {
                "startDate": iso(chunk.start_date),
                "endDate": iso(chunk.end_date),
            },
            "granularity": request.granularity.value,
            "metrics": [request.metric],
            "pagination": {
                "pageNumber": page,
                "pageSize": self.page_size,
            },
        }
        if request.dimension_key:
            query["dimensions"] = request.dimension_key.split(",")
        return query

    async def fetch(self, request: FetchRequest, chunk: ChunkRequest, page: int = 1) -> TransportPage:
        """
        Fetch one page of traffic rows.

        Returns:
            TransportPage with the raw rows and the reported page count

        Raises:
            RateLimitedError: HTTP 429
            AnalyticsAPIError: Any other error status
            AnalyticsDataError: Unreadable response body
            TransportError: Network/timeout errors
        """
        payload = await self._request(self.build_query(request, chunk, page))
        return page_from_payload(payload, page, self.page_size)

    async def _request(self, query: Dict[str, Any]) -> Any:
        """Execute a single GET against the traffic endpoint."""
        if not self._client:
            await self.connect()

        url = f"{self.base_url}{TRAFFIC_ENDPOINT}"
        params = {"data": json.dumps(query, separators=(",", ":"))}

        # Add correlation ID to request headers
        request_headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        date_range = query["dateRange"]
        log_extra = {
            "start_date": date_range["startDate"],
            "end_date": date_range["endDate"],
            "page": query["pagination"]["pageNumber"],
        }

        try:
            with Timer("analytics_traffic", logger):
                response = await self._client.request(
                    method="GET",
                    url=url,
                    params=params,
                    headers=request_headers if request_headers else None,
                )

        except httpx.TimeoutException as e:
            logger.error(
                f"Request timeout after {self.timeout}s",
                extra={**log_extra, "timeout": self.timeout}
            )
            raise TransportError(f"Request timeout after {self.timeout}s") from e

        except httpx.RequestError as e:
            logger.error(
                f"Request failed: {e}",
                extra={**log_extra, "error": str(e)}
            )
            raise TransportError("Request failed", str(e)) from e

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(
                "Rate limited by analytics API",
                extra={**log_extra, "retry_after": retry_after}
            )
            raise RateLimitedError(
                "API rate limit exceeded",
                details=response.text[:500],
                retry_after=retry_after,
            )

        # Handle HTTP errors
        if response.status_code >= 400:
            error_text = response.text[:500]
            logger.error(
                f"API error {response.status_code}: {error_text}",
                extra={**log_extra, "status_code": response.status_code}
            )
            raise AnalyticsAPIError(
                f"API returned {response.status_code}",
                status_code=response.status_code,
                details=error_text
            )

        try:
            return response.json()
        except ValueError as e:
            raise AnalyticsDataError(
                "Response is not valid JSON",
                response.text[:200],
                expected="json",
                got="text"
            ) from e
