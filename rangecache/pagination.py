"""
Pagination for the analytics traffic endpoint.

The endpoint is paged through ``pagination.pageNumber``; the page count comes
back in one of a few response shapes. PageDrainer walks pages until the
reported count is reached or a safety cap is hit.
"""
import asyncio
import math
from typing import Any, Awaitable, Callable, Dict, List, Optional

from rangecache.exceptions import AnalyticsAPIError, AnalyticsDataError
from rangecache.models import TransportPage
from rangecache.observability import get_logger

logger = get_logger(__name__)

MAX_PAGES = 50  # safety cap


def total_pages_from(payload: Dict[str, Any], page_size: int) -> int:
    """
    Read the page count from a traffic response.

    Tries ``totalPage``, then ``pagination.totalPages``, then
    ``ceil(total / page_size)``. Defaults to 1.
    """
    try:
        if payload.get("totalPage") is not None:
            return max(1, int(payload["totalPage"]))

        pagination = payload.get("pagination")
        if isinstance(pagination, dict) and pagination.get("totalPages") is not None:
            return max(1, int(pagination["totalPages"]))

        if payload.get("total") is not None and page_size > 0:
            return max(1, math.ceil(int(payload["total"]) / page_size))
    except (TypeError, ValueError) as e:
        raise AnalyticsDataError(
            "Unreadable page count",
            str(e),
            expected="int",
        ) from e

    return 1


def page_from_payload(payload: Any, page: int, page_size: int) -> TransportPage:
    """
    Validate a decoded traffic response and wrap it as a TransportPage.

    Raises:
        AnalyticsAPIError: If the payload carries an error
        AnalyticsDataError: If the response structure is invalid
    """
    # Validate response structure
    if not isinstance(payload, dict):
        raise AnalyticsDataError(
            "Invalid response type",
            expected="dict",
            got=type(payload).__name__
        )

    # Check for API error
    if payload.get("error"):
        raise AnalyticsAPIError(
            f"API error on page {page}",
            str(payload.get("error"))
        )

    rows = payload.get("data")
    if rows is None:
        raise AnalyticsDataError(
            "Response missing 'data' field",
            expected="list",
            got="None"
        )

    if not isinstance(rows, list):
        raise AnalyticsDataError(
            "Response 'data' field is not a list",
            expected="list",
            got=type(rows).__name__
        )

    return TransportPage(
        rows=[row for row in rows if isinstance(row, dict)],
        total_pages=total_pages_from(payload, page_size),
    )


class PageDrainer:
    """
    Drains every page of one upstream query.

    Usage:
        drainer = PageDrainer(transport.fetch)
        rows = await drainer.drain(request, chunk)
        print(drainer.calls)
    """

    def __init__(
        self,
        fetch_page: Callable[..., Awaitable[TransportPage]],
        max_pages: int = MAX_PAGES,
        page_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize drainer.

        Args:
            fetch_page: Async callable taking the query args plus ``page=``
            max_pages: Maximum pages to fetch per query
            page_delay: Delay between page requests in seconds
            sleep: Awaitable sleep used for the page delay
        """
        self.fetch_page = fetch_page
        self.max_pages = max_pages
        self.page_delay = page_delay
        self.sleep = sleep
        self.calls = 0

    async def drain(self, *args) -> List[Dict[str, Any]]:
        """
        Fetch pages 1..N and return their rows in order.

        Errors from ``fetch_page`` propagate unchanged so the caller can
        decide whether to retry the whole query.
        """
        rows: List[Dict[str, Any]] = []
        page = 1
        total_pages: Optional[int] = None

        while True:
            # failed calls count too
            self.calls += 1
            result = await self.fetch_page(*args, page=page)

            if not isinstance(result, TransportPage):
                raise AnalyticsDataError(
                    "Transport returned an invalid page",
                    expected="TransportPage",
                    got=type(result).__name__
                )

            rows.extend(result.rows)
            total_pages = result.total_pages or 1

            if page >= min(total_pages, self.max_pages):
                break

            # Rate limiting
            if self.page_delay > 0:
                await self.sleep(self.page_delay)

            page += 1

        if total_pages > self.max_pages:
            logger.warning(
                f"Stopped after {self.max_pages} of {total_pages} pages",
                extra={"max_pages": self.max_pages, "total_pages": total_pages}
            )
        return rows
