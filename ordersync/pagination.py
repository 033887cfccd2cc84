"""
Page-at-a-time stream of processed order ids.

Holds at most one page of ids in memory. The next page is requested only
when the consumer resumes the iterator, so a slow import naturally throttles
discovery.

Usage:
    stream = ProcessedOrderIdStream(gateway, from_date, to_date, filters, page_size=200)
    async for ids in stream:
        details = await fetcher.fetch(ids, batch_number=stream.current_page)
"""
import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, List, Optional

from ordersync.models import ProcessedOrderFilters
from ordersync.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PageProgress:
    """Progress report for one fetched page."""
    page: int
    total_pages: Optional[int]
    fetched_count: int
    total_results: Optional[int]

    @property
    def percent(self) -> Optional[float]:
        if not self.total_pages:
            return None
        return round(min(self.page / self.total_pages, 1.0) * 100, 1)


ProgressSink = Callable[[PageProgress], Any]


class ProcessedOrderIdStream:
    """
    Async iterator over pages of processed order ids.

    Handles:
    - Lazy page fetching (no prefetch)
    - Termination on empty page, last known page, or a short page
    - Progress reporting per page (sync or async sink)
    - Cooperative stop between pages

    Fetch errors propagate to the consumer unchanged; retrying is the
    caller's decision.
    """

    def __init__(
        self,
        gateway: Any,
        from_date: datetime,
        to_date: datetime,
        filters: ProcessedOrderFilters = None,
        page_size: int = 200,
        progress: Optional[ProgressSink] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        start_page: int = 1,
    ):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        if start_page < 1:
            raise ValueError("start_page must be at least 1")
        self.gateway = gateway
        self.from_date = from_date
        self.to_date = to_date
        self.filters = filters or ProcessedOrderFilters()
        self.page_size = page_size
        self.progress = progress
        self.should_stop = should_stop
        self.start_page = start_page

        self.current_page = start_page - 1
        self.total_pages: Optional[int] = None
        self.total_results: Optional[int] = None
        self.fetched_count = 0
        self.stopped_early = False

    def restart_from(self, page: int) -> "ProcessedOrderIdStream":
        """A fresh stream over the same window that resumes at ``page``."""
        return ProcessedOrderIdStream(
            self.gateway,
            self.from_date,
            self.to_date,
            filters=self.filters,
            page_size=self.page_size,
            progress=self.progress,
            should_stop=self.should_stop,
            start_page=page,
        )

    def __aiter__(self) -> AsyncIterator[List[str]]:
        return self._pages()

    async def _pages(self) -> AsyncIterator[List[str]]:
        page = self.start_page

        while True:
            if self.should_stop is not None and self.should_stop():
                logger.info("Stop requested, ending id stream", extra={"page": page})
                self.stopped_early = True
                return

            result = await self.gateway.search_processed_orders(
                self.from_date,
                self.to_date,
                filters=self.filters,
                page=page,
                page_size=self.page_size,
            )

            self.current_page = page
            if result.total_pages is not None:
                self.total_pages = result.total_pages
            if result.total_entries is not None:
                self.total_results = result.total_entries
            self.fetched_count += len(result.order_ids)

            logger.debug(
                "Fetched processed order page",
                extra={
                    "page": page,
                    "ids_in_page": len(result.order_ids),
                    "total_pages": self.total_pages,
                    "total_results": self.total_results,
                },
            )

            if result.row_count == 0:
                return

            await self._report(PageProgress(page, self.total_pages, self.fetched_count, self.total_results))

            if result.order_ids:
                yield result.order_ids

            if self.total_pages is not None and page >= self.total_pages:
                return
            if result.row_count < self.page_size:
                return

            page += 1

    async def _report(self, progress: PageProgress) -> None:
        if self.progress is None:
            return
        outcome = self.progress(progress)
        if inspect.isawaitable(outcome):
            await outcome
