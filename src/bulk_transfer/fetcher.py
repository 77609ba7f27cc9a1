"""
Paginated retrieval from the query source.

PageFetcher wraps a PageSource collaborator and enforces the paging contract
the checkpoint logic depends on: page numbers for one (category, filters)
pair strictly increase, and a page past the last one is empty. Each
blocking call is bounded by a time budget and preceded by a check of the
shared stop flag.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence, TypeVar

from .exceptions import BulkTransferError, FetchError, FetchTimeoutError, StopRequested

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Page:
    """One page of stably ordered records, and the index of the last page."""

    records: Sequence[Any] = field(default_factory=tuple)
    last_page_number: int = 0


class PageSource(Protocol):
    """
    The query source. Partitions call it from several worker threads, and a
    call abandoned after a timeout may still be running when the next one
    starts, so implementations must be safe for concurrent use.
    """

    def page(
        self,
        category: str,
        filters: tuple[str, ...],
        page_number: int,
        page_size: int,
    ) -> Page: ...


class ChildPageSource(Protocol):
    """Pages of the records that belong to one parent record."""

    def children(self, parent: Any, page_number: int, page_size: int) -> Page: ...


class PageFetcher:
    """
    Fetches pages for a single partition worker.

    With a ChildPageSource, every parent record on a page is followed by all
    of its children, each parent drained with its own page counter starting
    at 1. Only the parent page number is ever checkpointed, so a partial set
    of children is never resumable on its own: the whole parent page is
    re-fetched instead.
    """

    def __init__(
        self,
        source: PageSource,
        page_size: int,
        timeout_seconds: float | None = None,
        stop_event: threading.Event | None = None,
        child_source: ChildPageSource | None = None,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._source = source
        self._page_size = page_size
        self._timeout = timeout_seconds
        self._stop_event = stop_event
        self._child_source = child_source
        self._cursors: dict[tuple[str, tuple[str, ...]], int] = {}
        self._last_pages: dict[tuple[str, tuple[str, ...]], int] = {}
        self._executor: ThreadPoolExecutor | None = None

    @property
    def page_size(self) -> int:
        return self._page_size

    def __enter__(self) -> "PageFetcher":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def fetch(
        self,
        category: str,
        filters: tuple[str, ...],
        page_number: int,
        page_size: int | None = None,
    ) -> Page:
        """
        Returns page *page_number* of (category, filters). The records are
        empty once *page_number* is past the last page.
        """
        size = page_size or self._page_size
        key = (category, tuple(filters))
        previous = self._cursors.get(key)
        if page_number < 1 or (previous is not None and page_number <= previous):
            raise FetchError(
                category,
                page_number,
                "page numbers must strictly increase from 1",
                error_code="PAGE_ORDER_VIOLATION",
                context={"previous_page": previous},
            )
        self._cursors[key] = page_number

        known_last = self._last_pages.get(key)
        if known_last is not None and page_number > known_last:
            return Page(records=(), last_page_number=known_last)

        page = self._call(
            category,
            page_number,
            "page",
            self._source.page,
            category,
            key[1],
            page_number,
            size,
        )
        self._check_page(page, category, page_number)
        self._last_pages[key] = page.last_page_number

        if page_number > page.last_page_number or not page.records:
            return Page(records=(), last_page_number=page.last_page_number)

        if self._child_source is None:
            return page

        records: list[Any] = []
        for parent in page.records:
            records.append(parent)
            records.extend(self._drain_children(category, page_number, parent, size))
        logger.debug(
            "Fetched parent page with children",
            extra={
                "category": category,
                "page_number": page_number,
                "parents": len(page.records),
                "records": len(records),
            },
        )
        return Page(records=tuple(records), last_page_number=page.last_page_number)

    def _drain_children(
        self, category: str, page_number: int, parent: Any, page_size: int
    ) -> list[Any]:
        assert self._child_source is not None
        children: list[Any] = []
        child_page = 1
        while True:
            page = self._call(
                category,
                page_number,
                "child page",
                self._child_source.children,
                parent,
                child_page,
                page_size,
            )
            self._check_page(page, category, page_number)
            if child_page > page.last_page_number or not page.records:
                break
            children.extend(page.records)
            if child_page >= page.last_page_number:
                break
            child_page += 1
        return children

    def _check_page(self, page: Any, category: str, page_number: int) -> None:
        if not isinstance(page, Page) or page.last_page_number < 0:
            raise FetchError(
                category,
                page_number,
                "source returned a malformed page",
                error_code="MALFORMED_PAGE",
                context={"page_type": type(page).__name__},
            )

    def _call(
        self,
        category: str,
        page_number: int,
        what: str,
        fn: Callable[..., T],
        *args: Any,
    ) -> T:
        if self._stop_event is not None and self._stop_event.is_set():
            raise StopRequested(f"{what} {page_number} of {category}")

        try:
            if self._timeout is None:
                return fn(*args)
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="page-fetch"
                )
            future = self._executor.submit(fn, *args)
            try:
                return future.result(timeout=self._timeout)
            except FutureTimeoutError:
                # The stuck call cannot be interrupted; later calls get a fresh thread.
                future.cancel()
                self.close()
                logger.warning(
                    "Abandoned a source call that exceeded its time budget",
                    extra={
                        "category": category,
                        "page_number": page_number,
                        "call": what,
                        "timeout_seconds": self._timeout,
                        "still_running": future.running(),
                    },
                )
                raise FetchTimeoutError(category, page_number, self._timeout) from None
        except BulkTransferError:
            raise
        except Exception as e:
            raise FetchError(
                category,
                page_number,
                str(e) or e.__class__.__name__,
                context={"source_error": e.__class__.__name__, "call": what},
            ) from e
