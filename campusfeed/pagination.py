"""Feed pagination controller.

:class:`FeedPaginator` turns a page-by-index source into an append-only
:class:`~campusfeed.cache.Pages` value stored in the entity cache, so item
patches made by mutations reach feed items.

State machine::

    IDLE -> LOADING -> READY -> LOADING_MORE -> READY | EXHAUSTED
    LOADING | LOADING_MORE -> ERROR -> (retry) same loading state

Only one page request is ever in flight, which keeps pages in request order.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Generic, TypeVar

from campusfeed import keys
from campusfeed.cache import CacheEvent, EntityCache, Pages
from campusfeed.config import FeedTermination, settings
from campusfeed.logging import logger
from campusfeed.metrics import feed_pages_loaded_total

T = TypeVar("T")

PageFetcher = Callable[[int, int], Awaitable[list[Any]]]


class PageState(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    LOADING_MORE = "loading_more"
    EXHAUSTED = "exhausted"
    ERROR = "error"


_BUSY = (PageState.LOADING, PageState.LOADING_MORE)


class FeedPaginator(Generic[T]):
    """Lazy, append-only, finite-until-exhausted sequence of pages.

    Args:
        cache: Cache holding the pages
        fetch_page: ``(page_index, page_size) -> items``
        key: Cache key for the pages (default: the main feed)
        page_size: Items requested per page
        termination: When a page ends the feed
        scroll_threshold: ``on_scroll`` loads more once this few items remain
        auto_refresh: Refetch loaded pages when the key is invalidated
    """

    def __init__(
        self,
        cache: EntityCache,
        fetch_page: PageFetcher,
        *,
        key: keys.CacheKey = keys.FEED,
        page_size: int | None = None,
        termination: FeedTermination | None = None,
        scroll_threshold: int | None = None,
        auto_refresh: bool = True,
    ) -> None:
        self.cache = cache
        self.key = key
        self._fetch_page = fetch_page
        self.page_size = page_size or settings.page_size
        self.termination = termination or settings.feed_termination
        self.scroll_threshold = (
            settings.scroll_threshold if scroll_threshold is None else scroll_threshold
        )

        self._state = PageState.IDLE
        self._failed_state: PageState | None = None
        self._next_page = 0
        self._error: Exception | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        # Set when the key is invalidated while a page is loading
        self._refresh_pending = False
        self._remove_listener = (
            cache.add_listener(key, self._on_cache_event) if auto_refresh else None
        )

    # -------------------------------------------------------------------------
    # Observable state
    # -------------------------------------------------------------------------

    @property
    def state(self) -> PageState:
        return self._state

    @property
    def error(self) -> Exception | None:
        """Error behind ``PageState.ERROR``; cleared by the next success."""
        return self._error

    @property
    def next_page(self) -> int:
        return self._next_page

    @property
    def pages(self) -> Pages[T]:
        value = self.cache.peek(self.key)
        return value if isinstance(value, Pages) else Pages()

    @property
    def items(self) -> list[T]:
        return self.pages.items

    @property
    def exhausted(self) -> bool:
        return self._state is PageState.EXHAUSTED

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    async def fetch_next(self) -> bool:
        """Request the next page unless busy or exhausted.

        Failures move the paginator to ``PageState.ERROR``; nothing is raised.

        Returns:
            Whether a request was issued
        """
        if self._state in _BUSY or self._state is PageState.EXHAUSTED:
            return False

        if self._state is PageState.ERROR and self._failed_state is not None:
            loading = self._failed_state
        else:
            loading = PageState.LOADING if self._next_page == 0 else PageState.LOADING_MORE

        previous = self._state
        page = self._next_page
        self._state = loading
        logger.debug(f"Loading page {page} of {self.key} ({loading})")

        try:
            items = await self._fetch_page(page, self.page_size)
        except asyncio.CancelledError:
            self._state = previous
            raise
        except Exception as e:
            self._error = e
            self._failed_state = loading
            self._state = PageState.ERROR
            logger.warning(f"⚠️  Page {page} of {self.key} failed: {e}")
            return True

        current = self.pages if page > 0 else Pages()
        self.cache.write(self.key, current.appended(list(items), page))
        self._next_page = page + 1
        self._error = None
        self._failed_state = None
        self._state = PageState.EXHAUSTED if self._is_last(items) else PageState.READY
        feed_pages_loaded_total.labels(collection=str(self.key[0])).inc()

        if self._refresh_pending:
            self._refresh_pending = False
            # Stays stale until the refresh listener refetches it
            self.cache.invalidate(self.key)

        if self._state is PageState.EXHAUSTED:
            logger.info(f"🏁 {self.key} exhausted after {self._next_page} page(s)")
        return True

    async def retry(self) -> bool:
        """Re-issue the request that failed."""
        if self._state is not PageState.ERROR:
            return False
        return await self.fetch_next()

    def should_load_more(self, remaining: int) -> bool:
        """Level-triggered check for "near the end of the rendered list"."""
        return remaining <= self.scroll_threshold and self._state in (
            PageState.IDLE,
            PageState.READY,
        )

    async def on_scroll(self, remaining: int) -> bool:
        """Load more when ``remaining`` unseen items fall to the threshold."""
        if not self.should_load_more(remaining):
            return False
        return await self.fetch_next()

    async def refresh(self) -> bool:
        """Refetch every loaded page and replace the cached pages at once.

        If the key is patched or invalidated while the pages are in flight,
        the result is dropped and the pages are fetched again, so a refresh
        never lands on top of a newer local change.

        Returns:
            Whether the refresh succeeded
        """
        if self._state in _BUSY:
            return False
        loaded = max(self._next_page, 1)
        previous = self._state
        self._state = PageState.LOADING

        while True:
            self._refresh_pending = False
            version = self.cache.version(self.key)
            fresh: Pages[T] = Pages()
            last: list[Any] = []
            try:
                for page in range(loaded):
                    last = list(await self._fetch_page(page, self.page_size))
                    fresh = fresh.appended(last, page)
                    if self._is_last(last):
                        break
            except asyncio.CancelledError:
                self._state = previous
                raise
            except Exception as e:
                self._error = e
                self._failed_state = None
                self._state = PageState.ERROR
                logger.warning(f"⚠️  Refresh of {self.key} failed: {e}")
                return False
            if self.cache.version(self.key) == version:
                break
            logger.debug(f"{self.key} changed during refresh, fetching again")

        self.cache.write(self.key, fresh)
        self._next_page = len(fresh.pages)
        self._error = None
        self._state = PageState.EXHAUSTED if self._is_last(last) else PageState.READY
        logger.debug(f"Refreshed {self._next_page} page(s) of {self.key}")
        return True

    def reset(self) -> None:
        """Drop the cached pages and start over from page 0."""
        self.cache.discard(self.key)
        self._state = PageState.IDLE
        self._next_page = 0
        self._error = None
        self._failed_state = None
        self._refresh_pending = False

    def close(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _is_last(self, items: list[Any]) -> bool:
        if self.termination is FeedTermination.EMPTY_PAGE:
            return len(items) == 0
        return len(items) < self.page_size

    def _on_cache_event(self, key: keys.CacheKey, event: CacheEvent) -> None:
        if event is not CacheEvent.INVALIDATED:
            return
        if self._state in _BUSY:
            self._refresh_pending = True
            return
        if self._state not in (PageState.READY, PageState.EXHAUSTED):
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._refresh_task = loop.create_task(self.refresh())


__all__ = ["FeedPaginator", "PageState", "PageFetcher"]
