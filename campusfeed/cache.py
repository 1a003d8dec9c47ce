"""Entity cache shared by every view of the client.

The cache maps composite keys (see :mod:`campusfeed.keys`) to immutable
view-models, lists of them, or :class:`Pages`. Every operation here is
synchronous; only :meth:`EntityCache.fetch` awaits, and only on the fetcher
it was given. Running all cache access on one event loop is what makes the
snapshot/apply/send/reconcile sequence of a mutation atomic, so the cache
holds no lock.

Example:
    >>> cache = EntityCache()
    >>> cache.write(("feed",), Pages().appended([post]))
    >>> cache.update_item(("feed",), post.id, lambda p: p.toggled_like())
    True
    >>> cache.invalidate(("feed",))
    [('feed',)]
    >>> cache.read(("feed",)) is None
    True
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

from campusfeed.keys import CacheKey
from campusfeed.logging import logger
from campusfeed.metrics import cache_entries, cache_invalidations_total

T = TypeVar("T")

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[[CacheKey, "CacheEvent"], None]


# =============================================================================
# Paged values
# =============================================================================


@dataclass(frozen=True)
class Pages(Generic[T]):
    """Append-only sequence of fetched pages.

    ``page_params`` holds the cursor each page was requested with, in the
    same order as ``pages``.
    """

    pages: tuple[tuple[T, ...], ...] = ()
    page_params: tuple[int, ...] = ()

    @property
    def items(self) -> list[T]:
        return [item for page in self.pages for item in page]

    def __len__(self) -> int:
        return sum(len(page) for page in self.pages)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def appended(self, items: list[T], cursor: int | None = None) -> "Pages[T]":
        cursor = len(self.pages) if cursor is None else cursor
        return Pages(self.pages + (tuple(items),), self.page_params + (cursor,))

    def prepended(self, item: T) -> "Pages[T]":
        """Insert ``item`` at the head of the first page."""
        if not self.pages:
            return Pages(((item,),), (0,))
        first = (item,) + self.pages[0]
        return Pages((first,) + self.pages[1:], self.page_params)

    def map_items(self, fn: Callable[[T], T]) -> "Pages[T]":
        return Pages(
            tuple(tuple(fn(item) for item in page) for page in self.pages),
            self.page_params,
        )


def _map_items(value: Any, fn: Callable[[Any], Any]) -> Any:
    """Apply ``fn`` to every entity in a single value, a list or pages."""
    if isinstance(value, Pages):
        return value.map_items(fn)
    if isinstance(value, list):
        return [fn(item) for item in value]
    if isinstance(value, tuple):
        return tuple(fn(item) for item in value)
    return fn(value)


def _iter_items(value: Any) -> Iterator[Any]:
    if isinstance(value, (Pages, list, tuple)):
        yield from value
    elif value is not None:
        yield value


# =============================================================================
# Entity cache
# =============================================================================


class CacheEvent(StrEnum):
    """What happened to a key, as reported to listeners."""

    WRITTEN = "written"
    PATCHED = "patched"
    INVALIDATED = "invalidated"


@dataclass
class _Entry:
    value: Any = None
    has_value: bool = False
    stale: bool = False
    updated_at: float = 0.0
    # Bumped on every write, patch and invalidate; a fetch only lands if the
    # version it started from is still current.
    version: int = 0


@dataclass
class _InFlight:
    task: "asyncio.Task[Any]"
    version: int


class EntityCache:
    """Keyed store of fetched query results.

    Args:
        clock: Monotonic clock used for staleness (injectable for tests)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[CacheKey, _Entry] = {}
        self._listeners: dict[CacheKey, list[Listener]] = {}
        self._inflight: dict[CacheKey, _InFlight] = {}

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def read(self, key: CacheKey) -> Any | None:
        """Return the cached value, or None if never fetched or invalidated."""
        entry = self._entries.get(key)
        if entry is None or not entry.has_value or entry.stale:
            return None
        return entry.value

    def peek(self, key: CacheKey) -> Any | None:
        """Return the last value even when it has been invalidated."""
        entry = self._entries.get(key)
        if entry is None or not entry.has_value:
            return None
        return entry.value

    def is_stale(self, key: CacheKey, stale_time: float | None = None) -> bool:
        """Whether the next read should refetch.

        Args:
            key: Cache key
            stale_time: Seconds after which a value counts as stale even
                without invalidation (None means fresh until invalidated)
        """
        entry = self._entries.get(key)
        if entry is None or not entry.has_value or entry.stale:
            return True
        if stale_time is not None:
            return self._clock() - entry.updated_at > stale_time
        return False

    def find_item(self, key: CacheKey, item_id: str) -> Any | None:
        """Return the entity with ``item_id`` held under ``key``, if any."""
        for item in _iter_items(self.peek(key)):
            if getattr(item, "id", None) == item_id:
                return item
        return None

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def match(self, prefix: CacheKey) -> list[CacheKey]:
        """Keys that start with ``prefix``."""
        n = len(prefix)
        return [key for key in self._entries if key[:n] == prefix]

    def version(self, key: CacheKey) -> int:
        entry = self._entries.get(key)
        return entry.version if entry else 0

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def write(self, key: CacheKey, value: Any) -> None:
        """Replace the cached value and mark it fresh."""
        entry = self._entries.setdefault(key, _Entry())
        entry.value = value
        entry.has_value = True
        entry.stale = False
        entry.updated_at = self._clock()
        entry.version += 1
        cache_entries.set(len(self._entries))
        self._notify(key, CacheEvent.WRITTEN)

    def patch(self, key: CacheKey, updater: Callable[[Any], Any]) -> bool:
        """Apply a pure transform to the cached value.

        A missing key is left alone. Returns whether the patch was applied.
        """
        entry = self._entries.get(key)
        if entry is None or not entry.has_value:
            logger.debug(f"Patch dropped for absent key {key}")
            return False
        entry.value = updater(entry.value)
        entry.version += 1
        self._notify(key, CacheEvent.PATCHED)
        return True

    def update_item(
        self, key: CacheKey, item_id: str, fn: Callable[[Any], Any]
    ) -> bool:
        """Replace the entity with ``item_id`` by ``fn(entity)``.

        Walks a single entity, a list, or pages page by page. Returns whether
        a matching entity was found.
        """
        value = self.peek(key)
        if value is None:
            return False

        matched = False

        def _apply(item: Any) -> Any:
            nonlocal matched
            if getattr(item, "id", None) == item_id:
                matched = True
                return fn(item)
            return item

        updated = _map_items(value, _apply)
        if not matched:
            return False
        return self.patch(key, lambda _: updated)

    def invalidate(self, key: CacheKey, exact: bool = True) -> list[CacheKey]:
        """Mark a key (or every key with that prefix) stale.

        Listeners of each affected key receive ``CacheEvent.INVALIDATED``;
        active subscriptions refetch in response.

        Returns:
            The keys that were marked stale
        """
        targets = [key] if exact else self.match(key)
        hit = []
        for target in targets:
            entry = self._entries.get(target)
            if entry is None:
                continue
            entry.stale = True
            entry.version += 1
            hit.append(target)
            cache_invalidations_total.labels(collection=str(target[0])).inc()
        if hit:
            logger.debug(f"Invalidated {hit}")
        for target in hit:
            self._notify(target, CacheEvent.INVALIDATED)
        return hit

    def discard(self, key: CacheKey) -> None:
        """Forget a key entirely."""
        if self._entries.pop(key, None) is not None:
            cache_entries.set(len(self._entries))

    def clear(self) -> None:
        self._entries.clear()
        cache_entries.set(0)

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def fetch(
        self,
        key: CacheKey,
        fetcher: Fetcher,
        *,
        force: bool = False,
        stale_time: float | None = None,
    ) -> Any:
        """Return the fresh cached value, or fetch and store it.

        Concurrent fetches of a key share one request. A result is only
        written if the key was not written, patched or invalidated while the
        request was in flight; otherwise the newer cached state is kept.

        Cancelling the caller does not cancel the underlying request.
        """
        if not force and not self.is_stale(key, stale_time):
            return self.peek(key)

        current = self._entries.get(key)
        version = current.version if current else 0

        inflight = self._inflight.get(key)
        if inflight is None or inflight.version != version:
            task = asyncio.ensure_future(self._run_fetch(key, fetcher, version))
            inflight = _InFlight(task=task, version=version)
            self._inflight[key] = inflight
            task.add_done_callback(lambda _t, rec=inflight: self._release(key, rec))

        return await asyncio.shield(inflight.task)

    async def _run_fetch(self, key: CacheKey, fetcher: Fetcher, version: int) -> Any:
        value = await fetcher()
        if self.version(key) != version:
            logger.debug(f"Discarding superseded fetch of {key}")
            cached = self.read(key)
            return value if cached is None else cached
        self.write(key, value)
        return value

    def _release(self, key: CacheKey, record: _InFlight) -> None:
        if self._inflight.get(key) is record:
            del self._inflight[key]
        if not record.task.cancelled() and record.task.exception() is not None:
            logger.debug(f"Fetch of {key} failed: {record.task.exception()!r}")

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, key: CacheKey, callback: Listener) -> Callable[[], None]:
        """Register ``callback(key, event)`` for one key.

        Returns:
            A function that removes the listener
        """
        self._listeners.setdefault(key, []).append(callback)

        def _remove() -> None:
            callbacks = self._listeners.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _remove

    def _notify(self, key: CacheKey, event: CacheEvent) -> None:
        for callback in list(self._listeners.get(key, ())):
            callback(key, event)


# =============================================================================
# Subscriptions
# =============================================================================


@dataclass(frozen=True)
class RefreshPolicy:
    """How a subscription keeps its key fresh.

    Attributes:
        interval: Poll period in seconds (None disables polling)
        stale_time: Age in seconds after which ``get()`` refetches
    """

    interval: float | None = None
    stale_time: float | None = None


@dataclass
class Subscription(Generic[T]):
    """A consumer's handle on one cache key.

    While started, the subscription refetches after its key is invalidated
    and polls on ``policy.interval``. ``close()`` stops both without
    cancelling a request already sent.
    """

    cache: EntityCache
    key: CacheKey
    fetcher: Fetcher
    policy: RefreshPolicy = field(default_factory=RefreshPolicy)

    _active: bool = field(default=False, init=False)
    _remove_listener: Callable[[], None] | None = field(default=None, init=False)
    _poller: "asyncio.Task[None] | None" = field(default=None, init=False)
    _refetches: set["asyncio.Task[Any]"] = field(default_factory=set, init=False)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def value(self) -> T | None:
        """Last known value, possibly stale."""
        return self.cache.peek(self.key)

    async def get(self, force: bool = False) -> T:
        return await self.cache.fetch(
            self.key, self.fetcher, force=force, stale_time=self.policy.stale_time
        )

    def start(self) -> None:
        """Begin reacting to invalidation and polling. Requires a running loop."""
        if self._active:
            return
        self._active = True
        self._remove_listener = self.cache.add_listener(self.key, self._on_event)
        if self.policy.interval:
            self._poller = asyncio.get_running_loop().create_task(self._poll())

    def close(self) -> None:
        self._active = False
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None

    async def __aenter__(self) -> "Subscription[T]":
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def _on_event(self, key: CacheKey, event: CacheEvent) -> None:
        if event is not CacheEvent.INVALIDATED or not self._active:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Invalidated outside the loop; the next get() refetches.
            return
        task = loop.create_task(self._refresh())
        self._refetches.add(task)
        task.add_done_callback(self._refetches.discard)

    async def _refresh(self) -> None:
        try:
            await self.get()
        except Exception as e:
            logger.warning(f"Refetch of {self.key} failed: {e}")

    async def _poll(self) -> None:
        assert self.policy.interval
        while self._active:
            await asyncio.sleep(self.policy.interval)
            if not self._active:
                break
            try:
                await self.get(force=True)
            except Exception as e:
                logger.warning(f"Polling {self.key} failed: {e}")


__all__ = [
    "CacheEvent",
    "EntityCache",
    "Pages",
    "RefreshPolicy",
    "Subscription",
]
