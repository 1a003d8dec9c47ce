"""Optimistic mutation coordinator.

A :class:`MutationSpec` declares how one state-changing request touches the
cache. The :class:`MutationCoordinator` runs every spec through the same
sequence:

1. ``validate``: local precondition, raises before anything is dispatched
2. ``apply``: patch the cache synchronously and return a snapshot
3. ``send``: the network call, bounded by ``mutation_timeout``
4. on success: ``reconcile`` with the server's answer, invalidate dependents
5. on failure: ``rollback`` the mutation's own snapshot and report

While the send is pending, a write to any key in ``holds`` (a feed refresh,
say) triggers ``reapply`` so the optimistic state stays visible.

At most one mutation per ``(name, entity_id)`` is pending. A second submit
while one is outstanding is either queued behind it (``MutationPolicy.QUEUE``)
or dropped (``MutationPolicy.COALESCE``).

Failures come back as a :class:`MutationResult`; they are never raised into
the caller.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from campusfeed.api import AuthenticationError, TransientAPIError
from campusfeed.cache import CacheEvent
from campusfeed.config import MutationPolicy, settings
from campusfeed.interfaces import IEntityCache
from campusfeed.keys import CacheKey
from campusfeed.logging import logger
from campusfeed.metrics import mutations_total


# =============================================================================
# Declarations
# =============================================================================


@dataclass(frozen=True)
class MutationSpec:
    """One state-changing request and its cache effects.

    Attributes:
        name: Mutation type (e.g. "like_post")
        send: Coroutine factory receiving the snapshot returned by ``apply``
        entity_id: Entity the mutation targets; with ``name`` it forms the
            concurrency slot
        validate: Raises ``InvalidInputError`` if the input is unusable
        apply: Optimistic patch; returns the snapshot used for rollback
        reconcile: ``(cache, server_value, snapshot)`` after a success
        rollback: ``(cache, snapshot)`` after a failure
        invalidates: Keys (matched as prefixes) marked stale after a success
        holds: Keys the optimistic patch lives under
        reapply: ``(cache, snapshot)`` re-asserts the optimistic state when a
            key in ``holds`` is overwritten while the send is pending
    """

    name: str
    send: Callable[[Any], Awaitable[Any]]
    entity_id: str = ""
    validate: Callable[[], None] | None = None
    apply: Callable[[IEntityCache], Any] | None = None
    reconcile: Callable[[IEntityCache, Any, Any], None] | None = None
    rollback: Callable[[IEntityCache, Any], None] | None = None
    invalidates: Sequence[CacheKey] = ()
    holds: Sequence[CacheKey] = ()
    reapply: Callable[[IEntityCache, Any], None] | None = None

    @property
    def slot(self) -> tuple[str, str]:
        return (self.name, self.entity_id)


@dataclass
class ItemSnapshot:
    """Pre-mutation copies of one entity under each key it appears in."""

    item_id: str
    items: dict[CacheKey, Any] = field(default_factory=dict)

    @classmethod
    def capture(
        cls, cache: IEntityCache, keys: Iterable[CacheKey], item_id: str
    ) -> "ItemSnapshot":
        snapshot = cls(item_id)
        for key in keys:
            item = cache.find_item(key, item_id)
            if item is not None:
                snapshot.items[key] = item
        return snapshot

    def first(self) -> Any | None:
        return next(iter(self.items.values()), None)

    def restore(self, cache: IEntityCache) -> None:
        for key, item in self.items.items():
            cache.update_item(key, self.item_id, lambda _old, item=item: item)


def update_items(
    cache: IEntityCache,
    keys: Iterable[CacheKey],
    item_id: str,
    fn: Callable[[Any], Any],
) -> ItemSnapshot:
    """Snapshot the entity under every key, then replace it with ``fn(entity)``."""
    keys = list(keys)
    snapshot = ItemSnapshot.capture(cache, keys, item_id)
    for key in keys:
        cache.update_item(key, item_id, fn)
    return snapshot


# =============================================================================
# Outcomes
# =============================================================================


class MutationStatus(StrEnum):
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    COALESCED = "coalesced"


@dataclass
class MutationResult:
    """What became of one submitted mutation."""

    name: str
    entity_id: str
    status: MutationStatus
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status is MutationStatus.SUCCEEDED

    @property
    def auth_failed(self) -> bool:
        return isinstance(self.error, AuthenticationError)


class ViewScope:
    """Lifetime of a view that submitted mutations.

    Once closed, result callbacks registered under this scope no longer run.
    The requests themselves and their cache reconciliation still complete.
    """

    def __init__(self, name: str = "view") -> None:
        self.name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


# =============================================================================
# Coordinator
# =============================================================================


class MutationCoordinator:
    """Runs mutation specs against one cache.

    Args:
        cache: Entity cache to patch
        policy: Handling of a second submit on a pending slot
        timeout: Seconds before a send counts as a transient failure
        on_auth_failure: Called with the error when a send is rejected with
            HTTP 401/403
    """

    def __init__(
        self,
        cache: IEntityCache,
        policy: MutationPolicy | None = None,
        timeout: float | None = None,
        on_auth_failure: Callable[[AuthenticationError], None] | None = None,
    ) -> None:
        self.cache = cache
        self.policy = policy or settings.mutation_policy
        self.timeout = timeout if timeout is not None else settings.mutation_timeout
        self.on_auth_failure = on_auth_failure
        self._pending: dict[tuple[str, str], asyncio.Future[MutationResult]] = {}
        # Strong references so a task outlives the view that submitted it
        self._tasks: set[asyncio.Future[MutationResult]] = set()

    def is_pending(self, name: str, entity_id: str = "") -> bool:
        return (name, entity_id) in self._pending

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        spec: MutationSpec,
        *,
        scope: ViewScope | None = None,
        on_settled: Callable[[MutationResult], None] | None = None,
    ) -> "asyncio.Future[MutationResult]":
        """Validate and apply ``spec`` now; send it in a coordinator-owned task.

        Must be called from the event loop. The optimistic patch is visible
        in the cache by the time this returns (unless it is queued
        behind a pending mutation).

        Raises:
            InvalidInputError: If ``spec.validate`` rejects the input
        """
        if spec.validate is not None:
            spec.validate()

        loop = asyncio.get_running_loop()
        previous = self._pending.get(spec.slot)

        if previous is not None and self.policy is MutationPolicy.COALESCE:
            logger.debug(f"Coalesced {spec.name} on {spec.entity_id!r}")
            mutations_total.labels(mutation=spec.name, outcome="coalesced").inc()
            result = MutationResult(spec.name, spec.entity_id, MutationStatus.COALESCED)
            done: asyncio.Future[MutationResult] = loop.create_future()
            done.set_result(result)
            self._deliver(result, scope, on_settled)
            return done

        if previous is None:
            snapshot = self._apply(spec)
            task = loop.create_task(self._execute(spec, snapshot, scope, on_settled))
        else:
            logger.debug(f"Queued {spec.name} on {spec.entity_id!r}")
            mutations_total.labels(mutation=spec.name, outcome="queued").inc()
            task = loop.create_task(self._run_after(previous, spec, scope, on_settled))

        self._pending[spec.slot] = task
        self._tasks.add(task)
        task.add_done_callback(lambda t, slot=spec.slot: self._release(slot, t))
        return task

    async def run(
        self,
        spec: MutationSpec,
        *,
        scope: ViewScope | None = None,
        on_settled: Callable[[MutationResult], None] | None = None,
    ) -> MutationResult:
        """Submit ``spec`` and wait for its result.

        Cancelling the awaiting coroutine does not cancel the request.
        """
        return await asyncio.shield(self.submit(spec, scope=scope, on_settled=on_settled))

    async def drain(self) -> None:
        """Wait for every outstanding mutation to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _apply(self, spec: MutationSpec) -> Any:
        if spec.apply is None:
            return None
        return spec.apply(self.cache)

    async def _run_after(
        self,
        previous: "asyncio.Future[MutationResult]",
        spec: MutationSpec,
        scope: ViewScope | None,
        on_settled: Callable[[MutationResult], None] | None,
    ) -> MutationResult:
        await asyncio.wait([previous])
        snapshot = self._apply(spec)
        return await self._execute(spec, snapshot, scope, on_settled)

    async def _execute(
        self,
        spec: MutationSpec,
        snapshot: Any,
        scope: ViewScope | None,
        on_settled: Callable[[MutationResult], None] | None,
    ) -> MutationResult:
        release = self._hold(spec, snapshot)
        try:
            try:
                value = await asyncio.wait_for(spec.send(snapshot), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise TransientAPIError(
                    f"{spec.name} timed out after {self.timeout}s"
                ) from exc
            finally:
                release()
        except Exception as exc:
            if spec.rollback is not None:
                spec.rollback(self.cache, snapshot)
            result = MutationResult(
                spec.name, spec.entity_id, MutationStatus.ROLLED_BACK, error=exc
            )
            mutations_total.labels(mutation=spec.name, outcome="rolled_back").inc()
            logger.warning(
                f"↩️  {spec.name} on {spec.entity_id!r} failed, rolled back: {exc}"
            )
            if isinstance(exc, AuthenticationError) and self.on_auth_failure:
                self.on_auth_failure(exc)
            self._deliver(result, scope, on_settled)
            return result

        if spec.reconcile is not None:
            spec.reconcile(self.cache, value, snapshot)
        for key in spec.invalidates:
            self.cache.invalidate(key, exact=False)

        result = MutationResult(
            spec.name, spec.entity_id, MutationStatus.SUCCEEDED, value=value
        )
        mutations_total.labels(mutation=spec.name, outcome="succeeded").inc()
        logger.debug(f"✅ {spec.name} on {spec.entity_id!r} succeeded")
        self._deliver(result, scope, on_settled)
        return result

    def _hold(self, spec: MutationSpec, snapshot: Any) -> Callable[[], None]:
        """Re-apply the optimistic patch on overwrites until the send settles."""
        if spec.reapply is None or not spec.holds:
            return lambda: None

        def _on_event(key: CacheKey, event: CacheEvent) -> None:
            if event is CacheEvent.WRITTEN:
                logger.debug(f"Re-applying pending {spec.name} on {key}")
                spec.reapply(self.cache, snapshot)

        removers = [self.cache.add_listener(key, _on_event) for key in spec.holds]

        def _release() -> None:
            for remove in removers:
                remove()

        return _release

    def _deliver(
        self,
        result: MutationResult,
        scope: ViewScope | None,
        on_settled: Callable[[MutationResult], None] | None,
    ) -> None:
        if on_settled is None:
            return
        if scope is not None and scope.closed:
            logger.debug(f"{scope.name} closed, dropping {result.name} callback")
            return
        on_settled(result)

    def _release(
        self, slot: tuple[str, str], task: "asyncio.Future[MutationResult]"
    ) -> None:
        self._tasks.discard(task)
        if self._pending.get(slot) is task:
            del self._pending[slot]


__all__ = [
    "ItemSnapshot",
    "MutationCoordinator",
    "MutationResult",
    "MutationSpec",
    "MutationStatus",
    "ViewScope",
    "update_items",
]
