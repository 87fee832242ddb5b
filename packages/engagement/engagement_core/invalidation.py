"""
Read-view cache and invalidation.

Read-views are cached query results keyed by ``ViewKey(kind, scope)``.
After a mutation, stores invalidate the keys that depend on the mutated
record; matching views are marked stale and refetched. Views whose key does
not match are left alone.

Matching: a pattern matches a view when the kinds are equal and every
scope parameter of the pattern is present, with the same value, in the
view's scope. ``ViewKey.of("events")`` therefore matches every events view.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import structlog

from .errors import EngagementError
from .metrics import MetricsCollector
from .notify import ObserverSet, Subscription

log = structlog.get_logger()

T = TypeVar("T")


class ViewKind:
    FAVORITES = "favorites"
    FAVORITE_LISTS = "favorite-lists"
    LIST_ITEMS = "favorite-list-items"
    LOCATION = "location"
    EVENT_RSVP = "event-rsvp"
    EVENT_RSVP_COUNTS = "event-rsvp-counts"
    MY_RSVPS = "my-rsvps"
    EVENTS = "events"
    EVENT = "event"
    LIKED_ARTICLES = "liked-articles"
    ARTICLE_LIKES = "article-likes"
    ARTICLE = "article"


@dataclass(frozen=True)
class ViewKey:
    kind: str
    scope: tuple[tuple[str, str], ...] = ()

    @classmethod
    def of(cls, kind: str, **scope: Any) -> "ViewKey":
        return cls(kind, tuple(sorted((name, str(value)) for name, value in scope.items())))

    def matches(self, pattern: "ViewKey") -> bool:
        return self.kind == pattern.kind and set(pattern.scope) <= set(self.scope)

    def __str__(self) -> str:
        if not self.scope:
            return self.kind
        params = ",".join(f"{name}={value}" for name, value in self.scope)
        return f"{self.kind}[{params}]"


Fetcher = Callable[[], Awaitable[T]]


class ReadView(Generic[T]):
    """A cached query result that knows whether it is stale."""

    def __init__(self, key: ViewKey, fetcher: Fetcher[T]):
        self.key = key
        self._fetcher = fetcher
        self.data: T | None = None
        self.stale = True
        self.error: EngagementError | None = None
        self.fetched_at: float | None = None
        self._refreshing: asyncio.Future | None = None
        self._generation = 0
        self.observers: ObserverSet[T] = ObserverSet(str(key))

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        return self.observers.subscribe(callback)

    def mark_stale(self) -> None:
        """Stale views refetch on next read; an in-flight fetch is superseded."""
        self.stale = True
        self._generation += 1
        self._refreshing = None

    async def get(self) -> T | None:
        """Current data, refetched first when stale."""
        if self.stale:
            await self.refresh()
        return self.data

    async def refresh(self) -> bool:
        """Refetch; concurrent callers share one request. Returns success."""
        task = self._refreshing
        if task is None:
            task = asyncio.ensure_future(self._fetch(self._generation))
            self._refreshing = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._refreshing is task and task.done():
                self._refreshing = None

    async def _fetch(self, generation: int) -> bool:
        try:
            data = await self._fetcher()
        except EngagementError as exc:
            if generation != self._generation:
                return await self.refresh()
            self.error = exc
            log.warning("views.refetch_failed", view=str(self.key), code=exc.code)
            return False
        if generation != self._generation:
            # invalidated while this fetch was in flight
            return await self.refresh()
        self.data = data
        self.error = None
        self.stale = False
        self.fetched_at = time.time()
        self.observers.notify(data)
        return True


class ViewRegistry:
    """All read-views of the current session."""

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self._views: dict[ViewKey, ReadView] = {}
        self._metrics = metrics

    def __contains__(self, key: ViewKey) -> bool:
        return key in self._views

    def register(self, key: ViewKey, fetcher: Fetcher[T]) -> ReadView[T]:
        """Return the view for ``key``, creating it on first use."""
        view = self._views.get(key)
        if view is None:
            view = ReadView(key, fetcher)
            self._views[key] = view
            self._track_size()
        return view

    def get(self, key: ViewKey) -> ReadView | None:
        return self._views.get(key)

    def drop(self, key: ViewKey) -> None:
        self._views.pop(key, None)
        self._track_size()

    def clear(self) -> None:
        for view in self._views.values():
            view.observers.clear()
        self._views.clear()
        self._track_size()

    def _track_size(self) -> None:
        if self._metrics:
            self._metrics.set_gauge("views_registered", len(self._views))

    def matching(self, *patterns: ViewKey) -> list[ReadView]:
        return [
            view
            for key, view in self._views.items()
            if any(key.matches(pattern) for pattern in patterns)
        ]

    async def invalidate(self, *patterns: ViewKey) -> list[ViewKey]:
        """Mark matching views stale and refetch them. Returns the refetched keys."""
        views = self.matching(*patterns)
        if not views:
            return []
        for view in views:
            view.mark_stale()

        results = await asyncio.gather(
            *(view.refresh() for view in views), return_exceptions=True
        )
        for view, result in zip(views, results):
            if isinstance(result, BaseException):
                log.error("views.refetch_error", view=str(view.key), error=repr(result))

        if self._metrics:
            self._metrics.inc("views_refetched_total", len(views))
        log.debug("views.invalidated", views=[str(v.key) for v in views])
        return [view.key for view in views]
