"""
Optimistic mutation plumbing shared by the stores.

- OptimisticTransaction: explicit {previous, apply, commit, rollback} record
- KeyedLocks: serializes mutations per key and reports in-flight keys
- run_detached: runs a mutation so that cancelling the caller does not
  abort it halfway
- SessionScopedStore: session ownership and auth checks for the stores
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, Hashable, TypeVar

import structlog

from .errors import AuthRequired, Invalid
from .invalidation import ViewRegistry
from .metrics import MetricsCollector
from .notify import Notice, NoticeLevel, NoticeSink, publish
from .records import RecordStoreClient
from .schemas import Capability

log = structlog.get_logger()

T = TypeVar("T")

_UNSET: Any = object()


class TxState(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    DISCARDED = "discarded"


class OptimisticTransaction(Generic[T]):
    """
    One optimistic change to a single cached value.

    ``previous`` is captured before anything is written. ``is_current`` tells
    whether the cache the transaction writes into still belongs to the session
    that started it; if not, commit and rollback leave the cache alone.
    """

    def __init__(
        self,
        key: Hashable,
        previous: T,
        optimistic: T,
        write: Callable[[T], None],
        is_current: Callable[[], bool] = lambda: True,
    ):
        self.key = key
        self.previous = previous
        self.optimistic = optimistic
        self.state = TxState.PENDING
        self._write = write
        self._is_current = is_current

    def apply(self) -> None:
        if self.state is not TxState.PENDING:
            raise RuntimeError(f"cannot apply a {self.state.value} transaction")
        self._write(self.optimistic)
        self.state = TxState.APPLIED

    def commit(self, final: T = _UNSET) -> None:
        """Keep the optimistic value, or replace it with the server's version."""
        self._finish(TxState.COMMITTED, final)

    def rollback(self) -> None:
        self._finish(TxState.ROLLED_BACK, self.previous)

    def _finish(self, state: TxState, value: T) -> None:
        if self.state is not TxState.APPLIED:
            raise RuntimeError(f"cannot finish a {self.state.value} transaction")
        if not self._is_current():
            self.state = TxState.DISCARDED
            log.info("transaction.discarded", key=str(self.key))
            return
        if value is not _UNSET:
            self._write(value)
        self.state = state


class KeyedLocks:
    """Per-key asyncio locks; a key counts as busy while anyone holds or waits."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def busy(self, key: Hashable) -> bool:
        return self._users.get(key, 0) > 0

    def keys(self) -> list[Hashable]:
        return list(self._users)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)


def _retrieve_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.debug("transaction.detached_error", error=repr(exc))


async def run_detached(operation: Awaitable[T]) -> T:
    """Await ``operation`` in its own task.

    If the awaiting caller is cancelled (its view was torn down) the
    operation still runs to completion and reconciles the store cache; the
    caller simply never sees the result.
    """
    task = asyncio.ensure_future(operation)
    task.add_done_callback(_retrieve_result)
    return await asyncio.shield(task)


class SessionScopedStore:
    """
    Base for caches owned by one session.

    ``reset`` wipes the cache and bumps the store epoch; transactions started
    under an older epoch are discarded instead of written back.
    """

    name = "store"

    def __init__(
        self,
        client: RecordStoreClient,
        views: ViewRegistry,
        notices: NoticeSink | None = None,
        metrics: MetricsCollector | None = None,
        auth_path: str = "/auth",
    ):
        self._client = client
        self._views = views
        self._notices = notices
        self._metrics = metrics
        self._auth_path = auth_path
        self._user_id: str | None = None
        self._epoch = 0
        self._locks = KeyedLocks()
        self.loaded = False

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def reset(self, user_id: str | None = None) -> None:
        self._epoch += 1
        self._user_id = user_id
        self.loaded = False
        self._clear()

    def _clear(self) -> None:
        raise NotImplementedError

    def _epoch_guard(self) -> Callable[[], bool]:
        epoch = self._epoch
        return lambda: epoch == self._epoch

    def _require_user(self, capability: Capability, action: str) -> str:
        """Mutations need an authenticated capability for this store's session."""
        if capability.pending:
            raise Invalid("Capability is still being resolved", field_name="capability")
        if not capability.can_mutate:
            raise AuthRequired(redirect_to=self._auth_path, action=action)
        if capability.user_id != self._user_id:
            raise Invalid(
                "Capability does not belong to the session this store was loaded for",
                field_name="capability",
            )
        return capability.user_id

    def _publish(self, title: str, description: str, level: NoticeLevel = NoticeLevel.INFO) -> None:
        publish(self._notices, Notice(title, description, level))

    def _committed(self, action: str, **context: Any) -> None:
        if self._metrics:
            self._metrics.inc("mutations_committed_total")
        log.info(f"{self.name}.{action}", **context)

    def _rolled_back(self, action: str, exc: BaseException, **context: Any) -> None:
        if self._metrics:
            self._metrics.inc("mutations_rolled_back_total")
        log.warning(
            f"{self.name}.{action}_failed",
            error=str(exc),
            code=getattr(exc, "code", None),
            **context,
        )
