"""
Membership set stores: favorites and article likes.

A membership is a unique (user, resource) row; toggling inserts or deletes
it. Toggles are applied to the local set first and rolled back if the store
rejects them. Toggles for the same resource run one after another, each
against the state the previous one left.
"""

from __future__ import annotations

from functools import partial

import structlog

from .errors import AuthRequired, Conflict
from .invalidation import ReadView, ViewKey, ViewKind, ViewRegistry
from .notify import NoticeLevel, ObserverSet
from .records import RecordStoreClient
from .schemas import Capability, require_id
from .transaction import OptimisticTransaction, SessionScopedStore, TxState, run_detached

log = structlog.get_logger()


class MembershipSetStore(SessionScopedStore):
    """
    Idempotent set of resource ids the current user is a member of.

    Subclasses name the table column holding the resource id and the
    read-views that depend on membership.
    """

    name = "membership"
    resource_column = "resource_id"
    member_view = ViewKind.FAVORITES
    resource_views: tuple[str, ...] = ()
    added_notice: tuple[str, str] | None = None
    removed_notice: tuple[str, str] | None = None
    failure_notice = ("Error", "Failed to update")

    def __init__(self, client: RecordStoreClient, views: ViewRegistry, table: str, **kwargs):
        super().__init__(client, views, **kwargs)
        self._table = table
        self._members: set[str] = set()
        self.observers: ObserverSet[frozenset[str]] = ObserverSet(self.name)

    def _clear(self) -> None:
        self._members = set()
        self.observers.notify(frozenset())

    # --- Reads ---

    def is_member(self, resource_id: str) -> bool:
        return resource_id in self._members

    def members(self) -> frozenset[str]:
        return frozenset(self._members)

    def is_pending(self, resource_id: str) -> bool:
        return self._locks.busy(resource_id)

    async def load(self, capability: Capability) -> None:
        """Fetch the authoritative member set for the capability's user."""
        user_id = capability.user_id if capability.authenticated else None
        if user_id != self._user_id:
            self.reset(user_id)
        if user_id is None:
            self.loaded = True
            return

        guard = self._epoch_guard()
        rows = await self._client.select(
            self._table, {"user_id": user_id}, columns=self.resource_column
        )
        if not guard():
            return
        self._members = {row[self.resource_column] for row in rows}
        self.loaded = True
        self.observers.notify(self.members())
        log.info(f"{self.name}.loaded", user_id=user_id, count=len(self._members))

    def member_view_for(self, capability: Capability) -> ReadView[list[str]]:
        """Server-side enumeration of the user's members (e.g. "my favorites")."""
        user_id = capability.user_id or ""
        key = ViewKey.of(self.member_view, user_id=user_id)

        async def fetch() -> list[str]:
            if not user_id:
                return []
            rows = await self._client.select(
                self._table, {"user_id": user_id}, columns=self.resource_column
            )
            return sorted(row[self.resource_column] for row in rows)

        return self._views.register(key, fetch)

    def views_for(self, user_id: str, resource_id: str) -> list[ViewKey]:
        keys = [ViewKey.of(self.member_view, user_id=user_id)]
        keys.extend(
            ViewKey.of(kind, **{self.resource_column: resource_id})
            for kind in self.resource_views
        )
        return keys

    # --- Mutations ---

    async def toggle(self, resource_id: str, capability: Capability) -> bool:
        """Flip membership; returns the new membership state."""
        user_id = self._require_user(capability, action=f"{self.name}.toggle")
        require_id(resource_id, self.resource_column)
        return await run_detached(self._toggle(user_id, resource_id))

    async def _toggle(self, user_id: str, resource_id: str) -> bool:
        async with self._locks.hold(resource_id):
            was_member = resource_id in self._members
            tx = OptimisticTransaction(
                key=(user_id, resource_id),
                previous=was_member,
                optimistic=not was_member,
                write=partial(self._write, resource_id),
                is_current=self._epoch_guard(),
            )
            tx.apply()
            try:
                if was_member:
                    await self._client.delete(self._table, self._row(user_id, resource_id))
                else:
                    await self._insert(user_id, resource_id)
            except Exception as exc:
                tx.rollback()
                self._rolled_back("toggle", exc, resource_id=resource_id)
                if not isinstance(exc, AuthRequired):
                    self._publish(*self.failure_notice, level=NoticeLevel.ERROR)
                raise
            tx.commit()
            self._committed("toggled", resource_id=resource_id, member=not was_member)

        if tx.state is TxState.COMMITTED:
            notice = self.removed_notice if was_member else self.added_notice
            if notice:
                self._publish(*notice)
            await self._views.invalidate(*self.views_for(user_id, resource_id))
        return not was_member

    async def _insert(self, user_id: str, resource_id: str) -> None:
        try:
            await self._client.insert(self._table, self._row(user_id, resource_id))
        except Conflict:
            log.info(f"{self.name}.already_member", resource_id=resource_id)

    def _row(self, user_id: str, resource_id: str) -> dict[str, str]:
        return {"user_id": user_id, self.resource_column: resource_id}

    def _write(self, resource_id: str, member: bool) -> None:
        if member:
            self._members.add(resource_id)
        else:
            self._members.discard(resource_id)
        self.observers.notify(self.members())


class FavoritesStore(MembershipSetStore):
    name = "favorites"
    resource_column = "location_id"
    member_view = ViewKind.FAVORITES
    resource_views = (ViewKind.LOCATION,)
    added_notice = ("Added to favorites", "Location saved to your favorites")
    removed_notice = ("Removed from favorites", "Location removed from your favorites")
    failure_notice = ("Error", "Failed to update favorites")


class LikesStore(MembershipSetStore):
    name = "likes"
    resource_column = "article_id"
    member_view = ViewKind.LIKED_ARTICLES
    resource_views = (ViewKind.ARTICLE_LIKES, ViewKind.ARTICLE)
    failure_notice = ("Error", "Failed to update like")

    def like_count_view(self, article_id: str) -> ReadView[int]:
        """Number of likes on an article; refetched after every like/unlike."""
        require_id(article_id, "article_id")

        async def fetch() -> int:
            rows = await self._client.select(
                self._table, {"article_id": article_id}, columns="article_id"
            )
            return len(rows)

        return self._views.register(ViewKey.of(ViewKind.ARTICLE_LIKES, article_id=article_id), fetch)
