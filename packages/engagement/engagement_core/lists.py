"""
Favorite lists: named lists owned by one user, each holding resource ids.

Item membership is tracked per (list, resource) pair, so the same resource
can be in several lists independently. Lists of other users are never
loaded and cannot be acted on.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Optional

import structlog

from .errors import AuthRequired, Conflict, EngagementError, Invalid, ListItemAddFailed, NotAuthorized
from .invalidation import ReadView, ViewKey, ViewKind, ViewRegistry
from .notify import NoticeLevel, ObserverSet
from .records import RecordStoreClient
from .schemas import Capability, FavoriteList, ListItem, require_id
from .transaction import OptimisticTransaction, SessionScopedStore, TxState, run_detached

log = structlog.get_logger()

ITEM_COLUMN = "location_id"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ListChange:
    """What changed; both fields are None after a (re)load."""
    list_id: Optional[str] = None
    resource_id: Optional[str] = None


class ListMembershipStore(SessionScopedStore):
    name = "favorite_lists"

    def __init__(
        self,
        client: RecordStoreClient,
        views: ViewRegistry,
        lists_table: str = "favorite_lists",
        items_table: str = "favorite_list_items",
        **kwargs,
    ):
        super().__init__(client, views, **kwargs)
        self._lists_table = lists_table
        self._items_table = items_table
        self._lists: dict[str, FavoriteList] = {}
        self._items: set[tuple[str, str]] = set()
        self.observers: ObserverSet[ListChange] = ObserverSet(self.name)

    def _clear(self) -> None:
        self._lists = {}
        self._items = set()
        self.observers.notify(ListChange())

    # --- Reads ---

    @property
    def lists(self) -> list[FavoriteList]:
        return list(self._lists.values())

    def get_list(self, list_id: str) -> FavoriteList | None:
        return self._lists.get(list_id)

    def is_in_list(self, list_id: str, resource_id: str) -> bool:
        return (list_id, resource_id) in self._items

    def list_items(self, list_id: str) -> list[str]:
        return sorted(resource for owner, resource in self._items if owner == list_id)

    def lists_containing(self, resource_id: str) -> list[str]:
        return [list_id for list_id in self._lists if (list_id, resource_id) in self._items]

    def is_pending(self, list_id: str, resource_id: str) -> bool:
        return self._locks.busy((list_id, resource_id))

    async def load(self, capability: Capability) -> None:
        """Fetch the user's lists and their items."""
        user_id = capability.user_id if capability.authenticated else None
        if user_id != self._user_id:
            self.reset(user_id)
        if user_id is None:
            self.loaded = True
            return

        guard = self._epoch_guard()
        rows = await self._client.select(
            self._lists_table, {"user_id": user_id}, order="created_at.asc"
        )
        lists = [FavoriteList.model_validate(row) for row in rows]
        items: set[tuple[str, str]] = set()
        if lists:
            item_rows = await self._client.select(
                self._items_table,
                {"list_id": [fl.id for fl in lists]},
                columns=f"list_id,{ITEM_COLUMN}",
            )
            items = {
                (item.list_id, item.resource_id)
                for item in (ListItem.model_validate(row) for row in item_rows)
            }
        if not guard():
            return
        self._lists = {fl.id: fl for fl in lists}
        self._items = items
        self.loaded = True
        self.observers.notify(ListChange())
        log.info(f"{self.name}.loaded", user_id=user_id, lists=len(lists), items=len(items))

    def lists_view(self, capability: Capability) -> ReadView[list[FavoriteList]]:
        user_id = capability.user_id or ""

        async def fetch() -> list[FavoriteList]:
            if not user_id:
                return []
            rows = await self._client.select(
                self._lists_table, {"user_id": user_id}, order="created_at.asc"
            )
            return [FavoriteList.model_validate(row) for row in rows]

        return self._views.register(ViewKey.of(ViewKind.FAVORITE_LISTS, user_id=user_id), fetch)

    def items_view(self, list_id: str, capability: Capability) -> ReadView[list[str]]:
        user_id = capability.user_id or ""

        async def fetch() -> list[str]:
            rows = await self._client.select(
                self._items_table, {"list_id": list_id}, columns=ITEM_COLUMN
            )
            return sorted(row[ITEM_COLUMN] for row in rows)

        return self._views.register(
            ViewKey.of(ViewKind.LIST_ITEMS, user_id=user_id, list_id=list_id), fetch
        )

    # --- List lifecycle ---

    async def create_list(
        self,
        name: str,
        capability: Capability,
        description: str | None = None,
    ) -> FavoriteList:
        user_id = self._require_user(capability, action="favorite_lists.create")
        if not isinstance(name, str) or not name.strip():
            raise Invalid("List name cannot be empty", field_name="name")
        return await run_detached(self._create(user_id, name.strip(), description))

    async def _create(self, user_id: str, name: str, description: str | None) -> FavoriteList:
        guard = self._epoch_guard()
        try:
            row = await self._client.insert(
                self._lists_table,
                {"user_id": user_id, "name": name, "description": description or None},
            )
        except Exception as exc:
            log.warning(f"{self.name}.create_failed", name=name, error=str(exc))
            if not isinstance(exc, AuthRequired):
                self._publish("Error", "Failed to create list", NoticeLevel.ERROR)
            raise

        favorite_list = FavoriteList.model_validate(row)
        if not guard():
            log.info(f"{self.name}.create_discarded", list_id=favorite_list.id)
            return favorite_list

        self._lists[favorite_list.id] = favorite_list
        self.observers.notify(ListChange(list_id=favorite_list.id))
        self._committed("created", list_id=favorite_list.id)
        self._publish("List created", f'"{name}" has been created')
        await self._views.invalidate(ViewKey.of(ViewKind.FAVORITE_LISTS, user_id=user_id))
        return favorite_list

    async def create_list_with_item(
        self,
        name: str,
        resource_id: str,
        capability: Capability,
        description: str | None = None,
    ) -> FavoriteList:
        """Create a list and put ``resource_id`` in it.

        A failed add does not undo the creation: the list stays, and
        ListItemAddFailed (not the creation error) is raised.
        """
        require_id(resource_id, ITEM_COLUMN)
        favorite_list = await self.create_list(name, capability, description)
        try:
            await self.add_to_list(favorite_list.id, resource_id, capability)
        except EngagementError as exc:
            raise ListItemAddFailed(favorite_list, exc) from exc
        return favorite_list

    async def delete_list(self, list_id: str, capability: Capability) -> bool:
        user_id = self._require_user(capability, action="favorite_lists.delete")
        self._require_own_list(list_id)
        return await run_detached(self._delete(user_id, list_id))

    async def _delete(self, user_id: str, list_id: str) -> bool:
        async with self._locks.hold(("list", list_id)):
            favorite_list = self._require_own_list(list_id)
            tx = OptimisticTransaction(
                key=("list", list_id),
                previous=(favorite_list, frozenset(self.list_items(list_id))),
                optimistic=(None, frozenset()),
                write=partial(self._write_list, list_id),
                is_current=self._epoch_guard(),
            )
            tx.apply()
            try:
                await self._client.delete(self._lists_table, {"id": list_id})
            except Exception as exc:
                tx.rollback()
                self._rolled_back("delete", exc, list_id=list_id)
                if not isinstance(exc, AuthRequired):
                    self._publish("Error", "Failed to delete list", NoticeLevel.ERROR)
                raise
            tx.commit()
            self._committed("deleted", list_id=list_id)

        if tx.state is TxState.COMMITTED:
            self._publish("List deleted", "List has been removed")
            await self._views.invalidate(
                ViewKey.of(ViewKind.FAVORITE_LISTS, user_id=user_id),
                ViewKey.of(ViewKind.LIST_ITEMS, user_id=user_id, list_id=list_id),
            )
        return True

    # --- Items ---

    async def add_to_list(self, list_id: str, resource_id: str, capability: Capability) -> bool:
        """Put a resource in a list; returns the new membership (True)."""
        return await self._set_item(list_id, resource_id, capability, present=True)

    async def remove_from_list(self, list_id: str, resource_id: str, capability: Capability) -> bool:
        """Take a resource out of a list; returns the new membership (False)."""
        return await self._set_item(list_id, resource_id, capability, present=False)

    async def toggle_in_list(self, list_id: str, resource_id: str, capability: Capability) -> bool:
        return await self._set_item(list_id, resource_id, capability, present=None)

    async def _set_item(
        self,
        list_id: str,
        resource_id: str,
        capability: Capability,
        present: bool | None,
    ) -> bool:
        user_id = self._require_user(capability, action="favorite_lists.items")
        require_id(list_id, "list_id")
        require_id(resource_id, ITEM_COLUMN)
        self._require_own_list(list_id)
        return await run_detached(self._apply_item(user_id, list_id, resource_id, present))

    async def _apply_item(
        self,
        user_id: str,
        list_id: str,
        resource_id: str,
        present: bool | None,
    ) -> bool:
        async with self._locks.hold((list_id, resource_id)):
            self._require_own_list(list_id)
            was_in = (list_id, resource_id) in self._items
            target = (not was_in) if present is None else present
            tx = OptimisticTransaction(
                key=(user_id, list_id, resource_id),
                previous=was_in,
                optimistic=target,
                write=partial(self._write_item, list_id, resource_id),
                is_current=self._epoch_guard(),
            )
            tx.apply()
            row = {"list_id": list_id, ITEM_COLUMN: resource_id}
            try:
                if target:
                    await self._insert_item(row)
                else:
                    await self._client.delete(self._items_table, row)
            except Exception as exc:
                tx.rollback()
                self._rolled_back("item", exc, list_id=list_id, resource_id=resource_id)
                if not isinstance(exc, AuthRequired):
                    action = "add to" if target else "remove from"
                    self._publish("Error", f"Failed to {action} list", NoticeLevel.ERROR)
                raise
            tx.commit()
            self._committed("item_set", list_id=list_id, resource_id=resource_id, present=target)

        if tx.state is TxState.COMMITTED:
            await self._views.invalidate(
                ViewKey.of(ViewKind.LIST_ITEMS, user_id=user_id, list_id=list_id),
                ViewKey.of(ViewKind.FAVORITE_LISTS, user_id=user_id),
                ViewKey.of(ViewKind.LOCATION, location_id=resource_id),
            )
        return target

    async def _insert_item(self, row: dict[str, str]) -> None:
        try:
            await self._client.insert(self._items_table, row)
        except Conflict:
            log.info(f"{self.name}.already_in_list", **row)

    # --- Cache writes ---

    def _require_own_list(self, list_id: str) -> FavoriteList:
        favorite_list = self._lists.get(list_id)
        if favorite_list is None:
            raise NotAuthorized("List not found for the current user", resource_id=list_id)
        return favorite_list

    def _write_item(self, list_id: str, resource_id: str, present: bool) -> None:
        if present and list_id in self._lists:
            self._items.add((list_id, resource_id))
        else:
            self._items.discard((list_id, resource_id))
        self.observers.notify(ListChange(list_id=list_id, resource_id=resource_id))

    def _write_list(
        self,
        list_id: str,
        value: tuple[FavoriteList | None, frozenset[str]],
    ) -> None:
        favorite_list, resources = value
        if favorite_list is None:
            self._lists.pop(list_id, None)
            self._items = {item for item in self._items if item[0] != list_id}
        else:
            self._lists[list_id] = favorite_list
            self._lists = dict(
                sorted(self._lists.items(), key=lambda kv: kv[1].created_at or _EPOCH)
            )
            self._items.update((list_id, resource) for resource in resources)
        self.observers.notify(ListChange(list_id=list_id))
