"""
Engagement core facade.

Wires the record store client, session, capability resolver, read-view
registry and the engagement stores together, and handles the session
lifecycle: every sign-in or sign-out wipes the caches, resolves the new
capability and reloads the stores for it.

Each facade operation resolves the capability once and hands that same
value to the store it calls.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from .capability import CapabilityResolver
from .config import EngagementConfig
from .invalidation import ViewKey, ViewRegistry
from .lists import ListMembershipStore
from .masking import reveal, reveal_contact
from .membership import FavoritesStore, LikesStore
from .metrics import MetricsCollector
from .notify import NoticeSink
from .records import RecordStoreClient
from .rsvp import RSVPStore
from .schemas import Capability, ContactCard, ContactKind, FavoriteList, MaskedField, RSVPState, RSVPStatus
from .session import Session, SessionManager
from .transaction import SessionScopedStore

log = structlog.get_logger()


class EngagementCore:
    """
    One engagement core per signed-in client.

    Owns the store client connection; use as an async context manager or
    call open()/close().
    """

    def __init__(
        self,
        config: EngagementConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        notices: NoticeSink | None = None,
    ):
        self._config = config
        self.metrics = MetricsCollector() if config.metrics.enabled else None
        self.client = RecordStoreClient(
            url=config.store.url,
            api_key=config.store.api_key,
            verify_tls=config.store.verify_tls,
            request_timeout=config.store.request_timeout_seconds,
            read_retries=config.store.read_retries,
            retry_base_seconds=config.store.retry_base_seconds,
            transport=transport,
            metrics=self.metrics,
        )
        self.sessions = SessionManager()
        self.views = ViewRegistry(metrics=self.metrics)
        self.capabilities = CapabilityResolver(
            self.client, self.sessions, tables=config.tables, metrics=self.metrics
        )

        tables = config.tables
        common: dict[str, Any] = {
            "notices": notices,
            "metrics": self.metrics,
            "auth_path": config.routes.auth_path,
        }
        self.favorites = FavoritesStore(self.client, self.views, table=tables.favorites, **common)
        self.likes = LikesStore(self.client, self.views, table=tables.article_likes, **common)
        self.lists = ListMembershipStore(
            self.client,
            self.views,
            lists_table=tables.favorite_lists,
            items_table=tables.favorite_list_items,
            **common,
        )
        self.rsvps = RSVPStore(self.client, self.views, table=tables.event_rsvps, **common)
        self._stores: list[SessionScopedStore] = [self.favorites, self.likes, self.lists, self.rsvps]

        self.sessions.on_change(self._on_session_change)

    # --- Lifecycle ---

    async def open(self) -> None:
        await self.client.open()
        log.info("core.opened", store=self._config.store.url)

    async def close(self) -> None:
        self.views.clear()
        await self.client.close()
        log.info("core.closed")

    async def __aenter__(self) -> "EngagementCore":
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # --- Session ---

    async def sign_in(self, user_id: str, access_token: str) -> None:
        await self.sessions.sign_in(Session(user_id=user_id, access_token=access_token))

    async def sign_out(self) -> None:
        await self.sessions.sign_out()

    async def _on_session_change(self, session: Session | None) -> None:
        self.client.set_access_token(session.access_token if session else None)
        self.views.clear()
        for store in self._stores:
            store.reset(session.user_id if session else None)

        capability = await self.capabilities.resolve()
        await self._load_stores(capability)

    async def _load_stores(self, capability: Capability, stores: list[SessionScopedStore] | None = None) -> None:
        stores = stores if stores is not None else self._stores
        results = await asyncio.gather(
            *(store.load(capability) for store in stores), return_exceptions=True
        )
        for store, result in zip(stores, results):
            if isinstance(result, BaseException):
                log.error("core.load_failed", store=store.name, error=repr(result))

    @property
    def capability(self) -> Capability:
        """Current capability; pending until the first resolution finishes."""
        return self.capabilities.current

    async def resolve_capability(self) -> Capability:
        return await self.capabilities.resolve()

    async def refresh_capability(self) -> Capability:
        """Re-resolve after the user's roles or subscription changed."""
        capability = await self.capabilities.refresh()
        await self._load_stores(capability, self._stale_stores(capability, self._stores))
        return capability

    async def _capability_for(self, *stores: SessionScopedStore) -> Capability:
        capability = await self.capabilities.resolve()
        stale = self._stale_stores(capability, list(stores))
        if stale:
            await self._load_stores(capability, stale)
        return capability

    @staticmethod
    def _stale_stores(capability: Capability, stores: list[SessionScopedStore]) -> list[SessionScopedStore]:
        """Stores that were loaded for a different user than ``capability``'s."""
        if not capability.authenticated:
            return []
        return [store for store in stores if store.user_id != capability.user_id]

    # --- Favorites and likes ---

    async def toggle_favorite(self, location_id: str) -> bool:
        capability = await self._capability_for(self.favorites)
        return await self.favorites.toggle(location_id, capability)

    def is_favorite(self, location_id: str) -> bool:
        return self.favorites.is_member(location_id)

    async def toggle_like(self, article_id: str) -> bool:
        capability = await self._capability_for(self.likes)
        return await self.likes.toggle(article_id, capability)

    def is_liked(self, article_id: str) -> bool:
        return self.likes.is_member(article_id)

    # --- Favorite lists ---

    async def create_list(self, name: str, description: str | None = None) -> FavoriteList:
        capability = await self._capability_for(self.lists)
        return await self.lists.create_list(name, capability, description)

    async def create_list_with_item(
        self,
        name: str,
        location_id: str,
        description: str | None = None,
    ) -> FavoriteList:
        capability = await self._capability_for(self.lists)
        return await self.lists.create_list_with_item(name, location_id, capability, description)

    async def add_to_list(self, list_id: str, location_id: str) -> bool:
        capability = await self._capability_for(self.lists)
        return await self.lists.add_to_list(list_id, location_id, capability)

    async def remove_from_list(self, list_id: str, location_id: str) -> bool:
        capability = await self._capability_for(self.lists)
        return await self.lists.remove_from_list(list_id, location_id, capability)

    async def toggle_in_list(self, list_id: str, location_id: str) -> bool:
        capability = await self._capability_for(self.lists)
        return await self.lists.toggle_in_list(list_id, location_id, capability)

    async def delete_list(self, list_id: str) -> bool:
        capability = await self._capability_for(self.lists)
        return await self.lists.delete_list(list_id, capability)

    def is_in_list(self, list_id: str, location_id: str) -> bool:
        return self.lists.is_in_list(list_id, location_id)

    # --- RSVPs ---

    async def set_rsvp(self, event_id: str, status: RSVPStatus | str) -> RSVPState:
        capability = await self._capability_for(self.rsvps)
        return await self.rsvps.set_status(event_id, status, capability)

    async def remove_rsvp(self, event_id: str) -> RSVPState:
        capability = await self._capability_for(self.rsvps)
        return await self.rsvps.remove(event_id, capability)

    def rsvp_status(self, event_id: str) -> RSVPState:
        """Status as shown to the user, ``updating`` while a change is in flight."""
        return self.rsvps.display_status(event_id)

    # --- Contact gating ---

    def reveal(
        self,
        value: str,
        kind: ContactKind | str,
        capability: Capability | None = None,
    ) -> MaskedField:
        return reveal(value, kind, capability or self.capability, self._config.routes)

    def reveal_contact(
        self,
        email: str | None = None,
        phone: str | None = None,
        capability: Capability | None = None,
    ) -> ContactCard:
        return reveal_contact(
            capability or self.capability, email=email, phone=phone, routes=self._config.routes
        )

    # --- Views ---

    async def invalidate(self, *patterns: ViewKey) -> list[ViewKey]:
        return await self.views.invalidate(*patterns)
