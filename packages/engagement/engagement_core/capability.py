"""
Capability resolution.

Derives {authenticated, subscribed, admin} for the current session:
- No session: anonymous, no lookups
- admin/owner role in user_roles: admin (with full subscriber access)
- Otherwise: subscribed when the profile has an active subscription or a
  paid account type
- Lookup failure: the unprivileged state, logged, not cached

A resolved capability is cached for the session's epoch only. While a lookup
is in flight, ``current`` reports the pending capability; after a failed one
it reports the unprivileged state until the next ``resolve()`` retries.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from .config import TablesConfig
from .errors import EngagementError
from .metrics import MetricsCollector
from .notify import ObserverSet
from .records import RecordStoreClient
from .schemas import ADMIN_ROLES, SUBSCRIBED_ACCOUNT_TYPES, Capability
from .session import Session, SessionManager

log = structlog.get_logger()


def profile_is_subscribed(profile: dict[str, Any] | None) -> bool:
    if not profile:
        return False
    return (
        profile.get("subscription_status") == "active"
        or profile.get("account_type") in SUBSCRIBED_ACCOUNT_TYPES
    )


class CapabilityResolver:
    """Resolves and caches the capability set for the current session."""

    def __init__(
        self,
        client: RecordStoreClient,
        sessions: SessionManager,
        tables: TablesConfig | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._client = client
        self._sessions = sessions
        self._tables = tables or TablesConfig()
        self._metrics = metrics
        self._resolved: tuple[int, Capability] | None = None
        # last failed lookup; reported by ``current`` but never cached
        self._failed: tuple[int, Capability] | None = None
        self._inflight: tuple[int, asyncio.Future] | None = None
        self.observers: ObserverSet[Capability] = ObserverSet("capability")

    @property
    def current(self) -> Capability:
        """The capability for this session, or the pending one while unresolved."""
        epoch = self._sessions.epoch
        if self._resolved and self._resolved[0] == epoch:
            return self._resolved[1]
        if self._failed and self._failed[0] == epoch and not self.resolving:
            return self._failed[1]
        return Capability.unresolved()

    @property
    def resolving(self) -> bool:
        return self._inflight is not None and self._inflight[0] == self._sessions.epoch

    async def resolve(self) -> Capability:
        epoch = self._sessions.epoch
        if self._resolved and self._resolved[0] == epoch:
            return self._resolved[1]
        if self._inflight and self._inflight[0] == epoch:
            return await asyncio.shield(self._inflight[1])

        task = asyncio.ensure_future(self._resolve_for(self._sessions.current, epoch))
        self._inflight = (epoch, task)
        return await asyncio.shield(task)

    async def refresh(self) -> Capability:
        """Drop the cached capability (e.g. after a checkout) and resolve again."""
        self._resolved = None
        return await self.resolve()

    async def _resolve_for(self, session: Session | None, epoch: int) -> Capability:
        cached = True
        try:
            capability = await self._lookup(session)
        except EngagementError as exc:
            log.error(
                "capability.resolve_failed",
                user_id=session.user_id if session else None,
                code=exc.code,
                error=exc.message,
            )
            if self._metrics:
                self._metrics.inc("capability_failures_total")
            capability = Capability.anonymous()
            cached = False
        finally:
            if self._inflight and self._inflight[0] == epoch:
                self._inflight = None

        if self._metrics:
            self._metrics.inc("capability_resolutions_total")
        if epoch != self._sessions.epoch:
            log.info("capability.discarded_stale", epoch=epoch)
            return capability
        if cached:
            self._resolved = (epoch, capability)
            self._failed = None
        else:
            self._failed = (epoch, capability)
        log.info(
            "capability.resolved",
            user_id=capability.user_id,
            tier=capability.tier.value,
        )
        self.observers.notify(capability)
        return capability

    async def _lookup(self, session: Session | None) -> Capability:
        if session is None:
            return Capability.anonymous()

        user_id = session.user_id
        roles = await self._client.select(
            self._tables.user_roles, {"user_id": user_id}, columns="role"
        )
        if any(row.get("role") in ADMIN_ROLES for row in roles):
            return Capability(
                user_id=user_id, authenticated=True, subscribed=True, admin=True
            )

        profile = await self._client.select_one(
            self._tables.profiles,
            {"id": user_id},
            columns="account_type,subscription_status,subscription_end_date",
        )
        return Capability(
            user_id=user_id,
            authenticated=True,
            subscribed=profile_is_subscribed(profile),
        )
