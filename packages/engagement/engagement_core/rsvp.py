"""
Event RSVPs.

One record per (user, event) holding ``going`` or ``interested``; no record
means no RSVP. Changing the status updates the existing record in place.
While a change is in flight the event shows as ``updating``; a second
change for the same event waits for the first and then applies against
whatever state the first left behind.
"""

from __future__ import annotations

from functools import partial

import structlog

from .errors import AuthRequired, Conflict, Invalid
from .invalidation import ReadView, ViewKey, ViewKind, ViewRegistry
from .notify import NoticeLevel, ObserverSet
from .records import RecordStoreClient
from .schemas import Capability, RSVPCounts, RSVPRecord, RSVPState, RSVPStatus, require_id
from .transaction import OptimisticTransaction, SessionScopedStore, TxState, run_detached

log = structlog.get_logger()

TRANSITION_NOTICES: dict[RSVPStatus | None, tuple[str, str]] = {
    RSVPStatus.GOING: ("RSVP Updated", "You're going to this event!"),
    RSVPStatus.INTERESTED: ("RSVP Updated", "You've marked interest in this event."),
    None: ("RSVP Removed", "You've removed your RSVP."),
}


def _as_status(status: RSVPStatus | str) -> RSVPStatus:
    try:
        return RSVPStatus(status)
    except ValueError:
        raise Invalid(f"Unknown RSVP status: {status!r}", field_name="status") from None


class RSVPStore(SessionScopedStore):
    name = "rsvp"

    def __init__(
        self,
        client: RecordStoreClient,
        views: ViewRegistry,
        table: str = "event_rsvps",
        **kwargs,
    ):
        super().__init__(client, views, **kwargs)
        self._table = table
        self._statuses: dict[str, RSVPStatus] = {}
        self.observers: ObserverSet[tuple[str, RSVPState]] = ObserverSet(self.name)

    def _clear(self) -> None:
        cleared, self._statuses = self._statuses, {}
        for event_id in cleared:
            self.observers.notify((event_id, RSVPState.NONE))

    # --- Reads ---

    def status(self, event_id: str) -> RSVPState:
        """Stored status of the current user for ``event_id``."""
        status = self._statuses.get(event_id)
        return RSVPState(status.value) if status else RSVPState.NONE

    def display_status(self, event_id: str) -> RSVPState:
        if self.is_updating(event_id):
            return RSVPState.UPDATING
        return self.status(event_id)

    def is_updating(self, event_id: str) -> bool:
        return self._locks.busy(event_id)

    async def load(self, capability: Capability) -> None:
        user_id = capability.user_id if capability.authenticated else None
        if user_id != self._user_id:
            self.reset(user_id)
        if user_id is None:
            self.loaded = True
            return

        guard = self._epoch_guard()
        rows = await self._client.select(
            self._table, {"user_id": user_id}, columns="event_id,status"
        )
        if not guard():
            return
        self._statuses = {row["event_id"]: RSVPStatus(row["status"]) for row in rows}
        self.loaded = True
        log.info("rsvp.loaded", user_id=user_id, count=len(self._statuses))

    async def load_event(self, event_id: str, capability: Capability) -> RSVPState:
        """Refresh the status for a single event from the store."""
        require_id(event_id, "event_id")
        if not capability.authenticated or capability.user_id != self._user_id:
            return RSVPState.NONE

        guard = self._epoch_guard()
        row = await self._client.select_one(
            self._table,
            {"event_id": event_id, "user_id": capability.user_id},
            columns="id,status",
        )
        if guard() and not self.is_updating(event_id):
            self._write(event_id, RSVPStatus(row["status"]) if row else None)
        return self.status(event_id)

    def counts_view(self, event_id: str) -> ReadView[RSVPCounts]:
        """Aggregate going/interested counts for an event."""
        require_id(event_id, "event_id")

        async def fetch() -> RSVPCounts:
            rows = await self._client.select(
                self._table, {"event_id": event_id}, columns="status"
            )
            counts = RSVPCounts()
            for row in rows:
                if row["status"] == RSVPStatus.GOING.value:
                    counts.going += 1
                elif row["status"] == RSVPStatus.INTERESTED.value:
                    counts.interested += 1
            return counts

        return self._views.register(
            ViewKey.of(ViewKind.EVENT_RSVP_COUNTS, event_id=event_id), fetch
        )

    def my_rsvps_view(self, capability: Capability) -> ReadView[list[RSVPRecord]]:
        user_id = capability.user_id or ""

        async def fetch() -> list[RSVPRecord]:
            if not user_id:
                return []
            rows = await self._client.select(
                self._table, {"user_id": user_id}, columns="id,event_id,user_id,status"
            )
            return [RSVPRecord.model_validate(row) for row in rows]

        return self._views.register(ViewKey.of(ViewKind.MY_RSVPS, user_id=user_id), fetch)

    # --- Transitions ---

    async def set_status(
        self,
        event_id: str,
        status: RSVPStatus | str,
        capability: Capability,
    ) -> RSVPState:
        user_id = self._require_user(capability, action="rsvp.set_status")
        require_id(event_id, "event_id")
        target = _as_status(status)
        return await run_detached(self._transition(user_id, event_id, target))

    async def remove(self, event_id: str, capability: Capability) -> RSVPState:
        user_id = self._require_user(capability, action="rsvp.remove")
        require_id(event_id, "event_id")
        return await run_detached(self._transition(user_id, event_id, None))

    async def _transition(
        self,
        user_id: str,
        event_id: str,
        target: RSVPStatus | None,
    ) -> RSVPState:
        async with self._locks.hold(event_id):
            previous = self._statuses.get(event_id)
            tx = OptimisticTransaction(
                key=(user_id, event_id),
                previous=previous,
                optimistic=target,
                write=partial(self._write, event_id),
                is_current=self._epoch_guard(),
            )
            tx.apply()
            pair = {"event_id": event_id, "user_id": user_id}
            try:
                if target is None:
                    await self._client.delete(self._table, pair)
                else:
                    await self._upsert(pair, target)
            except Exception as exc:
                tx.rollback()
                self._rolled_back("transition", exc, event_id=event_id)
                if not isinstance(exc, AuthRequired):
                    self._publish("Error", "Failed to update RSVP", NoticeLevel.ERROR)
                raise
            tx.commit()
            self._committed(
                "transitioned",
                event_id=event_id,
                previous=previous.value if previous else None,
                status=target.value if target else None,
            )

        if tx.state is TxState.COMMITTED:
            self._publish(*TRANSITION_NOTICES[target])
            await self._views.invalidate(
                ViewKey.of(ViewKind.EVENT_RSVP, event_id=event_id, user_id=user_id),
                ViewKey.of(ViewKind.EVENT_RSVP_COUNTS, event_id=event_id),
                ViewKey.of(ViewKind.MY_RSVPS, user_id=user_id),
                ViewKey.of(ViewKind.EVENTS),
                ViewKey.of(ViewKind.EVENT, event_id=event_id),
            )
        return RSVPState(target.value) if target else RSVPState.NONE

    async def _upsert(self, pair: dict[str, str], target: RSVPStatus) -> None:
        existing = await self._client.select_one(self._table, pair, columns="id")
        if existing:
            await self._client.update(self._table, {"id": existing["id"]}, {"status": target.value})
            return
        try:
            await self._client.insert(self._table, {**pair, "status": target.value})
        except Conflict:
            # another writer created the record since the existence check
            log.info("rsvp.insert_conflict", **pair)
            await self._client.update(self._table, pair, {"status": target.value})

    def _write(self, event_id: str, status: RSVPStatus | None) -> None:
        if status is None:
            self._statuses.pop(event_id, None)
        else:
            self._statuses[event_id] = status
        self.observers.notify((event_id, self.status(event_id)))
