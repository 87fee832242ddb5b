"""
Ambient session state handed over by the identity provider.

The session manager only holds the current session and tells listeners when
it changes. Every change bumps ``epoch`` so results that belong to an older
session can be recognised and discarded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Coroutine

import structlog

log = structlog.get_logger()


@dataclass(frozen=True)
class Session:
    user_id: str
    access_token: str


SessionListener = Callable[["Session | None"], Coroutine[Any, Any, None]]


class SessionManager:
    def __init__(self) -> None:
        self._session: Session | None = None
        self._epoch = 0
        self._listeners: list[SessionListener] = []

    @property
    def current(self) -> Session | None:
        return self._session

    @property
    def epoch(self) -> int:
        return self._epoch

    def on_change(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def sign_in(self, session: Session) -> None:
        await self._replace(session)

    async def sign_out(self) -> None:
        await self._replace(None)

    async def _replace(self, session: Session | None) -> None:
        self._session = session
        self._epoch += 1
        log.info(
            "session.changed",
            signed_in=session is not None,
            user_id=session.user_id if session else None,
            epoch=self._epoch,
        )
        for listener in list(self._listeners):
            try:
                await listener(session)
            except Exception:
                log.exception("session.listener_error", epoch=self._epoch)
