"""
Observer fan-out and user-facing notices.

Views subscribe to store changes and drop their subscription when they are
torn down; a dropped subscriber never sees later results. Notices are the
short messages the presentation layer shows as toasts.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")


class NoticeLevel(str, Enum):
    INFO = "info"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    title: str
    description: str
    level: NoticeLevel = NoticeLevel.INFO


NoticeSink = Callable[[Notice], None]


class Subscription:
    """Handle returned by ObserverSet.subscribe."""

    def __init__(self, owner: "ObserverSet", callback: Callable) -> None:
        self._owner = owner
        self._callback = callback

    @property
    def active(self) -> bool:
        return self._callback in self._owner._callbacks

    def unsubscribe(self) -> None:
        self._owner._discard(self._callback)


class ObserverSet(Generic[T]):
    def __init__(self, name: str) -> None:
        self._name = name
        self._callbacks: list[Callable[[T], None]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(self, callback)

    def _discard(self, callback: Callable[[T], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def notify(self, value: T) -> None:
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                log.exception("observers.callback_error", observers=self._name)

    def clear(self) -> None:
        self._callbacks.clear()


def publish(sink: NoticeSink | None, notice: Notice) -> None:
    if sink is None:
        return
    try:
        sink(notice)
    except Exception:
        log.exception("notices.sink_error", title=notice.title)
