from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

Callback = Callable[[T], Any]


class Channel(Generic[T]):
    """Synchronous multi-subscriber event stream.

    Callbacks run in subscription order inside ``emit``; nothing is buffered
    and late subscribers see only later emissions.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._handles = itertools.count(1)
        self._subscribers: dict[int, Callback[T]] = {}

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Callback[T]) -> int:
        handle = next(self._handles)
        self._subscribers[handle] = callback
        return handle

    def unsubscribe(self, handle: int) -> bool:
        return self._subscribers.pop(handle, None) is not None

    def emit(self, value: T) -> None:
        for callback in list(self._subscribers.values()):
            callback(value)

    def clear(self) -> None:
        self._subscribers.clear()


def _channel(name: str) -> Any:
    return field(default_factory=lambda: Channel(name))


@dataclass
class TopicEvents:
    data: Channel[Any] = _channel("data")
    meta: Channel[Any] = _channel("meta")
    meta_desc: Channel[Any] = _channel("meta_desc")
    meta_sub: Channel[Any] = _channel("meta_sub")
    subs_updated: Channel[list[str]] = _channel("subs_updated")
    tags_updated: Channel[list[str]] = _channel("tags_updated")
    creds_updated: Channel[list[Any]] = _channel("creds_updated")
    pres: Channel[Any] = _channel("pres")
    info: Channel[Any] = _channel("info")
    topic_deleted: Channel[str] = _channel("topic_deleted")
    all_messages_received: Channel[int] = _channel("all_messages_received")
