"""Row-level change notifications and named refresh signals.

The business layer publishes a :class:`ChangeEvent` for every committed
insert, update or delete, scoped to the acting party that owns the record.
Views subscribe per owner and receive events asynchronously relative to the
write that caused them; they must not assume any ordering beyond "after the
write committed". Named signals cover the coarse "refetch everything" case,
for example after a balance changed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from . import log


class ChangeType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed change to one record."""

    table: str
    change_type: ChangeType
    record_id: str
    owner_id: Optional[str]
    record: Any = None


ChangeCallback = Callable[[ChangeEvent], None]
SignalCallback = Callable[[str], None]


@dataclass
class Subscription:
    """Cancellation handle returned by :meth:`ChangeFeed.subscribe`."""

    _feed: "ChangeFeed" = field(repr=False)
    _token: int
    active: bool = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._feed._remove(self._token)


@dataclass(frozen=True)
class _Listener:
    callback: Callable[[Any], None]
    owner_id: Optional[str] = None
    tables: Optional[FrozenSet[str]] = None
    signal: Optional[str] = None


class ChangeFeed:
    """In-process fan-out of change events and named signals."""

    def __init__(self) -> None:
        self._listeners: Dict[int, _Listener] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(
        self,
        owner_id: str,
        callback: ChangeCallback,
        *,
        tables: Optional[List[str]] = None,
    ) -> Subscription:
        """Receive events for records owned by ``owner_id``.

        ``tables`` narrows delivery to the named sheets; ``None`` means all.
        """

        listener = _Listener(
            callback=callback,
            owner_id=owner_id,
            tables=frozenset(tables) if tables else None,
        )
        return self._add(listener)

    def on_signal(self, name: str, callback: SignalCallback) -> Subscription:
        """Receive every broadcast of the named signal."""

        return self._add(_Listener(callback=callback, signal=name))

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to matching subscribers; returns the delivery count."""

        delivered = 0
        for token, listener in self._snapshot():
            if listener.signal is not None:
                continue
            if event.owner_id is not None and listener.owner_id != event.owner_id:
                continue
            if listener.tables is not None and event.table not in listener.tables:
                continue
            if self._deliver(token, listener, event):
                delivered += 1
        log.debug(
            "Published %s on %s '%s' to %d subscriber(s)",
            event.change_type.value,
            event.table,
            event.record_id,
            delivered,
        )
        return delivered

    def signal(self, name: str) -> int:
        """Broadcast a named signal; returns the delivery count."""

        delivered = 0
        for token, listener in self._snapshot():
            if listener.signal == name and self._deliver(token, listener, name):
                delivered += 1
        log.debug("Signalled '%s' to %d listener(s)", name, delivered)
        return delivered

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _add(self, listener: _Listener) -> Subscription:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener
        return Subscription(_feed=self, _token=token)

    def _remove(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)

    def _snapshot(self) -> List[tuple[int, _Listener]]:
        with self._lock:
            return list(self._listeners.items())

    def _deliver(self, token: int, listener: _Listener, payload: Any) -> bool:
        try:
            listener.callback(payload)
        except Exception:
            log.exception("Change subscriber %d raised while handling %r", token, payload)
            return False
        return True
