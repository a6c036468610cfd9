"""In-process change feed for table rows.

Writers publish an event after their transaction commits; readers either
register a callback (push) or ``poll`` with the last cursor they saw.
Cursors are assigned under a lock, so events are observed in the order
they were published. History is bounded; a poll from a cursor whose
successors were evicted gets a reset instead of a silent gap.
"""

from __future__ import annotations

import itertools
import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


@dataclass(frozen=True)
class ChangeEvent:
    cursor: int
    table: str
    event_type: ChangeType
    record: dict[str, Any]
    conversation_id: uuid.UUID | None = None

    def matches(self, *, table: str | None, conversation_id: uuid.UUID | None) -> bool:
        if table is not None and self.table != table:
            return False
        if conversation_id is not None and self.conversation_id != conversation_id:
            return False
        return True


@dataclass(frozen=True)
class ChangeBatch:
    events: list[ChangeEvent]
    cursor: int
    reset: bool = False


@dataclass(eq=False)
class Subscription:
    callback: Callable[[ChangeEvent], None]
    table: str | None = None
    conversation_id: uuid.UUID | None = None
    id: int = field(default_factory=itertools.count(1).__next__)


class ChangeFeed:
    def __init__(self, max_events: int = 10_000) -> None:
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._events: deque[ChangeEvent] = deque(maxlen=max_events)
        self._cursor = 0
        self._subscriptions: dict[int, Subscription] = {}

    @property
    def cursor(self) -> int:
        return self._cursor

    def publish(
        self,
        *,
        table: str,
        event_type: ChangeType,
        record: dict[str, Any],
        conversation_id: uuid.UUID | None = None,
    ) -> ChangeEvent:
        with self._lock:
            self._cursor += 1
            event = ChangeEvent(
                cursor=self._cursor,
                table=table,
                event_type=event_type,
                record=record,
                conversation_id=conversation_id,
            )
            self._events.append(event)
            subscribers = [
                sub
                for sub in self._subscriptions.values()
                if event.matches(table=sub.table, conversation_id=sub.conversation_id)
            ]
            # Deliver under the lock so callbacks see events in cursor order.
            for sub in subscribers:
                try:
                    sub.callback(event)
                except Exception:
                    logger.exception(
                        "Change feed subscriber %s failed on event %s", sub.id, event.cursor
                    )
        return event

    def subscribe(
        self,
        callback: Callable[[ChangeEvent], None],
        *,
        table: str | None = None,
        conversation_id: uuid.UUID | None = None,
    ) -> Subscription:
        subscription = Subscription(
            callback=callback, table=table, conversation_id=conversation_id
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def events_since(
        self,
        after: int,
        *,
        table: str | None = None,
        conversation_id: uuid.UUID | None = None,
    ) -> list[ChangeEvent]:
        with self._lock:
            return [
                event
                for event in self._events
                if event.cursor > after
                and event.matches(table=table, conversation_id=conversation_id)
            ]

    def poll(
        self,
        after: int,
        *,
        table: str | None = None,
        conversation_id: uuid.UUID | None = None,
    ) -> ChangeBatch:
        """Events after ``after``, or a reset when some of them were evicted.

        On reset the caller must reload current state and continue from the
        returned cursor.
        """
        with self._lock:
            oldest = self._events[0].cursor if self._events else self._cursor + 1
            if after < oldest - 1 or after > self._cursor:
                logger.warning(
                    "Change feed cursor %s is outside retained history (%s..%s)",
                    after,
                    oldest,
                    self._cursor,
                )
                return ChangeBatch(events=[], cursor=self._cursor, reset=True)
            events = self.events_since(
                after, table=table, conversation_id=conversation_id
            )
            return ChangeBatch(
                events=events, cursor=events[-1].cursor if events else after
            )

    @contextmanager
    def ordered_writes(self) -> Iterator[None]:
        """Serialize a commit and its publish with other ordered writers."""
        with self._write_lock:
            yield

    def close(self) -> None:
        with self._lock:
            self._subscriptions.clear()
