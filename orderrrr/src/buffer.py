from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from orderrrr.src.metrics import METRICS
from orderrrr.src.models import ResourceIdentity, WatchedResource

LOGGER = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class WorkItem:
    """A pending change to one watched resource.

    Items are never mutated: :meth:`ChangeBuffer.pop` hands out a copy with
    ``attempts`` incremented, and a deferred item is pushed back as-is.
    """

    identity: ResourceIdentity
    pending_version: str
    last_processed: datetime
    attempts: int = 0


class ChangeBuffer:
    """Deduplicating store of resources whose dependent pod controllers may need a restart.

    Entries are keyed purely by resource identity and a push always overwrites:
    Kubernetes resource versions are opaque strings with no guaranteed order,
    so the most recently observed version is the only one worth keeping.
    Pop order is arbitrary; processing re-reads live state and is idempotent.

    The lock is held only around dict operations, never across I/O.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._items: dict[ResourceIdentity, WorkItem] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def push(self, identity: ResourceIdentity, pending_version: str) -> WorkItem:
        """Store or overwrite the entry for *identity*, resetting its bookkeeping."""
        item = WorkItem(
            identity=identity,
            pending_version=pending_version,
            last_processed=self._clock(),
        )
        with self._lock:
            self._items[identity] = item
            depth = len(self._items)
        METRICS.buffer_pending.set(depth)
        return item

    def requeue(self, item: WorkItem) -> bool:
        """Return a popped item to the buffer for a later retry.

        A fresher entry pushed for the same identity while the item was out
        of the buffer wins; the stale item is then discarded.
        """
        with self._lock:
            if item.identity in self._items:
                return False
            self._items[item.identity] = item
            depth = len(self._items)
        METRICS.buffer_pending.set(depth)
        return True

    def pop(self) -> WorkItem | None:
        """Remove and return an arbitrary entry, or ``None`` when empty."""
        with self._lock:
            if not self._items:
                return None
            _, item = self._items.popitem()
            depth = len(self._items)
        METRICS.buffer_pending.set(depth)
        return replace(item, attempts=item.attempts + 1)

    def peek(self, identity: ResourceIdentity) -> WorkItem | None:
        with self._lock:
            return self._items.get(identity)

    def clear(self) -> int:
        """Drop every entry and return how many were discarded."""
        with self._lock:
            dropped = len(self._items)
            self._items.clear()
        METRICS.buffer_pending.set(0)
        return dropped


class BufferingEventHandler:
    """Watch-event callbacks that feed resource changes into a :class:`ChangeBuffer`.

    ``accept`` narrows which resources are buffered at all (normally the ones
    named by a managed resource rule).  Updates that do not change the
    resource version never enqueue.  Deletes are ignored: removing a mounted
    object and then restarting its consumers would take them down.
    """

    def __init__(
        self,
        buffer: ChangeBuffer,
        accept: Callable[[ResourceIdentity], bool] | None = None,
    ) -> None:
        self.buffer = buffer
        self.accept = accept

    def _accepted(self, resource: WatchedResource) -> bool:
        return self.accept is None or self.accept(resource.identity)

    def on_add(self, resource: WatchedResource) -> bool:
        if not self._accepted(resource):
            return False
        self.buffer.push(resource.identity, resource.version)
        LOGGER.debug("Buffered added %s at version %s", resource.identity, resource.version)
        return True

    def on_update(self, previous: WatchedResource | None, current: WatchedResource) -> bool:
        if previous is not None and previous.version == current.version:
            return False
        if not self._accepted(current):
            return False
        self.buffer.push(current.identity, current.version)
        LOGGER.debug("Buffered updated %s at version %s", current.identity, current.version)
        return True
