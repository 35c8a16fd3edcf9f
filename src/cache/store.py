from __future__ import annotations

import logging
import math
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from .keys import QueryKey, is_prefix, rebase

logger = logging.getLogger(__name__)

Subscriber = Callable[["CacheEvent", QueryKey], None]


class CacheEvent(str, Enum):
    SET = "set"
    INVALIDATED = "invalidated"
    REMOVED = "removed"


@dataclass(slots=True)
class CacheEntry:
    key: QueryKey
    value: Any
    fetched_at: float
    stale_time: float
    invalidated: bool = False

    def is_stale(self, now: float) -> bool:
        if self.invalidated:
            return True
        if math.isinf(self.stale_time):
            return False
        return now - self.fetched_at > self.stale_time


class CacheStore:
    """In-memory snapshots of remote entities keyed by hierarchical query keys.

    One instance is created per application session and handed to every
    consumer. All mutation happens on the event loop thread, so no locking is
    done; the last write for a key wins.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._subscribers: list[tuple[QueryKey, Subscriber]] = []
        self._batch_depth = 0
        self._queued: list[tuple[CacheEvent, QueryKey]] = []

    def now(self) -> float:
        return self._clock()

    def get(self, key: QueryKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def peek(self, key: QueryKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return default if entry is None else entry.value

    def set(self, key: QueryKey, value: Any, stale_time: float = 0.0) -> CacheEntry:
        entry = CacheEntry(key=key, value=value, fetched_at=self._clock(), stale_time=stale_time)
        self._entries[key] = entry
        self._notify(CacheEvent.SET, key)
        return entry

    def touch(self, key: QueryKey) -> bool:
        """Mark an entry fresh again without changing its value or notifying."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.fetched_at = self._clock()
        entry.invalidated = False
        return True

    def is_stale(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.is_stale(self._clock())

    def has(self, key: QueryKey) -> bool:
        return key in self._entries

    def has_prefix(self, prefix: QueryKey) -> bool:
        return any(is_prefix(prefix, key) for key in self._entries)

    def keys(self, prefix: QueryKey = ()) -> list[QueryKey]:
        return [key for key in self._entries if is_prefix(prefix, key)]

    def invalidate(self, prefix: QueryKey, *, exact: bool = False) -> int:
        """Mark every entry under ``prefix`` stale, keeping the values for display.

        With ``exact`` only the entry stored at ``prefix`` itself is affected.
        """
        if exact:
            affected = [prefix] if prefix in self._entries else []
        else:
            affected = self.keys(prefix)
        for key in affected:
            self._entries[key].invalidated = True
        if affected:
            logger.debug("Invalidated %d cache entries under %r", len(affected), prefix)
        for key in affected:
            self._notify(CacheEvent.INVALIDATED, key)
        return len(affected)

    def remove(self, key: QueryKey) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self._notify(CacheEvent.REMOVED, key)
        return True

    def remove_prefix(self, prefix: QueryKey) -> int:
        affected = self.keys(prefix)
        for key in affected:
            del self._entries[key]
        for key in affected:
            self._notify(CacheEvent.REMOVED, key)
        return len(affected)

    def move_prefix(self, old_prefix: QueryKey, new_prefix: QueryKey) -> int:
        """Re-key every entry under ``old_prefix`` to live under ``new_prefix``.

        Entries keep their value and freshness. Existing entries at the target
        keys are overwritten; callers that must not overwrite check
        :meth:`has_prefix` first. The whole move happens before any subscriber
        is notified.
        """
        moved: list[tuple[QueryKey, QueryKey]] = []
        for key in self.keys(old_prefix):
            entry = self._entries.pop(key)
            entry.key = rebase(key, old_prefix, new_prefix)
            self._entries[entry.key] = entry
            moved.append((key, entry.key))
        if moved:
            logger.debug("Moved %d cache entries from %r to %r", len(moved), old_prefix, new_prefix)
        for old_key, new_key in moved:
            self._notify(CacheEvent.REMOVED, old_key)
            self._notify(CacheEvent.SET, new_key)
        return len(moved)

    def clear(self) -> None:
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._notify(CacheEvent.REMOVED, key)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Hold back notifications until the outermost batch exits.

        Writes inside the block are applied immediately; subscribers are told
        about them only once every related write has been made, so they never
        observe a partially applied change.
        """
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                queued, self._queued = self._queued, []
                for event, key in queued:
                    self._dispatch(event, key)

    def subscribe(self, prefix: QueryKey, callback: Subscriber) -> Callable[[], None]:
        subscription = (prefix, callback)
        self._subscribers.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CacheEntry]:
        return iter(list(self._entries.values()))

    def _notify(self, event: CacheEvent, key: QueryKey) -> None:
        if self._batch_depth:
            self._queued.append((event, key))
            return
        self._dispatch(event, key)

    def _dispatch(self, event: CacheEvent, key: QueryKey) -> None:
        for prefix, callback in list(self._subscribers):
            if not is_prefix(prefix, key):
                continue
            try:
                callback(event, key)
            except Exception:  # noqa: BLE001 - a broken view must not corrupt the cache
                logger.exception("Cache subscriber failed for %s on %r", event.value, key)
