"""
Entity store: the single owner of cache entries.

Every entry is an immutable ``CacheEntry`` record. A write builds a new
record and swaps it in with one assignment, so a reader holding an entry
never sees it change underneath it. QueryOrchestrator and
MutationCoordinator are the only callers that write.
"""

import asyncio
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..keys import CacheKey


log = structlog.get_logger(__name__)

Listener = Callable[["CacheEntry"], None]


class EntryStatus(Enum):
    """Fetch status of a cache entry."""
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class CacheEntry:
    """
    Snapshot of one cached collection.

    ``has_value`` distinguishes an absent value from a stored ``None``
    (a business without a settings record caches ``None`` as a real value).
    ``stale`` is set by explicit invalidation; age-based staleness is
    computed by the orchestrator from ``fetched_at``.
    """
    key: CacheKey
    value: Any = None
    has_value: bool = False
    status: EntryStatus = EntryStatus.IDLE
    fetched_at: Optional[float] = None
    error: Optional[BaseException] = None
    in_flight: Optional[asyncio.Future] = None
    stale: bool = False

    @property
    def is_loading(self) -> bool:
        return self.in_flight is not None

    @property
    def is_error(self) -> bool:
        return self.status is EntryStatus.ERROR

    def age(self, now: float) -> Optional[float]:
        if self.fetched_at is None:
            return None
        return now - self.fetched_at


class EntityStore:
    """
    Per-key cache of CacheEntry records with change subscriptions.

    Entries are never expired passively. They leave the store only through
    ``remove`` or ``clear``.
    """

    def __init__(self):
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._listeners: Dict[CacheKey, List[Listener]] = {}
        self.writes = 0
        self.removals = 0

    def get(self, key: CacheKey) -> CacheEntry:
        """
        Get the entry for a key.

        Returns:
            The stored entry, or an idle placeholder that is not stored
        """
        entry = self._entries.get(key)
        if entry is None:
            return CacheEntry(key=key)
        return entry

    def replace(self, key: CacheKey, **changes: Any) -> CacheEntry:
        """
        Replace the entry for ``key`` with a copy carrying ``changes``.

        Args:
            key: Key to write
            **changes: CacheEntry fields to change

        Returns:
            The new entry

        Raises:
            ValueError: If ``key`` is a sentinel key
        """
        if key.is_sentinel:
            raise ValueError(f"Refusing to write sentinel key {key}")
        entry = dataclasses.replace(self.get(key), **changes)
        self._entries[key] = entry
        self.writes += 1
        self._notify(key, entry)
        return entry

    def remove(self, key: CacheKey, deep: bool = False) -> List[CacheKey]:
        """
        Remove an entry, and optionally every key below it.

        Args:
            key: Key (or hierarchical prefix) to remove
            deep: If True, also remove all descendant keys

        Returns:
            The keys that were removed
        """
        removed = [
            k for k in self._entries
            if k == key or (deep and k.is_descendant_of(key))
        ]
        for k in removed:
            del self._entries[k]
        self.removals += len(removed)
        for k in removed:
            self._notify(k, CacheEntry(key=k))
        return removed

    def keys(self, prefix: Optional[CacheKey] = None) -> List[CacheKey]:
        """List stored keys, optionally limited to ``prefix`` and its descendants."""
        if prefix is None:
            return list(self._entries)
        return [k for k in self._entries if k == prefix or k.is_descendant_of(prefix)]

    def subscribe(self, key: CacheKey, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called with each new entry for ``key``.

        Returns:
            A callable that removes the listener
        """
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[key]

        return unsubscribe

    def clear(self) -> None:
        """Drop every entry and every subscription."""
        self._entries.clear()
        self._listeners.clear()

    def get_stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {}
        for entry in self._entries.values():
            by_status[entry.status.value] = by_status.get(entry.status.value, 0) + 1
        return {
            'entries': len(self._entries),
            'subscribed_keys': len(self._listeners),
            'writes': self.writes,
            'removals': self.removals,
            'by_status': by_status,
        }

    def _notify(self, key: CacheKey, entry: CacheEntry) -> None:
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(entry)
            except Exception:
                log.exception("listener_failed", key=str(key))

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
