"""
Query orchestration: fetch lifecycle per cache key.

QueryOrchestrator sits between readers and the EntityStore. It decides when
a fetch is needed (absent, stale or invalidated entries), collapses
concurrent reads of one key into a single in-flight fetch, and tags every
fetch with a per-key generation so that only the most recently started
fetch may write its outcome.

Example:
    queries = QueryOrchestrator(config=CacheConfig(stale_seconds=60))

    entry = await queries.read(branches_key(business_id),
                               lambda: transport.list_branches(business_id))
    if entry.is_error:
        show_warning(entry.error)   # entry.value still holds the last good list
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from ..config import CacheConfig, QueryOptions
from ..keys import CacheKey
from .store import CacheEntry, EntityStore, EntryStatus, Listener


log = structlog.get_logger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
Clock = Callable[[], float]


class QueryOrchestrator:
    """
    Read side of the cache: single-flight fetches with a staleness policy.

    Readers never see fetch errors raised into their control flow. A failed
    fetch leaves the last known value in place and flags the entry with
    ``EntryStatus.ERROR`` and the classified error.
    """

    def __init__(
        self,
        store: Optional[EntityStore] = None,
        config: Optional[CacheConfig] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Entity store to drive (a fresh one by default)
            config: Staleness policy
            clock: Monotonic time source in seconds
        """
        self.store = store if store is not None else EntityStore()
        self.config = config or CacheConfig()
        self._clock = clock or time.monotonic

        # Generations outlive entry removal so a removed key cannot be
        # resurrected by a late response.
        self._generations: Dict[CacheKey, int] = {}
        self._tasks: Dict[CacheKey, asyncio.Task] = {}
        self._disabled: Set[CacheKey] = set()

        # Statistics
        self.fetches_started = 0
        self.joined_reads = 0
        self.discarded_results = 0

    def now(self) -> float:
        return self._clock()

    def peek(self, key: CacheKey) -> CacheEntry:
        """Current entry for ``key`` without any side effects."""
        return self.store.get(key)

    def is_stale(self, entry: CacheEntry, stale_seconds: Optional[float] = None) -> bool:
        """
        Check whether an entry is due for a (re)fetch.

        Absent values, explicit invalidation and age beyond the freshness
        window all count as stale.
        """
        if stale_seconds is None:
            stale_seconds = self.config.stale_for(entry.key.collection)
        if entry.stale or not entry.has_value or entry.fetched_at is None:
            return True
        return self._clock() - entry.fetched_at > stale_seconds

    async def read(
        self,
        key: CacheKey,
        fetcher: Fetcher,
        options: Optional[QueryOptions] = None,
    ) -> CacheEntry:
        """
        Read a key, fetching it if needed.

        Args:
            key: Canonical key to read
            fetcher: Zero-argument coroutine function returning the value
            options: Per-read overrides of the session configuration

        Returns:
            The entry. When a value is already cached and background refresh
            is enabled this is the (possibly stale) cached snapshot; otherwise
            the entry after the fetch settles.
        """
        options = options or QueryOptions()
        if key.is_sentinel:
            return CacheEntry(key=key)
        if not options.enabled:
            # A late result for this key is discarded until it is re-enabled.
            self._disabled.add(key)
            return CacheEntry(key=key)
        self._disabled.discard(key)

        stale_seconds = options.stale_seconds
        if stale_seconds is None:
            stale_seconds = self.config.stale_for(key.collection)
        background = options.background_refresh
        if background is None:
            background = self.config.background_refresh

        task = self._tasks.get(key)
        if task is None:
            entry = self.store.get(key)
            if not self.is_stale(entry, stale_seconds):
                return entry
            task = self._start_fetch(key, fetcher)
        else:
            self.joined_reads += 1

        entry = self.store.get(key)
        if entry.has_value and background:
            return entry
        return await self._await_settled(key, task, fetcher)

    async def refetch(self, key: CacheKey, fetcher: Fetcher) -> CacheEntry:
        """Start a fetch regardless of freshness and wait for it."""
        if key.is_sentinel:
            return CacheEntry(key=key)
        self._disabled.discard(key)
        task = self._start_fetch(key, fetcher)
        return await self._await_settled(key, task, fetcher)

    async def wait(self, key: CacheKey) -> CacheEntry:
        """Wait for the in-flight fetch of ``key`` (if any) to settle."""
        task = self._tasks.get(key)
        if task is None:
            return self.store.get(key)
        return await self._await_latest(key, task)

    def invalidate(self, key: CacheKey, deep: bool = False) -> List[CacheKey]:
        """
        Mark entries stale without clearing their values.

        An in-flight fetch for an invalidated key is superseded: its result
        may predate the change that caused the invalidation.

        Args:
            key: Key (or hierarchical prefix when ``deep``) to invalidate
            deep: If True, invalidate every descendant key too

        Returns:
            The keys that were marked stale
        """
        keys = self.store.keys(key) if deep else [k for k in (key,) if k in self.store]
        for k in keys:
            self._supersede(k)
            entry = self.store.get(k)
            self.store.replace(k, stale=True, in_flight=None, status=self._settled_status(entry))
        if keys:
            log.debug("invalidated", key=str(key), deep=deep, count=len(keys))
        return keys

    def set_value(self, key: CacheKey, value: Any) -> CacheEntry:
        """Store an authoritative value, superseding any in-flight fetch."""
        self._supersede(key)
        return self.store.replace(
            key,
            value=value,
            has_value=True,
            status=EntryStatus.SUCCESS,
            fetched_at=self._clock(),
            error=None,
            in_flight=None,
            stale=False,
        )

    def patch(self, key: CacheKey, update: Callable[[Any], Any]) -> Optional[CacheEntry]:
        """
        Apply ``update`` to the cached value, if there is one.

        Returns:
            The new entry, or None when the key holds no value
        """
        entry = self.store.get(key)
        if not entry.has_value:
            return None
        return self.set_value(key, update(entry.value))

    def remove(self, key: CacheKey, deep: bool = False) -> List[CacheKey]:
        """Drop entries (and descendants when ``deep``), discarding late results."""
        for k in list(self._tasks):
            if k == key or (deep and k.is_descendant_of(key)):
                self._supersede(k)
        removed = self.store.remove(key, deep=deep)
        if removed:
            log.debug("removed", key=str(key), deep=deep, count=len(removed))
        return removed

    def subscribe(self, key: CacheKey, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with every new entry for ``key``."""
        return self.store.subscribe(key, listener)

    def close(self) -> None:
        """Cancel in-flight fetches and drop all cached state."""
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        tasks = list(self._tasks.items())
        for key, task in tasks:
            self._supersede(key)
            # A fetch may trigger teardown itself (auth failure); let it finish.
            if task is not current:
                task.cancel()
        self.store.clear()
        self._disabled.clear()
        log.debug("orchestrator_closed", cancelled=len(tasks))

    def get_stats(self) -> Dict[str, Any]:
        stats = self.store.get_stats()
        stats.update({
            'fetches_started': self.fetches_started,
            'joined_reads': self.joined_reads,
            'discarded_results': self.discarded_results,
            'in_flight': len(self._tasks),
        })
        return stats

    def _start_fetch(self, key: CacheKey, fetcher: Fetcher) -> asyncio.Task:
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        task = asyncio.ensure_future(self._run_fetch(key, fetcher, generation))
        self._tasks[key] = task
        self.store.replace(key, status=EntryStatus.LOADING, in_flight=task)
        self.fetches_started += 1
        log.debug("fetch_started", key=str(key), generation=generation)
        return task

    async def _run_fetch(self, key: CacheKey, fetcher: Fetcher, generation: int) -> Optional[CacheEntry]:
        try:
            value = await fetcher()
        except asyncio.CancelledError:
            if self._generations.get(key) == generation:
                self._tasks.pop(key, None)
                entry = self.store.get(key)
                self.store.replace(key, in_flight=None, status=self._settled_status(entry))
            raise
        except Exception as exc:
            if not self._accept(key, generation):
                return None
            log.warning(
                "fetch_failed",
                key=str(key),
                generation=generation,
                error=type(exc).__name__,
                message=str(exc),
            )
            return self.store.replace(key, status=EntryStatus.ERROR, error=exc, in_flight=None)

        if not self._accept(key, generation):
            return None
        log.debug("fetch_succeeded", key=str(key), generation=generation)
        return self.store.replace(
            key,
            value=value,
            has_value=True,
            status=EntryStatus.SUCCESS,
            fetched_at=self._clock(),
            error=None,
            in_flight=None,
            stale=False,
        )

    def _accept(self, key: CacheKey, generation: int) -> bool:
        """Decide whether a settled fetch may write its outcome."""
        current = self._generations.get(key) == generation
        if current:
            self._tasks.pop(key, None)
        if current and key not in self._disabled:
            return True

        self.discarded_results += 1
        log.debug(
            "fetch_discarded",
            key=str(key),
            generation=generation,
            reason="disabled" if current else "superseded",
        )
        if current and key in self.store:
            entry = self.store.get(key)
            self.store.replace(key, in_flight=None, status=self._settled_status(entry))
        return False

    def _supersede(self, key: CacheKey) -> None:
        if key in self._tasks:
            self._generations[key] = self._generations.get(key, 0) + 1
            del self._tasks[key]

    async def _await_latest(self, key: CacheKey, task: asyncio.Task) -> CacheEntry:
        # Follow the chain if the awaited fetch was superseded by a newer one.
        while True:
            await asyncio.shield(task)
            latest = self._tasks.get(key)
            if latest is None or latest is task:
                return self.store.get(key)
            task = latest

    async def _await_settled(self, key: CacheKey, task: asyncio.Task, fetcher: Fetcher) -> CacheEntry:
        """
        Wait until ``key`` holds a usable outcome.

        An invalidation can supersede the fetch a reader is waiting on. The
        reader then starts a new fetch with its own fetcher (or joins one
        another reader already started) instead of returning the emptied
        entry. Removed and disabled keys are returned as they are.
        """
        while True:
            # _run_fetch returns None when its outcome was discarded.
            accepted = await asyncio.shield(task) is not None
            latest = self._tasks.get(key)
            if latest is not None and latest is not task:
                task = latest
                continue
            entry = self.store.get(key)
            if accepted or key in self._disabled or key not in self.store:
                return entry
            if entry.has_value and not entry.stale:
                return entry
            log.debug("fetch_restarted", key=str(key))
            task = self._start_fetch(key, fetcher)

    @staticmethod
    def _settled_status(entry: CacheEntry) -> EntryStatus:
        if entry.status is not EntryStatus.LOADING:
            return entry.status
        if entry.error is not None:
            return EntryStatus.ERROR
        if entry.has_value:
            return EntryStatus.SUCCESS
        return EntryStatus.IDLE
