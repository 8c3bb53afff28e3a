"""Configuration for the bizsync cache.

A session takes one ``CacheConfig``; per-read ``QueryOptions`` may override
any of its windows.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from .keys import Collection


DEFAULT_STALE_SECONDS = 60.0


@dataclass
class CacheConfig:
    """Staleness policy for cached collections."""

    # How long a successful fetch counts as fresh
    stale_seconds: float = DEFAULT_STALE_SECONDS

    # Serve stale values immediately and refetch behind them
    background_refresh: bool = True

    # Per-collection freshness windows
    stale_overrides: Dict[Collection, float] = field(default_factory=dict)

    def __post_init__(self):
        if self.stale_seconds < 0:
            raise ValueError(f"stale_seconds must be >= 0, got {self.stale_seconds}")
        for collection, seconds in self.stale_overrides.items():
            if not isinstance(collection, Collection):
                raise ValueError(f"stale_overrides keys must be Collection members, got {collection!r}")
            if seconds < 0:
                raise ValueError(f"stale window for {collection.value} must be >= 0, got {seconds}")

    def stale_for(self, collection: Optional[Collection]) -> float:
        """Freshness window for a collection, falling back to the default."""
        if collection is None:
            return self.stale_seconds
        return self.stale_overrides.get(collection, self.stale_seconds)


@dataclass(frozen=True)
class QueryOptions:
    """Per-read options. ``None`` fields defer to the session's CacheConfig."""

    enabled: bool = True
    stale_seconds: Optional[float] = None
    background_refresh: Optional[bool] = None
