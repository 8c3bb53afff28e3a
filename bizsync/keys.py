"""Canonical cache keys for the business entity collections.

Keys are hierarchical so that everything cached under one business can be
found (and dropped) by prefix:

    businesses:list
    businesses:{id}:branches
    businesses:{id}:settings

A missing parent id never raises. It maps to the ``unknown`` sentinel so that
a disabled query can still be registered; sentinel keys never hold data.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple


ROOT = "businesses"
UNKNOWN = "unknown"


class Collection(Enum):
    """The cached collections."""
    BUSINESS_LIST = "list"
    BRANCHES = "branches"
    SETTINGS = "settings"


@dataclass(frozen=True)
class CacheKey:
    """Hashable, hierarchical identifier of one cached collection."""

    parts: Tuple[str, ...]

    def __str__(self) -> str:
        return ":".join(self.parts)

    @property
    def is_sentinel(self) -> bool:
        """True when the key was built from an absent parent id."""
        return len(self.parts) > 1 and self.parts[1] == UNKNOWN

    @property
    def collection(self) -> Optional[Collection]:
        try:
            return Collection(self.parts[-1])
        except ValueError:
            return None

    @property
    def parent_id(self) -> Optional[str]:
        if len(self.parts) == 3:
            return self.parts[1]
        return None

    def is_descendant_of(self, prefix: "CacheKey") -> bool:
        """Check whether this key sits strictly below ``prefix``."""
        n = len(prefix.parts)
        return len(self.parts) > n and self.parts[:n] == prefix.parts


def _normalize_parent(parent_id: Any) -> str:
    if parent_id is None:
        return UNKNOWN
    text = str(parent_id).strip()
    return text or UNKNOWN


def business_list_key() -> CacheKey:
    return CacheKey((ROOT, Collection.BUSINESS_LIST.value))


def business_key(business_id: Any) -> CacheKey:
    """Prefix shared by every key that belongs to one business."""
    return CacheKey((ROOT, _normalize_parent(business_id)))


def branches_key(business_id: Any) -> CacheKey:
    return CacheKey(business_key(business_id).parts + (Collection.BRANCHES.value,))


def settings_key(business_id: Any) -> CacheKey:
    return CacheKey(business_key(business_id).parts + (Collection.SETTINGS.value,))


def key_for(collection: Collection, parent_id: Any = None) -> CacheKey:
    """Map a logical request onto its canonical key.

    Args:
        collection: Which collection is requested
        parent_id: Owning business id (ignored for the business list)

    Returns:
        The canonical CacheKey; absent parents produce a sentinel key
    """
    if collection is Collection.BUSINESS_LIST:
        return business_list_key()
    if collection is Collection.BRANCHES:
        return branches_key(parent_id)
    return settings_key(parent_id)
