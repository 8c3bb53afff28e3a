"""
Cache engine for bizsync.

EntityStore owns the entries, QueryOrchestrator drives fetches into it and
MutationCoordinator applies the cache effects of successful writes.
"""

from .store import CacheEntry, EntityStore, EntryStatus
from .query import QueryOrchestrator
from .mutation import (
    CacheEffect,
    Invalidate,
    Mutation,
    MutationCoordinator,
    Patch,
    Remove,
    SetValue,
)

__all__ = [
    'CacheEntry',
    'EntityStore',
    'EntryStatus',
    'QueryOrchestrator',
    'MutationCoordinator',
    'Mutation',
    'CacheEffect',
    'Invalidate',
    'Remove',
    'SetValue',
    'Patch',
]
