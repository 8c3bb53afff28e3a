"""Testing utilities for bizsync consumers."""

from .fixtures import InMemoryTransport, ManualClock

__all__ = ['InMemoryTransport', 'ManualClock']
