"""
Mutation coordination: one write, then its declared cache effects.

A ``Mutation`` bundles a write against the transport with the cache effects
that follow from it. The coordinator runs local guards first, performs the
write, and only on success applies every effect in a single synchronous
pass, so readers observe either none or all of them.

Example:
    mutation = Mutation(
        name="delete_business",
        write=lambda: transport.delete_business("b1"),
        effects=[
            Patch(business_list_key(), lambda items: [b for b in items if b.id != "b1"]),
            Remove(business_key("b1"), deep=True),
        ],
    )
    await coordinator.execute(mutation)
"""

import asyncio
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Union

import structlog

from ..errors import LocalGuardError
from ..keys import CacheKey
from .query import QueryOrchestrator


log = structlog.get_logger(__name__)

_ABSENT = object()


@dataclass(frozen=True)
class Invalidate:
    """Mark a key (and optionally its descendants) stale."""
    key: CacheKey
    deep: bool = False

    def apply(self, queries: QueryOrchestrator) -> None:
        queries.invalidate(self.key, deep=self.deep)


@dataclass(frozen=True)
class Remove:
    """Drop a key (and optionally its descendants) from the cache."""
    key: CacheKey
    deep: bool = False

    def apply(self, queries: QueryOrchestrator) -> None:
        queries.remove(self.key, deep=self.deep)


@dataclass(frozen=True)
class SetValue:
    """Store a value directly, typically the entity the write returned."""
    key: CacheKey
    value: Any

    def apply(self, queries: QueryOrchestrator) -> None:
        queries.set_value(self.key, self.value)


@dataclass(frozen=True)
class Patch:
    """Rewrite the cached value with ``update(current)`` if one is cached."""
    key: CacheKey
    update: Callable[[Any], Any]

    def apply(self, queries: QueryOrchestrator) -> None:
        queries.patch(self.key, self.update)


CacheEffect = Union[Invalidate, Remove, SetValue, Patch]
EffectSpec = Union[Sequence[CacheEffect], Callable[[Any], Sequence[CacheEffect]]]


@dataclass(eq=False)
class Mutation:
    """
    One logical write and its cache effects.

    Attributes:
        name: Label used in logs and in ``MutationCoordinator.pending``
        write: Zero-argument coroutine function performing the write
        effects: Effects to apply after success, or a callable building
            them from the write's result
        guards: Local checks run before the write; they raise
            LocalGuardError subclasses to reject the mutation
        context: Extra key-value pairs for log events
    """
    name: str
    write: Callable[[], Awaitable[Any]]
    effects: EffectSpec = ()
    guards: Sequence[Callable[[], None]] = ()
    context: Dict[str, Any] = field(default_factory=dict)


class MutationCoordinator:
    """
    Executes mutations against the transport and applies their effects.

    Executing the same Mutation object more than once (for example from two
    concurrent UI triggers) joins the first execution, so there is at most
    one write and one application of effects per Mutation. Distinct
    Mutation objects are never deduplicated.

    Patch updates are computed before any effect is applied. If one raises,
    no effect is applied, every key the effects name is invalidated instead,
    and the error propagates to the caller.
    """

    def __init__(self, queries: QueryOrchestrator):
        self.queries = queries
        self._outcomes: "weakref.WeakKeyDictionary[Mutation, asyncio.Future]" = weakref.WeakKeyDictionary()
        self._pending: Dict[str, int] = {}

        # Statistics
        self.writes = 0
        self.failures = 0
        self.rejections = 0
        self.effect_failures = 0

    @property
    def pending(self) -> List[str]:
        """Names of mutations whose write is in flight."""
        return sorted(name for name, count in self._pending.items() if count > 0)

    async def execute(self, mutation: Mutation) -> Any:
        """
        Run a mutation exactly once and return the write's result.

        Raises:
            LocalGuardError: A guard rejected the mutation; nothing was sent
            RemoteError: The write failed; no cache effect was applied
        """
        outcome = self._outcomes.get(mutation)
        if outcome is None:
            outcome = asyncio.ensure_future(self._run(mutation))
            self._outcomes[mutation] = outcome
        return await asyncio.shield(outcome)

    async def _run(self, mutation: Mutation) -> Any:
        try:
            for guard in mutation.guards:
                guard()
        except LocalGuardError as exc:
            self.rejections += 1
            log.info(
                "mutation_rejected",
                mutation=mutation.name,
                error=type(exc).__name__,
                message=str(exc),
                **mutation.context,
            )
            raise

        self._pending[mutation.name] = self._pending.get(mutation.name, 0) + 1
        self.writes += 1
        try:
            result = await mutation.write()
        except Exception as exc:
            self.failures += 1
            log.warning(
                "mutation_failed",
                mutation=mutation.name,
                error=type(exc).__name__,
                message=str(exc),
                **mutation.context,
            )
            raise
        finally:
            self._pending[mutation.name] -= 1
            if not self._pending[mutation.name]:
                del self._pending[mutation.name]

        effects = mutation.effects(result) if callable(mutation.effects) else mutation.effects
        effects = list(effects)
        try:
            planned = self._plan(effects)
        except Exception as exc:
            self.effect_failures += 1
            log.error(
                "mutation_effects_failed",
                mutation=mutation.name,
                error=type(exc).__name__,
                message=str(exc),
                **mutation.context,
            )
            # The write went through; make every named key refetch.
            for effect in effects:
                self.queries.invalidate(effect.key, deep=getattr(effect, "deep", False))
            raise
        for effect in planned:
            effect.apply(self.queries)
        log.debug(
            "mutation_applied",
            mutation=mutation.name,
            effects=[type(e).__name__ for e in effects],
            **mutation.context,
        )
        return result

    def _plan(self, effects: Sequence[CacheEffect]) -> List[CacheEffect]:
        """
        Resolve every Patch into the value it will store, touching nothing.

        Patches see the outcome of the effects listed before them, so the
        plan applied afterwards matches applying the effects one by one. A
        failing ``update`` raises here, before the cache is changed.
        """
        staged: Dict[CacheKey, Any] = {}
        planned: List[CacheEffect] = []
        for effect in effects:
            if isinstance(effect, Patch):
                if effect.key in staged:
                    current = staged[effect.key]
                else:
                    entry = self.queries.peek(effect.key)
                    current = entry.value if entry.has_value else _ABSENT
                if current is _ABSENT:
                    continue
                value = effect.update(current)
                staged[effect.key] = value
                planned.append(SetValue(effect.key, value))
                continue
            if isinstance(effect, SetValue):
                staged[effect.key] = effect.value
            elif isinstance(effect, Remove):
                removed = [effect.key]
                if effect.deep:
                    removed += self.queries.store.keys(effect.key)
                    removed += [k for k in staged if k.is_descendant_of(effect.key)]
                for key in removed:
                    staged[key] = _ABSENT
            planned.append(effect)
        return planned
