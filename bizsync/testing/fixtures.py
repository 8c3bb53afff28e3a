"""Test fixtures for bizsync consumers.

``InMemoryTransport`` plays the server of record with call recording,
failure injection and gates that hold a method until released, so tests
can control the order in which overlapping requests settle.
``ManualClock`` replaces the monotonic clock.
"""

import asyncio
import dataclasses
import itertools
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import NotFoundError
from ..models import Branch, BranchSettings, Business, coerce_settings
from ..reconcile import SettingsReconciler
from ..transport import BusinessTransport


class ManualClock:
    """Clock that only moves when told to.

    Example:
        clock = ManualClock()
        session = BusinessSession(transport, clock=clock)
        clock.advance(61)
    """

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryTransport(BusinessTransport):
    """In-memory server of record implementing BusinessTransport."""

    def __init__(
        self,
        businesses: Iterable[Business] = (),
        branches: Optional[Mapping[str, Iterable[Branch]]] = None,
        settings: Optional[Mapping[str, BranchSettings]] = None,
    ):
        self.businesses: Dict[str, Business] = {b.id: b for b in businesses}
        self.branches: Dict[str, List[Branch]] = {
            bid: list(items) for bid, items in (branches or {}).items()
        }
        self.settings: Dict[str, BranchSettings] = dict(settings or {})
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self._failures: Dict[str, List[BaseException]] = {}
        self._gates: Dict[str, asyncio.Event] = {}
        self._ids = itertools.count(1)

    def count(self, method: str) -> int:
        """Number of calls made to ``method``."""
        return sum(1 for name, _ in self.calls if name == method)

    def fail_next(self, method: str, error: BaseException) -> None:
        """Make the next call to ``method`` raise ``error``."""
        self._failures.setdefault(method, []).append(error)

    def hold(self, method: str) -> asyncio.Event:
        """Block calls to ``method`` until the returned event is set."""
        gate = asyncio.Event()
        self._gates[method] = gate
        return gate

    def release(self, method: str) -> None:
        gate = self._gates.pop(method, None)
        if gate is not None:
            gate.set()

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        gate = self._gates.get(method)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _business(self, business_id: str) -> Business:
        try:
            return self.businesses[business_id]
        except KeyError:
            raise NotFoundError(f"Business {business_id!r} not found", status=404) from None

    def _branch_index(self, business_id: str, branch_id: str) -> int:
        for index, branch in enumerate(self.branches.get(business_id, [])):
            if branch.id == branch_id:
                return index
        raise NotFoundError(f"Branch {branch_id!r} not found", status=404)

    async def list_businesses(self) -> List[Business]:
        await self._enter("list_businesses")
        return list(self.businesses.values())

    async def list_branches(self, business_id: str) -> List[Branch]:
        await self._enter("list_branches", business_id)
        self._business(business_id)
        return list(self.branches.get(business_id, []))

    async def get_settings(self, business_id: str) -> Optional[BranchSettings]:
        await self._enter("get_settings", business_id)
        self._business(business_id)
        return self.settings.get(business_id)

    async def create_business(self, payload: Mapping[str, Any]) -> Business:
        await self._enter("create_business", payload)
        business = Business(
            id=f"biz-{next(self._ids)}",
            name=payload["name"],
            description=payload.get("description"),
            role="owner",
        )
        self.businesses[business.id] = business
        return business

    async def delete_business(self, business_id: str) -> None:
        await self._enter("delete_business", business_id)
        self._business(business_id)
        del self.businesses[business_id]
        self.branches.pop(business_id, None)
        self.settings.pop(business_id, None)

    async def create_branch(self, business_id: str, payload: Mapping[str, Any]) -> Branch:
        await self._enter("create_branch", business_id, payload)
        self._business(business_id)
        branch = Branch(
            id=f"br-{next(self._ids)}",
            business_id=business_id,
            name=payload["name"],
            code=payload.get("code"),
            address=payload.get("address"),
            active=payload.get("active", True),
            is_main=payload.get("is_main", False),
        )
        self._store_branch(business_id, branch)
        return branch

    async def update_branch(
        self, business_id: str, branch_id: str, partial: Mapping[str, Any]
    ) -> Branch:
        await self._enter("update_branch", business_id, branch_id, partial)
        self._business(business_id)
        index = self._branch_index(business_id, branch_id)
        branch = dataclasses.replace(self.branches[business_id][index], **partial)
        self._store_branch(business_id, branch)
        return branch

    async def delete_branch(self, business_id: str, branch_id: str) -> None:
        await self._enter("delete_branch", business_id, branch_id)
        self._business(business_id)
        index = self._branch_index(business_id, branch_id)
        del self.branches[business_id][index]

    async def update_settings(
        self, business_id: str, partial: Mapping[str, Any]
    ) -> BranchSettings:
        await self._enter("update_settings", business_id, partial)
        self._business(business_id)
        current = self.settings.get(business_id) or coerce_settings({}, business_id)
        stored = SettingsReconciler().apply(current, partial)
        self.settings[business_id] = stored
        return stored

    def _store_branch(self, business_id: str, branch: Branch) -> None:
        items = self.branches.setdefault(business_id, [])
        if branch.is_main:
            items[:] = [dataclasses.replace(b, is_main=False) if b.is_main else b for b in items]
        for index, existing in enumerate(items):
            if existing.id == branch.id:
                items[index] = branch
                return
        items.append(branch)
