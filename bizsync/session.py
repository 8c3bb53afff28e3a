"""
Business session: the cache wired up for one authenticated user.

BusinessSession owns one EntityStore (through its QueryOrchestrator) for
the lifetime of a login. It turns the transport's raw calls into keyed
reads and into mutations with the right cache effects, and runs the local
guards before anything is sent.

Example:
    async with BusinessSession(transport, on_auth_error=auth.logout) as session:
        entry = await session.branches(business_id)
        for branch in session.guard.sort_branches(entry.value or []):
            ...
        await session.update_settings(business_id, {"allow_transfers": False})
"""

import dataclasses
from typing import Any, Callable, List, Mapping, Optional, Set

import structlog

from .cache import (
    CacheEntry,
    Invalidate,
    Mutation,
    MutationCoordinator,
    Patch,
    QueryOrchestrator,
    Remove,
    SetValue,
)
from .cache.query import Clock
from .config import CacheConfig, QueryOptions
from .errors import AuthError, InvalidPayloadError, UnknownBranchError
from .guard import BranchConsistencyGuard
from .keys import CacheKey, branches_key, business_key, business_list_key, settings_key
from .models import (
    Branch,
    BranchSettings,
    Business,
    coerce_branch,
    coerce_branches,
    coerce_business,
    coerce_businesses,
    coerce_settings,
    normalize_id,
)
from .reconcile import EditedSettings, SettingsForm, SettingsReconciler
from .transport import BusinessTransport


log = structlog.get_logger(__name__)

_WAIT = QueryOptions(background_refresh=False)


class BusinessSession:
    """
    Cache and synchronization layer for businesses, branches and settings.

    Reads never raise fetch errors; they return a CacheEntry whose status
    and error describe the last fetch. Mutations raise: LocalGuardError
    subclasses before anything is sent, RemoteError subclasses unchanged
    from the transport.
    """

    def __init__(
        self,
        transport: BusinessTransport,
        config: Optional[CacheConfig] = None,
        clock: Optional[Clock] = None,
        on_auth_error: Optional[Callable[[AuthError], None]] = None,
    ):
        """
        Initialize a session.

        Args:
            transport: Collaborator performing the actual requests
            config: Staleness policy
            clock: Monotonic time source (tests pass a manual clock)
            on_auth_error: Called when the server rejects the credential
        """
        self.transport = transport
        self.config = config or CacheConfig()
        self.queries = QueryOrchestrator(config=self.config, clock=clock)
        self.mutations = MutationCoordinator(self.queries)
        self.reconciler = SettingsReconciler()
        self.guard = BranchConsistencyGuard()
        self._on_auth_error = on_auth_error
        self._deleted: Set[str] = set()
        self.current_business_id: Optional[str] = None
        self.current_branch_id: Optional[str] = None

    async def __aenter__(self) -> "BusinessSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.logout()

    # Reads

    async def businesses(self, options: Optional[QueryOptions] = None) -> CacheEntry:
        """Businesses the caller belongs to."""
        return await self.queries.read(business_list_key(), self._fetch_businesses, options)

    async def branches(self, business_id: Any, options: Optional[QueryOptions] = None) -> CacheEntry:
        """
        Branches of one business.

        An absent business id, or one deleted during this session, yields an
        idle entry without fetching.
        """
        bid = normalize_id(business_id)
        return await self.queries.read(
            branches_key(bid),
            lambda: self._fetch_branches(bid),
            self._gate(bid, options),
        )

    async def settings(self, business_id: Any, options: Optional[QueryOptions] = None) -> CacheEntry:
        """Settings record of one business (the value may be None)."""
        bid = normalize_id(business_id)
        return await self.queries.read(
            settings_key(bid),
            lambda: self._fetch_settings(bid),
            self._gate(bid, options),
        )

    def peek_businesses(self) -> CacheEntry:
        return self.queries.peek(business_list_key())

    def peek_branches(self, business_id: Any) -> CacheEntry:
        return self.queries.peek(branches_key(business_id))

    def peek_settings(self, business_id: Any) -> CacheEntry:
        return self.queries.peek(settings_key(business_id))

    def settings_form(self, business_id: Any) -> SettingsForm:
        """Initial form state from the cached settings record."""
        entry = self.peek_settings(business_id)
        return self.reconciler.form_from_settings(entry.value if entry.has_value else None)

    def invalidate(self, key: CacheKey, deep: bool = False) -> List[CacheKey]:
        return self.queries.invalidate(key, deep=deep)

    def subscribe(self, key: CacheKey, listener: Callable[[CacheEntry], None]) -> Callable[[], None]:
        return self.queries.subscribe(key, listener)

    async def refresh_businesses(self) -> CacheEntry:
        """Fetch the business list now, regardless of freshness."""
        return await self.queries.refetch(business_list_key(), self._fetch_businesses)

    async def refresh_branches(self, business_id: Any = None) -> CacheEntry:
        """
        Fetch branches now, regardless of freshness.

        Args:
            business_id: Business to refresh; the selected business when omitted

        Returns:
            The settled entry, or an idle entry when there is no business
            to refresh
        """
        bid = self._target_business(business_id)
        if bid is None or bid in self._deleted:
            return CacheEntry(key=branches_key(bid))
        return await self.queries.refetch(branches_key(bid), lambda: self._fetch_branches(bid))

    async def refresh_settings(self, business_id: Any = None) -> CacheEntry:
        """Fetch settings now, regardless of freshness (selected business by default)."""
        bid = self._target_business(business_id)
        if bid is None or bid in self._deleted:
            return CacheEntry(key=settings_key(bid))
        return await self.queries.refetch(settings_key(bid), lambda: self._fetch_settings(bid))

    # Selection

    @property
    def current_business(self) -> Optional[Business]:
        """The selected business, as found in the cached business list."""
        if self.current_business_id is None:
            return None
        entry = self.peek_businesses()
        for business in entry.value or []:
            if business.id == self.current_business_id:
                return business
        return None

    @property
    def current_branch(self) -> Optional[Branch]:
        """The selected branch, as found in the cached branches of the selected business."""
        if self.current_business_id is None or self.current_branch_id is None:
            return None
        entry = self.peek_branches(self.current_business_id)
        for branch in entry.value or []:
            if branch.id == self.current_branch_id:
                return branch
        return None

    def select_business(self, business: Any) -> Optional[str]:
        """
        Make a business current.

        Switching to another business clears the selected branch.

        Args:
            business: Business entity or id; None clears the selection

        Raises:
            InvalidPayloadError: The business was deleted in this session
        """
        bid = normalize_id(getattr(business, "id", business))
        if bid is not None and bid in self._deleted:
            raise InvalidPayloadError(f"Business {bid!r} was deleted")
        if bid != self.current_business_id:
            self.current_branch_id = None
        self.current_business_id = bid
        log.debug("business_selected", business_id=bid)
        return bid

    def select_branch(self, branch: Any) -> Optional[str]:
        """
        Make a branch of the selected business current.

        Args:
            branch: Branch entity or id; None clears the selection

        Raises:
            InvalidPayloadError: No business is selected
            UnknownBranchError: The cached branches do not contain it
        """
        target = normalize_id(getattr(branch, "id", branch))
        if target is not None:
            if self.current_business_id is None:
                raise InvalidPayloadError("Select a business first")
            entry = self.peek_branches(self.current_business_id)
            if entry.has_value and all(b.id != target for b in entry.value):
                raise UnknownBranchError(
                    f"Branch {target!r} is not in business {self.current_business_id!r}"
                )
        self.current_branch_id = target
        log.debug("branch_selected", business_id=self.current_business_id, branch_id=target)
        return target

    # Business mutations

    async def create_business(self, payload: Mapping[str, Any]) -> Business:
        """Create a business and append it to the cached list."""
        name = str(payload.get("name") or "").strip()

        def check() -> None:
            if not name:
                raise InvalidPayloadError("A business name is required")

        async def write() -> Business:
            created = await self._call(
                "create_business", self.transport.create_business, dict(payload, name=name)
            )
            return coerce_business(created)

        def effects(business: Business):
            return [
                Patch(business_list_key(), lambda items: list(items) + [business]),
                Invalidate(business_list_key()),
            ]

        return await self.mutations.execute(Mutation(
            name="create_business",
            write=write,
            effects=effects,
            guards=[check],
        ))

    async def delete_business(self, business_id: Any) -> None:
        """
        Delete a business.

        On success the business leaves the cached list immediately and every
        key under it is dropped, so reads for it stay idle afterwards.
        """
        bid = self._require_business(business_id)

        def effects(_):
            self._deleted.add(bid)
            if self.current_business_id == bid:
                self.current_business_id = None
                self.current_branch_id = None
            return [
                Patch(business_list_key(), lambda items: [b for b in items if b.id != bid]),
                Remove(business_key(bid), deep=True),
            ]

        await self.mutations.execute(Mutation(
            name="delete_business",
            write=lambda: self._call("delete_business", self.transport.delete_business, bid),
            effects=effects,
            context={"business_id": bid},
        ))

    # Branch mutations

    async def create_branch(self, business_id: Any, payload: Mapping[str, Any]) -> Branch:
        """Create a branch; a new main branch demotes the previous one locally."""
        bid = self._require_business(business_id)
        body = dict(payload)
        body["name"] = str(body.get("name") or "").strip()
        body.setdefault("active", True)

        def check() -> None:
            if not body["name"]:
                raise InvalidPayloadError("A branch name is required")

        async def write() -> Branch:
            created = await self._call("create_branch", self.transport.create_branch, bid, body)
            return coerce_branch(created, bid)

        return await self.mutations.execute(Mutation(
            name="create_branch",
            write=write,
            effects=lambda branch: self._branch_effects(bid, branch) + [Invalidate(settings_key(bid))],
            guards=[check],
            context={"business_id": bid},
        ))

    async def update_branch(
        self, business_id: Any, branch_id: Any, partial: Mapping[str, Any]
    ) -> Branch:
        """Partially update a branch and patch it into the cached collection."""
        bid = self._require_business(business_id)
        target = normalize_id(branch_id)
        body = dict(partial)

        def check() -> None:
            if target is None:
                raise UnknownBranchError("A branch id is required")
            entry = self.queries.peek(branches_key(bid))
            if entry.has_value and all(b.id != target for b in entry.value):
                raise UnknownBranchError(f"Branch {target!r} is not in business {bid!r}")
            if "name" in body and not str(body["name"] or "").strip():
                raise InvalidPayloadError("A branch name cannot be blank")

        async def write() -> Branch:
            updated = await self._call("update_branch", self.transport.update_branch, bid, target, body)
            return coerce_branch(updated, bid)

        return await self.mutations.execute(Mutation(
            name="update_branch",
            write=write,
            effects=lambda branch: self._branch_effects(bid, branch),
            guards=[check],
            context={"business_id": bid, "branch_id": target},
        ))

    async def set_main_branch(self, business_id: Any, branch_id: Any) -> Branch:
        return await self.update_branch(business_id, branch_id, {"is_main": True})

    async def toggle_branch_active(self, business_id: Any, branch: Branch) -> Branch:
        return await self.update_branch(business_id, branch.id, {"active": not branch.active})

    async def delete_branch(self, business_id: Any, branch_id: Any) -> None:
        """
        Delete a branch.

        Raises:
            DanglingReferenceError: The branch is the business's default
                branch; nothing is sent
        """
        bid = self._require_business(business_id)
        target = normalize_id(branch_id)
        if target is None:
            raise UnknownBranchError("A branch id is required")

        entry = await self.settings(bid, _WAIT)
        if not entry.has_value:
            log.warning("default_branch_unverified", business_id=bid, branch_id=target)
        current = entry.value if entry.has_value else None

        def effects(_):
            if self.current_business_id == bid and self.current_branch_id == target:
                self.current_branch_id = None
            return [
                Patch(branches_key(bid), lambda items: self.guard.remove_branch(items, target)),
                Invalidate(branches_key(bid)),
                Invalidate(settings_key(bid)),
            ]

        await self.mutations.execute(Mutation(
            name="delete_branch",
            write=lambda: self._call("delete_branch", self.transport.delete_branch, bid, target),
            effects=effects,
            guards=[lambda: self.guard.guard_branch_deletion(current, target)],
            context={"business_id": bid, "branch_id": target},
        ))

    # Settings mutations

    async def update_settings(self, business_id: Any, edited: EditedSettings) -> Optional[BranchSettings]:
        """
        Submit the changed settings fields.

        Returns:
            The stored settings, or the cached record unchanged when there
            was nothing to submit

        Raises:
            DanglingReferenceError: The resulting default branch does not
                exist; nothing is sent
        """
        bid = self._require_business(business_id)
        entry = await self.settings(bid, _WAIT)
        if not entry.has_value:
            # Diffing against an unknown record could overwrite fields blindly.
            raise entry.error or InvalidPayloadError(f"Settings of business {bid!r} are unavailable")
        current: Optional[BranchSettings] = entry.value

        patch = self.reconciler.diff(current, edited)
        if patch.is_noop:
            log.debug("settings_update_skipped", business_id=bid)
            return current

        if current is not None:
            target = self.reconciler.apply(current, patch)
        else:
            target = BranchSettings(business_id=bid, **self.reconciler.normalize(edited))

        guards = []
        if target.default_branch_id is not None:
            branches = await self.branches(bid, _WAIT)
            if not branches.has_value:
                raise branches.error or InvalidPayloadError(
                    f"Branches of business {bid!r} are unavailable"
                )
            collection = branches.value
            guards.append(lambda: self.guard.validate_default_branch(target, collection))

        async def write() -> Optional[BranchSettings]:
            stored = await self._call("update_settings", self.transport.update_settings, bid, dict(patch))
            return coerce_settings(stored, bid)

        return await self.mutations.execute(Mutation(
            name="update_settings",
            write=write,
            effects=lambda stored: [SetValue(settings_key(bid), stored)],
            guards=guards,
            context={"business_id": bid, "fields": sorted(patch)},
        ))

    def logout(self) -> None:
        """Tear the session's cache down (on logout or when leaving the context)."""
        self.queries.close()
        self._deleted.clear()
        self.current_business_id = None
        self.current_branch_id = None
        log.info("session_closed")

    # Internals

    def _gate(self, business_id: Optional[str], options: Optional[QueryOptions]) -> QueryOptions:
        options = options or QueryOptions()
        if business_id is None or business_id in self._deleted:
            return dataclasses.replace(options, enabled=False)
        return options

    def _target_business(self, business_id: Any) -> Optional[str]:
        if business_id is None:
            return self.current_business_id
        return normalize_id(business_id)

    def _require_business(self, business_id: Any) -> str:
        bid = normalize_id(business_id)
        if bid is None:
            raise InvalidPayloadError("Select a business first")
        return bid

    def _branch_effects(self, business_id: str, branch: Branch):
        def update(items):
            result = self.guard.replace_branch(items, branch)
            if branch.is_main:
                result = self.guard.promote_main(result, branch.id)
            return result

        return [Patch(branches_key(business_id), update), Invalidate(branches_key(business_id))]

    async def _call(self, operation: str, method: Callable, *args: Any) -> Any:
        try:
            return await method(*args)
        except AuthError as exc:
            log.warning("credential_rejected", operation=operation, status=exc.status)
            if self._on_auth_error is not None:
                self._on_auth_error(exc)
            raise

    async def _fetch_businesses(self) -> List[Business]:
        return coerce_businesses(await self._call("list_businesses", self.transport.list_businesses))

    async def _fetch_branches(self, business_id: str) -> List[Branch]:
        payload = await self._call("list_branches", self.transport.list_branches, business_id)
        branches = coerce_branches(payload, business_id)
        if not self.guard.has_single_main(branches):
            log.warning(
                "multiple_main_branches",
                business_id=business_id,
                branch_ids=[b.id for b in branches if b.is_main],
            )
        return branches

    async def _fetch_settings(self, business_id: str) -> Optional[BranchSettings]:
        payload = await self._call("get_settings", self.transport.get_settings, business_id)
        return coerce_settings(payload, business_id)
