"""Branch consistency checks.

Two invariants hold for a business's branches:

- at most one branch is flagged ``is_main``;
- a settings record's ``default_branch_id``, when set, names a branch that
  is in the current branch collection.

Guard failures are LocalGuardError subclasses raised before anything is
sent to the server.
"""

import dataclasses
from typing import Any, Iterable, List, Optional

import structlog

from .errors import DanglingReferenceError, UnknownBranchError
from .models import Branch, BranchSettings, normalize_id


log = structlog.get_logger(__name__)


class BranchConsistencyGuard:
    """Stateless helpers that keep branch collections and settings consistent."""

    def promote_main(self, branches: Iterable[Branch], target_id: Any) -> List[Branch]:
        """
        Make ``target_id`` the only main branch.

        This is a local view only; the authoritative state comes back from
        the write.

        Raises:
            UnknownBranchError: If ``target_id`` is not in ``branches``
        """
        branches = list(branches)
        target = normalize_id(target_id)
        if target is None or all(b.id != target for b in branches):
            raise UnknownBranchError(f"Branch {target_id!r} is not in this business")
        return [
            b if b.is_main == (b.id == target) else dataclasses.replace(b, is_main=(b.id == target))
            for b in branches
        ]

    def validate_default_branch(
        self,
        settings: Optional[BranchSettings],
        branches: Iterable[Branch],
    ) -> None:
        """
        Check that the default-branch reference resolves.

        Raises:
            DanglingReferenceError: The default branch is set but missing
        """
        if settings is None:
            return
        default_id = normalize_id(settings.default_branch_id)
        if default_id is None:
            return
        if any(b.id == default_id for b in branches):
            return
        log.info("dangling_default_branch", business_id=settings.business_id, branch_id=default_id)
        raise DanglingReferenceError(
            f"Default branch {default_id!r} no longer exists in business {settings.business_id!r}",
            business_id=settings.business_id,
            branch_id=default_id,
        )

    def guard_branch_deletion(self, settings: Optional[BranchSettings], branch_id: Any) -> None:
        """
        Refuse to delete the branch recorded as the default.

        Raises:
            DanglingReferenceError: ``branch_id`` is the current default branch
        """
        if settings is None:
            return
        target = normalize_id(branch_id)
        if target is not None and normalize_id(settings.default_branch_id) == target:
            raise DanglingReferenceError(
                f"Branch {target!r} is the default branch of business "
                f"{settings.business_id!r}; choose another default before deleting it",
                business_id=settings.business_id,
                branch_id=target,
            )

    def main_branch(self, branches: Iterable[Branch]) -> Optional[Branch]:
        for branch in branches:
            if branch.is_main:
                return branch
        return None

    def has_single_main(self, branches: Iterable[Branch]) -> bool:
        """True when at most one branch is flagged main."""
        return sum(1 for b in branches if b.is_main) <= 1

    def sort_branches(self, branches: Iterable[Branch]) -> List[Branch]:
        """Main branch first, then by name (case-insensitive)."""
        return sorted(branches, key=lambda b: (not b.is_main, (b.name or "").casefold()))

    def replace_branch(self, branches: Iterable[Branch], branch: Branch) -> List[Branch]:
        """Swap in ``branch`` by id, appending it when it is new."""
        result = []
        found = False
        for existing in branches:
            if existing.id == branch.id:
                result.append(branch)
                found = True
            else:
                result.append(existing)
        if not found:
            result.append(branch)
        return result

    def remove_branch(self, branches: Iterable[Branch], branch_id: Any) -> List[Branch]:
        target = normalize_id(branch_id)
        return [b for b in branches if b.id != target]
