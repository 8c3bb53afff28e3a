"""Transport collaborator interface.

bizsync never talks to the network itself. A session is given an object
implementing ``BusinessTransport``; each method either returns a parsed
entity (or a mapping the ``coerce_*`` helpers accept) or raises a
``RemoteError`` subclass, typically built with ``classify_http_error``.
Retries, if any, belong to the transport.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Mapping, Optional

from .models import Branch, BranchSettings, Business


class BusinessTransport(ABC):
    """Abstract async access to the server of record."""

    @abstractmethod
    async def list_businesses(self) -> List[Business]:
        """Businesses the caller belongs to."""

    @abstractmethod
    async def list_branches(self, business_id: str) -> List[Branch]:
        """Branches of one business."""

    @abstractmethod
    async def get_settings(self, business_id: str) -> Optional[BranchSettings]:
        """Settings record of one business, or None when it has none yet."""

    @abstractmethod
    async def create_business(self, payload: Mapping[str, Any]) -> Business:
        """Create a business owned by the caller."""

    @abstractmethod
    async def delete_business(self, business_id: str) -> None:
        """Delete a business and everything under it."""

    @abstractmethod
    async def create_branch(self, business_id: str, payload: Mapping[str, Any]) -> Branch:
        """Create a branch."""

    @abstractmethod
    async def update_branch(
        self, business_id: str, branch_id: str, partial: Mapping[str, Any]
    ) -> Branch:
        """Partially update a branch and return the stored branch."""

    @abstractmethod
    async def delete_branch(self, business_id: str, branch_id: str) -> None:
        """Delete a branch."""

    @abstractmethod
    async def update_settings(
        self, business_id: str, partial: Mapping[str, Any]
    ) -> BranchSettings:
        """Partially update the settings record and return the stored record."""
