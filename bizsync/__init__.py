"""bizsync - client-side entity cache for businesses, branches and settings.

bizsync keeps three independently fetched collections consistent with each
other and with the server of record:

    businesses:list            the caller's businesses
    businesses:{id}:branches   branches of one business
    businesses:{id}:settings   operational settings of one business

Typical use:
    from bizsync import BusinessSession

    async with BusinessSession(transport) as session:
        entry = await session.settings(business_id)
        await session.update_settings(business_id, edited_form)
"""

__version__ = "0.1.0"

from .config import CacheConfig, QueryOptions
from .errors import (
    AuthError,
    BizSyncError,
    DanglingReferenceError,
    InvalidPayloadError,
    LocalGuardError,
    NetworkError,
    NotFoundError,
    RemoteError,
    UnknownBranchError,
    ValidationError,
    classify_http_error,
)
from .keys import (
    CacheKey,
    Collection,
    branches_key,
    business_key,
    business_list_key,
    key_for,
    settings_key,
)
from .models import (
    Branch,
    BranchSettings,
    Business,
    CatalogMode,
    InventoryMode,
    ServicesMode,
)
from .cache import (
    CacheEntry,
    EntityStore,
    EntryStatus,
    MutationCoordinator,
    Mutation,
    QueryOrchestrator,
)
from .reconcile import SettingsForm, SettingsPatch, SettingsReconciler
from .guard import BranchConsistencyGuard
from .transport import BusinessTransport
from .session import BusinessSession
from .logging_config import configure_logging

__all__ = [
    "__version__",
    # Session
    "BusinessSession",
    "BusinessTransport",
    # Configuration
    "CacheConfig",
    "QueryOptions",
    "configure_logging",
    # Keys
    "CacheKey",
    "Collection",
    "key_for",
    "business_list_key",
    "business_key",
    "branches_key",
    "settings_key",
    # Entities
    "Business",
    "Branch",
    "BranchSettings",
    "InventoryMode",
    "ServicesMode",
    "CatalogMode",
    # Cache engine
    "CacheEntry",
    "EntityStore",
    "EntryStatus",
    "QueryOrchestrator",
    "MutationCoordinator",
    "Mutation",
    # Consistency
    "SettingsForm",
    "SettingsPatch",
    "SettingsReconciler",
    "BranchConsistencyGuard",
    # Errors
    "BizSyncError",
    "RemoteError",
    "NetworkError",
    "AuthError",
    "ValidationError",
    "NotFoundError",
    "LocalGuardError",
    "DanglingReferenceError",
    "UnknownBranchError",
    "InvalidPayloadError",
    "classify_http_error",
]
