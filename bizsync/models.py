"""Entities held in the cache and their normalization at the cache boundary.

Values coming back from the transport pass through the ``coerce_*`` helpers
exactly once, before they are stored. Readers can rely on every optional
field having its default and every enum field being an Enum member, so no
read site has to re-default anything.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional, Type, TypeVar

from .errors import ValidationError


E = TypeVar("E", bound=Enum)

_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off", ""})


class InventoryMode(Enum):
    """Where stock is tracked."""
    PER_BRANCH = "per_branch"
    CENTRALIZED = "centralized"


class ServicesMode(Enum):
    """Where services are configured."""
    PER_BRANCH = "per_branch"
    CENTRALIZED = "centralized"


class CatalogMode(Enum):
    """Whether the product catalog is shared across branches."""
    PER_BRANCH = "per_branch"
    SHARED = "shared"


@dataclass(frozen=True)
class Business:
    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    role: str = "staff"


@dataclass(frozen=True)
class Branch:
    id: str
    business_id: str
    name: str
    code: Optional[str] = None
    address: Optional[str] = None
    active: bool = True
    is_main: bool = False


@dataclass(frozen=True)
class BranchSettings:
    """Operational settings of one business.

    ``auto_confirm_transfers`` only means something while
    ``allow_transfers`` is true.
    """
    business_id: str
    inventory_mode: InventoryMode = InventoryMode.PER_BRANCH
    services_mode: ServicesMode = ServicesMode.PER_BRANCH
    catalog_mode: CatalogMode = CatalogMode.PER_BRANCH
    allow_transfers: bool = True
    auto_confirm_transfers: bool = False
    default_branch_id: Optional[str] = None
    updated_at: Optional[datetime] = None


def normalize_id(value: Any) -> Optional[str]:
    """Treat None, empty and whitespace-only ids alike."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_enum(enum_cls: Type[E], value: Any, default: Optional[E] = None) -> E:
    """Coerce a raw value (member or ``.value`` string) into ``enum_cls``."""
    if value is None:
        if default is None:
            raise ValidationError(f"Missing {enum_cls.__name__} value")
        return default
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        raise ValidationError(
            f"Invalid {enum_cls.__name__} value: {value!r}", detail=value
        ) from None


def parse_bool(value: Any, default: bool) -> bool:
    """Coerce a transport boolean. Strings such as ``"false"`` or ``"0"`` are parsed, not truth-tested."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValidationError(f"Invalid boolean value: {value!r}", detail=value)


def _pick(data: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return default


def _require_id(value: Any, what: str) -> str:
    ident = normalize_id(value)
    if ident is None:
        raise ValidationError(f"{what} payload is missing an id", detail=value)
    return ident


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {value!r}", detail=value) from None


def _as_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationError(f"Unexpected {what} payload: {type(data).__name__}", detail=data)
    return data


def coerce_business(data: Any) -> Business:
    """Normalize a transport value into a Business."""
    if isinstance(data, Business):
        return data
    data = _as_mapping(data, "business")
    ident = _require_id(data.get("id"), "Business")
    return Business(
        id=ident,
        name=str(_pick(data, "name", default="")),
        description=_optional_text(data.get("description")),
        created_at=_parse_datetime(_pick(data, "created_at", "createdAt")),
        role=str(_pick(data, "role", default="staff")),
    )


def coerce_branch(data: Any, business_id: Any = None) -> Branch:
    """Normalize a transport value into a Branch.

    Args:
        data: Branch entity or mapping
        business_id: Owning business, used when the payload omits it
    """
    if isinstance(data, Branch):
        return data
    data = _as_mapping(data, "branch")
    owner = _pick(data, "business_id", "businessId", default=business_id)
    return Branch(
        id=_require_id(data.get("id"), "Branch"),
        business_id=_require_id(owner, "Branch owner"),
        name=str(_pick(data, "name", default="")),
        code=_optional_text(data.get("code")),
        address=_optional_text(data.get("address")),
        active=parse_bool(_pick(data, "active"), True),
        is_main=parse_bool(_pick(data, "is_main", "isMain"), False),
    )


def coerce_settings(data: Any, business_id: Any = None) -> Optional[BranchSettings]:
    """Normalize a transport value into BranchSettings.

    A ``None`` payload means the business has no settings record yet and is
    kept as ``None``.
    """
    if data is None or isinstance(data, BranchSettings):
        return data
    data = _as_mapping(data, "settings")
    owner = _pick(data, "business_id", "businessId", default=business_id)
    return BranchSettings(
        business_id=_require_id(owner, "Settings owner"),
        inventory_mode=parse_enum(
            InventoryMode, _pick(data, "inventory_mode", "inventoryMode"), InventoryMode.PER_BRANCH
        ),
        services_mode=parse_enum(
            ServicesMode, _pick(data, "services_mode", "servicesMode"), ServicesMode.PER_BRANCH
        ),
        catalog_mode=parse_enum(
            CatalogMode, _pick(data, "catalog_mode", "catalogMode"), CatalogMode.PER_BRANCH
        ),
        allow_transfers=parse_bool(_pick(data, "allow_transfers", "allowTransfers"), True),
        auto_confirm_transfers=parse_bool(
            _pick(data, "auto_confirm_transfers", "autoConfirmTransfers"), False
        ),
        default_branch_id=normalize_id(_pick(data, "default_branch_id", "defaultBranchId")),
        updated_at=_parse_datetime(_pick(data, "updated_at", "updatedAt")),
    )


def coerce_businesses(payload: Any) -> List[Business]:
    # Anything that is not a list is treated as an empty collection.
    if not isinstance(payload, (list, tuple)):
        return []
    return [coerce_business(item) for item in payload]


def coerce_branches(payload: Any, business_id: Any = None) -> List[Branch]:
    if not isinstance(payload, (list, tuple)):
        return []
    return [coerce_branch(item, business_id) for item in payload]
