"""Settings reconciliation: from an edited form to a minimal partial update."""

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

import structlog

from .errors import InvalidPayloadError
from .models import (
    BranchSettings,
    CatalogMode,
    InventoryMode,
    ServicesMode,
    normalize_id,
    parse_bool,
    parse_enum,
)


log = structlog.get_logger(__name__)

MUTABLE_FIELDS = (
    "inventory_mode",
    "services_mode",
    "catalog_mode",
    "allow_transfers",
    "auto_confirm_transfers",
    "default_branch_id",
)

_ENUM_FIELDS = {
    "inventory_mode": InventoryMode,
    "services_mode": ServicesMode,
    "catalog_mode": CatalogMode,
}

# Wire spellings accepted in edited mappings, as coerce_settings accepts them.
_ALIASES = {
    "inventoryMode": "inventory_mode",
    "servicesMode": "services_mode",
    "catalogMode": "catalog_mode",
    "allowTransfers": "allow_transfers",
    "autoConfirmTransfers": "auto_confirm_transfers",
    "defaultBranchId": "default_branch_id",
}

# Identity fields a full record carries; they are not editable.
_READ_ONLY = frozenset({"business_id", "businessId", "updated_at", "updatedAt"})


@dataclass(frozen=True)
class SettingsForm:
    """Editable state of the branch settings form.

    Mode fields accept either Enum members or their string values.
    """
    inventory_mode: Any = InventoryMode.PER_BRANCH
    services_mode: Any = ServicesMode.PER_BRANCH
    catalog_mode: Any = CatalogMode.PER_BRANCH
    allow_transfers: bool = True
    auto_confirm_transfers: bool = False
    default_branch_id: Optional[str] = None


class SettingsPatch(dict):
    """Changed fields only, with plain values ready for the transport."""

    @property
    def is_noop(self) -> bool:
        return not self


EditedSettings = Union[SettingsForm, BranchSettings, Mapping[str, Any]]


class SettingsReconciler:
    """Computes partial settings updates and enforces cross-field rules."""

    def normalize(
        self,
        edited: EditedSettings,
        base: Optional[BranchSettings] = None,
    ) -> Dict[str, Any]:
        """
        Bring edited state into canonical form.

        Fields missing from a mapping are taken from ``base`` (or the form
        defaults). Blank default-branch ids become None, and auto-confirm is
        forced off whenever transfers are off.

        Args:
            edited: Form state, settings entity or mapping of field values
            base: Settings to fill unspecified fields from

        Returns:
            Mapping of every mutable field to its typed value
        """
        fallback = base if base is not None else SettingsForm()
        if isinstance(edited, Mapping):
            raw = {name: getattr(fallback, name) for name in MUTABLE_FIELDS}
            raw.update(self._edited_fields(edited))
        else:
            raw = {name: getattr(edited, name) for name in MUTABLE_FIELDS}

        values: Dict[str, Any] = {}
        for name, enum_cls in _ENUM_FIELDS.items():
            values[name] = parse_enum(enum_cls, raw[name], getattr(fallback, name))
        values["allow_transfers"] = parse_bool(raw["allow_transfers"], fallback.allow_transfers)
        values["auto_confirm_transfers"] = parse_bool(
            raw["auto_confirm_transfers"], fallback.auto_confirm_transfers
        )
        values["default_branch_id"] = normalize_id(raw["default_branch_id"])

        if not values["allow_transfers"]:
            values["auto_confirm_transfers"] = False
        return values

    def diff(self, current: Optional[BranchSettings], edited: EditedSettings) -> SettingsPatch:
        """
        Compute the minimal partial update from ``current`` to ``edited``.

        Without a ``current`` record every field is included, since the
        server has nothing to diff against.

        Returns:
            SettingsPatch; ``is_noop`` means there is nothing to submit
        """
        target = self.normalize(edited, base=current)
        patch = SettingsPatch()
        for name in MUTABLE_FIELDS:
            if current is not None:
                before = getattr(current, name)
                if name == "default_branch_id":
                    before = normalize_id(before)
                if before == target[name]:
                    continue
            patch[name] = _plain(target[name])
        if patch.is_noop:
            log.debug("settings_diff_noop", business_id=getattr(current, "business_id", None))
        return patch

    def apply(self, current: BranchSettings, patch: Mapping[str, Any]) -> BranchSettings:
        """Local view of ``current`` after ``patch`` is accepted."""
        values = self.normalize(patch, base=current)
        return dataclasses.replace(current, **values)

    def form_from_settings(self, settings: Optional[BranchSettings]) -> SettingsForm:
        """Initial form state for a settings record (defaults when there is none)."""
        if settings is None:
            return SettingsForm()
        return SettingsForm(**{name: getattr(settings, name) for name in MUTABLE_FIELDS})

    @staticmethod
    def _edited_fields(edited: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Map an edited mapping onto mutable field names.

        Raises:
            InvalidPayloadError: A key is not an editable settings field
        """
        fields: Dict[str, Any] = {}
        unknown = []
        for key, value in edited.items():
            name = _ALIASES.get(key, key)
            if name in MUTABLE_FIELDS:
                fields[name] = value
            elif key not in _READ_ONLY:
                unknown.append(key)
        if unknown:
            raise InvalidPayloadError(f"Unknown settings fields: {', '.join(sorted(map(str, unknown)))}")
        return fields


def _plain(value: Any) -> Any:
    if isinstance(value, (InventoryMode, ServicesMode, CatalogMode)):
        return value.value
    return value
