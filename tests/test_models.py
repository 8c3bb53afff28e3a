"""
Tests for entity normalization at the cache boundary.
"""

from datetime import datetime, timezone

import pytest

from bizsync.errors import ValidationError
from bizsync.models import (
    Branch,
    BranchSettings,
    Business,
    CatalogMode,
    InventoryMode,
    ServicesMode,
    coerce_branch,
    coerce_branches,
    coerce_business,
    coerce_businesses,
    coerce_settings,
    normalize_id,
    parse_bool,
)


class TestCoerceBusiness:

    def test_entity_passes_through(self):
        business = Business(id="b1", name="Bakery")
        assert coerce_business(business) is business

    def test_mapping_with_defaults(self):
        business = coerce_business({"id": 5, "name": "Bakery", "createdAt": "2024-01-02T03:04:05Z"})
        assert business.id == "5"
        assert business.role == "staff"
        assert business.description is None
        assert business.created_at == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_missing_id_is_rejected(self):
        with pytest.raises(ValidationError):
            coerce_business({"name": "No id"})

    def test_non_list_collection_becomes_empty(self):
        assert coerce_businesses(None) == []
        assert coerce_businesses({"detail": "oops"}) == []


class TestCoerceBranch:

    def test_owner_taken_from_context(self):
        branch = coerce_branch({"id": "br-1", "name": "Centro", "isMain": True}, business_id="b1")
        assert branch == Branch(id="br-1", business_id="b1", name="Centro", is_main=True)

    def test_blank_optional_text_is_none(self):
        branch = coerce_branch({"id": "br-1", "businessId": "b1", "name": "x", "address": "  "})
        assert branch.address is None
        assert branch.active is True

    def test_inactive_flag_is_kept(self):
        branch = coerce_branch({"id": "br-1", "name": "x", "active": False}, business_id="b1")
        assert branch.active is False

    def test_string_inactive_flag(self):
        branch = coerce_branch({"id": "br-1", "name": "x", "active": "false", "isMain": "1"}, "b1")
        assert branch.active is False
        assert branch.is_main is True

    def test_collection(self):
        branches = coerce_branches([{"id": "br-1", "name": "a"}, {"id": "br-2", "name": "b"}], "b1")
        assert [b.business_id for b in branches] == ["b1", "b1"]


class TestCoerceSettings:

    def test_none_stays_none(self):
        assert coerce_settings(None, "b1") is None

    def test_defaults(self):
        settings = coerce_settings({}, "b1")
        assert settings == BranchSettings(business_id="b1")
        assert settings.inventory_mode is InventoryMode.PER_BRANCH
        assert settings.allow_transfers is True
        assert settings.auto_confirm_transfers is False

    def test_camel_case_payload(self):
        settings = coerce_settings({
            "businessId": "b1",
            "inventoryMode": "centralized",
            "servicesMode": "centralized",
            "catalogMode": "shared",
            "allowTransfers": False,
            "defaultBranchId": "",
        })
        assert settings.inventory_mode is InventoryMode.CENTRALIZED
        assert settings.services_mode is ServicesMode.CENTRALIZED
        assert settings.catalog_mode is CatalogMode.SHARED
        assert settings.allow_transfers is False
        assert settings.default_branch_id is None

    def test_unknown_mode_is_rejected(self):
        with pytest.raises(ValidationError):
            coerce_settings({"inventory_mode": "sometimes"}, "b1")

    def test_string_booleans(self):
        settings = coerce_settings({"allowTransfers": "false", "autoConfirmTransfers": "TRUE"}, "b1")
        assert settings.allow_transfers is False
        assert settings.auto_confirm_transfers is True


@pytest.mark.parametrize("raw, expected", [
    (None, None),
    ("", None),
    ("  ", None),
    (" br-1 ", "br-1"),
    (42, "42"),
])
def test_normalize_id(raw, expected):
    assert normalize_id(raw) == expected


@pytest.mark.parametrize("raw, expected", [
    ("false", False),
    (" TRUE ", True),
    ("no", False),
    ("on", True),
    (0, False),
    (1, True),
    (True, True),
])
def test_parse_bool(raw, expected):
    assert parse_bool(raw, default=not expected) is expected


def test_parse_bool_default():
    assert parse_bool(None, default=True) is True


@pytest.mark.parametrize("raw", ["maybe", 2, [True]])
def test_parse_bool_rejects_other_values(raw):
    with pytest.raises(ValidationError):
        parse_bool(raw, default=False)
