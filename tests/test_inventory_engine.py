"""Tests for the inventory update engine."""

import pytest

from grocery_inventory.config import AuditConfig
from grocery_inventory.inventory_engine import InventoryUpdateEngine
from grocery_inventory.models import InventoryActionType, ResultAction
from grocery_inventory.paths import audit_log_collection, inventory_collection
from grocery_inventory.search import SearchConfig
from grocery_inventory.validation import MISSING_FIELDS_MESSAGE

OWNER = "owner-1"


def apply(engine, *updates, action_type=InventoryActionType.UPDATE):
    return engine.apply_inventory_updates_for_user(OWNER, list(updates), action_type)


class TestCreate:
    """Tests for creating new items."""

    def test_creates_with_defaults(self, engine):
        result = apply(engine, {"name": "Milk", "quantity": 2, "action": "add"})
        entry = result.results[0]
        assert entry.success
        assert entry.action == ResultAction.CREATED
        assert entry.message == "Added Milk: 2 unit"

        item = engine.get_item(OWNER, "milk")
        assert item.quantity == 2
        assert item.unit == "unit"
        assert item.category == "uncategorized"
        assert item.low_stock_threshold == 1
        assert item.search_keywords == ["milk"]
        assert item.created_at is not None

    def test_create_uses_supplied_fields(self, engine):
        apply(
            engine,
            {
                "name": "Greek Yogurt",
                "quantity": 4,
                "action": "add",
                "unit": "cup",
                "category": "dairy",
                "location": "fridge",
                "expirationDate": "2025-06-01",
            },
        )
        item = engine.get_item(OWNER, "greek yogurt")
        assert item.unit == "cup"
        assert item.location == "fridge"
        assert item.expiration_date == "2025-06-01T00:00:00.000Z"


class TestUpdate:
    """Tests for updating existing items."""

    def test_add_is_additive(self, engine):
        apply(engine, {"name": "Eggs", "quantity": 6, "action": "add"})
        result = apply(engine, {"name": "Eggs", "quantity": 6, "action": "add"})
        assert result.results[0].action == ResultAction.UPDATED
        assert result.results[0].message == "Added Eggs: now 12 unit"
        assert engine.get_item(OWNER, "eggs").quantity == 12

    def test_subtract_floors_at_zero(self, engine):
        apply(engine, {"name": "Eggs", "quantity": 2, "action": "add"})
        result = apply(engine, {"name": "Eggs", "quantity": 5, "action": "subtract"})
        assert result.results[0].quantity == 0
        assert result.results[0].message == "Used Eggs: now 0 unit"

    def test_set_is_idempotent(self, engine):
        apply(engine, {"name": "Rice", "quantity": 1, "action": "add"})
        apply(engine, {"name": "Rice", "quantity": 3, "action": "set"})
        apply(engine, {"name": "Rice", "quantity": 3, "action": "set"})
        assert engine.get_item(OWNER, "rice").quantity == 3

    def test_name_resolution_is_case_insensitive(self, engine):
        apply(engine, {"name": "Milk", "quantity": 1, "action": "add"})
        apply(engine, {"name": "MILK", "quantity": 1, "action": "add"})
        items = engine.list_inventory(OWNER)
        assert len(items) == 1
        assert items[0].quantity == 2

    def test_partial_merge_keeps_unsupplied_fields(self, engine):
        apply(
            engine,
            {
                "name": "Milk",
                "quantity": 1,
                "action": "add",
                "unit": "gallon",
                "category": "dairy",
                "location": "fridge",
            },
        )
        apply(engine, {"name": "Milk", "quantity": 1, "action": "add", "location": "garage"})

        item = engine.get_item(OWNER, "milk")
        assert item.unit == "gallon"
        assert item.category == "dairy"
        assert item.location == "garage"

    def test_repeated_name_in_batch_sees_earlier_write(self, engine):
        result = apply(
            engine,
            {"name": "Apples", "quantity": 3, "action": "add"},
            {"name": "apples", "quantity": 2, "action": "add"},
        )
        assert [r.action for r in result.results] == [ResultAction.CREATED, ResultAction.UPDATED]
        assert engine.get_item(OWNER, "apples").quantity == 5


class TestBatch:
    """Tests for batch behavior and validation errors."""

    def test_invalid_update_does_not_abort_batch(self, engine):
        result = apply(
            engine,
            {"name": "Milk", "quantity": 1, "action": "add"},
            {"name": "Bread", "action": "add"},
            {"name": "Eggs", "quantity": -1, "action": "add"},
        )
        assert result.summary.total == 3
        assert result.summary.successful == 1
        assert result.summary.failed == 2
        assert result.validation_errors[0] == f"Bread: {MISSING_FIELDS_MESSAGE}"
        assert result.results[1].name == "Bread"

    def test_invalid_update_mutates_nothing(self, engine, memory_store):
        apply(engine, {"name": "Milk", "action": "add"})
        assert memory_store.list_documents(inventory_collection(OWNER)) == []

    def test_one_audit_entry_per_batch(self, engine, memory_store):
        apply(
            engine,
            {"name": "Milk", "quantity": 1, "action": "add"},
            {"name": "Eggs", "quantity": 2, "action": "add"},
            action_type=InventoryActionType.APPLY,
        )
        logs = memory_store.list_documents(audit_log_collection(OWNER))
        assert len(logs) == 1
        entry = logs[0].to_dict()
        assert entry["action"] == "inventory_apply"
        assert entry["description"] == "Processed 2/2 inventory updates (inventory_apply)"
        assert len(entry["itemIds"]) == 2
        assert entry["metadata"]["summary"] == {"total": 2, "successful": 2, "failed": 0}

    def test_audit_truncation(self, memory_store):
        engine = InventoryUpdateEngine(
            memory_store, AuditConfig(max_item_ids=1, max_results=1, max_requested_updates=1)
        )
        apply(
            engine,
            {"name": "Milk", "quantity": 1, "action": "add"},
            {"name": "Eggs", "quantity": 2, "action": "add"},
        )
        entry = memory_store.list_documents(audit_log_collection(OWNER))[0].to_dict()
        assert len(entry["itemIds"]) == 1
        assert len(entry["metadata"]["results"]) == 1
        assert len(entry["metadata"]["requestedUpdates"]) == 1

    def test_audit_failure_is_not_fatal(self, engine, monkeypatch):
        original_add = engine.store.add

        def failing_add(collection, data):
            if "audit_logs" in collection:
                raise RuntimeError("audit store down")
            return original_add(collection, data)

        monkeypatch.setattr(engine.store, "add", failing_add)
        result = apply(engine, {"name": "Milk", "quantity": 1, "action": "add"})
        assert result.summary.successful == 1


class TestListing:
    """Tests for listing and filtering inventory."""

    @pytest.fixture
    def stocked(self, engine):
        apply(
            engine,
            {"name": "Milk", "quantity": 1, "action": "add", "category": "dairy", "location": "fridge"},
            {"name": "Rice", "quantity": 5, "action": "add", "category": "pantry"},
            {"name": "Semi-Skimmed Milk", "quantity": 3, "action": "add", "category": "dairy"},
        )
        return engine

    def test_filter_by_category(self, stocked):
        names = {i.name for i in stocked.list_inventory(OWNER, category="DAIRY")}
        assert names == {"Milk", "Semi-Skimmed Milk"}

    def test_filter_by_location(self, stocked):
        assert [i.name for i in stocked.list_inventory(OWNER, location="fridge")] == ["Milk"]

    def test_low_stock(self, stocked):
        assert [i.name for i in stocked.get_low_stock(OWNER)] == ["Milk"]

    def test_fuzzy_search(self, stocked):
        results = stocked.list_inventory(OWNER, search=SearchConfig(query="sskmd"))
        assert [i.name for i in results] == ["Semi-Skimmed Milk"]
