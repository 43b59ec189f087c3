"""Inventory update engine for Grocery Inventory."""

import logging
from collections.abc import Mapping
from typing import Any

from .config import AuditConfig
from .document_store import SERVER_TIMESTAMP, BaseDocumentStore, DocumentSnapshot, MemoryDocumentStore
from .errors import UpdateValidationError
from .item_normalizer import coerce_timestamp, format_quantity, generate_search_keywords
from .models import (
    ApplyResult,
    BatchSummary,
    InventoryActionType,
    InventoryItem,
    ProposedUpdate,
    ResultAction,
    UpdateAction,
    UpdateResult,
)
from .paths import audit_log_collection, inventory_collection
from .search import SearchConfig, find_item_by_name, search_items
from .validation import coerce_number, update_display_name, validate_update

logger = logging.getLogger(__name__)

_MERGEABLE_FIELDS = {
    "unit": "unit",
    "category": "category",
    "location": "location",
    "brand": "brand",
    "notes": "notes",
    "size": "size",
    "low_stock_threshold": "lowStockThreshold",
    "expiration_date": "expirationDate",
}

_ACTION_VERBS = {
    UpdateAction.ADD: "Added",
    UpdateAction.SUBTRACT: "Used",
    UpdateAction.SET: "Set",
}


def item_from_snapshot(snapshot: DocumentSnapshot) -> InventoryItem:
    """Build an InventoryItem from a stored document, tolerating loose data."""
    data = snapshot.data or {}
    quantity = coerce_number(data.get("quantity"))
    threshold = coerce_number(data.get("lowStockThreshold"))
    created_at = coerce_timestamp(data.get("createdAt"))
    updated_at = (
        coerce_timestamp(data.get("updatedAt"))
        or coerce_timestamp(data.get("lastUpdated"))
        or created_at
    )
    keywords = data.get("searchKeywords")
    return InventoryItem(
        id=snapshot.id,
        name=str(data.get("name") or ""),
        quantity=quantity if quantity is not None else 0,
        unit=data.get("unit") or "unit",
        category=data.get("category") or "uncategorized",
        location=data.get("location"),
        low_stock_threshold=threshold if threshold is not None else 1,
        notes=data.get("notes"),
        brand=data.get("brand"),
        size=data.get("size"),
        expiration_date=coerce_timestamp(data.get("expirationDate")),
        search_keywords=keywords if isinstance(keywords, list) else [],
        created_at=created_at,
        updated_at=updated_at,
        last_updated=coerce_timestamp(data.get("lastUpdated")),
    )


class InventoryUpdateEngine:
    """Applies proposed updates to a user's inventory."""

    def __init__(
        self,
        store: BaseDocumentStore | None = None,
        audit_limits: AuditConfig | None = None,
    ):
        self.store = store or MemoryDocumentStore()
        self.audit_limits = audit_limits or AuditConfig()

    def apply_inventory_updates_for_user(
        self,
        owner_id: str,
        updates: list[Any],
        action_type: InventoryActionType | str = InventoryActionType.UPDATE,
    ) -> ApplyResult:
        """Apply a batch of updates in order.

        A failing update never aborts the batch. Exactly one audit log entry
        is written per call.

        Args:
            owner_id: Owner of the inventory
            updates: Raw update mappings or ProposedUpdate instances
            action_type: Audit action type for the batch

        Returns:
            Per-update results, summary counts and validation errors
        """
        action_type = InventoryActionType(action_type)
        results: list[UpdateResult] = []

        for update in updates:
            try:
                results.append(self.process_update(owner_id, update))
            except UpdateValidationError as e:
                results.append(
                    UpdateResult(success=False, name=e.name or update_display_name(update), error=str(e))
                )
            except Exception as e:
                logger.exception("Failed to process inventory update for %s", owner_id)
                results.append(
                    UpdateResult(
                        success=False,
                        name=update_display_name(update),
                        error=str(e) or "Failed to process update",
                    )
                )

        successful = sum(1 for r in results if r.success)
        summary = BatchSummary(total=len(results), successful=successful, failed=len(results) - successful)
        validation_errors = [f"{r.name}: {r.error}" for r in results if not r.success and r.error]

        self._record_audit_log(owner_id, action_type, updates, results, summary, validation_errors)

        return ApplyResult(results=results, summary=summary, validation_errors=validation_errors)

    def process_update(self, owner_id: str, update: Mapping[str, Any] | ProposedUpdate) -> UpdateResult:
        """Validate and apply a single update.

        Raises:
            UpdateValidationError: If the update is invalid
        """
        if isinstance(update, ProposedUpdate):
            proposed = update
        else:
            proposed = validate_update(update)

        collection = inventory_collection(owner_id)
        items = [item_from_snapshot(snap) for snap in self.store.list_documents(collection)]
        existing = find_item_by_name(items, proposed.name)

        if existing is None:
            return self._create_item(collection, proposed)
        return self._update_item(collection, existing, proposed)

    def _create_item(self, collection: str, update: ProposedUpdate) -> UpdateResult:
        unit = update.unit if update.unit is not None else "unit"
        new_item = {
            "name": update.name,
            "quantity": update.quantity,
            "unit": unit,
            "category": update.category if update.category is not None else "uncategorized",
            "location": update.location,
            "lowStockThreshold": (
                update.low_stock_threshold if update.low_stock_threshold is not None else 1
            ),
            "notes": update.notes,
            "brand": update.brand,
            "size": update.size,
            "expirationDate": update.expiration_date,
            "searchKeywords": generate_search_keywords(update.name),
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
            "lastUpdated": SERVER_TIMESTAMP,
        }
        item_id = self.store.add(collection, new_item)

        return UpdateResult(
            success=True,
            id=item_id,
            name=update.name,
            action=ResultAction.CREATED,
            quantity=update.quantity,
            expiration_date=update.expiration_date,
            message=f"Added {update.name}: {format_quantity(update.quantity)} {unit}",
        )

    def _update_item(
        self, collection: str, existing: InventoryItem, update: ProposedUpdate
    ) -> UpdateResult:
        current = existing.quantity
        if update.action == UpdateAction.ADD:
            new_quantity = current + update.quantity
        elif update.action == UpdateAction.SUBTRACT:
            new_quantity = max(0, current - update.quantity)
        else:
            new_quantity = update.quantity

        update_data: dict[str, Any] = {
            "quantity": new_quantity,
            "updatedAt": SERVER_TIMESTAMP,
            "lastUpdated": SERVER_TIMESTAMP,
            "searchKeywords": generate_search_keywords(update.name),
        }
        for attribute, key in _MERGEABLE_FIELDS.items():
            if update.supplied(attribute):
                update_data[key] = getattr(update, attribute)

        self.store.update(f"{collection}/{existing.id}", update_data)

        if update.supplied("expiration_date"):
            expiration_date = update.expiration_date
        else:
            expiration_date = existing.expiration_date
        unit = update.unit if update.unit is not None else (existing.unit or "unit")

        return UpdateResult(
            success=True,
            id=existing.id,
            name=update.name,
            action=ResultAction.UPDATED,
            quantity=new_quantity,
            expiration_date=expiration_date,
            message=(
                f"{_ACTION_VERBS[update.action]} {update.name}: "
                f"now {format_quantity(new_quantity)} {unit}"
            ),
        )

    def _record_audit_log(
        self,
        owner_id: str,
        action_type: InventoryActionType,
        updates: list[Any],
        results: list[UpdateResult],
        summary: BatchSummary,
        validation_errors: list[str],
    ) -> None:
        limits = self.audit_limits
        try:
            item_ids = [r.id for r in results if r.success and r.id][: limits.max_item_ids]
            requested = [
                self._summarize_requested_update(update)
                for update in updates[: limits.max_requested_updates]
            ]
            description = (
                f"Processed {summary.successful}/{summary.total} "
                f"inventory updates ({action_type.value})"
            )
            self.store.add(
                audit_log_collection(owner_id),
                {
                    "action": action_type.value,
                    "timestamp": SERVER_TIMESTAMP,
                    "userId": owner_id,
                    "itemIds": item_ids,
                    "description": description[:500],
                    "metadata": {
                        "summary": summary.to_document(),
                        "validationErrors": validation_errors,
                        "results": [
                            r.to_document(exclude_none=True) for r in results[: limits.max_results]
                        ],
                        "requestedUpdates": requested,
                    },
                },
            )
        except Exception as e:
            logger.error("Failed to record audit log entry for %s: %s", owner_id, e)

    @staticmethod
    def _summarize_requested_update(update: Any) -> dict[str, Any]:
        if isinstance(update, ProposedUpdate):
            update = update.to_document()
        if not isinstance(update, Mapping):
            return {"name": None, "action": None, "quantity": None, "unit": None, "category": None}

        def text(key: str) -> str | None:
            value = update.get(key)
            return value if isinstance(value, str) else None

        return {
            "name": text("name"),
            "action": text("action"),
            "quantity": coerce_number(update.get("quantity")),
            "unit": text("unit"),
            "category": text("category"),
        }

    def list_inventory(
        self,
        owner_id: str,
        search: SearchConfig | None = None,
        category: str | None = None,
        location: str | None = None,
        low_stock_only: bool = False,
    ) -> list[InventoryItem]:
        """Get inventory items with optional filters.

        Args:
            owner_id: Owner of the inventory
            search: Optional text search, filters and sort
            category: Filter by category (case-insensitive)
            location: Filter by location (case-insensitive)
            low_stock_only: Only items at or below their threshold

        Returns:
            Matching items, most recently updated first unless a sort is given
        """
        snapshots = self.store.query(
            inventory_collection(owner_id), order_by="updatedAt", descending=True
        )
        items = [item_from_snapshot(snap) for snap in snapshots]

        if category:
            items = [i for i in items if (i.category or "").lower() == category.lower()]
        if location:
            items = [i for i in items if (i.location or "").lower() == location.lower()]
        if low_stock_only:
            items = [i for i in items if i.is_low_stock]
        if search is not None:
            items = search_items(items, search)

        return items

    def get_low_stock(self, owner_id: str) -> list[InventoryItem]:
        """Get items that are at or below low stock threshold."""
        return self.list_inventory(owner_id, low_stock_only=True)

    def get_item(self, owner_id: str, name: str) -> InventoryItem | None:
        """Resolve an item by case-insensitive name."""
        snapshots = self.store.list_documents(inventory_collection(owner_id))
        return find_item_by_name([item_from_snapshot(s) for s in snapshots], name)
