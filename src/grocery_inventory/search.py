"""In-memory search and fuzzy matching over inventory items."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .item_normalizer import normalize_name_key
from .models import InventoryItem

DEFAULT_SEARCH_FIELDS = ("name", "category", "notes", "location")

_FIELD_ATTRIBUTES = {
    "name": "name",
    "quantity": "quantity",
    "unit": "unit",
    "category": "category",
    "location": "location",
    "lowStockThreshold": "low_stock_threshold",
    "low_stock_threshold": "low_stock_threshold",
    "expirationDate": "expiration_date",
    "expiration_date": "expiration_date",
    "notes": "notes",
    "brand": "brand",
    "size": "size",
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "updated_at": "updated_at",
}


class FilterOperator(str, Enum):
    """Filter rule operators."""

    EQUALS = "equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


@dataclass
class FilterRule:
    """A single field filter."""

    field: str
    operator: FilterOperator
    value: Any = None


@dataclass
class SortConfig:
    """Sort order for search results."""

    field: str
    ascending: bool = True


@dataclass
class SearchConfig:
    """Query options applied by ``search_items``."""

    query: str = ""
    search_fields: tuple[str, ...] = DEFAULT_SEARCH_FIELDS
    fuzzy: bool = True
    filters: list[FilterRule] = field(default_factory=list)
    sort: SortConfig | None = None


def fuzzy_contains(haystack: str, needle: str) -> bool:
    """Check whether needle's characters appear in order within haystack.

    Matching is case-sensitive; callers fold case first.
    """
    position = 0
    for char in haystack:
        if position == len(needle):
            break
        if char == needle[position]:
            position += 1
    return position == len(needle)


def matches_query(value: str, query: str, fuzzy: bool = True) -> bool:
    """Match a value against the whole query or against every query token."""
    text = value.lower()
    lowered = query.lower()
    contains = fuzzy_contains if fuzzy else (lambda haystack, needle: needle in haystack)

    if contains(text, lowered):
        return True
    return all(contains(text, word) for word in lowered.split(" "))


def _field_value(item: InventoryItem, field_name: str) -> Any:
    attribute = _FIELD_ATTRIBUTES.get(field_name)
    if attribute is None:
        return None
    return getattr(item, attribute)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _apply_filter(items: list[InventoryItem], rule: FilterRule) -> list[InventoryItem]:
    operator = FilterOperator(rule.operator)
    kept = []
    for item in items:
        value = _field_value(item, rule.field)
        if operator == FilterOperator.EQUALS:
            matched = value == rule.value
        elif operator == FilterOperator.CONTAINS:
            matched = (
                isinstance(value, str)
                and isinstance(rule.value, str)
                and rule.value.lower() in value.lower()
            )
        elif operator == FilterOperator.GREATER_THAN:
            matched = _is_number(value) and _is_number(rule.value) and value > rule.value
        elif operator == FilterOperator.LESS_THAN:
            matched = _is_number(value) and _is_number(rule.value) and value < rule.value
        elif operator == FilterOperator.IS_EMPTY:
            matched = value is None or value == ""
        else:
            matched = value is not None and value != ""
        if matched:
            kept.append(item)
    return kept


def _apply_sort(items: list[InventoryItem], sort: SortConfig) -> list[InventoryItem]:
    present = [item for item in items if _field_value(item, sort.field) is not None]
    missing = [item for item in items if _field_value(item, sort.field) is None]

    def sort_key(item: InventoryItem) -> Any:
        value = _field_value(item, sort.field)
        if _is_number(value):
            return (0, value, "")
        return (1, 0, str(value))

    present.sort(key=sort_key, reverse=not sort.ascending)
    return present + missing if sort.ascending else missing + present


def search_items(items: list[InventoryItem], config: SearchConfig) -> list[InventoryItem]:
    """Return inventory items matching ``config``, sorted.

    Args:
        items: Items to search
        config: Query, fields, filters and sort order

    Returns:
        Matching items
    """
    results = list(items)

    if config.query:
        results = [
            item
            for item in results
            if any(
                isinstance(value, str) and matches_query(value, config.query, config.fuzzy)
                for value in (_field_value(item, name) for name in config.search_fields)
            )
        ]

    for rule in config.filters:
        results = _apply_filter(results, rule)

    if config.sort is not None:
        results = _apply_sort(results, config.sort)

    return results


def find_item_by_name(items: list[InventoryItem], name: str) -> InventoryItem | None:
    """Resolve an item by case-insensitive exact name."""
    key = normalize_name_key(name)
    for item in items:
        if normalize_name_key(item.name or "") == key:
            return item
    return None


def suggest(items: list[InventoryItem], query: str) -> list[str]:
    """Autocomplete suggestions matching a partial name, category or location."""
    if not query:
        return []
    lowered = query.lower()
    suggestions: set[str] = set()
    for item in items:
        for value in (item.name, item.category, item.location):
            if value and lowered in value.lower():
                suggestions.add(value)
    return sorted(suggestions)
