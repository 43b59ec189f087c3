"""Tests for inventory search and fuzzy matching."""

from grocery_inventory.models import InventoryItem
from grocery_inventory.search import (
    FilterOperator,
    FilterRule,
    SearchConfig,
    SortConfig,
    find_item_by_name,
    fuzzy_contains,
    matches_query,
    search_items,
    suggest,
)


def make_items():
    return [
        InventoryItem(name="Semi-Skimmed Milk", quantity=2, category="dairy", location="fridge"),
        InventoryItem(name="Eggs", quantity=0, category="dairy", location="fridge"),
        InventoryItem(name="Basmati Rice", quantity=5, category="pantry", location=None),
        InventoryItem(name="Bananas", quantity=6, category="produce", notes="for smoothies"),
    ]


class TestFuzzyContains:
    """Tests for subsequence matching."""

    def test_subsequence_matches(self):
        assert fuzzy_contains("semi-skimmed milk", "sskmd")

    def test_missing_characters(self):
        assert not fuzzy_contains("milk", "xyz")

    def test_empty_needle(self):
        assert fuzzy_contains("milk", "")

    def test_order_matters(self):
        assert not fuzzy_contains("milk", "klim")


class TestMatchesQuery:
    """Tests for query matching."""

    def test_case_insensitive(self):
        assert matches_query("Semi-Skimmed Milk", "MILK")

    def test_every_token_must_match(self):
        assert matches_query("Basmati Rice", "rice basmati")
        assert not matches_query("Basmati Rice", "rice beans")

    def test_exact_mode(self):
        assert matches_query("Basmati Rice", "rice", fuzzy=False)
        assert not matches_query("Basmati Rice", "bsmt", fuzzy=False)


class TestSearchItems:
    """Tests for search, filters and sort."""

    def test_query_across_fields(self):
        results = search_items(make_items(), SearchConfig(query="smoothies"))
        assert [i.name for i in results] == ["Bananas"]

    def test_filters(self):
        config = SearchConfig(filters=[FilterRule("quantity", FilterOperator.GREATER_THAN, 1)])
        assert {i.name for i in search_items(make_items(), config)} == {
            "Semi-Skimmed Milk",
            "Basmati Rice",
            "Bananas",
        }

    def test_is_empty_filter(self):
        config = SearchConfig(filters=[FilterRule("location", FilterOperator.IS_EMPTY)])
        assert {i.name for i in search_items(make_items(), config)} == {"Basmati Rice", "Bananas"}

    def test_sort_descending(self):
        config = SearchConfig(sort=SortConfig("quantity", ascending=False))
        assert [i.name for i in search_items(make_items(), config)] == [
            "Bananas",
            "Basmati Rice",
            "Semi-Skimmed Milk",
            "Eggs",
        ]

    def test_sort_puts_missing_values_last(self):
        config = SearchConfig(sort=SortConfig("location"))
        names = [i.name for i in search_items(make_items(), config)]
        assert names[-2:] == ["Basmati Rice", "Bananas"]


class TestNameResolution:
    """Tests for exact name lookup and suggestions."""

    def test_find_is_case_insensitive_and_exact(self):
        items = make_items()
        assert find_item_by_name(items, " eggs ").name == "Eggs"
        assert find_item_by_name(items, "egg") is None

    def test_suggest(self):
        assert suggest(make_items(), "da") == ["dairy"]
        assert suggest(make_items(), "") == []
