"""Shared item text normalization utilities."""

import math
import re
from datetime import date, datetime, timezone
from typing import Any

PREVIEW_LENGTH = 240

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")

_UNIT_MAP = {
    "gallon": "gallon",
    "gallons": "gallon",
    "gal": "gallon",
    "loaf": "loaf",
    "loaves": "loaf",
    "dozen": "dozen",
    "doz": "dozen",
    "count": "count",
    "each": "count",
    "piece": "count",
    "pieces": "count",
    "pound": "pound",
    "pounds": "pound",
    "lb": "pound",
    "lbs": "pound",
    "bag": "bag",
    "bags": "bag",
    "bottle": "bottle",
    "bottles": "bottle",
    "can": "can",
    "cans": "can",
    "box": "box",
    "boxes": "box",
    "liter": "liter",
    "liters": "liter",
    "litre": "liter",
    "litres": "liter",
    "l": "liter",
    "milliliter": "milliliter",
    "milliliters": "milliliter",
    "millilitre": "milliliter",
    "millilitres": "milliliter",
    "ml": "milliliter",
    "kilogram": "kilogram",
    "kilograms": "kilogram",
    "kg": "kilogram",
    "kgs": "kilogram",
    "gram": "gram",
    "grams": "gram",
    "g": "gram",
    "ounce": "ounce",
    "ounces": "ounce",
    "oz": "ounce",
    "pack": "pack",
    "packs": "pack",
    "packet": "pack",
    "packets": "pack",
}

KNOWN_CATEGORIES = (
    "dairy",
    "produce",
    "meat",
    "pantry",
    "frozen",
    "beverages",
    "snacks",
    "bakery",
)

GENERIC_UNITS = {"unit", "item", "items", "count", "each"}


def normalize_name_key(name: str) -> str:
    """Case-insensitive natural key for an item name."""
    return name.strip().lower()


def generate_search_keywords(name: str) -> list[str]:
    """Build search keywords for an item name.

    Tokens come first, followed by the whole normalized phrase, with
    duplicates removed in insertion order.
    """
    tokens = _NON_ALPHANUMERIC.sub(" ", name.lower()).split()
    keywords = dict.fromkeys(tokens)
    phrase = " ".join(tokens)
    if phrase:
        keywords[phrase] = None
    return list(keywords)


def standardize_name(name: str) -> str:
    """Title-case each space-separated word."""
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.strip().split(" "))


def standardize_unit(unit: str | None) -> str | None:
    """Map unit spellings onto a canonical unit."""
    if unit is None:
        return None
    lowered = unit.strip().lower()
    return _UNIT_MAP.get(lowered, lowered)


def standardize_category(category: str | None) -> str:
    """Map a category onto a known category, else "uncategorized"."""
    if not category:
        return "uncategorized"
    lowered = category.strip().lower()
    return lowered if lowered in KNOWN_CATEGORIES else "uncategorized"


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso(value: str) -> datetime | None:
    text = value.strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _from_epoch_millis(milliseconds: float) -> datetime | None:
    if not math.isfinite(milliseconds):
        return None
    try:
        return datetime.fromtimestamp(milliseconds / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _timestamp_mapping_millis(value: dict[str, Any]) -> float | None:
    for seconds_key, nanos_key in (("seconds", "nanoseconds"), ("_seconds", "_nanoseconds")):
        seconds = value.get(seconds_key)
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool) and seconds:
            nanos = value.get(nanos_key) or 0
            if not isinstance(nanos, (int, float)) or isinstance(nanos, bool):
                nanos = 0
            return seconds * 1000 + nanos / 1e6
    return None


def normalize_expiration_date(value: Any) -> str | None:
    """Normalize an expiration date to an ISO-8601 UTC string.

    Args:
        value: ISO string, epoch milliseconds, datetime/date, or a
            timestamp mapping with seconds/nanoseconds keys.

    Returns:
        ISO string, or None when the value is None or empty.

    Raises:
        ValueError: If the value cannot be interpreted as a date.
    """
    if value is None or value == "":
        return None

    if isinstance(value, str):
        parsed = _parse_iso(value)
        if parsed is None:
            raise ValueError(f'Invalid expiration date: "{value}" (expected ISO 8601 format)')
        return format_timestamp(parsed)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = _from_epoch_millis(float(value))
        if parsed is None:
            raise ValueError(
                f"Invalid expiration date: {value} (numeric value could not be parsed)"
            )
        return format_timestamp(parsed)

    if isinstance(value, datetime):
        return format_timestamp(value)

    if isinstance(value, date):
        return format_timestamp(datetime(value.year, value.month, value.day))

    if isinstance(value, dict):
        milliseconds = _timestamp_mapping_millis(value)
        if milliseconds is not None:
            parsed = _from_epoch_millis(milliseconds)
            if parsed is not None:
                return format_timestamp(parsed)

    raise ValueError("Invalid expiration date format: provide ISO string or timestamp")


def coerce_timestamp(value: Any) -> str | None:
    """Best-effort conversion of a stored timestamp to ISO, never raising."""
    try:
        return normalize_expiration_date(value)
    except ValueError:
        return None


def format_quantity(quantity: float) -> str:
    """Render a quantity without a trailing .0 for whole numbers."""
    if isinstance(quantity, float) and quantity.is_integer():
        return str(int(quantity))
    return str(quantity)


def build_preview(text: str, limit: int = PREVIEW_LENGTH) -> str:
    """Collapse whitespace and cap the text at ``limit`` characters."""
    collapsed = _WHITESPACE.sub(" ", text).strip()
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 1].rstrip() + "…"
