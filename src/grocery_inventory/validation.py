"""Field validation for proposed inventory updates."""

import math
from collections.abc import Mapping
from typing import Any

from .errors import UpdateValidationError
from .item_normalizer import normalize_expiration_date
from .models import ProposedUpdate, UpdateAction

MISSING_FIELDS_MESSAGE = "Missing required fields: name, quantity, action"
INVALID_QUANTITY_MESSAGE = "Quantity must be a non-negative number"

_OPTIONAL_TEXT_FIELDS = {
    "unit": "unit",
    "category": "category",
    "location": "location",
    "notes": "notes",
    "brand": "brand",
    "size": "size",
}


def coerce_number(value: Any) -> float | None:
    """Convert numbers and numeric strings to a finite float.

    Booleans are not numbers here. A blank string counts as zero.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        if not value.strip():
            return 0.0
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def update_display_name(raw: Any) -> str:
    """Name used to report a failed update."""
    if isinstance(raw, Mapping):
        name = raw.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
        if name not in (None, ""):
            return str(name)
    return "unknown"


def validate_update(raw: Any) -> ProposedUpdate:
    """Validate a raw update mapping into a ProposedUpdate.

    Only keys present in ``raw`` are passed on, so the result's
    ``model_fields_set`` records which fields the caller supplied.

    Args:
        raw: Mapping with camelCase keys as received from clients or the parser

    Returns:
        The validated update

    Raises:
        UpdateValidationError: If a required field is missing or invalid
    """
    if not isinstance(raw, Mapping):
        raise UpdateValidationError("Invalid update payload")

    name = str(raw.get("name") or "").strip()
    quantity_value = raw.get("quantity")
    action = str(raw.get("action") or "").strip().lower()

    if not name or quantity_value is None or not action:
        raise UpdateValidationError(MISSING_FIELDS_MESSAGE, name=name or None)

    if action not in {a.value for a in UpdateAction}:
        raise UpdateValidationError(
            f'Invalid action "{action}". Use add, subtract, or set.', name=name
        )

    quantity = coerce_number(quantity_value)
    if quantity is None or quantity < 0:
        raise UpdateValidationError(INVALID_QUANTITY_MESSAGE, name=name)

    fields: dict[str, Any] = {"name": name, "quantity": quantity, "action": action}

    for key, field_name in _OPTIONAL_TEXT_FIELDS.items():
        if key in raw:
            value = raw[key]
            fields[field_name] = value if value is None or isinstance(value, str) else str(value)

    expiration_key = "expirationDate" if raw.get("expirationDate") is not None else None
    if expiration_key is None and "expiryDate" in raw:
        expiration_key = "expiryDate"
    if expiration_key is None and "expirationDate" in raw:
        expiration_key = "expirationDate"
    if expiration_key is not None:
        try:
            fields["expiration_date"] = normalize_expiration_date(raw[expiration_key])
        except ValueError as e:
            raise UpdateValidationError(str(e), name=name) from e

    if "lowStockThreshold" in raw:
        threshold = coerce_number(raw["lowStockThreshold"])
        if threshold is not None:
            fields["low_stock_threshold"] = threshold

    if "confidence" in raw:
        confidence = coerce_number(raw["confidence"])
        if confidence is not None:
            fields["confidence"] = min(1.0, max(0.0, confidence))

    if "needsReview" in raw and isinstance(raw["needsReview"], bool):
        fields["needs_review"] = raw["needsReview"]

    return ProposedUpdate(**fields)
