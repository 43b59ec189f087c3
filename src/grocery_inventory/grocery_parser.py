"""Grocery text and image parsing.

``GroceryParser`` turns free text or a receipt/list photo into proposed
inventory updates. With an OpenAI API key it asks the model through a
``parse_grocery_items`` function tool; without one (or when the model call
fails) it falls back to a keyword heuristic.
"""

import json
import logging
import re
from typing import Any

from openai import OpenAI

from .errors import UpdateValidationError
from .item_normalizer import standardize_category, standardize_name, standardize_unit
from .models import ConfidenceLevel, ParseResult, ProposedUpdate
from .validation import update_display_name, validate_update

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
FALLBACK_ITEM_CONFIDENCE = 0.6

SYSTEM_PROMPT = """You are an expert grocery inventory assistant. Your job is to parse natural language text about
grocery shopping, cooking, or food consumption into structured inventory updates.

Key guidelines:
1. Actions:
   - "add" for purchases: "bought milk", "picked up bread", "got some eggs"
   - "subtract" for consumption: "used 2 eggs", "ate the last banana", "finished the milk"
   - "set" for exact inventory: "have 3 apples left", "only 1 loaf remaining"

2. Quantities: Default to 1 if not specified. Be smart about units:
   - Milk: gallons (or liters for metric)
   - Bread: loaves
   - Eggs: count
   - Bananas: count
   - Ground meat: pounds

3. Categories: dairy, produce, meat, pantry, frozen, beverages, snacks, bakery.

4. Brands: extract brand names when mentioned ("Starbucks coffee").

5. Locations: capture storage hints when present (fridge, freezer, pantry). Leave blank otherwise.

6. Expiration dates: when the text mentions "expires", "best before" or similar, capture the
   date as ISO 8601 (YYYY-MM-DD).

7. Confidence: 0.9-1.0 unambiguous, 0.7-0.8 minor assumptions, 0.5-0.6 some ambiguity,
   below 0.5 unclear.

8. Set needsReview to true if overall confidence < 0.7, quantities or units are ambiguous,
   item names are unclear, or the text mixes buying and consuming.

Examples:
- "bought 2 gallons of milk and a loaf of bread": add 2 milk (gallon), add 1 bread (loaf)
- "used 3 eggs for breakfast": subtract 3 eggs (count)
- "we're out of coffee": set 0 coffee (bag)"""

RECEIPT_PROMPT = """You are a grocery receipt analyzer. Extract all grocery items from this receipt image.

For each item found, provide:
- name: The product name (clean and standardized)
- quantity: The quantity purchased (default to 1 if not clear)
- unit: The unit of measurement (item, pound, gallon, etc.)
- action: Always "add" for receipts
- category: The grocery category (produce, dairy, meat, etc.)
- brand: Brand name if visible
- location: Storage location if clearly stated (fridge, freezer, pantry, etc.)
- expirationDate: ISO 8601 expiry/best before date if present on the receipt
- confidence: Your confidence level (0.0 to 1.0)

Return ONLY a valid JSON object in this format:
{"items": [{"name": "Milk", "quantity": 1, "unit": "gallon", "action": "add", "category": "dairy",
"brand": "Store Brand", "location": "fridge", "expirationDate": "2024-05-12", "confidence": 0.9}]}

Extract ALL items from the receipt. If you can't read something clearly, include it with lower confidence."""

LIST_PROMPT = """You are a grocery list analyzer. Extract all items from this handwritten or printed grocery list image.

For each item found, provide:
- name: The item name (clean and standardized)
- quantity: The quantity if specified (default to 1)
- unit: The unit if specified (default to "item")
- action: Always "add" for grocery lists
- category: The grocery category
- location: Suggested storage spot if written (e.g. pantry, fridge)
- notes: Any additional notes or specifications
- expirationDate: ISO 8601 expiry/best-before date if the list mentions one
- confidence: Your confidence level (0.0 to 1.0)

Return ONLY a valid JSON object in this format:
{"items": [{"name": "Bananas", "quantity": 6, "unit": "item", "action": "add", "category": "produce",
"location": "fruit bowl", "notes": "ripe", "confidence": 0.85}]}

Extract ALL visible items, even if handwriting is unclear (use lower confidence for unclear items)."""

PARSE_FUNCTION: dict[str, Any] = {
    "name": "parse_grocery_items",
    "description": "Parse grocery text into structured inventory updates",
    "parameters": {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "description": "List of parsed grocery items",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "description": "Item name, e.g. 'Milk'"},
                        "quantity": {"type": "number", "description": "Quantity of the item"},
                        "unit": {
                            "type": "string",
                            "description": "Unit of measurement (gallon, loaf, dozen, count, bag, etc.)",
                        },
                        "action": {
                            "type": "string",
                            "enum": ["add", "subtract", "set"],
                            "description": "'add' for purchases, 'subtract' for consumption, "
                            "'set' for exact inventory",
                        },
                        "category": {"type": "string", "description": "Grocery category"},
                        "location": {"type": "string", "description": "Storage location if mentioned"},
                        "brand": {"type": "string", "description": "Brand name if mentioned"},
                        "notes": {"type": "string", "description": "Additional notes"},
                        "expirationDate": {
                            "type": "string",
                            "description": "ISO 8601 expiry or best-before date if provided",
                        },
                        "confidence": {"type": "number", "description": "Confidence from 0-1"},
                    },
                    "required": ["name", "quantity", "unit", "action", "confidence"],
                },
            },
            "overallConfidence": {
                "type": "number",
                "description": "Overall confidence in the parsing from 0-1",
            },
            "needsReview": {
                "type": "boolean",
                "description": "Whether items need human review before applying",
            },
        },
        "required": ["items", "overallConfidence", "needsReview"],
    },
}

# Keyword heuristic vocabulary

_ADD_PHRASES = ("picked up", "bought", "buy", "got", "purchased", "grabbed", "restocked", "added")
_SUBTRACT_PHRASES = (
    "used up",
    "used",
    "use",
    "ate",
    "eaten",
    "finished",
    "consumed",
    "drank",
    "cooked",
)
_SET_PHRASES = ("have", "has", "left", "remaining")
_OUT_OF = re.compile(r"\b(?:ran out of|run out of|out of)\b")

_CLAUSE_SPLIT = re.compile(r"\s*(?:[\n,;]|\band\b|\bthen\b|\bplus\b)\s*", re.IGNORECASE)
_EXPIRY = re.compile(
    r"\b(?:expires|expire|expiring|expiry|exp|best before|use by)\b(?:\s+on)?\s*:?\s*"
    r"(\d{4}-\d{2}-\d{2})"
)
_NUMBER = re.compile(r"^\d+(?:\.\d+)?$")
_NUMBER_WITH_UNIT = re.compile(r"^(\d+(?:\.\d+)?)([a-z]+)$")
_TOKEN = re.compile(r"[a-z0-9][a-z0-9.'-]*")

_QUANTITY_PHRASES = (
    (re.compile(r"\ba couple(?: of)?\b"), "2"),
    (re.compile(r"\ba few\b"), "3"),
    (re.compile(r"\bhalf an?\b"), "0.5"),
)

_NUMBER_WORDS = {
    "a": 1,
    "an": 1,
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
    "half": 0.5,
}

_UNIT_WORDS = {
    "gallon", "gallons", "gal", "loaf", "loaves", "dozen", "doz", "pound", "pounds",
    "lb", "lbs", "bag", "bags", "bottle", "bottles", "can", "cans", "box", "boxes",
    "liter", "liters", "litre", "litres", "l", "milliliter", "milliliters", "millilitre",
    "millilitres", "ml", "kilogram", "kilograms", "kg", "kgs", "gram", "grams", "g",
    "ounce", "ounces", "oz", "pack", "packs", "packet", "packets", "carton", "cartons",
    "jar", "jars", "bunch", "bunches", "piece", "pieces",
}

_FILLER_WORDS = {
    "i", "we", "i've", "we've", "ive", "weve", "we're", "just", "also", "some", "the",
    "more", "of", "my", "our", "for", "at", "from", "in", "to", "today", "yesterday",
    "store", "only", "still", "last", "another", "all", "left", "remaining",
    "were", "are", "is", "am",
}

_KNOWN_ITEMS = {
    "milk": ("dairy", "gallon"),
    "cheese": ("dairy", "count"),
    "yogurt": ("dairy", "count"),
    "butter": ("dairy", "count"),
    "egg": ("dairy", "count"),
    "bread": ("bakery", "loaf"),
    "bagel": ("bakery", "count"),
    "muffin": ("bakery", "count"),
    "banana": ("produce", "count"),
    "apple": ("produce", "count"),
    "orange": ("produce", "count"),
    "tomato": ("produce", "count"),
    "tomatoe": ("produce", "count"),
    "potato": ("produce", "count"),
    "potatoe": ("produce", "count"),
    "onion": ("produce", "count"),
    "lettuce": ("produce", "count"),
    "carrot": ("produce", "count"),
    "chicken": ("meat", "pound"),
    "beef": ("meat", "pound"),
    "pork": ("meat", "pound"),
    "fish": ("meat", "pound"),
    "rice": ("pantry", "bag"),
    "pasta": ("pantry", "box"),
    "flour": ("pantry", "bag"),
    "sugar": ("pantry", "bag"),
    "coffee": ("beverages", "bag"),
    "tea": ("beverages", "box"),
    "juice": ("beverages", "bottle"),
    "soda": ("beverages", "can"),
    "water": ("beverages", "bottle"),
    "chip": ("snacks", "bag"),
    "cookie": ("snacks", "box"),
    "cracker": ("snacks", "box"),
    "ice cream": ("frozen", "count"),
}


def confidence_level(confidence: float) -> ConfidenceLevel:
    """Bucket a confidence score into high, medium or low."""
    if confidence >= 0.9:
        return ConfidenceLevel.HIGH
    if confidence >= 0.7:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def _lookup_known_item(name: str) -> tuple[str, str] | None:
    if name in _KNOWN_ITEMS:
        return _KNOWN_ITEMS[name]
    for token in reversed(name.split()):
        for candidate in (token, token.rstrip("s"), token[:-2] if token.endswith("es") else token):
            if candidate in _KNOWN_ITEMS:
                return _KNOWN_ITEMS[candidate]
    return None


def _detect_action(clause: str) -> str | None:
    def has(phrases: tuple[str, ...]) -> bool:
        return any(re.search(rf"\b{re.escape(phrase)}\b", clause) for phrase in phrases)

    if has(_ADD_PHRASES):
        return "add"
    if has(_SUBTRACT_PHRASES):
        return "subtract"
    if has(_SET_PHRASES):
        return "set"
    return None


def _strip_phrases(clause: str) -> str:
    for phrase in _ADD_PHRASES + _SUBTRACT_PHRASES + _SET_PHRASES:
        clause = re.sub(rf"\b{re.escape(phrase)}\b", " ", clause)
    return clause


def _parse_clause(clause: str, previous_action: str) -> tuple[dict[str, Any] | None, str]:
    lowered = clause.lower().strip().rstrip(".!?")
    if not lowered:
        return None, previous_action

    expiration = None
    expiry_match = _EXPIRY.search(lowered)
    if expiry_match:
        expiration = expiry_match.group(1)
        lowered = (lowered[: expiry_match.start()] + " " + lowered[expiry_match.end() :]).strip()

    out_of = _OUT_OF.search(lowered)
    if out_of:
        action = "set"
        lowered = _OUT_OF.sub(" ", lowered)
    else:
        action = _detect_action(lowered) or previous_action

    lowered = _strip_phrases(lowered)
    for pattern, replacement in _QUANTITY_PHRASES:
        lowered = pattern.sub(replacement, lowered)

    tokens = [t for t in _TOKEN.findall(lowered) if t not in _FILLER_WORDS]

    quantity: float | None = None
    unit: str | None = None
    remaining: list[str] = []
    for index, token in enumerate(tokens):
        if quantity is None and unit is None and not remaining:
            if _NUMBER.match(token):
                quantity = float(token)
                continue
            combined = _NUMBER_WITH_UNIT.match(token)
            if combined and combined.group(2) in _UNIT_WORDS:
                quantity = float(combined.group(1))
                unit = combined.group(2)
                continue
            if token in _NUMBER_WORDS:
                quantity = float(_NUMBER_WORDS[token])
                continue
        if unit is None and not remaining and token in _UNIT_WORDS:
            unit = token
            continue
        if token in ("a", "an"):
            continue
        remaining.append(token)

    name = " ".join(remaining).strip()
    if not name:
        return None, action

    known = _lookup_known_item(name)
    if out_of:
        quantity = 0
    elif quantity is None:
        quantity = 1

    item: dict[str, Any] = {
        "name": name,
        "quantity": quantity,
        "unit": unit or (known[1] if known else "count"),
        "action": action,
        "category": known[0] if known else "uncategorized",
        "location": None,
        "confidence": FALLBACK_ITEM_CONFIDENCE,
    }
    if expiration:
        item["expirationDate"] = expiration
    return item, action


def heuristic_parse(text: str) -> ParseResult:
    """Keyword-based parsing used when the language model is unavailable."""
    items: list[dict[str, Any]] = []
    action = "add"
    for clause in _CLAUSE_SPLIT.split(text):
        item, action = _parse_clause(clause, action)
        if item is not None:
            items.append(item)

    return ParseResult(
        items=items,
        confidence=FALLBACK_ITEM_CONFIDENCE if items else 0.2,
        original_text=text,
        needs_review=True,
        used_fallback=True,
    )


class GroceryParser:
    """Parses grocery text and images into proposed updates."""

    def __init__(
        self,
        api_key: str | None = None,
        client: Any = None,
        model: str = DEFAULT_MODEL,
        vision_model: str = DEFAULT_MODEL,
    ):
        """Initialize the parser.

        Args:
            api_key: OpenAI API key; without one only the heuristic is used
            client: Optional pre-built OpenAI-compatible client
            model: Chat model for text parsing
            vision_model: Chat model for image parsing
        """
        self.model = model
        self.vision_model = vision_model
        if client is not None:
            self.client = client
        elif api_key:
            self.client = OpenAI(api_key=api_key)
        else:
            self.client = None

    @property
    def has_api_key(self) -> bool:
        return self.client is not None

    def parse_grocery_text(self, text: str) -> ParseResult:
        """Parse natural language grocery text.

        Args:
            text: Free text such as "bought 2 litres milk and 3 eggs"

        Returns:
            Parsed items (raw, not yet validated) with overall confidence
        """
        if self.client is None:
            return heuristic_parse(text)

        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
                tools=[{"type": "function", "function": PARSE_FUNCTION}],
                tool_choice={"type": "function", "function": {"name": "parse_grocery_items"}},
            )
            tool_calls = completion.choices[0].message.tool_calls
            if not tool_calls or not tool_calls[0].function.arguments:
                raise ValueError("No function call returned from OpenAI")

            parsed = json.loads(tool_calls[0].function.arguments)
            return ParseResult(
                items=[item for item in parsed.get("items") or [] if isinstance(item, dict)],
                confidence=float(parsed.get("overallConfidence") or 0),
                original_text=text,
                needs_review=bool(parsed.get("needsReview", False)),
            )
        except Exception as e:
            logger.error("Error parsing grocery text: %s", e)
            fallback = heuristic_parse(text)
            fallback.error = f"AI parsing failed: {e}. Using fallback parser."
            return fallback

    def parse_grocery_image(
        self,
        image_base64: str,
        image_type: str = "receipt",
        mime_type: str = "image/jpeg",
    ) -> ParseResult:
        """Parse a receipt or grocery list photo.

        Args:
            image_base64: Base64-encoded image bytes
            image_type: "receipt" or "list"
            mime_type: Image content type for the data URL

        Returns:
            Parsed items; on failure an empty result carrying the error
        """
        if self.client is None:
            return ParseResult(
                items=[],
                confidence=0,
                original_text="[Image processing requires OpenAI API]",
                needs_review=True,
                error="OpenAI API key not configured",
            )

        prompt = RECEIPT_PROMPT if image_type == "receipt" else LIST_PROMPT
        try:
            completion = self.client.chat.completions.create(
                model=self.vision_model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {
                                "type": "image_url",
                                "image_url": {
                                    "url": f"data:{mime_type};base64,{image_base64}",
                                    "detail": "high",
                                },
                            },
                        ],
                    }
                ],
                max_tokens=1000,
                temperature=0.3,
                response_format={"type": "json_object"},
            )
            content = completion.choices[0].message.content
            if not content:
                raise ValueError("No response from OpenAI Vision API")

            parsed = json.loads(content)
            items = [item for item in parsed.get("items") or [] if isinstance(item, dict)]
            scores = [self._item_confidence(item) for item in items]
            average = sum(scores) / len(scores) if scores else 0.0

            return ParseResult(
                items=items,
                confidence=average,
                original_text=f"[Parsed from {image_type} image]",
                needs_review=average < 0.7 or any(score < 0.6 for score in scores),
            )
        except Exception as e:
            logger.error("Error parsing %s image: %s", image_type, e)
            return ParseResult(
                items=[],
                confidence=0,
                original_text=f"[Failed to process {image_type} image]",
                needs_review=True,
                error=str(e) or "Failed to parse image",
            )

    @staticmethod
    def _item_confidence(item: dict[str, Any]) -> float:
        value = item.get("confidence")
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
            return float(value)
        return 0.8

    def validate_items(
        self, items: list[dict[str, Any]], rejected: list[str] | None = None
    ) -> list[ProposedUpdate]:
        """Validate and standardize parsed items.

        Args:
            items: Raw parsed items
            rejected: Optional list that receives "<name>: <error>" for
                every discarded item

        Returns:
            Valid, standardized updates in input order
        """
        validated: list[ProposedUpdate] = []
        for item in items:
            try:
                update = validate_update(item)
            except UpdateValidationError as e:
                name = e.name or update_display_name(item)
                logger.debug("Discarding parsed item %s: %s", name, e)
                if rejected is not None:
                    rejected.append(f"{name}: {e}")
                continue

            changes: dict[str, Any] = {"name": standardize_name(update.name)}
            if update.supplied("unit"):
                changes["unit"] = standardize_unit(update.unit)
            if update.supplied("category"):
                changes["category"] = standardize_category(update.category)
            if update.supplied("location") and update.location is not None:
                changes["location"] = update.location.strip()
            validated.append(update.model_copy(update=changes))
        return validated
