"""Turns uploaded artifacts into grocery text."""

import base64
import logging
import re
from io import BytesIO
from typing import Any

import openpyxl
import pdfplumber

from .errors import ConfigurationError, ExtractionError
from .item_normalizer import GENERIC_UNITS, build_preview, format_quantity
from .models import ExtractionResult, ProposedUpdate, UpdateAction, UploadSourceType

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPES = {"application/json", "application/csv", "text/csv"}
PDF_CONTENT_TYPES = {"application/pdf"}
SPREADSHEET_CONTENT_TYPES = {
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
}

_PDF_STRING = re.compile(rb"\(([^()]*)\)")
_ALPHANUMERIC = re.compile(r"[A-Za-z0-9]")

_NARRATIVE_VERBS = {
    UpdateAction.ADD: "bought",
    UpdateAction.SUBTRACT: "used",
    UpdateAction.SET: "have",
}


def _extension(filename: str | None) -> str:
    if not filename or "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


def infer_source_type(filename: str | None, content_type: str | None) -> UploadSourceType:
    """Guess the kind of artifact from its filename and content type."""
    content_type = (content_type or "").lower()
    extension = _extension(filename)

    if content_type.startswith("image/") or extension in {"jpg", "jpeg", "png", "heic", "webp"}:
        if filename and "list" in filename.lower():
            return UploadSourceType.IMAGE_LIST
        return UploadSourceType.IMAGE_RECEIPT
    if content_type in PDF_CONTENT_TYPES or extension == "pdf":
        return UploadSourceType.PDF
    if content_type in SPREADSHEET_CONTENT_TYPES or extension in {"xlsx", "xlsm"}:
        return UploadSourceType.SPREADSHEET
    if content_type.startswith("text/") or content_type in TEXT_CONTENT_TYPES or extension in {
        "txt",
        "csv",
        "json",
        "md",
    }:
        return UploadSourceType.TEXT
    return UploadSourceType.UNKNOWN


def _is_text_like(content_type: str, source_type: str) -> bool:
    return (
        source_type == UploadSourceType.TEXT.value
        or content_type.startswith("text/")
        or content_type in TEXT_CONTENT_TYPES
    )


def _is_pdf_like(content_type: str, source_type: str, filename: str | None) -> bool:
    return (
        source_type == UploadSourceType.PDF.value
        or content_type in PDF_CONTENT_TYPES
        or _extension(filename) == "pdf"
    )


def _is_image_like(content_type: str, source_type: str) -> bool:
    return source_type in (
        UploadSourceType.IMAGE_RECEIPT.value,
        UploadSourceType.IMAGE_LIST.value,
    ) or content_type.startswith("image/")


def _is_spreadsheet_like(content_type: str, source_type: str, filename: str | None) -> bool:
    return (
        source_type == UploadSourceType.SPREADSHEET.value
        or content_type in SPREADSHEET_CONTENT_TYPES
        or _extension(filename) in {"xlsx", "xlsm"}
    )


def _extract_plain_text(buffer: bytes) -> ExtractionResult:
    text = buffer.decode("utf-8", errors="replace").strip()
    if not text:
        raise ExtractionError("Uploaded text file is empty")
    return ExtractionResult(
        text=text,
        preview=build_preview(text),
        metadata={"extractor": "text", "characters": len(text)},
    )


def _pdf_heuristic_text(buffer: bytes) -> str:
    """Pull literal strings out of raw PDF content streams."""
    fragments = []
    for match in _PDF_STRING.finditer(buffer):
        fragment = match.group(1).decode("latin-1")
        if not _ALPHANUMERIC.search(fragment):
            continue
        fragment = fragment.replace("\\(", "(").replace("\\)", ")").replace("\\\\", "\\")
        fragments.append(fragment.strip())
    return " ".join(f for f in fragments if f)


def _extract_pdf(buffer: bytes) -> ExtractionResult:
    text = ""
    pages = 0
    try:
        with pdfplumber.open(BytesIO(buffer)) as pdf:
            pages = len(pdf.pages)
            text = "\n".join((page.extract_text() or "").strip() for page in pdf.pages).strip()
    except Exception as e:
        logger.warning("pdfplumber could not read upload: %s", e)

    if text:
        return ExtractionResult(
            text=text,
            preview=build_preview(text),
            metadata={"extractor": "pdfplumber", "pages": pages},
        )

    text = _pdf_heuristic_text(buffer).strip()
    if not text:
        raise ExtractionError("Unable to extract text from PDF")
    return ExtractionResult(
        text=text,
        preview=build_preview(text),
        metadata={"extractor": "pdf_heuristic", "pages": pages},
    )


def describe_updates(updates: list[ProposedUpdate]) -> list[str]:
    """Render updates as narrative lines the text parser understands."""
    lines = []
    for update in updates:
        parts = [_NARRATIVE_VERBS[update.action], format_quantity(update.quantity)]
        if update.unit and update.unit.lower() not in GENERIC_UNITS:
            parts.append(update.unit)
        parts.append(update.name)
        if update.expiration_date:
            parts.append(f"expires {update.expiration_date[:10]}")
        line = " ".join(part for part in parts if part).strip()
        if line:
            lines.append(line)
    return lines


def _extract_image(buffer: bytes, content_type: str, source_type: str, parser: Any) -> ExtractionResult:
    if parser is None or not parser.has_api_key:
        raise ConfigurationError("Image extraction requires OPENAI_API_KEY to be configured")

    image_type = "list" if source_type == UploadSourceType.IMAGE_LIST.value else "receipt"
    mime_type = content_type if content_type.startswith("image/") else "image/jpeg"
    encoded = base64.b64encode(buffer).decode("ascii")

    result = parser.parse_grocery_image(encoded, image_type, mime_type=mime_type)
    updates = parser.validate_items(result.items)
    if not updates:
        raise ExtractionError(result.error or "No grocery items detected in image")

    lines = describe_updates(updates)
    if not lines:
        raise ExtractionError("No grocery items detected in image")

    text = "\n".join(lines)
    return ExtractionResult(
        text=text,
        preview=build_preview(text),
        metadata={
            "extractor": "vision",
            "imageType": image_type,
            "itemCount": len(updates),
            "confidence": result.confidence,
        },
    )


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _extract_spreadsheet(buffer: bytes) -> ExtractionResult:
    try:
        workbook = openpyxl.load_workbook(BytesIO(buffer), read_only=True, data_only=True)
    except Exception as e:
        raise ExtractionError(f"Unable to read spreadsheet: {e}") from e

    try:
        if not workbook.worksheets:
            raise ExtractionError("Spreadsheet does not contain readable cells")
        sheet = workbook.worksheets[0]
        lines = []
        column_count = 0
        for row in sheet.iter_rows(values_only=True):
            cells = [_cell_text(value) for value in row]
            cells = [cell for cell in cells if cell]
            if not cells:
                continue
            column_count = max(column_count, len(cells))
            lines.append(", ".join(cells))
        sheet_name = sheet.title
        sheet_count = len(workbook.worksheets)
    finally:
        workbook.close()

    if not lines:
        raise ExtractionError("Spreadsheet does not contain readable cells")

    text = "\n".join(lines)
    return ExtractionResult(
        text=text,
        preview=build_preview(text),
        metadata={
            "extractor": "spreadsheet",
            "sheetName": sheet_name,
            "sheetCount": sheet_count,
            "rowCount": len(lines),
            "columnCount": column_count,
        },
    )


def extract_text_from_upload(
    buffer: bytes,
    content_type: str | None,
    source_type: UploadSourceType | str | None = None,
    filename: str | None = None,
    parser: Any = None,
) -> ExtractionResult:
    """Extract grocery text from an uploaded artifact.

    Args:
        buffer: Raw file bytes
        content_type: Declared MIME type
        source_type: Upload source type, if known
        filename: Original filename, used as a type hint
        parser: GroceryParser used for images

    Returns:
        Extracted text, a short preview and extractor metadata

    Raises:
        ExtractionError: If no text can be extracted or the type is unsupported
        ConfigurationError: If an image is given but no API key is configured
    """
    content_type = (content_type or "").lower()
    source = UploadSourceType(source_type).value if source_type else ""

    # First match wins: text, then PDF, then image, then spreadsheet
    if _is_text_like(content_type, source):
        return _extract_plain_text(buffer)
    if _is_pdf_like(content_type, source, filename):
        return _extract_pdf(buffer)
    if _is_image_like(content_type, source):
        return _extract_image(buffer, content_type, source, parser)
    if _is_spreadsheet_like(content_type, source, filename):
        return _extract_spreadsheet(buffer)

    raise ExtractionError(f"Unsupported upload type: {content_type} ({source or 'unknown'})")
