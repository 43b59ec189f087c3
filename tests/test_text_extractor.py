"""Tests for upload text extraction."""

from io import BytesIO

import openpyxl
import pytest
from conftest import FakeOpenAI, completion

from grocery_inventory.errors import ConfigurationError, ExtractionError
from grocery_inventory.grocery_parser import GroceryParser
from grocery_inventory.models import ProposedUpdate, UploadSourceType
from grocery_inventory.text_extractor import (
    describe_updates,
    extract_text_from_upload,
    infer_source_type,
)


XLSX_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def workbook_bytes(rows):
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Groceries"
    for row in rows:
        sheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def pdf_bytes(*page_lines):
    """Build a minimal PDF with one line of Helvetica text per page."""
    page_count = len(page_lines)
    font_id = 3 + 2 * page_count
    kids = " ".join(f"{3 + 2 * n} 0 R" for n in range(page_count))
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode(),
    ]
    for n, line in enumerate(page_lines):
        content = f"BT /F1 12 Tf 72 720 Td ({line}) Tj ET".encode()
        objects.append(
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents {4 + 2 * n} 0 R "
            f"/Resources << /Font << /F1 {font_id} 0 R >> >> >>".encode()
        )
        objects.append(
            b"<< /Length %d >>\nstream\n" % len(content) + content + b"\nendstream"
        )
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")

    out = BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(b"%d 0 obj\n" % number + body + b"\nendobj\n")
    xref_offset = out.tell()
    out.write(b"xref\n0 %d\n" % (len(objects) + 1))
    out.write(b"0000000000 65535 f \n")
    for offset in offsets:
        out.write(b"%010d 00000 n \n" % offset)
    out.write(b"trailer\n<< /Size %d /Root 1 0 R >>\n" % (len(objects) + 1))
    out.write(b"startxref\n%d\n%%%%EOF\n" % xref_offset)
    return out.getvalue()


class TestInferSourceType:
    """Tests for source type inference."""

    @pytest.mark.parametrize(
        ("filename", "content_type", "expected"),
        [
            ("receipt.jpg", "image/jpeg", UploadSourceType.IMAGE_RECEIPT),
            ("shopping-list.png", None, UploadSourceType.IMAGE_LIST),
            ("statement.pdf", "application/octet-stream", UploadSourceType.PDF),
            ("pantry.xlsx", None, UploadSourceType.SPREADSHEET),
            ("notes.txt", None, UploadSourceType.TEXT),
            ("export.csv", "text/csv", UploadSourceType.TEXT),
            ("archive.zip", "application/zip", UploadSourceType.UNKNOWN),
        ],
    )
    def test_inference(self, filename, content_type, expected):
        assert infer_source_type(filename, content_type) == expected


class TestPlainText:
    """Tests for text and CSV uploads."""

    def test_text(self):
        result = extract_text_from_upload(b"  bought 2 milk\n", "text/plain")
        assert result.text == "bought 2 milk"
        assert result.preview == "bought 2 milk"
        assert result.metadata == {"extractor": "text", "characters": 13}

    def test_csv_by_source_type(self):
        result = extract_text_from_upload(b"milk,2\neggs,12", "application/octet-stream", "text")
        assert result.text == "milk,2\neggs,12"

    def test_empty_text(self):
        with pytest.raises(ExtractionError, match="Uploaded text file is empty"):
            extract_text_from_upload(b"   ", "text/plain")

    def test_text_content_type_wins_over_image_hint(self, heuristic_parser):
        result = extract_text_from_upload(
            b"bought 2 litres milk", "text/plain", "image_receipt", parser=heuristic_parser
        )
        assert result.text == "bought 2 litres milk"
        assert result.metadata["extractor"] == "text"

    def test_unsupported(self):
        with pytest.raises(ExtractionError, match="Unsupported upload type: application/zip"):
            extract_text_from_upload(b"PK", "application/zip")


class TestSpreadsheet:
    """Tests for spreadsheet uploads."""

    def test_rows_become_lines(self):
        data = workbook_bytes([["Item", "Qty"], ["Milk", 2], [None, None], ["Eggs", 12]])
        result = extract_text_from_upload(data, XLSX_TYPE)
        assert result.text == "Item, Qty\nMilk, 2\nEggs, 12"
        assert result.metadata == {
            "extractor": "spreadsheet",
            "sheetName": "Groceries",
            "sheetCount": 1,
            "rowCount": 3,
            "columnCount": 2,
        }

    def test_empty_sheet(self):
        with pytest.raises(ExtractionError, match="Spreadsheet does not contain readable cells"):
            extract_text_from_upload(workbook_bytes([]), None, filename="empty.xlsx")

    def test_corrupt_file(self):
        with pytest.raises(ExtractionError, match="Unable to read spreadsheet"):
            extract_text_from_upload(b"not a workbook", None, "spreadsheet")


class TestPdf:
    """Tests for PDF uploads."""

    def test_pdfplumber_reads_every_page(self):
        data = pdf_bytes("Bought 2 litres milk", "Used 3 eggs")
        result = extract_text_from_upload(data, "application/pdf")
        assert result.text == "Bought 2 litres milk\nUsed 3 eggs"
        assert result.metadata == {"extractor": "pdfplumber", "pages": 2}
        assert result.preview == "Bought 2 litres milk Used 3 eggs"

    def test_pdf_detected_by_extension(self):
        data = pdf_bytes("Have 1 loaf bread")
        result = extract_text_from_upload(data, "application/octet-stream", filename="list.pdf")
        assert result.text == "Have 1 loaf bread"
        assert result.metadata["pages"] == 1

    def test_heuristic_fallback_for_unreadable_pdf(self):
        raw = b"%PDF-1.4\nBT (Bought 2 milk) Tj (---) Tj ET\n%%EOF"
        result = extract_text_from_upload(raw, "application/pdf")
        assert result.text == "Bought 2 milk"
        assert result.metadata["extractor"] == "pdf_heuristic"

    def test_no_text(self):
        with pytest.raises(ExtractionError, match="Unable to extract text from PDF"):
            extract_text_from_upload(b"%PDF-1.4 garbage", None, filename="scan.pdf")


class TestImage:
    """Tests for image uploads."""

    def test_requires_api_key(self, heuristic_parser):
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            extract_text_from_upload(b"\x89PNG", "image/png", parser=heuristic_parser)

    def test_pdf_wins_over_image_hint(self, heuristic_parser):
        data = pdf_bytes("Bought 2 litres milk")
        result = extract_text_from_upload(data, "application/pdf", "image_list", parser=heuristic_parser)
        assert result.metadata["extractor"] == "pdfplumber"

    def test_image_wins_over_spreadsheet_extension(self, heuristic_parser):
        with pytest.raises(ConfigurationError):
            extract_text_from_upload(
                b"\x89PNG", "image/png", filename="scan.xlsx", parser=heuristic_parser
            )

    def test_vision_items_become_narrative(self):
        client = FakeOpenAI(
            [
                completion(
                    content='{"items": [{"name": "whole milk", "quantity": 2, "unit": "gallons", '
                    '"action": "add", "confidence": 0.9}, {"name": "bananas", "quantity": 6, '
                    '"unit": "item", "action": "add", "confidence": 0.8}]}'
                )
            ]
        )
        parser = GroceryParser(client=client)
        result = extract_text_from_upload(b"\x89PNG", "image/png", "image_list", parser=parser)

        assert result.text == "bought 2 gallon Whole Milk\nbought 6 Bananas"
        assert result.metadata["extractor"] == "vision"
        assert result.metadata["imageType"] == "list"
        assert result.metadata["itemCount"] == 2

    def test_no_items_detected(self):
        parser = GroceryParser(client=FakeOpenAI([completion(content='{"items": []}')]))
        with pytest.raises(ExtractionError, match="No grocery items detected in image"):
            extract_text_from_upload(b"\x89PNG", "image/jpeg", parser=parser)


class TestDescribeUpdates:
    """Tests for narrative rendering."""

    def test_lines(self):
        updates = [
            ProposedUpdate(name="Eggs", quantity=3, action="subtract", unit="count"),
            ProposedUpdate(
                name="Yogurt",
                quantity=1.5,
                action="set",
                unit="cup",
                expiration_date="2025-03-01T00:00:00.000Z",
            ),
        ]
        assert describe_updates(updates) == [
            "used 3 Eggs",
            "have 1.5 cup Yogurt expires 2025-03-01",
        ]
