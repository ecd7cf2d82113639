"""
Unit Tests for Document Type Detection.
"""

import pytest

from src.ingestion.document_type import (
    TEXT_SAMPLE_CHARS,
    TYPE_HINTS,
    DocumentType,
    detect_document_type,
    get_type_hints,
)


class TestDetectDocumentType:
    """Test cases for detect_document_type."""

    @pytest.mark.parametrize(
        "filename,text,expected",
        [
            ("bpm_overview.pdf", "", DocumentType.BUSINESS),
            ("notes.txt", "This data migration moves party id values", DocumentType.BUSINESS),
            ("q3_invoice.pdf", "", DocumentType.FINANCIAL),
            ("notes.txt", "The portfolio holds one position", DocumentType.FINANCIAL),
            ("notes.txt", "Each employee reports to a manager", DocumentType.BUSINESS),
            ("notes.txt", "The server exposes an api", DocumentType.TECHNICAL),
            ("contract_nda.docx", "", DocumentType.LEGAL),
            ("notes.txt", "hello world", DocumentType.GENERAL),
        ],
    )
    def test_detection(self, filename: str, text: str, expected: DocumentType) -> None:
        assert detect_document_type(filename, text) == expected

    def test_filename_is_case_insensitive(self) -> None:
        assert detect_document_type("ANNUAL_REPORT.PDF") == DocumentType.FINANCIAL

    def test_only_opening_text_is_inspected(self) -> None:
        text = "x " * TEXT_SAMPLE_CHARS + "invoice"
        assert detect_document_type("notes.txt", text) == DocumentType.GENERAL


class TestTypeHints:
    """Test cases for get_type_hints."""

    def test_every_type_has_hints(self) -> None:
        assert set(TYPE_HINTS) == set(DocumentType)

    def test_accepts_string(self) -> None:
        assert get_type_hints("financial") is TYPE_HINTS[DocumentType.FINANCIAL]

    def test_unknown_falls_back_to_general(self) -> None:
        assert get_type_hints("recipe") is TYPE_HINTS[DocumentType.GENERAL]
        assert get_type_hints(None) is TYPE_HINTS[DocumentType.GENERAL]
