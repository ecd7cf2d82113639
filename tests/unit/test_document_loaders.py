"""
Unit Tests for Document Loaders.

Tests loader selection by MIME type and extension, text cleanup and
extraction failures.
"""

import io

import pytest
from docx import Document as DocxDocument

from src.ingestion.document_loaders import DocumentLoaderFactory
from src.ingestion.document_loaders.base import clean_text
from src.ingestion.document_loaders.docx_loader import DOCXLoader
from src.ingestion.document_loaders.pdf_loader import PDFLoader
from src.ingestion.document_loaders.text_loader import TextLoader
from src.ingestion.errors import ExtractionFailedError, UnsupportedFormatError

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def make_docx(*paragraphs: str, table: list[list[str]] | None = None) -> bytes:
    doc = DocxDocument()
    for paragraph in paragraphs:
        doc.add_paragraph(paragraph)
    if table:
        grid = doc.add_table(rows=len(table), cols=len(table[0]))
        for r, row in enumerate(table):
            for c, value in enumerate(row):
                grid.cell(r, c).text = value
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


class TestCleanText:
    """Test cases for clean_text."""

    def test_line_endings(self) -> None:
        assert clean_text("a\r\nb\rc") == "a\nb\nc"

    def test_blank_line_runs_collapse(self) -> None:
        assert clean_text("a\n\n\n\n\nb") == "a\n\nb"

    def test_spaces_and_tabs_squeeze(self) -> None:
        assert clean_text("  Account \t\t A1   held  ") == "Account A1 held"


class TestDocumentLoaderFactory:
    """Test cases for loader selection."""

    @pytest.mark.parametrize(
        "filename,mime_type,expected",
        [
            ("notes.txt", "text/plain", TextLoader),
            ("notes.md", None, TextLoader),
            ("report.pdf", "application/pdf", PDFLoader),
            ("contract.docx", DOCX_MIME, DOCXLoader),
            ("REPORT.PDF", None, PDFLoader),
            # The declared MIME type wins over the extension
            ("upload.bin", "application/pdf", PDFLoader),
            ("notes.txt", "text/plain; charset=utf-8", TextLoader),
        ],
    )
    def test_get_loader(self, filename: str, mime_type: str | None, expected: type) -> None:
        assert isinstance(DocumentLoaderFactory.get_loader(filename, mime_type), expected)

    def test_unknown_mime_falls_back_to_extension(self) -> None:
        loader = DocumentLoaderFactory.get_loader("report.pdf", "application/octet-stream")
        assert isinstance(loader, PDFLoader)

    def test_unsupported_format(self) -> None:
        with pytest.raises(UnsupportedFormatError) as exc_info:
            DocumentLoaderFactory.get_loader("image.png", "image/png")

        assert ".pdf" in exc_info.value.message

    def test_supported_extensions(self) -> None:
        assert {"txt", "md", "pdf", "docx"} <= set(DocumentLoaderFactory.get_supported_extensions())


class TestExtract:
    """Test cases for DocumentLoaderFactory.extract."""

    @pytest.mark.asyncio
    async def test_text(self) -> None:
        data = "\ufeffAccount A1\r\n\r\n\r\n\r\nParty   P1".encode("utf-8")

        text = await DocumentLoaderFactory.extract(data, "statement.txt", "text/plain")

        assert text == "Account A1\n\nParty P1"

    @pytest.mark.asyncio
    async def test_empty_text_fails(self) -> None:
        with pytest.raises(ExtractionFailedError):
            await DocumentLoaderFactory.extract(b"  \n\n  ", "blank.txt", "text/plain")

    @pytest.mark.asyncio
    async def test_undecodable_text_fails(self) -> None:
        with pytest.raises(ExtractionFailedError):
            await DocumentLoaderFactory.extract(b"\xff\xfe\xfa", "broken.txt", "text/plain")

    @pytest.mark.asyncio
    async def test_docx_paragraphs_and_tables(self) -> None:
        data = make_docx(
            "Non-disclosure agreement",
            "Between Acme and Globex",
            table=[["Party", "Role"], ["Acme", "Discloser"]],
        )

        text = await DocumentLoaderFactory.extract(data, "nda.docx", DOCX_MIME)

        assert text.startswith("Non-disclosure agreement\n\nBetween Acme and Globex")
        assert "Party | Role\nAcme | Discloser" in text

    @pytest.mark.asyncio
    async def test_corrupt_docx_fails(self) -> None:
        with pytest.raises(ExtractionFailedError):
            await DocumentLoaderFactory.extract(b"not a zip archive", "broken.docx", DOCX_MIME)

    @pytest.mark.asyncio
    async def test_corrupt_pdf_fails(self) -> None:
        with pytest.raises(ExtractionFailedError):
            await DocumentLoaderFactory.extract(b"%PDF-1.4 garbage", "broken.pdf", "application/pdf")
