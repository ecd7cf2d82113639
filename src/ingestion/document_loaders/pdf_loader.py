"""
PDF Document Loader.
"""

import io

import structlog
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from src.ingestion.document_loaders.base import BaseDocumentLoader, DocumentLoaderFactory
from src.ingestion.errors import ExtractionFailedError

logger = structlog.get_logger(__name__)


@DocumentLoaderFactory.register
class PDFLoader(BaseDocumentLoader):
    """Loader for PDF files, using pypdf."""

    SUPPORTED_EXTENSIONS = ["pdf"]
    SUPPORTED_MIME_TYPES = ["application/pdf"]

    async def load(self, data: bytes, filename: str) -> str:
        logger.info("Loading PDF file", filename=filename)

        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except PdfReadError as e:
            raise ExtractionFailedError(f"Failed to parse PDF {filename}: {e}") from e

        text = "\n\n".join(p for p in pages if p.strip())
        if not text:
            logger.warning("No text extracted from PDF", filename=filename)

        logger.info("PDF loaded", filename=filename, pages=len(pages), char_count=len(text))
        return text
