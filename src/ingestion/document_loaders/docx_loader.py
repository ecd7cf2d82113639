"""
DOCX Document Loader.

Loads Microsoft Word (.docx) documents: paragraphs first, then tables
as pipe-separated rows.
"""

import io

import structlog
from docx import Document
from docx.opc.exceptions import PackageNotFoundError

from src.ingestion.document_loaders.base import BaseDocumentLoader, DocumentLoaderFactory
from src.ingestion.errors import ExtractionFailedError

logger = structlog.get_logger(__name__)


@DocumentLoaderFactory.register
class DOCXLoader(BaseDocumentLoader):
    """Loader for Microsoft Word documents, using python-docx."""

    SUPPORTED_EXTENSIONS = ["docx"]
    SUPPORTED_MIME_TYPES = [
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ]

    def __init__(self, include_tables: bool = True):
        self.include_tables = include_tables

    async def load(self, data: bytes, filename: str) -> str:
        logger.info("Loading DOCX file", filename=filename)

        try:
            doc = Document(io.BytesIO(data))
        except PackageNotFoundError as e:
            logger.error("Invalid DOCX file", filename=filename)
            raise ExtractionFailedError(f"Invalid or corrupted DOCX file: {filename}") from e

        parts = [p.text for p in doc.paragraphs if p.text.strip()]

        if self.include_tables:
            for table in doc.tables:
                rows = [" | ".join(cell.text.strip() for cell in row.cells) for row in table.rows]
                parts.append("\n".join(r for r in rows if r.strip(" |")))

        text = "\n\n".join(p for p in parts if p)
        logger.info(
            "DOCX loaded",
            filename=filename,
            paragraphs=len(doc.paragraphs),
            tables=len(doc.tables),
            char_count=len(text),
        )
        return text
