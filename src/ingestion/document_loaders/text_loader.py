"""
Plain Text Document Loader.
"""

import structlog

from src.ingestion.document_loaders.base import BaseDocumentLoader, DocumentLoaderFactory
from src.ingestion.errors import ExtractionFailedError

logger = structlog.get_logger(__name__)


@DocumentLoaderFactory.register
class TextLoader(BaseDocumentLoader):
    """Loader for plain text and markdown files."""

    SUPPORTED_EXTENSIONS = ["txt", "text", "md", "markdown"]
    SUPPORTED_MIME_TYPES = ["text/plain", "text/markdown"]

    def __init__(self, encoding: str = "utf-8-sig"):
        self.encoding = encoding

    async def load(self, data: bytes, filename: str) -> str:
        logger.info("Loading text file", filename=filename)
        try:
            return data.decode(self.encoding)
        except UnicodeDecodeError as e:
            logger.error("Encoding error", filename=filename, error=str(e))
            raise ExtractionFailedError(f"Failed to decode {filename}: {e}") from e
