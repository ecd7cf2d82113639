"""
Text Extraction Registry.

Each supported format has a loader class turning raw bytes into text.
Loaders register themselves with ``@DocumentLoaderFactory.register``;
importing ``src.ingestion.document_loaders`` registers the built-in ones.
"""

import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import ClassVar, TypeVar

import structlog

from src.ingestion.errors import ExtractionFailedError, UnsupportedFormatError

logger = structlog.get_logger(__name__)

_BLANK_RUNS = re.compile(r"\n{3,}")
_INLINE_SPACE = re.compile(r"[ \t]+")


def clean_text(text: str) -> str:
    """Normalize line endings, collapse blank-line runs and squeeze spaces/tabs."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _BLANK_RUNS.sub("\n\n", text)
    return _INLINE_SPACE.sub(" ", text).strip()


class BaseDocumentLoader(ABC):
    """Extracts the plain text of one file format."""

    SUPPORTED_EXTENSIONS: ClassVar[list[str]] = []
    SUPPORTED_MIME_TYPES: ClassVar[list[str]] = []

    @abstractmethod
    async def load(self, data: bytes, filename: str) -> str:
        """
        Extract text from file content.

        Raises:
            ExtractionFailedError: The content could not be read
        """


LoaderT = TypeVar("LoaderT", bound=type[BaseDocumentLoader])


def _extension(filename: str) -> str:
    return Path(filename).suffix.lower().lstrip(".")


def _bare_mime(mime_type: str) -> str:
    # "text/plain; charset=utf-8" -> "text/plain"
    return mime_type.split(";", 1)[0].strip().lower()


class DocumentLoaderFactory:
    """
    Loader lookup by declared MIME type, then by file extension.

    Uploads often arrive as ``application/octet-stream``, so an unknown
    MIME type falls through to the extension.
    """

    _by_extension: ClassVar[dict[str, type[BaseDocumentLoader]]] = {}
    _by_mime_type: ClassVar[dict[str, type[BaseDocumentLoader]]] = {}

    @classmethod
    def register(cls, loader_class: LoaderT) -> LoaderT:
        cls._by_extension.update({e.lower().lstrip("."): loader_class for e in loader_class.SUPPORTED_EXTENSIONS})
        cls._by_mime_type.update({_bare_mime(m): loader_class for m in loader_class.SUPPORTED_MIME_TYPES})
        return loader_class

    @classmethod
    def get_supported_extensions(cls) -> list[str]:
        return list(cls._by_extension)

    @classmethod
    def get_loader(cls, filename: str, mime_type: str | None = None) -> BaseDocumentLoader:
        """
        Raises:
            UnsupportedFormatError: Neither the MIME type nor the extension is handled
        """
        loader_class = cls._by_mime_type.get(_bare_mime(mime_type)) if mime_type else None
        if loader_class is None:
            loader_class = cls._by_extension.get(_extension(filename))
        if loader_class is None:
            supported = ", ".join(f".{e}" for e in cls.get_supported_extensions())
            raise UnsupportedFormatError(
                f"Unsupported file type: {mime_type or 'unknown'} (.{_extension(filename)}). Supported: {supported}"
            )
        return loader_class()

    @classmethod
    async def extract(cls, data: bytes, filename: str, mime_type: str | None = None) -> str:
        """
        Extract and clean the text of an uploaded file.

        Raises:
            UnsupportedFormatError: No loader for the format
            ExtractionFailedError: The loader failed or the file holds no text
        """
        loader = cls.get_loader(filename, mime_type)
        loader_name = type(loader).__name__

        try:
            text = clean_text(await loader.load(data, filename))
        except ExtractionFailedError:
            raise
        except Exception as e:
            # Parser libraries raise their own error types for malformed files
            logger.error("Text extraction failed", filename=filename, loader=loader_name, error=str(e))
            raise ExtractionFailedError(f"Failed to parse {filename}: {e}") from e

        if not text:
            raise ExtractionFailedError(f"No text extracted from {filename}")

        logger.info("Text extracted", filename=filename, loader=loader_name, char_count=len(text))
        return text
