"""
Document Loaders.

Text extraction for the formats the pipeline accepts:
- Plain text / Markdown (.txt, .md)
- PDF (.pdf)
- Microsoft Word (.docx)
"""

from src.ingestion.document_loaders.base import (
    BaseDocumentLoader,
    DocumentLoaderFactory,
    clean_text,
)
from src.ingestion.document_loaders.docx_loader import DOCXLoader
from src.ingestion.document_loaders.pdf_loader import PDFLoader
from src.ingestion.document_loaders.text_loader import TextLoader

__all__ = [
    "BaseDocumentLoader",
    "DocumentLoaderFactory",
    "clean_text",
    "TextLoader",
    "PDFLoader",
    "DOCXLoader",
]
