"""
Schema Store.

Holds the single graph schema of each document. The schema is extracted
once, on first request, and is read-only afterwards: every later
generation call for the document reuses it.
"""

import structlog

from src.ingestion.document_type import DocumentType
from src.ingestion.errors import NotFoundError
from src.ingestion.reliability.locks import KeyedLock
from src.ingestion.schema_extractor import SchemaExtractor
from src.ingestion.state import Document, GraphSchema
from src.ingestion.store import DocumentStore

logger = structlog.get_logger(__name__)


class SchemaStore:
    """Extract-once access to per-document schemas."""

    def __init__(self, store: DocumentStore, extractor: SchemaExtractor) -> None:
        self._store = store
        self._extractor = extractor
        self._locks = KeyedLock()

    async def get(self, document_id: str) -> GraphSchema | None:
        return await self._store.get_schema(document_id)

    async def require(self, document_id: str) -> GraphSchema:
        schema = await self.get(document_id)
        if schema is None:
            raise NotFoundError(f"Schema not found for document: {document_id}", document_id=document_id)
        return schema

    async def get_or_extract(self, document: Document) -> tuple[GraphSchema, bool]:
        """
        Return the document's schema, extracting it if none exists.

        Returns:
            (schema, extracted) where ``extracted`` is False when an existing
            schema was reused
        """
        async with self._locks.hold(document.id):
            existing = await self._store.get_schema(document.id)
            if existing is not None:
                logger.info("Using existing schema", document_id=document.id)
                return existing, False

            if not document.full_text:
                raise NotFoundError(f"No text found for document {document.id}", document_id=document.id)

            schema = await self._extractor.extract(
                document.id,
                document.full_text,
                document.document_type or DocumentType.GENERAL,
            )
            schema = schema.normalized()
            schema.document_id = document.id
            await self._store.save_schema(schema)

            logger.info(
                "Schema saved",
                document_id=document.id,
                node_count=len(schema.nodes),
                relationship_count=len(schema.relationships),
            )
            return schema, True
