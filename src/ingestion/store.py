"""
Persistent Store for Pipeline Artifacts.

Holds documents, segments, schemas and generated statement results:
- CRUD by id and query by status
- Uniqueness of results per (document, segment) pair
- In-memory backend for tests and single-process runs
- JSON file backend that survives restarts
"""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel

from src.ingestion.errors import DuplicateResultError, NotFoundError
from src.ingestion.state import (
    Document,
    DocumentStatus,
    GeneratedStatementResult,
    GraphSchema,
    Segment,
)

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class DocumentStore(ABC):
    """Abstract base class for pipeline artifact storage."""

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_document(self, document: Document) -> Document:
        """Insert a new document."""
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> Document | None:
        """Get a document by ID."""
        pass

    @abstractmethod
    async def update_document(self, document: Document) -> Document:
        """Replace an existing document. Raises NotFoundError if absent."""
        pass

    @abstractmethod
    async def list_documents(self, status: DocumentStatus | None = None) -> list[Document]:
        """List documents, optionally filtered by status, oldest first."""
        pass

    # -------------------------------------------------------------------------
    # Segments
    # -------------------------------------------------------------------------

    @abstractmethod
    async def replace_segments(self, document_id: str, segments: list[Segment]) -> None:
        """Replace all segments of a document."""
        pass

    @abstractmethod
    async def list_segments(self, document_id: str) -> list[Segment]:
        """Segments of a document ordered by index."""
        pass

    @abstractmethod
    async def update_segment(self, segment: Segment) -> Segment:
        """Replace an existing segment. Raises NotFoundError if absent."""
        pass

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_schema(self, document_id: str) -> GraphSchema | None:
        pass

    @abstractmethod
    async def save_schema(self, schema: GraphSchema) -> GraphSchema:
        pass

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    @abstractmethod
    async def save_result(self, result: GeneratedStatementResult) -> GeneratedStatementResult:
        """
        Insert a new result.

        Raises:
            DuplicateResultError: A result for the same (document, segment) exists
        """
        pass

    @abstractmethod
    async def update_result(self, result: GeneratedStatementResult) -> GeneratedStatementResult:
        pass

    @abstractmethod
    async def list_results(self, document_id: str) -> list[GeneratedStatementResult]:
        """Results of a document; whole-document first, then by segment index."""
        pass

    @abstractmethod
    async def delete_results(self, document_id: str) -> int:
        """Delete all results of a document. Returns count deleted."""
        pass

    async def get_result(
        self,
        document_id: str,
        segment_id: str | None = None,
    ) -> GeneratedStatementResult | None:
        """The result for a (document, segment) pair; ``segment_id=None`` is the whole document."""
        for result in await self.list_results(document_id):
            if result.segment_id == segment_id:
                return result
        return None

    async def require_document(self, document_id: str) -> Document:
        document = await self.get_document(document_id)
        if document is None:
            raise NotFoundError(f"Document not found: {document_id}", document_id=document_id)
        return document

    async def close(self) -> None:
        """Release backend resources."""
        return None


def _result_sort_key(result: GeneratedStatementResult) -> tuple[int, int]:
    if result.segment_id is None:
        return (0, 0)
    return (1, result.segment_index if result.segment_index is not None else 0)


def _check_unique(
    existing: list[GeneratedStatementResult],
    result: GeneratedStatementResult,
) -> None:
    for other in existing:
        if other.id != result.id and other.segment_id == result.segment_id:
            raise DuplicateResultError(
                f"Result already exists for document {result.document_id} "
                f"segment {result.segment_id or '<full document>'}",
                document_id=result.document_id,
            )


class InMemoryDocumentStore(DocumentStore):
    """In-memory store implementation."""

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._segments: dict[str, list[Segment]] = {}
        self._schemas: dict[str, GraphSchema] = {}
        self._results: dict[str, list[GeneratedStatementResult]] = {}

    async def create_document(self, document: Document) -> Document:
        self._documents[document.id] = document.model_copy(deep=True)
        return document

    async def get_document(self, document_id: str) -> Document | None:
        document = self._documents.get(document_id)
        return document.model_copy(deep=True) if document else None

    async def update_document(self, document: Document) -> Document:
        if document.id not in self._documents:
            raise NotFoundError(f"Document not found: {document.id}", document_id=document.id)
        document.touch()
        self._documents[document.id] = document.model_copy(deep=True)
        return document

    async def list_documents(self, status: DocumentStatus | None = None) -> list[Document]:
        documents = [
            d.model_copy(deep=True)
            for d in self._documents.values()
            if status is None or d.status == status
        ]
        documents.sort(key=lambda d: d.created_at)
        return documents

    async def replace_segments(self, document_id: str, segments: list[Segment]) -> None:
        self._segments[document_id] = [s.model_copy(deep=True) for s in segments]

    async def list_segments(self, document_id: str) -> list[Segment]:
        segments = [s.model_copy(deep=True) for s in self._segments.get(document_id, [])]
        segments.sort(key=lambda s: s.index)
        return segments

    async def update_segment(self, segment: Segment) -> Segment:
        stored = self._segments.get(segment.document_id, [])
        for i, existing in enumerate(stored):
            if existing.id == segment.id:
                segment.touch()
                stored[i] = segment.model_copy(deep=True)
                return segment
        raise NotFoundError(f"Segment not found: {segment.id}", document_id=segment.document_id)

    async def get_schema(self, document_id: str) -> GraphSchema | None:
        schema = self._schemas.get(document_id)
        return schema.model_copy(deep=True) if schema else None

    async def save_schema(self, schema: GraphSchema) -> GraphSchema:
        if schema.document_id is None:
            raise ValueError("Schema must belong to a document")
        self._schemas[schema.document_id] = schema.model_copy(deep=True)
        return schema

    async def save_result(self, result: GeneratedStatementResult) -> GeneratedStatementResult:
        existing = self._results.setdefault(result.document_id, [])
        _check_unique(existing, result)
        existing.append(result.model_copy(deep=True))
        return result

    async def update_result(self, result: GeneratedStatementResult) -> GeneratedStatementResult:
        stored = self._results.get(result.document_id, [])
        for i, existing in enumerate(stored):
            if existing.id == result.id:
                result.touch()
                stored[i] = result.model_copy(deep=True)
                return result
        raise NotFoundError(f"Result not found: {result.id}", document_id=result.document_id)

    async def list_results(self, document_id: str) -> list[GeneratedStatementResult]:
        results = [r.model_copy(deep=True) for r in self._results.get(document_id, [])]
        results.sort(key=_result_sort_key)
        return results

    async def delete_results(self, document_id: str) -> int:
        return len(self._results.pop(document_id, []))


class JsonFileDocumentStore(DocumentStore):
    """
    File-based store implementation.

    Layout under the data directory::

        documents/{document_id}.json
        segments/{document_id}.json   (list)
        schemas/{document_id}.json
        results/{document_id}.json    (list)

    Writes are serialized by a lock so concurrent chunk generation cannot
    interleave read-modify-write cycles on the same results file.
    """

    def __init__(self, directory: str | Path):
        self._dir = Path(directory)
        for sub in ("documents", "segments", "schemas", "results"):
            (self._dir / sub).mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, collection: str, document_id: str) -> Path:
        return self._dir / collection / f"{document_id}.json"

    @staticmethod
    def _read(path: Path) -> Any:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _write(path: Path, payload: Any) -> None:
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        tmp.replace(path)

    def _load_one(self, model: type[M], collection: str, document_id: str) -> M | None:
        data = self._read(self._path(collection, document_id))
        return model.model_validate(data) if data is not None else None

    def _load_many(self, model: type[M], collection: str, document_id: str) -> list[M]:
        data = self._read(self._path(collection, document_id)) or []
        return [model.model_validate(item) for item in data]

    def _save_one(self, collection: str, document_id: str, item: BaseModel) -> None:
        self._write(self._path(collection, document_id), item.model_dump(mode="json", by_alias=True))

    def _save_many(self, collection: str, document_id: str, items: list[BaseModel]) -> None:
        self._write(
            self._path(collection, document_id),
            [item.model_dump(mode="json", by_alias=True) for item in items],
        )

    async def create_document(self, document: Document) -> Document:
        async with self._lock:
            self._save_one("documents", document.id, document)
        return document

    async def get_document(self, document_id: str) -> Document | None:
        return self._load_one(Document, "documents", document_id)

    async def update_document(self, document: Document) -> Document:
        async with self._lock:
            if not self._path("documents", document.id).exists():
                raise NotFoundError(f"Document not found: {document.id}", document_id=document.id)
            document.touch()
            self._save_one("documents", document.id, document)
        return document

    async def list_documents(self, status: DocumentStatus | None = None) -> list[Document]:
        documents = []
        for path in sorted((self._dir / "documents").glob("*.json")):
            try:
                document = Document.model_validate(self._read(path))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable document file", path=str(path), error=str(e))
                continue
            if status is None or document.status == status:
                documents.append(document)
        documents.sort(key=lambda d: d.created_at)
        return documents

    async def replace_segments(self, document_id: str, segments: list[Segment]) -> None:
        async with self._lock:
            self._save_many("segments", document_id, list(segments))

    async def list_segments(self, document_id: str) -> list[Segment]:
        segments = self._load_many(Segment, "segments", document_id)
        segments.sort(key=lambda s: s.index)
        return segments

    async def update_segment(self, segment: Segment) -> Segment:
        async with self._lock:
            stored = self._load_many(Segment, "segments", segment.document_id)
            for i, existing in enumerate(stored):
                if existing.id == segment.id:
                    segment.touch()
                    stored[i] = segment
                    self._save_many("segments", segment.document_id, stored)
                    return segment
        raise NotFoundError(f"Segment not found: {segment.id}", document_id=segment.document_id)

    async def get_schema(self, document_id: str) -> GraphSchema | None:
        return self._load_one(GraphSchema, "schemas", document_id)

    async def save_schema(self, schema: GraphSchema) -> GraphSchema:
        if schema.document_id is None:
            raise ValueError("Schema must belong to a document")
        async with self._lock:
            self._save_one("schemas", schema.document_id, schema)
        return schema

    async def save_result(self, result: GeneratedStatementResult) -> GeneratedStatementResult:
        async with self._lock:
            stored = self._load_many(GeneratedStatementResult, "results", result.document_id)
            _check_unique(stored, result)
            stored.append(result)
            self._save_many("results", result.document_id, stored)
        return result

    async def update_result(self, result: GeneratedStatementResult) -> GeneratedStatementResult:
        async with self._lock:
            stored = self._load_many(GeneratedStatementResult, "results", result.document_id)
            for i, existing in enumerate(stored):
                if existing.id == result.id:
                    result.touch()
                    stored[i] = result
                    self._save_many("results", result.document_id, stored)
                    return result
        raise NotFoundError(f"Result not found: {result.id}", document_id=result.document_id)

    async def list_results(self, document_id: str) -> list[GeneratedStatementResult]:
        results = self._load_many(GeneratedStatementResult, "results", document_id)
        results.sort(key=_result_sort_key)
        return results

    async def delete_results(self, document_id: str) -> int:
        async with self._lock:
            path = self._path("results", document_id)
            count = len(self._load_many(GeneratedStatementResult, "results", document_id))
            if path.exists():
                path.unlink()
        return count


def create_document_store(backend: str, data_dir: str | Path) -> DocumentStore:
    """Build the configured store backend."""
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "file":
        return JsonFileDocumentStore(data_dir)
    raise ValueError(f"Unknown storage backend: {backend}")
