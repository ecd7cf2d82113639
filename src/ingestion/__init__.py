"""
Document Ingestion Module.

Data model, storage and text handling for the document-to-graph
pipeline. The orchestrator, schema extraction and graph loading live in
``src.ingestion.pipeline``, ``src.ingestion.schema_extractor`` and
``src.ingestion.graph_loader``.
"""

from src.ingestion.chunking import TextSegment, chunk_text, estimate_tokens
from src.ingestion.document_type import DocumentType, detect_document_type, get_type_hints
from src.ingestion.errors import (
    IngestionError,
    NotFoundError,
    PipelineError,
    PipelineStageError,
    TransactionError,
    ValidationError,
)
from src.ingestion.state import (
    Document,
    DocumentStatus,
    GeneratedStatementResult,
    GraphSchema,
    MutationCounts,
    PipelineResult,
    PipelineStatus,
    RelationshipDescriptor,
    ResultStatus,
    Segment,
    SegmentStatus,
)
from src.ingestion.store import (
    DocumentStore,
    InMemoryDocumentStore,
    JsonFileDocumentStore,
    create_document_store,
)

__all__ = [
    # State
    "Document",
    "DocumentStatus",
    "Segment",
    "SegmentStatus",
    "GraphSchema",
    "RelationshipDescriptor",
    "GeneratedStatementResult",
    "ResultStatus",
    "MutationCounts",
    "PipelineResult",
    "PipelineStatus",
    # Errors
    "PipelineError",
    "PipelineStageError",
    "ValidationError",
    "TransactionError",
    "IngestionError",
    "NotFoundError",
    # Text
    "TextSegment",
    "chunk_text",
    "estimate_tokens",
    "DocumentType",
    "detect_document_type",
    "get_type_hints",
    # Storage
    "DocumentStore",
    "InMemoryDocumentStore",
    "JsonFileDocumentStore",
    "create_document_store",
]
