"""
Pipeline State and Models.

Defines the persisted data model of the document-to-graph pipeline:
- Document and Segment lifecycles
- The per-document graph schema
- Generated statement results with execution outcome
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Enums
# =============================================================================


class DocumentStatus(str, Enum):
    """Lifecycle of a document through the pipeline."""

    UPLOADED = "uploaded"
    PARSING = "parsing"
    PARSED = "parsed"
    SCHEMA_EXTRACTING = "schema_extracting"
    SCHEMA_EXTRACTED = "schema_extracted"
    STATEMENT_GENERATING = "statement_generating"
    STATEMENT_GENERATED = "statement_generated"
    INGESTING = "ingesting"
    COMPLETED = "completed"
    ERROR = "error"


class SegmentStatus(str, Enum):
    """Lifecycle of a chunk."""

    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    INGESTING = "ingesting"
    INGESTED = "ingested"
    ERROR = "error"


class ResultStatus(str, Enum):
    """Lifecycle of a generated statement program."""

    GENERATED = "generated"
    VALIDATED = "validated"
    EXECUTED = "executed"
    ERROR = "error"


class PipelineStage(str, Enum):
    """Stages reported to metrics and logs."""

    PARSE = "parse"
    CHUNK = "chunk"
    EXTRACT_SCHEMA = "extract_schema"
    CREATE_CONSTRAINTS = "create_constraints"
    GENERATE = "generate"
    CORRECT = "correct"
    CONFIRM = "confirm"
    INGEST = "ingest"


# =============================================================================
# Models
# =============================================================================


class Document(BaseModel):
    """One submitted source file."""

    id: str = Field(default_factory=new_id, description="Document identifier")
    filename: str = Field(..., description="Original filename")
    mime_type: str = Field(default="application/octet-stream", description="Declared MIME type")
    size: int = Field(default=0, ge=0, description="File size in bytes")
    file_path: str | None = Field(default=None, description="Where the uploaded bytes are stored")
    status: DocumentStatus = Field(default=DocumentStatus.UPLOADED, description="Lifecycle status")
    error: str | None = Field(default=None, description="Last error message")
    full_text: str | None = Field(default=None, description="Extracted text, set once parsed")
    document_type: str | None = Field(default=None, description="Detected document type")
    segment_count: int = Field(default=0, ge=0, description="Number of chunks created")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()


class Segment(BaseModel):
    """A contiguous, possibly overlapping slice of a document's words."""

    id: str = Field(default_factory=new_id, description="Segment identifier")
    document_id: str = Field(..., description="Parent document ID")
    index: int = Field(..., ge=0, description="Zero-based position in the document")
    text: str = Field(..., description="Chunk text")
    word_start: int = Field(default=0, ge=0, description="First word index")
    word_end: int = Field(default=0, ge=0, description="Word index after the last word")
    word_count: int = Field(default=0, ge=0, description="Words in the chunk")
    status: SegmentStatus = Field(default=SegmentStatus.PENDING)
    error: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()


class RelationshipDescriptor(BaseModel):
    """A relationship type allowed between two node labels."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str = Field(..., min_length=1)
    from_label: str = Field(..., min_length=1, alias="from")
    to_label: str = Field(..., min_length=1, alias="to")

    def key(self) -> tuple[str, str, str]:
        return (self.type, self.from_label, self.to_label)


class GraphSchema(BaseModel):
    """
    Node labels with their property names, plus relationship descriptors.

    Use :meth:`normalized` before persisting; it removes duplicate labels,
    properties and relationships while keeping first-seen order.
    """

    model_config = ConfigDict(populate_by_name=True)

    document_id: str | None = Field(default=None, description="Owning document")
    nodes: dict[str, list[str]] = Field(default_factory=dict)
    relationships: list[RelationshipDescriptor] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def normalized(self) -> "GraphSchema":
        nodes: dict[str, list[str]] = {}
        for label, props in self.nodes.items():
            label = label.strip()
            if not label:
                continue
            merged = nodes.setdefault(label, [])
            for prop in props:
                prop = str(prop).strip()
                if prop and prop not in merged:
                    merged.append(prop)

        seen: set[tuple[str, str, str]] = set()
        relationships: list[RelationshipDescriptor] = []
        for rel in self.relationships:
            if rel.key() in seen:
                continue
            seen.add(rel.key())
            relationships.append(rel)

        return GraphSchema(
            document_id=self.document_id,
            nodes=nodes,
            relationships=relationships,
            created_at=self.created_at,
        )

    @property
    def is_empty(self) -> bool:
        return not self.nodes and not self.relationships

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "nodes": self.nodes,
            "relationships": [
                {"type": r.type, "from": r.from_label, "to": r.to_label}
                for r in self.relationships
            ],
        }


class GeneratedStatementResult(BaseModel):
    """
    Statement program generated for a whole document or for one segment.

    ``segment_id`` is None for the whole-document result.
    """

    id: str = Field(default_factory=new_id)
    document_id: str = Field(...)
    segment_id: str | None = Field(default=None)
    segment_index: int | None = Field(default=None)
    raw_statements: str = Field(default="", description="Model output before correction")
    statements: str = Field(default="", description="Corrected statement program")
    status: ResultStatus = Field(default=ResultStatus.GENERATED)
    error: str | None = Field(default=None)
    execution_time_ms: float | None = Field(default=None)
    nodes_created: int = Field(default=0, ge=0)
    relationships_created: int = Field(default=0, ge=0)
    generation_model: str | None = Field(default=None)
    generation_provider: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_full_document(self) -> bool:
        return self.segment_id is None

    def touch(self) -> None:
        self.updated_at = utcnow()


class MutationCounts(BaseModel):
    """Graph mutations performed by an ingestion."""

    nodes_created: int = 0
    relationships_created: int = 0

    def __add__(self, other: "MutationCounts") -> "MutationCounts":
        return MutationCounts(
            nodes_created=self.nodes_created + other.nodes_created,
            relationships_created=self.relationships_created + other.relationships_created,
        )


class PipelineResult(BaseModel):
    """Outcome of one orchestrator run."""

    document_id: str
    status: DocumentStatus
    approved: bool = True
    full_document: bool = True
    result_count: int = 0
    mutations: MutationCounts = Field(default_factory=MutationCounts)
    statement_file: str | None = None
    reused: bool = False


class PipelineStatus(BaseModel):
    """Progress report for one document."""

    document: Document
    segments_total: int = 0
    segments_by_status: dict[str, int] = Field(default_factory=dict)
    has_schema: bool = False
    results_total: int = 0
    results_generated: int = 0
    results_executed: int = 0
    results_failed: int = 0
    mutations: MutationCounts = Field(default_factory=MutationCounts)
