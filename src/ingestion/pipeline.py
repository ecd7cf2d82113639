"""
Document-to-Graph Pipeline Orchestrator.

Drives a document through the staged state machine:

    uploaded -> parsing -> parsed -> schema_extracting -> schema_extracted
      -> statement_generating -> statement_generated -> ingesting -> completed

``error`` is reachable from every non-terminal state. After each stage
the artifacts (text, segments, schema, results) are persisted, so a run
that failed or was interrupted resumes at the first stage whose artifact
is missing instead of repeating completed work.
"""

import asyncio
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path

import structlog

from src.config.settings import PipelineSettings
from src.cypher.archive import StatementArchive, safe_filename
from src.cypher.corrector import StatementCorrector, synthesize_constraints
from src.cypher.generator import ERROR_PLACEHOLDER, StatementGenerator
from src.graph.neo4j_client import GraphStore
from src.ingestion.chunking import chunk_text
from src.ingestion.document_loaders import DocumentLoaderFactory
from src.ingestion.document_type import DocumentType, detect_document_type
from src.ingestion.errors import (
    EmptyGenerationError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
    PipelineStageError,
)
from src.ingestion.graph_loader import IngestionEngine
from src.ingestion.reliability.locks import KeyedLock
from src.ingestion.reliability.metrics import InMemoryMetricsRecorder, MetricsRecorder
from src.ingestion.schema_extractor import SchemaExtractor
from src.ingestion.schema_store import SchemaStore
from src.ingestion.state import (
    Document,
    DocumentStatus,
    GeneratedStatementResult,
    GraphSchema,
    MutationCounts,
    PipelineResult,
    PipelineStage,
    PipelineStatus,
    ResultStatus,
    Segment,
    SegmentStatus,
)
from src.ingestion.store import DocumentStore
from src.llm.provider import TextGenerator
from src.observability.logging import LogContext

logger = structlog.get_logger(__name__)


# =============================================================================
# State machine
# =============================================================================

ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.UPLOADED: frozenset({DocumentStatus.PARSING}),
    DocumentStatus.PARSING: frozenset({DocumentStatus.PARSED}),
    DocumentStatus.PARSED: frozenset({DocumentStatus.SCHEMA_EXTRACTING}),
    DocumentStatus.SCHEMA_EXTRACTING: frozenset({DocumentStatus.SCHEMA_EXTRACTED}),
    DocumentStatus.SCHEMA_EXTRACTED: frozenset({DocumentStatus.STATEMENT_GENERATING}),
    DocumentStatus.STATEMENT_GENERATING: frozenset({DocumentStatus.STATEMENT_GENERATED}),
    # A rejected confirmation leaves the document here; a new run regenerates
    DocumentStatus.STATEMENT_GENERATED: frozenset(
        {DocumentStatus.INGESTING, DocumentStatus.STATEMENT_GENERATING}
    ),
    DocumentStatus.INGESTING: frozenset({DocumentStatus.COMPLETED}),
    DocumentStatus.COMPLETED: frozenset(),
    DocumentStatus.ERROR: frozenset(
        {
            DocumentStatus.PARSING,
            DocumentStatus.SCHEMA_EXTRACTING,
            DocumentStatus.STATEMENT_GENERATING,
            DocumentStatus.INGESTING,
        }
    ),
}

TERMINAL_STATUSES = frozenset({DocumentStatus.COMPLETED})


def can_transition(current: DocumentStatus, target: DocumentStatus) -> bool:
    """Staying in the same state is allowed so an interrupted stage can rerun."""
    if current == target:
        return True
    if target == DocumentStatus.ERROR:
        return current not in TERMINAL_STATUSES
    return target in ALLOWED_TRANSITIONS[current]


# Stage groups in execution order: (stage, running status, done status)
STAGE_STATUSES: list[tuple[PipelineStage, DocumentStatus, DocumentStatus]] = [
    (PipelineStage.PARSE, DocumentStatus.PARSING, DocumentStatus.PARSED),
    (PipelineStage.EXTRACT_SCHEMA, DocumentStatus.SCHEMA_EXTRACTING, DocumentStatus.SCHEMA_EXTRACTED),
    (PipelineStage.GENERATE, DocumentStatus.STATEMENT_GENERATING, DocumentStatus.STATEMENT_GENERATED),
    (PipelineStage.INGEST, DocumentStatus.INGESTING, DocumentStatus.COMPLETED),
]

_STAGE_INDEX = {stage: i for i, (stage, _, _) in enumerate(STAGE_STATUSES)}


def _status_stage(status: DocumentStatus) -> PipelineStage | None:
    """The stage a document in ``status`` continues with (None for error)."""
    if status == DocumentStatus.UPLOADED:
        return PipelineStage.PARSE
    for i, (stage, running, done) in enumerate(STAGE_STATUSES):
        if status == running:
            return stage
        if status == done and i + 1 < len(STAGE_STATUSES):
            return STAGE_STATUSES[i + 1][0]
    return None


def _has_statements(results: list[GeneratedStatementResult]) -> bool:
    """True when some result carries statements worth ingesting (corrected or not yet corrected)."""
    return any(
        r.statements.strip() or (r.raw_statements.strip() and r.status != ResultStatus.ERROR)
        for r in results
    )


def _needs_correction(results: list[GeneratedStatementResult]) -> bool:
    """True when some generated result still has only raw, uncorrected statements."""
    return any(
        r.status != ResultStatus.ERROR and r.raw_statements.strip() and not r.statements.strip()
        for r in results
    )


ConfirmationHook = Callable[[Document, list[GeneratedStatementResult]], Awaitable[bool]]


async def auto_approve(document: Document, results: list[GeneratedStatementResult]) -> bool:
    return True


# =============================================================================
# Orchestrator
# =============================================================================


class PipelineOrchestrator:
    """
    Runs documents through parse, schema, generation and ingestion.

    Usage:
        orchestrator = PipelineOrchestrator(store, graph, generator, settings.pipeline)
        document = await orchestrator.submit("report.pdf", data, "application/pdf")
        result = await orchestrator.process(document.id)
    """

    def __init__(
        self,
        store: DocumentStore,
        graph: GraphStore,
        generator: TextGenerator,
        settings: PipelineSettings | None = None,
        upload_dir: str | Path = "./uploads",
        metrics: MetricsRecorder | None = None,
        confirm: ConfirmationHook | None = None,
        corrector: StatementCorrector | None = None,
        schema_store: SchemaStore | None = None,
        statement_generator: StatementGenerator | None = None,
        engine: IngestionEngine | None = None,
        archive: StatementArchive | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or PipelineSettings()
        self._upload_dir = Path(upload_dir)
        self._metrics = metrics or InMemoryMetricsRecorder()
        self._confirm = confirm or auto_approve
        self._corrector = corrector or StatementCorrector(
            enable_completion_pass=self._settings.enable_completion_pass,
            promote_read_edges=self._settings.promote_read_edges,
        )
        self._schemas = schema_store or SchemaStore(store, SchemaExtractor(generator, self._settings))
        self._generator = statement_generator or StatementGenerator(generator, self._settings)
        self._engine = engine or IngestionEngine(graph, store)
        if archive is None and self._settings.save_statements:
            archive = StatementArchive(self._settings.statement_output_dir)
        self._archive = archive
        self._locks = KeyedLock()

    @property
    def metrics(self) -> MetricsRecorder:
        return self._metrics

    @property
    def store(self) -> DocumentStore:
        return self._store

    # =========================================================================
    # Submission and status
    # =========================================================================

    async def submit(
        self,
        filename: str,
        data: bytes,
        mime_type: str | None = None,
    ) -> Document:
        """Store the uploaded bytes and register an ``uploaded`` document."""
        # Fail fast on formats no loader handles
        DocumentLoaderFactory.get_loader(filename, mime_type)

        document = Document(
            filename=filename,
            mime_type=mime_type or "application/octet-stream",
            size=len(data),
        )
        self._upload_dir.mkdir(parents=True, exist_ok=True)
        path = self._upload_dir / f"{document.id}_{safe_filename(filename)}{Path(filename).suffix.lower()}"
        path.write_bytes(data)
        document.file_path = str(path)

        await self._store.create_document(document)
        logger.info(
            "Document submitted",
            document_id=document.id,
            filename=filename,
            size=len(data),
        )
        return document

    async def get_status(self, document_id: str) -> PipelineStatus:
        document = await self._store.require_document(document_id)
        segments = await self._store.list_segments(document_id)
        results = await self._store.list_results(document_id)
        schema = await self._store.get_schema(document_id)

        by_status: dict[str, int] = {}
        for segment in segments:
            by_status[segment.status.value] = by_status.get(segment.status.value, 0) + 1

        executed = [r for r in results if r.status == ResultStatus.EXECUTED]
        return PipelineStatus(
            document=document,
            segments_total=len(segments),
            segments_by_status=by_status,
            has_schema=schema is not None,
            results_total=len(results),
            results_generated=len([r for r in results if r.status != ResultStatus.ERROR]),
            results_executed=len(executed),
            results_failed=len([r for r in results if r.status == ResultStatus.ERROR]),
            mutations=_sum_mutations(executed),
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _transition(self, document: Document, target: DocumentStatus) -> None:
        if not can_transition(document.status, target):
            raise InvalidTransitionError(
                f"Invalid transition {document.status.value} -> {target.value}",
                document_id=document.id,
            )
        if document.status == target:
            return
        logger.debug(
            "Document status changed",
            document_id=document.id,
            from_status=document.status.value,
            to_status=target.value,
        )
        document.status = target
        if target != DocumentStatus.ERROR:
            document.error = None
        document.touch()
        await self._store.update_document(document)

    async def _record_failure(self, document: Document, stage: PipelineStage, error: BaseException) -> None:
        """Move the document to ``error``; a store failure here is logged, not raised."""
        try:
            if can_transition(document.status, DocumentStatus.ERROR):
                document.status = DocumentStatus.ERROR
            document.error = f"{stage.value}: {error}"
            document.touch()
            await self._store.update_document(document)
        except Exception as store_error:
            logger.error(
                "Failed to persist stage failure",
                document_id=document.id,
                stage=stage.value,
                error=str(store_error),
            )
        self._metrics.record_document_completion(False, document.document_type)

    @asynccontextmanager
    async def _stage(self, document: Document, stage: PipelineStage) -> AsyncGenerator[None, None]:
        """Time a stage, record its metric and turn failures into PipelineStageError."""
        start = time.perf_counter()
        with LogContext(document_id=document.id, stage=stage.value):
            try:
                yield
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                self._metrics.record_stage(stage.value, False, duration_ms, document.document_type, str(e))
                logger.error(
                    "Pipeline stage failed",
                    error_type=type(e).__name__,
                    error=str(e),
                    duration_ms=round(duration_ms, 2),
                )
                await self._record_failure(document, stage, e)
                raise PipelineStageError(
                    f"Stage '{stage.value}' failed for document {document.id}: {e}",
                    cause=e,
                    document_id=document.id,
                    stage=stage.value,
                ) from e

        duration_ms = (time.perf_counter() - start) * 1000
        self._metrics.record_stage(stage.value, True, duration_ms, document.document_type)

    # =========================================================================
    # Run
    # =========================================================================

    async def _resume_stage(self, document: Document) -> PipelineStage:
        """
        First stage whose artifact is missing, but never past the stage the
        status says comes next; stages reuse whatever artifacts exist.
        """
        if not document.full_text:
            by_artifact = PipelineStage.PARSE
        elif await self._store.get_schema(document.id) is None:
            by_artifact = PipelineStage.EXTRACT_SCHEMA
        else:
            results = await self._store.list_results(document.id)
            # Uncorrected raw output resumes at generate, which reuses it and only corrects
            if not _has_statements(results) or _needs_correction(results):
                by_artifact = PipelineStage.GENERATE
            else:
                by_artifact = PipelineStage.INGEST

        by_status = _status_stage(document.status)
        if by_status is None:
            return by_artifact
        return min(by_artifact, by_status, key=_STAGE_INDEX.__getitem__)

    async def process(self, document_id: str, full_document: bool | None = None) -> PipelineResult:
        """
        Run (or resume) the pipeline for a document.

        Args:
            document_id: Document to process
            full_document: One generation call for the whole text (True) or
                one per chunk (False); defaults to the configured mode

        Returns:
            PipelineResult; ``approved`` is False when the confirmation hook
            rejected the generated statements

        Raises:
            NotFoundError: Unknown document
            PipelineStageError: A stage failed; the document is in ``error``
        """
        async with self._locks.hold(document_id):
            document = await self._store.require_document(document_id)

            if document.status == DocumentStatus.COMPLETED:
                logger.info("Document already completed, returning stored summary", document_id=document_id)
                return await self._completed_summary(document)

            if full_document is None:
                existing = await self._store.list_results(document_id)
                if existing and _has_statements(existing):
                    full_document = any(r.is_full_document for r in existing)
                else:
                    full_document = self._settings.use_full_document

            start_stage = await self._resume_stage(document)
            logger.info(
                "Pipeline run started",
                document_id=document_id,
                status=document.status.value,
                resume_stage=start_stage.value,
                full_document=full_document,
            )

            start_index = _STAGE_INDEX[start_stage]
            if start_index <= _STAGE_INDEX[PipelineStage.PARSE]:
                await self._run_parse(document)
            if start_index <= _STAGE_INDEX[PipelineStage.EXTRACT_SCHEMA]:
                await self._run_schema(document)

            schema = await self._schemas.require(document_id)

            if start_index <= _STAGE_INDEX[PipelineStage.GENERATE]:
                await self._run_generate(document, schema, full_document)

            results = await self._store.list_results(document_id)
            statement_file = None
            if start_index <= _STAGE_INDEX[PipelineStage.GENERATE]:
                statement_file = self._write_archive(document, results)

            async with self._stage(document, PipelineStage.CONFIRM):
                approved = await self._confirm(document, results)

            if not approved:
                deleted = await self._store.delete_results(document_id)
                logger.info("Statements rejected, results discarded", document_id=document_id, deleted=deleted)
                return PipelineResult(
                    document_id=document_id,
                    status=document.status,
                    approved=False,
                    full_document=full_document,
                    result_count=0,
                    statement_file=statement_file,
                )

            mutations = await self._run_ingest(document, full_document)
            self._metrics.record_document_completion(True, document.document_type)

            logger.info(
                "Pipeline run completed",
                document_id=document_id,
                nodes_created=mutations.nodes_created,
                relationships_created=mutations.relationships_created,
            )
            return PipelineResult(
                document_id=document_id,
                status=document.status,
                full_document=full_document,
                result_count=len(results),
                mutations=mutations,
                statement_file=statement_file,
            )

    async def _completed_summary(self, document: Document) -> PipelineResult:
        results = await self._store.list_results(document.id)
        return PipelineResult(
            document_id=document.id,
            status=document.status,
            full_document=any(r.is_full_document for r in results),
            result_count=len(results),
            mutations=_sum_mutations(results),
            reused=True,
        )

    # =========================================================================
    # Stages
    # =========================================================================

    async def _run_parse(self, document: Document) -> None:
        await self._transition(document, DocumentStatus.PARSING)

        async with self._stage(document, PipelineStage.PARSE):
            if not document.full_text:
                if not document.file_path or not Path(document.file_path).is_file():
                    raise NotFoundError(
                        f"Uploaded file missing for document {document.id}",
                        document_id=document.id,
                    )
                data = Path(document.file_path).read_bytes()
                document.full_text = await DocumentLoaderFactory.extract(
                    data, document.filename, document.mime_type
                )
                document.document_type = detect_document_type(document.filename, document.full_text).value
                document.touch()
                await self._store.update_document(document)
                logger.info(
                    "Document parsed",
                    text_length=len(document.full_text),
                    document_type=document.document_type,
                )

        async with self._stage(document, PipelineStage.CHUNK):
            segments = await self._store.list_segments(document.id)
            if not segments:
                segments = [
                    Segment(
                        document_id=document.id,
                        index=piece.index,
                        text=piece.text,
                        word_start=piece.word_start,
                        word_end=piece.word_end,
                        word_count=piece.word_count,
                    )
                    for piece in chunk_text(
                        document.full_text or "",
                        self._settings.chunk_size_words,
                        self._settings.chunk_overlap_words,
                    )
                ]
                await self._store.replace_segments(document.id, segments)
            document.segment_count = len(segments)
            logger.info("Document chunked", segment_count=len(segments))

        await self._transition(document, DocumentStatus.PARSED)

    async def _run_schema(self, document: Document) -> None:
        await self._transition(document, DocumentStatus.SCHEMA_EXTRACTING)

        async with self._stage(document, PipelineStage.EXTRACT_SCHEMA):
            schema, _ = await self._schemas.get_or_extract(document)

        if self._settings.create_constraints:
            async with self._stage(document, PipelineStage.CREATE_CONSTRAINTS):
                constraints = synthesize_constraints(schema, [], self._corrector.rules)
                applied = await self._engine.apply_schema_statements(
                    [c.render().rstrip(";") for c in constraints]
                )
                logger.info("Constraints applied", constraints=len(constraints), applied=applied)

        await self._transition(document, DocumentStatus.SCHEMA_EXTRACTED)

    async def _run_generate(self, document: Document, schema: GraphSchema, full_document: bool) -> None:
        await self._transition(document, DocumentStatus.STATEMENT_GENERATING)

        async with self._stage(document, PipelineStage.GENERATE):
            if full_document:
                await self._generate_full(document, schema)
            else:
                await self._generate_segments(document, schema)

        async with self._stage(document, PipelineStage.CORRECT):
            await self._correct_results(document, schema)

        await self._transition(document, DocumentStatus.STATEMENT_GENERATED)

    async def _generate_full(self, document: Document, schema: GraphSchema) -> None:
        existing = await self._store.get_result(document.id, None)
        if existing is not None and _has_statements([existing]):
            logger.info("Reusing whole-document statements", result_id=existing.id)
            return

        raw, statements = await self._generator.generate(
            document.full_text or "",
            schema,
            document.document_type or DocumentType.GENERAL,
            full_document=True,
            document_id=document.id,
        )
        result = existing or GeneratedStatementResult(document_id=document.id)
        result.raw_statements = statements
        result.statements = ""
        result.status = ResultStatus.GENERATED
        result.error = None
        result.generation_provider = self._generator.provider_name
        result.generation_model = self._generator.model_name
        result.touch()
        if existing is None:
            await self._store.save_result(result)
        else:
            await self._store.update_result(result)
        logger.debug("Raw response stored", response_length=len(raw))

    async def _generate_segments(self, document: Document, schema: GraphSchema) -> None:
        segments = await self._store.list_segments(document.id)
        if not segments:
            raise EmptyGenerationError("Document has no segments to generate from", document_id=document.id)

        existing = {
            r.segment_id: r for r in await self._store.list_results(document.id) if not r.is_full_document
        }
        pending = [s for s in segments if not _has_statements([existing[s.id]] if s.id in existing else [])]
        semaphore = asyncio.Semaphore(self._settings.max_concurrent_chunks)

        async def bounded(segment: Segment) -> bool:
            async with semaphore:
                return await self._generate_segment(document, schema, segment, existing.get(segment.id))

        # Let every chunk settle before failing so no chunk keeps writing after the stage ends
        outcomes = await asyncio.gather(*(bounded(s) for s in pending), return_exceptions=True)
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            logger.error("Chunk generation raised", errors=len(errors), error_type=type(errors[0]).__name__)
            raise errors[0]
        succeeded = len(segments) - len(pending) + sum(outcomes)

        logger.info(
            "Chunk generation finished",
            segments=len(segments),
            generated=len(pending),
            failed=len(pending) - sum(outcomes),
        )
        if succeeded == 0:
            raise EmptyGenerationError(
                f"All {len(segments)} chunk generations failed",
                document_id=document.id,
                stage=PipelineStage.GENERATE.value,
            )

    async def _generate_segment(
        self,
        document: Document,
        schema: GraphSchema,
        segment: Segment,
        existing: GeneratedStatementResult | None,
    ) -> bool:
        """Generate one chunk; a failure is recorded on the chunk instead of raised."""
        segment.status = SegmentStatus.GENERATING
        segment.touch()
        await self._store.update_segment(segment)

        result = existing or GeneratedStatementResult(
            document_id=document.id,
            segment_id=segment.id,
            segment_index=segment.index,
        )
        result.generation_provider = self._generator.provider_name
        result.generation_model = self._generator.model_name

        try:
            _, statements = await self._generator.generate(
                segment.text,
                schema,
                document.document_type or DocumentType.GENERAL,
                full_document=False,
                document_id=document.id,
                segment_index=segment.index,
            )
            result.raw_statements = statements
            result.status = ResultStatus.GENERATED
            result.error = None
            segment.status = SegmentStatus.GENERATED
            segment.error = None
        except (PipelineError, asyncio.TimeoutError) as e:
            logger.warning(
                "Chunk generation failed",
                segment_index=segment.index,
                error_type=type(e).__name__,
                error=str(e),
            )
            result.raw_statements = ERROR_PLACEHOLDER
            result.status = ResultStatus.ERROR
            result.error = str(e) or type(e).__name__
            segment.status = SegmentStatus.ERROR
            segment.error = result.error

        result.statements = ""
        result.touch()
        if existing is None:
            await self._store.save_result(result)
        else:
            await self._store.update_result(result)
        segment.touch()
        await self._store.update_segment(segment)
        return result.status != ResultStatus.ERROR

    async def _correct_results(self, document: Document, schema: GraphSchema) -> None:
        for result in await self._store.list_results(document.id):
            if result.status == ResultStatus.ERROR or result.statements or not result.raw_statements:
                continue

            report = self._corrector.correct_with_report(result.raw_statements, schema)
            result.statements = report.text
            result.touch()
            await self._store.update_result(result)
            logger.info(
                "Statements corrected",
                segment_index=result.segment_index,
                fixes=len(report.applied_fixes),
                dropped_edges=len(report.dropped_edges),
            )

    def _write_archive(self, document: Document, results: list[GeneratedStatementResult]) -> str | None:
        if self._archive is None or not results:
            return None
        try:
            return str(self._archive.save(document.id, document.filename, results))
        except OSError as e:
            logger.warning("Failed to archive statements", document_id=document.id, error=str(e))
            return None

    async def _run_ingest(self, document: Document, full_document: bool) -> MutationCounts:
        await self._transition(document, DocumentStatus.INGESTING)

        async with self._stage(document, PipelineStage.INGEST):
            mutations = await self._engine.ingest(document.id, full_document=full_document)

        await self._transition(document, DocumentStatus.COMPLETED)
        return mutations


def _sum_mutations(results: list[GeneratedStatementResult]) -> MutationCounts:
    total = MutationCounts()
    for result in results:
        total = total + MutationCounts(
            nodes_created=result.nodes_created,
            relationships_created=result.relationships_created,
        )
    return total
