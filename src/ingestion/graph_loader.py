"""
Graph Loader Module.

Executes corrected statement programs against Neo4j.

For each generated result:
- Split the program into statements and separate schema statements
- EXPLAIN-check every write before anything is executed
- Apply constraints/indexes outside any transaction
- Run all writes in one transaction, retrying transient failures
- Persist counts, timing and status on the result and its segment
"""

import time

import structlog
from neo4j.exceptions import DriverError, Neo4jError

from src.cypher.validator import partition_statements, split_statements
from src.graph.neo4j_client import GraphStore, MutationSummary
from src.ingestion.errors import (
    IngestionError,
    NotFoundError,
    TransactionError,
    ValidationError,
)
from src.ingestion.reliability.retry_handler import (
    GRAPH_RETRY_POLICY,
    RetryExecutor,
    RetryPolicy,
    is_retryable_error,
)
from src.ingestion.state import (
    GeneratedStatementResult,
    MutationCounts,
    ResultStatus,
    Segment,
    SegmentStatus,
)
from src.ingestion.store import DocumentStore

logger = structlog.get_logger(__name__)

# Schema statement failures that mean the constraint/index is already in place
ALREADY_EXISTS_PATTERNS = ("already exists", "equivalent")


def is_already_exists_error(error: BaseException) -> bool:
    message = str(error).lower()
    code = (getattr(error, "code", None) or "").lower()
    return any(p in message for p in ALREADY_EXISTS_PATTERNS) or "equivalentschemarule" in code


class IngestionEngine:
    """
    Transactional ingestion of generated statement programs.

    Usage:
        engine = IngestionEngine(graph, store)
        counts = await engine.ingest(document_id)
    """

    def __init__(
        self,
        graph: GraphStore,
        store: DocumentStore,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._graph = graph
        self._store = store
        self._executor = RetryExecutor(retry_policy or GRAPH_RETRY_POLICY)

    # =========================================================================
    # Schema statements
    # =========================================================================

    async def apply_schema_statements(self, statements: list[str]) -> int:
        """
        Run constraint/index statements, each in its own auto-commit transaction.

        Returns:
            Number of statements that ran successfully
        """
        applied = 0
        for statement in statements:
            try:
                await self._graph.run_schema_statement(statement)
                applied += 1
            except (Neo4jError, DriverError) as e:
                if is_already_exists_error(e):
                    logger.debug("Schema statement already applied", statement=statement[:100])
                    continue
                logger.warning(
                    "Schema statement failed, continuing",
                    statement=statement[:100],
                    error_type=type(e).__name__,
                    error=str(e),
                )
        return applied

    # =========================================================================
    # Writes
    # =========================================================================

    async def validate_statements(self, statements: list[str], document_id: str | None = None) -> None:
        """
        EXPLAIN-check every statement.

        Raises:
            ValidationError: The first statement the database rejects
        """
        for statement in statements:
            try:
                await self._graph.explain(statement)
            except ValidationError as e:
                e.document_id = document_id
                e.stage = "ingest"
                raise

    async def _run_writes(self, statements: list[str], document_id: str | None) -> MutationSummary:
        total = MutationSummary()
        async with self._graph.transaction() as tx:
            for index, statement in enumerate(statements, start=1):
                try:
                    total = total + await tx.run(statement)
                except Exception as e:
                    await tx.rollback()
                    raise TransactionError(
                        f"Statement {index}/{len(statements)} failed: {e}",
                        statement=statement,
                        retryable=is_retryable_error(e),
                        document_id=document_id,
                        stage="ingest",
                    ) from e
            try:
                await tx.commit()
            except Exception as e:
                await tx.rollback()
                raise TransactionError(
                    f"Commit failed: {e}",
                    retryable=is_retryable_error(e),
                    document_id=document_id,
                    stage="ingest",
                ) from e
        return total

    async def execute_writes(self, statements: list[str], document_id: str | None = None) -> MutationCounts:
        """
        Run all writes in one transaction; transient failures retry the whole transaction.

        Raises:
            TransactionError: The transaction failed and was rolled back
        """
        if not statements:
            return MutationCounts()

        summary = await self._executor.execute(self._run_writes, statements, document_id)
        return MutationCounts(
            nodes_created=summary.nodes_created,
            relationships_created=summary.relationships_created,
        )

    # =========================================================================
    # Results
    # =========================================================================

    async def ingest_result(
        self,
        result: GeneratedStatementResult,
        segment: Segment | None = None,
    ) -> MutationCounts:
        """
        Ingest one generated result.

        An executed result is not run again and reports no new mutations.

        Raises:
            IngestionError: Validation or execution failed; the result is marked error
        """
        if result.status == ResultStatus.EXECUTED:
            logger.info("Result already executed, skipping", result_id=result.id)
            return MutationCounts()

        if not result.statements.strip():
            raise IngestionError(
                "Result has no statements to ingest",
                document_id=result.document_id,
                stage="ingest",
            )

        start = time.perf_counter()

        if segment is not None:
            segment.status = SegmentStatus.INGESTING
            segment.touch()
            await self._store.update_segment(segment)

        try:
            schema_statements, writes = partition_statements(split_statements(result.statements))

            await self.validate_statements(writes, result.document_id)
            result.status = ResultStatus.VALIDATED
            result.touch()
            await self._store.update_result(result)

            await self.apply_schema_statements(schema_statements)
            counts = await self.execute_writes(writes, result.document_id)

        except (ValidationError, TransactionError, Neo4jError, DriverError) as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            await self._record_failure(result, segment, e, elapsed_ms)
            raise IngestionError(
                f"Ingestion failed: {e}",
                statement=getattr(e, "statement", None),
                cause=e,
                document_id=result.document_id,
                stage="ingest",
            ) from e

        result.status = ResultStatus.EXECUTED
        result.error = None
        result.nodes_created = counts.nodes_created
        result.relationships_created = counts.relationships_created
        result.execution_time_ms = (time.perf_counter() - start) * 1000
        result.touch()
        await self._store.update_result(result)

        if segment is not None:
            segment.status = SegmentStatus.INGESTED
            segment.error = None
            segment.touch()
            await self._store.update_segment(segment)

        logger.info(
            "Result ingested",
            result_id=result.id,
            segment_index=result.segment_index,
            nodes_created=counts.nodes_created,
            relationships_created=counts.relationships_created,
            execution_time_ms=round(result.execution_time_ms, 2),
        )
        return counts

    async def _record_failure(
        self,
        result: GeneratedStatementResult,
        segment: Segment | None,
        error: BaseException,
        elapsed_ms: float,
    ) -> None:
        """Persist the failure; a store error here is logged so the original error propagates."""
        result.status = ResultStatus.ERROR
        result.error = str(error)
        result.execution_time_ms = elapsed_ms
        result.touch()
        try:
            await self._store.update_result(result)
            if segment is not None:
                segment.status = SegmentStatus.ERROR
                segment.error = str(error)
                segment.touch()
                await self._store.update_segment(segment)
        except Exception as store_error:
            logger.error(
                "Failed to persist ingestion error",
                result_id=result.id,
                error=str(store_error),
            )

        logger.error(
            "Result ingestion failed",
            result_id=result.id,
            segment_index=result.segment_index,
            error_type=type(error).__name__,
            error=str(error),
        )

    # =========================================================================
    # Documents
    # =========================================================================

    async def ingest(self, document_id: str, full_document: bool | None = None) -> MutationCounts:
        """
        Ingest every generated result of a document.

        Args:
            document_id: Document to ingest
            full_document: Force a mode; by default the whole-document result
                is used when one exists, otherwise segment results

        Returns:
            Mutation counts summed over the ingested results

        Raises:
            NotFoundError: The document has no generated results
            IngestionError: The whole-document result failed, or every chunk failed
        """
        await self._store.require_document(document_id)
        results = await self._store.list_results(document_id)
        if not results:
            raise NotFoundError(
                f"No generated statements for document {document_id}",
                document_id=document_id,
                stage="ingest",
            )

        whole = [r for r in results if r.is_full_document]
        if whole and full_document is not False:
            return await self.ingest_result(whole[0])

        return await self._ingest_segments(
            document_id, [r for r in results if not r.is_full_document]
        )

    async def _ingest_segments(
        self,
        document_id: str,
        results: list[GeneratedStatementResult],
    ) -> MutationCounts:
        segments = {s.id: s for s in await self._store.list_segments(document_id)}
        total = MutationCounts()
        succeeded = 0
        failures: list[IngestionError] = []

        for result in results:
            try:
                total = total + await self.ingest_result(result, segments.get(result.segment_id or ""))
                succeeded += 1
            except IngestionError as e:
                failures.append(e)
                logger.warning(
                    "Chunk ingestion failed, continuing",
                    document_id=document_id,
                    segment_index=result.segment_index,
                    error=e.message,
                )

        logger.info(
            "Chunked ingestion finished",
            document_id=document_id,
            succeeded=succeeded,
            failed=len(failures),
            nodes_created=total.nodes_created,
            relationships_created=total.relationships_created,
        )

        if succeeded == 0:
            first = failures[0] if failures else None
            raise IngestionError(
                f"All {len(results)} chunk ingestions failed",
                statement=first.statement if first else None,
                cause=first,
                document_id=document_id,
                stage="ingest",
            )
        return total
