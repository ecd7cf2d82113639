"""
Unit Tests for Transactional Ingestion.

Tests the IngestionEngine against the FakeTransaction graph double.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from neo4j.exceptions import ClientError, ServiceUnavailable

from src.graph.neo4j_client import MutationSummary
from src.ingestion.errors import IngestionError, NotFoundError, TransactionError, ValidationError
from src.ingestion.graph_loader import IngestionEngine, is_already_exists_error
from src.ingestion.reliability.retry_handler import RetryPolicy
from src.ingestion.state import (
    Document,
    GeneratedStatementResult,
    MutationCounts,
    ResultStatus,
    Segment,
    SegmentStatus,
)
from src.ingestion.store import InMemoryDocumentStore

CONSTRAINT = "CREATE CONSTRAINT IF NOT EXISTS FOR (account:Account) REQUIRE account.accountId IS UNIQUE"
ACCOUNT = "MERGE (account1:Account {accountId: 'A1'})"
PARTY = "MERGE (party2:Party {partyId: 'P1'})"

PROGRAM = f"// Constraints\n{CONSTRAINT};\n\n// Nodes\n{ACCOUNT};\n{PARTY};\n"


def make_engine(graph: MagicMock, store: InMemoryDocumentStore, max_attempts: int = 1) -> IngestionEngine:
    return IngestionEngine(graph, store, retry_policy=RetryPolicy(max_attempts=max_attempts, initial_delay=0.0))


@pytest_asyncio.fixture
async def document(memory_store: InMemoryDocumentStore) -> Document:
    return await memory_store.create_document(Document(filename="statement.txt", full_text="Account A1"))


@pytest_asyncio.fixture
async def whole_result(memory_store: InMemoryDocumentStore, document: Document) -> GeneratedStatementResult:
    return await memory_store.save_result(
        GeneratedStatementResult(document_id=document.id, statements=PROGRAM)
    )


# =============================================================================
# Single result
# =============================================================================


class TestIngestResult:
    """Test cases for ingesting one generated result."""

    @pytest.mark.asyncio
    async def test_success(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        whole_result: GeneratedStatementResult,
    ) -> None:
        mock_graph_store.next_summaries = [MutationSummary(nodes_created=1), MutationSummary(nodes_created=1)]
        engine = make_engine(mock_graph_store, memory_store)

        counts = await engine.ingest_result(whole_result)

        assert counts == MutationCounts(nodes_created=2)
        mock_graph_store.run_schema_statement.assert_awaited_once_with(CONSTRAINT)
        assert [c.args[0] for c in mock_graph_store.explain.await_args_list] == [ACCOUNT, PARTY]

        [tx] = mock_graph_store.transactions
        assert tx.statements == [ACCOUNT, PARTY]
        assert tx.committed and not tx.rolled_back

        [stored] = await memory_store.list_results(whole_result.document_id)
        assert stored.status == ResultStatus.EXECUTED
        assert stored.nodes_created == 2
        assert stored.execution_time_ms is not None

    @pytest.mark.asyncio
    async def test_executed_result_is_not_run_again(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        whole_result: GeneratedStatementResult,
    ) -> None:
        engine = make_engine(mock_graph_store, memory_store)
        await engine.ingest_result(whole_result)

        counts = await engine.ingest_result(whole_result)

        assert counts == MutationCounts()
        assert len(mock_graph_store.transactions) == 1

    @pytest.mark.asyncio
    async def test_failing_statement_rolls_back(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        whole_result: GeneratedStatementResult,
    ) -> None:
        mock_graph_store.next_summaries = [MutationSummary(nodes_created=1), ClientError("Node already exists")]
        engine = make_engine(mock_graph_store, memory_store, max_attempts=3)

        with pytest.raises(IngestionError) as exc_info:
            await engine.ingest_result(whole_result)

        assert exc_info.value.statement == PARTY
        assert isinstance(exc_info.value.cause, TransactionError)
        # Permanent failures are not retried
        [tx] = mock_graph_store.transactions
        assert tx.rolled_back and not tx.committed

        [stored] = await memory_store.list_results(whole_result.document_id)
        assert stored.status == ResultStatus.ERROR
        assert "Statement 2/2 failed" in stored.error

    @pytest.mark.asyncio
    async def test_transient_failure_retries_whole_transaction(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        whole_result: GeneratedStatementResult,
    ) -> None:
        mock_graph_store.next_summaries = [ServiceUnavailable("leader switch")]
        engine = make_engine(mock_graph_store, memory_store, max_attempts=2)

        await engine.ingest_result(whole_result)

        first, second = mock_graph_store.transactions
        assert first.rolled_back
        assert second.committed
        assert second.statements == [ACCOUNT, PARTY]

    @pytest.mark.asyncio
    async def test_validation_failure_opens_no_transaction(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        whole_result: GeneratedStatementResult,
    ) -> None:
        mock_graph_store.explain.side_effect = ValidationError("Invalid input", statement=PARTY)
        engine = make_engine(mock_graph_store, memory_store)

        with pytest.raises(IngestionError) as exc_info:
            await engine.ingest_result(whole_result)

        assert exc_info.value.statement == PARTY
        assert mock_graph_store.transactions == []
        mock_graph_store.run_schema_statement.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_segment_status_follows_result(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        document: Document,
    ) -> None:
        segment = Segment(document_id=document.id, index=0, text="Account A1")
        await memory_store.replace_segments(document.id, [segment])
        result = await memory_store.save_result(
            GeneratedStatementResult(
                document_id=document.id, segment_id=segment.id, segment_index=0, statements=f"{ACCOUNT};"
            )
        )
        engine = make_engine(mock_graph_store, memory_store)

        await engine.ingest_result(result, segment)

        [stored] = await memory_store.list_segments(document.id)
        assert stored.status == SegmentStatus.INGESTED

    @pytest.mark.asyncio
    async def test_empty_program(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        document: Document,
    ) -> None:
        result = GeneratedStatementResult(document_id=document.id, statements="   ")

        with pytest.raises(IngestionError):
            await make_engine(mock_graph_store, memory_store).ingest_result(result)


# =============================================================================
# Schema statements
# =============================================================================


class TestSchemaStatements:
    """Test cases for constraint and index statements."""

    @pytest.mark.asyncio
    async def test_existing_and_failing_constraints_do_not_abort(
        self, mock_graph_store: MagicMock, memory_store: InMemoryDocumentStore
    ) -> None:
        mock_graph_store.run_schema_statement = AsyncMock(
            side_effect=[
                ClientError("An equivalent constraint already exists"),
                MutationSummary(),
                ClientError("Unable to create constraint"),
            ]
        )
        engine = make_engine(mock_graph_store, memory_store)

        assert await engine.apply_schema_statements(["c1", "c2", "c3"]) == 1
        assert mock_graph_store.run_schema_statement.await_count == 3

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("An equivalent constraint already exists, 'Constraint( id=4 )'", True),
            ("There already exists an index", True),
            ("Invalid input 'CREAT'", False),
        ],
    )
    def test_is_already_exists_error(self, message: str, expected: bool) -> None:
        assert is_already_exists_error(ClientError(message)) is expected


# =============================================================================
# Documents
# =============================================================================


class TestIngestDocument:
    """Test cases for document-level ingestion."""

    async def _segment_results(
        self, store: InMemoryDocumentStore, document: Document, programs: list[str]
    ) -> list[GeneratedStatementResult]:
        segments = [
            Segment(document_id=document.id, index=i, text=f"chunk {i}") for i in range(len(programs))
        ]
        await store.replace_segments(document.id, segments)
        return [
            await store.save_result(
                GeneratedStatementResult(
                    document_id=document.id,
                    segment_id=segment.id,
                    segment_index=segment.index,
                    statements=program,
                )
            )
            for segment, program in zip(segments, programs)
        ]

    @pytest.mark.asyncio
    async def test_chunks_are_independent(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        document: Document,
    ) -> None:
        bad = "MERGE (x:Broken {id: 1})"

        async def explain(statement: str) -> None:
            if statement == bad:
                raise ValidationError("Invalid input", statement=statement)

        mock_graph_store.explain.side_effect = explain
        await self._segment_results(memory_store, document, [f"{bad};", f"{ACCOUNT};"])
        engine = make_engine(mock_graph_store, memory_store)

        await engine.ingest(document.id)

        first, second = await memory_store.list_results(document.id)
        assert first.status == ResultStatus.ERROR
        assert second.status == ResultStatus.EXECUTED
        segments = await memory_store.list_segments(document.id)
        assert [s.status for s in segments] == [SegmentStatus.ERROR, SegmentStatus.INGESTED]

    @pytest.mark.asyncio
    async def test_all_chunks_failing(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        document: Document,
    ) -> None:
        mock_graph_store.explain.side_effect = ValidationError("Invalid input")
        await self._segment_results(memory_store, document, [f"{ACCOUNT};", f"{PARTY};"])

        with pytest.raises(IngestionError) as exc_info:
            await make_engine(mock_graph_store, memory_store).ingest(document.id)

        assert "All 2 chunk ingestions failed" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_whole_document_result_is_preferred(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        document: Document,
        whole_result: GeneratedStatementResult,
    ) -> None:
        await self._segment_results(memory_store, document, [f"{PARTY};"])
        engine = make_engine(mock_graph_store, memory_store)

        await engine.ingest(document.id)

        [tx] = mock_graph_store.transactions
        assert tx.statements == [ACCOUNT, PARTY]

    @pytest.mark.asyncio
    async def test_segment_mode_can_be_forced(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        document: Document,
        whole_result: GeneratedStatementResult,
    ) -> None:
        await self._segment_results(memory_store, document, [f"{PARTY};"])
        engine = make_engine(mock_graph_store, memory_store)

        await engine.ingest(document.id, full_document=False)

        [tx] = mock_graph_store.transactions
        assert tx.statements == [PARTY]

    @pytest.mark.asyncio
    async def test_no_results(
        self,
        mock_graph_store: MagicMock,
        memory_store: InMemoryDocumentStore,
        document: Document,
    ) -> None:
        with pytest.raises(NotFoundError):
            await make_engine(mock_graph_store, memory_store).ingest(document.id)

    @pytest.mark.asyncio
    async def test_unknown_document(
        self, mock_graph_store: MagicMock, memory_store: InMemoryDocumentStore
    ) -> None:
        with pytest.raises(NotFoundError):
            await make_engine(mock_graph_store, memory_store).ingest("missing")
