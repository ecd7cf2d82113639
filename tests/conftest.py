"""
Pytest Configuration and Shared Fixtures.

This module provides shared fixtures for testing the document-to-graph pipeline.
"""

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage

from src.config.settings import PipelineSettings, Settings, get_settings
from src.graph.neo4j_client import GraphStore, MutationSummary
from src.ingestion.state import (
    Document,
    GraphSchema,
    RelationshipDescriptor,
)
from src.ingestion.store import InMemoryDocumentStore
from src.llm.provider import TextGenerator


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with mock values."""
    with patch.dict(
        "os.environ",
        {
            "NEO4J_URI": "bolt://localhost:7687",
            "NEO4J_USERNAME": "neo4j",
            "NEO4J_PASSWORD": "password123",
            "LLM_PROVIDER": "openai",
            "LLM_OPENAI_API_KEY": "test-api-key",
            "STORAGE_BACKEND": "memory",
            "PIPELINE_SAVE_STATEMENTS": "false",
        },
    ):
        # Clear cache and get fresh settings
        get_settings.cache_clear()
        settings = get_settings()
    get_settings.cache_clear()
    return settings


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    """Small windows, no archive, no real delays."""
    return PipelineSettings(
        chunk_size_words=50,
        chunk_overlap_words=5,
        max_concurrent_chunks=2,
        save_statements=False,
        retry_max_attempts=1,
        generation_initial_delay=0.0,
        schema_initial_delay=0.0,
    )


# =============================================================================
# Mock LLM Fixtures
# =============================================================================


@pytest.fixture
def mock_llm() -> MagicMock:
    """Create a mock chat model that returns configurable responses."""
    llm = MagicMock(spec=BaseChatModel)
    llm.ainvoke = AsyncMock(return_value=AIMessage(content="Mock response"))
    return llm


@pytest.fixture
def mock_generator() -> MagicMock:
    """A TextGenerator whose ``generate`` returns whatever the test sets."""
    generator = MagicMock(spec=TextGenerator)
    generator.provider_name = "mock"
    generator.model_name = "mock-model"
    generator.generate = AsyncMock(return_value="")
    generator.close = AsyncMock()
    return generator


# =============================================================================
# Graph Store Fixtures
# =============================================================================


class FakeTransaction:
    """Records statements; each ``run`` returns the next queued summary."""

    def __init__(self, summaries: list[Any] | None = None):
        self.summaries = list(summaries or [])
        self.statements: list[str] = []
        self.committed = False
        self.rolled_back = False
        self.finished = False

    async def run(self, statement: str, parameters: dict[str, Any] | None = None) -> MutationSummary:
        self.statements.append(statement)
        outcome = self.summaries.pop(0) if self.summaries else MutationSummary()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def commit(self) -> None:
        self.committed = True
        self.finished = True

    async def rollback(self) -> None:
        self.rolled_back = True
        self.finished = True


@pytest.fixture
def mock_graph_store() -> MagicMock:
    """
    A GraphStore double.

    ``graph.transactions`` collects every FakeTransaction opened; set
    ``graph.next_summaries`` to script the outcome of each statement.
    """
    graph = MagicMock(spec=GraphStore)
    graph.connect = AsyncMock()
    graph.close = AsyncMock()
    graph.verify = AsyncMock(return_value=True)
    graph.explain = AsyncMock(return_value=None)
    graph.run_schema_statement = AsyncMock(return_value=MutationSummary())
    graph.execute_read = AsyncMock(return_value=[])
    graph.transactions = []
    graph.next_summaries = []

    class _TransactionContext:
        async def __aenter__(self) -> FakeTransaction:
            tx = FakeTransaction(graph.next_summaries)
            graph.next_summaries = []
            graph.transactions.append(tx)
            self.tx = tx
            return tx

        async def __aexit__(self, exc_type, exc, tb) -> bool:
            if not self.tx.finished:
                await self.tx.rollback()
            return False

    graph.transaction = MagicMock(side_effect=lambda: _TransactionContext())
    return graph


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def memory_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def financial_schema() -> GraphSchema:
    return GraphSchema(
        nodes={
            "Account": ["accountId", "name", "type"],
            "Party": ["partyId", "name"],
            "Security": ["securityId", "ticker"],
            "Position": ["positionId", "quantity"],
        },
        relationships=[
            RelationshipDescriptor(type="HAS_ACCOUNT", from_label="Party", to_label="Account"),
            RelationshipDescriptor(type="HAS_POSITION", from_label="Account", to_label="Position"),
            RelationshipDescriptor(type="IN_SECURITY", from_label="Position", to_label="Security"),
        ],
    )


@pytest.fixture
def sample_document() -> Document:
    return Document(
        filename="statement.txt",
        mime_type="text/plain",
        size=64,
        full_text="Account A1 is held by Party P1 and has a position in security S1.",
        document_type="financial",
    )
