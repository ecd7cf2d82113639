"""
Natural-Language Query.

Turns a question into a read-only Cypher query against a document's
schema and runs it.
"""

from typing import Any

import structlog
from neo4j.exceptions import ClientError
from pydantic import BaseModel, Field

from src.cypher.generator import extract_cypher
from src.cypher.prompts import QUERY_PROMPT, format_schema_for_query, render_prompt
from src.cypher.validator import contains_write_clause
from src.graph.neo4j_client import GraphStore
from src.ingestion.errors import EmptyGenerationError, NotFoundError, ValidationError
from src.ingestion.store import DocumentStore
from src.llm.provider import GenerationOptions, TextGenerator

logger = structlog.get_logger(__name__)


class QueryResult(BaseModel):
    """Answer to a natural-language question."""

    question: str
    cypher: str
    results: list[dict[str, Any]] = Field(default_factory=list)
    count: int = 0


class QueryService:
    """Schema-grounded natural-language querying."""

    def __init__(
        self,
        generator: TextGenerator,
        graph: GraphStore,
        store: DocumentStore,
        max_tokens: int = 1024,
    ) -> None:
        self._generator = generator
        self._graph = graph
        self._store = store
        self._max_tokens = max_tokens

    async def generate_query(self, question: str, document_id: str) -> str:
        """
        Generate a read-only query for ``question``.

        Raises:
            NotFoundError: The document has no schema
            EmptyGenerationError: The model produced no query
            ValidationError: The query contains write clauses
        """
        schema = await self._store.get_schema(document_id)
        if schema is None:
            raise NotFoundError(f"Schema not found for document: {document_id}", document_id=document_id)

        system_prompt, user_prompt = render_prompt(
            QUERY_PROMPT,
            schema=format_schema_for_query(schema),
            question=question,
        )
        response = await self._generator.generate(
            system_prompt,
            user_prompt,
            GenerationOptions(temperature=0.1, max_tokens=self._max_tokens),
        )
        cypher = extract_cypher(response)

        if not cypher:
            raise EmptyGenerationError("Failed to generate a query", document_id=document_id)
        if contains_write_clause(cypher):
            raise ValidationError(
                "Generated query is not read-only",
                statement=cypher,
                document_id=document_id,
            )
        return cypher

    async def query(self, question: str, document_id: str) -> QueryResult:
        question = question.strip()
        if not question:
            raise ValidationError("Question is required", document_id=document_id)

        cypher = await self.generate_query(question, document_id)
        logger.info("Generated query", document_id=document_id, question=question, cypher=cypher)

        try:
            records = await self._graph.execute_read(cypher)
        except ClientError as e:
            raise ValidationError(
                f"Failed to execute query: {e.message or e}",
                statement=cypher,
                document_id=document_id,
            ) from e

        return QueryResult(question=question, cypher=cypher, results=records, count=len(records))
