"""
Graph Store Client Module.

Neo4j access for the ingestion pipeline: explain-only syntax checks,
explicit write transactions, schema statements outside transactions and
read queries. One GraphStore (one driver pool) is created per process
and passed to the components that need it.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from neo4j import (
    READ_ACCESS,
    WRITE_ACCESS,
    AsyncDriver,
    AsyncGraphDatabase,
    AsyncSession,
    AsyncTransaction,
)
from neo4j.exceptions import ClientError, Neo4jError, ServiceUnavailable

from src.config.settings import Neo4jSettings
from src.ingestion.errors import ValidationError

logger = structlog.get_logger(__name__)

# Rollback failures with these messages mean the transaction was already gone
ALREADY_ABORTED_PATTERNS = ("rolled back", "terminated", "already", "closed")


@dataclass
class MutationSummary:
    """Counters from one executed statement."""

    nodes_created: int = 0
    relationships_created: int = 0
    properties_set: int = 0

    def __add__(self, other: "MutationSummary") -> "MutationSummary":
        return MutationSummary(
            nodes_created=self.nodes_created + other.nodes_created,
            relationships_created=self.relationships_created + other.relationships_created,
            properties_set=self.properties_set + other.properties_set,
        )

    @classmethod
    def from_counters(cls, counters: Any) -> "MutationSummary":
        return cls(
            nodes_created=counters.nodes_created,
            relationships_created=counters.relationships_created,
            properties_set=counters.properties_set,
        )


class GraphTransaction:
    """An explicit write transaction."""

    def __init__(self, tx: AsyncTransaction):
        self._tx = tx
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    async def run(self, statement: str, parameters: dict[str, Any] | None = None) -> MutationSummary:
        result = await self._tx.run(statement, parameters or {})
        summary = await result.consume()
        return MutationSummary.from_counters(summary.counters)

    async def commit(self) -> None:
        await self._tx.commit()
        self._finished = True

    async def rollback(self) -> None:
        """
        Roll back, tolerating a transaction the server already aborted.

        Other rollback failures are logged, never raised: the caller is
        already handling the error that caused the rollback.
        """
        if self._finished:
            return
        self._finished = True
        try:
            await self._tx.rollback()
        except Exception as e:
            message = str(e).lower()
            if any(pattern in message for pattern in ALREADY_ABORTED_PATTERNS):
                logger.debug("Transaction already aborted, rollback skipped", error=str(e))
            else:
                logger.error("Rollback failed", error_type=type(e).__name__, error=str(e))


class GraphStore:
    """
    Neo4j graph store.

    Usage:
        store = GraphStore(settings.neo4j)
        await store.connect()

        await store.explain("MERGE (a:Account {accountId: 'A1'})")
        async with store.transaction() as tx:
            summary = await tx.run(statement)
            await tx.commit()

        await store.close()
    """

    def __init__(self, settings: Neo4jSettings | None = None, driver: AsyncDriver | None = None) -> None:
        self._settings = settings or Neo4jSettings()
        self._driver = driver

    @property
    def database(self) -> str:
        return self._settings.database

    async def connect(self) -> None:
        """Create the driver and check connectivity."""
        if self._driver is not None:
            return

        self._driver = AsyncGraphDatabase.driver(
            self._settings.uri,
            auth=(self._settings.username, self._settings.password.get_secret_value()),
            max_connection_pool_size=self._settings.max_connection_pool_size,
            connection_timeout=self._settings.connection_timeout_seconds,
        )
        await self._driver.verify_connectivity()
        logger.info("Connected to Neo4j", uri=self._settings.uri)

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("Disconnected from Neo4j")

    async def verify(self) -> bool:
        """True when the database answers; used by health checks."""
        try:
            await self.connect()
            assert self._driver is not None
            await self._driver.verify_connectivity()
            return True
        except (Neo4jError, ServiceUnavailable, OSError) as e:
            logger.warning("Neo4j connectivity check failed", error=str(e))
            return False

    @asynccontextmanager
    async def session(self, access_mode: str = WRITE_ACCESS) -> AsyncGenerator[AsyncSession, None]:
        if self._driver is None:
            await self.connect()

        assert self._driver is not None  # Type guard for mypy
        async with self._driver.session(
            database=self._settings.database,
            default_access_mode=access_mode,
        ) as session:
            yield session

    # =========================================================================
    # Validation
    # =========================================================================

    async def explain(self, statement: str) -> None:
        """
        Syntax-check a statement with EXPLAIN in a read session; nothing is executed.

        Raises:
            ValidationError: The database rejected the statement
        """
        async with self.session(READ_ACCESS) as session:
            try:
                result = await session.run(f"EXPLAIN {statement}")
                await result.consume()
            except ClientError as e:
                raise ValidationError(
                    f"Statement failed validation: {e.message or e}",
                    statement=statement,
                ) from e

    # =========================================================================
    # Writes
    # =========================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[GraphTransaction, None]:
        """
        Open a write transaction.

        A transaction neither committed nor rolled back when the block
        exits is rolled back.
        """
        async with self.session(WRITE_ACCESS) as session:
            tx = await session.begin_transaction(timeout=self._settings.transaction_timeout_seconds)
            graph_tx = GraphTransaction(tx)
            try:
                yield graph_tx
            finally:
                if not graph_tx.finished:
                    await graph_tx.rollback()

    async def run_schema_statement(self, statement: str) -> MutationSummary:
        """Run a constraint/index statement in its own auto-commit transaction."""
        async with self.session(WRITE_ACCESS) as session:
            result = await session.run(statement)
            summary = await result.consume()

        logger.debug("Schema statement executed", statement=statement[:100])
        return MutationSummary.from_counters(summary.counters)

    # =========================================================================
    # Reads
    # =========================================================================

    async def execute_read(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Run a read query.

        Returns:
            Result records as dictionaries
        """
        async with self.session(READ_ACCESS) as session:
            result = await session.run(query, parameters or {})
            records: list[dict[str, Any]] = await result.data()

        logger.debug("Read query executed", query=query[:100], result_count=len(records))
        return records
