"""
Service Wiring.

Builds the process-wide objects (graph store, document store, text
generator) once and hands them to the components that need them. Used by
the HTTP service lifespan and by the CLI.
"""

from dataclasses import dataclass

import structlog

from src.config.settings import Settings
from src.cypher.query import QueryService
from src.graph.neo4j_client import GraphStore
from src.ingestion.pipeline import PipelineOrchestrator
from src.ingestion.store import DocumentStore, create_document_store
from src.llm.provider import TextGenerator, create_text_generator

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Shared components of one process."""

    graph: GraphStore
    store: DocumentStore
    generator: TextGenerator
    orchestrator: PipelineOrchestrator
    query: QueryService

    async def close(self) -> None:
        await self.generator.close()
        await self.store.close()
        await self.graph.close()
        logger.info("Services closed")


def build_services(settings: Settings) -> Services:
    """Construct every component from settings; nothing connects until first use."""
    graph = GraphStore(settings.neo4j)
    store = create_document_store(settings.storage.backend, settings.storage.data_dir)
    generator = create_text_generator(settings.llm)

    orchestrator = PipelineOrchestrator(
        store,
        graph,
        generator,
        settings.pipeline,
        upload_dir=settings.storage.upload_dir,
    )
    query = QueryService(generator, graph, store)

    logger.info(
        "Services built",
        storage_backend=settings.storage.backend,
        llm_provider=generator.provider_name,
        llm_model=generator.model_name,
    )
    return Services(
        graph=graph,
        store=store,
        generator=generator,
        orchestrator=orchestrator,
        query=query,
    )
