"""
FastAPI Application for the Document-to-Graph Pipeline.

REST API to submit documents, drive them through the pipeline, inspect
their progress and query the resulting graph.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from neo4j.exceptions import DriverError, Neo4jError
from pydantic import BaseModel, Field

from src.config.settings import Settings, get_settings
from src.cypher.query import QueryResult
from src.ingestion.document_loaders import DocumentLoaderFactory
from src.ingestion.errors import PipelineError, classify_error
from src.ingestion.state import Document, PipelineResult
from src.observability.logging import configure_logging
from src.services import Services, build_services

logger = structlog.get_logger(__name__)

STATUS_CODES = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "validation": status.HTTP_400_BAD_REQUEST,
    "internal": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def to_http_error(error: PipelineError) -> HTTPException:
    return HTTPException(status_code=STATUS_CODES[classify_error(error)], detail=error.to_dict())


# =============================================================================
# Request/Response Models
# =============================================================================


class DocumentResponse(BaseModel):
    """A submitted document, without its extracted text."""

    id: str
    filename: str
    mime_type: str
    size: int
    status: str
    document_type: str | None = None
    segment_count: int = 0
    error: str | None = None
    created_at: str
    updated_at: str

    @classmethod
    def from_document(cls, document: Document) -> "DocumentResponse":
        return cls(
            id=document.id,
            filename=document.filename,
            mime_type=document.mime_type,
            size=document.size,
            status=document.status.value,
            document_type=document.document_type,
            segment_count=document.segment_count,
            error=document.error,
            created_at=document.created_at.isoformat(),
            updated_at=document.updated_at.isoformat(),
        )


class DocumentStatusResponse(BaseModel):
    """Pipeline progress of one document."""

    document: DocumentResponse
    segments_total: int
    segments_by_status: dict[str, int]
    has_schema: bool
    results_total: int
    results_generated: int
    results_executed: int
    results_failed: int
    nodes_created: int
    relationships_created: int


class ProcessRequest(BaseModel):
    """Options for a pipeline run."""

    full_document: bool | None = Field(
        default=None, description="One generation call for the whole text; defaults to configuration"
    )
    wait: bool = Field(default=True, description="Run inline and return the result, or start in background")


class ProcessAccepted(BaseModel):
    document_id: str
    message: str


class QueryRequest(BaseModel):
    """Natural-language question about one document's graph."""

    question: str = Field(..., min_length=1, description="Question in natural language")
    document_id: str = Field(..., description="Document whose schema grounds the query")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    neo4j_connected: bool
    version: str
    environment: str


# =============================================================================
# Dependencies
# =============================================================================


def get_services(request: Request) -> Services:
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not initialized")
    return services


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# =============================================================================
# Background processing
# =============================================================================


def _start_background(app: FastAPI, services: Services, document_id: str, full_document: bool | None) -> None:
    async def run() -> None:
        try:
            await services.orchestrator.process(document_id, full_document=full_document)
        except PipelineError as e:
            # Already recorded on the document by the orchestrator
            logger.warning("Background processing failed", document_id=document_id, error=e.message)
        except Exception:
            logger.exception("Background processing crashed", document_id=document_id)

    task = asyncio.create_task(run())
    app.state.tasks.add(task)
    task.add_done_callback(app.state.tasks.discard)


# =============================================================================
# App factory
# =============================================================================


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """
    Build the application.

    ``services`` is normally built by the lifespan from settings; passing
    it in (tests, embedding) skips construction and shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging(
            level=settings.log_level,
            format=settings.observability.log_format,
            service_name=settings.app_name,
        )
        logger.info("Starting Doc2Graph API", version=settings.app_version)

        owns_services = app.state.services is None
        if owns_services:
            app.state.services = build_services(settings)

        try:
            await app.state.services.graph.connect()
            logger.info("Neo4j connected")
        except (Neo4jError, DriverError, OSError) as e:
            logger.warning("Neo4j connection failed", error=str(e))

        yield

        logger.info("Shutting down Doc2Graph API")
        for task in list(app.state.tasks):
            task.cancel()
        if app.state.tasks:
            await asyncio.gather(*app.state.tasks, return_exceptions=True)
        if owns_services:
            await app.state.services.close()

    app = FastAPI(
        title="Doc2Graph API",
        version=settings.app_version,
        description="Turns business documents into a Neo4j property graph",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services
    app.state.tasks = set()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health", response_model=HealthResponse, tags=["System"])
    async def health_check(
        services: Services = Depends(get_services),
        settings: Settings = Depends(get_app_settings),
    ) -> HealthResponse:
        neo4j_ok = await services.graph.verify()
        return HealthResponse(
            status="healthy" if neo4j_ok else "degraded",
            neo4j_connected=neo4j_ok,
            version=settings.app_version,
            environment=settings.environment,
        )

    @app.get("/api/metrics", tags=["Observability"])
    async def get_metrics(services: Services = Depends(get_services)) -> dict[str, Any]:
        """Stage success/failure counts and latency percentiles, document completions."""
        return services.orchestrator.metrics.snapshot()

    @app.post(
        "/api/documents",
        response_model=DocumentResponse,
        status_code=status.HTTP_202_ACCEPTED,
        tags=["Documents"],
    )
    async def submit_document(
        file: UploadFile = File(..., description="Document to ingest"),
        process: bool = Form(default=False, description="Start processing immediately"),
        full_document: bool | None = Form(default=None, description="Generation mode override"),
        services: Services = Depends(get_services),
        settings: Settings = Depends(get_app_settings),
    ) -> DocumentResponse:
        """
        Upload a document.

        Supports: .txt, .md, .pdf, .docx files. With ``process=true`` the
        pipeline starts in the background; poll the status endpoint.
        """
        if not file.filename:
            raise HTTPException(status_code=400, detail="Filename is required")

        data = await file.read()
        max_bytes = settings.api.max_upload_size_mb * 1024 * 1024
        if len(data) > max_bytes:
            raise HTTPException(
                status_code=400,
                detail=f"File too large: {len(data)} bytes (max {settings.api.max_upload_size_mb}MB)",
            )
        if not data:
            raise HTTPException(status_code=400, detail="File is empty")

        try:
            document = await services.orchestrator.submit(file.filename, data, file.content_type)
        except PipelineError as e:
            raise to_http_error(e) from e

        if process:
            _start_background(app, services, document.id, full_document)

        return DocumentResponse.from_document(document)

    @app.get("/api/documents/{document_id}", response_model=DocumentStatusResponse, tags=["Documents"])
    async def get_document_status(
        document_id: str,
        services: Services = Depends(get_services),
    ) -> DocumentStatusResponse:
        try:
            report = await services.orchestrator.get_status(document_id)
        except PipelineError as e:
            raise to_http_error(e) from e

        return DocumentStatusResponse(
            document=DocumentResponse.from_document(report.document),
            segments_total=report.segments_total,
            segments_by_status=report.segments_by_status,
            has_schema=report.has_schema,
            results_total=report.results_total,
            results_generated=report.results_generated,
            results_executed=report.results_executed,
            results_failed=report.results_failed,
            nodes_created=report.mutations.nodes_created,
            relationships_created=report.mutations.relationships_created,
        )

    @app.post("/api/documents/{document_id}/process", tags=["Documents"], response_model=None)
    async def process_document(
        document_id: str,
        request: ProcessRequest | None = None,
        services: Services = Depends(get_services),
    ) -> PipelineResult | JSONResponse:
        """
        Run or resume the pipeline for a document.

        With ``wait=false`` the run starts in the background and 202 is returned.
        """
        request = request or ProcessRequest()
        try:
            await services.store.require_document(document_id)
            if not request.wait:
                _start_background(app, services, document_id, request.full_document)
                accepted = ProcessAccepted(document_id=document_id, message="Processing started")
                return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.model_dump())

            return await services.orchestrator.process(document_id, full_document=request.full_document)
        except PipelineError as e:
            logger.error("Processing failed", document_id=document_id, error=e.message)
            raise to_http_error(e) from e

    @app.post("/api/query", response_model=QueryResult, tags=["Query"])
    async def query_graph(
        request: QueryRequest,
        services: Services = Depends(get_services),
    ) -> QueryResult:
        """Answer a question with a generated read-only query over the document's schema."""
        try:
            return await services.query.query(request.question, request.document_id)
        except PipelineError as e:
            raise to_http_error(e) from e

    @app.get("/api/formats", tags=["Documents"])
    async def supported_formats() -> dict[str, list[str]]:
        return {"extensions": [f".{ext}" for ext in DocumentLoaderFactory.get_supported_extensions()]}


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "src.api.main:app",
        host=_settings.api.host,
        port=_settings.api.port,
        reload=_settings.api.debug,
    )
