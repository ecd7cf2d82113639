"""CLI for the Doc2Graph pipeline."""

import asyncio
import mimetypes
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Optional, TypeVar

import typer
from neo4j.exceptions import DriverError, Neo4jError
from rich.console import Console
from rich.table import Table

from src.config.settings import get_settings
from src.ingestion.errors import PipelineError, classify_error
from src.ingestion.state import PipelineResult
from src.observability.logging import configure_logging
from src.services import Services, build_services

app = typer.Typer(help="Doc2Graph CLI - turn documents into a Neo4j graph")
console = Console()

T = TypeVar("T")

# 0 is success
EXIT_CODES = {"not_found": 1, "validation": 2, "internal": 3}


def run_with_services(operation: Callable[[Services], Awaitable[T]]) -> T:
    """Run ``operation`` against freshly built services and map failures to exit codes."""

    async def main() -> T:
        services = build_services(get_settings())
        try:
            return await operation(services)
        finally:
            await services.close()

    try:
        return asyncio.run(main())
    except PipelineError as e:
        console.print(f"[red]{type(e).__name__}: {e.message}[/red]")
        if e.stage:
            console.print(f"[red]  stage: {e.stage}  document: {e.document_id}[/red]")
        raise typer.Exit(EXIT_CODES[classify_error(e)]) from e
    except (Neo4jError, DriverError, OSError) as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        raise typer.Exit(EXIT_CODES["internal"]) from e


def print_result(result: PipelineResult) -> None:
    if not result.approved:
        console.print("[yellow]Statements were rejected; nothing was ingested[/yellow]")
        return

    label = "Already completed" if result.reused else "Completed"
    console.print(f"[bold green]{label}:[/bold green] {result.document_id}")
    console.print(f"  mode: {'full document' if result.full_document else 'chunked'}")
    console.print(f"  results: {result.result_count}")
    console.print(f"  nodes created: {result.mutations.nodes_created}")
    console.print(f"  relationships created: {result.mutations.relationships_created}")
    if result.statement_file:
        console.print(f"  statements: {result.statement_file}")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Log level"),
):
    """Configure logging for every command."""
    configure_logging(level=log_level, format="console", service_name="doc2graph-cli")


@app.command()
def submit(
    path: Path = typer.Argument(..., help="Document to submit (.txt, .md, .pdf, .docx)"),
    process: bool = typer.Option(False, "--process", "-p", help="Run the pipeline right away"),
    chunked: Optional[bool] = typer.Option(None, "--chunked/--full", help="Generation mode override"),
):
    """Submit a document."""
    if not path.is_file():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(EXIT_CODES["not_found"])

    data = path.read_bytes()
    mime_type, _ = mimetypes.guess_type(path.name)

    async def operation(services: Services) -> PipelineResult | None:
        document = await services.orchestrator.submit(path.name, data, mime_type)
        console.print(f"[green]Submitted {path.name} -> {document.id}[/green]")
        if not process:
            return None
        full_document = None if chunked is None else not chunked
        return await services.orchestrator.process(document.id, full_document=full_document)

    result = run_with_services(operation)
    if result is not None:
        print_result(result)


@app.command()
def process(
    document_id: str = typer.Argument(..., help="Document ID"),
    chunked: Optional[bool] = typer.Option(None, "--chunked/--full", help="Generation mode override"),
):
    """Run or resume the pipeline for a submitted document."""
    full_document = None if chunked is None else not chunked
    result = run_with_services(
        lambda services: services.orchestrator.process(document_id, full_document=full_document)
    )
    print_result(result)


@app.command()
def status(
    document_id: str = typer.Argument(..., help="Document ID"),
):
    """Show the pipeline progress of a document."""
    report = run_with_services(lambda services: services.orchestrator.get_status(document_id))
    document = report.document

    table = Table(title=f"{document.filename} ({document.id})")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Status", document.status.value)
    table.add_row("Document type", document.document_type or "-")
    table.add_row("Schema", "yes" if report.has_schema else "no")
    table.add_row("Chunks", str(report.segments_total))
    for segment_status, count in sorted(report.segments_by_status.items()):
        table.add_row(f"  {segment_status}", str(count))
    table.add_row("Results", f"{report.results_generated}/{report.results_total} generated")
    table.add_row("Executed", str(report.results_executed))
    table.add_row("Failed", str(report.results_failed))
    table.add_row("Nodes created", str(report.mutations.nodes_created))
    table.add_row("Relationships created", str(report.mutations.relationships_created))
    if document.error:
        table.add_row("Error", f"[red]{document.error}[/red]")

    console.print(table)


@app.command()
def query(
    document_id: str = typer.Argument(..., help="Document whose schema grounds the query"),
    question: str = typer.Argument(..., help="Question in natural language"),
    limit: int = typer.Option(20, "--limit", "-n", help="Rows to display"),
):
    """Ask a question about a document's graph."""
    result = run_with_services(lambda services: services.query.query(question, document_id))

    console.print(f"[bold]Cypher:[/bold] {result.cypher}")
    if not result.results:
        console.print("[yellow]No results found[/yellow]")
        return

    columns = list(result.results[0].keys())
    table = Table(title=f"{result.count} result(s)")
    for column in columns:
        table.add_column(column, style="green")
    for row in result.results[:limit]:
        table.add_row(*(str(row.get(column, "")) for column in columns))
    console.print(table)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="API host"),
    port: Optional[int] = typer.Option(None, "--port", help="API port"),
):
    """Start the API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api.host
    port = port or settings.api.port
    console.print(f"[blue]Starting API on http://{host}:{port}[/blue]")
    uvicorn.run("src.api.main:app", host=host, port=port, reload=settings.api.debug)


if __name__ == "__main__":
    app()
