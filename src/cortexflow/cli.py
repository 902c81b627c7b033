"""
Command-line interface for the CortexFlow retrieval store.

Commands:
    index         - Index a text or markdown file
    index-project - Index a project JSON export (project, tasks, notes)
    search        - Search indexed chunks
    context       - Build a bounded prompt context for a query
    list          - List indexed documents
    delete        - Delete a document or all documents of a project
    stats         - Show store statistics
    config        - Show or update the RAG configuration
    reindex       - Re-chunk one document or re-embed all documents
    rebuild-fts   - Rebuild the keyword index
    vacuum        - Reclaim database space
"""

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cortexflow.exceptions import RAGError

app = typer.Typer(
    name="cortexflow-rag",
    help="Maintain the CortexFlow retrieval store",
    add_completion=False,
)
console = Console()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="Logging level (defaults to LOG_LEVEL)"
    ),
) -> None:
    """Configure logging for all commands."""
    from cortexflow.config import get_settings

    level = (log_level or get_settings().log_level).upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _fail(error: Exception) -> None:
    console.print(f"[red]{error}[/red]")
    raise typer.Exit(1)


@app.command()
def index(
    path: Path = typer.Argument(..., help="Text or markdown file to index"),
    title: Optional[str] = typer.Option(None, help="Document title (default: file name)"),
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Owning project id"),
    skip_embedding: bool = typer.Option(False, "--skip-embedding", help="Index without vectors"),
) -> None:
    """Index a single file as a custom document."""
    from cortexflow.retrieval.resources import get_rag_service

    if not path.is_file():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(1)

    content = path.read_text(encoding="utf-8")
    service = get_rag_service()
    try:
        with console.status(f"[bold green]Indexing {path.name}..."):
            document = service.index_document(
                title or path.name,
                content,
                project_id=project_id,
                source_id=str(path),
                skip_embedding=skip_embedding,
            )
    except RAGError as e:
        _fail(e)

    console.print(f"[green]✓ Indexed {document.title}[/green] ({document.chunk_count} chunks)")
    console.print(f"  Document id: {document.id}")


@app.command("index-project")
def index_project(
    path: Path = typer.Argument(..., help="Project context JSON file"),
    replace: bool = typer.Option(False, "--replace", help="Delete existing project documents first"),
) -> None:
    """Index a project with its tasks and notes."""
    from cortexflow.retrieval.resources import get_rag_service

    if not path.is_file():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(1)

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON in {path}: {e}[/red]")
        raise typer.Exit(1)

    service = get_rag_service()
    try:
        with console.status("[bold green]Indexing project..."):
            result = service.index_project_context(payload, replace_existing=replace)
    except RAGError as e:
        _fail(e)

    console.print(
        f"[green]✓ Indexed {len(result.documents)} documents[/green] ({result.total_chunks} chunks)"
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Restrict to a project"),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", help="Maximum results"),
    min_score: Optional[float] = typer.Option(None, help="Minimum score"),
    search_type: str = typer.Option("hybrid", "--type", "-t", help="vector, keyword or hybrid"),
) -> None:
    """Search indexed chunks."""
    from cortexflow.retrieval.resources import get_rag_service

    service = get_rag_service()
    try:
        result = service.search(
            query,
            project_id=project_id,
            top_k=top_k,
            min_score=min_score,
            search_type=search_type,
        )
    except RAGError as e:
        _fail(e)

    if not result.results:
        console.print("[yellow]No results.[/yellow]")
        return

    table = Table(title=f"{result.total_found} results ({result.search_time_ms:.0f}ms, {result.embedding_provider})")
    table.add_column("Score", style="green", justify="right")
    table.add_column("Document", style="cyan")
    table.add_column("Chunk", justify="right")
    table.add_column("Highlight")

    for item in result.results:
        table.add_row(
            f"{item.score:.3f}",
            item.document.title,
            str(item.chunk.chunk_index),
            item.highlights[0] if item.highlights else "",
        )
    console.print(table)


@app.command()
def context(
    query: str = typer.Argument(..., help="Search query"),
    max_length: int = typer.Option(4000, "--max-length", help="Maximum context length"),
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Restrict to a project"),
    no_metadata: bool = typer.Option(False, "--no-metadata", help="Omit metadata lines"),
) -> None:
    """Print a bounded prompt context built from search results."""
    from cortexflow.retrieval.resources import get_rag_service

    service = get_rag_service()
    try:
        result = service.build_context_from_search(
            query,
            max_context_length=max_length,
            include_metadata=not no_metadata,
            project_id=project_id,
        )
    except RAGError as e:
        _fail(e)

    if not result.context:
        console.print("[yellow]No matching context.[/yellow]")
        return

    console.print(result.context, markup=False, highlight=False)
    console.print("[blue]Sources:[/blue]")
    for source in result.sources:
        console.print(f"  • {source.title} ({source.score:.3f})")


@app.command("list")
def list_documents(
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Filter by project"),
    source_type: Optional[str] = typer.Option(None, "--source-type", "-s", help="Filter by source type"),
    limit: int = typer.Option(100, help="Maximum documents"),
) -> None:
    """List indexed documents, most recently updated first."""
    from cortexflow.retrieval.resources import get_rag_service

    service = get_rag_service()
    try:
        documents = service.list_documents(project_id=project_id, source_type=source_type, limit=limit)
    except RAGError as e:
        _fail(e)

    table = Table(title=f"{len(documents)} documents")
    table.add_column("Id", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Type")
    table.add_column("Project")
    table.add_column("Chunks", justify="right")
    table.add_column("Updated")

    for document in documents:
        table.add_row(
            document.id,
            document.title,
            document.source_type.value,
            document.project_id or "-",
            str(document.chunk_count),
            document.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def delete(
    document_id: Optional[str] = typer.Argument(None, help="Document id"),
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Delete all documents of a project"),
) -> None:
    """Delete a document, or every document of a project."""
    from cortexflow.retrieval.resources import get_rag_service

    service = get_rag_service()
    if project_id:
        deleted = service.delete_project_documents(project_id)
        console.print(f"[green]✓ Deleted {deleted} documents[/green]")
        return
    if not document_id:
        console.print("[red]Provide a document id or --project.[/red]")
        raise typer.Exit(1)

    if service.delete_document(document_id):
        console.print(f"[green]✓ Deleted {document_id}[/green]")
    else:
        console.print(f"[yellow]Document not found: {document_id}[/yellow]")
        raise typer.Exit(1)


@app.command()
def stats() -> None:
    """Show document, chunk and embedding statistics."""
    from cortexflow.retrieval.resources import get_rag_service

    result = get_rag_service().get_rag_stats()

    table = Table(title="RAG Store")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Documents", str(result.total_documents))
    table.add_row("Chunks", str(result.total_chunks))
    table.add_row("Embedded chunks", str(result.indexed_chunks))
    table.add_row("Embedding provider", result.embedding_provider)
    table.add_row("Dimensions", str(result.embedding_dimensions))
    for project, count in sorted(result.project_breakdown.items()):
        table.add_row(f"Project {project}", str(count))
    console.print(table)


@app.command()
def config(
    set_values: Optional[list[str]] = typer.Option(
        None,
        "--set",
        help="Update a value, e.g. --set search.top_k=10 (value parsed as JSON when possible)",
    ),
) -> None:
    """Show the RAG configuration, optionally applying updates first."""
    from cortexflow.retrieval.resources import get_rag_service

    service = get_rag_service()

    if set_values:
        updates: dict[str, dict[str, object]] = {}
        for item in set_values:
            key, sep, raw = item.partition("=")
            section, dot, field = key.partition(".")
            if not sep or not dot or not field:
                console.print(f"[red]Expected section.field=value, got: {item}[/red]")
                raise typer.Exit(1)
            try:
                value = json.loads(raw)
            except json.JSONDecodeError:
                value = raw
            updates.setdefault(section, {})[field] = value
        try:
            service.update_rag_config(updates)
        except RAGError as e:
            _fail(e)
        console.print("[green]✓ Configuration updated[/green]")

    current = service.get_rag_config().model_dump(mode="json")
    if current["embedding"].get("api_key"):
        current["embedding"]["api_key"] = "***"
    console.print_json(data=current)


@app.command()
def reindex(
    document_id: Optional[str] = typer.Argument(None, help="Document to re-chunk and re-embed"),
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Limit re-embedding to a project"),
) -> None:
    """Re-chunk one document, or re-embed every document."""
    from cortexflow.retrieval.resources import get_rag_service

    service = get_rag_service()
    try:
        if document_id:
            with console.status("[bold green]Reindexing..."):
                document = service.reindex_document(document_id)
            console.print(f"[green]✓ Reindexed {document.title}[/green] ({document.chunk_count} chunks)")
            return

        with console.status("[bold green]Re-embedding documents..."):
            result = service.reindex_all(project_id=project_id)
    except RAGError as e:
        _fail(e)

    console.print(
        f"[green]✓ Processed {result.documents_processed} documents[/green] "
        f"({result.chunks_updated} chunks embedded)"
    )


@app.command("rebuild-fts")
def rebuild_fts() -> None:
    """Rebuild the keyword index from stored chunks."""
    from cortexflow.retrieval.resources import get_rag_service

    count = get_rag_service().rebuild_fts_index()
    console.print(f"[green]✓ Keyword index rebuilt[/green] ({count} chunks)")


@app.command()
def vacuum() -> None:
    """Reclaim unused database space."""
    from cortexflow.retrieval.resources import get_rag_service

    with console.status("[bold green]Vacuuming..."):
        get_rag_service().vacuum_database()
    console.print("[green]✓ Database vacuumed[/green]")


@app.command()
def version() -> None:
    """Show version information."""
    from cortexflow import __version__

    console.print(f"CortexFlow RAG v{__version__}")


if __name__ == "__main__":
    app()
