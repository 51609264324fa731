"""Command line interface for refdocs."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from refdocs.config import AppConfig
from refdocs.errors import DocsError
from refdocs.models import RefreshReport
from refdocs.service import DocsService

T = TypeVar("T")

console = Console()
app = typer.Typer(help="refdocs - cached, searchable reference documentation")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _run(config: AppConfig, action: Callable[[DocsService], Awaitable[T]]) -> T:
    """Run ``action`` against a service built from ``config``, rendering errors."""

    async def runner() -> T:
        service = DocsService.from_config(config)
        try:
            return await action(service)
        finally:
            await service.aclose()

    try:
        return asyncio.run(runner())
    except DocsError as exc:
        console.print(f"[red]{exc.kind}: {escape(exc.message)}[/red]")
        raise typer.Exit(code=1) from exc


def _print_report(report: RefreshReport) -> None:
    console.print(
        f"Retrieved: {report.retrieved}, unchanged: {report.unchanged}, "
        f"stale cache: {report.fallback}, failed: {len(report.fetch_failures)}, "
        f"indexed: {report.documents_indexed}"
    )
    for key, message in report.fetch_failures.items():
        console.print(f"[yellow]{escape(key)}: {escape(message)}[/yellow]")
    if not report.ok:
        aborted = ", ".join(str(n) for n in report.aborted_batches) or "none"
        console.print(
            f"[red]Batch {report.failed_batch} failed: {escape(report.error or '')} (aborted: {aborted})[/red]"
        )
        raise typer.Exit(code=1)


@app.command()
def refresh(
    keys: Optional[List[str]] = typer.Argument(None, help="Document keys; defaults to every configured source."),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Fetch documents that changed upstream and re-index them."""
    _setup_logging(verbose)
    config = AppConfig.from_env(db_path=db)
    console.print(f"Refreshing into [bold]{config.resolve_db_path(Path.cwd())}[/bold]...")
    report = _run(config, lambda service: service.refresh(keys or None))
    _print_report(report)


@app.command()
def reindex(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Rebuild terms and embeddings of every cached document."""
    _setup_logging(verbose)
    config = AppConfig.from_env(db_path=db)
    report = _run(config, lambda service: service.reindex())
    _print_report(report)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    doc_type: str = typer.Option("all", "--doc-type", help="api, tutorial, example, error, general or all"),
    depth: int = typer.Option(1, "--depth", help="Paragraphs of context around the match (0-3)"),
    package: Optional[str] = typer.Option(None, "--package", help="Only documents of this package"),
    limit: int = typer.Option(10, help="Number of results to display"),
    strategy: Optional[str] = typer.Option(None, help="lexical or vector"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Search the cached documentation."""
    _setup_logging(verbose)
    config = AppConfig.from_env(db_path=db, search_strategy=strategy)
    results = _run(
        config,
        lambda service: service.search(
            query, doc_type=doc_type, context_depth=depth, package_filter=package, limit=limit
        ),
    )
    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Document")
    table.add_column("Type")
    table.add_column("Section")
    table.add_column("Excerpt")

    for result in results:
        snippet = result.excerpt.replace("\n", " ")
        table.add_row(
            f"{result.relevance_score:.4f}",
            result.document_key,
            result.doc_type,
            " > ".join(result.hierarchy_path),
            snippet[:180],
        )

    console.print(table)


@app.command()
def chunk(
    key: str = typer.Argument(..., help="Document key, e.g. /llms-full.txt"),
    number: int = typer.Argument(1, help="1-based chunk number"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    chunk_size: Optional[int] = typer.Option(None, help="Chunk size in characters"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Print one chunk of a large document."""
    _setup_logging(verbose)
    config = AppConfig.from_env(db_path=db)
    page = _run(config, lambda service: service.get_chunk(key, number, chunk_size))
    console.print(page.text, markup=False, highlight=False)
    console.print(
        f"[dim]Chunk {page.current_chunk} of {page.total_chunks}"
        f"{' (more available)' if page.next_chunk_available else ''}[/dim]"
    )


@app.command()
def show(
    key: str = typer.Argument(..., help="Document key"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    compressed: bool = typer.Option(False, "--compressed", help="Strip markup to save tokens"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Print a document."""
    _setup_logging(verbose)
    config = AppConfig.from_env(db_path=db)
    view = _run(config, lambda service: service.get_document(key, compressed=compressed))
    console.print(view.text, markup=False, highlight=False)
    if view.compressed:
        meta: dict[str, Any] = view.metadata
        console.print(
            f"[dim]{meta['original_size']} -> {meta['compressed_size']} chars "
            f"({meta['compression_ratio']} smaller, ~{meta['estimated_tokens']} tokens)[/dim]"
        )


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Start the HTTP API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - optional extra
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    from refdocs.web.app import create_app

    config = AppConfig.from_env(db_path=db)
    resolved_db = config.resolve_db_path(Path.cwd())
    _ensure_db_parent(resolved_db)
    console.print(f"Starting HTTP API on http://{host}:{port} (database: {resolved_db})")
    uvicorn.run(
        create_app(config),
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
