#!/usr/bin/env python3
"""
parachute-search CLI entry point.

Usage:
    parachute-search sync [--force]        # Index new/changed captures
    parachute-search index RECORD_ID       # Index one capture now
    parachute-search remove RECORD_ID      # Drop a capture from the index
    parachute-search search "query" [-k N] # Hybrid search
    parachute-search stats                 # Index statistics
    parachute-search init                  # Write .parachute/search.yaml
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from parachute_search import __version__
from parachute_search.config import Settings, init_local_config, load_settings
from parachute_search.engine import SearchEngine, create_engine
from parachute_search.indexer import (
    IndexerError,
    SearchResults,
    SearchUnavailable,
    SyncReport,
)
from parachute_search.indexer.search_debug_log import (
    format_search_trace,
    read_recent_search_traces,
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BACKEND_NOT_READY = 2


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="parachute-search",
        description="Semantic indexing and hybrid search for voice captures",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--records",
        type=str,
        default=None,
        help="Directory of markdown capture files (default: PARACHUTE_RECORDS_DIR or ./captures)",
    )
    parser.add_argument(
        "--index-dir",
        type=str,
        default=None,
        help="Directory holding index.db (default: PARACHUTE_INDEX_DIR or ./.parachute/index)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Index new or changed captures")
    sync_parser.add_argument(
        "--force",
        action="store_true",
        help="Forget all fingerprints and re-embed every capture",
    )

    index_parser = subparsers.add_parser("index", help="Index a single capture now")
    index_parser.add_argument("record_id", help="Capture id (filename stem)")

    remove_parser = subparsers.add_parser("remove", help="Remove a capture from the index")
    remove_parser.add_argument("record_id", help="Capture id (filename stem)")

    search_parser = subparsers.add_parser("search", help="Search indexed captures")
    search_parser.add_argument("query", help="Natural-language query")
    search_parser.add_argument(
        "-k",
        "--top-k",
        type=int,
        default=None,
        help="Maximum number of results (default: SEARCH_TOP_K)",
    )
    search_parser.add_argument(
        "--debug",
        action="store_true",
        help="Write a diagnostics trace and print it",
    )

    subparsers.add_parser("stats", help="Show index statistics")
    subparsers.add_parser("init", help="Create .parachute/search.yaml with defaults")

    return parser.parse_args(argv)


def apply_args_to_settings(args: argparse.Namespace, settings: Settings) -> Settings:
    """Apply command line arguments to settings."""
    if getattr(args, "verbose", False):
        settings.verbose = True
    if getattr(args, "records", None):
        settings.records_dir = Path(args.records).expanduser().resolve()
    if getattr(args, "index_dir", None):
        settings.index_dir = Path(args.index_dir).expanduser().resolve()
    if getattr(args, "debug", False):
        settings.debug_log = True
    return settings


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.DEBUG if verbose else logging.INFO,
    )
    for noisy_logger in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def format_duration(seconds: float) -> str:
    """Convert seconds to human-readable duration (e.g. "2m 34s", "45s")."""
    if seconds < 60:
        return f"{int(seconds)}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}m {secs}s"


def display_sync_report(report: SyncReport, console: Console) -> None:
    """Display sync results in a panel, plus a table of failed captures."""
    content = [
        f"Captures: [cyan]{report.total}[/cyan]",
        f"Indexed: [green]{len(report.indexed)}[/green]",
        f"Unchanged: [cyan]{report.skipped}[/cyan]",
        f"Removed: [yellow]{len(report.removed)}[/yellow]",
        f"Failed: [red]{len(report.failed)}[/red]",
        f"Chunks written: [cyan]{report.chunks_written:,}[/cyan]",
        f"Duration: [cyan]{format_duration(report.duration_seconds)}[/cyan]",
    ]
    console.print(Panel("\n".join(content), title="[bold]Index Sync[/bold]", border_style="green"))

    if report.failed:
        table = Table(title="[bold]Failed Captures[/bold]")
        table.add_column("Capture")
        table.add_column("Error")
        for record_id, error in sorted(report.failed.items()):
            table.add_row(record_id, f"[red]{escape(error)}[/red]")
        console.print(table)


def display_search_results(results: SearchResults, console: Console) -> None:
    if results.degraded is not None:
        console.print(
            f"[yellow]Search degraded: {results.degraded.path} path unavailable "
            f"({results.degraded.cause})[/yellow]"
        )
    if not results:
        console.print("[yellow]No matches.[/yellow]")
        return

    table = Table(title=f"[bold]Results for[/bold] [cyan]{results.query}[/cyan]")
    table.add_column("#", justify="right")
    table.add_column("Capture")
    table.add_column("Field")
    table.add_column("Score", justify="right")
    table.add_column("Snippet")
    for position, result in enumerate(results, 1):
        table.add_row(
            str(position),
            result.record_id,
            result.field.value,
            f"{result.score:.4f}",
            escape(result.snippet),
        )
    console.print(table)


def display_stats(stats: dict[str, Any], vector_stats: dict[str, Any], console: Console) -> None:
    table = Table(title="[bold]Index Health[/bold]", show_header=False)
    table.add_column("", justify="left")
    table.add_column("", justify="right")
    table.add_row("Captures indexed:", f"[cyan]{stats['records_indexed']:,}[/cyan]")
    table.add_row("Chunks:", f"[cyan]{stats['chunk_count']:,}[/cyan]")
    for field_name, count in vector_stats.get("fields", {}).items():
        table.add_row(f"  {field_name}:", f"[dim]{count:,}[/dim]")
    table.add_row("Dimensions:", f"[cyan]{vector_stats.get('dimensions')}[/cyan]")
    table.add_row("Database size:", f"[cyan]{vector_stats.get('db_size_bytes', 0):,} bytes[/cyan]")
    if vector_stats.get("last_indexed_at"):
        table.add_row("Last indexed:", f"[dim]{vector_stats['last_indexed_at']}[/dim]")
    table.add_row(
        "Keyword index:",
        "[yellow]stale[/yellow]" if stats["keyword_index_stale"] else "[green]OK[/green]",
    )
    console.print(table)


async def _ensure_backend_ready(engine: SearchEngine, console: Console) -> bool:
    if await engine.backend.is_ready():
        return True
    console.print(
        f"[red]Embedding backend not ready: model '{engine.settings.embedding_model}' "
        f"at {engine.settings.embedding_api_base_url}[/red]"
    )
    if engine.settings.embedding_provider == "ollama":
        console.print(f"Try: ollama pull {engine.settings.embedding_model}")
    return False


async def run_sync(engine: SearchEngine, console: Console, force: bool = False) -> int:
    """Run a sync with a progress bar fed by the orchestrator's state stream."""
    if not await _ensure_backend_ready(engine, console):
        return EXIT_BACKEND_NOT_READY

    orchestrator = engine.orchestrator
    queue = orchestrator.subscribe()
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            MofNCompleteColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("[cyan]Indexing captures...", total=None)
            job = asyncio.create_task(
                orchestrator.force_full_reindex() if force else orchestrator.sync_all()
            )
            while not job.done():
                try:
                    state = await asyncio.wait_for(queue.get(), timeout=0.2)
                except asyncio.TimeoutError:
                    continue
                if state.total:
                    progress.update(task, total=state.total, completed=state.current)
            report = await job
    finally:
        orchestrator.unsubscribe(queue)

    display_sync_report(report, console)
    return EXIT_OK if not report.failed else EXIT_ERROR


async def run_index_one(engine: SearchEngine, console: Console, record_id: str) -> int:
    if not await _ensure_backend_ready(engine, console):
        return EXIT_BACKEND_NOT_READY
    outcome = await engine.orchestrator.index_one(record_id, force=True)
    if outcome.error:
        console.print(f"[red]Failed to index {record_id}: {outcome.error}[/red]")
        return EXIT_ERROR
    console.print(
        f"[green]{record_id}: {outcome.status.value}[/green] "
        f"[dim]({outcome.chunk_count} chunks)[/dim]"
    )
    return EXIT_OK


async def run_remove(engine: SearchEngine, console: Console, record_id: str) -> int:
    deleted = await engine.orchestrator.remove_one(record_id)
    await engine.keyword_index.ensure_ready()
    console.print(f"[yellow]Removed {record_id} ({deleted} chunks)[/yellow]")
    return EXIT_OK


async def run_search(
    engine: SearchEngine, console: Console, query: str, top_k: Optional[int]
) -> int:
    try:
        results = await engine.ranker.search(query, top_k=top_k)
    except SearchUnavailable as e:
        console.print(f"[red]{e}[/red]")
        return EXIT_ERROR
    display_search_results(results, console)

    if engine.settings.debug_log:
        traces = read_recent_search_traces(
            engine.settings.index_dir, limit=1, query=query
        )
        if traces:
            console.print(format_search_trace(traces[0]), markup=False)
    return EXIT_OK


async def run_stats(engine: SearchEngine, console: Console) -> int:
    stats = await engine.orchestrator.get_stats()
    vector_stats = await engine.vector_store.get_stats()
    display_stats(stats, vector_stats, console)
    if stats["chunk_count"] == 0:
        console.print("- Index is empty. Run parachute-search sync.")
    return EXIT_OK


async def dispatch(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    with create_engine(settings) as engine:
        if args.command == "sync":
            return await run_sync(engine, console, force=args.force)
        if args.command == "index":
            return await run_index_one(engine, console, args.record_id)
        if args.command == "remove":
            return await run_remove(engine, console, args.record_id)
        if args.command == "search":
            return await run_search(engine, console, args.query, args.top_k)
        if args.command == "stats":
            return await run_stats(engine, console)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    console = Console()

    if args.command == "init":
        written = init_local_config()
        if written is None:
            console.print("[yellow]Configuration already exists in .parachute/[/yellow]")
            return EXIT_ERROR
        console.print(f"[green]Wrote {written}[/green]")
        return EXIT_OK

    settings = apply_args_to_settings(args, load_settings())
    configure_logging(settings.verbose)

    try:
        return asyncio.run(dispatch(args, settings, console))
    except (IndexerError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return EXIT_ERROR
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
