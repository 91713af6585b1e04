from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from textwrap import shorten
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from .backlinks import BacklinkGenerator
from .config import AppConfig, load_config
from .errors import DimensionMismatch, GenerationError, IndexingInProgress, ProviderUnavailable
from .logging_config import setup_logging
from .manager import QueryStatus, RAGManager

console = Console()


def _add_config_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to a config YAML file (default: config.yaml).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notes-rag",
        description="Index your notes and ask questions answered from them.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    index_parser = subparsers.add_parser("index", help="Embed new and changed notes.")
    _add_config_arg(index_parser)

    ask_parser = subparsers.add_parser("ask", help="Ask a question using the existing index.")
    ask_parser.add_argument("question", type=str, help="Question to ask over your notes.")
    ask_parser.add_argument("--stream", action="store_true", help="Print the answer as it is generated.")
    ask_parser.add_argument("--persona", type=str, default=None, help="Persona to answer as.")
    _add_config_arg(ask_parser)

    stats_parser = subparsers.add_parser("stats", help="Show index storage statistics.")
    _add_config_arg(stats_parser)

    clear_parser = subparsers.add_parser("clear", help="Delete the index.")
    _add_config_arg(clear_parser)

    diag_parser = subparsers.add_parser("diagnostics", help="Show settings, storage and corpus details.")
    _add_config_arg(diag_parser)

    links_parser = subparsers.add_parser("backlinks", help="Suggest [[links]] to notes related to a text.")
    links_parser.add_argument("text", type=str, help="Passage to find related notes for.")
    links_parser.add_argument("-k", type=int, default=5, help="Maximum number of links (default: 5).")
    _add_config_arg(links_parser)

    return parser


async def _index(manager: RAGManager, cfg: AppConfig) -> int:
    with Progress(
        TextColumn("[green]Indexing notes"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("index", total=1.0)
        summary = await manager.index_all(lambda fraction: progress.update(task, completed=fraction))

    console.print(
        f"[bold green]Indexed {summary.indexed} note(s)[/bold green], "
        f"{summary.unchanged} unchanged, {summary.removed} removed, "
        f"{summary.total_chunks} chunks in the index."
    )
    if summary.changed and not summary.persisted:
        console.print(
            "[yellow]The index could not be saved; these changes will be lost on restart. "
            "Check the log for the write error.[/yellow]"
        )
    if summary.skipped:
        where = cfg.log_file or "the log output above"
        console.print(f"[yellow]Skipped {summary.skipped} note(s); see {where} for details.[/yellow]")
        for path, reason in summary.failures:
            console.print(f"  [yellow]-[/yellow] {path}: {reason}")
    return 0


async def _ask(manager: RAGManager, question: str, stream: bool) -> int:
    def _write(fragment: str) -> None:
        console.print(fragment, end="", markup=False, highlight=False)

    if stream:
        result = await manager.stream_query(question, _write)
        console.print()
    else:
        result = await manager.query(question)

    if result.status is not QueryStatus.OK:
        if not stream:
            console.print(f"[yellow]{result.answer}[/yellow]")
        return 1

    if not stream:
        console.rule("[bold green]Answer[/bold green]")
        console.print(result.answer)

    if result.results:
        console.rule("[bold blue]Sources[/bold blue]")
        for r in result.results:
            preview = shorten(r.text.replace("\n", " "), width=180, placeholder="...")
            console.print(Panel(preview, title=r.source_path, subtitle=f"score={r.score:.3f}", expand=False))
    else:
        console.print("[dim]No matching notes were used for this answer.[/dim]")
    return 0


def _stats(manager: RAGManager) -> int:
    stats = manager.get_storage_stats()
    table = Table(title="Index Statistics", show_header=False)
    table.add_row("Total embeddings", str(stats.total_embeddings))
    table.add_row("Indexed files", str(stats.indexed_files))
    last = stats.last_indexed.strftime("%Y-%m-%d %H:%M:%S") if stats.last_indexed else "Never"
    table.add_row("Last indexed", last)
    table.add_row("Storage used", stats.storage_used)
    console.print(table)
    return 0


def _diagnostics(manager: RAGManager, cfg: AppConfig) -> int:
    table = Table(title="Settings", show_header=False)
    table.add_row("Provider", cfg.provider_type)
    table.add_row("Server", cfg.server_address)
    table.add_row("Embedding model", cfg.embedding_model_name)
    table.add_row("LLM model", cfg.llm_model)
    table.add_row("Notes directory", str(cfg.data_dir_resolved))
    table.add_row("Snapshot", str(manager.snapshots.path))
    table.add_row("Notes on disk", str(len(manager.corpus.list_files())))
    table.add_row("Notes in index", str(manager.indexed_files_count))
    console.print(table)
    return _stats(manager)


async def _backlinks(manager: RAGManager, text: str, k: int) -> int:
    links = await BacklinkGenerator(manager).generate(text, k=k)
    if not links:
        console.print("[yellow]No related notes found.[/yellow]")
        return 0
    console.print("Related:")
    for link in links:
        console.print(link)
    return 0


async def run(args: argparse.Namespace, cfg: AppConfig) -> int:
    manager = RAGManager.from_config(cfg)
    try:
        await manager.initialize()
        if args.command == "index":
            return await _index(manager, cfg)
        if args.command == "ask":
            return await _ask(manager, args.question, args.stream)
        if args.command == "stats":
            return _stats(manager)
        if args.command == "clear":
            await manager.clear_index()
            console.print("[green]Index cleared.[/green]")
            return 0
        if args.command == "diagnostics":
            return _diagnostics(manager, cfg)
        if args.command == "backlinks":
            return await _backlinks(manager, args.text, args.k)
        return 2
    finally:
        await manager.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    cfg = load_config(Path(args.config))
    if getattr(args, "persona", None):
        cfg = cfg.model_copy(update={"persona": args.persona})
    setup_logging(cfg.log_level, str(cfg.log_file) if cfg.log_file else None)

    try:
        return asyncio.run(run(args, cfg))
    except ProviderUnavailable as e:
        console.print(f"[red]Embedding provider unavailable:[/red] {e}")
    except DimensionMismatch as e:
        console.print(f"[red]{e}[/red] Run 'notes-rag index' to rebuild.")
    except IndexingInProgress as e:
        console.print(f"[yellow]{e}[/yellow]")
    except GenerationError as e:
        console.print(f"[red]{e}[/red]")
    except KeyboardInterrupt:
        console.print("\nStopped")
    return 1


if __name__ == "__main__":
    sys.exit(main())
