"""
Command-line interface for the lexical index pipeline.

Usage:
    lexicon run                                   # Ingest books through the LLM (resumable)
    lexicon restore <json...> <target-db>         # Replay JSON backups into an index
    lexicon restore --dir <dir> <target-db>       # Replay every backup in a directory
    lexicon postprocess [db] [--no-surfaces] [--no-variants] [--no-bases]
    lexicon download [db]                         # Fetch the latest released index
    lexicon stats [db]                            # Row counts
    lexicon lookup <surface> [--db PATH]          # Base, variants and related surfaces
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from lexicon_core.db.session import session_scope
from lexicon_core.settings import settings as core_settings
from lexicon_core.store import LexicalStore
from lexicon_pipeline.errors import ConfigurationError
from lexicon_pipeline.ingest.run import IngestOptions, process_lines
from lexicon_pipeline.llm.gemini import GeminiClient
from lexicon_pipeline.postprocess import postprocess_database
from lexicon_pipeline.release import ReleaseDownloader
from lexicon_pipeline.restore import restore_directory, restore_multiple
from lexicon_pipeline.settings import settings

app = typer.Typer(
    name="lexicon",
    help="Hebrew lexical normalization index (LLM ingestion, restore, diacritics post-processing).",
    no_args_is_help=True,
)
console = Console()


def _print_banner(title: str) -> None:
    console.print(f"\n[bold cyan]{title}[/bold cyan]\n")


@app.command()
def run(
    source_db: Optional[Path] = typer.Option(
        None, "--source-db", "-s", help="SeforimLibrary database (default: LEXICON_SOURCE_DB_PATH)."
    ),
    output_db: Optional[Path] = typer.Option(
        None, "--output-db", "-o", help="Lexical index to write (default: LEXICON_DATABASE_PATH)."
    ),
    first_book: int = typer.Option(settings.first_book_id, "--first-book", help="First book id (inclusive)."),
    last_book: int = typer.Option(settings.last_book_id, "--last-book", help="Last book id (inclusive)."),
    batch_size: int = typer.Option(settings.batch_size, "--batch-size", "-b", help="Lines per LLM call."),
    concurrency: int = typer.Option(
        settings.max_concurrency, "--concurrency", "-c", help="Concurrent LLM calls (1-250)."
    ),
    timeout: float = typer.Option(settings.llm_timeout_s, "--timeout", help="Per-batch LLM timeout in seconds."),
    backup: bool = typer.Option(settings.save_json_backup, "--backup/--no-backup", help="Write per-book JSON backups."),
    download: bool = typer.Option(
        True, "--download/--no-download", help="Fetch the released index first when no local index exists."
    ),
) -> None:
    """
    Extract lexical entries from the source corpus, batch by batch.

    Lines already marked processed are skipped, so an interrupted or partly failed run is
    resumed simply by running it again.
    """
    _print_banner("Lexical index ingestion")
    source_db = source_db or settings.source_db_path
    output_db = output_db or core_settings.database_path

    try:
        if not settings.gemini_api_key:
            raise ConfigurationError("Missing GEMINI_API_KEY (or LEXICON_GEMINI_API_KEY).")
        if source_db is None:
            raise ConfigurationError("Missing source database: pass --source-db or set LEXICON_SOURCE_DB_PATH.")
        options = IngestOptions(
            batch_size=batch_size,
            max_concurrency=concurrency,
            timeout_s=timeout,
            backup_dir=(settings.backup_dir or output_db.parent) if backup else None,
            invalid_responses_dir=settings.invalid_responses_dir,
        )
        options.check()

        if download:
            with ReleaseDownloader() as downloader:
                downloader.ensure_database(output_db)

        with GeminiClient(api_key=settings.gemini_api_key, timeout_s=timeout) as llm:
            report = process_lines(
                source_db_path=source_db,
                output_db_path=output_db,
                llm=llm,
                book_ids=range(first_book, last_book + 1),
                options=options,
            )
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(2)

    table = Table(title="Ingestion summary", show_header=True, header_style="bold cyan")
    table.add_column("Book", justify="right")
    table.add_column("Title")
    table.add_column("New lines", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed batches", justify="right")
    table.add_column("Entries", justify="right")
    table.add_column("Processed total", justify="right")
    for book in report.books:
        table.add_row(
            str(book.book_id),
            book.title,
            str(book.lines_processed),
            str(book.lines_already_processed),
            str(book.batches_failed),
            str(book.entries_inserted),
            str(book.processed_count),
        )
    console.print(table)
    if report.missing_book_ids:
        console.print(f"[yellow]Books not found: {report.missing_book_ids}[/yellow]")
    if report.batches_failed:
        console.print(f"[yellow]{report.batches_failed} batches failed; run again to retry them.[/yellow]")


@app.command()
def restore(
    paths: list[Path] = typer.Argument(..., help="JSON backup files followed by the target database."),
    directory: Optional[Path] = typer.Option(
        None, "--dir", "-d", help="Restore every matching file in this directory instead."
    ),
    pattern: str = typer.Option(r".*\.json$", "--pattern", help="Filename regex used with --dir."),
) -> None:
    """
    Replay JSON backups into a lexical index (created if missing).

    Entries already present are left untouched, so backups can be merged in any order.
    """
    _print_banner("Restore from JSON")
    if directory is not None:
        if len(paths) != 1:
            raise typer.BadParameter("With --dir, pass only the target database.")
        target = paths[0]
        try:
            total = restore_directory(directory, target, pattern=pattern)
        except NotADirectoryError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(1)
    else:
        if len(paths) < 2:
            raise typer.BadParameter("Pass at least one JSON file and the target database.")
        *json_paths, target = paths
        if len(json_paths) == 1 and not json_paths[0].is_file():
            console.print(f"[red]JSON file not found: {json_paths[0]}[/red]")
            raise typer.Exit(1)
        total = restore_multiple(json_paths, target)
    console.print(f"\n[green]✓ Restored {total} entries into {target}[/green]")


@app.command()
def postprocess(
    db: Optional[Path] = typer.Argument(None, help="Lexical index (default: LEXICON_DATABASE_PATH)."),
    surfaces: bool = typer.Option(True, "--surfaces/--no-surfaces", help="Clean surface values."),
    variants: bool = typer.Option(True, "--variants/--no-variants", help="Clean variant values."),
    bases: bool = typer.Option(True, "--bases/--no-bases", help="Clean base values."),
) -> None:
    """
    Remove Hebrew diacritics (nikud and taamim) and merge the rows that collide afterwards.
    """
    _print_banner("Hebrew diacritics post-processing")
    db = db or core_settings.database_path
    console.print(f"  Database: {db}")
    console.print(f"  Clean surfaces: {surfaces}  variants: {variants}  bases: {bases}")

    try:
        stats = postprocess_database(db, surfaces=surfaces, variants=variants, bases=bases)
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    table = Table(title="Post-processing summary", show_header=True, header_style="bold cyan")
    table.add_column("Kind", style="cyan")
    table.add_column("Processed", justify="right")
    table.add_column("Modified", justify="right")
    table.add_column("Merged", justify="right")
    for label, enabled, kind in (
        ("Surfaces", surfaces, stats.surfaces),
        ("Variants", variants, stats.variants),
        ("Bases", bases, stats.bases),
    ):
        if enabled:
            table.add_row(label, str(kind.processed), str(kind.modified), str(kind.merged))
    console.print(table)
    console.print(f"[green]✓ Total entries modified: {stats.total_modified}[/green]")


@app.command()
def download(
    db: Optional[Path] = typer.Argument(None, help="Where to save the index (default: LEXICON_DATABASE_PATH)."),
) -> None:
    """Download the index from the latest GitHub release unless it already exists locally."""
    db = db or core_settings.database_path
    with ReleaseDownloader() as downloader:
        downloaded = downloader.ensure_database(db)
    if downloaded:
        console.print(f"[green]✓ Downloaded {db}[/green]")


@app.command()
def stats(
    db: Optional[Path] = typer.Argument(None, help="Lexical index (default: LEXICON_DATABASE_PATH)."),
) -> None:
    """Row counts of the index."""
    db = db or core_settings.database_path
    if not db.exists():
        console.print(f"[red]Database file not found: {db}[/red]")
        raise typer.Exit(1)
    with session_scope(db) as session:
        counts = LexicalStore(session).counts()

    table = Table(title=f"Index {db}", show_header=True, header_style="bold cyan")
    table.add_column("Table", style="cyan")
    table.add_column("Rows", justify="right")
    table.add_row("base", str(counts.bases))
    table.add_row("surface", str(counts.surfaces))
    table.add_row("variant", str(counts.variants))
    table.add_row("surface_variant", str(counts.links))
    table.add_row("processed_line", str(counts.processed_lines))
    console.print(table)


@app.command()
def lookup(
    surface: str = typer.Argument(..., help="Surface form to look up (exact match)."),
    db: Optional[Path] = typer.Option(None, "--db", help="Lexical index (default: LEXICON_DATABASE_PATH)."),
) -> None:
    """Show the base, variants and sibling surfaces of a surface form."""
    db = db or core_settings.database_path
    if not db.exists():
        console.print(f"[red]Database file not found: {db}[/red]")
        raise typer.Exit(1)
    with session_scope(db) as session:
        store = LexicalStore(session)
        row = store.find_surface(surface)
        if row is None:
            console.print(f"[yellow]No surface {surface!r}[/yellow]")
            raise typer.Exit(1)
        typer.echo(f"surface:  {row.value}")
        typer.echo(f"base:     {store.base_for_surface(row)}")
        typer.echo(f"variants: {', '.join(store.variants_for_surface(row)) or '-'}")
        if row.notes:
            typer.echo(f"notes:    {row.notes}")
        related = [s.value for s in store.related_surfaces(row)]
        typer.echo(f"related:  {', '.join(related) or '-'}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
