"""CLI entrypoint for trackchar."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import typer
from tqdm import tqdm

from trackchar.config import Settings
from trackchar.embed import EmbeddingBackend, SentenceTransformerProvider
from trackchar.logging_config import configure_logging
from trackchar.maintenance import PassResult
from trackchar.models import CharacterizationRecord, MissingReport, content_hash
from trackchar.recommend import ScoredRecord
from trackchar.store import CharacterizationStore

T = TypeVar("T")

app = typer.Typer(
    name="trackchar",
    help="Track characterization cache with similarity search",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    configure_logging(verbose)


def open_store(settings: Settings | None = None) -> CharacterizationStore:
    """Build the store and its embedding backend from the environment."""
    settings = settings or Settings.from_env()
    provider = SentenceTransformerProvider(settings.model_name)
    return CharacterizationStore(settings, EmbeddingBackend(provider, settings))


def _run(fn: Callable[[CharacterizationStore], Awaitable[T]]) -> T:
    async def runner() -> T:
        store = open_store()
        try:
            return await fn(store)
        finally:
            await store.close()

    return asyncio.run(runner())


def _print_results(results: list[ScoredRecord]) -> None:
    for i, r in enumerate(results, 1):
        rec = r.record
        typer.echo(f"  {i:2d}. {rec.artist} - {rec.title} ({rec.characteristics}) [{r.score:.3f}]")


@app.command()
def add(
    track_id: str = typer.Argument(..., help="Track id"),
    characteristics: str = typer.Argument(..., help="Free-text characterization"),
    artist: str = typer.Option("", "--artist", help="Artist name"),
    title: str = typer.Option("", "--title", help="Track title"),
) -> None:
    """Add or replace a characterization."""
    record = CharacterizationRecord(
        id=track_id,
        characteristics=characteristics,
        artist=artist,
        title=title,
        content_hash=content_hash(artist, title),
        last_verified=datetime.now(),
    )

    async def _add(store: CharacterizationStore) -> CharacterizationRecord:
        return await store.upsert(record)

    stored = _run(_add)
    if stored.has_embedding:
        typer.echo(f"Stored {track_id} ({len(stored.embedding)}-dim embedding)")
    else:
        typer.echo(f"Stored {track_id} (no embedding)")


@app.command()
def show(
    track_id: str = typer.Argument(..., help="Track id"),
) -> None:
    """Show a stored characterization."""

    async def _get(store: CharacterizationStore) -> CharacterizationRecord | None:
        return store.get(track_id)

    record = _run(_get)
    if record is None:
        typer.echo(f"Error: no characterization for {track_id}", err=True)
        raise typer.Exit(1)

    if record.embedding is None:
        embedding = "not computed"
    elif record.embedding_failed:
        embedding = "failed"
    else:
        embedding = f"{len(record.embedding)} dims"
    typer.echo(f"{record.id}: {record.artist} - {record.title}")
    typer.echo(f"  characteristics: {record.characteristics}")
    typer.echo(f"  embedding: {embedding}")
    if record.needs_review:
        typer.echo("  needs review")


@app.command()
def search(
    query: str = typer.Argument(..., help="Description of what you want to hear"),
    n: int = typer.Option(10, "-n", help="Number of results"),
) -> None:
    """Search characterizations by description."""
    from trackchar.recommend import find_similar

    typer.echo(f"Searching for: {query}\n")
    results = _run(lambda store: find_similar(store, query, limit=n))
    if not results:
        typer.echo("No results (characterization or embeddings may be disabled)")
        raise typer.Exit(1)
    _print_results(results)


@app.command()
def similar(
    track_id: str = typer.Argument(..., help="Seed track id"),
) -> None:
    """Find tracks close to a stored track, weighted by genre."""
    from trackchar.recommend import find_similar_from_vector

    async def _similar(store: CharacterizationStore) -> list[ScoredRecord] | None:
        seed = store.get(track_id)
        if seed is None or not seed.has_embedding:
            return None
        results = await find_similar_from_vector(store, seed.embedding)
        return [r for r in results if r.record.id != track_id]

    results = _run(_similar)
    if results is None:
        typer.echo(f"Error: {track_id} not found or has no embedding", err=True)
        raise typer.Exit(1)
    typer.echo(f"\nTracks similar to: {track_id}\n")
    _print_results(results)


@app.command()
def status() -> None:
    """Report characterizations that still lack embeddings."""

    async def _status(store: CharacterizationStore) -> tuple[int, MissingReport]:
        return len(store), store.missing_embeddings_report()

    count, report = _run(_status)
    typer.echo(f"Records: {count}")
    typer.echo(f"Distinct characterizations: {report.total}")
    typer.echo(f"Missing embeddings: {report.missing}")
    for text in report.sample:
        typer.echo(f"  - {text}")


@app.command()
def regenerate() -> None:
    """Compute embeddings for every characterization that lacks one."""

    async def _regenerate(store: CharacterizationStore) -> PassResult:
        with tqdm(desc="Embedding characterizations", unit="text") as bar:

            def progress(current: int, total: int) -> None:
                bar.total = total
                bar.update(current - bar.n)

            return await store.maintenance.regenerate_all(progress)

    result = _run(_regenerate)
    if result.aborted:
        typer.echo("Local embeddings are disabled", err=True)
        raise typer.Exit(1)
    typer.echo(f"Embedded {result.processed}, failed {result.failed}")


@app.command("clear-embeddings")
def clear_embeddings() -> None:
    """Drop every stored embedding."""
    cleared = _run(lambda store: store.disable_embeddings_and_clear())
    typer.echo(f"Cleared embeddings on {cleared} records")


@app.command()
def scan(
    library: Path = typer.Argument(..., help="Path to music library directory"),
    force: bool = typer.Option(False, "--force", help="Re-add tracks that are already stored"),
) -> None:
    """Seed characterizations from the tags of a music library."""
    if not library.is_dir():
        typer.echo(f"Error: {library} is not a directory", err=True)
        raise typer.Exit(1)

    from trackchar.scan import scan_library

    typer.echo(f"Scanning {library}...")
    try:
        seen, added = _run(lambda store: scan_library(store, library, force=force))
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Done: {seen} tracks, {added} added")


if __name__ == "__main__":
    app()
