"""Conversation sync CLI.

Provides commands to sync assistant conversation histories into the local
store, run the background embedding worker, and report sync status.
"""

import asyncio
import sys
from typing import Optional

import structlog
import typer

from convosync.config import Settings
from convosync.exceptions import ConvoSyncError, SyncLockUnavailableError
from convosync.models.enums import SyncPhase
from convosync.models.progress import SyncProgress, SyncStatus
from convosync.services.factory import create_embedding_worker, create_sync_engine

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    logger_factory=lambda name: structlog.PrintLogger(file=sys.stderr),
    wrapper_class=structlog.BoundLogger,
    context_class=dict,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="convosync",
    help="""Sync AI coding-assistant conversation histories into one local, searchable store.

Examples:

  # Incremental sync of every detected source
  convosync sync

  # Rebuild one source from scratch
  convosync sync --force --source claude-code

  # Show last sync time and embedding progress
  convosync status""",
    rich_markup_mode="markdown",
)


def _render_progress(progress: SyncProgress) -> None:
    if progress.phase == SyncPhase.EXTRACTING:
        typer.echo(f"[{progress.phase}] {progress.projects_processed}/{progress.projects_found} projects", err=True)
    elif progress.phase not in (SyncPhase.DONE, SyncPhase.ERROR):
        typer.echo(f"[{progress.phase}]", err=True)


@app.command()
def sync(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Ignore checkpoints and rebuild every affected workspace",
    ),
    source: Optional[str] = typer.Option(
        None,
        "--source",
        "-s",
        help="Only sync this source (e.g. claude-code)",
    ),
) -> None:
    """Sync conversations from every detected source."""
    settings = Settings()

    async def run_sync() -> SyncProgress:
        async with await create_sync_engine(settings) as engine:
            return await engine.run(
                force=force,
                sources=[source] if source else None,
                on_progress=_render_progress,
            )

    try:
        result = asyncio.run(run_sync())
    except SyncLockUnavailableError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(1)
    except ConvoSyncError as exc:
        logger.error("sync_failed", error=str(exc))
        typer.echo(f"Sync failed: {exc}", err=True)
        raise typer.Exit(1)

    typer.echo(
        f"Synced {result.conversations_indexed} conversations ({result.messages_indexed} messages) "
        f"from {result.conversations_found} found across {result.projects_found} projects"
    )
    if result.conversations_skipped:
        typer.echo(f"Skipped {result.conversations_skipped} empty conversations")
    if result.embedding_started:
        typer.echo("Embedding worker running in the background")


@app.command()
def embed() -> None:
    """Embed every message that has no valid vector yet (run by sync in the background)."""
    settings = Settings()

    async def run_worker() -> int:
        worker, engine = await create_embedding_worker(settings)
        try:
            return await worker.run()
        finally:
            await engine.dispose()

    embedded = asyncio.run(run_worker())
    typer.echo(f"Embedded {embedded} messages")


@app.command()
def status() -> None:
    """Show last sync time, store size and embedding progress."""
    settings = Settings()

    async def read_status() -> SyncStatus:
        async with await create_sync_engine(settings) as engine:
            return await engine.status()

    current = asyncio.run(read_status())

    last_sync = current.last_sync_at.isoformat() if current.last_sync_at else "never"
    typer.echo(f"Last sync: {last_sync}")
    typer.echo(f"Conversations: {current.conversations} ({current.messages} messages)")
    typer.echo(f"Pending embeddings: {current.pending_embeddings}")
    if current.embedding is not None:
        typer.echo(
            f"Embedding worker: {current.embedding.status} "
            f"({current.embedding.completed}/{current.embedding.total})"
        )
    if current.needs_sync:
        typer.echo("Sources changed since last sync. Run 'convosync sync'.")


@app.command()
def version() -> None:
    """Show version information."""
    from convosync import __version__

    typer.echo(f"convosync {__version__}")
