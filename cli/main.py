"""marketdex CLI entrypoint.

Commands:
- run: index a captured chain (JSON) up to its head, or follow it
- status: show checkpoint, finalized block and retained undo log
- get: show one entity
- list: page through entities of a type
- rollback: rewind the index to a block (requires --yes)
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from core.chain import JsonFileChain
from core.errors import IndexerError, LeaseHeld
from core.indexer import Indexer
from core.log import configure_logging
from core.pipeline import IngestionPipeline, PipelineState
from projections.marketplace import MARKET_ITEM
from schemas.config import IndexerConfig, load_config

app = typer.Typer(add_completion=False, help="marketdex: marketplace event indexer")
console = Console()


def default_db_path() -> Path:
    """Return the default path to the index database.

    Returns:
        Path: Path to `~/.marketdex/index.db`.
    """
    base = Path.home() / ".marketdex"
    base.mkdir(parents=True, exist_ok=True)
    return base / "index.db"


def _config(config_path: Path | None, **overrides) -> IndexerConfig:
    if config_path is not None:
        return load_config(config_path, overrides)
    return IndexerConfig.model_validate({k: v for k, v in overrides.items() if v is not None})


def _open(db: Path | None, cfg: IndexerConfig) -> Indexer:
    return Indexer(db or cfg.db_path or default_db_path(), config=cfg)


async def _follow(pipeline: IngestionPipeline) -> PipelineState:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass
    return await pipeline.run_forever()


@app.command()
def run(
    chain: Path = typer.Option(..., "--chain", exists=True, readable=True, help="Chain capture JSON"),
    config: Path | None = typer.Option(None, "--config", exists=True, help="JSON/YAML config file"),
    db: Path | None = typer.Option(None, "--db", help="Path to index DB"),
    follow: bool = typer.Option(False, "--follow", help="Keep polling after reaching head"),
    batch_size: int | None = typer.Option(None, "--batch-size", min=1),
    confirmation_depth: int | None = typer.Option(None, "--confirmation-depth", min=0),
    max_reorg_depth: int | None = typer.Option(None, "--max-reorg-depth", min=1),
    poll_interval_ms: int | None = typer.Option(None, "--poll-interval-ms", min=0),
    start_block: int | None = typer.Option(None, "--start-block", min=0),
    log_level: str = typer.Option("warning", "--log-level", help="debug|info|warning|error"),
) -> None:
    """Index CHAIN into the database."""
    configure_logging(log_level)
    cfg = _config(
        config,
        batch_size=batch_size,
        confirmation_depth=confirmation_depth,
        max_reorg_depth=max_reorg_depth,
        poll_interval_ms=poll_interval_ms,
        start_block=start_block,
    )
    indexer = _open(db, cfg)
    try:
        pipeline = indexer.pipeline(JsonFileChain(chain))
        try:
            if follow:
                state = asyncio.run(_follow(pipeline))
            else:
                state = asyncio.run(pipeline.sync_to_head())
                pipeline.release()
        except LeaseHeld as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=3)
        status = pipeline.status()
        table = Table(title=f"Indexer {state.value}")
        table.add_column("Checkpoint", justify="right")
        table.add_column("Head", justify="right")
        table.add_column("Blocks", justify="right")
        table.add_column("Events", justify="right")
        table.add_column("Skipped", justify="right")
        table.add_column("Reorgs", justify="right")
        table.add_row(
            str(status.checkpoint.last_processed_block),
            str(status.head.height) if status.head else "-",
            str(status.stats.blocks_committed),
            str(status.stats.events_applied),
            str(status.stats.events_undecodable + status.stats.events_unmapped),
            str(status.stats.reorgs),
        )
        console.print(table)
        if state is PipelineState.HALTED:
            console.print(f"[red]Halted: {status.halt_reason}[/red]")
            raise typer.Exit(code=1)
    finally:
        indexer.close()


@app.command()
def status(
    db: Path | None = typer.Option(None, "--db", help="Path to index DB"),
    config: Path | None = typer.Option(None, "--config", exists=True, help="JSON/YAML config file"),
) -> None:
    """Show checkpoint and undo-log state."""
    indexer = _open(db, _config(config))
    try:
        st = indexer.status()
    finally:
        indexer.close()
    table = Table(title="Index Status")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("checkpoint block", str(st.checkpoint.last_processed_block))
    table.add_row("checkpoint log index", str(st.checkpoint.last_processed_log_index))
    table.add_row("checkpoint hash", st.checkpoint.block_hash or "-")
    table.add_row("finalized block", "-" if st.finalized_block is None else str(st.finalized_block))
    table.add_row("undo blocks", str(len(st.undo_blocks)))
    table.add_row("entities", str(st.entities))
    console.print(table)


@app.command()
def get(
    entity_id: str = typer.Argument(..., help="Entity id"),
    entity_type: str = typer.Option(MARKET_ITEM, "--type", help="Entity type"),
    db: Path | None = typer.Option(None, "--db", help="Path to index DB"),
    config: Path | None = typer.Option(None, "--config", exists=True, help="JSON/YAML config file"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show one entity."""
    indexer = _open(db, _config(config))
    try:
        entity = indexer.get(entity_type, entity_id)
    finally:
        indexer.close()
    if entity is None:
        console.print(f"[yellow]{entity_type} {entity_id} not found[/yellow]")
        raise typer.Exit(code=1)
    if as_json:
        typer.echo(json.dumps(entity.model_dump(mode="json"), sort_keys=True))
        return
    table = Table(title=f"{entity_type} {entity_id} (block {entity.updated_block})")
    table.add_column("Field")
    table.add_column("Value")
    for key in sorted(entity.fields):
        table.add_row(key, str(entity.fields[key]))
    console.print(table)


@app.command("list")
def list_entities(
    entity_type: str = typer.Option(MARKET_ITEM, "--type", help="Entity type"),
    after: str | None = typer.Option(None, "--after", help="Start after this id"),
    limit: int = typer.Option(20, "--limit", min=1),
    db: Path | None = typer.Option(None, "--db", help="Path to index DB"),
    config: Path | None = typer.Option(None, "--config", exists=True, help="JSON/YAML config file"),
) -> None:
    """List entities of a type ordered by id."""
    indexer = _open(db, _config(config))
    try:
        rows = indexer.list(entity_type, after_id=after, limit=limit)
    finally:
        indexer.close()
    table = Table(title=f"{entity_type} (first {limit})")
    table.add_column("Id")
    table.add_column("Block", justify="right")
    table.add_column("Fields")
    for e in rows:
        table.add_row(e.id, str(e.updated_block), json.dumps(e.fields, sort_keys=True))
    console.print(table)


@app.command()
def rollback(
    to: int = typer.Option(..., "--to", min=-1, help="Last block to keep"),
    yes: bool = typer.Option(False, "--yes", help="Confirm the rewind"),
    db: Path | None = typer.Option(None, "--db", help="Path to index DB"),
    config: Path | None = typer.Option(None, "--config", exists=True, help="JSON/YAML config file"),
) -> None:
    """Rewind the index so TO is the last processed block."""
    if not yes:
        console.print("[yellow]Refusing to roll back without --yes.[/yellow]")
        raise typer.Exit(code=2)
    indexer = _open(db, _config(config))
    try:
        rolled = indexer.rollback(to)
    except LeaseHeld as exc:
        console.print(f"[red]{exc}; stop the running indexer first[/red]")
        raise typer.Exit(code=3)
    except (IndexerError, ValueError) as exc:
        console.print(f"[red]Rollback failed: {exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        indexer.close()
    console.log(f"Rolled back {len(rolled)} block(s); checkpoint now at {to}")


def main() -> int:
    """Entry point for `python -m cli.main`."""
    app()
    return 0


if __name__ == "__main__":
    sys.exit(main())
