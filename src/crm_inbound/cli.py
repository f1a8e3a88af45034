"""Process entry point for the inbound ingestion service."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Dict

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .configuration.settings import DEFAULT_CONFIG_PATH, InboundSettings, bootstrap_settings, load_settings
from .ingestion.dedup import DEDUP_NAMESPACE, CursorStore
from .ingestion.events import TOPIC_MESSAGE_RECEIVED, InMemoryEventBus
from .ingestion.record_store import SqliteRecordStore
from .ingestion.state_store import SqliteKeyValueStore
from .orchestrator import InboundOrchestrator

console = Console()
error_console = Console(stderr=True)

app = typer.Typer(help="Inbound email and SMS ingestion service")

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=error_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _log_event(topic: str, payload: Dict[str, Any]) -> None:
    logger.info(
        f"{topic}: {payload.get('channel')} message for {payload.get('correspondentId')}",
        extra={"rooms": payload.get("rooms")},
    )


async def _serve(settings: InboundSettings) -> None:
    record_store = SqliteRecordStore(
        settings.record_store_path,
        default_country_code=settings.identity.default_country_code,
    )
    bus = InMemoryEventBus()
    bus.subscribe(TOPIC_MESSAGE_RECEIVED, _log_event)
    orchestrator = InboundOrchestrator.from_settings(
        settings,
        record_store=record_store,
        publisher=bus.publish,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    await orchestrator.start()
    if not orchestrator.imap_supervisors and not orchestrator.sms_pollers:
        logger.warning("No configured channels; nothing will be ingested")
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down inbound ingestion")
        await orchestrator.shutdown()
        record_store.close()


@app.command("run")
def run(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Settings file"),
    log_level: str = typer.Option("INFO", "--log-level", "-l", help="Logging level"),
) -> None:
    """Run the IMAP supervisors and the SMS poller until interrupted."""
    configure_logging(log_level)
    try:
        settings = bootstrap_settings(path=config)
    except (ValueError, OSError) as exc:
        error_console.print(f"[red]Could not load settings: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    asyncio.run(_serve(settings))


@app.command("status")
def status(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Settings file"),
) -> None:
    """Show persisted poll cursors and the dedup record count."""
    try:
        settings = load_settings(config) if config.exists() else InboundSettings()
    except ValueError as exc:
        error_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    if not settings.state_path.exists():
        console.print(f"[yellow]No state database at {settings.state_path}[/yellow]")
        return

    store = SqliteKeyValueStore(settings.state_path)
    try:
        cursors = CursorStore(store, settings.dedup)
        cursors.load()
        dedup_count = len(store.items(DEDUP_NAMESPACE))

        table = Table(title="Poll cursors")
        table.add_column("Scope", style="cyan")
        table.add_column("Watermark")
        table.add_column("Recent IDs", justify="right")
        table.add_column("Updated")
        for scope in cursors.scopes():
            cursor = cursors.cursor(scope)
            table.add_row(
                scope,
                cursor.watermark.isoformat() if cursor.watermark else "-",
                str(len(cursor.recent_ids)),
                cursor.updated_at.isoformat() if cursor.updated_at else "-",
            )
        console.print(table)
        console.print(f"Dedup records: [bold]{dedup_count}[/bold]")
    finally:
        store.close()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
