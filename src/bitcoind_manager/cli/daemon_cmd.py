"""Foreground manager process and installed-version inspection."""

import asyncio
import os

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from bitcoind_manager.cli._context import load_config
from bitcoind_manager.config import ManagerConfig
from bitcoind_manager.daemon.graceful_shutdown import AsyncShutdownHandler
from bitcoind_manager.daemon.logging_setup import setup_logging
from bitcoind_manager.errors import ManagerError
from bitcoind_manager.models import ExitEvent
from bitcoind_manager.service import NodeService
from bitcoind_manager.settings.versions import AVAILABLE_VERSIONS, DEFAULT_VERSION

console = Console()


async def _report_exits(service: NodeService) -> None:
    """Log every unexpected bitcoind exit with its captured output tail."""
    async with service.subscribe() as events:
        async for event in events:
            if isinstance(event, ExitEvent) and event.info.log_tail:
                logger.error("Last bitcoind output:\n" + "\n".join(event.info.log_tail))


async def serve(config: ManagerConfig, handler: AsyncShutdownHandler | None = None) -> None:
    """Boot bitcoind and keep supervising it until a shutdown signal arrives."""
    handler = handler or AsyncShutdownHandler()
    await handler.setup()

    service = NodeService(config)
    reporter = asyncio.create_task(_report_exits(service), name="exit-reporter")
    try:
        await service.boot()
        await handler.wait_for_shutdown()
    finally:
        reporter.cancel()
        await service.shutdown()
        await logger.complete()


def run(
    ctx: typer.Context,
    log_level: str | None = typer.Option(None, "--log-level", "-l", help="Override daemon.log_level"),
):
    """Run the manager in the foreground: write config, start bitcoind, supervise it."""
    config = load_config(ctx)
    log_file = setup_logging(log_level or config.daemon.log_level, log_dir=config.paths.log_dir)
    if log_file is not None:
        logger.info(f"Logging to {log_file}")

    try:
        asyncio.run(serve(config))
    except ManagerError as e:
        console.print(f"[red]Manager failed:[/red] {e}")
        raise typer.Exit(code=1)


def versions(ctx: typer.Context):
    """List supported bitcoind versions and whether each is installed."""
    config = load_config(ctx)
    paths = config.paths
    current = os.path.realpath(paths.current_symlink) if paths.current_symlink.is_symlink() else None

    table = Table(title=f"bitcoind versions in {paths.versions_dir}")
    table.add_column("Version", style="cyan")
    table.add_column("Installed")
    table.add_column("Notes", style="dim")
    for version in AVAILABLE_VERSIONS:
        binary = paths.version_binary(version)
        installed = os.access(binary, os.X_OK)
        notes = []
        if version == DEFAULT_VERSION:
            notes.append("latest")
        if current is not None and current == os.path.realpath(paths.versions_dir / version):
            notes.append("current")
        table.add_row(
            version,
            "[green]yes[/green]" if installed else "[red]no[/red]",
            ", ".join(notes),
        )
    console.print(table)
