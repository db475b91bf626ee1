"""Settings subcommand group: inspect and change the managed bitcoind settings.

These commands write the same files the running manager writes. They do not
talk to a running manager, so bitcoind picks the changes up on its next
restart.
"""

import asyncio
import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from bitcoind_manager.cli._context import load_config
from bitcoind_manager.errors import ManagerError, SettingsValidationError
from bitcoind_manager.native_conf import generate_conf
from bitcoind_manager.settings.manager import SettingsManager

app = typer.Typer(help="Inspect and change bitcoind settings")
console = Console()


def parse_assignment(raw: str) -> tuple[str, Any]:
    """Parse ``KEY=VALUE``; the value is read as JSON when it parses, else as a string."""
    key, sep, value = raw.partition("=")
    key = key.strip()
    if not sep or not key:
        raise typer.BadParameter(f"expected KEY=VALUE, got {raw!r}")
    try:
        return key, json.loads(value)
    except json.JSONDecodeError:
        return key, value


def _print_validation_error(e: SettingsValidationError) -> None:
    console.print(f"[red]Invalid settings for {e.version}:[/red]")
    for error in e.errors:
        loc = " -> ".join(str(x) for x in error.get("loc", ()))
        console.print(f"  [yellow]{loc}:[/yellow] {error.get('msg', '')}")


def _print_record(record: dict[str, Any], title: str) -> None:
    console.print(Panel(JSON(json.dumps(record, indent=2)), title=title, border_style="cyan"))


@app.command()
def show(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON instead of formatted panel"),
):
    """Show the current settings, merged with the defaults of their version."""
    config = load_config(ctx)
    try:
        record = asyncio.run(SettingsManager(config).get_settings())
    except SettingsValidationError as e:
        _print_validation_error(e)
        raise typer.Exit(code=1)
    except ManagerError as e:
        console.print(f"[red]Failed to read settings:[/red] {e}")
        raise typer.Exit(code=1)

    if json_output:
        typer.echo(json.dumps(record, indent=2))
    else:
        _print_record(record, f"Settings: {config.paths.settings_file}")


@app.command(name="set")
def set_values(
    ctx: typer.Context,
    assignments: list[str] = typer.Argument(..., help="KEY=VALUE pairs, values as JSON (e.g. prune=2 onlynet='[\"tor\"]')"),
):
    """Validate and save settings, regenerating the bitcoind config files."""
    config = load_config(ctx)
    patch = dict(parse_assignment(raw) for raw in assignments)
    try:
        record = asyncio.run(SettingsManager(config).update_settings(patch))
    except SettingsValidationError as e:
        _print_validation_error(e)
        raise typer.Exit(code=1)
    except ManagerError as e:
        console.print(f"[red]Failed to save settings:[/red] {e}")
        raise typer.Exit(code=1)

    changed = {key: record[key] for key in patch if key in record}
    console.print(f"[green]Saved[/green] {json.dumps(changed)}")
    console.print("[dim]bitcoind applies the new settings on its next restart[/dim]")


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Restore default settings, keeping the selected version."""
    config = load_config(ctx)
    if not yes:
        typer.confirm("Restore all settings to their defaults?", abort=True)
    try:
        record = asyncio.run(SettingsManager(config).restore_defaults())
    except ManagerError as e:
        console.print(f"[red]Failed to restore defaults:[/red] {e}")
        raise typer.Exit(code=1)
    console.print(f"[green]Defaults restored[/green] (version {record['version']})")


@app.command()
def render(ctx: typer.Context):
    """Print the managed config the current settings compile to, without writing it."""
    config = load_config(ctx)
    try:
        record = asyncio.run(SettingsManager(config).get_settings())
    except SettingsValidationError as e:
        _print_validation_error(e)
        raise typer.Exit(code=1)
    console.print(Syntax(generate_conf(record, config), "ini", word_wrap=True))


@app.command()
def custom(
    ctx: typer.Context,
    file: Path | None = typer.Option(None, "--file", "-f", help="Replace the custom options with this file's content"),
):
    """Show or replace the user-owned options in bitcoin.conf."""
    config = load_config(ctx)
    manager = SettingsManager(config)
    try:
        if file is None:
            text = asyncio.run(manager.get_custom_options())
        else:
            text = asyncio.run(manager.update_custom_options(file.read_text(encoding="utf-8")))
            console.print(f"[green]Custom options written to[/green] {config.paths.bitcoin_conf}")
    except (ManagerError, OSError) as e:
        console.print(f"[red]Failed to access custom options:[/red] {e}")
        raise typer.Exit(code=1)
    typer.echo(text)


@app.command()
def incompatible(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Version to check against, e.g. v29.1"),
):
    """List current settings that switching to VERSION would drop."""
    config = load_config(ctx)
    try:
        keys = asyncio.run(SettingsManager(config).incompatible_settings(version))
    except ManagerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    if not keys:
        console.print(f"[green]All current settings are available in {version}[/green]")
        return
    table = Table(title=f"Settings not available in {version}")
    table.add_column("Key", style="yellow")
    for key in keys:
        table.add_row(key)
    console.print(table)
