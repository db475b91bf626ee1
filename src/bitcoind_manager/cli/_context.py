"""Shared access to the ``--config`` option set on the root command."""

import typer
from pydantic import ValidationError
from rich.console import Console

from bitcoind_manager.config import ManagerConfig, get_config

console = Console()


def load_config(ctx: typer.Context) -> ManagerConfig:
    """Load configuration from the root ``--config`` file and the environment."""
    config_path = (ctx.find_root().obj or {}).get("config_path")
    try:
        return get_config(config_path, _force_reload=True)
    except ValidationError as e:
        console.print("[red]Configuration validation failed:[/red]")
        for error in e.errors():
            loc = " -> ".join(str(x) for x in error["loc"])
            console.print(f"  [yellow]{loc}:[/yellow] {error['msg']}")
        raise typer.Exit(code=1)
