"""CLI package for bitcoind-manager."""

from pathlib import Path

import typer

from bitcoind_manager.cli import daemon_cmd, settings_cmd

app = typer.Typer(
    name="bitcoind-manager",
    help="Manage a bitcoind node: settings, config files and the daemon process",
    no_args_is_help=True,
)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None, "--config", "-c", help="JSON config file (environment variables still take priority)"
    ),
):
    ctx.obj = {"config_path": config}


app.add_typer(settings_cmd.app, name="settings", help="Inspect and change bitcoind settings")

app.command(name="run", help="Run the manager in the foreground")(daemon_cmd.run)
app.command(name="versions", help="List supported bitcoind versions")(daemon_cmd.versions)


@app.command()
def version():
    """Show version information."""
    from bitcoind_manager import __version__
    typer.echo(f"bitcoind-manager {__version__}")


if __name__ == "__main__":
    app()
