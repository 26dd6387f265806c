"""Main CLI implementation using Typer."""

import asyncio
from pathlib import Path
from typing import Any, Callable, List, Optional

import typer
from rich.console import Console

from hatchery.cli.commands import (
    apply_containers,
    show_status,
    validate_config,
    watch_containers,
)
from hatchery.config import ConfigManager, default_config_dir
from hatchery.errors import HatcheryError
from hatchery.utils.logging import setup_logging


# Create Typer app
app = typer.Typer(
    name="hatchery",
    help="Hatchery - declarative Proxmox container provisioning and configuration",
    add_completion=False,
)

# Console for rich output
console = Console()


def _run_cli_command(
    handler: Callable[..., bool],
    config_dir: Optional[Path],
    log_level: Optional[str] = None,
    **kwargs: Any,
):
    """Helper to load configuration, run a command and map failures to the exit code."""
    manager = ConfigManager(config_dir or default_config_dir())
    try:
        asyncio.run(manager.load())
        setup_logging(log_level or manager.config.orchestrator.log_level)
        ok = handler(manager, **kwargs)
    except HatcheryError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    if not ok:
        raise typer.Exit(1)


ConfigDirOption = typer.Option(
    None, "--config-dir", "-c", help="Configuration directory (default: $HATCHERY_CONFIG_DIR or ./configs)"
)
LogLevelOption = typer.Option(None, "--log-level", help="Override the configured log level")


@app.command("apply")
def apply_command(
    only: Optional[List[int]] = typer.Option(None, "--only", help="Restrict the run to these container ids"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    config_dir: Optional[Path] = ConfigDirOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Converge all declared containers and configure the started ones."""
    _run_cli_command(
        apply_containers, config_dir, log_level=log_level, vmids=only or None, json_output=json_output
    )


@app.command("status")
def status_command(
    only: Optional[List[int]] = typer.Option(None, "--only", help="Restrict to these container ids"),
    config_dir: Optional[Path] = ConfigDirOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Show declared state next to the hypervisor's view."""
    _run_cli_command(show_status, config_dir, log_level=log_level, vmids=only or None)


@app.command("validate")
def validate_command(
    config_dir: Optional[Path] = ConfigDirOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Validate configuration without contacting the hypervisor."""
    _run_cli_command(validate_config, config_dir, log_level=log_level)


@app.command("watch")
def watch_command(
    config_dir: Optional[Path] = ConfigDirOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Apply, then re-apply whenever the configuration changes."""
    _run_cli_command(watch_containers, config_dir, log_level=log_level)


def main():
    """Main entry point for CLI."""
    app()
