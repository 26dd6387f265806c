"""Command implementations for CLI."""

import asyncio
import json
from typing import List, Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from hatchery.config import ConfigManager
from hatchery.engine.orchestrator import describe_batch, run_batch
from hatchery.engine.watcher import ConfigWatcher
from hatchery.models.records import BatchReport, ContainerStatus, StageOutcome


console = Console()
stderr_console = Console(stderr=True)

_OUTCOME_STYLES = {
    StageOutcome.RAN: "green",
    StageOutcome.IDEMPOTENT: "cyan",
    StageOutcome.SKIPPED: "dim",
    StageOutcome.FAILED: "red",
}


def render_report(report: BatchReport):
    """Print a batch report as tables."""
    table = Table(title="Containers")
    table.add_column("VMID", style="cyan", justify="right")
    table.add_column("Hostname")
    table.add_column("State", style="green")
    table.add_column("Actions", style="magenta")
    table.add_column("Address")
    table.add_column("Result")

    for host in report.hosts:
        if host.failed:
            result = f"[red]{host.error_kind or 'stage'} failure[/red]"
        else:
            result = "[green]ok[/green]"
        table.add_row(
            str(host.vmid),
            host.hostname,
            host.state.value if host.state else "-",
            ", ".join(host.actions) or "-",
            host.address or "-",
            result,
        )
    console.print(table)

    for host in report.hosts:
        if host.error:
            console.print(f"[red]✗[/red] {host.vmid} ({host.hostname}): {host.error}")
        if not host.stages:
            continue
        stage_table = Table(title=f"Configuration of {host.vmid} ({host.hostname})")
        stage_table.add_column("Stage", style="cyan")
        stage_table.add_column("Outcome")
        stage_table.add_column("Reason", style="dim")
        for stage in host.stages:
            style = _OUTCOME_STYLES[stage.outcome]
            stage_table.add_row(stage.stage, f"[{style}]{stage.outcome.value}[/{style}]", stage.reason)
        console.print(stage_table)


def apply_containers(manager: ConfigManager, vmids: Optional[List[int]] = None, json_output: bool = False) -> bool:
    """Converge the declared containers; returns whether every container succeeded."""
    specs = manager.select(vmids)
    if not specs:
        console.print("[yellow]No containers declared[/yellow]")
        return True

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=stderr_console,
        disable=json_output,
    ) as progress:
        task = progress.add_task(f"Applying {len(specs)} container(s)...", total=None)

        report = asyncio.run(run_batch(manager.config, specs))

        progress.update(task, completed=True)

    if json_output:
        console.print_json(json.dumps(report.to_dict()))
    else:
        render_report(report)
    return report.succeeded


def show_status(manager: ConfigManager, vmids: Optional[List[int]] = None) -> bool:
    """Compare declared state with what the hypervisor reports."""
    specs = manager.select(vmids)
    rows = asyncio.run(describe_batch(manager.config, specs))

    table = Table(title="Containers")
    table.add_column("VMID", style="cyan", justify="right")
    table.add_column("Hostname")
    table.add_column("Desired", style="magenta")
    table.add_column("Status")
    table.add_column("Address")

    for spec, record in rows:
        if record is None:
            status = "[dim]absent[/dim]"
        elif record.status == ContainerStatus.RUNNING:
            status = "[green]running[/green]"
        else:
            status = f"[yellow]{record.status.value}[/yellow]"
        table.add_row(
            str(spec.vmid),
            spec.hostname,
            spec.state.value,
            status,
            (record.address if record else None) or "-",
        )

    console.print(table)
    return True


def validate_config(manager: ConfigManager) -> bool:
    """Report configuration errors collected while loading."""
    if manager.errors:
        console.print("[red]✗[/red] Configuration is invalid")
        for error in manager.errors:
            console.print(f"  Error: {error}")
        return False

    console.print("[green]✓[/green] Configuration is valid")
    console.print(f"  Hypervisor: {manager.config.hypervisor.host} (node {manager.config.hypervisor.node})")
    console.print(f"  Containers: {len(manager.containers)}")
    return True


def watch_containers(manager: ConfigManager) -> bool:
    """Apply now and again after every configuration change until interrupted."""
    async def _watch():
        watcher = ConfigWatcher(manager, run_batch, on_report=render_report)
        await watcher.run()

    asyncio.run(_watch())
    return True
