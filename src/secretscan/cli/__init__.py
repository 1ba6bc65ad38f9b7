"""
CLI for secretscan.

Runs scan jobs described in a cluster manifest and prints the resulting
Findings and Consumers. Secret values are never printed.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from secretscan.core.config import LoggingConfig, load_config
from secretscan.core.models import Consumer, Finding, Job
from secretscan.services import ServicesContainer, create_services

# Initialize Rich Console
console = Console()

app = typer.Typer(
    name="secretscan",
    help="Secret duplicate and exposure detection",
    add_completion=False,
)

_HASH_DISPLAY_LENGTH = 12


def _configure_logging(config: LoggingConfig, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _findings_table(findings: list[Finding]) -> Table:
    table = Table(title="Findings", border_style="blue")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Hash", style="magenta", no_wrap=True)
    table.add_column("Locations")
    for finding in findings:
        locations = "\n".join(
            f"{loc.kind}/{loc.name}: {loc.index_key()}" for loc in finding.locations
        )
        table.add_row(finding.name, finding.hash[:_HASH_DISPLAY_LENGTH] + "…", locations)
    return table


def _consumers_table(consumers: list[Consumer]) -> Table:
    table = Table(title="Consumers", border_style="blue")
    table.add_column("Target", style="cyan", no_wrap=True)
    table.add_column("Type", style="green")
    table.add_column("Display Name")
    table.add_column("Locations", justify="right")
    table.add_column("Latest Version", style="yellow")
    for consumer in consumers:
        latest = next((c for c in consumer.conditions if c.type == "UsingLatestVersion"), None)
        table.add_row(
            consumer.target.name,
            consumer.type,
            consumer.display_name or consumer.id[:_HASH_DISPLAY_LENGTH],
            str(len(consumer.locations)),
            f"{latest.status} ({latest.reason})" if latest else "-",
        )
    return table


def _status_panel(job: Job) -> Panel:
    grid = Table.grid(padding=1)
    grid.add_column(style="bold")
    grid.add_column()
    status = job.status
    run_status = status.run_status.value if status.run_status else "Never run"
    color = {"Succeeded": "green", "Failed": "red"}.get(run_status, "yellow")
    grid.add_row("Job:", f"{job.namespace}/{job.name}")
    grid.add_row("Policy:", job.spec.run_policy.value)
    grid.add_row("Status:", f"[{color}]{run_status}[/{color}]")
    if status.last_run_time:
        grid.add_row("Last Run:", status.last_run_time.isoformat())
    for condition in status.conditions:
        grid.add_row(f"{condition.type}:", f"{condition.reason} - {condition.message}")
    return Panel(grid, title="Job Status", border_style=color, expand=False)


async def _run(
    services: ServicesContainer,
    namespace: str,
    job_name: str,
    timeout: Optional[float],
    check_consumers: bool,
) -> Optional[Job]:
    controller = services.controller
    try:
        await controller.reconcile(namespace, job_name)
        if not controller.is_running(namespace, job_name):
            console.print("[yellow]Job is not due to run under its policy.[/yellow]")
        await controller.wait_for(namespace, job_name, timeout=timeout)
        if controller.is_running(namespace, job_name):
            # Let the controller apply the job's own timeout handling
            await controller.reconcile(namespace, job_name)
        if check_consumers:
            await services.consumer_status.check_namespace(namespace)
        return await services.cluster.get_job(namespace, job_name)
    finally:
        await controller.shutdown()


@app.command()
def run(
    manifest: Path = typer.Argument(..., help="Cluster manifest (YAML)"),
    job: str = typer.Option(..., "--job", "-j", help="Job name"),
    namespace: str = typer.Option("default", "--namespace", "-n", help="Job namespace"),
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (.yaml or .json)"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds to wait for the run before giving up"
    ),
    check_consumers: bool = typer.Option(
        False, "--check-consumers", help="Check consumers against target push history"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run a scan job from a manifest and print its findings."""
    load_dotenv()
    try:
        services = create_services(config_path=config_path, manifest_path=manifest)
        _configure_logging(services.config.logging, verbose)

        if asyncio.run(services.cluster.get_job(namespace, job)) is None:
            console.print(f"[bold red]Error:[/bold red] Job {namespace}/{job} not found")
            raise typer.Exit(1)

        result = asyncio.run(_run(services, namespace, job, timeout, check_consumers))
        findings = asyncio.run(services.cluster.list_findings(namespace))
        consumers = asyncio.run(services.cluster.list_consumers(namespace))

        if result is not None:
            console.print(_status_panel(result))

        if findings:
            console.print(_findings_table(findings))
        else:
            console.print("[green]No duplicated secrets found.[/green]")

        if consumers:
            console.print(_consumers_table(consumers))

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def config(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (.yaml or .json)"
    ),
    output_format: str = typer.Option("yaml", "--format", "-f", help="yaml or json"),
):
    """Show the effective configuration."""
    load_dotenv()
    try:
        cfg = load_config(config_path)
        if output_format == "json":
            console.print_json(cfg.to_json())
        elif output_format == "yaml":
            console.print(cfg.to_yaml())
        else:
            console.print(f"[bold red]Error:[/bold red] Unknown format: {output_format}")
            raise typer.Exit(1)
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
