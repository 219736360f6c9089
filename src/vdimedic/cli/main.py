"""VDIMedic CLI application."""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from loguru import logger
from rich.console import Console
from rich.table import Table

from vdimedic import __version__
from vdimedic.config import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    create_default_config,
    load_config,
)
from vdimedic.core.scanner import ScanScheduler
from vdimedic.models import Candidate, DiagnosticRecord, VDIMedicConfig
from vdimedic.service import RemediationService

# Initialize
app = typer.Typer(
    name="vdimedic",
    help="VDIMedic - hung and ghost session remediation for VDI fleets",
    no_args_is_help=True,
)
console = Console()

# Sub-commands
config_app = typer.Typer(help="Configuration commands")
app.add_typer(config_app, name="config")

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to config file")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Verbose output")


def setup_logging(verbose: bool = False, config: VDIMedicConfig | None = None) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else (config.logging.level if config else "INFO")

    # Console logging
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    # Optional file logging
    if config and config.logging.file:
        logger.add(
            Path(config.logging.file).expanduser(),
            level=level,
            rotation=config.logging.rotation,
            retention=config.logging.retention,
        )


def _load(config_path: Optional[Path], verbose: bool) -> VDIMedicConfig:
    """Load config and set up logging, exiting on config errors."""
    setup_logging(verbose)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Config error: {e}[/red]")
        raise typer.Exit(1)
    setup_logging(verbose, config)
    return config


async def _with_service(config: VDIMedicConfig, fn):
    """Run a coroutine function against a service and close it afterwards."""
    service = RemediationService.from_config(config)
    try:
        return await fn(service)
    finally:
        await service.close()


def _print_candidates(candidates: list[Candidate]) -> None:
    table = Table(title="Hung session candidates")
    table.add_column("Endpoint", style="cyan")
    table.add_column("Session")
    table.add_column("Machine")
    table.add_column("Host")
    table.add_column("Group")
    table.add_column("Failure", style="yellow")

    for c in candidates:
        table.add_row(
            c.endpoint,
            c.session_id,
            c.machine.machine_name,
            c.machine.dns_name or "-",
            c.machine.desktop_group_name or "-",
            c.machine.last_connection_failure,
        )

    console.print(table)


def _print_records(records: list[DiagnosticRecord]) -> None:
    table = Table(title="Remediation results")
    table.add_column("Endpoint", style="cyan")
    table.add_column("Session")
    table.add_column("Host")
    table.add_column("State")
    table.add_column("Job")
    table.add_column("Actions")
    table.add_column("Restarted", justify="center")

    for r in records:
        state = r.session_state.value
        if r.budget_expired:
            state = f"[red]{state} (timed out)[/red]"
        elif r.session_state.value == "working":
            state = f"[green]{state}[/green]"

        table.add_row(
            r.admin_address,
            r.session_id,
            r.host_name or "-",
            state,
            r.job.state.value,
            " → ".join(a.value for a in r.action_log) or "-",
            "[green]✓[/green]" if r.restart_issued else "-",
        )

    console.print(table)


# ============================================================================
# Remediation Commands
# ============================================================================


@app.command("discover")
def discover(
    endpoint: Optional[list[str]] = typer.Option(None, "--endpoint", "-e", help="Broker endpoint (repeatable)"),
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Desktop group name pattern"),
    config_path: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """List sessions that look hung."""
    config = _load(config_path, verbose)

    candidates = asyncio.run(
        _with_service(config, lambda s: s.discover(endpoint or None, group))
    )

    if not candidates:
        console.print("[green]No hung sessions found[/green]")
        return

    _print_candidates(candidates)


@app.command("remediate")
def remediate(
    endpoint: Optional[list[str]] = typer.Option(None, "--endpoint", "-e", help="Broker endpoint (repeatable)"),
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Desktop group name pattern"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list what would be remediated"),
    config_path: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Discover hung sessions and remediate them."""
    config = _load(config_path, verbose)

    if dry_run:
        candidates = asyncio.run(
            _with_service(config, lambda s: s.discover(endpoint or None, group))
        )
        if not candidates:
            console.print("[green]No hung sessions found[/green]")
            return
        _print_candidates(candidates)
        console.print(f"[yellow]Dry run: {len(candidates)} sessions would be remediated[/yellow]")
        return

    summary = asyncio.run(
        _with_service(config, lambda s: s.run_pass(endpoint or None, group))
    )

    if not summary.records:
        console.print("[green]No hung sessions found[/green]")
        return

    _print_records(summary.records)
    console.print(
        f"{len(summary.records)} sessions: {summary.restarted} restarted, "
        f"{summary.recovered} recovered, {summary.expired} timed out"
    )


@app.command("debug")
def debug(
    endpoint: str = typer.Argument(..., help="Broker endpoint owning the session"),
    session_id: str = typer.Argument(..., help="Session identifier"),
    config_path: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Diagnose and remediate a single session."""
    config = _load(config_path, verbose)

    record = asyncio.run(
        _with_service(config, lambda s: s.debug_session(endpoint, session_id))
    )

    _print_records([record])
    for line in record.action_result:
        console.print(line, markup=False)
    if record.debug_info:
        console.print("[dim]" + "\n".join(record.debug_info) + "[/dim]")


@app.command("watch")
def watch(
    now: bool = typer.Option(False, "--now", help="Run a pass immediately on start"),
    config_path: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Re-scan and remediate on the configured schedule."""
    config = _load(config_path, verbose)

    async def _watch(service: RemediationService) -> None:
        scheduler = ScanScheduler(
            service.run_pass,
            config.scan.schedule,
            timezone=config.scan.timezone,
        )

        def handle_signal(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}")
            scheduler.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        await scheduler.run(run_immediately=now)

    console.print(f"[blue]Watching on schedule '{config.scan.schedule}' ({config.scan.timezone})[/blue]")
    asyncio.run(_with_service(config, _watch))


# ============================================================================
# Config Commands
# ============================================================================


@config_app.command("init")
def config_init(
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Create a starter config file."""
    path = config_path or DEFAULT_CONFIG_FILE
    existed = path.exists()
    create_default_config(path)
    if existed:
        console.print(f"[yellow]Config already exists at {path}[/yellow]")
    else:
        console.print(f"[green]✓ Created config at {path}[/green]")


@config_app.command("show")
def config_show(
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Show the effective configuration."""
    config = _load(config_path, False)
    data = config.model_dump(mode="json")
    if data["broker"].get("token"):
        data["broker"]["token"] = "***"
    console.print(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), markup=False)


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"vdimedic {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
