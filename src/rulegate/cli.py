"""CLI interface for rulegate using Typer framework."""

import json as jsonlib
import logging
import signal
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from rulegate import __description__, __version__
from rulegate.config import (
    LogLevel,
    PoolConfig,
    ReadinessStrategy,
    RootConfig,
    RulegateConfig,
    load_config,
)
from rulegate.discovery import ArtifactDiscovery, derive_behavior
from rulegate.models import Behavior
from rulegate.reporting import ConsoleReporter, format_json
from rulegate.runner import run_validation
from rulegate.synthesis import render_yaml

app = typer.Typer(
    name="rulegate",
    help=__description__,
    add_completion=False,
    rich_markup_mode="rich"
)

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_stop_requested = False


def _handle_stop_signal(signum: int, frame) -> None:
    """First SIGINT/SIGTERM unwinds the run so running engines get killed; a second one exits at once."""
    global _stop_requested

    name = signal.Signals(signum).name
    if _stop_requested:
        err_console.print(f"[red]{name} again, exiting without waiting for engines[/red]")
        sys.exit(130)

    _stop_requested = True
    err_console.print(f"\n[yellow]{name} received, stopping running engines...[/yellow]")
    raise typer.Exit(1)


def _install_signal_handlers() -> None:
    global _stop_requested
    _stop_requested = False
    for signum in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if signum is None:
            continue
        try:
            signal.signal(signum, _handle_stop_signal)
        except (OSError, ValueError):
            # Not the main thread, or the platform lacks the signal
            logger.debug(f"Cannot install handler for signal {signum}")


def _configure_logging(level: str) -> None:
    """Route library logging through rich on stderr."""
    root = logging.getLogger("rulegate")
    root.setLevel(_LOG_LEVELS.get(level, logging.INFO))
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=err_console, show_path=False, rich_tracebacks=True))
    root.propagate = False


def version_callback(value: bool) -> None:
    """Show version information and exit."""
    if value:
        console.print(f"rulegate version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", "-v", callback=version_callback, help="Show version and exit")
    ] = False,
) -> None:
    """rulegate - End-to-end smoke gate for compiled rule-set artifacts."""
    _install_signal_handlers()


def _parse_root(value: str) -> RootConfig:
    """Parse a ``PATH`` or ``PATH=behavior`` root argument."""
    path, sep, behavior = value.rpartition("=")
    if sep and behavior in {b.value for b in Behavior}:
        return RootConfig(path=path, behavior=Behavior(behavior))
    return RootConfig(path=value, behavior=derive_behavior(value))


def _load(config_path: Path | None, roots: list[str] | None) -> RulegateConfig:
    """Load configuration and apply root overrides, exiting on invalid input."""
    try:
        rulegate_config = load_config(config_path)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if roots:
        rulegate_config.discovery.roots = [_parse_root(r) for r in roots]
    return rulegate_config


def _discover(rulegate_config: RulegateConfig):
    discovery = ArtifactDiscovery(
        rulegate_config.discovery.roots,
        rulegate_config.discovery.pattern,
        rulegate_config.discovery.exclude,
    )
    return discovery.discover()


@app.command()
def run(
    roots: Annotated[
        Optional[list[str]],
        typer.Argument(help="Artifact roots as PATH or PATH=domain|ipcidr (default: from config)")
    ] = None,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file path (default: search for .rulegate.json)")
    ] = None,
    concurrency: Annotated[
        Optional[int],
        typer.Option("--concurrency", "-j", help="Number of concurrent lanes")
    ] = None,
    start_port: Annotated[
        Optional[int],
        typer.Option("--start-port", help="Listen port of lane 0; lane i uses start-port + i")
    ] = None,
    engine: Annotated[
        Optional[str],
        typer.Option("--engine", "-e", help="Proxy engine executable")
    ] = None,
    probe_url: Annotated[
        Optional[str],
        typer.Option("--probe-url", help="HTTP URL fetched through each engine")
    ] = None,
    readiness: Annotated[
        Optional[ReadinessStrategy],
        typer.Option("--readiness", help="Readiness wait: poll (connect with backoff) or fixed (sleep)")
    ] = None,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: table, json (default: table)")
    ] = "table",
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Show a per-artifact results table in the summary")
    ] = False,
    log_level: Annotated[
        Optional[LogLevel],
        typer.Option("--log-level", help="Log level: error, warn, info, debug")
    ] = None,
) -> None:
    """Load every rule-set artifact into its own engine and probe through it."""
    valid_formats = ["table", "json"]
    if format not in valid_formats:
        console.print(f"[red]Error:[/red] Invalid format '{format}'. Must be one of: {', '.join(valid_formats)}")
        raise typer.Exit(1)

    rulegate_config = _load(config, roots)

    if concurrency is not None or start_port is not None:
        try:
            rulegate_config.pool = PoolConfig(
                concurrency=concurrency if concurrency is not None else rulegate_config.pool.concurrency,
                start_port=start_port if start_port is not None else rulegate_config.pool.start_port,
            )
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    if engine:
        rulegate_config.engine.binary = engine
    if probe_url:
        rulegate_config.probe.url = probe_url
    if readiness:
        rulegate_config.readiness.strategy = readiness
    if log_level:
        rulegate_config.logging.level = log_level.value

    _configure_logging(rulegate_config.logging.level)

    artifacts = _discover(rulegate_config)
    reporter = ConsoleReporter(console, verbose=verbose) if format == "table" else None

    # Empty discovery short-circuits inside run_validation and exits non-zero
    summary = run_validation(rulegate_config, artifacts, reporter=reporter)

    if not reporter:
        console.print(format_json(summary), markup=False, highlight=False, soft_wrap=True)
    elif artifacts:
        reporter.report(summary)

    raise typer.Exit(summary.exit_code)


@app.command("list")
def list_artifacts(
    roots: Annotated[
        Optional[list[str]],
        typer.Argument(help="Artifact roots as PATH or PATH=domain|ipcidr (default: from config)")
    ] = None,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file path (default: search for .rulegate.json)")
    ] = None,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: table, json (default: table)")
    ] = "table",
) -> None:
    """List discovered rule-set artifacts and their behavior kind."""
    valid_formats = ["table", "json"]
    if format not in valid_formats:
        console.print(f"[red]Error:[/red] Invalid format '{format}'. Must be one of: {', '.join(valid_formats)}")
        raise typer.Exit(1)

    rulegate_config = _load(config, roots)
    artifacts = _discover(rulegate_config)

    if format == "json":
        payload = [{"path": str(a.path), "behavior": a.behavior.value} for a in artifacts]
        console.print(jsonlib.dumps(payload, indent=2), markup=False, highlight=False, soft_wrap=True)
    else:
        if not artifacts:
            console.print("[yellow]No .mrs files found.[/yellow]")
        else:
            table = Table(title=f"Rule-set artifacts ({len(artifacts)})")
            table.add_column("Path", style="cyan")
            table.add_column("Behavior", style="white")
            for artifact in artifacts:
                table.add_row(str(artifact.path), artifact.behavior.value)
            console.print(table)

    if not artifacts:
        raise typer.Exit(1)


@app.command("show-config")
def show_config(
    artifact: Annotated[
        Path,
        typer.Argument(help="Rule-set artifact to render an engine config for")
    ],
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Listen port (default: pool start port)")
    ] = None,
    behavior: Annotated[
        Optional[Behavior],
        typer.Option("--behavior", "-b", help="Override behavior kind (default: derived from location)")
    ] = None,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file path (default: search for .rulegate.json)")
    ] = None,
) -> None:
    """Print the engine configuration that would be used for one artifact."""
    rulegate_config = _load(config, None)
    artifact_path = artifact.resolve()
    kind = behavior or derive_behavior(artifact_path, rulegate_config.discovery.roots)
    listen_port = port if port is not None else rulegate_config.pool.start_port

    console.print(
        render_yaml(listen_port, kind, artifact_path, rulegate_config.engine.log_level),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


if __name__ == "__main__":
    app()
