"""Result aggregation and console reporting."""

import json
import logging

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rulegate.models import Artifact, AttemptResult, RunSummary

logger = logging.getLogger(__name__)

FAILURE_RULE = "-" * 50


def summarize(results: list[AttemptResult]) -> RunSummary:
    """Partition attempt results into a run summary."""
    summary = RunSummary(results=list(results))
    logger.info(f"Run finished: {summary.failure_count} of {summary.total} failed")
    return summary


def format_json(summary: RunSummary) -> str:
    return json.dumps(summary.to_dict(), indent=2)


class ConsoleReporter:
    """Progress and summary output for a validation run."""

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose

    def no_artifacts(self) -> None:
        self.console.print("[red]No .mrs files found.[/red]")

    def run_started(self, total: int, concurrency: int) -> None:
        self.console.print(
            f"Found {total} .mrs files. Starting tests with concurrency {concurrency}..."
        )

    def attempt_started(self, artifact: Artifact, port: int, lane: int) -> None:
        self.console.print(
            f"--- Testing {escape(str(artifact.path))} on port {port} "
            f"(behavior: {artifact.behavior.value}) ---",
            highlight=False,
        )

    def attempt_finished(self, result: AttemptResult) -> None:
        path = escape(result.artifact_path)
        if result.success:
            self.console.print(
                f"[green]RESULT: SUCCESS (HTTP {result.status_code})[/green] for {path}",
                highlight=False,
            )
        elif result.status_code is not None and not result.killed_by_timeout:
            self.console.print(
                f"[red]RESULT: FAILURE (HTTP {result.status_code})[/red] for {path}",
                highlight=False,
            )
        else:
            self.console.print(
                f"[red]RESULT: FAILURE (Fetch/Startup Error)[/red] for {path}: "
                f"{escape(result.error or 'unknown error')}",
                highlight=False,
            )

    def report(self, summary: RunSummary) -> None:
        """Print the final summary and, for every failure, its full captured log."""
        self.console.print("\n[blue]--- Test Summary ---[/blue]")

        if self.verbose and summary.results:
            self._print_results_table(summary)

        if summary.failure_count:
            self.console.print(
                f"\n[red]{summary.failure_count} of {summary.total} tests failed.[/red]"
            )
            for failure in summary.failures:
                self.console.print(
                    f"\n--- Failure Log for: {escape(failure.artifact_path)} ---", highlight=False
                )
                self.console.print(failure.log, markup=False, highlight=False, soft_wrap=True)
                self.console.print(f"{FAILURE_RULE}\n", markup=False)
        elif summary.total:
            self.console.print(f"\n[green]All {summary.total} tests passed successfully![/green]")
        else:
            self.no_artifacts()

    def _print_results_table(self, summary: RunSummary) -> None:
        table = Table()
        table.add_column("Artifact", style="cyan")
        table.add_column("Result", style="white")
        table.add_column("Port", style="dim", justify="right")
        table.add_column("Duration", style="dim", justify="right")

        for result in sorted(summary.results, key=lambda r: r.artifact_path):
            status = "[green]PASS[/green]" if result.success else "[red]FAIL[/red]"
            table.add_row(
                escape(result.artifact_path),
                status,
                str(result.port) if result.port is not None else "",
                f"{result.duration_seconds:.1f}s",
            )

        self.console.print(table)
