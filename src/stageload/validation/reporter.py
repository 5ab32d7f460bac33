"""
Console reporting with Rich.

Formats plan validation results and load results for the CLI.
"""

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from stageload.ingestion.loader import LoadResult, LoadStatus
from stageload.validation.core import ValidationResult

_STATUS_STYLE = {
    LoadStatus.SUCCESS: "green",
    LoadStatus.PARTIAL: "yellow",
    LoadStatus.FAILURE: "red",
}


class ConsoleReporter:
    """Formats and displays results to the console."""

    def __init__(self, console: Console) -> None:
        """
        Initialize console reporter.

        Args:
            console: Rich Console instance for output.
        """
        self.console = console

    def print_results(self, results: list[ValidationResult]) -> None:
        """
        Print plan validation results as a table, then a summary.

        Args:
            results: Validation results to display.
        """
        table = Table(title="Plan Validation Results", show_header=True)
        table.add_column("Check", style="cyan", no_wrap=True)
        table.add_column("Subject", style="blue")
        table.add_column("Status", justify="center")
        table.add_column("Files", justify="right")
        table.add_column("Details", style="dim")

        for result in results:
            table.add_row(
                result.check,
                result.subject,
                self._format_status(result),
                str(result.files) if result.files is not None else "-",
                escape(result.error_message or "OK"),
            )

        self.console.print(table)
        self._print_summary(results)

    def _format_status(self, result: ValidationResult) -> str:
        if result.passed is None:
            return "[yellow]Skipped[/yellow]"
        if result.passed:
            return "[green]Pass[/green]"
        return "[red]Fail[/red]"

    def _print_summary(self, results: list[ValidationResult]) -> None:
        passed = sum(1 for r in results if r.passed is True)
        failed = sum(1 for r in results if r.passed is False)
        skipped = sum(1 for r in results if r.passed is None)

        self.console.print()
        self.console.print("[bold]Summary:[/bold]")
        self.console.print(f"  Total checks: {len(results)}")
        self.console.print(f"  [green]Passed: {passed}[/green]")
        self.console.print(f"  [red]Failed: {failed}[/red]")
        self.console.print(f"  [yellow]Skipped: {skipped}[/yellow]")

    def print_load(self, result: LoadResult) -> None:
        """
        Print a load result: per-file table, counters and rejection reasons.

        Args:
            result: Result of one load invocation.
        """
        table = Table(title=f"Load into {result.table}", show_header=True)
        table.add_column("File", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Parsed", justify="right")
        table.add_column("Loaded", justify="right")
        table.add_column("Errors", justify="right")
        table.add_column("First error", style="dim")

        for f in result.files:
            table.add_row(
                escape(f.uri),
                f.status.value,
                str(f.rows_parsed),
                str(f.rows_loaded),
                str(f.errors_seen),
                escape(f.first_error or ""),
            )
        self.console.print(table)

        style = _STATUS_STYLE[result.status]
        self.console.print(
            f"[{style}]{result.status.value}[/{style}]: "
            f"{result.inserted} inserted, {result.rejected} rejected, "
            f"{result.discarded} discarded of {result.attempted} attempted "
            f"(on_error={result.policy.value})"
        )

        reasons = result.reasons
        if reasons:
            self.console.print()
            self.console.print("[bold red]Rejected rows:[/bold red]")
            for reason in reasons:
                self.console.print(f"  {reason}", markup=False)
            hidden = len(result.rejections) - len(reasons)
            if hidden > 0:
                self.console.print(f"  ... and {hidden} more")
