"""Command-line interface for the stageload pipeline."""

from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from stageload.config.settings import PipelineConfig

app = typer.Typer(
    name="stageload",
    help="Load staged files into typed tables and derive views from them.",
    no_args_is_help=True,
)

console = Console()

ConfigOption = Annotated[
    Path,
    typer.Option(
        "--config",
        "-c",
        help="Path to configuration YAML file.",
        exists=True,
        dir_okay=False,
    ),
]

# Exit codes for load outcomes: success, failure, partial success
_EXIT_CODES = {"success": 0, "failure": 1, "partial_success": 2}


def _load_config(config: Path) -> "PipelineConfig":
    """Load configuration and set up logging from it."""
    from stageload.config.loader import load_config
    from stageload.errors import StageloadError
    from stageload.utils.logging import configure_logging

    try:
        pipeline_config = load_config(config)
    except StageloadError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e
    configure_logging(pipeline_config.logging.level, pipeline_config.logging.json_output)
    return pipeline_config


@app.command()
def validate(config: ConfigOption) -> None:
    """Check stages, load formats and transform dependencies."""
    from stageload.validation import ConsoleReporter, ValidationRunner

    console.print("[blue]Running plan validation...[/blue]")
    pipeline_config = _load_config(config)

    results = ValidationRunner(pipeline_config).run()
    ConsoleReporter(console).print_results(results)

    if any(r.passed is False for r in results):
        raise typer.Exit(code=1)


@app.command()
def load(
    config: ConfigOption,
    source: Annotated[str, typer.Option("--source", "-s", help="Stage name.")],
    table: Annotated[str, typer.Option("--table", "-t", help="Target table.")],
    file_format: Annotated[str, typer.Option("--format", "-f", help="File format name.")],
    on_error: Annotated[
        str,
        typer.Option("--on-error", help="Error policy: abort, continue or skip_file."),
    ] = "abort",
    force: Annotated[
        bool,
        typer.Option("--force", help="Reload files that were already loaded."),
    ] = False,
) -> None:
    """Load one stage into a table (exit 0 success, 2 partial, 1 failure)."""
    from stageload.config.settings import ErrorPolicy
    from stageload.errors import StageloadError
    from stageload.etl import Pipeline
    from stageload.validation import ConsoleReporter

    try:
        policy = ErrorPolicy(on_error.lower())
    except ValueError as e:
        console.print(
            f"[red]Error: Invalid policy '{escape(on_error)}'. "
            "Use 'abort', 'continue' or 'skip_file'.[/red]"
        )
        raise typer.Exit(code=1) from e

    pipeline_config = _load_config(config)
    console.print(f"[blue]Loading stage '{source}' into '{table}'[/blue]")

    try:
        result = Pipeline(pipeline_config).run_load(source, table, file_format, policy, force=force)
    except StageloadError as e:
        console.print(f"[red]Load failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e

    ConsoleReporter(console).print_load(result)
    code = _EXIT_CODES[result.status.value]
    if code:
        raise typer.Exit(code=code)


@app.command()
def run(config: ConfigOption) -> None:
    """Run every configured load, then every transform."""
    from stageload.errors import StageloadError
    from stageload.etl import Pipeline
    from stageload.validation import ConsoleReporter

    pipeline_config = _load_config(config)
    console.print(f"[blue]Running pipeline '{pipeline_config.project}'[/blue]")

    try:
        result = Pipeline(pipeline_config).run()
    except StageloadError as e:
        console.print(f"[red]Pipeline failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e

    reporter = ConsoleReporter(console)
    for load_result in result.loads:
        reporter.print_load(load_result)
        console.print()

    if result.transforms_skipped:
        console.print("[yellow]Transforms skipped because a load failed[/yellow]")
    elif result.transforms:
        table = Table(title="Transforms")
        table.add_column("Name", style="cyan")
        table.add_column("Kind")
        table.add_column("Rows", justify="right")
        table.add_column("Content hash", style="dim")
        for t in result.transforms:
            table.add_row(
                t.name,
                t.kind,
                str(t.rows) if t.rows is not None else "-",
                t.content_hash or "-",
            )
        console.print(table)

    code = _EXIT_CODES[result.status.value]
    if code:
        raise typer.Exit(code=code)


@app.command()
def unload(
    config: ConfigOption,
    table: Annotated[str, typer.Option("--table", "-t", help="Table or view to write.")],
    file_format: Annotated[str, typer.Option("--format", "-f", help="File format name.")],
    output: Annotated[Path, typer.Option("--output", "-o", help="Output file.")],
) -> None:
    """
    Run the pipeline, then write a table to a file in a configured format.

    Tables live in memory for one invocation, so the pipeline always runs
    first. Nothing is written when the run fails.
    """
    from stageload.errors import StageloadError
    from stageload.etl import Pipeline
    from stageload.ingestion.loader import LoadStatus

    pipeline_config = _load_config(config)
    pipeline = Pipeline(pipeline_config)
    try:
        result = pipeline.run()
        if result.status == LoadStatus.FAILURE:
            console.print(
                f"[red]Unload failed: pipeline run ended in {result.status.value}; "
                f"nothing written to {escape(str(output))}[/red]"
            )
            raise typer.Exit(code=1)
        rows = pipeline.unload(table, file_format, output)
    except (StageloadError, ValueError) as e:
        console.print(f"[red]Unload failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e

    console.print(f"[green]Wrote {rows} rows to {output}[/green]")


@app.command()
def version() -> None:
    """Show version information."""
    from stageload import __version__

    console.print(f"stageload version {__version__}")


if __name__ == "__main__":
    app()
