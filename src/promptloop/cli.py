"""Command-line interface for promptloop.

Usage:
    promptloop <suite.yml>                      Test the instructions once
    promptloop <suite.yml> --improve -n 3       Rewrite the instructions 3 times
    promptloop <suite.yml> --dry-run            Show the test plan without calling models
    promptloop <suite.yml> --ci --min-score 80  Fail when a pair is neither equal nor scored 80+
"""

import json
import sys
from pathlib import Path

import click
import dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .errors import SuiteLoadError
from .monitoring import enable_monitoring
from .utils import RunSummary, Suite, load_suite, run_suite

dotenv.load_dotenv()


def _print_plan(console: Console, suite: Suite, yaml_file: Path, improve: bool, iterations: int) -> None:
    """Print what a run would do without calling any model."""
    info = Table.grid(padding=(0, 2))
    info.add_column(style="bold")
    info.add_column()
    info.add_row("File", yaml_file.name)
    info.add_row("Mode", f"improve x{iterations}" if improve else "test")
    info.add_row("Core Model", suite.model.name if suite.model else "[grey50]MODEL_NAME[/grey50]")
    info.add_row(
        "Embedding Model",
        suite.embedding_model.name if suite.embedding_model else "[grey50]none[/grey50]",
    )
    info.add_row("Tools", ", ".join(t.name for t in suite.tools) or "[grey50]none[/grey50]")
    info.add_row("Agents", ", ".join(a.name for a in suite.agents) or "[grey50]none[/grey50]")
    info.add_row(
        "Knowledge Bases", ", ".join(k.name for k in suite.knowledge_bases) or "[grey50]none[/grey50]"
    )
    console.print(Panel(info, title="Test Plan", border_style="bright_cyan"))

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold white", expand=True)
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Input", overflow="fold")
    table.add_column("Expected", overflow="fold")
    table.add_column("Checks", style="grey70")
    table.add_column("Model", style="grey70")
    for i, pair in enumerate(suite.pairs, start=1):
        table.add_row(
            str(i),
            pair.input[:80],
            pair.expected_output[:80] or "[grey50]-[/grey50]",
            ", ".join(c.value for c in pair.settings.check_types),
            pair.settings.model.name if pair.settings.model else "core",
        )
    console.print(table)


def _export(summary: RunSummary, path: Path) -> None:
    with open(path, "w") as f:
        json.dump(summary.json(), f, indent=2)


@click.command()
@click.argument("yaml_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--improve", is_flag=True, help="Rewrite the instructions from AI feedback")
@click.option("--iterations", "-n", type=click.IntRange(min=1), help="Improvement iterations")
@click.option("--model", "-m", help="Core model, e.g. openai:gpt-4o-mini")
@click.option("--ci", is_flag=True, help="Enable CI mode")
@click.option(
    "--min-score",
    type=click.IntRange(0, 100),
    default=100,
    show_default=True,
    help="Score at which a non-equal pair passes",
)
@click.option("--debug", is_flag=True, help="Enable debug mode")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output")
@click.option("--no-color", is_flag=True, help="Disable colors")
@click.option("--dry-run", is_flag=True, help="Show test plan without running")
@click.option("--export-json", type=click.Path(path_type=Path), help="Export results to JSON")
def main(
    yaml_file: Path,
    improve: bool,
    iterations: int | None,
    model: str | None,
    ci: bool,
    min_score: int,
    debug: bool,
    quiet: bool,
    no_color: bool,
    dry_run: bool,
    export_json: Path | None,
):
    """promptloop - test and improve system prompts against expected outputs."""
    console = Console(force_terminal=False, no_color=True) if no_color else Console()
    enable_monitoring()

    try:
        suite = load_suite(yaml_file)
    except SuiteLoadError as e:
        click.secho(f"ERROR: {e}", fg="red", err=True)
        raise SystemExit(1) from None

    if dry_run:
        _print_plan(
            console,
            suite,
            yaml_file,
            improve or suite.improve,
            iterations or suite.iterations,
        )
        return

    if not suite.pairs:
        click.secho("ERROR: Suite has no test pairs", fg="red", err=True)
        raise SystemExit(1)

    try:
        summary = run_suite(
            suite,
            improve=True if improve else None,
            iterations=iterations,
            model=model,
            min_score=min_score,
            debug=debug,
        )
    except Exception as e:
        click.secho(f"ERROR: {e}", fg="red", err=True)
        if debug:
            raise
        raise SystemExit(1) from None

    if not quiet:
        console.print()
        summary.print()
        console.print()

    if export_json:
        _export(summary, export_json)
        if not quiet:
            console.print(f"[green]Results exported to: {export_json}[/green]")

    if ci and not summary.all_passed:
        click.secho(
            f"ERROR: {len(summary.failed_results)} of {summary.total_count} pairs failed "
            f"(min score {min_score})",
            fg="red",
            bold=True,
            err=True,
        )
        print("::error title=Prompt Tests Failed::Some prompt tests failed.", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
