"""CLI interface for fdp-bench."""

import logging
import sys
from enum import Enum
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from fdpbench import __version__
from fdpbench.config import Settings, settings
from fdpbench.metrics.compare import build_table, compare, write_comparison
from fdpbench.metrics.store import read_metrics, read_summary
from fdpbench.pipeline.era import EraTools
from fdpbench.trial.errors import BenchError
from fdpbench.trial.harness import BenchmarkHarness
from fdpbench.workloads import WORKLOADS, get_workload

# Configure logging with Rich
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)]
)

logger = logging.getLogger(__name__)

# Create Typer app
app = typer.Typer(
    name="fdp-bench",
    help="A/B storage benchmarks comparing FDP placement against a single-stream baseline"
)

console = Console()


class BenchMode(str, Enum):
    baseline = "baseline"
    treatment = "treatment"
    both = "both"


def _set_verbose_logging(verbose: bool) -> Optional[int]:
    if not verbose:
        return None
    root_logger = logging.getLogger()
    previous_level = root_logger.level
    root_logger.setLevel(logging.DEBUG)
    return previous_level


def _settings_for(workload: Optional[str]) -> Settings:
    if workload is None:
        return settings
    if workload not in WORKLOADS:
        console.print(f"[red]Unknown workload: {workload} (choose from {', '.join(sorted(WORKLOADS))})[/red]")
        raise typer.Exit(2)
    return settings.model_copy(update={"workload": workload})


@app.command()
def download(
    first_block: int = typer.Argument(0, min=0, help="First block to fetch"),
    last_block: Optional[int] = typer.Argument(None, min=0, help="Last block to fetch (default: TOTAL_BLOCKS)"),
):
    """Download era1 history archives for the replay workload."""
    last = settings.total_blocks if last_block is None else last_block
    if last < first_block:
        console.print(f"[red]Last block {last} is before first block {first_block}[/red]")
        raise typer.Exit(2)
    console.print("\n[bold blue]Era1 Download[/bold blue]\n")
    count = EraTools(settings).download(first_block, last)
    console.print(f"Downloaded [cyan]{count}[/cyan] era1 file(s) to {settings.era_dir}")


@app.command()
def convert():
    """Convert downloaded era1 archives into a single RLP file."""
    console.print("\n[bold blue]Era1 → RLP Conversion[/bold blue]\n")
    output = EraTools(settings).convert_all(settings.total_blocks)
    if output is None:
        console.print("[yellow]RLP file already exists; nothing to do[/yellow]")
        return
    console.print(f"RLP file ready: [green]{output}[/green]")


@app.command()
def bench(
    mode: BenchMode = typer.Argument(
        BenchMode.both,
        help="Which trial(s) to run"
    ),
    workload: Optional[str] = typer.Option(
        None,
        "--workload",
        "-w",
        help="replay, network or sui (default: WORKLOAD)"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging"
    ),
):
    """
    Run baseline and/or treatment trials.

    With ``both``, the two trials run back to back and a comparison report is written.
    """
    previous_level = _set_verbose_logging(verbose)
    try:
        bench_settings = _settings_for(workload)
        selected = get_workload(bench_settings.workload)
        console.print(f"\n[bold blue]FDP Benchmark: {selected.title}[/bold blue]\n")
        harness = BenchmarkHarness(bench_settings, selected)
        report = harness.run(mode.value)
        if report is not None:
            console.print(build_table(report))
            console.print(f"\nReport saved to [cyan]{bench_settings.results_dir / 'comparison.txt'}[/cyan]")
        else:
            console.print(f"\nResults in [cyan]{bench_settings.results_dir}[/cyan]")
    except BenchError as exc:
        console.print(f"\n[red]Error: {exc}[/red]")
        if exc.log_tail:
            console.print("[dim]Last log lines:[/dim]")
            console.print(exc.log_tail, markup=False, highlight=False)
        raise typer.Exit(1) from exc
    finally:
        if previous_level is not None:
            logging.getLogger().setLevel(previous_level)


@app.command(name="compare")
def compare_command(
    baseline: Path = typer.Argument(..., exists=True, help="Baseline trial directory or metrics file"),
    treatment: Path = typer.Argument(..., exists=True, help="Treatment trial directory or metrics file"),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Directory for comparison.txt/json (default: RESULTS_DIR)"
    ),
):
    """Compare two existing trial results without re-running them."""
    report = compare(read_metrics(baseline), read_metrics(treatment))
    console.print(build_table(report))
    baseline_dir = baseline if baseline.is_dir() else baseline.parent
    treatment_dir = treatment if treatment.is_dir() else treatment.parent
    path = write_comparison(
        report,
        output or settings.results_dir,
        baseline_summary=read_summary(baseline_dir),
        treatment_summary=read_summary(treatment_dir),
    )
    console.print(f"\nReport saved to [cyan]{path}[/cyan]")


@app.command()
def version():
    """Show version information."""
    console.print(f"[cyan]fdp-bench[/cyan] v{__version__}")


def main():
    """Main CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Error: {e}[/red]")
        logger.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main()
