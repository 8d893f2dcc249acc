"""CLI display utilities using Rich.

Provides console output for:
- Run headers and status panels
- Run listings
- Hypothesis tables
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from asip.contracts.schemas import Hypothesis, Run, RunStatus

console = Console()


STATUS_STYLES = {
    RunStatus.PENDING: "dim",
    RunStatus.RUNNING: "cyan",
    RunStatus.PAUSED: "yellow",
    RunStatus.COMPLETED: "green",
    RunStatus.ERROR: "red",
    RunStatus.INTERRUPTED: "magenta",
    RunStatus.CANCELLED: "dim",
}

STEP_NAMES = {
    2: "Deep research",
    3: "Scientific evaluation",
    4: "Strategic audit",
    5: "Integration",
}


def _status(run: Run) -> str:
    style = STATUS_STYLES.get(run.status, "white")
    return f"[{style}]{run.status.value}[/{style}]"


def print_header(project_name: str, run: Run) -> None:
    """Print run header."""
    console.print()
    console.print(Panel(
        f"[bold white]Project:[/bold white] {project_name}\n"
        f"[bold white]Run:[/bold white] {run.id}  "
        f"[dim]({run.hypothesis_count} hypotheses x {run.loop_count} loops, "
        f"{run.strategy.value} research)[/dim]",
        title="[bold cyan]ASIP Pipeline[/bold cyan]",
        border_style="cyan",
    ))
    console.print()


def describe_progress(run: Run) -> str:
    """One-line status used by the live spinner."""
    step = STEP_NAMES.get(run.current_step, f"Step {run.current_step}")
    detail = run.progress_info.get("detail")
    text = f"Loop {run.current_loop}/{run.loop_count} - {step}"
    if detail:
        text += f" [dim]({detail})[/dim]"
    return text


def print_run_result(run: Run, hypotheses: list[Hypothesis]) -> None:
    """Print the final state of a run."""
    console.print()
    if run.status == RunStatus.COMPLETED:
        body = (
            f"[bold green]Run complete[/bold green]\n\n"
            f"Loops: {run.loop_count}\n"
            f"Hypotheses saved: {len(hypotheses)}"
        )
        border = "green"
    else:
        body = f"Status: {_status(run)}\n"
        if run.error_message:
            body += f"\n[red]{run.error_message}[/red]"
        border = STATUS_STYLES.get(run.status, "white")
    console.print(Panel(body, title=f"Run {run.id}", border_style=border))

    if run.validation_metadata and run.validation_metadata.errors:
        console.print("\n[bold yellow]Validation notes:[/bold yellow]")
        for error in run.validation_metadata.errors:
            console.print(f"  [yellow]•[/yellow] {error}")

    if hypotheses:
        print_hypotheses_table(hypotheses)


def print_runs_table(runs: list[Run]) -> None:
    """Print runs of a project as a table."""
    if not runs:
        console.print("[dim]No runs found.[/dim]")
        return

    table = Table(title="Runs")
    table.add_column("Run", style="cyan", no_wrap=True)
    table.add_column("Job")
    table.add_column("Status", justify="center")
    table.add_column("Loop", justify="center")
    table.add_column("Step", justify="center")
    table.add_column("Strategy", style="dim")
    table.add_column("Created", style="dim")

    for run in runs:
        table.add_row(
            run.id,
            run.job_name or "-",
            _status(run),
            f"{run.current_loop}/{run.loop_count}",
            str(run.current_step),
            run.strategy.value,
            run.created_at.strftime("%m-%d %H:%M"),
        )

    console.print(table)


def print_hypotheses_table(hypotheses: list[Hypothesis]) -> None:
    """Print hypotheses with their scores."""
    table = Table(title="Hypotheses")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Title")
    table.add_column("Industry", style="dim")
    table.add_column("Scientific", justify="center")
    table.add_column("Strategic", justify="center")
    table.add_column("Total", justify="right")

    for h in hypotheses:
        total = h.total_score
        if total is None:
            total_text = "-"
        else:
            style = "green" if total >= 70 else "yellow" if total >= 40 else "red"
            total_text = f"[{style}]{total:g}[/]"
        table.add_row(
            str(h.hypothesis_number),
            (h.title or "Untitled")[:60],
            h.industry or "-",
            h.scientific_judgment or "-",
            h.strategic_win_level or h.strategic_judgment or "-",
            total_text,
        )

    console.print(table)
