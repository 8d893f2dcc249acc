"""Main CLI entry point for the ASIP pipeline engine."""

import asyncio
import logging
from pathlib import Path

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from asip.cli.display import (
    describe_progress,
    print_header,
    print_hypotheses_table,
    print_run_result,
    print_runs_table,
)
from asip.contracts.schemas import (
    PipelineConfig,
    Project,
    Resource,
    ResourceType,
    ResearchStrategyName,
    RunCreate,
)
from asip.errors import AsipError, ResourceNotFoundError
from asip.pipeline.lifecycle import RunManager, build_manager

load_dotenv()

app = typer.Typer(
    name="asip",
    help="ASIP pipeline - resumable G-Method hypothesis generation",
    add_completion=False,
)
console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=verbose)],
    )


def _load_config(db: Path | None) -> PipelineConfig:
    config = PipelineConfig.from_env()
    if db is not None:
        config = config.model_copy(update={"db_path": str(db)})
    return config


def _require_credentials(config: PipelineConfig) -> None:
    if not config.has_credentials:
        console.print("[red]Error:[/red] GEMINI_API_KEY not set.")
        console.print("Set it in your environment or .env file.")
        raise typer.Exit(1)


async def _follow(manager: RunManager, run_id: str) -> None:
    """Wait for the run's sequencer task, refreshing a status line."""
    task = manager.running_tasks.get(run_id)
    with console.status("Starting...") as status:
        while task is not None and not task.done():
            status.update(describe_progress(manager.get_run(run_id)))
            await asyncio.wait({task}, timeout=1.0)

    run = manager.get_run(run_id)
    hypotheses = manager.storage.list_hypotheses(run.project_id, run_id=run.id)
    print_run_result(run, hypotheses)


@app.command()
def run(
    target_spec: Path = typer.Argument(..., exists=True, dir_okay=False, help="Target specification file"),
    technical_assets: Path = typer.Argument(..., exists=True, dir_okay=False, help="Technical assets file"),
    hypotheses: int = typer.Option(5, "--hypotheses", "-n", min=1, max=50, help="Hypotheses per loop"),
    loops: int = typer.Option(1, "--loops", "-l", min=1, max=20, help="Number of loops"),
    strategy: ResearchStrategyName = typer.Option(
        ResearchStrategyName.SHARED, "--strategy", "-s", help="Research strategy"
    ),
    project_id: str | None = typer.Option(None, "--project", "-p", help="Existing project id"),
    project_name: str = typer.Option("CLI project", "--name", help="Name for a new project"),
    job_name: str = typer.Option("", "--job", help="Job name shown in listings"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run the pipeline in the foreground.

    Example:
        asip run target.md assets.md -n 5 -l 2
    """
    _configure_logging(verbose)
    config = _load_config(db)
    _require_credentials(config)

    async def _run() -> None:
        manager = build_manager(config)
        storage = manager.storage

        if project_id:
            project = storage.get_project(project_id)
            if project is None:
                raise ResourceNotFoundError("Project", project_id)
        else:
            project = storage.create_project(Project(name=project_name))

        target = storage.create_resource(Resource(
            project_id=project.id,
            type=ResourceType.TARGET_SPEC,
            name=target_spec.name,
            content=target_spec.read_text(encoding="utf-8"),
        ))
        assets = storage.create_resource(Resource(
            project_id=project.id,
            type=ResourceType.TECHNICAL_ASSETS,
            name=technical_assets.name,
            content=technical_assets.read_text(encoding="utf-8"),
        ))

        created = await manager.start_run(project.id, RunCreate(
            target_spec_id=target.id,
            technical_assets_id=assets.id,
            hypothesis_count=hypotheses,
            loop_count=loops,
            job_name=job_name,
            strategy=strategy,
        ))
        print_header(project.name, created)
        await _follow(manager, created.id)

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Run interrupted; use `asip recover` then `asip resume`[/yellow]")
        raise typer.Exit(0)
    except AsipError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)


@app.command()
def resume(
    run_id: str = typer.Argument(..., help="Run to resume"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Resume a paused or interrupted run in the foreground."""
    _configure_logging(verbose)
    config = _load_config(db)
    _require_credentials(config)

    async def _resume() -> None:
        manager = build_manager(config)
        resumed = manager.resume_run(run_id)
        console.print(f"Resuming run [bold]{run_id}[/bold] at {describe_progress(resumed)}")
        await _follow(manager, run_id)

    try:
        asyncio.run(_resume())
    except KeyboardInterrupt:
        console.print("\n[yellow]Run interrupted[/yellow]")
        raise typer.Exit(0)
    except AsipError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)


@app.command()
def recover(
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Mark runs left running or paused by a crashed process as interrupted."""
    _configure_logging(False)
    manager = build_manager(_load_config(db))
    recovered = manager.recover_interrupted_runs()
    console.print(f"Marked [bold]{len(recovered)}[/bold] run(s) as interrupted")
    if recovered:
        print_runs_table(recovered)


@app.command()
def runs(
    project_id: str = typer.Argument(..., help="Project id"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """List the runs of a project."""
    manager = build_manager(_load_config(db))
    print_runs_table(manager.storage.list_runs(project_id))


@app.command()
def hypotheses(
    project_id: str = typer.Argument(..., help="Project id"),
    run_id: str | None = typer.Option(None, "--run", "-r", help="Only hypotheses of this run"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Show the hypotheses of a project."""
    manager = build_manager(_load_config(db))
    found = manager.storage.list_hypotheses(project_id, run_id=run_id)
    if not found:
        console.print("[dim]No hypotheses found.[/dim]")
        return
    print_hypotheses_table(found)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Port"),
) -> None:
    """Start the HTTP control API."""
    import uvicorn

    uvicorn.run("asip.server:app", host=host, port=port)


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
