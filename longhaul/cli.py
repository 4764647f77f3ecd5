"""
LONGHAUL CLI — The Interface

Start or continue a run:
  longhaul run -p <project> -t builder -f SPEC.md
  longhaul resume -p <project>

Plus utilities:
  - longhaul status     (API keys, runs and their task progress)
  - longhaul check      (would this shell command be allowed?)
  - longhaul sandbox    (write/print the sandbox declaration)
  - longhaul discard    (delete a run directory)
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from longhaul.authorization.policy import authorize, build_policy, effective_programs
from longhaul.config_loader import (
    DEPTH_PRESETS,
    ConfigurationError,
    LonghaulConfig,
    load_config,
    validate_api_keys,
)
from longhaul.controller import Controller, prepare_run
from longhaul.identity import BANNER, __codename__, __tagline__, __version__
from longhaul.runs import RUN_KINDS, make_payload, read_paths
from longhaul.sandbox import settings_for_run, validate_settings, write_settings
from longhaul.scheduler import progress
from longhaul.state import RunState
from longhaul.store import RunStore, list_runs

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".longhaul" / ".env")

app = typer.Typer(
    name="longhaul",
    help=f"{__codename__} — {__tagline__}\nResumable multi-session agent runs.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

_STATUS_COLORS = {
    "completed": "green",
    "skipped": "dim",
    "in_progress": "cyan",
    "blocked": "red",
    "pending": "white",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_blue]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _load(project: Path) -> LonghaulConfig:
    try:
        return load_config(project)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)


def _executor(config: LonghaulConfig):
    from longhaul.executor.llm import LiteLLMExecutor

    return LiteLLMExecutor(config.executor, config.budget)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    project: Path = typer.Option(Path("."), "--project", "-p", help="Project directory the executor works in"),
    run_type: str = typer.Option("builder", "--type", "-t", help=f"Run type: {', '.join(RUN_KINDS)}"),
    name: str = typer.Option("default", "--name", "-n", help="Run name (one directory per run)"),
    spec: Optional[str] = typer.Option(None, "--spec", "-s", help="Specification / bug report / plan text"),
    spec_file: Optional[Path] = typer.Option(None, "--spec-file", "-f", help="Read the specification from a file"),
    source: Optional[str] = typer.Option(None, "--source", help="Migrator: source directory"),
    dest: Optional[str] = typer.Option(None, "--dest", help="Migrator: target directory"),
    migration_type: Optional[str] = typer.Option(None, "--migration-type", help="Migrator: e.g. zod-to-openapi"),
    reference: Optional[str] = typer.Option(None, "--reference", help="Scaffold: reference implementation directory"),
    read_path: List[str] = typer.Option([], "--read-path", help="Scaffold: extra read-only directory (repeatable)"),
    verify_cmd: List[str] = typer.Option([], "--verify-cmd", help="Scaffold: final verification command (repeatable)"),
    target: Optional[str] = typer.Option(None, "--target", help="Refactor: what to refactor"),
    goal: Optional[str] = typer.Option(None, "--goal", help="Refactor: what the result should look like"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Executor model (LiteLLM id)"),
    preset: Optional[str] = typer.Option(None, "--preset", help="Permission preset: readonly, dev, full"),
    allow: List[str] = typer.Option([], "--allow", help="Extra allowed program (repeatable)"),
    deny: List[str] = typer.Option([], "--deny", help="Denied program or substring (repeatable)"),
    depth: Optional[str] = typer.Option(None, "--depth", "-d", help="Run depth: quick, standard, thorough"),
    max_sessions: Optional[int] = typer.Option(None, "--max-sessions", help="Stop after this many sessions in total"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Start a run, or continue it if one with this name already exists."""
    _print_banner()
    _configure_logging(verbose)

    project = project.resolve()
    config = _load(project)
    if max_sessions is not None:
        config.loop.max_sessions = max_sessions

    store = _store(project, name)
    try:
        payload = None
        if store.load_state() is None:
            payload = make_payload(
                run_type,
                spec_file=str(spec_file) if spec_file else None,
                spec_text=spec,
                source_dir=source,
                target_dir=dest,
                migration_type=migration_type,
                reference_dir=reference,
                additional_read_paths=read_path,
                verification_commands=verify_cmd,
                target=target,
                goal=goal,
            )
        if preset is not None and preset not in ("readonly", "dev", "full"):
            raise ConfigurationError(f"Unknown preset: {preset}")
        if depth is not None and depth not in DEPTH_PRESETS:
            raise ConfigurationError(f"Unknown depth: {depth}")
        state = prepare_run(
            store, config, payload, model=model, preset=preset, allow=allow, deny=deny, depth=depth,
        )
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    _drive(store, config, state)


@app.command()
def resume(
    project: Path = typer.Option(Path("."), "--project", "-p", help="Project directory"),
    name: str = typer.Option("default", "--name", "-n", help="Run name"),
    max_sessions: Optional[int] = typer.Option(None, "--max-sessions", help="Stop after this many sessions in total"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Continue an existing run from its saved state."""
    _print_banner()
    _configure_logging(verbose)

    project = project.resolve()
    config = _load(project)
    if max_sessions is not None:
        config.loop.max_sessions = max_sessions

    store = _store(project, name)
    try:
        state = prepare_run(store, config)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    _drive(store, config, state)


def _drive(store: RunStore, config: LonghaulConfig, state: RunState) -> None:
    controller = Controller(store, _executor(config), config=config)
    result = controller.run(state)

    color = "green" if result.completed else "yellow"
    console.print(f"\n[bold {color}]Status: {result.reason}[/]")


@app.command()
def status(
    project: Optional[Path] = typer.Option(None, "--project", "-p", help="Project directory"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Show tasks for one run"),
):
    """Check configuration, API keys and run progress."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "node", "npm", "python3"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)

    if not project:
        return

    project = project.resolve()
    config = _load(project)
    console.print("\n[bold]Executor:[/]")
    console.print(f"  Model:        {config.executor.model}")
    console.print(f"  Max turns:    {config.executor.max_turns}")
    loop = config.loop.resolved()
    console.print(f"  Depth:        {loop.depth}")
    console.print(f"  Max sessions: {loop.max_sessions or 'Unlimited'}")
    console.print(f"  Budget:       {config.budget.max_tokens:,} tokens / ${config.budget.max_dollars}")

    names = [name] if name else list_runs(project)
    if not names:
        console.print("\n[dim]No runs yet. Start one with: longhaul run[/]")
        return

    runs_table = Table(title="Runs", border_style="blue")
    runs_table.add_column("Run")
    runs_table.add_column("Type")
    runs_table.add_column("Depth")
    runs_table.add_column("Sessions")
    runs_table.add_column("Progress")
    runs_table.add_column("Blocked")
    runs_table.add_column("Updated", style="dim")

    for run_name in names:
        store = _store(project, run_name)
        state = store.load_state()
        if state is None:
            runs_table.add_row(run_name, "[red]?[/]", "-", "-", "-", "-", "-")
            continue
        p = progress(store.load_tasks())
        runs_table.add_row(
            run_name,
            state.run_type,
            state.depth,
            str(state.session_count),
            f"{p.completed}/{p.total} ({p.percentage}%)" if state.initialized else "[dim]not initialized[/]",
            str(p.blocked),
            state.updated_at[:19],
        )
    console.print(runs_table)

    if name:
        _print_tasks(_store(project, name))


def _print_tasks(store: RunStore) -> None:
    tasks = store.load_tasks()
    if not tasks:
        return
    table = Table(title=f"Tasks — {store.run_name}", border_style="dim")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Depends on")
    table.add_column("Description")
    for task in tasks:
        color = _STATUS_COLORS.get(task.status, "white")
        table.add_row(
            task.id,
            f"[{color}]{task.status}[/]",
            ", ".join(task.dependencies),
            escape(task.description),
        )
    console.print(table)

    recent = store.read_progress(tail=5)
    if recent:
        console.print("\n[bold]Recent progress:[/]")
        for line in recent:
            console.print(f"  [dim]{escape(line)}[/]")


@app.command()
def check(
    command: str = typer.Argument(..., help="Shell command to authorize"),
    project: Optional[Path] = typer.Option(None, "--project", "-p", help="Use this project's run policy"),
    name: str = typer.Option("default", "--name", "-n", help="Run name"),
    preset: str = typer.Option("dev", "--preset", help="Preset to use without a project: readonly, dev, full"),
    allow: List[str] = typer.Option([], "--allow", help="Extra allowed program (repeatable)"),
    deny: List[str] = typer.Option([], "--deny", help="Denied program or substring (repeatable)"),
    show: bool = typer.Option(False, "--show-programs", help="Print the effective program set"),
):
    """Check whether a shell command would be allowed."""
    policy = None
    if project:
        state = _store(project.resolve(), name).load_state()
        if state is None:
            console.print(f"[red]No run named '{name}' in {project}[/]")
            raise typer.Exit(1)
        policy = state.policy
    else:
        if preset not in ("readonly", "dev", "full"):
            console.print(f"[red]Unknown preset: {preset}[/]")
            raise typer.Exit(1)
        policy = build_policy(preset=preset, allow=allow, deny=deny)

    if show:
        console.print(", ".join(sorted(effective_programs(policy))), highlight=False)

    decision = authorize(command, policy)
    if decision.allowed:
        console.print(f"[green]✓ Allowed[/] {escape(command)}", highlight=False)
        return
    console.print(f"[red]✗ Denied[/] {escape(command)}\n  [dim]{escape(decision.reason or '')}[/]", highlight=False)
    raise typer.Exit(1)


@app.command()
def sandbox(
    project: Path = typer.Option(Path("."), "--project", "-p", help="Project directory"),
    name: str = typer.Option("default", "--name", "-n", help="Run name"),
    print_only: bool = typer.Option(False, "--print", help="Print the declaration instead of writing it"),
):
    """Generate the sandbox declaration for a run."""
    project = project.resolve()
    config = _load(project)
    store = _store(project, name)
    state = store.load_state()
    settings = settings_for_run(config.sandbox, read_paths(state.payload) if state else [])

    for warning in validate_settings(settings):
        console.print(f"[yellow]⚠ {warning}[/]")

    if print_only:
        console.print_json(settings.to_json())
        return

    try:
        store.ensure()
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    path = write_settings(store, settings)
    console.print(f"[green]Wrote {path}[/]")


@app.command()
def discard(
    project: Path = typer.Option(Path("."), "--project", "-p", help="Project directory"),
    name: str = typer.Option("default", "--name", "-n", help="Run name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a run's saved state so the next run starts fresh."""
    store = _store(project.resolve(), name)
    if not store.run_dir.is_dir():
        console.print(f"[dim]No run named '{name}' in {store.project_dir}[/]")
        raise typer.Exit(1)

    if not yes and not typer.confirm(f"Delete {store.run_dir}?"):
        console.print("[yellow]Kept.[/]")
        return

    store.discard()
    console.print(f"[green]Discarded run '{name}'.[/]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _store(project: Path, name: str) -> RunStore:
    try:
        return RunStore(project, name)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg).rstrip())}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg).rstrip())}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
