"""
CLI interface for the code bus sync service.

Provides commands for:
- Running sync jobs for a branch, a single file or an event payload
- Resuming, inspecting and stopping persisted jobs
- Checking the GitHub rate limit budget
- Listing the branches mirrored in the code bus
- Running the background resume scheduler
- Configuration validation

Usage Examples:
    # Sync a pushed file
    uv run python -m services.codesync.cli sync -p adobe/helix-website -b main --path /head.html

    # Resync a whole branch
    uv run python -m services.codesync.cli sync -p adobe/helix-website -b feature-x --all

    # Replay a recorded event
    uv run python -m services.codesync.cli sync -p adobe/helix-website --event push.json
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from .config import Config, ProjectConfig
from .events import ensure_rate_limit, prepare_event
from .github_client import GitHubClient
from .job import TOPIC, create_code_job, new_job_state
from .job_store import JobStore
from .models import JobState
from .resources import SHA_FILE
from .storage import create_bucket
from .utils import CodeSyncError, StorageError, setup_logging

app = typer.Typer(
    name="codesync",
    help="Code Bus Synchronization CLI",
    add_completion=False,
)

console = Console()


def _load_config(config_path: Optional[Path]) -> Config:
    try:
        return Config.load(config_path)
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(1)


def _setup_logging(config: Config, verbose: bool) -> None:
    setup_logging(
        level="DEBUG" if verbose else config.logging.level,
        log_file=config.logging.file or None,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
        verbose=not verbose,
    )


def _open_store(config: Config) -> JobStore:
    return JobStore(
        config.jobs.path,
        save_stale_seconds=config.sync.save_stale_seconds,
        lease_ttl_seconds=config.sync.lease_ttl_seconds,
    )


def _github(config: Config) -> GitHubClient:
    return GitHubClient(
        token=config.github.token or None,
        base_url=config.github.base_url,
        raw_url=config.github.raw_url,
        timeout=config.github.timeout,
        user_agent=config.github.user_agent,
        default_wait=config.sync.rate_limit_wait_seconds,
    )


def _select_project(config: Config, name: Optional[str]) -> ProjectConfig:
    if name:
        project = config.get_project_by_name(name)
        if not project:
            console.print(f"[red]Project not found: {name}[/red]")
            raise typer.Exit(1)
        return project
    if len(config.projects) != 1:
        console.print("[yellow]Specify --project ORG/SITE[/yellow]")
        raise typer.Exit(1)
    return config.projects[0]


def _print_result(state: JobState) -> None:
    progress = state.progress
    phase = state.phase.value if state.phase else "none"
    color = "red" if state.error else ("yellow" if state.state != "stopped" else "green")
    lines = [
        f"[{color}]Job {state.name}: {state.state}[/{color}]\n",
        f"Branch: {state.data.code_prefix}",
        f"Phase: {phase}",
        f"Total: {progress.total}",
        f"Processed: {progress.processed}",
        f"Failed: {progress.failed}",
        f"Ignored: {progress.ignored}",
    ]
    if state.data.tree_sync_reason:
        lines.append(f"Tree sync: {state.data.tree_sync_reason}")
    if state.waiting:
        lines.append(f"Waiting: {state.waiting / 1000:.0f}s (rate limited)")
    if state.cancelled:
        lines.append("[yellow]Cancelled[/yellow]")
    if state.error:
        lines.append(f"[red]Error: {state.error}[/red]")
    console.print(Panel("\n".join(lines), title="Sync Results", box=box.ROUNDED))


# =============================================================================
# Sync Commands
# =============================================================================

@app.command("sync")
def sync_branch(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    project_name: Optional[str] = typer.Option(
        None,
        "--project", "-p",
        help="Project to sync (org/site from config)",
    ),
    branch: Optional[str] = typer.Option(
        None,
        "--branch", "-b",
        help="Branch or tag to sync (defaults to the project's default branch)",
    ),
    path: Optional[str] = typer.Option(
        None,
        "--path",
        help="Single file to sync, e.g. /head.html",
    ),
    whole_branch: bool = typer.Option(
        False,
        "--all", "-a",
        help="Resync the whole branch",
    ),
    delete: bool = typer.Option(
        False,
        "--delete",
        help="Delete the path (or the whole branch with --all)",
    ),
    base_ref: Optional[str] = typer.Option(
        None,
        "--base-ref",
        help="Base branch of a newly created branch",
    ),
    tag: bool = typer.Option(
        False,
        "--tag",
        help="The ref is a tag",
    ),
    event_file: Optional[Path] = typer.Option(
        None,
        "--event", "-e",
        help="JSON file with an event payload (branch, changes, ...)",
    ),
    transient: bool = typer.Option(
        False,
        "--transient",
        help="Do not persist the job",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
):
    """
    Run a code sync job.

    Without --event, syncs --path, or the whole branch with --all.
    """
    config = _load_config(config_path)
    _setup_logging(config, verbose)
    project = _select_project(config, project_name)

    if event_file:
        try:
            payload: dict[str, Any] = json.loads(event_file.read_text("utf-8"))
        except (OSError, ValueError) as e:
            console.print(f"[red]Error reading event: {e}[/red]")
            raise typer.Exit(1)
        payload.setdefault("branch", branch or project.default_branch)
    else:
        if not path and not whole_branch:
            console.print("[yellow]Specify --path PATH, --all or --event FILE[/yellow]")
            raise typer.Exit(1)
        payload = {
            "branch": branch or project.default_branch,
            "path": "/*" if whole_branch else path,
            "tag": tag,
        }
        if base_ref:
            payload["baseRef"] = base_ref

    github = _github(config)
    try:
        event, changes = prepare_event(payload, project, method="DELETE" if delete else "POST")
        ensure_rate_limit(github)
    except CodeSyncError as e:
        github.close()
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    store = _open_store(config)
    state = new_job_state(event, changes, transient=transient)
    console.print(f"[blue]Starting job {state.name} for {event.code_prefix}[/blue]")

    job = create_code_job(config, state, store, github=github)
    try:
        state = job.invoke()
    except CodeSyncError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        job.close()

    _print_result(state)
    if state.error:
        raise typer.Exit(1)


@app.command("resume")
def resume_job(
    name: str = typer.Argument(..., help="Job name"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
):
    """Resume a persisted job from the phase it stopped in."""
    config = _load_config(config_path)
    _setup_logging(config, verbose)
    store = _open_store(config)

    state = store.load_state(TOPIC, name)
    if state is None:
        console.print(f"[red]Job not found: {name}[/red]")
        raise typer.Exit(1)
    if state.state == "stopped":
        console.print(f"[yellow]Job {name} already stopped[/yellow]")
        raise typer.Exit(1)

    try:
        job = create_code_job(config, state, store)
    except CodeSyncError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    try:
        state = job.invoke()
    except CodeSyncError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        job.close()

    _print_result(state)
    if state.error:
        raise typer.Exit(1)


# =============================================================================
# Job Commands
# =============================================================================

@app.command("jobs")
def list_jobs(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    active_only: bool = typer.Option(
        False,
        "--active",
        help="Only show jobs that are not finished",
    ),
):
    """List code jobs."""
    setup_logging(level="WARNING")
    config = _load_config(config_path)
    store = _open_store(config)

    jobs = store.list_jobs(TOPIC, include_history=not active_only)
    if not jobs:
        console.print("[dim]No jobs[/dim]")
        return

    table = Table(box=box.ROUNDED)
    table.add_column("Name", style="cyan")
    table.add_column("Branch", style="green")
    table.add_column("State", style="yellow")
    table.add_column("Phase", style="magenta")
    table.add_column("Progress", style="blue")
    table.add_column("Error", style="red")

    for job in jobs:
        progress = job["progress"]
        state = job["state"]
        if job["cancelled"]:
            state += " (cancelled)"
        table.add_row(
            job["name"],
            job["codePrefix"] or "",
            state,
            job["phase"] or "",
            f"{progress.get('processed', 0)}/{progress.get('total', 0)}"
            f" ({progress.get('failed', 0)} failed)",
            job["error"] or "",
        )

    console.print(table)


@app.command("job")
def show_job(
    name: str = typer.Argument(..., help="Job name"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    resources: bool = typer.Option(
        False,
        "--resources", "-r",
        help="Show the synced resources",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the raw job state",
    ),
):
    """Show a job."""
    setup_logging(level="WARNING")
    config = _load_config(config_path)
    store = _open_store(config)

    state = store.load_state(TOPIC, name)
    if state is None:
        console.print(f"[red]Job not found: {name}[/red]")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps(state.to_dict()))
        return

    _print_result(state)

    if resources and state.resources:
        table = Table(box=box.ROUNDED)
        table.add_column("Path", style="cyan")
        table.add_column("Status", style="yellow")
        table.add_column("Type", style="green")
        table.add_column("Last Modified", style="magenta")
        table.add_column("Error", style="red")
        for resource in state.resources:
            status = str(resource.status)
            if resource.skipped:
                status += " (skipped)"
            elif resource.deleted:
                status += " (deleted)"
            table.add_row(
                resource.resource_path,
                status,
                resource.content_type or "",
                resource.last_modified or "",
                resource.error or "",
            )
        console.print(table)


@app.command("stop")
def stop_job(
    name: str = typer.Argument(..., help="Job name"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
):
    """Request cancellation of a running or waiting job."""
    setup_logging(level="WARNING")
    config = _load_config(config_path)
    store = _open_store(config)

    if not store.request_stop(TOPIC, name):
        console.print(f"[red]No active job named {name}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Stop requested for {name}[/green]")


# =============================================================================
# Status Commands
# =============================================================================

@app.command("ratelimit")
def show_rate_limit(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
):
    """Show the GitHub rate limit budget."""
    setup_logging(level="WARNING")
    config = _load_config(config_path)

    with _github(config) as github:
        info = github.get_rate_limit()

    if info is None:
        console.print("[red]Could not check rate limit[/red]")
        raise typer.Exit(1)

    color = "green" if info.remaining > 0 else "red"
    console.print(Panel(
        f"[{color}]Remaining: {info.remaining}/{info.limit}[/{color}]\n\n"
        f"Used: {info.used}\n"
        f"Reset: {info.reset}",
        title="GitHub Rate Limit",
        box=box.ROUNDED,
    ))


@app.command("branches")
def list_branches(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    project_name: Optional[str] = typer.Option(
        None,
        "--project", "-p",
        help="Project to inspect (org/site from config)",
    ),
):
    """List the branches mirrored in the code bus and their last synced commit."""
    setup_logging(level="WARNING")
    config = _load_config(config_path)
    project = _select_project(config, project_name)

    try:
        code_bus = create_bucket(config.storage, "code", config.sync.storage_workers)
        prefix = f"{project.code_owner}/{project.code_repo}/"
        folders = [f for f in code_bus.list_folders(prefix) if not f[len(prefix):].startswith(".")]
        checkpoints = {f: code_bus.head(f"{f}{SHA_FILE}") for f in folders}
    except StorageError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if not folders:
        console.print(f"[dim]No branches below {prefix}[/dim]")
        return

    table = Table(box=box.ROUNDED)
    table.add_column("Branch", style="cyan")
    table.add_column("Commit", style="green")
    table.add_column("Last Modified", style="magenta")
    for folder in folders:
        info = checkpoints[folder]
        table.add_row(
            folder[len(prefix):].rstrip("/"),
            info.meta.get("x-commit-id", "") if info else "",
            info.meta.get("x-source-last-modified", "") if info else "",
        )
    console.print(table)


@app.command("start")
def start_scheduler(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
):
    """
    Start the background scheduler resuming deferred jobs.

    Jobs waiting for a GitHub rate limit are resumed once the wait is over.
    """
    config = _load_config(config_path)
    _setup_logging(config, verbose)

    if not config.scheduler.enabled:
        console.print("[yellow]Scheduler is disabled in the configuration[/yellow]")
        raise typer.Exit(1)

    from .scheduler import create_scheduler

    try:
        scheduler = create_scheduler(config_path)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[green]Scheduler Started[/green]\n\n"
        f"Polling every {config.scheduler.poll_interval}s for deferred jobs\n"
        f"Press Ctrl+C to stop",
        title="Scheduler Status",
        box=box.ROUNDED,
    ))

    scheduler.start()
    scheduler.wait()


@app.command("validate-config")
def validate_config(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
):
    """Validate configuration file."""
    setup_logging(level="INFO")
    config = _load_config(config_path)

    errors = config.validate()

    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  • {error}")
        raise typer.Exit(1)
    else:
        console.print("[green]✓ Configuration is valid[/green]")
        console.print(f"\nLoaded {len(config.projects)} projects")


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
