"""
TICKETLOOM CLI: The Interface

  ticketloom init [path]                 (record allowed remote, seed config)
  ticketloom add <id> <title> ...        (create a ticket)
  ticketloom run <id>                    (execute one ticket)
  ticketloom retry <id>                  (reset a failed/blocked ticket)

Plus utilities:
  - ticketloom status        (API keys, tools, tickets)
  - ticketloom history       (recent runs)

Exit codes for `run`: 0 success, 1 failure, 2 spindle abort, 130 interrupted.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ticketloom.backends import BackendError, available_backends
from ticketloom.config_loader import (
    ConfigError,
    load_config,
    repo_config_path,
    save_repo_overrides,
    validate_api_keys,
)
from ticketloom.controller import Controller, RunOptions
from ticketloom.identity import BANNER, __codename__, __tagline__, __version__
from ticketloom.remote import get_origin_url, normalize_remote_url
from ticketloom.spindle import format_verdict
from ticketloom.state import EXIT_INTERRUPTED, RunTicketResult, Ticket
from ticketloom.store import RunStore, StoreError

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".ticketloom" / ".env")

app = typer.Typer(
    name="ticketloom",
    help=f"{__codename__} — {__tagline__}\nTicket-scoped coding agent runner.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


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
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .ticketloom in a repository and record its push remote."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    config = _load_config_or_exit(repo)
    ws_cfg = config.workspace
    for d in (ws_cfg.ticket_dir, ws_cfg.run_dir, ws_cfg.artifact_dir, ws_cfg.log_dir, ws_cfg.worktree_dir):
        (repo / d).mkdir(parents=True, exist_ok=True)

    overrides: dict = {}
    origin = get_origin_url(repo)
    if origin:
        overrides["allowed_remote"] = origin
        console.print(f"[green]🔒 Allowed remote:[/] {origin} [dim]({normalize_remote_url(origin)})[/]")
    else:
        console.print("[yellow]⚠ No origin remote found; push-safety will only warn until you re-run init.[/]")

    if not config.qa.commands:
        test_cmd = _detect_test_command(repo)
        if test_cmd:
            overrides["qa"] = {"commands": [{"name": "test", "cmd": test_cmd}]}
            console.print(f"[cyan]🧪 QA command detected:[/] {test_cmd}")

    config_path = save_repo_overrides(repo, overrides)

    # Add to .gitignore
    gitignore = repo / ".gitignore"
    ignore_entries = [
        f"{ws_cfg.worktree_dir}/",
        f"{ws_cfg.run_dir}/",
        f"{ws_cfg.artifact_dir}/",
        f"{ws_cfg.log_dir}/",
    ]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# TICKETLOOM\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# TICKETLOOM\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized TICKETLOOM in {repo / '.ticketloom'}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Tickets: {repo / ws_cfg.ticket_dir}")


@app.command()
def add(
    ticket_id: str = typer.Argument(..., help="Ticket identifier (used in the branch name)"),
    title: str = typer.Argument(..., help="Ticket title (used as the commit message)"),
    description: str = typer.Option("", "--description", "-d", help="What the agent should do"),
    allow: Optional[List[str]] = typer.Option(None, "--allow", "-a", help="Allowed path pattern (repeatable)"),
    forbid: Optional[List[str]] = typer.Option(None, "--forbid", "-f", help="Forbidden path pattern (repeatable)"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Scope-expansion retry budget"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
):
    """Create a ticket."""
    repo = repo.resolve()
    config = _load_config_or_exit(repo)
    store = _store(repo, config)

    try:
        store.get_ticket(ticket_id)
    except StoreError:
        pass
    else:
        console.print(f"[red]Ticket already exists: {ticket_id}[/]")
        raise typer.Exit(1)

    try:
        ticket = store.save_ticket(Ticket(
            id=ticket_id,
            title=title,
            description=description,
            allowed_paths=list(allow or []),
            forbidden_paths=list(forbid or []),
            max_retries=config.limits.max_retries if max_retries is None else max_retries,
        ))
    except StoreError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    console.print(f"[green]✅ Ticket {ticket.id} created[/] [dim]({ticket.branch_name})[/]")


@app.command()
def run(
    ticket_id: str = typer.Argument(..., help="Ticket to execute"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    backend: Optional[str] = typer.Option(None, "--backend", "-b", help="Execution backend (claude, codex)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Agent timeout in seconds"),
    base: Optional[str] = typer.Option(None, "--base", help="Base branch override"),
    skip_qa: bool = typer.Option(False, "--skip-qa", help="Skip the quality gate"),
    skip_push: bool = typer.Option(False, "--skip-push", help="Commit only; push happens elsewhere"),
    no_pr: bool = typer.Option(False, "--no-pr", help="Do not open a pull request"),
    draft: bool = typer.Option(False, "--draft", help="Open the pull request as a draft"),
    no_fix: bool = typer.Option(False, "--no-fix", help="Do not re-invoke the agent on test failures"),
    force: bool = typer.Option(False, "--force", help="Run even if the ticket is done or blocked"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one ticket through the pipeline."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)

    config = _load_config_or_exit(repo)
    store = _store(repo, config)
    try:
        ticket = store.get_ticket(ticket_id)
    except StoreError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    if ticket.status in ("done", "blocked", "running") and not force:
        console.print(f"[red]Ticket {ticket.id} is {ticket.status}.[/] Use --force, or `ticketloom retry {ticket.id}`.")
        raise typer.Exit(1)

    options = RunOptions(
        backend_name=backend,
        timeout_s=timeout,
        skip_qa=skip_qa,
        create_pr=config.pull_request.create and not no_pr,
        draft_pr=draft,
        skip_push=skip_push,
        skip_pr=no_pr or skip_push,
        base_branch=base,
        qa_retry_with_fix=not no_fix,
        on_progress=lambda msg: console.print(f"  [dim]{msg}[/]", highlight=False),
    )

    console.print(Panel(
        f"[bold]{ticket.title}[/]\n[dim]{ticket.id} → {ticket.branch_name}[/]",
        title="🎫 Ticket",
        border_style="cyan",
    ))

    try:
        result = Controller(repo, config=config, store=store).execute(ticket, options)
    except BackendError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚡ Interrupted by operator.[/]")
        raise typer.Exit(EXIT_INTERRUPTED)

    _print_result(result)
    if result.exit_code:
        raise typer.Exit(result.exit_code)


@app.command()
def retry(
    ticket_id: str = typer.Argument(..., help="Ticket to reset"),
    allow: Optional[List[str]] = typer.Option(None, "--allow", "-a", help="Extra allowed path pattern (repeatable)"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
):
    """Reset a ticket to ready (retry budget included), optionally widening its scope."""
    repo = repo.resolve()
    config = _load_config_or_exit(repo)
    store = _store(repo, config)
    try:
        ticket = store.get_ticket(ticket_id)
        allowed = list(dict.fromkeys([*ticket.allowed_paths, *(allow or [])]))
        ticket = store.update_ticket(ticket_id, allowed_paths=allowed, retry_count=0, status="ready")
    except StoreError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    console.print(f"[green]✅ Ticket {ticket.id} reset to ready[/]")
    if allow:
        console.print(f"  Allowed paths: {', '.join(ticket.allowed_paths)}")
    console.print(f"  [dim]Run it with: ticketloom run {ticket.id}[/]")


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check TICKETLOOM configuration and readiness."""
    _print_banner()

    # API Keys
    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    # Tools
    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")

    for tool in ["git", "gh", "claude", "codex"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)

    console.print(tools_table)
    console.print(f"[dim]Backends: {', '.join(available_backends())}[/]")

    if not repo:
        return

    repo = repo.resolve()
    config = _load_config_or_exit(repo)
    console.print(f"\n[bold]Execution:[/] {config.execution.backend}"
                  + (f" ({config.execution.model})" if config.execution.model else ""))
    console.print(f"[bold]Allowed remote:[/] {config.allowed_remote or '[yellow]not recorded[/]'}")
    if not repo_config_path(repo).exists():
        console.print("[dim]No repo config; run `ticketloom init` first.[/]")

    tickets = _store(repo, config).list_tickets()
    if not tickets:
        console.print("[dim]No tickets yet.[/]")
        return

    table = Table(title="Tickets", border_style="magenta")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Retries", style="dim")
    table.add_column("Allowed", style="dim")

    for t in tickets:
        table.add_row(
            t.id,
            t.title[:50],
            f"[{_STATUS_COLORS.get(t.status, 'white')}]{t.status}[/]",
            f"{t.retry_count}/{t.max_retries}",
            ", ".join(t.allowed_paths) or "*",
        )
    console.print(table)


@app.command()
def history(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    count: int = typer.Option(10, "--count", "-n", help="Number of entries to show"),
):
    """View recent runs."""
    repo = repo.resolve()
    config = _load_config_or_exit(repo)
    entries = _store(repo, config).get_recent(count)
    if not entries:
        console.print("[dim]No history yet. Run some tickets first.[/]")
        return

    table = Table(title=f"Recent Runs (last {count})", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Ticket")
    table.add_column("Outcome")
    table.add_column("Duration", style="dim")
    table.add_column("Notes")

    for entry in reversed(entries):
        ts = (entry.get("timestamp") or "?")[:19]
        if entry.get("success"):
            outcome = f"[green]{entry.get('completion_outcome') or 'success'}[/]"
        else:
            outcome = f"[red]{entry.get('failure_reason') or 'failed'}[/]"
        notes = entry.get("pr_url") or (entry.get("error") or "")[:40]
        duration = f"{(entry.get('duration_ms') or 0) / 1000:.1f}s"
        table.add_row(ts, entry.get("ticket_id", "?"), outcome, duration, notes)

    console.print(table)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_STATUS_COLORS = {
    "ready": "cyan",
    "running": "yellow",
    "done": "green",
    "failed": "red",
    "blocked": "magenta",
}


def _load_config_or_exit(repo: Path):
    try:
        return load_config(repo)
    except ConfigError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)


def _store(repo: Path, config) -> RunStore:
    return RunStore.for_repo(repo, config.workspace.ticket_dir, config.workspace.run_dir)


def _print_result(result: RunTicketResult) -> None:
    if result.success:
        lines = [f"[bold green]✅ {result.completion_outcome or 'Success'}[/]"]
        if result.branch_name:
            lines.append(f"Branch: {result.branch_name}")
        if result.pr_url:
            lines.append(f"PR: {result.pr_url}")
        border = "green"
    else:
        lines = [f"[bold red]✗ {result.failure_reason}[/]", result.error or ""]
        if result.scope_expanded:
            lines.append(f"Added paths: {', '.join(result.scope_expanded.added_paths)}")
            lines.append(f"Retry count: {result.scope_expanded.new_retry_count}")
        border = "yellow" if result.scope_expanded else "red"
    lines.append(f"[dim]Duration: {result.duration_ms / 1000:.1f}s · run {result.run_id}[/]")
    console.print(Panel("\n".join(lines), title="Result", border_style=border))

    if result.spindle:
        console.print(Panel(format_verdict(result.spindle), title="🌀 Spindle", border_style="magenta"))
        for rec in result.spindle.recommendations:
            console.print(f"  • {rec}")


def _detect_test_command(repo: Path) -> str | None:
    """Auto-detect the test command based on repo contents."""
    if (repo / "Cargo.toml").exists():
        return "cargo test"
    if (repo / "package.json").exists():
        return "npm test"
    if (repo / "pyproject.toml").exists() or (repo / "setup.py").exists():
        return "python -m pytest"
    if (repo / "go.mod").exists():
        return "go test ./..."
    if (repo / "Makefile").exists():
        return "make test"
    return None


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
