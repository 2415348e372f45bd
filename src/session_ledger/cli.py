"""Command line entry point for session-ledger.

Hook commands read the assistant's hook JSON from stdin and always exit 0 so
a storage problem never interrupts the assistant. ``worker`` is the detached
background process started by ``stop``; ``sweep`` and ``inspect`` are for
people and schedulers.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from session_ledger import __version__
from session_ledger.config import LedgerConfig, load_config
from session_ledger.exceptions import StorageUnavailableError
from session_ledger.lifecycle import (
    handle_session_start,
    handle_stop,
    handle_tool_use,
    handle_user_prompt,
    open_store,
    project_from_cwd,
    run_worker,
    sweep,
)
from session_ledger.logging_config import configure_logging
from session_ledger.worker.markers import read_completion_marker

# Load .env file from current directory if it exists
load_dotenv(Path.cwd() / ".env", verbose=False)

app = typer.Typer(
    name="ledger",
    help="Durable session ledger for AI coding assistants.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


def _setup(stream: bool = False) -> tuple[LedgerConfig, logging.Logger]:
    """Load configuration and configure logging for one command."""
    config = load_config()
    logger = configure_logging(
        config.logging.level,
        log_file=config.log_file,
        log_rotation=config.logging.rotation,
        stream=stream,
    )
    return config, logger


def _read_hook_input() -> dict[str, Any]:
    """Read the hook JSON object from stdin; anything unusable yields ``{}``."""
    if sys.stdin is None or sys.stdin.isatty():
        return {}
    try:
        raw = sys.stdin.read().strip()
        data = json.loads(raw) if raw else {}
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _session_id(data: dict[str, Any], logger: logging.Logger, hook: str) -> str | None:
    session_id = data.get("session_id") or data.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        logger.warning(f"{hook} hook input has no session_id, ignoring")
        return None
    return session_id


@app.command("session-start")
def session_start() -> None:
    """Record a new session and run maintenance sweeps (hook)."""
    config, logger = _setup()
    data = _read_hook_input()
    session_id = _session_id(data, logger, "SessionStart")
    if session_id is None:
        return
    project = data.get("project") or project_from_cwd(data.get("cwd"))
    handle_session_start(config, session_id, project, logger)


@app.command("prompt")
def prompt() -> None:
    """Record a submitted user prompt (hook)."""
    config, logger = _setup()
    data = _read_hook_input()
    session_id = _session_id(data, logger, "UserPromptSubmit")
    if session_id is None:
        return
    handle_user_prompt(config, session_id, _as_text(data.get("prompt")), logger)


@app.command("tool-use")
def tool_use() -> None:
    """Record a completed tool invocation (hook)."""
    config, logger = _setup()
    data = _read_hook_input()
    session_id = _session_id(data, logger, "PostToolUse")
    if session_id is None:
        return
    duration = data.get("duration_ms")
    handle_tool_use(
        config,
        session_id,
        _as_text(data.get("tool_name")) or "unknown",
        _as_text(data.get("tool_input")),
        _as_text(data.get("tool_response", data.get("tool_output"))),
        duration_ms=duration if isinstance(duration, int) else None,
        cwd=data.get("cwd"),
        logger=logger,
    )


@app.command("stop")
def stop() -> None:
    """Start background processing of a session (hook)."""
    config, logger = _setup()
    data = _read_hook_input()
    session_id = _session_id(data, logger, "Stop")
    if session_id is None:
        return
    handle_stop(config, session_id, logger)


@app.command("worker")
def worker(
    session_id: str = typer.Argument(..., help="Session to process"),
) -> None:
    """Process a stopped session (spawned by the stop hook)."""
    config, logger = _setup()
    result = run_worker(config, session_id, logger=logger)
    if not result.success:
        raise typer.Exit(code=1)


@app.command("sweep")
def sweep_command() -> None:
    """Clean up stale locks, claims and sessions, then apply retention.

    Safe to run from cron or launchd; session start runs the same sweep.
    """
    config, logger = _setup(stream=True)
    result = sweep(config, logger)
    if result is None:
        err_console.print("[red]Sweep failed, see the ledger log for details[/red]")
        raise typer.Exit(code=1)

    table = Table(title="Sweep")
    table.add_column("Cleanup", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Stale processing sessions", str(len(result.stale_processing)))
    table.add_row("Stale locks", str(len(result.stale_locks)))
    table.add_row("Released message claims", str(result.released_claims))
    table.add_row("Orphans marked failed", str(len(result.orphans_failed)))
    table.add_row("Sessions evicted", str(len(result.evicted_sessions)))
    console.print(table)


@app.command("inspect")
def inspect_command(
    session_id: str | None = typer.Argument(None, help="Show one session in detail"),
) -> None:
    """Show database contents, or one session's state."""
    config, logger = _setup(stream=True)
    try:
        store = open_store(config, logger)
    except StorageUnavailableError as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e

    with store:
        if session_id is None:
            info = store.inspect()
            table = Table(title=f"Ledger ({info['journal_mode']})")
            table.add_column("Table", style="cyan")
            table.add_column("Rows", justify="right", style="green")
            for name, count in info["tables"].items():
                table.add_row(name, str(count))
            console.print(table)
            console.print(f"[dim]{info['db_path']}[/dim]")
            console.print(f"Unclaimed messages: {info['pending_unclaimed']}")
            return

        session = store.get_session(session_id)
        if session is None:
            err_console.print(f"[red]Session {session_id} not found[/red]")
            raise typer.Exit(code=1)

        table = Table(title=f"Session {session_id}", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        for key, value in session.to_dict().items():
            table.add_row(key, "" if value is None else str(value))
        table.add_row("prompts", str(len(store.get_session_prompts(session_id))))
        table.add_row("tool_uses", str(len(store.get_session_tool_uses(session_id))))
        table.add_row("pending", str(store.get_pending_count(session_id)))
        marker = read_completion_marker(config.completed_dir, session_id)
        if marker is not None:
            table.add_row("marker", "success" if marker.success else "failed")
        console.print(table)


@app.command("version")
def version() -> None:
    """Show version information."""
    console.print(f"[bold cyan]session-ledger[/bold cyan] version [green]{__version__}[/green]")


def main() -> None:
    """Entry point for the ``ledger`` command."""
    try:
        app()
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Cancelled by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
