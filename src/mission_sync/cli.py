"""
Command line interface for Mission Sync.

Commands:
- watch: live kanban view of a workspace
- move: optimistic task move, rolled back if the server refuses it
- probe: single gateway liveness check
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .board import COLUMNS, BoardView, FeedFilter, parse_project_tag
from .client import SyncClient
from .models.entities import EntityKind, TaskStatus
from .transport.http import BoardApiClient
from .utils.config import ConfigLoader, SyncConfig, load_config
from .utils.errors import SyncError
from .utils.logging import get_debug_entries, get_logger, setup_logging

logger = get_logger("mission-sync.cli")

stdout = Console()

PRIORITY_STYLES = {
    "low": "dim",
    "normal": "white",
    "high": "yellow",
    "urgent": "bold red",
}


def render_board(board: BoardView, feed: str = "all", feed_size: int = 10) -> Group:
    """Rich renderable for the current store snapshot."""
    stats = board.stats()
    status = Text("ONLINE", style="bold green") if stats.online else Text("OFFLINE", style="bold red")
    header = Text.assemble(
        status,
        f"  agents working: {stats.working_agents}",
        f"  in queue: {stats.queued}",
        f"  total: {stats.total}  in progress: {stats.in_progress}",
        f"  done: {stats.done}  blocked: {stats.blocked}",
    )

    columns = board.columns()
    kanban = Table(expand=True, show_lines=False)
    for column in COLUMNS:
        kanban.add_column(f"{column.label} ({len(columns[column.status])})", ratio=1)

    depth = max((len(tasks) for tasks in columns.values()), default=0)
    for row in range(depth):
        cells = []
        for column in COLUMNS:
            tasks = columns[column.status]
            if row >= len(tasks):
                cells.append("")
                continue
            task = tasks[row]
            tag, _ = parse_project_tag(task.project_tag)
            cell = Text(task.title or task.id, style=PRIORITY_STYLES.get(task.priority.value, ""))
            cell.append(f"\n[{tag}]", style="cyan")
            if task.is_blocked:
                cell.append(" blocked", style="red")
            cells.append(cell)
        kanban.add_row(*cells)

    events = Table(show_header=False, expand=True, box=None)
    for event in board.feed(feed)[:feed_size]:
        events.add_row(event.created_at.strftime("%H:%M:%S"), event.type, event.message)

    parts = [header, kanban, Panel(events, title=f"Live feed ({feed})")]

    debug = get_debug_entries()
    if debug:
        entries = Table(show_header=False, expand=True, box=None)
        for entry in debug[:10]:
            entries.add_row(entry["timestamp"].strftime("%H:%M:%S"), entry["type"])
        parts.append(Panel(entries, title=f"Debug ({len(debug)})", border_style="magenta"))

    return Group(*parts)


def _overrides(base_url: Optional[str], workspace: Optional[str], log_level: Optional[str],
               debug: bool) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    server: Dict[str, Any] = {}
    if base_url:
        server["base_url"] = base_url
    if workspace:
        server["workspace_id"] = workspace
    if server:
        overrides["server"] = server

    logging_section: Dict[str, Any] = {}
    if log_level:
        logging_section["level"] = log_level
    if debug:
        logging_section["debug_panel"] = True
    if logging_section:
        overrides["logging"] = logging_section
    return overrides


@click.group()
@click.option("--config", "config_paths", multiple=True,
              type=click.Path(dir_okay=False, path_type=Path),
              help="Configuration file (json, yaml or toml); may be repeated")
@click.option("--base-url", help="Board server base URL")
@click.option("--workspace", help="Workspace id")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.option("--debug", is_flag=True, help="Capture stream/store/api events in the debug panel")
@click.version_option(__version__, prog_name="mission-sync")
@click.pass_context
def cli(ctx: click.Context, config_paths: Tuple[Path, ...], base_url: Optional[str],
        workspace: Optional[str], log_level: Optional[str], debug: bool) -> None:
    """Mission Sync - real-time coordination board client."""
    try:
        loader = load_config(list(config_paths), _overrides(base_url, workspace, log_level, debug))
    except SyncError as e:
        raise click.ClickException(e.message)

    config = loader.get_config()
    setup_logging(
        app_name=config.app_name,
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
        debug_panel=config.logging.debug_panel,
        debug_capacity=config.logging.debug_capacity,
    )
    ctx.obj = loader


@cli.command()
@click.option("--duration", type=float, default=None, help="Stop after this many seconds")
@click.option("--feed", type=click.Choice([f.value for f in FeedFilter]), default="all",
              help="Live feed filter")
@click.pass_obj
def watch(loader: ConfigLoader, duration: Optional[float], feed: str) -> None:
    """Show a live kanban view of the workspace."""
    try:
        asyncio.run(_watch(loader, duration, feed))
    except KeyboardInterrupt:
        logger.info("watch_interrupted")


async def _watch(loader: ConfigLoader, duration: Optional[float], feed: str) -> None:
    config = loader.get_config()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration if duration else None

    async with SyncClient(config) as client:
        if config.enable_hot_reload:
            client.watch_config(loader)

        changed = asyncio.Event()
        unsubscribe = client.store.subscribe(lambda change: changed.set())
        try:
            with Live(render_board(client.board, feed), console=stdout, refresh_per_second=4) as live:
                while deadline is None or loop.time() < deadline:
                    try:
                        await asyncio.wait_for(changed.wait(), timeout=1.0)
                    except asyncio.TimeoutError:
                        pass
                    changed.clear()
                    live.update(render_board(client.board, feed))
        finally:
            unsubscribe()


@cli.command()
@click.argument("task_id")
@click.argument("status", type=click.Choice([s.value for s in TaskStatus]))
@click.pass_obj
def move(loader: ConfigLoader, task_id: str, status: str) -> None:
    """Move TASK_ID to the STATUS column."""
    try:
        result = asyncio.run(_move(loader.get_config(), task_id, status))
    except SyncError as e:
        for suggestion in e.get_suggestions():
            stdout.print(f"[dim]{suggestion}[/dim]")
        raise click.ClickException(e.message)

    if result is None:
        stdout.print(f"Task {task_id} is already in {status}")
    else:
        stdout.print(f"[green]Moved[/green] task {task_id} to {status}")


async def _move(config: SyncConfig, task_id: str, status: str):
    client = SyncClient(config)
    try:
        await client.poller.poll_once(EntityKind.TASKS)
        return await client.move_task(task_id, status)
    finally:
        await client.stop()


@cli.command()
@click.pass_obj
def probe(loader: ConfigLoader) -> None:
    """Check whether the gateway reports itself connected."""
    config = loader.get_config()
    try:
        online = asyncio.run(_probe(config))
    except (SyncError, asyncio.TimeoutError) as e:
        stdout.print(f"[red]offline[/red] ({e})")
        sys.exit(1)

    if online:
        stdout.print("[green]online[/green]")
    else:
        stdout.print("[red]offline[/red]")
        sys.exit(1)


async def _probe(config: SyncConfig) -> bool:
    async with BoardApiClient(config.server) as api:
        return await asyncio.wait_for(api.probe(), timeout=config.connectivity.probe_timeout)


def main() -> None:
    """Console script entry point."""
    cli(prog_name="mission-sync")


__all__ = ['cli', 'main', 'render_board']
