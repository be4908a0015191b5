"""Typer-based CLI for mdkanban."""

import logging
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import AppConfig, load_app_config, resolve_config_path
from .models.events import BoardEvent
from .notifier import Notifier, make_notifier, read_event_log_tail
from .sync import db as dbmod
from .sync.reconciler import reconcile_all
from .sync.watcher import WatchController

app = typer.Typer(
    name="mdkanban",
    help="mdkanban - keep a kanban card database in sync with markdown task files",
    add_completion=False,
)

console = Console()

_CONFIG_OPTION_HELP = "Path to board config (default: MDKANBAN_CONFIG env or ./config.boards.json)"


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _load_config(config_path: Optional[str], db_path: Optional[str]) -> AppConfig:
    try:
        config = load_app_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    if db_path:
        config = config.model_copy(update={"db_path": Path(db_path).expanduser().resolve()})
    return config


@app.command()
def sync(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
    db_path: Optional[str] = typer.Option(None, "--db", help="Override the card database path"),
    full: bool = typer.Option(False, "--full", help="Ignore stored file hashes and re-parse every board"),
):
    """Reconcile every configured board once and report what changed."""
    config = _load_config(config_path, db_path)

    if full:
        conn = dbmod.open_db(config.db_path)
        try:
            dbmod.clear_sync_state(conn)
        finally:
            conn.close()

    results = reconcile_all(config)

    table = Table(title=f"Synced {len(results)}/{len(config.boards)} board(s)")
    table.add_column("Board", style="cyan")
    table.add_column("Added", style="green", justify="right")
    table.add_column("Updated", style="yellow", justify="right")
    table.add_column("Removed", style="red", justify="right")
    for r in results:
        table.add_row(r.board_id, str(r.added), str(r.updated), str(r.removed))
    console.print(table)

    if len(results) < len(config.boards):
        console.print("[red]Some boards failed to sync; see log output above[/red]")
        raise typer.Exit(code=1)


@app.command()
def watch(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
    db_path: Optional[str] = typer.Option(None, "--db", help="Override the card database path"),
    poll_seconds: float = typer.Option(
        1.0, "--poll", help="How often to check the board config file for changes"
    ),
):
    """Sync all boards, then keep them in sync as their files change.

    Editing the board config file rebinds the watcher to the new board set.
    """
    config = _load_config(config_path, db_path)
    source = resolve_config_path(config_path)

    notifier = make_notifier(config.event_log_path)

    def _print_event(event: BoardEvent) -> None:
        console.print(f"[dim]{event.timestamp:%H:%M:%S}[/dim] [magenta]{event.type}[/magenta] {event.board_id}")

    notifier.subscribe(_print_event)

    _boot_sync(config, notifier)

    controller = _make_controller(config, notifier)
    controller.start(config)
    console.print(f"[green]Watching {len(controller.watched_paths)} board file(s). Ctrl-C to stop.[/green]")

    db_override = config.db_path if db_path else None
    last_mtime = source.stat().st_mtime_ns
    try:
        while True:
            time.sleep(poll_seconds)
            last_mtime = _reload_if_changed(source, last_mtime, controller, db_override)
    except KeyboardInterrupt:
        console.print("[yellow]Stopping watcher...[/yellow]")
    finally:
        controller.stop()


def _make_controller(config: AppConfig, notifier: Notifier) -> WatchController:
    return WatchController.from_config(config, notifier)


def _boot_sync(config: AppConfig, notifier: Notifier) -> None:
    for r in reconcile_all(config):
        console.print(f"[green]{r.board_id}[/green]: +{r.added} ~{r.updated} -{r.removed}")
    notifier.sync_complete()


def _reload_if_changed(
    source: Path,
    last_mtime: int,
    controller: WatchController,
    db_override: Optional[Path] = None,
) -> int:
    """Rebind the controller when the board config file has been modified.

    Boards are re-synced through the controller so each pass holds that
    board's path lock; only boards whose cards changed are announced.

    Args:
        source: Path of the board config file being polled
        last_mtime: mtime_ns seen on the previous poll
        controller: Running WatchController to rebind
        db_override: Database path given on the command line, kept across reloads

    Returns:
        The mtime_ns to compare against on the next poll
    """
    try:
        mtime = source.stat().st_mtime_ns
    except OSError:
        return last_mtime
    if mtime == last_mtime:
        return last_mtime

    try:
        new_config = load_app_config(str(source))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[yellow]Ignoring invalid config change: {e}[/yellow]")
        return mtime
    if db_override is not None:
        new_config = new_config.model_copy(update={"db_path": db_override})

    controller.rebind(new_config)
    controller.sync_watched()
    console.print(f"[cyan]Config changed; now watching {len(new_config.boards)} board(s)[/cyan]")
    return mtime


@app.command()
def cards(
    board_id: str = typer.Argument(..., help="Board id to list"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
    db_path: Optional[str] = typer.Option(None, "--db", help="Override the card database path"),
):
    """Show the persisted cards of one board, in position order."""
    config = _load_config(config_path, db_path)
    if config.get_board(board_id) is None:
        console.print(f"[red]Error: Unknown board: {board_id}[/red]")
        raise typer.Exit(code=1)

    conn = dbmod.open_db(config.db_path)
    try:
        rows = dbmod.list_board_cards(conn, board_id)
    finally:
        conn.close()

    if not rows:
        console.print("[dim]No cards (run 'mdkanban sync' first?)[/dim]")
        return

    table = Table(title=f"{board_id}: {len(rows)} card(s)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Column", style="magenta")
    table.add_column("Pos", justify="right")
    table.add_column("Line", justify="right", style="dim")
    table.add_column("Title")
    for card in rows:
        title = card.title if len(card.title) <= 60 else card.title[:57] + "..."
        if card.is_done:
            title = f"[strike]{title}[/strike]"
        table.add_row(card.id, card.column_name, str(card.position), str(card.line_number), title)
    console.print(table)


events_app = typer.Typer(help="Event log commands")
app.add_typer(events_app, name="events")


@events_app.command("tail")
def events_tail(
    n: int = typer.Option(20, "--n", help="Number of recent events to display"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=_CONFIG_OPTION_HELP),
):
    """Display the last N board events from the event log."""
    config = _load_config(config_path, None)
    if config.event_log_path is None:
        console.print("[red]Error: event_log_path is not set in the board config[/red]")
        raise typer.Exit(code=1)

    events = read_event_log_tail(config.event_log_path, n=n)
    if not events:
        console.print("[dim]No events in log[/dim]")
        return

    table = Table(title=f"Last {len(events)} Event(s)")
    table.add_column("Timestamp (UTC)", style="cyan", no_wrap=True)
    table.add_column("Type", style="magenta")
    table.add_column("Board", style="yellow")
    for event in events:
        table.add_row(event.timestamp.strftime("%Y-%m-%d %H:%M:%S"), event.type, event.board_id or "-")
    console.print(table)


@app.command()
def version():
    """Show mdkanban version."""
    from . import __version__
    console.print(f"mdkanban v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
