"""Board update fan-out and the append-only event log."""

import json
import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from .models.events import BoardEvent

logger = logging.getLogger(__name__)
console = Console(stderr=True)

Listener = Callable[[BoardEvent], None]


class Notifier:
    """Deliver board events to every subscribed listener.

    A failing listener is logged and skipped; the others still receive the
    event.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: BoardEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener {listener!r} failed for {event.type} event")

    def board_updated(self, board_id: str) -> BoardEvent:
        event = BoardEvent(type="board-updated", board_id=board_id)
        self.publish(event)
        return event

    def sync_complete(self) -> BoardEvent:
        event = BoardEvent(type="sync-complete")
        self.publish(event)
        return event


class EventLogWriter:
    """Append-only JSONL log of board events.

    Never truncates or rewrites; only appends. Usable directly as a
    Notifier listener.
    """

    def __init__(self, log_path: Path):
        self.log_path = log_path
        self._lock = threading.Lock()

    def append(self, event: BoardEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(event.to_wire(), ensure_ascii=False)
        with self._lock:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    __call__ = append


def read_event_log_tail(log_path: Path, n: int = 20) -> list[BoardEvent]:
    """Read the last N events from the event log.

    Malformed lines are skipped with a warning.

    Args:
        log_path: Path to the events.jsonl file
        n: Number of lines to read from the end

    Returns:
        List of BoardEvent objects, oldest first
    """
    if not log_path.exists():
        return []

    with open(log_path, "r", encoding="utf-8") as f:
        lines = f.readlines()

    events: list[BoardEvent] = []
    malformed_count = 0
    for line in lines[-n:]:
        line = line.strip()
        if not line:
            continue
        try:
            events.append(BoardEvent.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValueError) as e:
            malformed_count += 1
            console.print(f"[yellow]Warning: Skipping malformed line: {e}[/yellow]")

    if malformed_count > 0:
        console.print(f"[yellow]Skipped {malformed_count} malformed line(s)[/yellow]")

    return events


def make_notifier(event_log_path: Optional[Path] = None) -> Notifier:
    """Build a Notifier, optionally persisting every event.

    Args:
        event_log_path: JSONL file to append events to, or None for no log

    Returns:
        Notifier with an EventLogWriter subscribed when a path was given
    """
    notifier = Notifier()
    if event_log_path is not None:
        notifier.subscribe(EventLogWriter(event_log_path))
    return notifier
