"""Board file watching with debounced change events and write-back suppression.

Raw filesystem events from the watchdog observer pass through a stability
debouncer and land on a queue that one processing thread drains. Code that
rewrites a board file itself brackets the write with ``suppress()`` /
``unsuppress()`` (or ``suppressed()``); changes seen meanwhile are parked in
a pending set and replayed once, after a short delay, when suppression
fully lifts.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from mdkanban.config import AppConfig, BoardConfig
from mdkanban.notifier import Notifier

from .models import ReconcileResult
from .reconciler import reconcile_board

logger = logging.getLogger(__name__)

ReconcileFn = Callable[[BoardConfig, Path], ReconcileResult]
PathLike = Union[str, bytes, os.PathLike]

_STOP = object()
_RAW_EVENT_TYPES = {"modified", "created", "moved", "closed"}


def _path_key(path: PathLike) -> str:
    return str(Path(os.fsdecode(path)).resolve())


def _stat_signature(path: str) -> Optional[tuple[int, int]]:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return (int(st.st_size), int(st.st_mtime_ns))


def _board_map(config: AppConfig) -> dict[str, BoardConfig]:
    return {str(config.board_path(board)): board for board in config.boards}


def make_db_reconciler(db_path: Path) -> ReconcileFn:
    def _reconcile(board: BoardConfig, vault_root: Path) -> ReconcileResult:
        return reconcile_board(board, vault_root, db_path=db_path)

    return _reconcile


class _StabilityDebouncer:
    """Collapse bursts of raw events per path into one settled change.

    A path settles once its size and mtime stay the same for a whole window;
    every raw event restarts the window.
    """

    def __init__(self, window: float, emit: Callable[[tuple[str, float]], None]):
        self.window = window
        self._emit = emit
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._tokens: dict[str, int] = {}
        self._signatures: dict[str, Optional[tuple[int, int]]] = {}
        self._closed = False

    def touch(self, path: str) -> None:
        with self._lock:
            if self._closed:
                return
            self._signatures[path] = _stat_signature(path)
            self._arm(path)

    def _arm(self, path: str) -> None:
        previous = self._timers.pop(path, None)
        if previous is not None:
            previous.cancel()
        token = self._tokens.get(path, 0) + 1
        self._tokens[path] = token
        timer = threading.Timer(self.window, self._settle, args=(path, token))
        timer.daemon = True
        self._timers[path] = timer
        timer.start()

    def _settle(self, path: str, token: int) -> None:
        signature = _stat_signature(path)
        with self._lock:
            if self._closed or self._tokens.get(path) != token:
                return
            if signature != self._signatures.get(path):
                self._signatures[path] = signature
                self._arm(path)
                return
            self._timers.pop(path, None)
            self._signatures.pop(path, None)
        self._emit((path, time.time()))

    def close(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class _BoardFileHandler(FileSystemEventHandler):
    def __init__(self, watched: frozenset[str], on_raw_change: Callable[[str], None]):
        super().__init__()
        self._watched = watched
        self._on_raw_change = on_raw_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RAW_EVENT_TYPES:
            return
        candidates = [event.src_path]
        dest_path = getattr(event, "dest_path", None)
        if dest_path:
            candidates.append(dest_path)
        for candidate in candidates:
            key = _path_key(candidate)
            if key in self._watched:
                self._on_raw_change(key)


class WatchController:
    """Drive reconciliation from board file changes.

    Owns the suppression level, the pending replay set and the active
    path-to-board mapping. Safe to call from multiple threads.
    """

    def __init__(
        self,
        reconcile: ReconcileFn,
        notifier: Optional[Notifier] = None,
        *,
        debounce_seconds: float = 0.3,
        replay_delay_seconds: float = 0.5,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self._reconcile = reconcile
        self.notifier = notifier or Notifier()
        self.debounce_seconds = debounce_seconds
        self.replay_delay_seconds = replay_delay_seconds
        self._observer_factory = observer_factory

        self._lock = threading.Lock()
        self._suppress_level = 0
        self._pending: set[str] = set()
        self._boards: dict[str, BoardConfig] = {}
        self._config: Optional[AppConfig] = None
        self._replay_config: Optional[AppConfig] = None
        self._replay_timers: set[threading.Timer] = set()
        self._path_locks: dict[str, threading.Lock] = {}
        self._generation = 0

        self._observer: Optional[Observer] = None
        self._debouncer: Optional[_StabilityDebouncer] = None
        self._queue: Optional[queue.Queue] = None
        self._worker: Optional[threading.Thread] = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        notifier: Optional[Notifier] = None,
        *,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> "WatchController":
        return cls(
            make_db_reconciler(config.db_path),
            notifier,
            debounce_seconds=config.debounce_seconds,
            replay_delay_seconds=config.replay_delay_seconds,
            observer_factory=observer_factory,
        )

    @property
    def suppression_level(self) -> int:
        with self._lock:
            return self._suppress_level

    @property
    def pending_paths(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._pending)

    @property
    def watched_paths(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._boards)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._observer is not None

    # Suppression

    def suppress(self) -> None:
        with self._lock:
            self._suppress_level += 1
            level = self._suppress_level
        logger.debug(f"Watcher suppressed (level {level})")

    def unsuppress(self, config: Optional[AppConfig] = None) -> None:
        with self._lock:
            self._suppress_level = max(0, self._suppress_level - 1)
            if config is not None:
                self._replay_config = config
            if self._suppress_level > 0 or not self._pending:
                return
            paths = sorted(self._pending)
            self._pending.clear()
            generation = self._generation
            timer = threading.Timer(self.replay_delay_seconds, self._replay, args=(paths, generation))
            timer.daemon = True
            self._replay_timers.add(timer)
            # Started under the lock: stop() always finds it in _replay_timers.
            timer.start()
        logger.debug(f"Scheduled replay of {len(paths)} pending file(s)")

    @contextmanager
    def suppressed(self, config: Optional[AppConfig] = None) -> Iterator["WatchController"]:
        self.suppress()
        try:
            yield self
        finally:
            self.unsuppress(config)

    def _replay(self, paths: list[str], generation: int) -> None:
        with self._lock:
            self._replay_timers = {t for t in self._replay_timers if t is not threading.current_thread()}
            if generation != self._generation:
                return
            if self._suppress_level > 0:
                self._pending.update(paths)
                return
            config = self._replay_config or self._config
            boards = _board_map(config) if config is not None else {}

        for path in paths:
            board = boards.get(path)
            if board is None or config is None:
                logger.warning(f"Dropping replay for unmapped file {path}")
                continue
            self._reconcile_and_notify(path, board, config.vault_root, generation)

    # Change handling

    def on_file_change(self, path: PathLike) -> bool:
        """Reconcile the board behind ``path`` unless suppressed.

        Returns True when a reconciliation ran and succeeded.
        """
        key = _path_key(path)
        with self._lock:
            if self._suppress_level > 0:
                self._pending.add(key)
                logger.debug(f"Deferred change while suppressed: {key}")
                return False
            board = self._boards.get(key)
            config = self._config
            generation = self._generation
        if board is None or config is None:
            return False
        return self._reconcile_and_notify(key, board, config.vault_root, generation)

    def sync_watched(self) -> list[ReconcileResult]:
        """Reconcile every watched board now, one path lock at a time.

        Publishes ``board-updated`` only for boards whose cards changed.
        While suppressed the paths join the pending set instead.
        """
        with self._lock:
            boards = dict(self._boards)
            config = self._config
            generation = self._generation
            if self._suppress_level > 0:
                self._pending.update(boards)
                return []
        if config is None:
            return []

        results: list[ReconcileResult] = []
        for key in sorted(boards):
            board = boards[key]
            result = self._reconcile_locked(key, board, config.vault_root)
            if result is None:
                continue
            results.append(result)
            if result.changed:
                self._publish_if_current(board.id, generation)
        return results

    def _path_lock(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._path_locks.get(key)
            if lock is None:
                lock = self._path_locks[key] = threading.Lock()
            return lock

    def _reconcile_locked(self, key: str, board: BoardConfig, vault_root: Path) -> Optional[ReconcileResult]:
        with self._path_lock(key):
            try:
                result = self._reconcile(board, vault_root)
            except Exception:
                logger.exception(f"Error reconciling {board.name}")
                return None
        logger.info(f"Reconciled {board.name}: +{result.added} ~{result.updated} -{result.removed}")
        return result

    def _publish_if_current(self, board_id: str, generation: int) -> None:
        with self._lock:
            current = generation == self._generation
        if not current:
            logger.debug(f"Discarding result for {board_id}; watcher was rebound")
            return
        self.notifier.board_updated(board_id)

    def _reconcile_and_notify(self, key: str, board: BoardConfig, vault_root: Path, generation: int) -> bool:
        if self._reconcile_locked(key, board, vault_root) is None:
            return False
        self._publish_if_current(board.id, generation)
        return True

    # Lifecycle

    def start(self, config: AppConfig) -> None:
        with self._lock:
            if self._observer is not None:
                raise RuntimeError("WatchController is already running")
            self._generation += 1
            generation = self._generation
            self._config = config
            self._replay_config = None
            self._boards = _board_map(config)
            watched = frozenset(self._boards)

            events: queue.Queue = queue.Queue()
            debouncer = _StabilityDebouncer(self.debounce_seconds, events.put)
            observer = self._observer_factory()
            handler = _BoardFileHandler(watched, debouncer.touch)
            for directory in sorted({str(Path(p).parent) for p in watched}):
                if os.path.isdir(directory):
                    observer.schedule(handler, directory, recursive=False)
                else:
                    logger.warning(f"Board directory does not exist, not watching: {directory}")

            worker = threading.Thread(
                target=self._run_loop,
                args=(events, generation),
                name="mdkanban-watch",
                daemon=True,
            )
            self._observer = observer
            self._debouncer = debouncer
            self._queue = events
            self._worker = worker

        observer.start()
        worker.start()
        logger.info(f"Watching {len(watched)} files")

    def _run_loop(self, events: queue.Queue, generation: int) -> None:
        while True:
            item = events.get()
            if item is _STOP:
                break
            path, _ts = item
            with self._lock:
                if generation != self._generation:
                    break
            self.on_file_change(path)

    def stop(self) -> None:
        with self._lock:
            observer, self._observer = self._observer, None
            debouncer, self._debouncer = self._debouncer, None
            events, self._queue = self._queue, None
            worker, self._worker = self._worker, None
            timers = list(self._replay_timers)
            self._replay_timers.clear()
            self._generation += 1

        for timer in timers:
            timer.cancel()
        if observer is not None:
            observer.stop()
            observer.join()
        if debouncer is not None:
            debouncer.close()
        if events is not None:
            events.put(_STOP)
        if worker is not None and worker is not threading.current_thread():
            worker.join()
        if observer is not None:
            logger.info("Watcher stopped")

    def rebind(self, config: AppConfig) -> None:
        """Restart watching for a new board set; pending replays are dropped."""
        self.stop()
        with self._lock:
            self._boards = {}
            self._pending.clear()
        self.start(config)
