import threading
import time
from pathlib import Path

import pytest
from watchdog.events import DirModifiedEvent, FileDeletedEvent, FileModifiedEvent, FileMovedEvent

from mdkanban.config import AppConfig, BoardConfig
from mdkanban.notifier import Notifier
from mdkanban.sync import db as dbmod
from mdkanban.sync.models import ReconcileResult
from mdkanban.sync.watcher import (
    WatchController,
    _BoardFileHandler,
    _StabilityDebouncer,
    make_db_reconciler,
)

BOARD_FILE = "Tasks/Board.md"


class FakeObserver:
    def __init__(self):
        self.scheduled = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass


class RecordingReconciler:
    def __init__(self, error=None):
        self.calls = []
        self.error = error
        self.called = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, board, vault_root):
        with self._lock:
            self.calls.append((board.id, Path(vault_root)))
        self.called.set()
        if self.error is not None:
            raise self.error
        return ReconcileResult(board_id=board.id, updated=1)


@pytest.fixture
def reconciler():
    return RecordingReconciler()


@pytest.fixture
def events():
    return []


@pytest.fixture
def controller(reconciler, events, app_config, write_board):
    write_board(BOARD_FILE, "- [ ] A\n")
    notifier = Notifier()
    notifier.subscribe(events.append)
    ctl = WatchController(
        reconciler,
        notifier,
        debounce_seconds=0.05,
        replay_delay_seconds=0.05,
        observer_factory=FakeObserver,
    )
    ctl.start(app_config)
    yield ctl
    ctl.stop()


@pytest.fixture
def board_path(app_config, board):
    return app_config.board_path(board)


def test_change_reconciles_and_notifies(controller, reconciler, events, board_path, temp_vault):
    assert controller.on_file_change(board_path) is True

    assert reconciler.calls == [("b1", temp_vault)]
    assert len(events) == 1
    assert events[0].type == "board-updated"
    assert events[0].board_id == "b1"
    assert events[0].to_wire()["boardId"] == "b1"


def test_unmapped_path_is_ignored(controller, reconciler, temp_vault):
    assert controller.on_file_change(temp_vault / "other.md") is False
    assert reconciler.calls == []


def test_start_schedules_parent_directories(controller, board_path):
    observer = controller._observer
    assert observer.started
    assert [path for _, path, _ in observer.scheduled] == [str(board_path.parent)]
    assert controller.watched_paths == frozenset({str(board_path)})
    assert controller.is_running


def test_start_twice_raises(controller, app_config):
    with pytest.raises(RuntimeError):
        controller.start(app_config)


def test_suppressed_change_replays_exactly_once(controller, reconciler, events, board_path):
    controller.suppress()
    assert controller.on_file_change(board_path) is False
    assert controller.on_file_change(board_path) is False
    assert reconciler.calls == []
    assert controller.pending_paths == frozenset({str(board_path)})

    controller.unsuppress()
    assert controller.pending_paths == frozenset()
    assert reconciler.called.wait(2.0)
    time.sleep(0.2)

    assert len(reconciler.calls) == 1
    assert [e.board_id for e in events] == ["b1"]


def test_nested_suppression_waits_for_last_unsuppress(controller, reconciler, board_path):
    controller.suppress()
    controller.suppress()
    controller.on_file_change(board_path)

    controller.unsuppress()
    time.sleep(0.2)
    assert reconciler.calls == []
    assert controller.suppression_level == 1

    controller.unsuppress()
    assert reconciler.called.wait(2.0)
    time.sleep(0.1)
    assert len(reconciler.calls) == 1


def test_unsuppress_floors_at_zero(controller, reconciler, board_path):
    controller.unsuppress()
    controller.unsuppress()
    assert controller.suppression_level == 0

    assert controller.on_file_change(board_path) is True
    assert len(reconciler.calls) == 1


def test_resuppressed_before_replay_keeps_paths_pending(controller, reconciler, board_path):
    controller.replay_delay_seconds = 0.15
    controller.suppress()
    controller.on_file_change(board_path)
    controller.unsuppress()
    controller.suppress()

    time.sleep(0.4)
    assert reconciler.calls == []
    assert controller.pending_paths == frozenset({str(board_path)})

    controller.unsuppress()
    assert reconciler.called.wait(2.0)
    time.sleep(0.1)
    assert len(reconciler.calls) == 1


def test_reconcile_errors_are_logged_not_raised(app_config, events, board_path, write_board, caplog):
    write_board(BOARD_FILE, "- [ ] A\n")
    failing = RecordingReconciler(error=RuntimeError("db locked"))
    notifier = Notifier()
    notifier.subscribe(events.append)
    ctl = WatchController(failing, notifier, observer_factory=FakeObserver)
    ctl.start(app_config)
    try:
        assert ctl.on_file_change(board_path) is False
    finally:
        ctl.stop()

    assert len(failing.calls) == 1
    assert events == []
    assert "Error reconciling Test Board" in caplog.text


def test_rebind_drops_pending_replays(controller, reconciler, board_path, temp_vault, tmp_path):
    controller.suppress()
    controller.on_file_change(board_path)

    new_config = AppConfig(
        vault_root=temp_vault,
        boards=[BoardConfig(id="b2", name="Second", file="Second.md")],
        db_path=tmp_path / "other.sqlite",
    )
    controller.rebind(new_config)
    assert controller.pending_paths == frozenset()
    assert controller.watched_paths == frozenset({str((temp_vault / "Second.md").resolve())})

    controller.unsuppress()
    time.sleep(0.2)
    assert reconciler.calls == []


def test_stop_cancels_scheduled_replay(controller, reconciler, board_path):
    controller.replay_delay_seconds = 0.2
    controller.suppress()
    controller.on_file_change(board_path)
    controller.unsuppress()
    controller.stop()

    time.sleep(0.4)
    assert reconciler.calls == []
    assert not controller.is_running


def test_replay_uses_config_passed_to_unsuppress(controller, reconciler, board_path, temp_vault, tmp_path):
    moved_vault = tmp_path / "moved"
    replay_config = AppConfig(
        vault_root=moved_vault,
        boards=[BoardConfig(id="b9", name="Moved", file="x.md")],
        db_path=tmp_path / "k.sqlite",
    )
    moved_path = replay_config.board_path(replay_config.boards[0])

    with controller.suppressed(replay_config):
        controller.on_file_change(moved_path)

    assert reconciler.called.wait(2.0)
    time.sleep(0.1)
    assert reconciler.calls == [("b9", moved_vault)]


def test_suppressed_context_manager_restores_level(controller):
    with controller.suppressed():
        assert controller.suppression_level == 1
        with controller.suppressed():
            assert controller.suppression_level == 2
    assert controller.suppression_level == 0


def test_handler_routes_watched_file_events(tmp_path):
    watched = str((tmp_path / "board.md").resolve())
    seen = []
    handler = _BoardFileHandler(frozenset({watched}), seen.append)

    handler.dispatch(FileModifiedEvent(watched))
    handler.dispatch(FileMovedEvent(str(tmp_path / "board.md.tmp"), watched))
    handler.dispatch(FileModifiedEvent(str(tmp_path / "other.md")))
    handler.dispatch(DirModifiedEvent(str(tmp_path)))
    handler.dispatch(FileDeletedEvent(watched))

    assert seen == [watched, watched]


def test_debouncer_collapses_bursts(tmp_path):
    target = tmp_path / "board.md"
    target.write_text("v0", encoding="utf-8")
    emitted = []
    settled = threading.Event()

    def _emit(item):
        emitted.append(item)
        settled.set()

    debouncer = _StabilityDebouncer(0.1, _emit)
    try:
        for i in range(5):
            target.write_text(f"v{i + 1}", encoding="utf-8")
            debouncer.touch(str(target))
            time.sleep(0.02)

        assert settled.wait(2.0)
        time.sleep(0.3)
    finally:
        debouncer.close()

    assert len(emitted) == 1
    assert emitted[0][0] == str(target)


def test_debouncer_close_drops_pending(tmp_path):
    target = tmp_path / "board.md"
    target.write_text("x", encoding="utf-8")
    emitted = []
    debouncer = _StabilityDebouncer(0.1, emitted.append)
    debouncer.touch(str(target))
    debouncer.close()
    debouncer.touch(str(target))

    time.sleep(0.3)
    assert emitted == []


def test_real_observer_end_to_end(app_config, board, write_board):
    path = write_board(BOARD_FILE, "- [ ] A\n")
    received = threading.Event()
    notifier = Notifier()
    notifier.subscribe(lambda event: received.set())
    ctl = WatchController(
        make_db_reconciler(app_config.db_path),
        notifier,
        debounce_seconds=0.1,
        replay_delay_seconds=0.05,
    )
    ctl.start(app_config)
    try:
        time.sleep(0.2)
        path.write_text("- [ ] A\n- [ ] B\n", encoding="utf-8")
        assert received.wait(10.0)
    finally:
        ctl.stop()

    conn = dbmod.open_db(app_config.db_path)
    try:
        titles = [c.title for c in dbmod.list_board_cards(conn, board.id)]
    finally:
        conn.close()
    assert titles == ["A", "B"]


def test_sync_watched_announces_only_changed_boards(app_config, board, write_board, temp_vault):
    write_board(BOARD_FILE, "- [ ] A\n")
    write_board("Other.md", "- [ ] B\n")
    config = app_config.model_copy(
        update={"boards": [board, BoardConfig(id="b2", name="Other", file="Other.md")]}
    )
    make_db_reconciler(app_config.db_path)(board, temp_vault)

    events = []
    notifier = Notifier()
    notifier.subscribe(events.append)
    ctl = WatchController(make_db_reconciler(app_config.db_path), notifier, observer_factory=FakeObserver)
    ctl.start(config)
    try:
        results = ctl.sync_watched()
    finally:
        ctl.stop()

    assert sorted((r.board_id, r.added) for r in results) == [("b1", 0), ("b2", 1)]
    assert [e.board_id for e in events] == ["b2"]


def test_sync_watched_defers_while_suppressed(controller, reconciler, board_path):
    controller.suppress()
    assert controller.sync_watched() == []
    assert controller.pending_paths == frozenset({str(board_path)})
    assert reconciler.calls == []
