"""Markdown board to SQLite card synchronization."""

from .models import ReconcileResult, TaskRecord
from .reconciler import reconcile_all, reconcile_board
from .watcher import WatchController

__all__ = ["ReconcileResult", "TaskRecord", "WatchController", "reconcile_all", "reconcile_board"]
