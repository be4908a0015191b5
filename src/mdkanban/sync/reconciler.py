from __future__ import annotations

import hashlib
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from mdkanban.config import AppConfig, BoardConfig

from . import db as dbmod
from .identity import CollisionCounter
from .models import ReconcileResult, TaskRecord
from .parser import parse_markdown_tasks

logger = logging.getLogger(__name__)

DONE_COLUMN = "Done"
BACKLOG_COLUMN = "Backlog"

Parser = Callable[[str], list[TaskRecord]]


def _iso_utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _sha256_hex(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def source_fingerprint(raw_line: str) -> str:
    return _sha256_hex(raw_line.encode("utf-8"))[:16]


def next_column(current_column: str, was_done: bool, is_done: bool) -> str:
    """Column for an existing card after its done state is re-read.

    Only the two done-state edges move a card; anything filed by hand into
    another column stays there.
    """
    if is_done and not was_done:
        return DONE_COLUMN
    if not is_done and was_done and current_column == DONE_COLUMN:
        return BACKLOG_COLUMN
    return current_column


def initial_column(task: TaskRecord) -> str:
    return DONE_COLUMN if task.is_done else BACKLOG_COLUMN


def reconcile_board(
    board: BoardConfig,
    vault_root: Path,
    *,
    conn: Optional[sqlite3.Connection] = None,
    db_path: Optional[Path] = None,
    parser: Parser = parse_markdown_tasks,
) -> ReconcileResult:
    """Sync one board's cards with the current contents of its file.

    Unreadable files give an empty result. Storage and parser errors
    propagate after the transaction has rolled back.
    """
    if conn is None:
        if db_path is None:
            raise ValueError("reconcile_board needs either conn or db_path")
        owned = dbmod.open_db(db_path)
        try:
            return _reconcile(board, vault_root, owned, parser)
        finally:
            owned.close()
    return _reconcile(board, vault_root, conn, parser)


def _reconcile(
    board: BoardConfig,
    vault_root: Path,
    conn: sqlite3.Connection,
    parser: Parser,
) -> ReconcileResult:
    file_path = (Path(vault_root) / board.file).resolve()
    try:
        data = file_path.read_bytes()
        content = data.decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Cannot read file for board {board.id}: {file_path} ({e})")
        return ReconcileResult(board_id=board.id)

    path_key = str(file_path)
    file_hash = _sha256_hex(data)
    counter = CollisionCounter(board.id)
    seen: set[str] = set()
    added = 0
    updated = 0
    now = _iso_utc_now()

    with dbmod.immediate_transaction(conn):
        if dbmod.get_sync_hash(conn, path_key) == file_hash:
            return ReconcileResult(board_id=board.id)

        tasks = parser(content)
        existing = {c.id: c for c in dbmod.list_board_cards(conn, board.id)}

        for position, task in enumerate(tasks):
            card_id = counter.card_id(task.title)
            seen.add(card_id)
            fingerprint = source_fingerprint(task.raw_line)

            card = existing.get(card_id)
            if card is not None:
                column = next_column(card.column_name, card.is_done, task.is_done)
                dbmod.update_card_from_task(conn, card_id, column, task, fingerprint, now)
                updated += 1
            else:
                dbmod.insert_card(
                    conn, card_id, board.id, initial_column(task), position, task, fingerprint, now
                )
                added += 1

        missing = sorted(set(existing) - seen)
        removed = dbmod.delete_cards(conn, missing)
        dbmod.replace_sync_state(conn, path_key, file_hash, now)

    logger.info(f"Reconciled {board.id}: +{added} ~{updated} -{removed}")
    return ReconcileResult(board_id=board.id, added=added, removed=removed, updated=updated)


def reconcile_all(config: AppConfig, *, db_path: Optional[Path] = None) -> list[ReconcileResult]:
    """Reconcile every configured board; one board's failure does not stop the rest."""
    conn = dbmod.open_db(db_path or config.db_path)
    results: list[ReconcileResult] = []
    try:
        for board in config.boards:
            try:
                results.append(reconcile_board(board, config.vault_root, conn=conn))
            except Exception:
                logger.exception(f"Failed to reconcile board {board.id}")
        return results
    finally:
        conn.close()
