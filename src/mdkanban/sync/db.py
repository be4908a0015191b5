from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .models import CardRow, TaskRecord


def connect(db_path: Path, *, timeout: float = 10.0) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS cards(
          id TEXT PRIMARY KEY,
          board_id TEXT NOT NULL,
          column_name TEXT NOT NULL DEFAULT 'Backlog',
          position INTEGER NOT NULL DEFAULT 0,
          title TEXT NOT NULL,
          raw_line TEXT NOT NULL,
          line_number INTEGER NOT NULL,
          is_done INTEGER NOT NULL DEFAULT 0,
          priority TEXT,
          sub_items TEXT NOT NULL DEFAULT '[]',
          source_fingerprint TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_state(
          file_path TEXT PRIMARY KEY,
          file_hash TEXT NOT NULL,
          last_synced TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_cards_board_position ON cards(board_id, position);
        CREATE INDEX IF NOT EXISTS idx_cards_board_column ON cards(board_id, column_name);
        """
    )


def open_db(db_path: Path) -> sqlite3.Connection:
    conn = connect(db_path)
    create_schema(conn)
    return conn


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Hold the database write lock from the first read to commit.

    Reads made inside the block see the same state the writes apply to.
    A concurrent pass on another connection waits (up to the connect
    timeout) instead of interleaving.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def _row_to_card(row: sqlite3.Row) -> CardRow:
    return CardRow(
        id=row["id"],
        board_id=row["board_id"],
        column_name=row["column_name"],
        position=int(row["position"]),
        title=row["title"],
        raw_line=row["raw_line"],
        line_number=int(row["line_number"]),
        is_done=bool(row["is_done"]),
        priority=row["priority"],
        sub_items=json.loads(row["sub_items"]) if row["sub_items"] else [],
        source_fingerprint=row["source_fingerprint"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def list_board_cards(conn: sqlite3.Connection, board_id: str) -> list[CardRow]:
    rows = conn.execute(
        "SELECT * FROM cards WHERE board_id = ? ORDER BY position, line_number",
        (board_id,),
    ).fetchall()
    return [_row_to_card(r) for r in rows]


def get_card(conn: sqlite3.Connection, card_id: str) -> Optional[CardRow]:
    row = conn.execute("SELECT * FROM cards WHERE id = ?", (card_id,)).fetchone()
    return _row_to_card(row) if row is not None else None


def insert_card(
    conn: sqlite3.Connection,
    card_id: str,
    board_id: str,
    column_name: str,
    position: int,
    task: TaskRecord,
    fingerprint: str,
    now: str,
) -> None:
    conn.execute(
        """
        INSERT INTO cards(id, board_id, column_name, position, title, raw_line, line_number,
                          is_done, priority, sub_items, source_fingerprint, created_at, updated_at)
        VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            card_id,
            board_id,
            column_name,
            position,
            task.title,
            task.raw_line,
            task.line_number,
            1 if task.is_done else 0,
            task.priority,
            json.dumps(task.sub_items, ensure_ascii=False),
            fingerprint,
            now,
            now,
        ),
    )


def update_card_from_task(
    conn: sqlite3.Connection,
    card_id: str,
    column_name: str,
    task: TaskRecord,
    fingerprint: str,
    now: str,
) -> None:
    conn.execute(
        """
        UPDATE cards SET
          title = ?, raw_line = ?, line_number = ?, is_done = ?,
          priority = ?, sub_items = ?, source_fingerprint = ?,
          column_name = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            task.title,
            task.raw_line,
            task.line_number,
            1 if task.is_done else 0,
            task.priority,
            json.dumps(task.sub_items, ensure_ascii=False),
            fingerprint,
            column_name,
            now,
            card_id,
        ),
    )


def delete_cards(conn: sqlite3.Connection, card_ids: Iterable[str]) -> int:
    card_ids = list(card_ids)
    if not card_ids:
        return 0
    conn.executemany("DELETE FROM cards WHERE id = ?", [(c,) for c in card_ids])
    return len(card_ids)


def get_sync_hash(conn: sqlite3.Connection, file_path: str) -> Optional[str]:
    row = conn.execute("SELECT file_hash FROM sync_state WHERE file_path = ?", (file_path,)).fetchone()
    return row["file_hash"] if row is not None else None


def replace_sync_state(conn: sqlite3.Connection, file_path: str, file_hash: str, now: str) -> None:
    conn.execute(
        """
        INSERT INTO sync_state(file_path, file_hash, last_synced) VALUES(?, ?, ?)
        ON CONFLICT(file_path) DO UPDATE SET
          file_hash=excluded.file_hash,
          last_synced=excluded.last_synced
        """,
        (file_path, file_hash, now),
    )


def clear_sync_state(conn: sqlite3.Connection, file_path: Optional[str] = None) -> None:
    with conn:
        if file_path is None:
            conn.execute("DELETE FROM sync_state")
        else:
            conn.execute("DELETE FROM sync_state WHERE file_path = ?", (file_path,))
