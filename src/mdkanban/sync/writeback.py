"""Write card done-state changes back into the board's markdown file.

Only the card's own checkbox line is touched; every other byte of the file
is preserved. When a WatchController is supplied the write is bracketed by
suppress/unsuppress so the watcher does not react to its own change.
"""

from __future__ import annotations

import hashlib
import logging
import re
import sqlite3
from contextlib import nullcontext
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from mdkanban.config import AppConfig

from . import db as dbmod
from .models import WriteBackResult

if TYPE_CHECKING:
    from .watcher import WatchController

logger = logging.getLogger(__name__)

_CHECKBOX_RE = re.compile(r"^(\s*- \[)([ xX])(\] .*)$")


def toggle_checkbox_line(line: str, is_done: bool) -> Optional[str]:
    """Return ``line`` with its checkbox set to ``is_done``, or None if not a checkbox."""
    m = _CHECKBOX_RE.match(line)
    if not m:
        return None
    return f"{m.group(1)}{'x' if is_done else ' '}{m.group(3)}"


def _same_task_line(line: str, raw_line: str) -> bool:
    return toggle_checkbox_line(line, False) == toggle_checkbox_line(raw_line, False)


def write_back_done_state(
    config: AppConfig,
    card_id: str,
    is_done: bool,
    *,
    conn: Optional[sqlite3.Connection] = None,
    db_path: Optional[Path] = None,
    controller: Optional["WatchController"] = None,
) -> WriteBackResult:
    """Set the checkbox of a card's source line to ``is_done``.

    When the file changed since its last reconciliation, the line at the
    card's recorded position must still be the card's own task line (its
    checkbox aside); otherwise nothing is written.
    """
    owned = conn is None
    if owned:
        conn = dbmod.open_db(db_path or config.db_path)
    try:
        return _write_back(config, card_id, is_done, conn, controller)
    finally:
        if owned:
            conn.close()


def _write_back(
    config: AppConfig,
    card_id: str,
    is_done: bool,
    conn: sqlite3.Connection,
    controller: Optional["WatchController"],
) -> WriteBackResult:
    card = dbmod.get_card(conn, card_id)
    if card is None:
        return WriteBackResult(success=False, changed=False, line_number=0, error="Card not found")

    board = config.get_board(card.board_id)
    if board is None:
        return WriteBackResult(
            success=False, changed=False, line_number=card.line_number, error="Board config not found"
        )

    file_path = config.board_path(board)
    bracket = controller.suppressed(config) if controller is not None else nullcontext()
    try:
        with bracket:
            content = file_path.read_text(encoding="utf-8")
            lines = content.split("\n")
            line_idx = card.line_number - 1

            if line_idx < 0 or line_idx >= len(lines):
                return WriteBackResult(
                    success=False, changed=False, line_number=card.line_number, error="Line number out of range"
                )

            line = lines[line_idx]
            m = _CHECKBOX_RE.match(line)
            if m is None:
                return WriteBackResult(
                    success=False, changed=False, line_number=card.line_number, error="Line is not a checkbox"
                )

            if check_conflict(file_path, conn=conn) and not _same_task_line(line, card.raw_line):
                return WriteBackResult(
                    success=False, changed=False, line_number=card.line_number, error="Line changed since last sync"
                )

            if (m.group(2).lower() == "x") == is_done:
                return WriteBackResult(success=True, changed=False, line_number=card.line_number)

            lines[line_idx] = toggle_checkbox_line(line, is_done)
            file_path.write_text("\n".join(lines), encoding="utf-8")
    except OSError as e:
        logger.warning(f"Write-back failed for card {card_id}: {e}")
        return WriteBackResult(success=False, changed=False, line_number=card.line_number, error=str(e))

    logger.info(f"Card {card_id} -> {'[x]' if is_done else '[ ]'} at line {card.line_number}")
    return WriteBackResult(success=True, changed=True, line_number=card.line_number)


def check_conflict(file_path: Path, *, conn: sqlite3.Connection) -> bool:
    """True when the file changed since its last reconciliation, or cannot be read."""
    stored = dbmod.get_sync_hash(conn, str(Path(file_path).resolve()))
    if stored is None:
        return False
    try:
        data = Path(file_path).read_bytes()
    except OSError:
        return True
    return hashlib.sha256(data).hexdigest() != stored
