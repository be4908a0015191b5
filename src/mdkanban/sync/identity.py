"""Stable card identifiers derived from task titles.

An id depends only on the normalized title, the board id and the
occurrence index of that title within one parse, so manual state attached
to a card survives re-parsing and lines inserted above it.
"""

from __future__ import annotations

import hashlib
import re
from typing import Iterable

from .models import TaskRecord

_WS_RE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    return _WS_RE.sub(" ", title.strip().casefold())


def collision_key(title: str, board_id: str) -> str:
    return f"{normalize_title(title)}|{board_id}"


def compute_card_id(title: str, board_id: str, collision_index: int) -> str:
    if collision_index < 0:
        raise ValueError(f"collision_index must be non-negative, got {collision_index}")
    key = collision_key(title, board_id)
    if collision_index:
        key = f"{key}|dup{collision_index}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:8]


class CollisionCounter:
    """Per-pass occurrence counter keyed by normalized title and board."""

    def __init__(self, board_id: str):
        self.board_id = board_id
        self._counts: dict[str, int] = {}

    def next_index(self, title: str) -> int:
        key = collision_key(title, self.board_id)
        index = self._counts.get(key, 0)
        self._counts[key] = index + 1
        return index

    def card_id(self, title: str) -> str:
        return compute_card_id(title, self.board_id, self.next_index(title))


def assign_card_ids(tasks: Iterable[TaskRecord], board_id: str) -> list[str]:
    counter = CollisionCounter(board_id)
    return [counter.card_id(t.title) for t in tasks]
