from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class TaskRecord:
    title: str
    raw_line: str
    line_number: int
    is_done: bool
    priority: Optional[str] = None
    urls: list[str] = field(default_factory=list)
    sub_items: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CardRow:
    id: str
    board_id: str
    column_name: str
    position: int
    title: str
    raw_line: str
    line_number: int
    is_done: bool
    priority: Optional[str]
    sub_items: list[str]
    source_fingerprint: Optional[str]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class ReconcileResult:
    board_id: str
    added: int = 0
    removed: int = 0
    updated: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.updated)


@dataclass(frozen=True)
class WriteBackResult:
    success: bool
    changed: bool
    line_number: int
    error: Optional[str] = None
