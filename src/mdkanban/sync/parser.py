from __future__ import annotations

import re
from typing import Optional

from .models import TaskRecord


_TASK_RE = re.compile(r"^(\s*)- \[([ xX])\]\s+(.*)")
_MD_LINK_RE = re.compile(r"\[([^\]]*)\]\((https?://[^)]+)\)")
_BARE_URL_RE = re.compile(r"https?://[^\s)\]]+")

_URGENT_MARK = "🔺"
_HIGH_MARK = "⏫"


def _priority(title: str) -> Optional[str]:
    if _URGENT_MARK in title:
        return "urgent"
    if _HIGH_MARK in title:
        return "high"
    return None


def _extract_urls(title: str) -> list[str]:
    urls = [m.group(2) for m in _MD_LINK_RE.finditer(title)]
    for m in _BARE_URL_RE.finditer(title):
        if m.group(0) not in urls:
            urls.append(m.group(0))
    return urls


class _PendingTask:
    def __init__(self, title: str, raw_line: str, line_number: int, is_done: bool):
        self.title = title
        self.raw_line = raw_line
        self.line_number = line_number
        self.is_done = is_done
        self.sub_items: list[str] = []

    def freeze(self) -> TaskRecord:
        return TaskRecord(
            title=self.title,
            raw_line=self.raw_line,
            line_number=self.line_number,
            is_done=self.is_done,
            priority=_priority(self.title),
            urls=_extract_urls(self.title),
            sub_items=list(self.sub_items),
        )


def parse_markdown_tasks(content: str) -> list[TaskRecord]:
    """Parse checkbox tasks from board markdown, in document order.

    Frontmatter before the first task is skipped. Indented non-empty lines
    that follow a task become its sub-items until a non-indented line of
    other content ends the run.
    """
    tasks: list[TaskRecord] = []
    current: Optional[_PendingTask] = None
    in_frontmatter = False
    found_task = False

    for idx, line in enumerate(content.split("\n")):
        line_number = idx + 1
        stripped = line.strip()

        if stripped == "---" and not found_task:
            if current is not None:
                tasks.append(current.freeze())
                current = None
            in_frontmatter = not in_frontmatter
            continue

        if in_frontmatter:
            # A task inside an unclosed frontmatter block closes it.
            if not _TASK_RE.match(line):
                continue
            in_frontmatter = False

        m = _TASK_RE.match(line)
        if m:
            if current is not None:
                tasks.append(current.freeze())
            found_task = True
            current = _PendingTask(
                title=m.group(3).rstrip(),
                raw_line=line,
                line_number=line_number,
                is_done=m.group(2).lower() == "x",
            )
            continue

        if current is not None and stripped and (line.startswith("\t") or line.startswith("  ")):
            current.sub_items.append(stripped)
            continue

        if stripped and current is not None:
            tasks.append(current.freeze())
            current = None

    if current is not None:
        tasks.append(current.freeze())
    return tasks
