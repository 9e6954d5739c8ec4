"""Backlog parsing: derive claimable work items from the markdown backlog.

Only the ``## Current items`` section is read; it ends at ``## Done`` or the
end of the document. Item lines look like ``12a. Fix thing [zsc]`` and may
carry ``**no-auto-start**``, ``**no-auto-merge**`` or ``blocked-by:`` markers.
Other lines in the section are prose and are skipped.
"""

from __future__ import annotations

from pathlib import Path

from workq.constants import (
    BLOCKED_BY_PATTERN,
    CURRENT_SECTION_PATTERN,
    DEFAULT_QUEUE_TAG,
    DONE_SECTION_PATTERN,
    ITEM_LINE_PATTERN,
    LINE_BREAK_PATTERN,
    NO_AUTO_MERGE_PATTERN,
    NO_AUTO_START_PATTERN,
    QUEUE_TAG_PATTERN,
    SKIP_BLOCKED_BY,
    SKIP_NO_AUTO_START,
    not_queue_reason,
)
from workq.models import BacklogItem, ParsedBacklog, SectionNotFound, UsageError
from workq.utils import _now_ms


def _section_bounds(lines: list[str]) -> tuple[int, int] | None:
    current_start = -1
    done_start = len(lines)
    for index, line in enumerate(lines):
        stripped = line.strip()
        if current_start < 0:
            if CURRENT_SECTION_PATTERN.match(stripped):
                current_start = index + 1
            continue
        if DONE_SECTION_PATTERN.match(stripped):
            done_start = index
            break
    if current_start < 0:
        return None
    return current_start, done_start


def _parse_item_line(line: str, *, line_number: int, queue_tag: str) -> BacklogItem | None:
    match = ITEM_LINE_PATTERN.match(line)
    if not match:
        return None

    tag_match = QUEUE_TAG_PATTERN.search(line)
    item_tag = tag_match.group(1).lower() if tag_match else None
    no_auto_start = bool(NO_AUTO_START_PATTERN.search(line))
    no_auto_merge = bool(NO_AUTO_MERGE_PATTERN.search(line))
    blocked_by = bool(BLOCKED_BY_PATTERN.search(line))

    skip_reasons: list[str] = []
    if item_tag != queue_tag:
        skip_reasons.append(not_queue_reason(queue_tag))
    if no_auto_start:
        skip_reasons.append(SKIP_NO_AUTO_START)
    if blocked_by:
        skip_reasons.append(SKIP_BLOCKED_BY)

    return BacklogItem(
        item_id=match.group(1),
        queue_tag=item_tag,
        work_line=line,
        line_number=line_number,
        no_auto_start=no_auto_start,
        blocked_by=blocked_by,
        no_auto_merge=no_auto_merge,
        eligible=not skip_reasons,
        skip_reasons=tuple(skip_reasons),
    )


def parse_backlog(text: str, *, queue_tag: str = DEFAULT_QUEUE_TAG) -> list[BacklogItem]:
    lines = LINE_BREAK_PATTERN.split(text)
    bounds = _section_bounds(lines)
    if bounds is None:
        raise SectionNotFound("Could not find '## Current items' section")

    wanted = queue_tag.strip().lower()
    start, end = bounds
    items: list[BacklogItem] = []
    for index in range(start, end):
        line = lines[index].strip()
        if not line:
            continue
        item = _parse_item_line(line, line_number=index + 1, queue_tag=wanted)
        if item is not None:
            items.append(item)
    return items


def read_backlog(
    backlog_file: Path,
    *,
    queue_tag: str = DEFAULT_QUEUE_TAG,
    now_ms: int | None = None,
) -> ParsedBacklog:
    resolved = backlog_file.expanduser().resolve()
    if not resolved.is_file():
        raise UsageError(
            f"Backlog file not found: {resolved}",
            code="E_BACKLOG_FILE",
            backlogFile=str(resolved),
        )
    text = resolved.read_text(encoding="utf-8")
    try:
        items = parse_backlog(text, queue_tag=queue_tag)
    except SectionNotFound as exc:
        exc.details.setdefault("backlogFile", str(resolved))
        raise
    return ParsedBacklog(
        backlog_file=resolved,
        scanned_at_ms=_now_ms() if now_ms is None else now_ms,
        items=tuple(items),
    )
