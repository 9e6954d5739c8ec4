"""workq utility functions for clocks, timestamps, JSON file IO and the audit log."""

from __future__ import annotations

import json
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _iso_from_ms(ms: int | float) -> str:
    moment = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _stamp_local(ms: int | float) -> str:
    """Compact local-time stamp (YYYYMMDD-HHMM) used in generated labels."""
    return datetime.fromtimestamp(ms / 1000.0).strftime("%Y%m%d-%H%M")


# ---------------------------------------------------------------------------
# JSON file helpers
# ---------------------------------------------------------------------------


def _render_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2) + "\n"


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write via a unique sibling temp file and rename it over ``path``.

    Readers observe either the previous document or the new one, never a
    partial write. A failure before the rename removes the temp file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp.{os.getpid()}.{uuid.uuid4().hex}")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(_render_json(payload))
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_json_exclusive(path: Path, payload: dict[str, Any]) -> None:
    """Create ``path`` with ``payload``; raises FileExistsError if it exists."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(_render_json(payload))


def _load_json_if_exists(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return None


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def _append_log(log_path: Path | None, message: str) -> bool:
    """Append one audit line; returns False when the log cannot be written."""
    if log_path is None:
        return False
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{_utc_now()} {message}\n")
    except OSError:
        return False
    return True
