"""workq state: load, repair and persist the shared state document."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from workq.constants import STATE_SCHEMA_VERSION
from workq.models import StateCorrupt
from workq.utils import _now_ms, _write_json_atomic


def _empty_backlog() -> dict[str, Any]:
    return {
        "file": None,
        "syncedAtMs": None,
        "syncedAt": None,
        "items": [],
    }


def default_state(now_ms: int | None = None) -> dict[str, Any]:
    stamp = _now_ms() if now_ms is None else now_ms
    return {
        "version": STATE_SCHEMA_VERSION,
        "createdAtMs": stamp,
        "updatedAtMs": stamp,
        "backlog": _empty_backlog(),
        "claims": {},
    }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalize_state(state: dict[str, Any], *, now_ms: int) -> dict[str, Any]:
    """Repair structural drift in place; outright corruption is rejected by load_state."""
    backlog = state.get("backlog")
    if not isinstance(backlog, dict):
        backlog = _empty_backlog()
        state["backlog"] = backlog
    if not isinstance(backlog.get("items"), list):
        backlog["items"] = []

    claims = state.get("claims")
    if not isinstance(claims, dict):
        state["claims"] = {}

    if not _is_number(state.get("version")):
        state["version"] = STATE_SCHEMA_VERSION
    if not _is_number(state.get("createdAtMs")):
        state["createdAtMs"] = now_ms
    if not _is_number(state.get("updatedAtMs")):
        state["updatedAtMs"] = now_ms
    return state


def load_state(path: Path, *, now_ms: int | None = None) -> dict[str, Any]:
    stamp = _now_ms() if now_ms is None else now_ms
    if not path.exists():
        return default_state(stamp)

    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise StateCorrupt(
            f"State file is not valid JSON: {path}",
            code="E_STATE_PARSE",
            statePath=str(path),
            detail=str(exc),
        ) from exc
    if not isinstance(parsed, dict):
        raise StateCorrupt(
            f"State file has invalid shape: {path}",
            code="E_STATE_SHAPE",
            statePath=str(path),
        )
    return _normalize_state(parsed, now_ms=stamp)


def persist_state(path: Path, state: dict[str, Any], *, now_ms: int | None = None) -> dict[str, Any]:
    """Replace the whole document at ``path``. Callers must hold the state gate."""
    stamp = _now_ms() if now_ms is None else now_ms
    previous = state.get("updatedAtMs")
    if _is_number(previous) and previous > stamp:
        stamp = int(previous)
    state["updatedAtMs"] = stamp
    _write_json_atomic(path, state)
    return state
