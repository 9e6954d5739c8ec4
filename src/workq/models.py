"""workq data models: exceptions, dataclasses and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


def _coerce_int(value: Any, *, default: int | None) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except Exception:
        return default
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return default
    return int(parsed)


def _coerce_positive_int(value: Any, *, default: int) -> int:
    parsed = _coerce_int(value, default=None)
    if parsed is None:
        return default
    return parsed if parsed > 0 else default


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class WorkqError(RuntimeError):
    """Base error carrying a stable machine-readable code and context details."""

    default_code = "E_RUNTIME"

    def __init__(self, message: str, *, code: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {"ok": False, "error": self.code, "message": self.message, **self.details}


class UsageError(WorkqError):
    """Raised when required input is missing or invalid."""

    default_code = "E_USAGE"


class StateCorrupt(WorkqError):
    """Raised when the state file exists but cannot be parsed into a document."""

    default_code = "E_STATE_PARSE"


class LockTimeout(WorkqError):
    """Raised when the state gate is not acquired within the wait window."""

    default_code = "E_STATE_LOCK_TIMEOUT"


class SectionNotFound(WorkqError):
    """Raised when the backlog document has no '## Current items' section."""

    default_code = "E_BACKLOG_SECTION"


class BacklogEmpty(WorkqError):
    """Raised when claiming against a state that holds no synced backlog items."""

    default_code = "E_BACKLOG_EMPTY"


class NotFound(WorkqError):
    default_code = "E_NOT_FOUND"


class SessionMismatch(WorkqError):
    """Raised when a caller's session key differs from the claim owner's."""

    default_code = "E_SESSION_MISMATCH"


class ClaimActive(WorkqError):
    default_code = "E_CLAIM_ACTIVE"


class AlreadyLocked(WorkqError):
    default_code = "E_ALREADY_LOCKED"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BacklogItem:
    item_id: str
    queue_tag: str | None
    work_line: str
    line_number: int
    no_auto_start: bool
    blocked_by: bool
    no_auto_merge: bool
    eligible: bool
    skip_reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "itemId": self.item_id,
            "queueTag": self.queue_tag,
            "workLine": self.work_line,
            "lineNumber": self.line_number,
            "noAutoStart": self.no_auto_start,
            "noAutoMerge": self.no_auto_merge,
            "blockedBy": self.blocked_by,
            "eligible": self.eligible,
            "skipReasons": list(self.skip_reasons),
        }


@dataclass(frozen=True)
class ParsedBacklog:
    backlog_file: Path
    scanned_at_ms: int
    items: tuple[BacklogItem, ...]


@dataclass(frozen=True)
class LockRecord:
    item_id: str
    lock_path: Path
    mtime_ms: int
    age_ms: int
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class Claim:
    """Typed read-only view over a claim entry of the state document."""

    item_id: str
    status: str
    session_key: str | None
    lease_ms: int
    claimed_at_ms: int | None
    heartbeat_at_ms: int | None
    queue: str | None = None
    label: str | None = None
    work_line: str | None = None
    lock_path: str | None = None
    completed_at_ms: int | None = None
    branch: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, payload: dict[str, Any], *, default_lease_ms: int) -> Claim:
        known = {
            "itemId",
            "status",
            "sessionKey",
            "leaseMs",
            "claimedAtMs",
            "heartbeatAtMs",
            "queue",
            "label",
            "workLine",
            "lockPath",
            "completedAtMs",
            "branch",
            "prNumber",
            "prUrl",
        }
        return cls(
            item_id=str(payload.get("itemId") or ""),
            status=str(payload.get("status") or ""),
            session_key=_optional_str(payload.get("sessionKey")),
            lease_ms=_coerce_positive_int(payload.get("leaseMs"), default=default_lease_ms),
            claimed_at_ms=_coerce_int(payload.get("claimedAtMs"), default=None) or None,
            heartbeat_at_ms=_coerce_int(payload.get("heartbeatAtMs"), default=None) or None,
            queue=_optional_str(payload.get("queue")),
            label=_optional_str(payload.get("label")),
            work_line=_optional_str(payload.get("workLine")),
            lock_path=_optional_str(payload.get("lockPath")),
            completed_at_ms=_coerce_int(payload.get("completedAtMs"), default=None),
            branch=_optional_str(payload.get("branch")),
            pr_number=_coerce_int(payload.get("prNumber"), default=None),
            pr_url=_optional_str(payload.get("prUrl")),
            extra={key: value for key, value in payload.items() if key not in known},
        )


@dataclass(frozen=True)
class WorkqConfig:
    state_path: Path
    lock_dir: Path
    lease_ms: int
    stale_ttl_ms: int
    queue_tag: str
    gate_wait_ms: int
    gate_stale_ms: int
    gate_poll_ms: int
    log_path: Path | None
