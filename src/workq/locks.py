"""Per-item claim lock files.

Lock files mirror claim ownership for tooling outside workq. They are
created with O_EXCL and never taken over here on staleness; the state
document remains the ledger and staleness is judged by the coordinator.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from workq.constants import ITEM_ID_PATTERN, LOCK_FILE_PATTERN, LOCK_FILE_PREFIX, LOCK_FILE_SUFFIX
from workq.models import AlreadyLocked, LockRecord, UsageError
from workq.utils import _load_json_if_exists, _now_ms, _write_json_atomic, _write_json_exclusive


def validate_item_id(item_id: str) -> str:
    """Return ``item_id`` if it follows the backlog id grammar (``12``, ``5a``)."""
    if not isinstance(item_id, str) or not ITEM_ID_PATTERN.fullmatch(item_id):
        raise UsageError(f"Invalid item id: {item_id!r}", itemId=item_id)
    return item_id


class ClaimLockManager:
    def __init__(self, lock_dir: Path) -> None:
        self.lock_dir = lock_dir

    def lock_path_for(self, item_id: str) -> Path:
        return self.lock_dir / f"{LOCK_FILE_PREFIX}{validate_item_id(item_id)}{LOCK_FILE_SUFFIX}"

    def exists(self, item_id: str, *, lock_path: Path | None = None) -> bool:
        return (lock_path or self.lock_path_for(item_id)).exists()

    def read(self, item_id: str, *, lock_path: Path | None = None) -> dict[str, Any] | None:
        payload = _load_json_if_exists(lock_path or self.lock_path_for(item_id))
        return payload if isinstance(payload, dict) else None

    def try_acquire(self, item_id: str, payload: dict[str, Any]) -> Path:
        lock_path = self.lock_path_for(item_id)
        try:
            _write_json_exclusive(lock_path, payload)
        except FileExistsError as exc:
            raise AlreadyLocked(
                f"Lock file already exists for item {item_id}",
                itemId=item_id,
                lockPath=str(lock_path),
            ) from exc
        return lock_path

    def merge_update(
        self,
        item_id: str,
        patch: dict[str, Any],
        *,
        lock_path: Path | None = None,
    ) -> dict[str, Any]:
        """Shallow-merge ``patch`` over the current payload and rewrite atomically."""
        target = lock_path or self.lock_path_for(item_id)
        merged = dict(self.read(item_id, lock_path=target) or {})
        merged.update(patch)
        _write_json_atomic(target, merged)
        return merged

    def remove(self, item_id: str, *, lock_path: Path | None = None) -> bool:
        target = lock_path or self.lock_path_for(item_id)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        return True

    def list_all(self, *, now_ms: int | None = None) -> list[LockRecord]:
        if not self.lock_dir.is_dir():
            return []
        stamp = _now_ms() if now_ms is None else now_ms
        records: list[LockRecord] = []
        for entry in self.lock_dir.iterdir():
            match = LOCK_FILE_PATTERN.match(entry.name)
            if not match or not entry.is_file():
                continue
            try:
                mtime_ms = int(entry.stat().st_mtime * 1000)
            except FileNotFoundError:
                continue
            records.append(
                LockRecord(
                    item_id=match.group(1),
                    lock_path=entry,
                    mtime_ms=mtime_ms,
                    age_ms=stamp - mtime_ms,
                    data=self.read(match.group(1), lock_path=entry),
                )
            )
        records.sort(key=lambda record: record.item_id)
        return records
