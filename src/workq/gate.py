"""workq gate: advisory mutex-file exclusion around the state document."""

from __future__ import annotations

import contextlib
import json
import os
import socket
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TypeVar

from workq.constants import (
    DEFAULT_STATE_LOCK_POLL_MS,
    DEFAULT_STATE_LOCK_STALE_MS,
    DEFAULT_STATE_LOCK_WAIT_MS,
    MUTEX_SUFFIX,
)
from workq.models import LockTimeout
from workq.utils import _iso_from_ms

T = TypeVar("T")


class ExclusiveGate(Protocol):
    def exclusive(self, resource_id: Path) -> contextlib.AbstractContextManager[None]: ...


def mutex_path_for(resource_id: Path) -> Path:
    return resource_id.with_name(resource_id.name + MUTEX_SUFFIX)


@dataclass
class MutexFileGate:
    """Serialize cooperating processes on ``<resource>.mutex``.

    The marker is created with O_EXCL. A marker older than ``stale_ms`` is
    treated as abandoned by a crashed holder and removed. Acquisition polls
    every ``poll_ms`` and gives up with LockTimeout after ``wait_ms``.
    """

    wait_ms: int = DEFAULT_STATE_LOCK_WAIT_MS
    stale_ms: int = DEFAULT_STATE_LOCK_STALE_MS
    poll_ms: int = DEFAULT_STATE_LOCK_POLL_MS
    clock: Callable[[], float] = field(default=time.time)
    sleep: Callable[[float], None] = field(default=time.sleep)

    @contextlib.contextmanager
    def exclusive(self, resource_id: Path) -> Iterator[None]:
        lock_path = mutex_path_for(resource_id)
        self._acquire(resource_id, lock_path)
        try:
            yield
        finally:
            lock_path.unlink(missing_ok=True)

    def _acquire(self, resource_id: Path, lock_path: Path) -> None:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        started = self.clock()
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pass
            else:
                try:
                    self._write_holder(fd)
                except BaseException:
                    lock_path.unlink(missing_ok=True)
                    raise
                return

            try:
                age_ms = (self.clock() - lock_path.stat().st_mtime) * 1000.0
                if age_ms > self.stale_ms:
                    lock_path.unlink()
                    continue
            except FileNotFoundError:
                # cleared between our create attempt and the stat/unlink
                continue

            waited_ms = (self.clock() - started) * 1000.0
            if waited_ms > self.wait_ms:
                raise LockTimeout(
                    f"Timed out acquiring state lock: {lock_path}",
                    statePath=str(resource_id),
                    lockPath=str(lock_path),
                    waitMs=self.wait_ms,
                )
            self.sleep(self.poll_ms / 1000.0)

    def _write_holder(self, fd: int) -> None:
        created_ms = int(self.clock() * 1000)
        payload = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "createdAtMs": created_ms,
            "createdAt": _iso_from_ms(created_ms),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload) + "\n")


def with_exclusive_access(gate: ExclusiveGate, resource_id: Path, body: Callable[[], T]) -> T:
    """Run ``body`` while holding ``gate`` for ``resource_id`` and return its result."""
    with gate.exclusive(resource_id):
        return body()
