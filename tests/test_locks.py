from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

from workq.locks import ClaimLockManager, validate_item_id
from workq.models import AlreadyLocked, UsageError


def test_lock_path_naming(tmp_path: Path) -> None:
    manager = ClaimLockManager(tmp_path / "locks")
    assert manager.lock_path_for("12a") == tmp_path / "locks" / "workitem-12a.lock"


def test_try_acquire_is_exclusive(tmp_path: Path) -> None:
    manager = ClaimLockManager(tmp_path / "locks")

    path = manager.try_acquire("1", {"itemId": "1", "status": "claimed"})
    assert json.loads(path.read_text(encoding="utf-8")) == {"itemId": "1", "status": "claimed"}

    with pytest.raises(AlreadyLocked) as excinfo:
        manager.try_acquire("1", {"itemId": "1", "status": "other"})
    assert excinfo.value.details["lockPath"] == str(path)
    assert manager.read("1") == {"itemId": "1", "status": "claimed"}


def test_try_acquire_never_overrides_old_locks(tmp_path: Path) -> None:
    manager = ClaimLockManager(tmp_path)
    path = manager.try_acquire("1", {"itemId": "1"})
    past = time.time() - 10 * 24 * 3600
    os.utime(path, (past, past))

    with pytest.raises(AlreadyLocked):
        manager.try_acquire("1", {"itemId": "1"})


def test_merge_update_shallow_merges_and_creates(tmp_path: Path) -> None:
    manager = ClaimLockManager(tmp_path)
    manager.try_acquire("1", {"itemId": "1", "label": "a", "status": "claimed"})

    merged = manager.merge_update("1", {"status": "done", "branch": "feat/x"})
    assert merged == {"itemId": "1", "label": "a", "status": "done", "branch": "feat/x"}
    assert manager.read("1") == merged

    created = manager.merge_update("2", {"itemId": "2", "status": "done"})
    assert created == {"itemId": "2", "status": "done"}
    assert manager.exists("2")


def test_merge_update_tolerates_unreadable_payload(tmp_path: Path) -> None:
    manager = ClaimLockManager(tmp_path)
    manager.lock_path_for("3").write_text("garbage", encoding="utf-8")

    assert manager.read("3") is None
    assert manager.merge_update("3", {"status": "done"}) == {"status": "done"}


def test_list_all_sorted_with_age(tmp_path: Path) -> None:
    manager = ClaimLockManager(tmp_path)
    for item_id in ("3", "10", "1"):
        manager.try_acquire(item_id, {"itemId": item_id})
    (tmp_path / "unrelated.lock").write_text("{}", encoding="utf-8")
    (tmp_path / "workitem-1.lock.tmp.1.abc").write_text("{}", encoding="utf-8")
    (tmp_path / "workitem-bad.lock").write_text("not json", encoding="utf-8")
    now_ms = int(time.time() * 1000) + 5_000

    records = manager.list_all(now_ms=now_ms)

    assert [record.item_id for record in records] == ["1", "10", "3", "bad"]
    assert all(record.age_ms >= 5_000 - 1_000 for record in records)
    assert records[0].data == {"itemId": "1"}
    assert records[-1].data is None


def test_list_all_missing_dir(tmp_path: Path) -> None:
    assert ClaimLockManager(tmp_path / "missing").list_all() == []


def test_remove(tmp_path: Path) -> None:
    manager = ClaimLockManager(tmp_path)
    manager.try_acquire("1", {})
    assert manager.remove("1") is True
    assert manager.remove("1") is False


@pytest.mark.parametrize("item_id", ["12", "5a", "12A"])
def test_validate_item_id_accepts_backlog_ids(item_id: str) -> None:
    assert validate_item_id(item_id) == item_id


@pytest.mark.parametrize("item_id", ["x/../../escaped", "../1", "1/2", "a1", "", "1.lock", "1\n"])
def test_lock_path_rejects_ids_outside_the_backlog_grammar(tmp_path: Path, item_id: str) -> None:
    manager = ClaimLockManager(tmp_path / "locks")

    with pytest.raises(UsageError) as excinfo:
        manager.lock_path_for(item_id)
    assert excinfo.value.code == "E_USAGE"
    with pytest.raises(UsageError):
        manager.merge_update(item_id, {"status": "done"})
    assert list(tmp_path.iterdir()) == []
