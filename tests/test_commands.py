from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

import workq.commands as commands_module


BACKLOG = (
    "## Current items\n"
    "1. Add login page [zsc]\n"
    "2. Fix bug [zsc] **no-auto-start**\n"
    "3. Refactor parser [zsc]\n"
    "## Done\n"
)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("WORKQ_STATE", "WORKQ_LOCK_DIR", "WORKQ_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict[str, Any]]:
    code = commands_module.main(list(argv))
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1
    return code, json.loads(lines[0])


def _common(tmp_path: Path) -> list[str]:
    return ["--state", str(tmp_path / "state.json"), "--lock-dir", str(tmp_path / "locks")]


def _synced(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> list[str]:
    backlog = tmp_path / "WORK_ITEMS_GLOBAL.md"
    backlog.write_text(BACKLOG, encoding="utf-8")
    common = _common(tmp_path)
    code, payload = _run(capsys, "sync-backlog", "--file", str(backlog), *common)
    assert code == 0
    assert payload["ok"] is True
    return common


def test_claim_heartbeat_complete_flow(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    common = _synced(tmp_path, capsys)

    code, claimed = _run(capsys, "claim", "--queue", "zsc", "--session", "w1", "--lease-ms", "60000", *common)
    assert code == 0
    assert claimed["command"] == "claim"
    assert claimed["claimed"] is True
    assert claimed["item"]["itemId"] == "1"
    assert claimed["item"]["leaseMs"] == 60_000

    code, beat = _run(capsys, "heartbeat", "--item", "1", "--session", "w1", *common)
    assert code == 0
    assert beat["stale"] is False
    assert beat["lockExists"] is True

    code, done = _run(
        capsys, "complete", "--item", "1", "--branch", "feat/login", "--pr", "12", "--url", "https://x/pr/12", *common
    )
    assert code == 0
    assert done["status"] == "pr_opened"
    assert done["prNumber"] == 12

    code, status = _run(capsys, "list", *common)
    assert code == 0
    assert status["command"] == "status"
    assert status["totals"]["claims"] == 1
    assert status["claims"][0]["prUrl"] == "https://x/pr/12"


def test_claim_reports_exhaustion_as_success(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    common = _synced(tmp_path, capsys)
    _run(capsys, "claim", "--session", "a", *common)
    _run(capsys, "claim", "--session", "b", *common)

    code, payload = _run(capsys, "claim", "--session", "c", *common)

    assert code == 0
    assert payload["ok"] is True
    assert payload["claimed"] is False
    assert payload["reason"] == "no_eligible_items"


def test_heartbeat_with_wrong_session_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    common = _synced(tmp_path, capsys)
    _run(capsys, "claim", "--session", "owner", *common)

    code, payload = _run(capsys, "heartbeat", "--item", "1", "--session", "intruder", *common)

    assert code == 1
    assert payload["ok"] is False
    assert payload["error"] == "E_SESSION_MISMATCH"
    assert payload["expectedSession"] == "owner"


def test_claim_before_sync_reports_empty_backlog(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run(capsys, "claim", *_common(tmp_path))
    assert code == 1
    assert payload["error"] == "E_BACKLOG_EMPTY"


@pytest.mark.parametrize(
    ("argv", "message"),
    [
        (["complete", "--item", "1", "--pr", "abc"], "--pr must be a number"),
        (["claim", "--lease-ms", "soon"], "--lease-ms must be a number"),
        (["heartbeat", "--item", "1"], "heartbeat requires --item <id> --session <sessionKey>"),
        (["sync-backlog"], "sync-backlog requires --file <WORK_ITEMS_GLOBAL.md>"),
        (["complete"], "complete requires --item <id>"),
        (["release"], "release requires --item <id>"),
    ],
)
def test_usage_errors(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], argv: list[str], message: str
) -> None:
    code, payload = _run(capsys, *argv, *_common(tmp_path))

    assert code == 1
    assert payload["ok"] is False
    assert payload["error"] == "E_USAGE"
    assert payload["message"] == message
    assert not (tmp_path / "state.json").exists()


def test_unknown_and_missing_command(capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run(capsys, "frobnicate")
    assert code == 1
    assert payload["error"] == "E_USAGE"
    assert payload["help"] == commands_module.USAGE_LINES

    code, payload = _run(capsys)
    assert code == 1
    assert payload["message"] == "Missing command"


def test_help(capsys: pytest.CaptureFixture[str]) -> None:
    for argv in (["help"], ["--help"], ["-h"]):
        code, payload = _run(capsys, *argv)
        assert code == 0
        assert payload["command"] == "help"
        assert payload["usage"] == commands_module.USAGE_LINES


def test_missing_backlog_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run(capsys, "sync-backlog", "--file", str(tmp_path / "nope.md"), *_common(tmp_path))
    assert code == 1
    assert payload["error"] == "E_BACKLOG_FILE"


def test_corrupt_state_is_reported(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "state.json").write_text("{broken", encoding="utf-8")

    code, payload = _run(capsys, "status", *_common(tmp_path))

    assert code == 1
    assert payload["error"] == "E_STATE_PARSE"


def test_gate_timeout_is_reported(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    common = _synced(tmp_path, capsys)
    (tmp_path / "state.json.mutex").write_text("{}\n", encoding="utf-8")

    code, payload = _run(capsys, "claim", "--state-lock-wait-ms", "30", "--state-lock-poll-ms", "5", *common)

    assert code == 1
    assert payload["error"] == "E_STATE_LOCK_TIMEOUT"
    assert payload["waitMs"] == 30


def test_env_selects_state_and_lock_dir(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("WORKQ_STATE", str(tmp_path / "env" / "state.json"))
    monkeypatch.setenv("WORKQ_LOCK_DIR", str(tmp_path / "env" / "locks"))
    (tmp_path / "backlog.md").write_text(BACKLOG, encoding="utf-8")

    assert _run(capsys, "sync-backlog", "--file", "backlog.md")[0] == 0
    code, payload = _run(capsys, "claim", "--session", "s")

    assert code == 0
    assert Path(payload["item"]["lockPath"]).parent == (tmp_path / "env" / "locks").resolve()
    assert (tmp_path / "env" / "state.json").exists()
    assert (tmp_path / "env" / "logs" / "workq.log").exists()


def test_release_requires_force_for_live_claims(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    common = _synced(tmp_path, capsys)
    _run(capsys, "claim", "--session", "owner", *common)

    code, payload = _run(capsys, "release", "--item", "1", *common)
    assert code == 1
    assert payload["error"] == "E_CLAIM_ACTIVE"

    code, payload = _run(capsys, "release", "--item", "1", "--force", "--reason", "reassign", *common)
    assert code == 0
    assert payload["releasedClaim"] is True
    assert payload["reason"] == "reassign"


def test_item_id_cannot_escape_lock_dir(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    common = _synced(tmp_path, capsys)

    code, payload = _run(capsys, "complete", "--item", "x/../../escaped", "--branch", "b", *common)

    assert code == 1
    assert payload["error"] == "E_USAGE"
    assert payload["itemId"] == "x/../../escaped"
    assert not (tmp_path / "escaped.lock").exists()
    assert not (tmp_path / "locks").exists()
    state = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
    assert state["claims"] == {}


@pytest.mark.parametrize(
    ("argv", "message"),
    [
        (["claim", "--lease-ms", "0"], "--lease-ms must be a positive number of milliseconds"),
        (["heartbeat", "--item", "1", "--session", "s", "--lease-ms", "-5"], "--lease-ms must be a positive number of milliseconds"),
        (["status", "--ttl-ms", "-1"], "--ttl-ms must be a positive number of milliseconds"),
    ],
)
def test_non_positive_durations_are_usage_errors(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], argv: list[str], message: str
) -> None:
    code, payload = _run(capsys, *argv, *_common(tmp_path))

    assert code == 1
    assert payload["error"] == "E_USAGE"
    assert payload["message"] == message
