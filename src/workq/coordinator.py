"""workq coordinator: sync, claim, heartbeat, complete, status and release.

The state document is the ledger of claims and leases. Per-item lock files
are a best-effort mirror written by the same operations; failures to update
the mirror are logged and reported, never fatal once the ledger is persisted.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from workq.backlog import read_backlog
from workq.constants import (
    DEFAULT_LEASE_MS,
    DEFAULT_QUEUE_TAG,
    DEFAULT_STALE_TTL_MS,
    ITEM_ID_PATTERN,
    NO_ELIGIBLE_ITEMS,
    SKIP_BLOCKED_BY,
    SKIP_NO_AUTO_START,
    STATUS_CLAIMED,
    STATUS_DONE,
    STATUS_PR_OPENED,
    TERMINAL_STATUSES,
    not_queue_reason,
)
from workq.gate import ExclusiveGate, MutexFileGate
from workq.locks import ClaimLockManager, validate_item_id
from workq.models import (
    AlreadyLocked,
    BacklogEmpty,
    Claim,
    ClaimActive,
    NotFound,
    SessionMismatch,
    UsageError,
    WorkqConfig,
    _coerce_int,
    _coerce_positive_int,
)
from workq.state import load_state, persist_state
from workq.utils import _append_log, _iso_from_ms, _now_ms, _stamp_local


# ---------------------------------------------------------------------------
# Lease arithmetic (shared by the write path and status views)
# ---------------------------------------------------------------------------


def claim_is_terminal(claim: Mapping[str, Any] | None) -> bool:
    if not claim:
        return False
    return str(claim.get("status") or "").strip().lower() in TERMINAL_STATUSES


def claim_ttl_ms(
    claim: Mapping[str, Any] | None,
    *,
    ttl_override_ms: int | None = None,
    default_ttl_ms: int = DEFAULT_STALE_TTL_MS,
) -> int:
    if ttl_override_ms:
        return ttl_override_ms
    if not claim:
        return default_ttl_ms
    return _coerce_positive_int(claim.get("leaseMs"), default=default_ttl_ms)


def claim_is_stale(
    claim: Mapping[str, Any] | None,
    now_ms: int,
    *,
    ttl_override_ms: int | None = None,
    default_ttl_ms: int = DEFAULT_STALE_TTL_MS,
) -> bool:
    """A non-terminal claim is stale once its last heartbeat is older than its lease."""
    if not claim or claim_is_terminal(claim):
        return False
    last_seen = _coerce_int(claim.get("heartbeatAtMs"), default=None) or _coerce_int(
        claim.get("claimedAtMs"), default=None
    )
    if not last_seen:
        return False
    ttl_ms = claim_ttl_ms(claim, ttl_override_ms=ttl_override_ms, default_ttl_ms=default_ttl_ms)
    return now_ms - last_seen > ttl_ms


def build_label(queue: str, item_id: str, now_ms: int) -> str:
    return f"{queue}-work-{item_id}-AUTO-{_stamp_local(now_ms)}"


def _require_positive_ms(value: int | None, name: str) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise UsageError(f"{name} must be a positive number of milliseconds", got=value)


@dataclass
class Coordinator:
    state_path: Path
    lock_dir: Path
    gate: ExclusiveGate = field(default_factory=MutexFileGate)
    lease_ms: int = DEFAULT_LEASE_MS
    stale_ttl_ms: int = DEFAULT_STALE_TTL_MS
    queue_tag: str = DEFAULT_QUEUE_TAG
    log_path: Path | None = None
    now_fn: Callable[[], int] = field(default=_now_ms)

    def __post_init__(self) -> None:
        self.locks = ClaimLockManager(self.lock_dir)

    @classmethod
    def from_config(cls, config: WorkqConfig) -> Coordinator:
        return cls(
            state_path=config.state_path,
            lock_dir=config.lock_dir,
            gate=MutexFileGate(
                wait_ms=config.gate_wait_ms,
                stale_ms=config.gate_stale_ms,
                poll_ms=config.gate_poll_ms,
            ),
            lease_ms=config.lease_ms,
            stale_ttl_ms=config.stale_ttl_ms,
            queue_tag=config.queue_tag,
            log_path=config.log_path,
        )

    # -- sync ---------------------------------------------------------------

    def sync_backlog(self, backlog_file: Path, *, queue_tag: str | None = None) -> dict[str, Any]:
        tag = (queue_tag or self.queue_tag).strip().lower()
        parsed = read_backlog(backlog_file, queue_tag=tag, now_ms=self.now_fn())
        items = [item.to_dict() for item in parsed.items]

        with self.gate.exclusive(self.state_path):
            state = load_state(self.state_path, now_ms=self.now_fn())
            now_ms = self.now_fn()
            state["backlog"] = {
                "file": str(parsed.backlog_file),
                "syncedAtMs": now_ms,
                "syncedAt": _iso_from_ms(now_ms),
                "queueTag": tag,
                "items": items,
            }
            persist_state(self.state_path, state, now_ms=now_ms)

        skipped = {not_queue_reason(tag): 0, SKIP_NO_AUTO_START: 0, SKIP_BLOCKED_BY: 0}
        for item in parsed.items:
            for reason in item.skip_reasons:
                if reason in skipped:
                    skipped[reason] += 1
        eligible_count = sum(1 for item in parsed.items if item.eligible)
        _append_log(
            self.log_path,
            f"sync-backlog: file={parsed.backlog_file} items={len(items)} eligible={eligible_count}",
        )
        return {
            "statePath": str(self.state_path),
            "backlogFile": str(parsed.backlog_file),
            "queueTag": tag,
            "totalItems": len(items),
            "eligibleCount": eligible_count,
            "skipped": skipped,
            "syncedAtMs": now_ms,
            "syncedAt": _iso_from_ms(now_ms),
        }

    # -- claim --------------------------------------------------------------

    def claim(
        self,
        queue: str | None = None,
        *,
        session_key: str | None = None,
        lease_ms: int | None = None,
        label: str | None = None,
    ) -> dict[str, Any]:
        wanted = (queue or self.queue_tag).strip().lower()
        lease = lease_ms if lease_ms is not None else self.lease_ms
        _require_positive_ms(lease, "lease_ms")

        with self.gate.exclusive(self.state_path):
            now_ms = self.now_fn()
            state = load_state(self.state_path, now_ms=now_ms)
            items = state["backlog"]["items"]
            if not items:
                raise BacklogEmpty(
                    "No backlog items in state; run sync-backlog first",
                    statePath=str(self.state_path),
                )
            session = session_key or f"workq-{os.getpid()}-{now_ms}"

            skipped = {"ineligible": 0, "claimed": 0, "locked": 0}
            for item in items:
                if not isinstance(item, dict):
                    skipped["ineligible"] += 1
                    continue
                item_id = str(item.get("itemId") or "")
                if (
                    not ITEM_ID_PATTERN.fullmatch(item_id)
                    or item.get("queueTag") != wanted
                    or not item.get("eligible")
                ):
                    skipped["ineligible"] += 1
                    continue

                existing = state["claims"].get(item_id)
                if existing and not claim_is_terminal(existing):
                    # stale claims keep blocking until an operator releases them
                    skipped["claimed"] += 1
                    continue

                if self.locks.exists(item_id):
                    skipped["locked"] += 1
                    continue

                item_label = label or build_label(wanted, item_id, now_ms)
                try:
                    lock_path = self.locks.try_acquire(
                        item_id,
                        {
                            "ts": _iso_from_ms(now_ms),
                            "itemId": item_id,
                            "label": item_label,
                            "workLine": item.get("workLine"),
                            "queue": wanted,
                            "status": STATUS_CLAIMED,
                            "sessionKey": session,
                            "claimedAt": _iso_from_ms(now_ms),
                            "heartbeatAt": _iso_from_ms(now_ms),
                            "leaseMs": lease,
                        },
                    )
                except AlreadyLocked:
                    skipped["locked"] += 1
                    continue

                state["claims"][item_id] = {
                    "itemId": item_id,
                    "queue": wanted,
                    "label": item_label,
                    "workLine": item.get("workLine"),
                    "sessionKey": session,
                    "status": STATUS_CLAIMED,
                    "leaseMs": lease,
                    "lockPath": str(lock_path),
                    "claimedAtMs": now_ms,
                    "heartbeatAtMs": now_ms,
                    "createdAtMs": now_ms,
                    "updatedAtMs": now_ms,
                }
                try:
                    persist_state(self.state_path, state, now_ms=now_ms)
                except Exception:
                    self.locks.remove(item_id, lock_path=lock_path)
                    raise

                _append_log(
                    self.log_path,
                    f"claim: item={item_id} queue={wanted} session={session} lease_ms={lease}",
                )
                return {
                    "claimed": True,
                    "statePath": str(self.state_path),
                    "lockDir": str(self.lock_dir),
                    "item": {
                        "itemId": item_id,
                        "label": item_label,
                        "workLine": item.get("workLine"),
                        "queue": wanted,
                        "sessionKey": session,
                        "leaseMs": lease,
                        "claimedAtMs": now_ms,
                        "claimedAt": _iso_from_ms(now_ms),
                        "lockPath": str(lock_path),
                    },
                }

        return {
            "claimed": False,
            "reason": NO_ELIGIBLE_ITEMS,
            "statePath": str(self.state_path),
            "lockDir": str(self.lock_dir),
            "skipped": skipped,
        }

    # -- heartbeat ----------------------------------------------------------

    def heartbeat(
        self,
        item_id: str,
        session_key: str,
        *,
        lease_ms: int | None = None,
    ) -> dict[str, Any]:
        validate_item_id(item_id)
        _require_positive_ms(lease_ms, "lease_ms")
        with self.gate.exclusive(self.state_path):
            now_ms = self.now_fn()
            state = load_state(self.state_path, now_ms=now_ms)
            claim = state["claims"].get(item_id)
            if not isinstance(claim, dict):
                raise NotFound(
                    f"No claim found for item {item_id}",
                    itemId=item_id,
                    statePath=str(self.state_path),
                )
            if str(claim.get("sessionKey")) != str(session_key):
                raise SessionMismatch(
                    f"Session key mismatch for item {item_id}",
                    itemId=item_id,
                    expectedSession=claim.get("sessionKey"),
                    gotSession=session_key,
                )

            claim["heartbeatAtMs"] = now_ms
            claim["updatedAtMs"] = now_ms
            if lease_ms is not None:
                claim["leaseMs"] = lease_ms
            if not claim.get("status"):
                claim["status"] = STATUS_CLAIMED
            persist_state(self.state_path, state, now_ms=now_ms)

            view = Claim.from_mapping(claim, default_lease_ms=self.stale_ttl_ms)
            lock_path = Path(view.lock_path) if view.lock_path else self.locks.lock_path_for(item_id)
            lock_exists = self.locks.exists(item_id, lock_path=lock_path)
            lock_updated = False
            if lock_exists:
                lock_updated = self._mirror(
                    item_id,
                    lock_path,
                    {
                        "itemId": item_id,
                        "label": view.label,
                        "workLine": view.work_line,
                        "status": view.status,
                        "sessionKey": view.session_key,
                        "heartbeatAt": _iso_from_ms(now_ms),
                        "leaseMs": view.lease_ms,
                    },
                )

        _append_log(self.log_path, f"heartbeat: item={item_id} session={session_key}")
        return {
            "statePath": str(self.state_path),
            "itemId": item_id,
            "sessionKey": session_key,
            "leaseMs": view.lease_ms,
            "ageMs": now_ms - (view.claimed_at_ms or now_ms),
            "stale": False,
            "lockPath": str(lock_path),
            "lockExists": lock_exists,
            "lockUpdated": lock_updated,
            "heartbeatAtMs": now_ms,
            "heartbeatAt": _iso_from_ms(now_ms),
        }

    # -- complete -----------------------------------------------------------

    def complete(
        self,
        item_id: str,
        *,
        branch: str | None = None,
        pr_number: int | None = None,
        pr_url: str | None = None,
        status: str | None = None,
        session_key: str | None = None,
        label: str | None = None,
    ) -> dict[str, Any]:
        validate_item_id(item_id)
        has_pr = bool(branch) or bool(pr_url) or pr_number is not None
        computed_status = status or (STATUS_PR_OPENED if has_pr else STATUS_DONE)

        with self.gate.exclusive(self.state_path):
            now_ms = self.now_fn()
            state = load_state(self.state_path, now_ms=now_ms)
            claim = state["claims"].get(item_id)
            if not isinstance(claim, dict):
                claim = self._synthesize_claim(state, item_id, session_key, label, now_ms)

            stored_session = claim.get("sessionKey")
            if session_key and stored_session and stored_session != session_key:
                raise SessionMismatch(
                    f"Session key mismatch for item {item_id}",
                    itemId=item_id,
                    expectedSession=stored_session,
                    gotSession=session_key,
                )

            claim["status"] = computed_status
            claim["updatedAtMs"] = now_ms
            claim["completedAtMs"] = now_ms
            if session_key:
                claim["sessionKey"] = session_key
            if branch:
                claim["branch"] = branch
            if pr_number is not None:
                claim["prNumber"] = pr_number
            if pr_url:
                claim["prUrl"] = pr_url
            state["claims"][item_id] = claim
            persist_state(self.state_path, state, now_ms=now_ms)

            lock_path = Path(claim["lockPath"]) if claim.get("lockPath") else self.locks.lock_path_for(item_id)
            patch: dict[str, Any] = {
                "ts": _iso_from_ms(now_ms),
                "itemId": item_id,
                "label": claim.get("label"),
                "status": computed_status,
                "completedAt": _iso_from_ms(now_ms),
            }
            for key in ("workLine", "sessionKey"):
                if claim.get(key):
                    patch[key] = claim[key]
            if branch:
                patch["branch"] = branch
            if pr_number is not None:
                patch["prNumber"] = pr_number
            if pr_url:
                patch["prUrl"] = pr_url
            lock_updated = self._mirror(item_id, lock_path, patch)

        _append_log(self.log_path, f"complete: item={item_id} status={computed_status}")
        return {
            "statePath": str(self.state_path),
            "lockPath": str(lock_path),
            "lockUpdated": lock_updated,
            "itemId": item_id,
            "status": computed_status,
            "branch": claim.get("branch"),
            "prNumber": claim.get("prNumber"),
            "prUrl": claim.get("prUrl"),
            "completedAtMs": now_ms,
            "completedAt": _iso_from_ms(now_ms),
        }

    def _synthesize_claim(
        self,
        state: dict[str, Any],
        item_id: str,
        session_key: str | None,
        label: str | None,
        now_ms: int,
    ) -> dict[str, Any]:
        from_backlog = next(
            (
                item
                for item in state["backlog"]["items"]
                if isinstance(item, dict) and item.get("itemId") == item_id
            ),
            {},
        )
        queue = from_backlog.get("queueTag") or self.queue_tag
        return {
            "itemId": item_id,
            "queue": queue,
            "label": label or build_label(queue, item_id, now_ms),
            "workLine": from_backlog.get("workLine"),
            "sessionKey": session_key or None,
            "leaseMs": self.lease_ms,
            "claimedAtMs": now_ms,
            "heartbeatAtMs": now_ms,
            "createdAtMs": now_ms,
            "lockPath": str(self.locks.lock_path_for(item_id)),
        }

    # -- release ------------------------------------------------------------

    def release(
        self,
        item_id: str,
        *,
        session_key: str | None = None,
        force: bool = False,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Drop a claim and its lock file so the item can be claimed again."""
        validate_item_id(item_id)
        with self.gate.exclusive(self.state_path):
            now_ms = self.now_fn()
            state = load_state(self.state_path, now_ms=now_ms)
            claim = state["claims"].get(item_id)
            lock_path = self.locks.lock_path_for(item_id)
            if isinstance(claim, dict) and claim.get("lockPath"):
                lock_path = Path(claim["lockPath"])

            if claim is None and not lock_path.exists():
                raise NotFound(
                    f"No claim or lock found for item {item_id}",
                    itemId=item_id,
                    statePath=str(self.state_path),
                )

            stale = claim_is_stale(claim, now_ms, default_ttl_ms=self.stale_ttl_ms)
            if isinstance(claim, dict) and not force:
                stored_session = claim.get("sessionKey")
                if session_key and stored_session and stored_session != session_key:
                    raise SessionMismatch(
                        f"Session key mismatch for item {item_id}",
                        itemId=item_id,
                        expectedSession=stored_session,
                        gotSession=session_key,
                    )
                owned = bool(session_key) and stored_session == session_key
                if not owned and not stale and not claim_is_terminal(claim):
                    raise ClaimActive(
                        f"Claim for item {item_id} is live; pass --force or the owner session",
                        itemId=item_id,
                        sessionKey=stored_session,
                    )

            released_claim = state["claims"].pop(item_id, None) is not None
            if released_claim:
                persist_state(self.state_path, state, now_ms=now_ms)
            removed_lock = self.locks.remove(item_id, lock_path=lock_path)

        _append_log(
            self.log_path,
            f"release: item={item_id} stale={stale} force={force} reason={reason or 'manual release'}",
        )
        return {
            "statePath": str(self.state_path),
            "itemId": item_id,
            "releasedClaim": released_claim,
            "removedLock": removed_lock,
            "lockPath": str(lock_path),
            "wasStale": stale,
            "reason": reason or "manual release",
        }

    # -- status -------------------------------------------------------------

    def status(self, *, stale_only: bool = False, ttl_ms: int | None = None) -> dict[str, Any]:
        _require_positive_ms(ttl_ms, "ttl_ms")
        now_ms = self.now_fn()
        state = load_state(self.state_path, now_ms=now_ms)
        claims_map = state["claims"]

        claims: list[dict[str, Any]] = []
        for raw in claims_map.values():
            if not isinstance(raw, dict):
                continue
            view = Claim.from_mapping(raw, default_lease_ms=self.stale_ttl_ms)
            lock_path = Path(view.lock_path) if view.lock_path else self.locks.lock_path_for(view.item_id)
            claims.append(
                {
                    "itemId": view.item_id,
                    "status": view.status or None,
                    "queue": view.queue,
                    "label": view.label,
                    "sessionKey": view.session_key,
                    "claimedAtMs": view.claimed_at_ms,
                    "heartbeatAtMs": view.heartbeat_at_ms or view.claimed_at_ms,
                    "leaseMs": claim_ttl_ms(
                        raw, ttl_override_ms=ttl_ms, default_ttl_ms=self.stale_ttl_ms
                    ),
                    "ageMs": now_ms - view.claimed_at_ms if view.claimed_at_ms else None,
                    "stale": claim_is_stale(
                        raw, now_ms, ttl_override_ms=ttl_ms, default_ttl_ms=self.stale_ttl_ms
                    ),
                    "lockPath": str(lock_path),
                    "lockExists": lock_path.exists(),
                    "branch": view.branch,
                    "prNumber": view.pr_number,
                    "prUrl": view.pr_url,
                }
            )
        claims.sort(key=lambda entry: entry["itemId"])

        locks: list[dict[str, Any]] = []
        for record in self.locks.list_all(now_ms=now_ms):
            item_claim = claims_map.get(record.item_id)
            if not isinstance(item_claim, dict):
                item_claim = None
            ttl = claim_ttl_ms(item_claim, ttl_override_ms=ttl_ms, default_ttl_ms=self.stale_ttl_ms)
            data = record.data or {}
            locks.append(
                {
                    "itemId": record.item_id,
                    "lockPath": str(record.lock_path),
                    "ageMs": record.age_ms,
                    "mtimeMs": record.mtime_ms,
                    "stale": record.age_ms > ttl and not claim_is_terminal(item_claim),
                    "status": data.get("status"),
                    "label": data.get("label"),
                    "sessionKey": data.get("sessionKey"),
                    "prNumber": data.get("prNumber"),
                    "prUrl": data.get("prUrl"),
                }
            )

        stale_claims = [entry for entry in claims if entry["stale"]]
        stale_locks = [entry for entry in locks if entry["stale"]]
        return {
            "statePath": str(self.state_path),
            "lockDir": str(self.lock_dir),
            "nowMs": now_ms,
            "now": _iso_from_ms(now_ms),
            "totals": {
                "claims": len(claims),
                "staleClaims": len(stale_claims),
                "locks": len(locks),
                "staleLocks": len(stale_locks),
            },
            "claims": stale_claims if stale_only else claims,
            "locks": stale_locks if stale_only else locks,
        }

    # -- mirror -------------------------------------------------------------

    def _mirror(self, item_id: str, lock_path: Path, patch: dict[str, Any]) -> bool:
        try:
            self.locks.merge_update(item_id, patch, lock_path=lock_path)
        except OSError as exc:
            _append_log(self.log_path, f"lock mirror update failed: item={item_id} error={exc}")
            return False
        return True
