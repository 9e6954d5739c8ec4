from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from workq.constants import (
    DEFAULT_CONFIG_FILENAME,
    DEFAULT_LEASE_MS,
    DEFAULT_LOCK_DIR,
    DEFAULT_LOG_RELATIVE_PATH,
    DEFAULT_QUEUE_TAG,
    DEFAULT_STALE_TTL_MS,
    DEFAULT_STATE_LOCK_POLL_MS,
    DEFAULT_STATE_LOCK_STALE_MS,
    DEFAULT_STATE_LOCK_WAIT_MS,
    DEFAULT_STATE_PATH,
    ENV_CONFIG_PATH,
    ENV_LOCK_DIR,
    ENV_STATE_PATH,
)
from workq.models import WorkqConfig, _coerce_positive_int


def _load_config_file(path: Path | None) -> dict[str, Any]:
    if path is None or not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _resolve_path(raw: Any, *, base: Path) -> Path:
    candidate = Path(str(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate.resolve()


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _resolve_config_path(
    explicit: str | None,
    *,
    env: Mapping[str, str],
    state_path: Path,
    base: Path,
) -> Path | None:
    raw = _first_set(explicit, env.get(ENV_CONFIG_PATH))
    if raw is not None:
        return _resolve_path(raw, base=base)
    candidate = state_path.parent / DEFAULT_CONFIG_FILENAME
    return candidate if candidate.exists() else None


def load_config(
    *,
    state: str | None = None,
    lock_dir: str | None = None,
    config: str | None = None,
    lease_ms: Any = None,
    stale_ttl_ms: Any = None,
    queue_tag: str | None = None,
    gate_wait_ms: Any = None,
    gate_stale_ms: Any = None,
    gate_poll_ms: Any = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> WorkqConfig:
    """Resolve settings: explicit argument > environment > YAML file > defaults.

    Relative paths, wherever they come from, are resolved against ``cwd``.
    The YAML file is ``config`` / ``$WORKQ_CONFIG`` when given, otherwise
    ``config.yaml`` beside the state file if one exists.
    """
    environ = os.environ if env is None else env
    base = (cwd or Path.cwd()).resolve()

    preliminary_state = _resolve_path(
        _first_set(state, environ.get(ENV_STATE_PATH), str(DEFAULT_STATE_PATH)), base=base
    )
    config_path = _resolve_config_path(config, env=environ, state_path=preliminary_state, base=base)
    policy = _load_config_file(config_path)
    gate = policy.get("gate")
    if not isinstance(gate, dict):
        gate = {}

    state_path = _resolve_path(
        _first_set(
            state,
            environ.get(ENV_STATE_PATH),
            policy.get("state_path"),
            str(DEFAULT_STATE_PATH),
        ),
        base=base,
    )
    resolved_lock_dir = _resolve_path(
        _first_set(
            lock_dir,
            environ.get(ENV_LOCK_DIR),
            policy.get("lock_dir"),
            str(DEFAULT_LOCK_DIR),
        ),
        base=base,
    )

    if "log_file" in policy and policy["log_file"] in (None, "", False):
        log_path: Path | None = None
    elif policy.get("log_file"):
        log_path = _resolve_path(policy["log_file"], base=base)
    else:
        log_path = state_path.parent / DEFAULT_LOG_RELATIVE_PATH

    resolved_queue = str(
        _first_set(queue_tag, policy.get("queue_tag"), DEFAULT_QUEUE_TAG)
    ).strip().lower() or DEFAULT_QUEUE_TAG

    def _ms(cli_value: Any, policy_value: Any, default: int) -> int:
        policy_ms = _coerce_positive_int(policy_value, default=default)
        return _coerce_positive_int(cli_value, default=policy_ms)

    return WorkqConfig(
        state_path=state_path,
        lock_dir=resolved_lock_dir,
        lease_ms=_ms(lease_ms, policy.get("lease_ms"), DEFAULT_LEASE_MS),
        stale_ttl_ms=_ms(stale_ttl_ms, policy.get("stale_ttl_ms"), DEFAULT_STALE_TTL_MS),
        queue_tag=resolved_queue,
        gate_wait_ms=_ms(gate_wait_ms, gate.get("wait_ms"), DEFAULT_STATE_LOCK_WAIT_MS),
        gate_stale_ms=_ms(gate_stale_ms, gate.get("stale_ms"), DEFAULT_STATE_LOCK_STALE_MS),
        gate_poll_ms=_ms(gate_poll_ms, gate.get("poll_ms"), DEFAULT_STATE_LOCK_POLL_MS),
        log_path=log_path,
    )
