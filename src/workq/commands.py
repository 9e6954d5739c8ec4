from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, NoReturn

from workq.config import load_config
from workq.coordinator import Coordinator
from workq.models import UsageError, WorkqError

USAGE_LINES = [
    "workq <command> [options]",
    "",
    "Commands:",
    "  sync-backlog --file <WORK_ITEMS_GLOBAL.md> [--queue-tag zsc] [--state <state.json>]",
    "  claim [--queue zsc] [--session <sessionKey>] [--lease-ms <ms>] [--label <label>]",
    "  heartbeat --item <id> --session <sessionKey> [--lease-ms <ms>]",
    "  complete --item <id> [--status <done|pr_opened>] [--branch <name>] [--pr <number>] [--url <prUrl>] [--session <sessionKey>]",
    "  status|list [--stale] [--ttl-ms <ms>]",
    "  release --item <id> [--session <sessionKey>] [--force] [--reason <text>]",
    "  help",
    "",
    "Common options: --state <state.json> --lock-dir <dir> --config <config.yaml>",
    "  --state-lock-wait-ms <ms> --state-lock-stale-ms <ms> --state-lock-poll-ms <ms>",
    "",
    "Notes:",
    "  - Output is one JSON object on stdout for every command.",
    "  - Default state: .workq/state.json; default lock dir: .locks (or WORKQ_STATE / WORKQ_LOCK_DIR).",
]


class _JsonArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise UsageError(message, help=USAGE_LINES)


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def _emit_result(command: str, result: dict[str, Any]) -> int:
    _emit({"ok": True, "command": command, **result})
    return 0


def _parse_int_option(value: str | None, flag: str) -> int | None:
    if value is None:
        return None
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        parsed = float(text)
    except ValueError:
        parsed = float("nan")
    if parsed != parsed or not parsed.is_integer():
        raise UsageError(f"{flag} must be a number", got=value)
    return int(parsed)


def _parse_positive_ms(value: str | None, flag: str) -> int | None:
    parsed = _parse_int_option(value, flag)
    if parsed is not None and parsed <= 0:
        raise UsageError(f"{flag} must be a positive number of milliseconds", got=value)
    return parsed


def _coordinator_from_args(args: argparse.Namespace) -> Coordinator:
    config = load_config(
        state=args.state,
        lock_dir=args.lock_dir,
        config=args.config,
        gate_wait_ms=_parse_int_option(args.state_lock_wait_ms, "--state-lock-wait-ms"),
        gate_stale_ms=_parse_int_option(args.state_lock_stale_ms, "--state-lock-stale-ms"),
        gate_poll_ms=_parse_int_option(args.state_lock_poll_ms, "--state-lock-poll-ms"),
    )
    return Coordinator.from_config(config)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_help(args: argparse.Namespace) -> int:
    return _emit_result("help", {"usage": USAGE_LINES})


def _cmd_sync_backlog(args: argparse.Namespace) -> int:
    if not args.file:
        raise UsageError("sync-backlog requires --file <WORK_ITEMS_GLOBAL.md>")
    coordinator = _coordinator_from_args(args)
    result = coordinator.sync_backlog(Path(args.file), queue_tag=args.queue_tag)
    return _emit_result("sync-backlog", result)


def _cmd_claim(args: argparse.Namespace) -> int:
    lease_ms = _parse_positive_ms(args.lease_ms, "--lease-ms")
    coordinator = _coordinator_from_args(args)
    result = coordinator.claim(
        args.queue,
        session_key=args.session,
        lease_ms=lease_ms,
        label=args.label,
    )
    return _emit_result("claim", result)


def _cmd_heartbeat(args: argparse.Namespace) -> int:
    if not args.item or not args.session:
        raise UsageError("heartbeat requires --item <id> --session <sessionKey>")
    lease_ms = _parse_positive_ms(args.lease_ms, "--lease-ms")
    coordinator = _coordinator_from_args(args)
    result = coordinator.heartbeat(args.item, args.session, lease_ms=lease_ms)
    return _emit_result("heartbeat", result)


def _cmd_complete(args: argparse.Namespace) -> int:
    if not args.item:
        raise UsageError("complete requires --item <id>")
    pr_number = _parse_int_option(args.pr, "--pr")
    coordinator = _coordinator_from_args(args)
    result = coordinator.complete(
        args.item,
        branch=args.branch or None,
        pr_number=pr_number,
        pr_url=args.url or None,
        status=args.status or None,
        session_key=args.session or None,
        label=args.label or None,
    )
    return _emit_result("complete", result)


def _cmd_status(args: argparse.Namespace) -> int:
    ttl_ms = _parse_positive_ms(args.ttl_ms, "--ttl-ms")
    coordinator = _coordinator_from_args(args)
    result = coordinator.status(stale_only=bool(args.stale), ttl_ms=ttl_ms)
    return _emit_result("status", result)


def _cmd_release(args: argparse.Namespace) -> int:
    if not args.item:
        raise UsageError("release requires --item <id>")
    coordinator = _coordinator_from_args(args)
    result = coordinator.release(
        args.item,
        session_key=args.session or None,
        force=bool(args.force),
        reason=args.reason or None,
    )
    return _emit_result("release", result)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--state", default=None, help="Path to state JSON (default: .workq/state.json)")
    parser.add_argument("--lock-dir", default=None, help="Directory holding per-item lock files (default: .locks)")
    parser.add_argument("--config", default=None, help="Path to config YAML (default: <state dir>/config.yaml)")
    parser.add_argument("--state-lock-wait-ms", default=None, help="Max wait for the state gate")
    parser.add_argument("--state-lock-stale-ms", default=None, help="Age after which a gate marker is taken over")
    parser.add_argument("--state-lock-poll-ms", default=None, help="Gate poll interval")


def _build_parser() -> argparse.ArgumentParser:
    parser = _JsonArgumentParser(prog="workq", description="workq claim/lease coordinator", add_help=False)
    subparsers = parser.add_subparsers(dest="command", parser_class=_JsonArgumentParser)

    help_parser = subparsers.add_parser("help", add_help=False)
    help_parser.set_defaults(handler=_cmd_help)

    sync = subparsers.add_parser("sync-backlog", add_help=False, help="Parse the backlog into state")
    _add_common_args(sync)
    sync.add_argument("--file", default=None, help="Backlog markdown file")
    sync.add_argument("--queue-tag", default=None, help="Tag an item needs to be eligible (default: zsc)")
    sync.set_defaults(handler=_cmd_sync_backlog)

    claim = subparsers.add_parser("claim", add_help=False, help="Claim the next eligible item")
    _add_common_args(claim)
    claim.add_argument("--queue", default=None)
    claim.add_argument("--session", default=None)
    claim.add_argument("--lease-ms", default=None)
    claim.add_argument("--label", default=None)
    claim.set_defaults(handler=_cmd_claim)

    heartbeat = subparsers.add_parser("heartbeat", add_help=False, help="Renew a claim lease")
    _add_common_args(heartbeat)
    heartbeat.add_argument("--item", default=None)
    heartbeat.add_argument("--session", default=None)
    heartbeat.add_argument("--lease-ms", default=None)
    heartbeat.set_defaults(handler=_cmd_heartbeat)

    complete = subparsers.add_parser("complete", add_help=False, help="Mark an item done or PR opened")
    _add_common_args(complete)
    complete.add_argument("--item", default=None)
    complete.add_argument("--status", default=None)
    complete.add_argument("--branch", default=None)
    complete.add_argument("--pr", default=None)
    complete.add_argument("--url", default=None)
    complete.add_argument("--session", default=None)
    complete.add_argument("--label", default=None)
    complete.set_defaults(handler=_cmd_complete)

    for name in ("status", "list"):
        status = subparsers.add_parser(name, add_help=False, help="Show claims and lock files")
        _add_common_args(status)
        status.add_argument("--stale", action="store_true")
        status.add_argument("--ttl-ms", default=None)
        status.set_defaults(handler=_cmd_status)

    release = subparsers.add_parser("release", add_help=False, help="Drop a claim and its lock file")
    _add_common_args(release)
    release.add_argument("--item", default=None)
    release.add_argument("--session", default=None)
    release.add_argument("--force", action="store_true")
    release.add_argument("--reason", default=None)
    release.set_defaults(handler=_cmd_release)

    return parser


def main(argv: list[str] | None = None) -> int:
    raw = list(sys.argv[1:] if argv is None else argv)
    if raw and raw[0] in {"--help", "-h"}:
        raw = ["help"]
    try:
        args = _build_parser().parse_args(raw)
        handler = getattr(args, "handler", None)
        if handler is None:
            raise UsageError("Missing command", help=USAGE_LINES)
        return int(handler(args))
    except WorkqError as exc:
        _emit(exc.to_payload())
        return 1
    except Exception as exc:
        _emit({"ok": False, "error": "E_RUNTIME", "message": str(exc) or type(exc).__name__})
        return 1
