"""workq constants: defaults, status sets, reason codes and backlog patterns."""

from __future__ import annotations

import re
from pathlib import Path

STATE_SCHEMA_VERSION = 1

DEFAULT_STATE_PATH = Path(".workq") / "state.json"
DEFAULT_LOCK_DIR = Path(".locks")
DEFAULT_CONFIG_FILENAME = "config.yaml"
DEFAULT_LOG_RELATIVE_PATH = Path("logs") / "workq.log"

DEFAULT_QUEUE_TAG = "zsc"
DEFAULT_LEASE_MS = 2 * 60 * 60 * 1000
DEFAULT_STALE_TTL_MS = 2 * 60 * 60 * 1000
DEFAULT_STATE_LOCK_WAIT_MS = 10_000
DEFAULT_STATE_LOCK_STALE_MS = 30_000
DEFAULT_STATE_LOCK_POLL_MS = 50

ENV_STATE_PATH = "WORKQ_STATE"
ENV_LOCK_DIR = "WORKQ_LOCK_DIR"
ENV_CONFIG_PATH = "WORKQ_CONFIG"

MUTEX_SUFFIX = ".mutex"

STATUS_CLAIMED = "claimed"
STATUS_DONE = "done"
STATUS_PR_OPENED = "pr_opened"
TERMINAL_STATUSES = frozenset({"done", "complete", "completed", "pr_opened"})

SKIP_NO_AUTO_START = "no_auto_start"
SKIP_BLOCKED_BY = "blocked_by"
NO_ELIGIBLE_ITEMS = "no_eligible_items"

LOCK_FILE_PREFIX = "workitem-"
LOCK_FILE_SUFFIX = ".lock"
LOCK_FILE_PATTERN = re.compile(r"^workitem-([^.]+)\.lock$")

CURRENT_SECTION_PATTERN = re.compile(r"^##\s+Current items\s*$", re.IGNORECASE)
DONE_SECTION_PATTERN = re.compile(r"^##\s+Done\s*$", re.IGNORECASE)
ITEM_LINE_PATTERN = re.compile(r"^([0-9]+[a-z0-9]*)\.\s+(.*)$", re.IGNORECASE)
ITEM_ID_PATTERN = re.compile(r"^[0-9]+[a-z0-9]*$", re.IGNORECASE)
LINE_BREAK_PATTERN = re.compile(r"\r?\n")
QUEUE_TAG_PATTERN = re.compile(r"\[([a-z]+)\]", re.IGNORECASE)
NO_AUTO_START_PATTERN = re.compile(r"\*\*no-auto-start\*\*", re.IGNORECASE)
NO_AUTO_MERGE_PATTERN = re.compile(r"\*\*no-auto-merge\*\*", re.IGNORECASE)
BLOCKED_BY_PATTERN = re.compile(r"\bblocked-by\s*:", re.IGNORECASE)


def not_queue_reason(queue_tag: str) -> str:
    """Skip reason for items whose tag differs from the required queue tag."""
    return f"not_{queue_tag}"
