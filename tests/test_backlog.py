from __future__ import annotations

from pathlib import Path

import pytest

from workq.backlog import parse_backlog, read_backlog
from workq.models import SectionNotFound, UsageError


BACKLOG_TEXT = (
    "# Work items\n"
    "\n"
    "Intro prose that is not part of any section.\n"
    "1. Outside the section [zsc]\n"
    "\n"
    "## Current items\n"
    "Some context about the queue.\n"
    "1. Add login page [zsc]\n"
    "2. Refactor parser [zsc] **no-auto-merge**\n"
    "3. Fix bug [zsc] **no-auto-start**\n"
    "4. Docs pass [web]\n"
    "   5a. Wire metrics [ZSC] Blocked-By: 2\n"
    "6. Untagged item\n"
    "- a bullet that is not an item\n"
    "\n"
    "## Done\n"
    "7. Old thing [zsc]\n"
)


def test_parse_extracts_items_in_document_order() -> None:
    items = parse_backlog(BACKLOG_TEXT)

    assert [item.item_id for item in items] == ["1", "2", "3", "4", "5a", "6"]
    assert [item.line_number for item in items] == [8, 9, 10, 11, 12, 13]
    assert items[4].work_line == "5a. Wire metrics [ZSC] Blocked-By: 2"


def test_parse_no_auto_start_line() -> None:
    items = parse_backlog("## Current items\n3. Fix bug [zsc] **no-auto-start**\n")

    assert len(items) == 1
    item = items[0]
    assert item.item_id == "3"
    assert item.queue_tag == "zsc"
    assert item.no_auto_start is True
    assert item.eligible is False
    assert list(item.skip_reasons) == ["no_auto_start"]


def test_eligibility_and_skip_reasons() -> None:
    by_id = {item.item_id: item for item in parse_backlog(BACKLOG_TEXT)}

    assert by_id["1"].eligible is True
    assert by_id["1"].skip_reasons == ()
    # no-auto-merge never blocks eligibility
    assert by_id["2"].no_auto_merge is True
    assert by_id["2"].eligible is True
    assert by_id["4"].queue_tag == "web"
    assert by_id["4"].skip_reasons == ("not_zsc",)
    assert by_id["5a"].queue_tag == "zsc"
    assert by_id["5a"].blocked_by is True
    assert by_id["5a"].skip_reasons == ("blocked_by",)
    assert by_id["6"].queue_tag is None
    assert by_id["6"].skip_reasons == ("not_zsc",)


def test_items_after_done_header_are_ignored() -> None:
    ids = [item.item_id for item in parse_backlog(BACKLOG_TEXT)]
    assert "7" not in ids


def test_section_header_is_case_insensitive_and_runs_to_end_without_done() -> None:
    items = parse_backlog("## CURRENT ITEMS  \n1. a [zsc]\n\n2. b [zsc]\n")
    assert [item.item_id for item in items] == ["1", "2"]


def test_first_bracketed_tag_wins() -> None:
    items = parse_backlog("## Current items\n9. Mixed [web] then [zsc]\n")
    assert items[0].queue_tag == "web"
    assert items[0].eligible is False


def test_custom_queue_tag_changes_eligibility_and_reason() -> None:
    items = parse_backlog(BACKLOG_TEXT, queue_tag="web")
    by_id = {item.item_id: item for item in items}

    assert by_id["4"].eligible is True
    assert by_id["1"].skip_reasons == ("not_web",)


def test_missing_section_raises() -> None:
    with pytest.raises(SectionNotFound) as excinfo:
        parse_backlog("# Backlog\n1. item [zsc]\n")
    assert excinfo.value.code == "E_BACKLOG_SECTION"


def test_serialized_item_uses_camel_case_keys() -> None:
    payload = parse_backlog("## Current items\n12a. Thing [zsc]\n")[0].to_dict()
    assert payload == {
        "itemId": "12a",
        "queueTag": "zsc",
        "workLine": "12a. Thing [zsc]",
        "lineNumber": 2,
        "noAutoStart": False,
        "noAutoMerge": False,
        "blockedBy": False,
        "eligible": True,
        "skipReasons": [],
    }


def test_read_backlog_resolves_file_and_reports_missing(tmp_path: Path) -> None:
    backlog = tmp_path / "WORK_ITEMS.md"
    backlog.write_text(BACKLOG_TEXT, encoding="utf-8")

    parsed = read_backlog(backlog, now_ms=1234)
    assert parsed.backlog_file == backlog.resolve()
    assert parsed.scanned_at_ms == 1234
    assert len(parsed.items) == 6

    with pytest.raises(UsageError) as excinfo:
        read_backlog(tmp_path / "missing.md")
    assert excinfo.value.code == "E_BACKLOG_FILE"


def test_read_backlog_section_error_carries_file(tmp_path: Path) -> None:
    backlog = tmp_path / "WORK_ITEMS.md"
    backlog.write_text("# nothing here\n", encoding="utf-8")

    with pytest.raises(SectionNotFound) as excinfo:
        read_backlog(backlog)
    assert excinfo.value.details["backlogFile"] == str(backlog.resolve())


def test_only_newlines_split_item_lines() -> None:
    text = "## Current items\r\n1. Fix\u2028 thing [zsc]\r\n2. Form\x0cfeed [zsc]\n3. b [zsc]\n"

    items = parse_backlog(text)

    assert [(item.item_id, item.queue_tag, item.line_number, item.eligible) for item in items] == [
        ("1", "zsc", 2, True),
        ("2", "zsc", 3, True),
        ("3", "zsc", 4, True),
    ]
    assert items[0].work_line == "1. Fix\u2028 thing [zsc]"
