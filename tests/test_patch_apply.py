from __future__ import annotations

import json
import logging
import os
import stat
from pathlib import Path

import pytest

from acode.tools.patch import (
    PatchApplyError,
    PatchError,
    _Replacement,
    apply_patch_text,
    apply_replacements,
    extract_patch_text,
    format_patch_result,
    parse_apply_patch_arguments,
)
from acode.tools.seek import MATCH_STRATEGIES, normalise_punctuation, seek_sequence


def _patch(*lines: str) -> str:
    return "\n".join(["*** Begin Patch", *lines, "*** End Patch"])


def test_add_file_creates_content_with_trailing_newline(workspace: Path) -> None:
    result = apply_patch_text("*** Begin Patch\n*** Add File: hello.txt\n+Hello world\n*** End Patch", workspace)

    assert (workspace / "hello.txt").read_text(encoding="utf-8") == "Hello world\n"
    assert result.summary.added == ["hello.txt"]


def test_add_file_creates_parent_directories(workspace: Path) -> None:
    apply_patch_text(_patch("*** Add File: pkg/sub/mod.py", "+x = 1", "+y = 2"), workspace)

    assert (workspace / "pkg" / "sub" / "mod.py").read_text(encoding="utf-8") == "x = 1\ny = 2\n"


def test_update_matches_despite_trailing_whitespace(workspace: Path) -> None:
    target = workspace / "notes.txt"
    target.write_text("foo   \nkeep\n", encoding="utf-8")

    apply_patch_text(_patch("*** Update File: notes.txt", "@@", "-foo", "+bar"), workspace)

    assert target.read_text(encoding="utf-8") == "bar\nkeep\n"


def test_update_matches_typographic_punctuation(workspace: Path) -> None:
    target = workspace / "quote.py"
    target.write_text("value = “quoted” – text\nother = 1\n", encoding="utf-8")

    apply_patch_text(
        _patch("*** Update File: quote.py", "@@", '-value = "quoted" - text', '+value = "plain"'),
        workspace,
    )

    assert target.read_text(encoding="utf-8") == 'value = "plain"\nother = 1\n'


def test_context_line_anchors_the_chunk(workspace: Path) -> None:
    target = workspace / "funcs.py"
    target.write_text("def a():\n    return 1\n\ndef b():\n    return 1\n", encoding="utf-8")

    apply_patch_text(
        _patch("*** Update File: funcs.py", "@@ def b():", "-    return 1", "+    return 2"),
        workspace,
    )

    assert target.read_text(encoding="utf-8") == "def a():\n    return 1\n\ndef b():\n    return 2\n"


def test_chunks_are_matched_in_order(workspace: Path) -> None:
    target = workspace / "list.txt"
    target.write_text("x\nmid\nx\n", encoding="utf-8")

    apply_patch_text(
        _patch("*** Update File: list.txt", "@@", "-x", "+first", "@@", "-x", "+second"),
        workspace,
    )

    assert target.read_text(encoding="utf-8") == "first\nmid\nsecond\n"


def test_end_of_file_chunk_prefers_the_tail(workspace: Path) -> None:
    target = workspace / "tail.txt"
    target.write_text("x\ny\nx\n", encoding="utf-8")

    apply_patch_text(_patch("*** Update File: tail.txt", "@@", "-x", "+z", "*** End of File"), workspace)

    assert target.read_text(encoding="utf-8") == "x\ny\nz\n"


def test_chunk_without_old_lines_appends(workspace: Path) -> None:
    target = workspace / "log.txt"
    target.write_text("a\n", encoding="utf-8")

    apply_patch_text(_patch("*** Update File: log.txt", "@@", "+b"), workspace)

    assert target.read_text(encoding="utf-8") == "a\nb\n"


def test_trailing_blank_context_is_retried_without_it(workspace: Path) -> None:
    target = workspace / "short.txt"
    target.write_text("a\nb\n", encoding="utf-8")

    apply_patch_text(_patch("*** Update File: short.txt", "@@", " a", "-b", "+c", ""), workspace)

    assert target.read_text(encoding="utf-8") == "a\nc\n"


def test_update_preserves_permissions(workspace: Path) -> None:
    target = workspace / "run.sh"
    target.write_text("echo one\n", encoding="utf-8")
    os.chmod(target, 0o755)

    apply_patch_text(_patch("*** Update File: run.sh", "@@", "-echo one", "+echo two"), workspace)

    assert stat.S_IMODE(target.stat().st_mode) == 0o755
    assert target.read_text(encoding="utf-8") == "echo two\n"


def test_move_writes_destination_and_removes_source(workspace: Path) -> None:
    (workspace / "old.txt").write_text("a\n", encoding="utf-8")

    result = apply_patch_text(
        _patch("*** Update File: old.txt", "*** Move to: nested/new.txt", "@@", "-a", "+b"),
        workspace,
    )

    assert not (workspace / "old.txt").exists()
    assert (workspace / "nested" / "new.txt").read_text(encoding="utf-8") == "b\n"
    assert result.summary.paths == ["old.txt -> nested/new.txt"]
    assert result.summary.modified == ["nested/new.txt"]


def test_move_onto_itself_keeps_the_file(workspace: Path) -> None:
    (workspace / "same.txt").write_text("a\n", encoding="utf-8")

    apply_patch_text(_patch("*** Update File: same.txt", "*** Move to: same.txt", "@@", "-a", "+b"), workspace)

    assert (workspace / "same.txt").read_text(encoding="utf-8") == "b\n"


def test_delete_removes_file(workspace: Path) -> None:
    (workspace / "gone.txt").write_text("bye\n", encoding="utf-8")

    result = apply_patch_text(_patch("*** Delete File: gone.txt"), workspace)

    assert not (workspace / "gone.txt").exists()
    assert result.summary.deleted == ["gone.txt"]


def test_delete_missing_file_fails(workspace: Path) -> None:
    with pytest.raises(PatchApplyError, match="does not exist"):
        apply_patch_text(_patch("*** Delete File: missing.txt"), workspace)


@pytest.mark.parametrize("path", ["../evil.txt", "nested/../../evil.txt", "/tmp/evil.txt"])
def test_paths_outside_the_workspace_are_rejected(workspace: Path, path: str) -> None:
    with pytest.raises(PatchApplyError):
        apply_patch_text(_patch(f"*** Add File: {path}", "+x"), workspace)

    assert not (workspace.parent / "evil.txt").exists()


def test_reapplying_an_update_fails(workspace: Path) -> None:
    target = workspace / "once.txt"
    target.write_text("alpha\nbeta\n", encoding="utf-8")
    text = _patch("*** Update File: once.txt", "@@", " alpha", "-beta", "+gamma")

    apply_patch_text(text, workspace)
    assert target.read_text(encoding="utf-8") == "alpha\ngamma\n"

    with pytest.raises(PatchApplyError, match="expected lines not found"):
        apply_patch_text(text, workspace)
    assert target.read_text(encoding="utf-8") == "alpha\ngamma\n"


def test_failed_hunk_keeps_earlier_hunks(workspace: Path, caplog: pytest.LogCaptureFixture) -> None:
    text = _patch("*** Add File: first.txt", "+one", "*** Update File: missing.txt", "@@", "-a", "+b")

    with caplog.at_level(logging.INFO, logger="acode.telemetry"):
        with pytest.raises(PatchApplyError):
            apply_patch_text(text, workspace)

    assert (workspace / "first.txt").read_text(encoding="utf-8") == "one\n"
    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "acode.telemetry"]
    failed = [event for event in events if event["event"] == "patch_apply_failed"]
    assert failed and failed[0]["applied_hunks"] == 1
    assert failed[0]["path"] == "missing.txt"


def test_patch_without_operations_fails(workspace: Path) -> None:
    with pytest.raises(PatchApplyError, match="no file operations"):
        apply_patch_text("*** Begin Patch\n*** End Patch", workspace)


def test_overlapping_and_out_of_bounds_ranges_are_rejected() -> None:
    original = ["a", "b", "c"]

    with pytest.raises(PatchApplyError, match="overlap"):
        apply_replacements(original, [_Replacement(0, 2, ["x"]), _Replacement(1, 1, ["y"])])
    with pytest.raises(PatchApplyError, match="bounds"):
        apply_replacements(original, [_Replacement(2, 5, ["x"])])


def test_seek_sequence_tries_strategies_in_order() -> None:
    lines = ["  alpha  ", "beta ", "gamma"]

    assert [strategy.name for strategy in MATCH_STRATEGIES] == [
        "identity",
        "trim_end",
        "trim",
        "normalise_punctuation",
    ]
    assert seek_sequence(lines, ["alpha"], 0) == 0
    assert seek_sequence(lines, ["beta ", "gamma"], 0) == 1
    assert seek_sequence(lines, ["gamma"], 1, end_of_file=True) == 2
    assert seek_sequence(lines, ["alpha"], 1) == -1
    assert seek_sequence(lines, [], 2) == 2
    assert seek_sequence(lines, ["a", "b", "c", "d"], 0) == -1
    assert normalise_punctuation("‘x’ — “y”") == "'x' - \"y\""


def test_extract_patch_text_accepts_common_shapes() -> None:
    body = "*** Begin Patch\n*** Delete File: a.txt\n*** End Patch"

    assert extract_patch_text({"input": body}) == body
    assert extract_patch_text({"patch": body}) == body
    assert extract_patch_text(json.dumps({"input": body})) == body
    assert extract_patch_text(json.dumps(json.dumps({"patch": body}))) == body
    assert extract_patch_text(body) == body
    with pytest.raises(PatchError):
        extract_patch_text({"other": body})


def test_parse_apply_patch_arguments_summarises() -> None:
    body = "*** Begin Patch\n*** Delete File: a.txt\n*** Delete File: b.txt\n*** End Patch"

    request = parse_apply_patch_arguments({"input": body})

    assert request.patch == body
    assert request.summary.deleted == ["a.txt", "b.txt"]


def test_format_patch_result_lists_paths(workspace: Path) -> None:
    result = apply_patch_text(_patch("*** Add File: a.txt", "+x"), workspace)

    output = format_patch_result(result)

    assert output.startswith("Applied patch (added 1 / modified 0 / deleted 0):\n- a.txt\n")
    assert output.endswith("\nPatch:\n" + result.patch)


def test_chunk_header_with_trailing_space_has_no_context(workspace: Path) -> None:
    target = workspace / "a.py"
    target.write_text("x = 1\ny = 2\n", encoding="utf-8")

    apply_patch_text(_patch("*** Update File: a.py", "@@ ", "-y = 2", "+y = 3"), workspace)

    assert target.read_text(encoding="utf-8") == "x = 1\ny = 3\n"
