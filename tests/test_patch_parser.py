from __future__ import annotations

import pytest

from acode.tools.patch import (
    HunkKind,
    PatchParseError,
    parse_patch,
    summarize_patch,
)


@pytest.mark.parametrize(
    ("text", "line", "fragment"),
    [
        ("", 1, "empty"),
        ("   \n\n", 1, "empty"),
        ("hello\n*** End Patch", 1, "*** Begin Patch"),
        ("*** Begin Patch\n*** Add File: a.txt\n+x", 3, "*** End Patch"),
        ("*** Begin Patch\n*** Add File: a.txt\n*** End Patch", 2, "'+' line"),
        ("*** Begin Patch\n*** Frobnicate: a.txt\n*** End Patch", 2, "unknown patch header"),
        ("*** Begin Patch\n*** Update File: a.txt\n*** End Patch", 2, "has no changes"),
        ("*** Begin Patch\n*** Update File: a.txt\n@@\n?bad\n*** End Patch", 4, "invalid line"),
        ("*** Begin Patch\n*** Update File: a.txt\n@@\n-a\n+b\nstray\n*** End Patch", 6, "'@@'"),
        ("*** Begin Patch\n*** Update File: a.txt\n*** Move to: \n@@\n-a\n*** End Patch", 3, "Move to"),
    ],
)
def test_parse_errors_report_line_numbers(text: str, line: int, fragment: str) -> None:
    with pytest.raises(PatchParseError) as excinfo:
        parse_patch(text)

    assert excinfo.value.line == line
    assert fragment in str(excinfo.value)
    assert str(excinfo.value).startswith(f"Patch parse failed (line {line})")


def test_parse_errors_are_deterministic() -> None:
    text = "*** Begin Patch\n*** Update File: a.txt\n@@\n context\n!oops\n*** End Patch"

    errors = []
    for _ in range(3):
        with pytest.raises(PatchParseError) as excinfo:
            parse_patch(text)
        errors.append((excinfo.value.line, str(excinfo.value)))

    assert len(set(errors)) == 1


def test_parse_patch_with_every_operation() -> None:
    text = "\n".join(
        [
            "*** Begin Patch",
            "*** Update File: src/app.py",
            "*** Move to: src/main.py",
            "@@ def main():",
            "-    return 1",
            "+    return 2",
            "*** End of File",
            "*** Delete File: old.txt",
            "*** Add File: new.txt",
            "+hello",
            "+world",
            "*** End Patch",
        ]
    )

    patch = parse_patch(text)

    assert [hunk.kind for hunk in patch.hunks] == [HunkKind.UPDATE, HunkKind.DELETE, HunkKind.ADD]
    update, delete, add = patch.hunks
    assert update.path == "src/app.py"
    assert update.move_to == "src/main.py"
    assert len(update.chunks) == 1
    chunk = update.chunks[0]
    assert chunk.change_context == "def main():"
    assert chunk.old_lines == ["    return 1"]
    assert chunk.new_lines == ["    return 2"]
    assert chunk.end_of_file is True
    assert delete.path == "old.txt"
    assert add.add_lines == ["hello", "world"]
    assert patch.raw == text


def test_first_chunk_may_omit_header() -> None:
    patch = parse_patch("*** Begin Patch\n*** Update File: a.txt\n foo\n-bar\n+baz\n*** End Patch")

    chunk = patch.hunks[0].chunks[0]
    assert chunk.change_context is None
    assert chunk.old_lines == ["foo", "bar"]
    assert chunk.new_lines == ["foo", "baz"]


def test_multiple_chunks_and_blank_context_lines() -> None:
    text = "\n".join(
        [
            "*** Begin Patch",
            "*** Update File: a.txt",
            "@@ class A:",
            " x = 1",
            "",
            "-y = 2",
            "+y = 3",
            "@@",
            "-z = 4",
            "+z = 5",
            "*** End Patch",
        ]
    )

    chunks = parse_patch(text).hunks[0].chunks

    assert len(chunks) == 2
    assert chunks[0].old_lines == ["x = 1", "", "y = 2"]
    assert chunks[0].new_lines == ["x = 1", "", "y = 3"]
    assert chunks[1].change_context is None
    assert chunks[1].old_lines == ["z = 4"]


def test_crlf_line_endings_are_tolerated() -> None:
    patch = parse_patch("*** Begin Patch\r\n*** Add File: a.txt\r\n+x\r\n*** End Patch\r\n")

    assert patch.hunks[0].add_lines == ["x"]


def test_blank_lines_between_hunks_are_skipped() -> None:
    text = "*** Begin Patch\n\n*** Delete File: a.txt\n\n*** Delete File: b.txt\n*** End Patch"

    assert [hunk.path for hunk in parse_patch(text).hunks] == ["a.txt", "b.txt"]


def test_summarize_patch_deduplicates_and_renders_renames() -> None:
    text = "\n".join(
        [
            "*** Begin Patch",
            "*** Add File: new.txt",
            "+x",
            "*** Update File: a.txt",
            "@@",
            "-1",
            "+2",
            "*** Update File: a.txt",
            "@@",
            "-3",
            "+4",
            "*** Update File: old.py",
            "*** Move to: pkg/new.py",
            "@@",
            "-a",
            "+b",
            "*** Delete File: gone.txt",
            "*** End Patch",
        ]
    )

    summary = summarize_patch(parse_patch(text))

    assert summary.paths == ["new.txt", "a.txt", "old.py -> pkg/new.py", "gone.txt"]
    assert summary.added == ["new.txt"]
    assert summary.modified == ["a.txt", "pkg/new.py"]
    assert summary.deleted == ["gone.txt"]
    assert summary.has_deletes()
