"""Parser and applier for the ``*** Begin Patch`` edit format emitted by models."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Sequence, Tuple

from .seek import seek_sequence

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("acode.telemetry")

BEGIN_MARKER = "*** Begin Patch"
END_MARKER = "*** End Patch"
ADD_MARKER = "*** Add File: "
DELETE_MARKER = "*** Delete File: "
UPDATE_MARKER = "*** Update File: "
MOVE_MARKER = "*** Move to: "
EOF_MARKER = "*** End of File"
CONTEXT_MARKER = "@@ "
CONTEXT_EMPTY = "@@"


class PatchError(RuntimeError):
    """Base error for patch parsing, validation, and application failures."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class PatchParseError(PatchError):
    """Raised when patch text does not follow the patch grammar."""

    def __init__(self, line: int, message: str) -> None:
        super().__init__(f"Patch parse failed (line {line}): {message}", details={"line": line})
        self.line = line
        self.reason = message


class PatchApplyError(PatchError):
    """Raised when a parsed patch cannot be applied to the workspace."""


class PatchRejectedError(PatchError):
    """Raised when the safety policy or the user declines a patch."""

    def __init__(self, reason: str, *, message: str | None = None) -> None:
        super().__init__(message or f"patch rejected: {reason}", details={"reason": reason})
        self.reason = reason


class HunkKind(str, Enum):
    """File-level operation carried by a hunk."""

    ADD = "add"
    DELETE = "delete"
    UPDATE = "update"


@dataclass(slots=True)
class PatchChunk:
    """One contiguous change block inside an Update hunk."""

    change_context: str | None = None
    old_lines: List[str] = field(default_factory=list)
    new_lines: List[str] = field(default_factory=list)
    end_of_file: bool = False


@dataclass(slots=True)
class PatchHunk:
    """Add, Delete, or Update operation against a single path."""

    kind: HunkKind
    path: str
    move_to: str | None = None
    add_lines: List[str] = field(default_factory=list)
    chunks: List[PatchChunk] = field(default_factory=list)


@dataclass(slots=True)
class Patch:
    """Parsed patch with the normalised source text."""

    hunks: List[PatchHunk]
    raw: str


@dataclass(slots=True)
class PatchSummary:
    """Deduplicated view of the paths a patch touches."""

    paths: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    def has_deletes(self) -> bool:
        return bool(self.deleted)


@dataclass(slots=True)
class ApplyPatchResult:
    """Outcome of a successful patch application."""

    summary: PatchSummary
    patch: str


@dataclass(slots=True)
class ApplyPatchRequest:
    """Patch text extracted from tool arguments along with its summary."""

    patch: str
    summary: PatchSummary


@dataclass(slots=True)
class _Replacement:
    start: int
    old_len: int
    new_lines: List[str]


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_patch_event(event: str, **fields: Any) -> None:
    """Log structured telemetry events when applying patches."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


# ---------------------------------------------------------------------------
# Parsing


def _split_patch_lines(text: str) -> List[str]:
    return [line.rstrip("\r") for line in text.split("\n")]


def parse_patch(patch_text: str) -> Patch:
    """Parse patch text into a :class:`Patch`.

    The parser is a pure function of its input: the same malformed text always
    raises the same :class:`PatchParseError` with the same 1-based line number.
    """
    normalised = patch_text.strip()
    if not normalised:
        raise PatchParseError(1, "patch is empty")

    lines = _split_patch_lines(normalised)
    if len(lines) < 2:
        raise PatchParseError(1, "patch is incomplete")
    if lines[0].strip() != BEGIN_MARKER:
        raise PatchParseError(1, f"first line must be {BEGIN_MARKER!r}")
    if lines[-1].strip() != END_MARKER:
        raise PatchParseError(len(lines), f"last line must be {END_MARKER!r}")

    body = lines[1:-1]
    hunks: List[PatchHunk] = []
    index = 0
    while index < len(body):
        if not body[index].strip():
            index += 1
            continue
        # body[0] is line 2 of the patch
        hunk, consumed = _parse_hunk(body, index, line_offset=2)
        hunks.append(hunk)
        index += consumed

    return Patch(hunks=hunks, raw=normalised)


def _parse_hunk(lines: Sequence[str], start: int, *, line_offset: int) -> Tuple[PatchHunk, int]:
    """Parse one file operation beginning at ``lines[start]``."""
    line_number = start + line_offset
    header = lines[start].strip()

    if header.startswith(ADD_MARKER.strip()):
        path = header[len(ADD_MARKER.strip()):].strip()
        if not path:
            raise PatchParseError(line_number, "Add File is missing a path")
        add_lines: List[str] = []
        for line in lines[start + 1 :]:
            if not line.startswith("+"):
                break
            add_lines.append(line[1:])
        if not add_lines:
            raise PatchParseError(line_number, f"Add File {path!r} needs at least one '+' line")
        return PatchHunk(kind=HunkKind.ADD, path=path, add_lines=add_lines), 1 + len(add_lines)

    if header.startswith(DELETE_MARKER.strip()):
        path = header[len(DELETE_MARKER.strip()):].strip()
        if not path:
            raise PatchParseError(line_number, "Delete File is missing a path")
        return PatchHunk(kind=HunkKind.DELETE, path=path), 1

    if header.startswith(UPDATE_MARKER.strip()):
        path = header[len(UPDATE_MARKER.strip()):].strip()
        if not path:
            raise PatchParseError(line_number, "Update File is missing a path")
        return _parse_update(lines, start, path, line_offset=line_offset)

    raise PatchParseError(line_number, f"unknown patch header: {header!r}")


def _parse_update(
    lines: Sequence[str], start: int, path: str, *, line_offset: int
) -> Tuple[PatchHunk, int]:
    index = start + 1
    move_to: str | None = None
    if index < len(lines) and lines[index].strip().startswith(MOVE_MARKER.strip()):
        move_to = lines[index].strip()[len(MOVE_MARKER.strip()):].strip()
        if not move_to:
            raise PatchParseError(index + line_offset, "Move to is missing a path")
        index += 1

    chunks: List[PatchChunk] = []
    while index < len(lines):
        stripped = lines[index].strip()
        if not stripped:
            index += 1
            continue
        if stripped.startswith("***"):
            break
        chunk, consumed = _parse_chunk(
            lines,
            index,
            line_offset=line_offset,
            allow_missing_context=not chunks,
        )
        chunks.append(chunk)
        index += consumed

    if not chunks:
        raise PatchParseError(start + line_offset, f"Update File {path!r} has no changes")
    hunk = PatchHunk(kind=HunkKind.UPDATE, path=path, move_to=move_to, chunks=chunks)
    return hunk, index - start


def _parse_chunk(
    lines: Sequence[str],
    start: int,
    *,
    line_offset: int,
    allow_missing_context: bool,
) -> Tuple[PatchChunk, int]:
    """Parse an ``@@`` chunk and return it with the number of lines consumed."""
    chunk = PatchChunk()
    first = lines[start]
    body_start = start
    if first.strip() == CONTEXT_EMPTY:
        body_start = start + 1
    elif first.startswith(CONTEXT_MARKER):
        chunk.change_context = first[len(CONTEXT_MARKER):]
        body_start = start + 1
    elif not allow_missing_context:
        raise PatchParseError(
            start + line_offset, f"expected an '@@' chunk header, got {first!r}"
        )

    if body_start >= len(lines):
        raise PatchParseError(body_start + line_offset, "chunk has no change lines")

    parsed = 0
    index = body_start
    while index < len(lines):
        line = lines[index]
        if line == EOF_MARKER:
            if parsed == 0:
                raise PatchParseError(index + line_offset, "chunk has no change lines")
            chunk.end_of_file = True
            index += 1
            return chunk, index - start
        if line == "":
            # Models often drop the leading space on empty context lines.
            chunk.old_lines.append("")
            chunk.new_lines.append("")
        elif line[0] == " ":
            chunk.old_lines.append(line[1:])
            chunk.new_lines.append(line[1:])
        elif line[0] == "+":
            chunk.new_lines.append(line[1:])
        elif line[0] == "-":
            chunk.old_lines.append(line[1:])
        else:
            if parsed == 0:
                raise PatchParseError(index + line_offset, f"invalid line in chunk: {line!r}")
            return chunk, index - start
        parsed += 1
        index += 1

    if parsed == 0:
        raise PatchParseError(body_start + line_offset, "chunk has no change lines")
    return chunk, index - start


# ---------------------------------------------------------------------------
# Summaries and tool arguments


def _append_unique(target: List[str], value: str, seen: set[str]) -> None:
    if not value or value in seen:
        return
    seen.add(value)
    target.append(value)


def summarize_patch(patch: Patch) -> PatchSummary:
    """Walk the hunks once and collect deduplicated path lists."""
    summary = PatchSummary()
    seen_paths: set[str] = set()
    seen_added: set[str] = set()
    seen_modified: set[str] = set()
    seen_deleted: set[str] = set()

    for hunk in patch.hunks:
        if hunk.kind is HunkKind.ADD:
            _append_unique(summary.added, hunk.path, seen_added)
            _append_unique(summary.paths, hunk.path, seen_paths)
        elif hunk.kind is HunkKind.DELETE:
            _append_unique(summary.deleted, hunk.path, seen_deleted)
            _append_unique(summary.paths, hunk.path, seen_paths)
        elif hunk.move_to:
            _append_unique(summary.paths, f"{hunk.path} -> {hunk.move_to}", seen_paths)
            _append_unique(summary.modified, hunk.move_to, seen_modified)
        else:
            _append_unique(summary.paths, hunk.path, seen_paths)
            _append_unique(summary.modified, hunk.path, seen_modified)
    return summary


def extract_patch_text(arguments: Any) -> str:
    """Pull the patch body out of opaque ``apply_patch`` tool arguments.

    Accepts a mapping with ``input`` (preferred) or ``patch``, a JSON document
    encoding either form, or the raw patch text itself.
    """
    if isinstance(arguments, (bytes, bytearray)):
        arguments = arguments.decode("utf-8", errors="replace")

    if isinstance(arguments, Mapping):
        for key in ("input", "patch"):
            candidate = arguments.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        raise PatchError("apply_patch arguments are missing an 'input' or 'patch' field")

    if isinstance(arguments, str):
        text = arguments.strip()
        if not text:
            raise PatchError("apply_patch arguments are empty")
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(decoded, (Mapping, str)):
            return extract_patch_text(decoded)
        raise PatchError("apply_patch arguments must be an object or a string")

    if arguments is None:
        raise PatchError("apply_patch arguments are empty")
    raise PatchError(f"unsupported apply_patch arguments: {type(arguments).__name__}")


def parse_apply_patch_arguments(arguments: Any) -> ApplyPatchRequest:
    """Extract, parse, and summarise the patch carried by tool arguments."""
    text = extract_patch_text(arguments)
    patch = parse_patch(text)
    return ApplyPatchRequest(patch=text, summary=summarize_patch(patch))


def format_patch_result(result: ApplyPatchResult) -> str:
    """Render an applied patch as tool output for the model."""
    summary = result.summary
    parts = [
        f"Applied patch (added {len(summary.added)} / modified {len(summary.modified)} "
        f"/ deleted {len(summary.deleted)}):"
    ]
    if summary.paths:
        parts.append("\n")
        parts.extend(f"- {path}\n" for path in summary.paths)
    patch = result.patch.rstrip("\n")
    if patch.strip():
        parts.append("\nPatch:\n")
        parts.append(patch)
    return "".join(parts)


# ---------------------------------------------------------------------------
# Application


def resolve_patch_path(base_dir: Path, raw: str) -> Path:
    """Resolve ``raw`` under ``base_dir`` rejecting absolute or escaping paths."""
    cleaned = raw.strip()
    if not cleaned:
        raise PatchApplyError("patch path is empty")
    if os.path.isabs(cleaned) or Path(cleaned).is_absolute():
        raise PatchApplyError(f"patch paths must be relative: {cleaned}")
    normalised = os.path.normpath(cleaned)
    if normalised in (".", "..") or normalised.startswith(".." + os.sep) or normalised.startswith("../"):
        raise PatchApplyError(f"patch path escapes the workspace: {raw}")
    candidate = base_dir / normalised
    try:
        candidate.resolve().relative_to(base_dir.resolve())
    except ValueError as error:
        raise PatchApplyError(f"patch path escapes the workspace: {raw}") from error
    return candidate


def _read_lines(path: Path) -> Tuple[List[str], int]:
    try:
        info = path.stat()
    except OSError as error:
        raise PatchApplyError(f"cannot stat {path}: {error}") from error
    if not path.is_file():
        raise PatchApplyError(f"target is not a regular file: {path}")
    try:
        with path.open("r", encoding="utf-8", newline="") as handle:
            content = handle.read()
    except (OSError, UnicodeDecodeError) as error:
        raise PatchApplyError(f"cannot read {path}: {error}") from error
    lines = content.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines, info.st_mode & 0o777


def _write_text(path: Path, content: str, mode: int | None = None) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        if mode is not None:
            os.chmod(path, mode)
    except OSError as error:
        raise PatchApplyError(f"cannot write {path}: {error}") from error


def compute_replacements(original: Sequence[str], chunks: Iterable[PatchChunk], path: str) -> List[_Replacement]:
    """Locate every chunk and return replacement ranges sorted by start line."""
    replacements: List[_Replacement] = []
    line_index = 0

    for chunk in chunks:
        if chunk.change_context is not None:
            found = seek_sequence(original, [chunk.change_context], line_index)
            if found < 0:
                raise PatchApplyError(f"context {chunk.change_context!r} not found in {path}")
            line_index = found + 1

        if not chunk.old_lines:
            insertion = len(original)
            if original and original[-1] == "":
                insertion -= 1
            replacements.append(_Replacement(insertion, 0, list(chunk.new_lines)))
            continue

        pattern = list(chunk.old_lines)
        new_lines = list(chunk.new_lines)
        found = seek_sequence(original, pattern, line_index, chunk.end_of_file)
        if found < 0 and pattern[-1] == "":
            pattern.pop()
            if new_lines and new_lines[-1] == "":
                new_lines.pop()
            found = seek_sequence(original, pattern, line_index, chunk.end_of_file)
        if found < 0:
            preview = "\n".join(chunk.old_lines[:5])
            raise PatchApplyError(f"expected lines not found in {path}:\n{preview}")
        replacements.append(_Replacement(found, len(pattern), new_lines))
        line_index = found + len(pattern)

    replacements.sort(key=lambda item: item.start)
    return replacements


def apply_replacements(original: Sequence[str], replacements: Sequence[_Replacement]) -> List[str]:
    """Splice replacement ranges into ``original``; ranges must not overlap."""
    output: List[str] = []
    cursor = 0
    for replacement in replacements:
        if replacement.start < cursor:
            raise PatchApplyError("patch chunks overlap")
        if replacement.start + replacement.old_len > len(original):
            raise PatchApplyError("patch chunk exceeds the file bounds")
        output.extend(original[cursor : replacement.start])
        output.extend(replacement.new_lines)
        cursor = replacement.start + replacement.old_len
    output.extend(original[cursor:])
    return output


def derive_new_lines(original: Sequence[str], chunks: Sequence[PatchChunk], path: str) -> List[str]:
    """Return the updated line list, always ending with an empty line."""
    updated = apply_replacements(original, compute_replacements(original, chunks, path))
    if not updated or updated[-1] != "":
        updated.append("")
    return updated


def _apply_add(base_dir: Path, hunk: PatchHunk) -> None:
    target = resolve_patch_path(base_dir, hunk.path)
    content = "\n".join(hunk.add_lines)
    if content and not content.endswith("\n"):
        content += "\n"
    _write_text(target, content)


def _apply_delete(base_dir: Path, hunk: PatchHunk) -> None:
    target = resolve_patch_path(base_dir, hunk.path)
    if not target.is_file():
        raise PatchApplyError(f"cannot delete {hunk.path}: file does not exist")
    try:
        target.unlink()
    except OSError as error:
        raise PatchApplyError(f"cannot delete {target}: {error}") from error


def _apply_update(base_dir: Path, hunk: PatchHunk) -> None:
    source = resolve_patch_path(base_dir, hunk.path)
    original, mode = _read_lines(source)
    content = "\n".join(derive_new_lines(original, hunk.chunks, hunk.path))

    if not hunk.move_to:
        _write_text(source, content, mode)
        return

    destination = resolve_patch_path(base_dir, hunk.move_to)
    _write_text(destination, content, mode)
    if destination.resolve() == source.resolve():
        return
    try:
        source.unlink()
    except OSError as error:
        raise PatchApplyError(f"cannot remove {source} after move: {error}") from error


_HUNK_APPLIERS = {
    HunkKind.ADD: _apply_add,
    HunkKind.DELETE: _apply_delete,
    HunkKind.UPDATE: _apply_update,
}


def apply_patch(patch: Patch, base_dir: Path | str) -> ApplyPatchResult:
    """Apply ``patch`` under ``base_dir`` one hunk at a time.

    Hunks run in encounter order. A failure stops the run without undoing
    hunks that were already written.
    """
    if not patch.hunks:
        raise PatchApplyError("patch contains no file operations")
    if not str(base_dir).strip():
        raise PatchApplyError("workspace directory is empty")
    root = Path(base_dir)

    for position, hunk in enumerate(patch.hunks):
        try:
            _HUNK_APPLIERS[hunk.kind](root, hunk)
        except PatchApplyError as error:
            _emit_patch_event(
                "patch_apply_failed",
                hunk=position,
                kind=hunk.kind.value,
                path=hunk.path,
                applied_hunks=position,
                error=str(error),
            )
            raise

    summary = summarize_patch(patch)
    _emit_patch_event(
        "patch_apply_succeeded",
        added=summary.added,
        modified=summary.modified,
        deleted=summary.deleted,
    )
    LOGGER.debug("Applied patch with %d hunk(s) under %s", len(patch.hunks), root)
    return ApplyPatchResult(summary=summary, patch=patch.raw)


def apply_patch_text(patch_text: str, base_dir: Path | str) -> ApplyPatchResult:
    """Parse ``patch_text`` and apply it under ``base_dir``."""
    try:
        patch = parse_patch(patch_text)
    except PatchParseError as error:
        _emit_patch_event("patch_parse_failed", line=error.line, error=error.reason)
        raise
    return apply_patch(patch, base_dir)


__all__ = [
    "ApplyPatchRequest",
    "ApplyPatchResult",
    "HunkKind",
    "Patch",
    "PatchApplyError",
    "PatchChunk",
    "PatchError",
    "PatchHunk",
    "PatchParseError",
    "PatchRejectedError",
    "PatchSummary",
    "apply_patch",
    "apply_patch_text",
    "extract_patch_text",
    "format_patch_result",
    "parse_apply_patch_arguments",
    "parse_patch",
    "resolve_patch_path",
    "summarize_patch",
]
