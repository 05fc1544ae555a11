"""Tolerant line-sequence matching used when locating patch chunks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence, Tuple

__all__ = ["MatchStrategy", "MATCH_STRATEGIES", "normalise_punctuation", "seek_sequence"]


Normaliser = Callable[[str], str]


@dataclass(slots=True, frozen=True)
class MatchStrategy:
    """Named line normaliser applied to both sides of a comparison."""

    name: str
    normalise: Normaliser


_PUNCTUATION_FOLDS = {
    **{code: "-" for code in (0x2010, 0x2011, 0x2012, 0x2013, 0x2014, 0x2015, 0x2212)},
    **{code: "'" for code in (0x2018, 0x2019, 0x201A, 0x201B)},
    **{code: '"' for code in (0x201C, 0x201D, 0x201E, 0x201F)},
    **{
        code: " "
        for code in (
            0x00A0,
            0x2002,
            0x2003,
            0x2004,
            0x2005,
            0x2006,
            0x2007,
            0x2008,
            0x2009,
            0x200A,
            0x202F,
            0x205F,
            0x3000,
        )
    },
}
_PUNCTUATION_TABLE = str.maketrans(_PUNCTUATION_FOLDS)


def _identity(line: str) -> str:
    return line


def _trim_end(line: str) -> str:
    return line.rstrip()


def _trim(line: str) -> str:
    return line.strip()


def normalise_punctuation(line: str) -> str:
    """Fold typographic dashes, quotes and spaces into their ASCII forms."""
    return line.strip().translate(_PUNCTUATION_TABLE)


# Tried in order; the first strategy that finds the sequence wins.
MATCH_STRATEGIES: Tuple[MatchStrategy, ...] = (
    MatchStrategy("identity", _identity),
    MatchStrategy("trim_end", _trim_end),
    MatchStrategy("trim", _trim),
    MatchStrategy("normalise_punctuation", normalise_punctuation),
)


def _match_from(lines: Sequence[str], pattern: Sequence[str], start: int, normalise: Normaliser) -> int:
    """Return the first index >= ``start`` where ``pattern`` matches, or -1."""
    wanted = [normalise(item) for item in pattern]
    last = len(lines) - len(pattern)
    for index in range(max(start, 0), last + 1):
        if all(normalise(lines[index + offset]) == expected for offset, expected in enumerate(wanted)):
            return index
    return -1


def seek_sequence(
    lines: Sequence[str],
    pattern: Sequence[str],
    start: int,
    end_of_file: bool = False,
    *,
    strategies: Sequence[MatchStrategy] = MATCH_STRATEGIES,
) -> int:
    """Locate ``pattern`` inside ``lines`` at or after ``start``.

    Each strategy is tried in turn across the whole search window before the
    next, looser one is attempted. When ``end_of_file`` is set the search
    begins where the pattern would sit flush against the end of the file.
    Returns the matching start index or ``-1``.
    """
    if not pattern:
        return start
    if len(pattern) > len(lines):
        return -1

    search_start = start
    if end_of_file:
        search_start = max(start, len(lines) - len(pattern))

    for strategy in strategies:
        found = _match_from(lines, pattern, search_start, strategy.normalise)
        if found >= 0:
            return found
    return -1
