"""Search/replace engine and diff rendering for the edit_file tool.

Matching is tried in passes: exact substring first, then a line-by-line
comparison that ignores leading/trailing whitespace, then the same with
typographic punctuation folded to ASCII.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass


_UNICODE_SINGLE_QUOTES = re.compile(r"[‘’‚‛]")
_UNICODE_DOUBLE_QUOTES = re.compile(r"[“”„‟]")
_UNICODE_DASHES = re.compile(r"[‐‑‒–—―]")


def _fold_punctuation(s: str) -> str:
    s = _UNICODE_SINGLE_QUOTES.sub("'", s)
    s = _UNICODE_DOUBLE_QUOTES.sub('"', s)
    s = _UNICODE_DASHES.sub("-", s)
    return s.replace("…", "...").replace(" ", " ")


def _trimmed(line: str) -> str:
    return line.strip()


def _trimmed_folded(line: str) -> str:
    return _fold_punctuation(line.strip())


class SearchNotFound(ValueError):
    pass


@dataclass
class EditOutcome:
    content: str
    replacements: int
    strategy: str  # "exact", "trimmed" or "normalized"


def _line_spans(content: str, search: str, key) -> list[tuple[int, int]]:
    """Character spans of non-overlapping line-window matches of ``search``."""
    lines = content.split("\n")
    trailing_newline = search.endswith("\n")
    body = search[:-1] if trailing_newline else search
    wanted = [key(line) for line in body.split("\n")]
    width = len(wanted)
    offsets = []
    pos = 0
    for line in lines:
        offsets.append(pos)
        pos += len(line) + 1

    spans = []
    i = 0
    while i <= len(lines) - width:
        if all(key(lines[i + j]) == wanted[j] for j in range(width)):
            start = offsets[i]
            end = offsets[i + width - 1] + len(lines[i + width - 1])
            if trailing_newline and end < len(content):
                end += 1
            spans.append((start, end))
            i += width
        else:
            i += 1
    return spans


def _splice(content: str, spans: list[tuple[int, int]], replacement: str) -> str:
    out = []
    prev = 0
    for start, end in spans:
        out.append(content[prev:start])
        out.append(replacement)
        prev = end
    out.append(content[prev:])
    return "".join(out)


def apply_edit(
    content: str, search: str, replace: str, replace_all: bool = False
) -> EditOutcome:
    """Replace the first (or every) occurrence of ``search`` in ``content``.

    Raises SearchNotFound when no pass finds a match and ValueError when
    ``search`` is empty.
    """
    if not search:
        raise ValueError("search text must not be empty")

    count = content.count(search)
    if count:
        if replace_all:
            return EditOutcome(content.replace(search, replace), count, "exact")
        return EditOutcome(content.replace(search, replace, 1), 1, "exact")

    for strategy, key in (("trimmed", _trimmed), ("normalized", _trimmed_folded)):
        spans = _line_spans(content, search, key)
        if spans:
            if not replace_all:
                spans = spans[:1]
            return EditOutcome(_splice(content, spans, replace), len(spans), strategy)

    raise SearchNotFound("Search text not found in file")


def unified_diff(before: str, after: str, path: str, context: int = 3) -> str:
    lines = difflib.unified_diff(
        before.splitlines(),
        after.splitlines(),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
        n=context,
        lineterm="",
    )
    return "\n".join(lines)
