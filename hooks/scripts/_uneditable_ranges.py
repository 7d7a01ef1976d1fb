#!/usr/bin/env python3
"""Inline protected ranges (conclaude-uneditable markers).

A protected range is opened by a comment containing
``conclaude-uneditable:start`` and closed by one containing
``conclaude-uneditable:end``. Ranges may nest. Markers only count inside
comments, as defined by the file's CommentSyntax; the same text in code or
string literals is ignored.

Parsing is fail-closed: a single unmatched marker makes the whole file an
error instead of returning a partial range list.

Usage:
    from _uneditable_ranges import parse_uneditable_ranges, check_edit_overlap

    ranges = parse_uneditable_ranges("src/app.ts", content)
    hit = check_edit_overlap(content, old_string, ranges)
"""

from dataclasses import dataclass

from _comment_syntax import CommentSyntax, lookup_comment_syntax
from _conclaude_utils import log_conclaude, truncate_path

START_MARKER = "conclaude-uneditable:start"
END_MARKER = "conclaude-uneditable:end"


@dataclass(frozen=True)
class UneditableRange:
    """Inclusive 1-based line interval protected from in-place edits."""

    start_line: int
    end_line: int
    nesting_level: int

    def __post_init__(self):
        if self.start_line > self.end_line:
            raise ValueError(
                f"start_line {self.start_line} is after end_line {self.end_line}"
            )

    def overlaps(self, start_line: int, end_line: int) -> bool:
        return start_line <= self.end_line and end_line >= self.start_line

    def describe(self) -> str:
        return f"lines {self.start_line}-{self.end_line}"


class UnmatchedMarkerError(ValueError):
    """A start marker was never closed, or an end marker had nothing to close."""

    def __init__(self, kind: str, line: int, file_path: str = ""):
        self.kind = kind
        self.line = line
        self.file_path = file_path
        marker = START_MARKER if kind == "start" else END_MARKER
        where = f" in {file_path}" if file_path else ""
        if kind == "start":
            detail = "has no matching end marker"
        else:
            detail = "has no matching start marker"
        super().__init__(f"Unmatched {marker} at line {line}{where}: {detail}")


# ============================================================
# Comment Detection
# ============================================================

_QUOTES = ("\"", "'", "`")


def _skip_string(text: str, pos: int) -> int:
    """Index just past the string literal opening at pos.

    An unterminated quote (an apostrophe, a Rust lifetime) is treated as an
    ordinary character.
    """
    quote = text[pos]
    i = pos + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        i += 1
    return pos + 1


def _find_comment_open(text: str, pos: int, syntax: CommentSyntax) -> tuple[str | None, int]:
    """First comment opener at or after pos that is not inside a string literal.

    Returns:
        ("line" | "block", index), or (None, -1).
    """
    has_prefix = bool(syntax.line_prefix) and text.find(syntax.line_prefix, pos) >= 0
    has_block = syntax.has_block and text.find(syntax.block_start, pos) >= 0
    if not has_prefix and not has_block:
        return None, -1

    i = pos
    while i < len(text):
        # block first: Lua's "--[[" also starts with the "--" line prefix
        if has_block and text.startswith(syntax.block_start, i):
            return "block", i
        if has_prefix and text.startswith(syntax.line_prefix, i):
            return "line", i
        if text[i] in _QUOTES:
            i = _skip_string(text, i)
            continue
        i += 1
    return None, -1


def _scan_line(text: str, in_block: bool, syntax: CommentSyntax) -> tuple[str | None, bool]:
    """Extract the comment text of one line and track block-comment state.

    Args:
        text: The line with surrounding whitespace removed.
        in_block: Whether a block comment is open at the start of the line.
        syntax: Comment syntax of the file.

    Returns:
        (comment_text, in_block_after). comment_text is None unless the line
        is a comment line: it starts inside an open block comment, or begins
        with the line prefix or the block start.
    """
    is_comment_line = in_block
    if not is_comment_line:
        if syntax.has_block and text.startswith(syntax.block_start):
            is_comment_line = True
        elif syntax.line_prefix and text.startswith(syntax.line_prefix):
            is_comment_line = True

    pieces: list[str] = []
    pos = 0
    while True:
        if in_block:
            end = text.find(syntax.block_end, pos)
            if end < 0:
                pieces.append(text[pos:])
                break
            pieces.append(text[pos:end])
            pos = end + len(syntax.block_end)
            in_block = False
            continue

        kind, at = _find_comment_open(text, pos, syntax)
        if kind is None:
            break
        if kind == "line":
            pieces.append(text[at + len(syntax.line_prefix) :])
            break
        in_block = True
        pos = at + len(syntax.block_start)

    if not is_comment_line:
        return None, in_block
    return " ".join(pieces), in_block


def _find_marker(comment: str) -> str | None:
    start_at = comment.find(START_MARKER)
    end_at = comment.find(END_MARKER)
    if start_at < 0 and end_at < 0:
        return None
    if end_at < 0 or (0 <= start_at < end_at):
        return "start"
    return "end"


# ============================================================
# Range Parser
# ============================================================


def parse_uneditable_ranges(file_path: str, content: str) -> list[UneditableRange]:
    """Parse the protected ranges of one file.

    Ranges are returned in the order they close (innermost first for nested
    ranges). nesting_level is the number of ranges still open around the
    range once it closes, so a top-level range has level 0.

    Args:
        file_path: Path used to look up the comment syntax.
        content: Full file text.

    Returns:
        Ordered list of ranges; empty for unsupported languages.

    Raises:
        UnmatchedMarkerError: On any unmatched start or end marker.
    """
    syntax = lookup_comment_syntax(file_path)
    if syntax is None:
        return []

    ranges: list[UneditableRange] = []
    stack: list[int] = []
    in_block = False

    for line_number, line in enumerate(content.splitlines(), start=1):
        comment, in_block = _scan_line(line.strip(), in_block, syntax)
        if comment is None:
            continue

        marker = _find_marker(comment)
        if marker == "start":
            stack.append(line_number)
        elif marker == "end":
            if not stack:
                raise UnmatchedMarkerError("end", line_number, file_path)
            start_line = stack.pop()
            ranges.append(UneditableRange(start_line, line_number, len(stack)))

    if stack:
        raise UnmatchedMarkerError("start", stack[-1], file_path)

    return ranges


# ============================================================
# Overlap Validator
# ============================================================


def _span_at(content: str, index: int, fragment: str) -> tuple[int, int]:
    start_line = content.count("\n", 0, index) + 1
    body = fragment[:-1] if fragment.endswith("\n") and len(fragment) > 1 else fragment
    return start_line, start_line + body.count("\n")


def find_edit_line_span(content: str, old_text: str) -> tuple[int, int] | None:
    """Line span of the first occurrence of old_text in content.

    Returns:
        (start_line, end_line), 1-based and inclusive, or None if old_text
        is empty or does not occur.
    """
    if not old_text:
        return None
    index = content.find(old_text)
    if index < 0:
        return None
    return _span_at(content, index, old_text)


def find_all_edit_line_spans(content: str, old_text: str) -> list[tuple[int, int]]:
    """Line spans of every non-overlapping occurrence of old_text."""
    spans: list[tuple[int, int]] = []
    if not old_text:
        return spans
    index = content.find(old_text)
    while index >= 0:
        spans.append(_span_at(content, index, old_text))
        index = content.find(old_text, index + len(old_text))
    return spans


def find_overlapping_range(
    span: tuple[int, int], ranges: list[UneditableRange]
) -> UneditableRange | None:
    """First range (in parse order) intersecting the span, if any."""
    edit_start, edit_end = span
    for protected in ranges:
        if protected.overlaps(edit_start, edit_end):
            return protected
    return None


def check_edit_overlap(
    content: str,
    old_text: str,
    ranges: list[UneditableRange],
    replace_all: bool = False,
    file_path: str = "",
) -> UneditableRange | None:
    """Decide whether replacing old_text would touch a protected range.

    Only the first occurrence is checked, since that is the one an edit
    rewrites. With replace_all every occurrence is rewritten, so every
    occurrence is checked.

    A fragment that cannot be located is treated as no overlap and logged.

    Returns:
        The first overlapping range, or None.
    """
    if not ranges:
        return None

    if replace_all:
        spans = find_all_edit_line_spans(content, old_text)
    else:
        span = find_edit_line_span(content, old_text)
        spans = [span] if span else []

    if not spans:
        log_conclaude(
            "WARN",
            f"Edit fragment not found in {truncate_path(file_path) or 'file'}; "
            "skipping protected range check",
        )
        return None

    for span in spans:
        hit = find_overlapping_range(span, ranges)
        if hit is not None:
            return hit
    return None
