#!/usr/bin/env python3
"""Shared utilities for the conclaude hooks.

This module provides the plumbing every conclaude hook relies on:
- Logging to .claude/conclaude/conclaude.log (with rotation)
- Dry-run mode support
- Project directory and tool path resolution
- Glob matching for file paths ({a,b} alternation, ** components)
- Regex search with timeout defense (ReDoS)

Usage:
    from _conclaude_utils import (
        get_project_dir,
        log_conclaude,
        is_dry_run,
        match_glob,
        safe_regex_search,
    )

Note on log_conclaude():
    - Silent fail if the project directory is unknown
    - Silent fail on file write errors
    - Logging must never break a hook

Design Principles:
    1. Fail-close on ambiguity about whether content is protected
       Fail-open on best-effort enhancements (logging, glob edge cases, regex timeouts)
    2. Configuration is loaded once per process and passed explicitly (see _conclaude_config.py)
"""

import fnmatch
import os
import sys
from datetime import datetime
from pathlib import Path

import regex

# ============================================================
# Constants
# ============================================================

DRY_RUN_ENV = "CONCLAUDE_DRY_RUN"
"""Environment variable to enable dry-run mode.
Set to "1", "true", or "yes" to enable."""

LOG_LEVEL_ENV = "CONCLAUDE_LOG_LEVEL"
"""Environment variable holding the minimum level written to the log (default: info)."""

DISABLE_FILE_LOGGING_ENV = "CONCLAUDE_DISABLE_FILE_LOGGING"
"""Set to "true" to turn off the project log file."""

MAX_PATH_PREVIEW_LENGTH = 60
"""Maximum path length for log display. Paths longer than this are truncated."""

MAX_COMMAND_PREVIEW_LENGTH = 80
"""Maximum command length for log display. Commands longer than this are truncated."""

MAX_LOG_SIZE_BYTES = 1_000_000
"""Maximum log file size before rotation (1 MB)."""

REGEX_TIMEOUT_SECONDS = 0.5
"""Default timeout for a single regex search to prevent ReDoS."""

FILE_MODIFYING_TOOLS = ("Write", "Edit", "MultiEdit", "NotebookEdit")
"""Tools whose invocations are evaluated by the pre-edit decision."""

IN_PLACE_EDIT_TOOLS = ("Edit", "MultiEdit")
"""Tools that rewrite a fragment of an existing file."""

_LEVEL_RANK = {
    "DEBUG": 10,
    "INFO": 20,
    "ALLOW": 20,
    "DRY-RUN": 20,
    "WARN": 30,
    "BLOCK": 30,
    "ERROR": 40,
}


# ============================================================
# Errors
# ============================================================


class GlobPatternError(ValueError):
    """A glob pattern could not be compiled (unbalanced braces or brackets)."""


# ============================================================
# Project Directory
# ============================================================


def get_project_dir() -> str:
    """Get and validate project directory from environment variable.

    Returns:
        Project directory path, or empty string if not set or not a directory.
    """
    project_dir = os.environ.get("CLAUDE_PROJECT_DIR", "")
    if not project_dir:
        return ""

    # Cannot call log_conclaude() here - it calls get_project_dir()
    if not os.path.isdir(project_dir):
        return ""

    return project_dir


def resolve_project_root(cwd: str = "") -> Path:
    """Pick the project root for one hook invocation.

    Preference order: $CLAUDE_PROJECT_DIR, the payload's cwd, the process cwd.

    Args:
        cwd: Working directory reported in the hook payload (may be empty).

    Returns:
        Absolute project root path.
    """
    project_dir = get_project_dir()
    if project_dir:
        return Path(project_dir).resolve()
    if cwd and os.path.isdir(cwd):
        return Path(cwd).resolve()
    return Path.cwd().resolve()


# ============================================================
# Dry-Run Mode
# ============================================================


def is_dry_run() -> bool:
    """Check if running in dry-run (simulation) mode.

    In dry-run mode, hooks log what they WOULD block but always
    let the operation through.

    Enable by setting environment variable:
        CONCLAUDE_DRY_RUN=1

    Returns:
        True if dry-run mode is enabled.
    """
    value = os.environ.get(DRY_RUN_ENV, "").lower()
    return value in ("1", "true", "yes")


# ============================================================
# Logging with Rotation
# ============================================================


def _rotate_log_if_needed(log_file: Path) -> None:
    """Rotate log file if it exceeds MAX_LOG_SIZE_BYTES.

    Keeps exactly one backup (.log.1). Silent fail on any error.

    Args:
        log_file: Path to the log file to check/rotate.
    """
    try:
        if not log_file.exists():
            return

        if log_file.stat().st_size < MAX_LOG_SIZE_BYTES:
            return

        backup_file = log_file.with_suffix(".log.1")

        # On Windows, we need to remove the target first if it exists
        if backup_file.exists():
            backup_file.unlink()

        log_file.rename(backup_file)
    except Exception:
        # Silent fail - rotation is non-critical
        pass


def _min_log_rank() -> int:
    level = os.environ.get(LOG_LEVEL_ENV, "info").upper()
    if level == "WARNING":
        level = "WARN"
    return _LEVEL_RANK.get(level, _LEVEL_RANK["INFO"])


def _file_logging_disabled() -> bool:
    return os.environ.get(DISABLE_FILE_LOGGING_ENV, "").lower() == "true"


def get_log_file_path() -> Path | None:
    """Location of the project log file, or None if the project dir is unknown."""
    project_dir = get_project_dir()
    if not project_dir:
        return None
    return Path(project_dir) / ".claude" / "conclaude" / "conclaude.log"


def log_conclaude(level: str, message: str) -> None:
    """Log a conclaude event to conclaude.log.

    Log format:
        TIMESTAMP [LEVEL] [DRY-RUN] MESSAGE

    Features:
    - Level threshold from CONCLAUDE_LOG_LEVEL (debug, info, warn, error)
    - Automatic rotation when log exceeds MAX_LOG_SIZE_BYTES
    - Silent fail on any error - never breaks hook execution

    Args:
        level: Log level (DEBUG, INFO, WARN, ERROR, BLOCK, ALLOW, DRY-RUN)
        message: Message to log.
    """
    if _LEVEL_RANK.get(level, _LEVEL_RANK["INFO"]) < _min_log_rank():
        return
    if _file_logging_disabled():
        return

    log_file = get_log_file_path()
    if log_file is None:
        return

    try:
        timestamp = datetime.now().isoformat(timespec="seconds")
        mode = "[DRY-RUN] " if is_dry_run() else ""
        line = f"{timestamp} [{level}] {mode}{message}\n"

        log_file.parent.mkdir(parents=True, exist_ok=True)
        _rotate_log_if_needed(log_file)

        with open(log_file, "a", encoding="utf-8") as f:
            f.write(line)
    except Exception:
        # Silent fail - don't break hook on log error
        pass


def indent_block(text: str, prefix: str = "    ", empty: str = "(no output)") -> str:
    """Indent every line of text for multi-line log entries."""
    stripped = text.strip()
    if not stripped:
        return f"{prefix}{empty}"
    return "\n".join(f"{prefix}{line}" for line in stripped.splitlines())


# ============================================================
# Display Helpers
# ============================================================


def truncate_path(path: str, max_length: int = MAX_PATH_PREVIEW_LENGTH) -> str:
    """Truncate path for display in logs.

    Shows the end of the path (most relevant part) with ... prefix.
    """
    if len(path) <= max_length:
        return path
    return f"...{path[-(max_length - 3) :]}"


def truncate_command(command: str, max_length: int = MAX_COMMAND_PREVIEW_LENGTH) -> str:
    """Truncate command for display in logs.

    Shows the start of the command (most relevant part) with ... suffix.
    """
    if len(command) <= max_length:
        return command
    return f"{command[: max_length - 3]}..."


# ============================================================
# Path Resolution
# ============================================================


def resolve_tool_path(file_path: str, project_root: Path) -> Path:
    """Resolve file path from tool input, handling relative paths.

    Args:
        file_path: The file path from tool input.
        project_root: Root that relative paths are resolved against.

    Returns:
        Resolved absolute Path object (symlinks resolved where possible).
    """
    path = Path(file_path).expanduser()

    if not path.is_absolute():
        path = project_root / path

    try:
        return path.resolve()
    except OSError as e:
        log_conclaude("WARN", f"Could not resolve path {file_path}: {e}")
        return Path(os.path.abspath(path))


def relative_to_root(resolved: Path, project_root: Path) -> str | None:
    """Path of resolved relative to project_root with forward slashes.

    Returns:
        The relative path, or None when resolved lies outside the root.
    """
    try:
        rel = resolved.relative_to(project_root)
    except ValueError:
        return None
    return rel.as_posix()


def path_forms(file_path: str, project_root: Path) -> list[str]:
    """The fixed list of path forms a glob is tested against.

    Order: raw (as the caller supplied it), relative to the project root,
    canonical absolute. Duplicates are dropped.
    """
    resolved = resolve_tool_path(file_path, project_root)
    forms = [file_path.replace("\\", "/")]
    rel = relative_to_root(resolved, project_root)
    if rel is not None:
        forms.append(rel)
    forms.append(resolved.as_posix())

    unique: list[str] = []
    for form in forms:
        if form and form not in unique:
            unique.append(form)
    return unique


# ============================================================
# Glob Matching
# ============================================================


def expand_braces(pattern: str) -> list[str]:
    """Expand {a,b} alternation groups (nestable) into plain glob patterns.

    Raises:
        GlobPatternError: If braces are unbalanced.
    """
    depth = 0
    start = -1
    for i, c in enumerate(pattern):
        if c == "{":
            if depth == 0:
                start = i
            depth += 1
        elif c == "}":
            if depth == 0:
                raise GlobPatternError(f"Unmatched '}}' in glob pattern: {pattern}")
            depth -= 1
            if depth == 0:
                body = pattern[start + 1 : i]
                prefix, suffix = pattern[:start], pattern[i + 1 :]
                expanded: list[str] = []
                for alternative in _split_top_level(body):
                    expanded.extend(expand_braces(prefix + alternative + suffix))
                return expanded
    if depth:
        raise GlobPatternError(f"Unmatched '{{' in glob pattern: {pattern}")
    return [pattern]


def _split_top_level(body: str) -> list[str]:
    parts = []
    depth = 0
    current: list[str] = []
    for c in body:
        if c == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
        current.append(c)
    parts.append("".join(current))
    return parts


def _check_brackets(pattern: str) -> None:
    i = 0
    while i < len(pattern):
        if pattern[i] == "[":
            close = pattern.find("]", i + 2 if pattern[i + 1 : i + 2] in ("!", "]") else i + 1)
            if close < 0:
                raise GlobPatternError(f"Unclosed '[' in glob pattern: {pattern}")
            i = close
        i += 1


def _match_recursive_glob(path_parts: list[str], pattern_parts: list[str]) -> bool:
    """Match path parts against pattern parts with ** support.

    Args:
        path_parts: List of path components (e.g., ['src', 'main.py'])
        pattern_parts: List of pattern components (e.g., ['src', '**', '*.py'])

    Returns:
        True if path matches pattern.
    """
    if not pattern_parts:
        return not path_parts

    if not path_parts:
        return all(p == "**" for p in pattern_parts)

    if pattern_parts[0] == "**":
        # ** can match zero or more path components
        if _match_recursive_glob(path_parts, pattern_parts[1:]):
            return True
        return _match_recursive_glob(path_parts[1:], pattern_parts)

    if fnmatch.fnmatchcase(path_parts[0], pattern_parts[0]):
        return _match_recursive_glob(path_parts[1:], pattern_parts[1:])

    return False


def compile_glob(pattern: str) -> list[str]:
    """Validate a glob and return its brace-expanded alternatives.

    Raises:
        GlobPatternError: If the pattern is malformed.
    """
    if not pattern:
        raise GlobPatternError("Empty glob pattern")
    alternatives = expand_braces(pattern.replace("\\", "/"))
    for alternative in alternatives:
        _check_brackets(alternative)
    return alternatives


def _match_one(path: str, pattern: str) -> bool:
    if "**" in pattern:
        if pattern.startswith("/") != path.startswith("/"):
            return False
        path_parts = [p for p in path.split("/") if p]
        pattern_parts = [p for p in pattern.split("/") if p]
        return _match_recursive_glob(path_parts, pattern_parts)
    # `*` and `?` cross directory separators here
    return fnmatch.fnmatchcase(path, pattern)


def match_glob(path: str, pattern: str) -> bool:
    """Match one path string against a glob pattern.

    Dialect:
    - * and ? match any character, including /
    - [abc] / [!abc] character classes
    - {a,b} alternation, nestable
    - ** as a whole path component matches zero or more directories

    Raises:
        GlobPatternError: If the pattern is malformed.
    """
    normalized = path.replace("\\", "/")
    return any(_match_one(normalized, alt) for alt in compile_glob(pattern))


def match_any_form(forms: list[str], pattern: str) -> bool:
    """Match a pattern against several forms of one path, logging malformed globs.

    A malformed glob is logged and treated as non-matching so that one bad
    rule never blocks unrelated operations.
    """
    try:
        return any(match_glob(form, pattern) for form in forms)
    except GlobPatternError as e:
        log_conclaude("WARN", f"Skipping malformed glob pattern '{pattern}': {e}")
        return False


# ============================================================
# Safe Regex with Timeout Defense (ReDoS Prevention)
# ============================================================


def compile_regex(pattern: str) -> "regex.Pattern":
    """Compile a forbidden-content pattern.

    Raises:
        regex.error: If the pattern is invalid.
    """
    return regex.compile(pattern)


def safe_regex_search(
    pattern: "regex.Pattern",
    text: str,
    timeout: float = REGEX_TIMEOUT_SECONDS,
) -> "regex.Match | None":
    """Regex search with timeout defense against ReDoS.

    Args:
        pattern: Compiled pattern (from compile_regex).
        text: Text to search.
        timeout: Timeout in seconds (default: REGEX_TIMEOUT_SECONDS).

    Returns:
        Match object if found, None otherwise.
        Returns None on timeout (content rules fail open, with a log line).
    """
    try:
        return pattern.search(text, timeout=timeout)
    except TimeoutError:
        log_conclaude(
            "WARN",
            f"Regex timeout ({timeout}s) for pattern: {pattern.pattern[:50]}",
        )
        return None


# ============================================================
# Module Self-Test (when run directly)
# ============================================================


if __name__ == "__main__":
    print("_conclaude_utils.py - Module loaded successfully")
    print(f"Project dir: {get_project_dir()}")
    print(f"Log file: {get_log_file_path()}")
    print(f"Dry-run mode: {is_dry_run()}")
    print(f"Python: {sys.version.split()[0]}")
