#!/usr/bin/env python3
"""Forbidden-content rules (grep rules).

A rule pairs a file glob with a forbidden regex. Every line of a matching
file that contains the pattern is one violation.

Two modes:
- scan_proposed_content(): the content an edit would leave in one file (pre-edit decision)
- scan_tree(): every file under the project root (pre-stop decision)

Backends:
- ripgrep (``rg``) when it is on PATH
- in-process line scan with the ``regex`` package otherwise

Both backends are fed the same explicit file list from the in-process
directory walk, so they report the same violations with the same line
numbers. A rule that rg cannot handle (pattern dialect, I/O error) is
re-scanned in-process.
"""

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

import regex

from _conclaude_utils import (
    log_conclaude,
    match_any_form,
    path_forms,
    relative_to_root,
    resolve_tool_path,
    safe_regex_search,
    truncate_path,
)

# ============================================================
# Constants
# ============================================================

SKIPPED_DIR_NAMES = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        "node_modules",
        "__pycache__",
        ".venv",
        "venv",
        ".tox",
        ".nox",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
    }
)
"""Directories never descended into by the tree walk."""

MAX_SCAN_FILE_BYTES = 5_000_000
"""Files larger than this are left out of the scan (both backends)."""

RG_BATCH_SIZE = 200
"""Files passed to one rg invocation."""

RG_TIMEOUT_SECONDS = 60

MAX_LINE_PREVIEW_LENGTH = 200


# ============================================================
# Data Model
# ============================================================


@dataclass(frozen=True)
class GrepRule:
    """A forbidden pattern limited to files matching a glob."""

    file_glob: str
    forbidden_pattern: regex.Pattern
    description: str = ""

    @property
    def label(self) -> str:
        return self.description or f"forbidden pattern '{self.forbidden_pattern.pattern}'"


@dataclass(frozen=True)
class GrepViolation:
    """One line matching a rule's forbidden pattern."""

    rule: GrepRule
    file: str
    line_number: int
    line_content: str

    def describe(self) -> str:
        content = self.line_content.strip()
        if len(content) > MAX_LINE_PREVIEW_LENGTH:
            content = content[: MAX_LINE_PREVIEW_LENGTH - 3] + "..."
        return f"{self.file}:{self.line_number}: {content} ({self.rule.label})"


# ============================================================
# File Discovery
# ============================================================


def _is_virtualenv(dir_path: str) -> bool:
    return os.path.isfile(os.path.join(dir_path, "pyvenv.cfg"))


def iter_project_files(project_root: Path) -> list[str]:
    """Walk the project tree in-process.

    Skips VCS metadata, dependency and cache folders, and virtualenvs
    (any directory holding a pyvenv.cfg). Symlinked directories are not
    followed.

    Returns:
        Sorted project-relative paths with forward slashes.
    """
    files: list[str] = []
    root = str(project_root)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d
            for d in dirnames
            if d not in SKIPPED_DIR_NAMES and not _is_virtualenv(os.path.join(dirpath, d))
        )
        for name in filenames:
            full = os.path.join(dirpath, name)
            if os.path.islink(full) or not os.path.isfile(full):
                continue
            try:
                if os.path.getsize(full) > MAX_SCAN_FILE_BYTES:
                    log_conclaude("DEBUG", f"Skipping large file in content scan: {truncate_path(full)}")
                    continue
            except OSError:
                continue
            files.append(os.path.relpath(full, root).replace(os.sep, "/"))
    files.sort()
    return files


def rule_applies(rule: GrepRule, file_path: str, project_root: Path) -> bool:
    """Whether a rule's glob matches any form of the path."""
    return match_any_form(path_forms(file_path, project_root), rule.file_glob)


# ============================================================
# In-Process Backend
# ============================================================


def scan_text(rule: GrepRule, text: str) -> list[tuple[int, str]]:
    """Lines of text containing the rule's pattern, as (line_number, line)."""
    hits = []
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    for number, line in enumerate(lines, start=1):
        if safe_regex_search(rule.forbidden_pattern, line):
            hits.append((number, line.rstrip("\r")))
    return hits


def _scan_in_process(rule: GrepRule, project_root: Path, files: list[str]) -> list[GrepViolation]:
    violations = []
    for rel in files:
        try:
            # newline="" keeps line numbering identical to rg's
            with open(project_root / rel, encoding="utf-8", errors="replace", newline="") as f:
                text = f.read()
        except OSError as e:
            log_conclaude("DEBUG", f"Cannot read {truncate_path(rel)} for content scan: {e}")
            continue
        for number, line in scan_text(rule, text):
            violations.append(GrepViolation(rule, rel, number, line))
    return violations


# ============================================================
# ripgrep Backend
# ============================================================


def find_ripgrep() -> str | None:
    """Path of the rg executable, or None if it is not installed."""
    return shutil.which("rg")


def _parse_rg_output(rule: GrepRule, output: str) -> list[GrepViolation]:
    """Parse ``rg --null --line-number`` output (path NUL lineno:content)."""
    violations = []
    for record in output.split("\n"):
        path, sep, rest = record.partition("\0")
        if not sep:
            continue
        number, sep, content = rest.partition(":")
        if not sep or not number.isdigit():
            continue
        violations.append(GrepViolation(rule, path.replace(os.sep, "/"), int(number), content.rstrip("\r")))
    return violations


def _scan_with_ripgrep(
    rg: str, rule: GrepRule, project_root: Path, files: list[str]
) -> list[GrepViolation] | None:
    """Scan files with rg.

    Returns:
        Violations, or None when rg could not handle the rule and the
        caller should fall back to the in-process scan.
    """
    violations: list[GrepViolation] = []
    for start in range(0, len(files), RG_BATCH_SIZE):
        batch = files[start : start + RG_BATCH_SIZE]
        cmd = [
            rg,
            "--no-config",
            "--text",
            "--no-heading",
            "--with-filename",
            "--line-number",
            "--null",
            "--color",
            "never",
            "--regexp",
            rule.forbidden_pattern.pattern,
            "--",
            *batch,
        ]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(project_root),
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=RG_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log_conclaude("WARN", f"rg failed for rule '{rule.label}': {e}; scanning in-process")
            return None

        # 0 = matches, 1 = no matches, 2 = error (bad pattern, unreadable file)
        if result.returncode not in (0, 1):
            log_conclaude(
                "WARN",
                f"rg exit {result.returncode} for rule '{rule.label}': "
                f"{result.stderr.strip()[:200]}; scanning in-process",
            )
            return None
        violations.extend(_parse_rg_output(rule, result.stdout))
    return violations


# ============================================================
# Public API
# ============================================================


def scan_files(
    rules: tuple[GrepRule, ...] | list[GrepRule],
    project_root: Path,
    files: list[str],
    use_ripgrep: bool | None = None,
) -> list[GrepViolation]:
    """Scan an explicit list of project-relative files against every rule.

    Args:
        rules: Rules to apply; each only sees the files its glob matches.
        project_root: Root the relative paths are resolved against.
        files: Project-relative file paths.
        use_ripgrep: Force (True) or forbid (False) rg; None autodetects.

    Returns:
        Violations ordered by rule, then file, then line.
    """
    rg = _pick_ripgrep(use_ripgrep)
    violations: list[GrepViolation] = []
    for rule in rules:
        matching = [f for f in files if rule_applies(rule, f, project_root)]
        if matching:
            violations.extend(_scan_rule(rg, rule, project_root, matching))
    return violations


def _pick_ripgrep(use_ripgrep: bool | None) -> str | None:
    if use_ripgrep is False:
        return None
    rg = find_ripgrep()
    if use_ripgrep and rg is None:
        log_conclaude("DEBUG", "rg requested but not found on PATH; scanning in-process")
    return rg


def _scan_rule(rg: str | None, rule: GrepRule, project_root: Path, files: list[str]) -> list[GrepViolation]:
    found = _scan_with_ripgrep(rg, rule, project_root, files) if rg else None
    if found is None:
        found = _scan_in_process(rule, project_root, files)
    found.sort(key=lambda v: (v.file, v.line_number))
    return found


def scan_proposed_content(
    rules: tuple[GrepRule, ...] | list[GrepRule],
    file_path: str,
    project_root: Path,
    text: str,
) -> list[GrepViolation]:
    """Single-file mode: scan the content a tool call would leave behind.

    The text is the file as it would read after the edit, so a change that
    removes a violation passes and one that introduces a violation is
    caught before it lands. A file outside the project root yields no
    violations.
    """
    if not rules:
        return []
    resolved = resolve_tool_path(file_path, project_root)
    rel = relative_to_root(resolved, project_root)
    if rel is None:
        return []

    forms = path_forms(file_path, project_root)
    violations = []
    for rule in rules:
        if match_any_form(forms, rule.file_glob):
            for number, line in scan_text(rule, text):
                violations.append(GrepViolation(rule, rel, number, line))
    return violations


def scan_tree(
    rules: tuple[GrepRule, ...] | list[GrepRule],
    project_root: Path,
    use_ripgrep: bool | None = None,
) -> list[GrepViolation]:
    """Tree-wide mode: scan every project file against every rule."""
    if not rules:
        return []
    files = iter_project_files(project_root)
    log_conclaude("DEBUG", f"Content scan over {len(files)} file(s) with {len(rules)} rule(s)")
    return scan_files(rules, project_root, files, use_ripgrep)


def format_violations(violations: list[GrepViolation], limit: int = 20) -> str:
    """Human-readable summary, at most limit lines plus a remainder note."""
    if not violations:
        return ""
    lines = [f"Forbidden content found ({len(violations)} violation(s)):"]
    for violation in violations[:limit]:
        lines.append(f"  {violation.describe()}")
    if len(violations) > limit:
        lines.append(f"  ... and {len(violations) - limit} more")
    return "\n".join(lines)
