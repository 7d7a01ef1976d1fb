#!/usr/bin/env python3
"""Whole-file protection checks for file-modifying tools.

Checks, in evaluation order:
0. toolUsageValidation: per-tool block/allow path globs (any tool)
1. uneditableFiles: globs of files that may never be modified
2. preventRootAdditions: no new files directly in the project root (Write only)
3. preventAdditions: no new files under the given globs (Write only)
4. preventUpdateGitIgnored: no modifying or creating git-ignored files
5. preventGeneratedFileEdits: no edits to files carrying a generated-code marker

Every check returns a block message (what, why, where) or None. The first
message wins.

Design Principles:
    - Path globs are tested against the raw path, the project-relative path
      and the canonical absolute path (see path_forms())
    - Additions are existence-gated: overwriting an existing file is never
      an "addition"
    - Git is optional: without git (or outside a repository) the git-ignore
      check is skipped
"""

import os
import shutil
import subprocess
from pathlib import Path
from typing import Any

from _conclaude_config import PreToolUseConfig, ToolUsageRule
from _conclaude_utils import (
    FILE_MODIFYING_TOOLS,
    log_conclaude,
    match_any_form,
    path_forms,
    relative_to_root,
    resolve_tool_path,
    truncate_path,
)

# ============================================================
# Constants
# ============================================================

ROOT_MANIFEST_NAMES = frozenset(
    {
        "package.json",
        "package-lock.json",
        "tsconfig.json",
        "jsconfig.json",
        "bun.lock",
        "bun.lockb",
        "yarn.lock",
        "pnpm-lock.yaml",
        "pnpm-workspace.yaml",
        "deno.json",
        "pyproject.toml",
        "setup.cfg",
        "requirements.txt",
        "Pipfile",
        "Cargo.toml",
        "Cargo.lock",
        "go.mod",
        "go.sum",
        "Gemfile",
        "composer.json",
        "pom.xml",
        "build.gradle",
        "settings.gradle",
    }
)
"""Project manifests that may be created at the root despite preventRootAdditions."""

GENERATED_MARKERS = (
    "DO NOT EDIT",
    "Code generated by",
    "Auto-generated",
    "Autogenerated",
    "Generated code",
    "@generated",
    "This file is generated",
    "This file was generated",
)
"""Generated-code markers, matched case-insensitively."""

GENERATED_SCAN_LINES = 100
"""Only the head of a file is searched for generated-code markers."""

GIT_TIMEOUT_SECONDS = 5


# ============================================================
# Payload Helpers
# ============================================================


def extract_file_path(tool_input: dict[str, Any]) -> str | None:
    """Target path of a file tool: file_path, or notebook_path for NotebookEdit."""
    for key in ("file_path", "notebook_path"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


# ============================================================
# Root Additions
# ============================================================


def is_root_addition(relative_path: str) -> bool:
    """Whether a project-relative path names a file directly in the root.

    Dotfiles and project manifests are exempt. Existence is checked by the
    caller.
    """
    if not relative_path or relative_path in (".", ".."):
        return False
    if "/" in relative_path or "\\" in relative_path:
        return False
    if relative_path.startswith("."):
        return False
    return relative_path not in ROOT_MANIFEST_NAMES


# ============================================================
# Generated Files
# ============================================================


def find_generated_marker(content: str) -> str | None:
    """First generated-code marker in the head of content.

    Returns:
        The marker text as written in the file, or None.
    """
    head = content.splitlines()[:GENERATED_SCAN_LINES]
    for marker in GENERATED_MARKERS:
        needle = marker.lower()
        for line in head:
            pos = line.lower().find(needle)
            if pos >= 0:
                return line[pos : pos + len(marker)]
    return None


def _read_head(path: Path) -> str | None:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = []
            for _ in range(GENERATED_SCAN_LINES):
                line = f.readline()
                if not line:
                    break
                lines.append(line)
        return "".join(lines)
    except OSError:
        return None


def generated_file_message(file_path: str, marker: str, template: str | None) -> str:
    """Block message for a generated file, honoring generatedFileMessage."""
    if template:
        return template.replace("{file_path}", file_path).replace("{marker}", marker)
    return (
        f"Blocked: '{file_path}' is auto-generated (contains '{marker}'). "
        "Do not edit it directly; change the source or template that generates it."
    )


# ============================================================
# Git-Ignored Files
# ============================================================


def git_ignore_match(resolved: Path, project_root: Path) -> str | None:
    """Ask git whether a path is ignored.

    Returns:
        The matching ignore pattern, or None if the path is not ignored,
        git is unavailable, or the project is not a repository.
    """
    if shutil.which("git") is None:
        log_conclaude("DEBUG", "git not available - skipping git-ignore check")
        return None

    rel = relative_to_root(resolved, project_root)
    target = rel if rel is not None else str(resolved)
    env = os.environ.copy()
    env["LC_ALL"] = "C"

    try:
        result = subprocess.run(
            ["git", "check-ignore", "--verbose", "--", target],
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            cwd=str(project_root),
            env=env,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log_conclaude("WARN", f"git check-ignore failed for {truncate_path(target)}: {e}")
        return None

    # 0 = ignored, 1 = not ignored, 128 = not a repository / path outside repo
    if result.returncode != 0:
        if result.returncode != 1:
            log_conclaude("DEBUG", f"git check-ignore exit {result.returncode}: {result.stderr.strip()[:200]}")
        return None

    # <source>:<linenum>:<pattern><TAB><pathname>
    line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
    info = line.split("\t", 1)[0]
    pattern = info.split(":", 2)[-1] if info.count(":") >= 2 else info
    return pattern or "(gitignore)"


# ============================================================
# Tool Usage Rules
# ============================================================


def check_tool_usage_rules(
    tool_name: str,
    file_path: str,
    project_root: Path,
    rules: tuple[ToolUsageRule, ...],
) -> str | None:
    """Apply toolUsageValidation rules to any tool that names a file.

    Rules are evaluated in order and the first violated rule wins.

    Returns:
        Block message, or None if every applicable rule permits the path.
    """
    forms = None
    for rule in rules:
        if not rule.applies_to(tool_name):
            continue
        if forms is None:
            forms = path_forms(file_path, project_root)
        matches = match_any_form(forms, rule.pattern)
        if matches == (rule.action == "block"):
            log_conclaude(
                "BLOCK",
                f"toolUsageValidation {rule.action} '{rule.pattern}' ({tool_name}): {truncate_path(file_path)}",
            )
            if rule.message:
                return f"{rule.message} (tool {tool_name}, {rule.action} pattern '{rule.pattern}', file {file_path})"
            return f"Tool usage blocked by validation rule: {rule.pattern} (tool {tool_name}, file {file_path})"
    return None


# ============================================================
# Combined Check
# ============================================================


def check_file_protection(
    tool_name: str,
    file_path: str,
    project_root: Path,
    config: PreToolUseConfig,
) -> str | None:
    """Run every whole-file check for one tool invocation.

    Args:
        tool_name: Tool being invoked (only file-modifying tools are checked).
        file_path: Target path as given in the tool input.
        project_root: Project root directory.
        config: The preToolUse configuration.

    Returns:
        Block message of the first failing check, or None if allowed.
    """
    if tool_name not in FILE_MODIFYING_TOOLS:
        return None

    forms = path_forms(file_path, project_root)
    resolved = resolve_tool_path(file_path, project_root)
    exists = resolved.exists()
    path_preview = truncate_path(file_path)

    # ========== Check: Uneditable Files ==========
    for rule in config.uneditable_files:
        if match_any_form(forms, rule.pattern):
            log_conclaude("BLOCK", f"uneditableFiles '{rule.pattern}' ({tool_name}): {path_preview}")
            if rule.message:
                return f"{rule.message} (pattern '{rule.pattern}', file {file_path})"
            return (
                f"Blocked {tool_name} operation: file matches uneditable pattern "
                f"'{rule.pattern}'. File: {file_path}"
            )

    is_new_file = tool_name == "Write" and not exists
    rel = relative_to_root(resolved, project_root)

    # ========== Check: Root Additions ==========
    if config.prevent_root_additions and is_new_file and rel is not None and is_root_addition(rel):
        log_conclaude("BLOCK", f"preventRootAdditions ({tool_name}): {path_preview}")
        return (
            f"Blocked {tool_name} operation: preventRootAdditions rule prevents creating "
            f"new files at the project root. File: {file_path}"
        )

    # ========== Check: Prevent Additions ==========
    if is_new_file:
        for pattern in config.prevent_additions:
            if match_any_form(forms, pattern):
                log_conclaude("BLOCK", f"preventAdditions '{pattern}' ({tool_name}): {path_preview}")
                return (
                    f"Blocked {tool_name} operation: preventAdditions rule prevents creating "
                    f"files matching '{pattern}'. File: {file_path}"
                )

    # ========== Check: Git-Ignored Files ==========
    if config.prevent_update_git_ignored:
        ignore_pattern = git_ignore_match(resolved, project_root)
        if ignore_pattern is not None:
            action = "creating" if not exists else "modifying"
            log_conclaude("BLOCK", f"preventUpdateGitIgnored '{ignore_pattern}' ({tool_name}): {path_preview}")
            return (
                f"Blocked {tool_name} operation: {action} git-ignored files is not allowed "
                f"(matches .gitignore pattern '{ignore_pattern}'). File: {file_path}"
            )

    # ========== Check: Generated Files ==========
    if config.prevent_generated_file_edits and exists and resolved.is_file():
        head = _read_head(resolved)
        marker = find_generated_marker(head) if head else None
        if marker:
            log_conclaude("BLOCK", f"Generated file '{marker}' ({tool_name}): {path_preview}")
            return generated_file_message(file_path, marker, config.generated_file_message)

    return None
