#!/usr/bin/env python3
"""Hook orchestration: the pre-edit and pre-stop decisions.

Pre-edit (PreToolUse):
    1. toolUsageValidation, for any tool that names a file
    2. whole-file protection (_file_protection.py)
    3. protected ranges, for in-place edits (Edit, MultiEdit)
    4. forbidden content in the file as the edit would leave it (_content_rules.py)
    The first blocking result wins.

Pre-stop (Stop):
    1. tree-wide forbidden content scan (reported, never blocks by itself)
    2. stop commands, fail-fast (_command_runner.py)
    3. infinite mode: block even when every command passed

Hook protocol:
    - One JSON payload on stdin
    - Exit 0: allowed
    - Exit 2: blocked, reason on stderr (shown to the agent)
    - Exit 1: internal error (e.g. malformed configuration), message on stderr

Design Principles:
    1. Fail-close when it is unclear whether content is protected
       (unmatched markers, malformed tool input)
    2. Fail-open on best-effort enhancements (unreadable files, missing rg)
    3. Config is loaded once here and passed down explicitly
"""

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, TextIO

from _command_runner import CommandRunner, RunResult, build_command_env, run_command
from _conclaude_config import ConclaudeConfig, ConfigError, load_conclaude_config
from _conclaude_utils import (
    FILE_MODIFYING_TOOLS,
    IN_PLACE_EDIT_TOOLS,
    is_dry_run,
    log_conclaude,
    resolve_project_root,
    resolve_tool_path,
    truncate_path,
)
from _content_rules import GrepViolation, format_violations, scan_proposed_content, scan_tree
from _file_protection import check_file_protection, check_tool_usage_rules, extract_file_path
from _uneditable_ranges import UnmatchedMarkerError, check_edit_overlap, parse_uneditable_ranges

EXIT_ALLOW = 0
EXIT_ERROR = 1
EXIT_BLOCK = 2

DEFAULT_INFINITE_MESSAGE = "continue working on the task"


# ============================================================
# Decision Types
# ============================================================


@dataclass(frozen=True)
class ProtectionDecision:
    """Output of both decision points."""

    blocked: bool
    message: str | None = None

    @classmethod
    def allow(cls) -> "ProtectionDecision":
        return cls(blocked=False)

    @classmethod
    def block(cls, message: str) -> "ProtectionDecision":
        return cls(blocked=True, message=message)


@dataclass(frozen=True)
class EditOperation:
    """One string replacement of an Edit or MultiEdit call."""

    old_text: str
    new_text: str = ""
    replace_all: bool = False


@dataclass(frozen=True)
class EditRequest:
    """A file-modifying tool call.

    edits holds the replacements of Edit/MultiEdit, in order. content is the
    full new text of a Write (or the new cell source of a NotebookEdit).
    """

    tool_name: str
    file_path: str
    edits: tuple[EditOperation, ...] = ()
    content: str | None = None


@dataclass(frozen=True)
class StopEvaluation:
    decision: ProtectionDecision
    run_result: RunResult
    violations: tuple[GrepViolation, ...] = field(default_factory=tuple)


# ============================================================
# Payload Handling
# ============================================================


def _string_field(entry: dict[str, Any], key: str) -> str:
    value = entry.get(key, "")
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _edit_operation(entry: dict[str, Any]) -> EditOperation:
    return EditOperation(
        old_text=_string_field(entry, "old_string"),
        new_text=_string_field(entry, "new_string"),
        replace_all=entry.get("replace_all") is True,
    )


def edit_request_from_payload(payload: dict[str, Any]) -> EditRequest | None:
    """Build an EditRequest from a PreToolUse payload.

    Returns:
        None when the tool input names no target file.

    Raises:
        ValueError: If tool_input or its edits are structurally invalid.
    """
    tool_name = payload.get("tool_name", "")
    tool_input = payload.get("tool_input", {})
    if not isinstance(tool_input, dict):
        raise ValueError(f"tool_input must be an object, got {type(tool_input).__name__}")

    file_path = extract_file_path(tool_input)
    if file_path is None:
        return None
    if "\x00" in file_path:
        raise ValueError("file path contains a null byte")

    edits: list[EditOperation] = []
    content = None
    if tool_name == "Write":
        content = _string_field(tool_input, "content")
    elif tool_name == "NotebookEdit":
        content = _string_field(tool_input, "new_source")
    elif tool_name == "Edit":
        edits.append(_edit_operation(tool_input))
    elif tool_name == "MultiEdit":
        entries = tool_input.get("edits", [])
        if not isinstance(entries, list):
            raise ValueError("MultiEdit edits must be a list")
        for entry in entries:
            if not isinstance(entry, dict):
                raise ValueError("MultiEdit edits entries must be objects")
            edits.append(_edit_operation(entry))

    return EditRequest(tool_name=tool_name, file_path=file_path, edits=tuple(edits), content=content)


def apply_edits(text: str, edits: tuple[EditOperation, ...]) -> str:
    """Apply replacements in order, each to the result of the previous one.

    An old text that is not present leaves the text unchanged (the tool
    itself will reject such an edit). An empty old text only creates
    content in an empty file.
    """
    for edit in edits:
        if not edit.old_text:
            if not text:
                text = edit.new_text
            continue
        text = text.replace(edit.old_text, edit.new_text, -1 if edit.replace_all else 1)
    return text


def proposed_content(request: EditRequest, project_root: Path) -> str | None:
    """Text of the target file as it would read after the tool call.

    Returns:
        None when the current file cannot be read.
    """
    if request.content is not None:
        return request.content
    resolved = resolve_tool_path(request.file_path, project_root)
    try:
        with open(resolved, encoding="utf-8", errors="replace", newline="") as f:
            current = f.read()
    except FileNotFoundError:
        current = ""
    except OSError as e:
        log_conclaude("DEBUG", f"Cannot read {truncate_path(request.file_path)} for content scan: {e}")
        return None
    return apply_edits(current, request.edits)


# ============================================================
# Pre-Edit Decision
# ============================================================


def _check_protected_ranges(request: EditRequest, project_root: Path) -> str | None:
    resolved = resolve_tool_path(request.file_path, project_root)
    try:
        content = resolved.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        log_conclaude("DEBUG", f"Cannot read {truncate_path(request.file_path)} for range check: {e}")
        return None

    try:
        ranges = parse_uneditable_ranges(request.file_path, content)
    except UnmatchedMarkerError as e:
        log_conclaude("BLOCK", f"Unmatched {e.kind} marker at line {e.line}: {truncate_path(request.file_path)}")
        return (
            f"Blocked {request.tool_name} operation: {e}. Protected ranges in "
            f"{request.file_path} cannot be determined until the markers are balanced."
        )

    for edit in request.edits:
        hit = check_edit_overlap(content, edit.old_text, ranges, edit.replace_all, request.file_path)
        if hit is not None:
            log_conclaude(
                "BLOCK",
                f"Edit overlaps protected {hit.describe()} ({request.tool_name}): "
                f"{truncate_path(request.file_path)}",
            )
            return (
                f"Blocked {request.tool_name} operation: the edit touches a protected range "
                f"({hit.describe()}, marked with conclaude-uneditable) in {request.file_path}. "
                "Content between conclaude-uneditable:start and conclaude-uneditable:end "
                "must not be modified."
            )
    return None


def _scan_proposed(request: EditRequest, project_root: Path, config: ConclaudeConfig) -> list[GrepViolation]:
    rules = config.pre_tool_use.grep_rules
    if not rules:
        return []
    text = proposed_content(request, project_root)
    if text is None:
        return []
    return scan_proposed_content(rules, request.file_path, project_root, text)


def evaluate_pre_edit(
    request: EditRequest,
    project_root: Path,
    config: ConclaudeConfig,
) -> ProtectionDecision:
    """Decide whether a tool call that names a file may proceed.

    toolUsageValidation applies to every tool; the remaining checks only to
    file-modifying tools.
    """
    message = check_tool_usage_rules(
        request.tool_name, request.file_path, project_root, config.pre_tool_use.tool_usage_rules
    )
    if message:
        return ProtectionDecision.block(message)

    if request.tool_name not in FILE_MODIFYING_TOOLS:
        return ProtectionDecision.allow()

    message = check_file_protection(
        request.tool_name, request.file_path, project_root, config.pre_tool_use
    )
    if message:
        return ProtectionDecision.block(message)

    if request.tool_name in IN_PLACE_EDIT_TOOLS and request.edits:
        message = _check_protected_ranges(request, project_root)
        if message:
            return ProtectionDecision.block(message)

    violations = _scan_proposed(request, project_root, config)
    if violations:
        log_conclaude(
            "BLOCK",
            f"{len(violations)} forbidden content match(es) ({request.tool_name}): "
            f"{truncate_path(request.file_path)}",
        )
        return ProtectionDecision.block(
            f"Blocked {request.tool_name} operation on {request.file_path}.\n"
            + format_violations(violations)
        )

    return ProtectionDecision.allow()


# ============================================================
# Pre-Stop Decision
# ============================================================


def evaluate_stop(
    project_root: Path,
    config: ConclaudeConfig,
    session_id: str = "",
    hook_event: str = "Stop",
    use_ripgrep: bool | None = None,
    execute: Callable = run_command,
) -> StopEvaluation:
    """Decide whether the session may end.

    Tree-wide content violations are reported to the stop commands
    (CONCLAUDE_GREP_VIOLATIONS) and appended to a failure message, but only
    a failing command blocks. With stop.infinite set, a session whose
    commands all pass is still sent back to work with infiniteMessage.
    """
    violations = scan_tree(config.stop.grep_rules, project_root, use_ripgrep)
    summary = format_violations(violations)
    if violations:
        log_conclaude("WARN", summary)

    env = build_command_env(project_root, session_id, hook_event, len(violations))
    result = CommandRunner(config.stop.commands, project_root, env, execute).run()

    if result.blocked:
        message = result.message or "Stop command failed"
        if summary:
            message = f"{message}\n\n{summary}"
        decision = ProtectionDecision.block(message)
    elif config.stop.infinite:
        message = config.stop.infinite_message or DEFAULT_INFINITE_MESSAGE
        if summary:
            message = f"{message}\n\n{summary}"
        log_conclaude("INFO", "Infinite mode: all stop commands passed, continuing session")
        decision = ProtectionDecision.block(message)
    else:
        decision = ProtectionDecision.allow()

    return StopEvaluation(decision=decision, run_result=result, violations=tuple(violations))


# ============================================================
# Hook Runners (stdin JSON -> exit code)
# ============================================================


def _emit_decision(decision: ProtectionDecision, label: str, stderr: TextIO) -> int:
    if not decision.blocked:
        log_conclaude("ALLOW", label)
        return EXIT_ALLOW
    if is_dry_run():
        log_conclaude("DRY-RUN", f"Would BLOCK {label}: {decision.message}")
        return EXIT_ALLOW
    print(decision.message, file=stderr)
    return EXIT_BLOCK


def _read_payload(stdin: TextIO) -> dict[str, Any]:
    payload = json.load(stdin)
    if not isinstance(payload, dict):
        raise ValueError(f"hook payload must be an object, got {type(payload).__name__}")
    return payload


def run_pre_tool_use_hook(
    stdin: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    """Entry point of the PreToolUse hook.

    Returns:
        Process exit code (0 allow, 2 block, 1 internal error).
    """
    stdin = stdin or sys.stdin
    stderr = stderr or sys.stderr

    # Fail-close on malformed input
    try:
        payload = _read_payload(stdin)
    except ValueError as e:
        log_conclaude("ERROR", f"Malformed PreToolUse payload: {e}")
        print(f"Blocked: invalid hook input ({e})", file=stderr)
        return EXIT_BLOCK

    tool_name = payload.get("tool_name", "")
    project_root = resolve_project_root(str(payload.get("cwd") or ""))
    try:
        config = load_conclaude_config(project_root)
    except ConfigError as e:
        log_conclaude("ERROR", str(e))
        print(str(e), file=stderr)
        return EXIT_ERROR

    modifies_files = tool_name in FILE_MODIFYING_TOOLS
    if not modifies_files and not config.pre_tool_use.tool_usage_rules:
        return EXIT_ALLOW

    try:
        request = edit_request_from_payload(payload)
    except ValueError as e:
        if not modifies_files:
            log_conclaude("WARN", f"Unrecognized {tool_name} input, skipping tool usage rules: {e}")
            return EXIT_ALLOW
        log_conclaude("BLOCK", f"Invalid {tool_name} input: {e}")
        return _emit_decision(
            ProtectionDecision.block(f"Blocked {tool_name} operation: invalid tool input ({e})"),
            tool_name,
            stderr,
        )

    if request is None:
        if modifies_files:
            log_conclaude("WARN", f"{tool_name} called without a file path")
        return EXIT_ALLOW

    log_conclaude("INFO", f"{tool_name} check: {truncate_path(request.file_path)}")
    decision = evaluate_pre_edit(request, project_root, config)
    return _emit_decision(decision, f"{tool_name}: {truncate_path(request.file_path)}", stderr)


def run_stop_hook(
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    """Entry point of the Stop hook.

    Returns:
        Process exit code (0 allow, 2 block, 1 internal error).
    """
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    try:
        payload = _read_payload(stdin)
    except ValueError as e:
        log_conclaude("ERROR", f"Malformed Stop payload: {e}")
        print(f"conclaude: invalid hook input ({e})", file=stderr)
        return EXIT_ERROR

    project_root = resolve_project_root(str(payload.get("cwd") or ""))
    try:
        config = load_conclaude_config(project_root)
    except ConfigError as e:
        log_conclaude("ERROR", str(e))
        print(str(e), file=stderr)
        return EXIT_ERROR

    session_id = str(payload.get("session_id") or "")
    hook_event = str(payload.get("hook_event_name") or "Stop")
    log_conclaude("INFO", f"Stop gate: {len(config.stop.commands)} command(s), session {session_id or '-'}")

    evaluation = evaluate_stop(project_root, config, session_id, hook_event)

    if not evaluation.decision.blocked:
        if evaluation.run_result.echo_stdout:
            stdout.write(evaluation.run_result.echo_stdout)
        if evaluation.run_result.echo_stderr:
            stderr.write(evaluation.run_result.echo_stderr)

    return _emit_decision(evaluation.decision, "Stop", stderr)
